"""
talosvirt/models/topology.py

Defines the cluster topology: node identities derived purely from role and
index. Nothing here is persisted; the same counts and prefix always produce the
same nodes, in the same order.

Address convention within `<prefix>.0/24`:
  - controllers: `<prefix>.10` .. `<prefix>.19`
  - workers:     `<prefix>.20` .. `<prefix>.254`
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import List

from pydantic import BaseModel

CONTROLLER_OFFSET = 10
WORKER_OFFSET = 20
LAST_HOST_OCTET = 254

MAX_CONTROLLERS = WORKER_OFFSET - CONTROLLER_OFFSET
MAX_WORKERS = LAST_HOST_OCTET - WORKER_OFFSET + 1


class TopologyError(ValueError):
    """The declared topology cannot be laid out on the address ranges."""


class NodeRole(str, Enum):
    """Role of a cluster node."""

    CONTROLLER = "controller"
    WORKER = "worker"


class Node(BaseModel):
    """
    A single cluster node.

    Attributes:
        role: Controller or worker.
        index: Position within its role, starting at 0.
        name: Hostname, `c<index>` or `w<index>`.
        address: IPv4 address on the cluster network.
    """

    role: NodeRole
    index: int
    name: str
    address: str

    model_config = {"frozen": True}


class Topology(BaseModel):
    """Ordered node list: controllers by index, then workers by index."""

    nodes: List[Node]

    @property
    def controllers(self) -> List[Node]:
        return [n for n in self.nodes if n.role is NodeRole.CONTROLLER]

    @property
    def workers(self) -> List[Node]:
        return [n for n in self.nodes if n.role is NodeRole.WORKER]

    @property
    def bootstrap_node(self) -> Node:
        """The designated bootstrap target, controller 0."""
        return self.controllers[0]

    def node(self, name: str) -> Node:
        """Look up a node by name.

        Raises:
            KeyError: If no node has that name.
        """
        for candidate in self.nodes:
            if candidate.name == name:
                return candidate
        raise KeyError(f"Unknown node '{name}'")


def validate_network_prefix(prefix: str) -> str:
    """Check that `prefix` holds the first three octets of an IPv4 address.

    Raises:
        TopologyError: If the prefix is malformed.
    """
    octets = prefix.split(".")
    if len(octets) != 3:
        raise TopologyError(f"Network prefix must have three octets, got '{prefix}'")
    try:
        ipaddress.IPv4Address(f"{prefix}.0")
    except ValueError as exc:
        raise TopologyError(f"Invalid network prefix '{prefix}'") from exc
    return prefix


def node_address(prefix: str, role: NodeRole, index: int) -> str:
    offset = CONTROLLER_OFFSET if role is NodeRole.CONTROLLER else WORKER_OFFSET
    return f"{prefix}.{offset + index}"


def node_name(role: NodeRole, index: int) -> str:
    return f"{'c' if role is NodeRole.CONTROLLER else 'w'}{index}"


def generate_topology(controller_count: int, worker_count: int, prefix: str) -> Topology:
    """
    Derive the concrete node list for a declared topology.

    Args:
        controller_count: Number of controller nodes (at least 1, at most 10).
        worker_count: Number of worker nodes (at most 235).
        prefix: First three octets of the cluster network, e.g. "10.17.3".

    Returns:
        Topology: `controller_count` controllers followed by `worker_count` workers.

    Raises:
        TopologyError: For zero controllers, negative counts, counts that overflow
            their address range, or a malformed prefix. Raised before any external
            call is made.
    """
    validate_network_prefix(prefix)

    if controller_count < 1:
        raise TopologyError("At least one controller node is required.")
    if worker_count < 0:
        raise TopologyError("Worker count cannot be negative.")
    if controller_count > MAX_CONTROLLERS:
        raise TopologyError(
            f"{controller_count} controllers overflow the controller range "
            f"{prefix}.{CONTROLLER_OFFSET}-{prefix}.{WORKER_OFFSET - 1} "
            f"(max {MAX_CONTROLLERS})."
        )
    if worker_count > MAX_WORKERS:
        raise TopologyError(
            f"{worker_count} workers overflow the worker range "
            f"{prefix}.{WORKER_OFFSET}-{prefix}.{LAST_HOST_OCTET} (max {MAX_WORKERS})."
        )

    return Topology(
        nodes=[
            Node(
                role=role,
                index=index,
                name=node_name(role, index),
                address=node_address(prefix, role, index),
            )
            for role, count in (
                (NodeRole.CONTROLLER, controller_count),
                (NodeRole.WORKER, worker_count),
            )
            for index in range(count)
        ]
    )
