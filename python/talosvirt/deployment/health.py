"""
talosvirt/deployment/health.py

Health/Upgrade driver:
  - wait_for_health: poll cluster health from controller 0 until every declared
    controller and worker reports healthy, or time out.
  - collect_node_info: read-only diagnostics (installer image, OS release) per node.
  - upgrade_cluster: strictly sequential, data-preserving upgrade of every node in
    enumeration order, then one final health gate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import yaml

from talosvirt.models.talos import NodeInfo
from talosvirt.models.topology import Node, Topology
from talosvirt.talos.client import ManagementClient
from talosvirt.utils.async_command_runner import CommandError

logger = logging.getLogger(__name__)


class HealthTimeoutError(RuntimeError):
    """The cluster did not report the declared healthy node counts in time."""


class UpgradeError(RuntimeError):
    """Upgrading a node failed; nodes after it were not touched."""

    def __init__(self, node: Node, cause: BaseException) -> None:
        super().__init__(f"Upgrade of {node.name} ({node.address}) failed: {cause}")
        self.node = node


async def wait_for_health(
    client: ManagementClient,
    topology: Topology,
    *,
    timeout: float,
    interval: float,
) -> None:
    """
    Poll health until it passes or `timeout` seconds have elapsed.

    Each poll asks for all declared controllers and workers; a poll passes only
    if every one of them is healthy.

    Raises:
        HealthTimeoutError: With the last failure message, once the deadline passes.
    """
    controllers, workers = topology.controllers, topology.workers
    deadline = time.monotonic() + timeout
    attempt = 0
    last_error: Optional[BaseException] = None

    while True:
        attempt += 1
        try:
            await client.health(controllers, workers, wait_timeout=max(interval, 1.0))
            logger.info(
                "Cluster healthy: %d controller(s), %d worker(s)",
                len(controllers),
                len(workers),
            )
            return
        except CommandError as exc:
            last_error = exc
            logger.info("Health check attempt %d not passing yet: %s", attempt, exc)

        if time.monotonic() + interval > deadline:
            raise HealthTimeoutError(
                f"Cluster not healthy after {timeout:.0f}s "
                f"({len(controllers)} controller(s), {len(workers)} worker(s) expected): "
                f"{last_error}"
            )
        await asyncio.sleep(interval)


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse /etc/os-release into a dict (quotes stripped)."""
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        fields[key] = value.strip().strip('"')
    return fields


def installer_image_from_machineconfig(resource: Dict[str, Any]) -> Optional[str]:
    """Extract `machine.install.image` from a `get machineconfig` resource.

    The resource spec is the machine configuration, either as YAML text or
    already parsed.
    """
    spec = resource.get("spec")
    if isinstance(spec, str):
        spec = yaml.safe_load(spec)
    if not isinstance(spec, dict):
        return None
    return spec.get("machine", {}).get("install", {}).get("image")


async def collect_node_info(client: ManagementClient, topology: Topology) -> List[NodeInfo]:
    """Read installer image and OS release from every node, in enumeration order.

    Every read runs to completion before the first error (in enumeration order)
    is raised.
    """

    async def _info(node: Node) -> NodeInfo:
        machineconfig = await client.get_object(node, "machineconfig")
        os_release = parse_os_release(await client.read_file(node, "/etc/os-release"))
        return NodeInfo(
            name=node.name,
            address=node.address,
            installer_image=installer_image_from_machineconfig(machineconfig),
            os_release=os_release.get("PRETTY_NAME"),
        )

    results = await asyncio.gather(
        *[_info(n) for n in topology.nodes], return_exceptions=True
    )
    infos: List[NodeInfo] = []
    for result in results:
        if isinstance(result, BaseException):
            raise result
        infos.append(result)
    return infos


async def upgrade_cluster(
    client: ManagementClient,
    topology: Topology,
    image: str,
    *,
    health_timeout: float,
    health_interval: float,
) -> None:
    """
    Upgrade every node to `image`, one at a time, preserving node data.

    The next node is only touched after the previous upgrade returned; the first
    failure stops the sequence (already upgraded nodes stay upgraded). A full
    health check gates completion.

    Raises:
        UpgradeError: Naming the node whose upgrade failed.
        HealthTimeoutError: If the cluster is not healthy afterwards.
    """
    for node in topology.nodes:
        logger.info("Upgrading %s (%s) to %s", node.name, node.address, image)
        try:
            await client.upgrade(node, image, preserve=True)
        except Exception as exc:
            raise UpgradeError(node, exc) from exc

    await wait_for_health(
        client, topology, timeout=health_timeout, interval=health_interval
    )
