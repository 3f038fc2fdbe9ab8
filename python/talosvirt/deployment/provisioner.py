"""
talosvirt/deployment/provisioner.py

Node Provisioner boundary. Virtual machines are created and destroyed by the
Terraform root in `settings.terraform_dir` (libvirt provider); this module only
hands it the declared nodes and the boot volume, and reports when a node can be
configured:

  - the node is listed in the Terraform `nodes` output (name => address), and
  - its Talos API port answers.

Provisioning also reports the `instances` output (name => libvirt domain id),
so callers can tell a recreated VM from the one they configured before.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from talosvirt.models.settings import ClusterSettings
from talosvirt.models.terraform import TerraformState
from talosvirt.models.topology import Node, Topology
from talosvirt.utils.async_retry import async_retry
from talosvirt.utils.terraform import (
    apply_terraform,
    destroy_terraform,
    get_output_from_state,
    init_terraform,
    plan_terraform,
    read_terraform_state,
)

logger = logging.getLogger(__name__)

TALOS_API_PORT = 50000


class ProvisioningError(RuntimeError):
    """A declared node was not provisioned or never became reachable."""


class NodeProvisioner(Protocol):
    async def init(self) -> None:
        ...

    async def plan(self, topology: Topology, image_volume: str) -> str:
        ...

    async def provision(self, topology: Topology, image_volume: str) -> Dict[str, str]:
        ...

    async def wait_ready(self, node: Node) -> None:
        ...

    async def destroy(self, topology: Topology, image_volume: str) -> None:
        ...


async def probe_port(address: str, port: int, timeout: float = 3.0) -> None:
    """Open and close a TCP connection; raises OSError/TimeoutError if refused."""
    _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout)
    writer.close()
    await writer.wait_closed()


class TerraformProvisioner:
    """
    Args:
        settings: Cluster settings (Terraform directory, pool, log env).
        ready_attempts: Port probes per node before giving up.
        ready_delay: Seconds between probes.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        *,
        ready_attempts: int = 60,
        ready_delay: float = 5.0,
    ) -> None:
        self._settings = settings
        self._ready_attempts = ready_attempts
        self._ready_delay = ready_delay
        self._provisioned: Optional[Dict[str, str]] = None

    def variables(self, topology: Topology, image_volume: str) -> Dict[str, Any]:
        """Terraform input variables for the declared topology."""
        settings = self._settings
        return {
            "prefix": settings.cluster_name,
            "network_prefix": settings.network_prefix,
            "storage_pool": settings.storage_pool,
            "image_volume": image_volume,
            "nodes": [
                {"name": n.name, "role": n.role.value, "address": n.address}
                for n in topology.nodes
            ],
        }

    async def init(self) -> None:
        await init_terraform(self._settings.terraform_dir, env=self._settings.terraform_env())

    async def plan(self, topology: Topology, image_volume: str) -> str:
        return await plan_terraform(
            self._settings.terraform_dir,
            variables=self.variables(topology, image_volume),
            env=self._settings.terraform_env(),
        )

    async def provision(self, topology: Topology, image_volume: str) -> Dict[str, str]:
        """
        Returns:
            Dict[str, str]: node name => id of the VM instance backing it.
        """
        await apply_terraform(
            self._settings.terraform_dir,
            variables=self.variables(topology, image_volume),
            env=self._settings.terraform_env(),
        )
        state = await self._read_state()
        self._provisioned = get_output_from_state(state, "nodes", Dict[str, str])
        return get_output_from_state(state, "instances", Dict[str, str])

    async def _read_state(self) -> TerraformState:
        return await read_terraform_state(
            self._settings.terraform_dir, env=self._settings.terraform_env()
        )

    async def _read_provisioned(self) -> Dict[str, str]:
        return get_output_from_state(await self._read_state(), "nodes", Dict[str, str])

    async def wait_ready(self, node: Node) -> None:
        """Block until `node` is provisioned and its Talos API accepts connections.

        Raises:
            ProvisioningError: If the node is missing from the Terraform output, has
                an unexpected address, or stays unreachable.
        """
        if self._provisioned is None:
            self._provisioned = await self._read_provisioned()

        address = self._provisioned.get(node.name)
        if address is None:
            raise ProvisioningError(f"Node {node.name} is not provisioned.")
        if address != node.address:
            raise ProvisioningError(
                f"Node {node.name} was provisioned at {address}, expected {node.address}."
            )

        @async_retry(
            retries=self._ready_attempts,
            delay=self._ready_delay,
            noisy=True,
            retry_on=(OSError, asyncio.TimeoutError),
        )
        async def _probe() -> None:
            await probe_port(node.address, TALOS_API_PORT)

        try:
            await _probe()
        except (OSError, asyncio.TimeoutError) as exc:
            raise ProvisioningError(
                f"Node {node.name} ({node.address}) did not expose the Talos API: {exc}"
            ) from exc
        logger.info("Node %s (%s) is reachable", node.name, node.address)

    async def destroy(self, topology: Topology, image_volume: str) -> None:
        await destroy_terraform(
            self._settings.terraform_dir,
            variables=self.variables(topology, image_volume),
            env=self._settings.terraform_env(),
        )
        self._provisioned = None
