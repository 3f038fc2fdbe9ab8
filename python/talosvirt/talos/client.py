"""
talosvirt/talos/client.py

Management endpoint access. `ManagementClient` is the capability the
orchestrator depends on; `TalosctlClient` implements it on top of talosctl,
authenticating every call with the cluster client configuration except the
very first apply, which reaches a node still in maintenance mode.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Protocol, Sequence

import yaml

from talosvirt.models.topology import Node
from talosvirt.utils.async_command_runner import run_command
from talosvirt.utils.ephemeral_file import ephemeral_document

logger = logging.getLogger(__name__)


class ManagementClient(Protocol):
    async def apply_config(self, node: Node, document: str, *, insecure: bool) -> None:
        ...

    async def bootstrap(self, node: Node) -> None:
        ...

    async def health(
        self,
        controllers: Sequence[Node],
        workers: Sequence[Node],
        *,
        wait_timeout: float,
    ) -> None:
        ...

    async def read_file(self, node: Node, path: str) -> str:
        ...

    async def get_object(self, node: Node, resource: str) -> Dict[str, Any]:
        ...

    async def upgrade(self, node: Node, image: str, *, preserve: bool = True) -> None:
        ...

    async def kubeconfig(self, node: Node, path: str) -> None:
        ...


class TalosctlClient:
    """ManagementClient backed by the talosctl binary.

    Args:
        talosconfig: Path of the client configuration used for authenticated calls.
    """

    def __init__(self, talosconfig: str) -> None:
        self._talosconfig = talosconfig

    def _command(self, node: Node, *args: str) -> List[str]:
        return [
            "talosctl",
            "--talosconfig",
            self._talosconfig,
            "--nodes",
            node.address,
            "--endpoints",
            node.address,
            *args,
        ]

    async def apply_config(self, node: Node, document: str, *, insecure: bool) -> None:
        """Push a machine configuration to `node`.

        With `insecure=True` the call targets the unauthenticated maintenance API of
        a node that has never been configured.
        """
        async with ephemeral_document(f"{node.name}.yaml", document) as path:
            if insecure:
                command = [
                    "talosctl",
                    "apply-config",
                    "--insecure",
                    "--nodes",
                    node.address,
                    "--file",
                    path,
                ]
            else:
                command = self._command(node, "apply-config", "--file", path)
            await run_command(command)
        logger.info("Applied configuration to %s (%s)", node.name, node.address)

    async def bootstrap(self, node: Node) -> None:
        await run_command(self._command(node, "bootstrap"))
        logger.info("Bootstrapped cluster on %s (%s)", node.name, node.address)

    async def health(
        self,
        controllers: Sequence[Node],
        workers: Sequence[Node],
        *,
        wait_timeout: float,
    ) -> None:
        args = [
            "health",
            "--control-plane-nodes",
            ",".join(n.address for n in controllers),
            "--wait-timeout",
            f"{int(wait_timeout)}s",
        ]
        if workers:
            args += ["--worker-nodes", ",".join(n.address for n in workers)]
        await run_command(self._command(controllers[0], *args))

    async def read_file(self, node: Node, path: str) -> str:
        return await run_command(self._command(node, "read", path), sensitive=False)

    async def get_object(self, node: Node, resource: str) -> Dict[str, Any]:
        """Fetch one COSI resource as a mapping (metadata + spec)."""
        output = await run_command(self._command(node, "get", resource, "-o", "yaml"))
        documents = [d for d in yaml.safe_load_all(output) if d]
        if not documents:
            raise ValueError(f"{node.name} returned no '{resource}' resource.")
        return documents[0]

    async def upgrade(self, node: Node, image: str, *, preserve: bool = True) -> None:
        """Upgrade `node` to `image` and wait for it to come back."""
        args = ["upgrade", "--image", image, "--wait"]
        if preserve:
            args.append("--preserve")
        await run_command(self._command(node, *args), sensitive=False)

    async def kubeconfig(self, node: Node, path: str) -> None:
        await run_command(
            self._command(node, "kubeconfig", path, "--force", "--merge=false")
        )
