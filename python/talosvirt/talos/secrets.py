"""
talosvirt/talos/secrets.py

Secret Material Store. The cluster-wide key/certificate bundle is generated once
with `talosctl gen secrets` and then only ever read: every machine configuration
and the client configuration are derived from the same file. It is removed only
when the cluster is destroyed.
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import List, Optional

import aiofiles
import yaml

from talosvirt.models.settings import ClusterSettings
from talosvirt.models.talos import SecretMaterial
from talosvirt.models.topology import Topology
from talosvirt.utils.async_command_runner import run_command

logger = logging.getLogger(__name__)

REQUIRED_SECTIONS = ("cluster", "secrets", "trustdinfo", "certs")


class SecretMaterialMismatchError(RuntimeError):
    """The bundle on disk is not the one the cluster was built from."""


def verify_secret_material(secrets: SecretMaterial, expected_digest: Optional[str]) -> None:
    """
    Raises:
        SecretMaterialMismatchError: If a digest was recorded for this cluster and
            the bundle no longer matches it.
    """
    if expected_digest is not None and secrets.digest != expected_digest:
        raise SecretMaterialMismatchError(
            f"{secrets.path} was replaced after the cluster was created; restore the "
            "original bundle or destroy the cluster."
        )


class SecretMaterialStore:
    """Creates, loads and removes the secret bundle at `settings.secrets_path`."""

    def __init__(self, settings: ClusterSettings) -> None:
        self._settings = settings

    @property
    def path(self) -> str:
        return self._settings.secrets_path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    async def ensure(self) -> SecretMaterial:
        """Generate the bundle if it does not exist yet, then load it.

        An existing bundle is never regenerated or overwritten.
        """
        if not self.exists():
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            logger.info("Generating cluster secret material at %s", self.path)
            await run_command(["talosctl", "gen", "secrets", "--output-file", self.path])
            os.chmod(self.path, 0o600)
        return await self.load()

    async def load(self) -> SecretMaterial:
        """
        Returns:
            SecretMaterial: Reference to the validated bundle.

        Raises:
            FileNotFoundError: If the bundle has not been generated.
            ValueError: If the file is not a Talos secret bundle.
        """
        async with aiofiles.open(self.path, "rb") as f:
            raw = await f.read()

        bundle = yaml.safe_load(raw)
        if not isinstance(bundle, dict):
            raise ValueError(f"{self.path} is not a Talos secret bundle.")
        missing: List[str] = [s for s in REQUIRED_SECTIONS if s not in bundle]
        if missing:
            raise ValueError(
                f"{self.path} is missing section(s): {', '.join(missing)}"
            )

        return SecretMaterial(path=self.path, digest=hashlib.sha256(raw).hexdigest())

    async def write_client_config(
        self, secrets: SecretMaterial, topology: Topology, path: str
    ) -> None:
        """
        Derive the client configuration (talosconfig) from the bundle and point it
        at every controller, with controller 0 as the default node.
        """
        settings = self._settings
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

        await run_command(
            [
                "talosctl",
                "gen",
                "config",
                settings.cluster_name,
                settings.cluster_endpoint,
                "--with-secrets",
                secrets.path,
                "--output-types",
                "talosconfig",
                "--output",
                path,
                "--force",
            ]
        )
        await run_command(
            ["talosctl", "--talosconfig", path, "config", "endpoint"]
            + [n.address for n in topology.controllers]
        )
        await run_command(
            [
                "talosctl",
                "--talosconfig",
                path,
                "config",
                "node",
                topology.bootstrap_node.address,
            ]
        )
        os.chmod(path, 0o600)

    def destroy(self) -> None:
        """Remove the bundle. Only called as part of cluster teardown."""
        if self.exists():
            os.remove(self.path)
            logger.info("Removed cluster secret material %s", self.path)
