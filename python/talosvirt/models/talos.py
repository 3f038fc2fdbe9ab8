"""
talosvirt/models/talos.py

Pydantic models exchanged with the Talos side of the orchestrator:
 - SecretMaterial: reference to the cluster-wide secret bundle
 - NodeInfo: diagnostic facts reported by a running node
 - PlannedTask: one line of the reconcile preview shown by `plan`
"""

from __future__ import annotations

from typing import Literal, Optional
from pydantic import BaseModel


class SecretMaterial(BaseModel):
    """
    Read-only reference to the secret bundle on disk. The bundle itself is never
    copied into memory structures shared between tasks; consumers hand `path` to
    talosctl.

    Attributes:
        path: Location of the `talosctl gen secrets` output.
        digest: sha256 of the bundle, checked against the digest recorded when
            the cluster was created.
    """

    path: str
    digest: str

    model_config = {"frozen": True}


class NodeInfo(BaseModel):
    """
    Attributes:
        name: Node name (c0, w0, ...).
        address: Node address the facts were read from.
        installer_image: Installer image in the node's running machine config.
        os_release: PRETTY_NAME from the node's /etc/os-release.
    """

    name: str
    address: str
    installer_image: Optional[str] = None
    os_release: Optional[str] = None


class PlannedTask(BaseModel):
    """A task of the apply graph and whether running it would change anything."""

    name: str
    status: Literal["pending", "up-to-date"]
    detail: str = ""
