"""
talosvirt/talos/config.py

Configuration Compiler. Builds the machine configuration document for a role:

    generated role document (talosctl gen config, from the secret bundle)
      <- base overlay              (both roles)
      <- role network overlay      (controllers: DHCP + VIP; workers: nothing)
      <- inline manifest overlay   (controllers only)
      <- hostname overlay          (per node, at apply time only)

Later overlays win on conflicts, so the order above is part of the contract:
the per-node hostname must always have the last word over the shared role
document. The role document is shared by every node of the role and is never
mutated when a node is specialized.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import yaml

from talosvirt.models.settings import ClusterSettings
from talosvirt.models.talos import SecretMaterial
from talosvirt.models.topology import Node, NodeRole
from talosvirt.talos.manifests import render_inline_manifest
from talosvirt.utils.async_command_runner import run_command
from talosvirt.utils.merge import apply_overlays, merge_overlay

logger = logging.getLogger(__name__)

Document = Dict[str, Any]

# talosctl names the controller role "controlplane".
TALOS_MACHINE_TYPES = {
    NodeRole.CONTROLLER: "controlplane",
    NodeRole.WORKER: "worker",
}

STATIC_POD: Document = {
    "apiVersion": "v1",
    "kind": "Pod",
    "metadata": {"name": "example-static-pod", "namespace": "kube-system"},
    "spec": {
        "containers": [
            {
                "name": "web",
                "image": "nginx:1.27-alpine",
                "ports": [{"name": "http", "containerPort": 80}],
            }
        ]
    },
}


def base_overlay(settings: ClusterSettings, installer_image: str) -> Document:
    """Role-independent fragment applied to both roles."""
    return {
        "machine": {
            "install": {
                "disk": settings.install_disk,
                "image": installer_image,
                "extraKernelArgs": ["net.ifnames=0"],
            },
            "features": {
                "kubePrism": {"enabled": True, "port": 7445},
                "hostDNS": {"enabled": True, "forwardKubeDNSToHost": True},
            },
            "pods": [STATIC_POD],
        },
        "cluster": {
            "discovery": {
                "enabled": True,
                "registries": {
                    "kubernetes": {"disabled": False},
                    "service": {"disabled": True},
                },
            },
            "network": {"cni": {"name": "none"}},
            "proxy": {"disabled": True},
        },
    }


def role_network_overlay(role: NodeRole, settings: ClusterSettings) -> Document:
    if role is not NodeRole.CONTROLLER:
        return {}
    return {
        "machine": {
            "network": {
                "interfaces": [
                    {
                        "deviceSelector": {"physical": True},
                        "dhcp": True,
                        "vip": {"ip": settings.cluster_vip},
                    }
                ]
            }
        }
    }


def inline_manifest_overlay(contents: str) -> Document:
    return {"cluster": {"inlineManifests": [{"name": "cilium", "contents": contents}]}}


def hostname_overlay(node: Node) -> Document:
    return {"machine": {"network": {"hostname": node.name}}}


def role_overlays(
    role: NodeRole,
    settings: ClusterSettings,
    installer_image: str,
    inline_manifest: Optional[str],
) -> List[Document]:
    """The role-level overlays, in application order."""
    overlays = [
        base_overlay(settings, installer_image),
        role_network_overlay(role, settings),
    ]
    if role is NodeRole.CONTROLLER:
        if inline_manifest is None:
            raise ValueError("Controller configuration requires the inline manifest.")
        overlays.append(inline_manifest_overlay(inline_manifest))
    return overlays


def render_document(document: Mapping[str, Any]) -> str:
    """Serialize a document; identical input always yields identical text."""
    return yaml.safe_dump(dict(document), sort_keys=False, default_flow_style=False)


def specialize_for_node(role_document: Mapping[str, Any], node: Node) -> str:
    """Apply the hostname overlay last and render the node's final document."""
    return render_document(merge_overlay(role_document, hostname_overlay(node)))


def document_digest(document_text: str) -> str:
    return hashlib.sha256(document_text.encode("utf-8")).hexdigest()


async def generate_role_document(
    settings: ClusterSettings, secrets: SecretMaterial, role: NodeRole
) -> Document:
    """Have talosctl generate the stock machine configuration for `role`."""
    output = await run_command(
        [
            "talosctl",
            "gen",
            "config",
            settings.cluster_name,
            settings.cluster_endpoint,
            "--with-secrets",
            secrets.path,
            "--output-types",
            TALOS_MACHINE_TYPES[role],
            "--output",
            "-",
            "--with-docs=false",
            "--with-examples=false",
            "--talos-version",
            f"v{settings.talos_version}",
            "--kubernetes-version",
            settings.kubernetes_version,
        ]
    )
    document = yaml.safe_load(output)
    if not isinstance(document, dict):
        raise ValueError(f"talosctl produced no {role.value} configuration document.")
    return document


class ConfigurationCompiler:
    """
    Compiles one document per role. Collaborators are injectable so the
    orchestrator can be exercised without talosctl or helm.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        *,
        generator: Callable[
            [ClusterSettings, SecretMaterial, NodeRole], Awaitable[Document]
        ] = generate_role_document,
        manifest_renderer: Callable[
            [ClusterSettings], Awaitable[str]
        ] = render_inline_manifest,
    ) -> None:
        self._settings = settings
        self._generator = generator
        self._manifest_renderer = manifest_renderer

    async def compile(
        self, role: NodeRole, secrets: SecretMaterial, installer_image: str
    ) -> Document:
        """
        Args:
            role: Role to compile for.
            secrets: The cluster secret bundle.
            installer_image: Installer image recorded into `machine.install.image`.

        Returns:
            Document: The role-level machine configuration (no hostname yet).
        """
        generated = await self._generator(self._settings, secrets, role)
        inline_manifest = (
            await self._manifest_renderer(self._settings)
            if role is NodeRole.CONTROLLER
            else None
        )
        document = apply_overlays(
            generated,
            role_overlays(role, self._settings, installer_image, inline_manifest),
        )
        logger.debug("Compiled %s configuration", role.value)
        return document
