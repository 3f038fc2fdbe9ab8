"""
talosvirt/talos/manifests.py

Manifest Renderer boundary. The controller configuration embeds one inline
manifest whose contents are the rendered Cilium chart followed by a
load-balancer fragment (IP pool + L2 announcement policy). Both are consumed
verbatim: this module only produces the strings and joins them.
"""

from __future__ import annotations

import textwrap

from talosvirt.models.settings import ClusterSettings
from talosvirt.utils.async_command_runner import run_command

DOCUMENT_SEPARATOR = "\n---\n"

CILIUM_CHART_REPO = "https://helm.cilium.io"

# Values required by Talos: no kube-proxy (KubePrism on 7445), cgroup already
# mounted, no SYS_MODULE capability.
CILIUM_VALUES = [
    "ipam.mode=kubernetes",
    "kubeProxyReplacement=true",
    "k8sServiceHost=localhost",
    "k8sServicePort=7445",
    "cgroup.autoMount.enabled=false",
    "cgroup.hostRoot=/sys/fs/cgroup",
    "securityContext.capabilities.ciliumAgent={CHOWN,KILL,NET_ADMIN,NET_RAW,IPC_LOCK,SYS_ADMIN,SYS_RESOURCE,DAC_OVERRIDE,FOWNER,SETGID,SETUID}",
    "securityContext.capabilities.cleanCiliumState={NET_ADMIN,SYS_ADMIN,SYS_RESOURCE}",
    "l2announcements.enabled=true",
    "devices={eth0}",
]


async def render_cilium_manifest(settings: ClusterSettings) -> str:
    """Render the Cilium chart with `helm template`."""
    command = [
        "helm",
        "template",
        "cilium",
        "cilium",
        "--repo",
        CILIUM_CHART_REPO,
        "--version",
        settings.cilium_version,
        "--namespace",
        "kube-system",
    ]
    for value in CILIUM_VALUES:
        command += ["--set", value]
    return await run_command(command, sensitive=False, retries=3)


def render_load_balancer_fragment(settings: ClusterSettings) -> str:
    """Load-balancer IP pool and L2 announcement policy for the cluster network."""
    lb_range = settings.load_balancer_range
    return textwrap.dedent(
        f"""\
        apiVersion: cilium.io/v2alpha1
        kind: CiliumLoadBalancerIPPool
        metadata:
          name: default
        spec:
          blocks:
            - start: {lb_range['start']}
              stop: {lb_range['stop']}
        ---
        apiVersion: cilium.io/v2alpha1
        kind: CiliumL2AnnouncementPolicy
        metadata:
          name: default
        spec:
          loadBalancerIPs: true
          interfaces:
            - eth0
          nodeSelector:
            matchExpressions:
              - key: node-role.kubernetes.io/control-plane
                operator: DoesNotExist
        """
    )


def join_manifests(network_plugin: str, load_balancer: str) -> str:
    """Concatenate the two manifests, verbatim, with a document separator."""
    return network_plugin + DOCUMENT_SEPARATOR + load_balancer


async def render_inline_manifest(settings: ClusterSettings) -> str:
    """The full payload of the controller `cilium` inline manifest."""
    return join_manifests(
        await render_cilium_manifest(settings), render_load_balancer_fragment(settings)
    )
