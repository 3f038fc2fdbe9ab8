"""
talosvirt/deployment/cluster.py

Cluster lifecycle orchestrator. `apply` is an explicit task graph:

    provision ──> ready/<node> ─────────────────────┐
    secrets ──> client-config ──────────────────────┤
    secrets, installer-image ──> config/<role> ─────┴──> apply/<node>
    apply/<every controller> ──> bootstrap
    bootstrap, apply/<every node> ──> artifacts ──> health

Each run recomputes node identities and configurations and reconciles them
against the persisted ClusterState:
  - a node whose recorded configuration digest matches is not touched,
  - a node never configured gets its first configuration through the
    maintenance API, later changes go through the authenticated API,
  - a node whose VM instance is gone or was recreated counts as never
    configured,
  - the secret bundle must be the one recorded when the cluster was created,
  - bootstrap runs once per cluster lifetime, guarded by the recorded marker.
State is saved after every step, so an interrupted apply resumes where it
stopped on the next run.
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from talosvirt.deployment.health import (
    collect_node_info,
    upgrade_cluster,
    wait_for_health,
)
from talosvirt.deployment.image import (
    build_image,
    image_volume_name,
    resolve_installer_image,
)
from talosvirt.deployment.provisioner import NodeProvisioner
from talosvirt.deployment.scheduler import TaskGraph
from talosvirt.deployment.state import ClusterStateStore
from talosvirt.models.cluster_state import ClusterState
from talosvirt.models.settings import ClusterSettings
from talosvirt.models.talos import NodeInfo, PlannedTask, SecretMaterial
from talosvirt.models.topology import Node, NodeRole, Topology
from talosvirt.talos.client import ManagementClient
from talosvirt.talos.config import (
    ConfigurationCompiler,
    Document,
    document_digest,
    specialize_for_node,
)
from talosvirt.talos.secrets import SecretMaterialStore, verify_secret_material

logger = logging.getLogger(__name__)


class BootstrapPreconditionError(RuntimeError):
    """Bootstrap was reached before every controller held its configuration."""


class MissingArtifactError(FileNotFoundError):
    """A command needs the artifacts a successful `apply` persists."""


def config_task(role: NodeRole) -> str:
    return f"config/{role.value}"


def ready_task(node: Node) -> str:
    return f"ready/{node.name}"


def apply_task(node: Node) -> str:
    return f"apply/{node.name}"


class ClusterOrchestrator:
    """
    Sequences every lifecycle command. All collaborators are injected so the
    ordering rules can be exercised without VMs, talosctl or Terraform.

    Args:
        settings: Cluster settings; the topology is derived from them.
        client_factory: Builds a ManagementClient for a talosconfig path.
        provisioner: The external VM layer.
        secret_store: Secret Material Store.
        compiler: Configuration Compiler.
        state_store: Durable reconcile state.
        image_builder: Builds and uploads the boot volume, returns its name.
        installer_image_resolver: Returns the installer image reference.
        max_concurrency: Bound on concurrently running graph tasks.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        *,
        client_factory: Callable[[str], ManagementClient],
        provisioner: NodeProvisioner,
        secret_store: SecretMaterialStore,
        compiler: ConfigurationCompiler,
        state_store: ClusterStateStore,
        image_builder: Callable[[ClusterSettings], Awaitable[str]] = build_image,
        installer_image_resolver: Callable[
            [ClusterSettings], Awaitable[str]
        ] = resolve_installer_image,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._provisioner = provisioner
        self._secret_store = secret_store
        self._compiler = compiler
        self._state_store = state_store
        self._image_builder = image_builder
        self._resolve_installer_image = installer_image_resolver
        self._max_concurrency = max_concurrency
        self.topology: Topology = settings.topology()

    @property
    def image_volume(self) -> str:
        return image_volume_name(self._settings.talos_version)

    # ------------------------------------------------------------------
    # init / plan
    # ------------------------------------------------------------------

    async def init(self) -> str:
        """Build and upload the boot volume, then initialize Terraform."""
        volume = await self._image_builder(self._settings)
        await self._provisioner.init()
        return volume

    async def _desired_documents(
        self, secrets: SecretMaterial, installer_image: str
    ) -> Dict[str, str]:
        role_documents = {
            role: await self._compiler.compile(role, secrets, installer_image)
            for role in self._roles()
        }
        return {
            node.name: specialize_for_node(role_documents[node.role], node)
            for node in self.topology.nodes
        }

    def _roles(self) -> List[NodeRole]:
        roles = [NodeRole.CONTROLLER]
        if self.topology.workers:
            roles.append(NodeRole.WORKER)
        return roles

    async def plan(self) -> Tuple[str, List[PlannedTask]]:
        """
        Preview the pending work: Terraform's own plan, then every apply-graph task
        with whether it would change anything. Nodes are not contacted and no
        secret material is generated.
        """
        terraform_plan = await self._provisioner.plan(self.topology, self.image_volume)
        state = await self._state_store.load()

        desired: Dict[str, str] = {}
        if self._secret_store.exists() and state.installer_image:
            secrets = await self._secret_store.load()
            verify_secret_material(secrets, state.secrets_digest)
            desired = {
                name: document_digest(text)
                for name, text in (
                    await self._desired_documents(secrets, state.installer_image)
                ).items()
            }

        planned = [
            PlannedTask(name="provision", status="pending", detail="see terraform plan"),
            PlannedTask(
                name="secrets",
                status="up-to-date" if self._secret_store.exists() else "pending",
            ),
        ]
        for node in self.topology.nodes:
            if state.is_applied(node.name, desired.get(node.name, "")):
                planned.append(PlannedTask(name=apply_task(node), status="up-to-date"))
            else:
                detail = (
                    "configuration changed"
                    if state.was_configured(node.name)
                    else "first configuration"
                )
                planned.append(
                    PlannedTask(name=apply_task(node), status="pending", detail=detail)
                )
        planned.append(
            PlannedTask(
                name="bootstrap",
                status="up-to-date" if state.bootstrapped else "pending",
                detail=f"on {self.topology.bootstrap_node.name}",
            )
        )
        planned.append(PlannedTask(name="health", status="pending"))
        return terraform_plan, planned

    # ------------------------------------------------------------------
    # apply
    # ------------------------------------------------------------------

    def build_apply_graph(self) -> TaskGraph:
        settings = self._settings
        topology = self.topology
        store = self._state_store
        apply_client = self._client_factory(settings.internal_talosconfig_path)
        graph = TaskGraph(max_concurrency=self._max_concurrency)
        ctx: Dict[str, Any] = {"documents": {}, "digests": {}}

        async def _provision() -> None:
            instances = await self._provisioner.provision(topology, self.image_volume)
            dropped: List[str] = []

            def _record(state: ClusterState) -> None:
                state.image_volume = self.image_volume
                dropped.extend(state.track_instances(instances))

            await store.update(_record)
            if dropped:
                logger.info(
                    "Forgetting configuration of removed or recreated nodes: %s",
                    ", ".join(dropped),
                )

        async def _secrets() -> SecretMaterial:
            secrets = await self._secret_store.ensure()
            current = await store.snapshot()
            verify_secret_material(secrets, current.secrets_digest)
            if current.secrets_digest is None:

                def _record(state: ClusterState) -> None:
                    state.secrets_digest = secrets.digest

                await store.update(_record)
            ctx["secrets"] = secrets
            return secrets

        async def _installer_image() -> str:
            image = await self._resolve_installer_image(settings)

            def _record(state: ClusterState) -> None:
                state.installer_image = image

            await store.update(_record)
            ctx["installer_image"] = image
            return image

        async def _client_config() -> None:
            await self._secret_store.write_client_config(
                ctx["secrets"], topology, settings.internal_talosconfig_path
            )

        def _compile(role: NodeRole) -> Callable[[], Awaitable[Document]]:
            async def _run() -> Document:
                document = await self._compiler.compile(
                    role, ctx["secrets"], ctx["installer_image"]
                )
                ctx["documents"][role] = document
                return document

            return _run

        def _ready(node: Node) -> Callable[[], Awaitable[None]]:
            async def _run() -> None:
                await self._provisioner.wait_ready(node)

            return _run

        def _apply(node: Node) -> Callable[[], Awaitable[bool]]:
            async def _run() -> bool:
                text = specialize_for_node(ctx["documents"][node.role], node)
                digest = document_digest(text)
                ctx["digests"][node.name] = digest

                current = await store.snapshot()
                if current.is_applied(node.name, digest):
                    logger.info("%s already has this configuration", node.name)
                    return False

                await apply_client.apply_config(
                    node, text, insecure=not current.was_configured(node.name)
                )

                def _record(state: ClusterState) -> None:
                    state.applied[node.name] = digest

                await store.update(_record)
                return True

            return _run

        async def _bootstrap() -> bool:
            current = await store.snapshot()
            if current.bootstrapped:
                logger.info("Cluster already bootstrapped, not bootstrapping again")
                return False

            not_ready = [
                n.name
                for n in topology.controllers
                if not current.is_applied(n.name, ctx["digests"].get(n.name, ""))
            ]
            if not_ready:
                raise BootstrapPreconditionError(
                    f"Controllers without their configuration: {', '.join(not_ready)}"
                )

            await apply_client.bootstrap(topology.bootstrap_node)

            def _record(state: ClusterState) -> None:
                state.bootstrapped = True

            await store.update(_record)
            return True

        async def _artifacts() -> None:
            os.makedirs(os.path.dirname(os.path.abspath(settings.talosconfig_path)), exist_ok=True)
            shutil.copyfile(settings.internal_talosconfig_path, settings.talosconfig_path)
            os.chmod(settings.talosconfig_path, 0o600)
            await apply_client.kubeconfig(
                topology.bootstrap_node, settings.kubeconfig_path
            )

        async def _health() -> None:
            await wait_for_health(
                self._client_factory(settings.talosconfig_path),
                topology,
                timeout=settings.health_timeout,
                interval=settings.health_interval,
            )

        graph.add("provision", _provision)
        graph.add("secrets", _secrets)
        graph.add("installer-image", _installer_image)
        graph.add("client-config", _client_config, depends_on=["secrets"])
        for role in self._roles():
            graph.add(
                config_task(role), _compile(role), depends_on=["secrets", "installer-image"]
            )
        for node in topology.nodes:
            graph.add(ready_task(node), _ready(node), depends_on=["provision"])
            graph.add(
                apply_task(node),
                _apply(node),
                depends_on=[ready_task(node), config_task(node.role), "client-config"],
            )
        graph.add(
            "bootstrap",
            _bootstrap,
            depends_on=[apply_task(n) for n in topology.controllers],
        )
        graph.add(
            "artifacts",
            _artifacts,
            depends_on=["bootstrap"] + [apply_task(n) for n in topology.nodes],
        )
        graph.add("health", _health, depends_on=["artifacts"])
        return graph

    async def apply(self) -> Dict[str, Any]:
        """Materialize the cluster; raises TaskError naming the first failed step."""
        await self._state_store.load()
        return await self.build_apply_graph().run()

    # ------------------------------------------------------------------
    # destroy / health / info / upgrade
    # ------------------------------------------------------------------

    async def destroy(self) -> None:
        """
        Tear down every provisioned resource and end the cluster lifetime (secret
        bundle and state go with it). The persisted artifacts are left behind and
        no longer valid.
        """
        await self._provisioner.destroy(self.topology, self.image_volume)
        self._secret_store.destroy()
        await self._state_store.clear()

    def _artifact_client(self) -> ManagementClient:
        path = self._settings.talosconfig_path
        if not os.path.isfile(path):
            raise MissingArtifactError(
                f"Client configuration {path} not found; run 'apply' first."
            )
        return self._client_factory(path)

    async def health(self) -> None:
        await wait_for_health(
            self._artifact_client(),
            self.topology,
            timeout=self._settings.health_timeout,
            interval=self._settings.health_interval,
        )

    async def info(self) -> List[NodeInfo]:
        return await collect_node_info(self._artifact_client(), self.topology)

    async def upgrade(self) -> str:
        """Upgrade every node to the installer image of the pinned version."""
        client = self._artifact_client()
        image = await self._resolve_installer_image(self._settings)
        await upgrade_cluster(
            client,
            self.topology,
            image,
            health_timeout=self._settings.health_timeout,
            health_interval=self._settings.health_interval,
        )

        def _record(state: ClusterState) -> None:
            state.installer_image = image

        await self._state_store.update(_record)
        return image
