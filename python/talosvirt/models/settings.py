# talosvirt/models/settings.py

import os
from typing import Dict, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings

from talosvirt.models.topology import Topology, generate_topology


class ClusterSettings(BaseSettings):
    """
    Pydantic settings for one cluster. Every field maps to an environment
    variable prefixed with `TALOSVIRT_`, e.g. `TALOSVIRT_WORKER_COUNT=3`.

    The topology is validated when the settings are built, so a bad count or
    prefix fails before any command touches the outside world.
    """

    cluster_name: str = "example"
    controller_count: int = 1
    worker_count: int = 1
    network_prefix: str = "10.17.3"

    talos_version: str = "1.8.3"
    qemu_guest_agent_version: str = "9.1.2"
    kubernetes_version: str = "1.31.2"
    cilium_version: str = "1.16.4"

    storage_pool: str = "default"
    install_disk: str = "/dev/vda"
    image_factory_url: str = "https://factory.talos.dev"

    terraform_dir: str = "terraform"
    state_dir: str = ".talosvirt"
    talosconfig_path: str = "talosconfig.yml"
    kubeconfig_path: str = "kubeconfig.yml"

    health_timeout: float = 600.0
    health_interval: float = 10.0

    # Process-wide switches, no effect on the orchestration itself.
    checkpoint_disable: bool = True
    terraform_log: str = "DEBUG"
    terraform_log_path: str = "terraform.log"
    log_level: str = "INFO"
    log_path: Optional[str] = None

    class Config:
        env_prefix = "TALOSVIRT_"

    @model_validator(mode="after")
    def check_topology(self) -> "ClusterSettings":
        """Reject topologies that cannot be laid out (raises TopologyError)."""
        self.topology()
        return self

    def topology(self) -> Topology:
        return generate_topology(
            self.controller_count, self.worker_count, self.network_prefix
        )

    @property
    def cluster_vip(self) -> str:
        """Virtual IP shared by the controllers for the Kubernetes API."""
        return f"{self.network_prefix}.9"

    @property
    def cluster_endpoint(self) -> str:
        return f"https://{self.cluster_vip}:6443"

    @property
    def load_balancer_range(self) -> Dict[str, str]:
        return {
            "start": f"{self.network_prefix}.130",
            "stop": f"{self.network_prefix}.230",
        }

    @property
    def secrets_path(self) -> str:
        return os.path.join(self.state_dir, "secrets.yaml")

    @property
    def state_path(self) -> str:
        return os.path.join(self.state_dir, "state.json")

    @property
    def internal_talosconfig_path(self) -> str:
        """Client configuration used while `apply` is still in progress."""
        return os.path.join(self.state_dir, "talosconfig.yml")

    @property
    def build_dir(self) -> str:
        return os.path.join(self.state_dir, "build")

    def terraform_env(self) -> Dict[str, str]:
        """Environment exported to every Terraform invocation."""
        env = {
            "TF_LOG": self.terraform_log,
            "TF_LOG_PATH": self.terraform_log_path,
        }
        if self.checkpoint_disable:
            env["CHECKPOINT_DISABLE"] = "1"
        return env
