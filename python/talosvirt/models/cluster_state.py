"""
talosvirt/models/cluster_state.py

Durable reconcile markers for one cluster lifetime. Together with the secret
bundle this is the only state the orchestrator keeps; node identities and
configurations are recomputed on every run and compared against it.
"""

from __future__ import annotations

from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class ClusterState(BaseModel):
    """
    Attributes:
        bootstrapped: True once the bootstrap call succeeded. Never reset except
            by destroying the cluster.
        applied: node name => sha256 of the last configuration document applied
            successfully to that node.
        instances: node name => id of the VM instance the `applied` marker
            belongs to.
        secrets_digest: sha256 of the secret bundle the cluster was built from.
        image_volume: Name of the boot volume the nodes were provisioned from.
        installer_image: Installer image the nodes install/upgrade from.
    """

    bootstrapped: bool = False
    applied: Dict[str, str] = Field(default_factory=dict)
    instances: Dict[str, str] = Field(default_factory=dict)
    secrets_digest: Optional[str] = None
    image_volume: Optional[str] = None
    installer_image: Optional[str] = None

    def is_applied(self, node_name: str, digest: str) -> bool:
        return self.applied.get(node_name) == digest

    def was_configured(self, node_name: str) -> bool:
        """True if the node ever accepted a configuration (left maintenance mode)."""
        return node_name in self.applied

    def track_instances(self, instances: Dict[str, str]) -> List[str]:
        """
        Replace the provisioned instance set. A node that is gone, or whose VM was
        recreated, boots into maintenance mode again, so its applied marker is
        dropped.

        Returns:
            List[str]: Names whose applied marker was dropped.
        """
        dropped = sorted(
            name
            for name in self.applied
            if name not in instances or self.instances.get(name) != instances[name]
        )
        for name in dropped:
            del self.applied[name]
        self.instances = dict(instances)
        return dropped
