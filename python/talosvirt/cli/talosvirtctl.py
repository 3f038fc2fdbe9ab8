#!/usr/bin/env python3
"""
talosvirt/cli/talosvirtctl.py

Entry point for the cluster lifecycle:
  - init        build and upload the boot volume, initialize Terraform
  - plan        preview Terraform changes and the pending cluster tasks
  - apply       provision, configure, bootstrap, persist artifacts, health check
  - plan-apply  plan, then apply
  - health      health check against the persisted artifacts
  - info        installer image and OS release per node
  - upgrade     sequential, data-preserving upgrade to the pinned version
  - destroy     tear everything down

Usage: talosvirtctl <command>
Settings come from TALOSVIRT_* environment variables.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Callable, Coroutine, Dict, List, Optional

from talosvirt.deployment.cluster import ClusterOrchestrator
from talosvirt.deployment.provisioner import TerraformProvisioner
from talosvirt.deployment.state import ClusterStateStore
from talosvirt.models.settings import ClusterSettings
from talosvirt.talos.client import TalosctlClient
from talosvirt.talos.config import ConfigurationCompiler
from talosvirt.talos.secrets import SecretMaterialStore

USAGE = "Usage: talosvirtctl <apply|destroy|health|info|init|plan|plan-apply|upgrade>"


def build_orchestrator(settings: ClusterSettings) -> ClusterOrchestrator:
    return ClusterOrchestrator(
        settings,
        client_factory=TalosctlClient,
        provisioner=TerraformProvisioner(settings),
        secret_store=SecretMaterialStore(settings),
        compiler=ConfigurationCompiler(settings),
        state_store=ClusterStateStore(settings.state_path),
    )


#
# Command handlers
#
async def run_init(orchestrator: ClusterOrchestrator) -> None:
    volume = await orchestrator.init()
    print(f"Boot volume {volume} uploaded, Terraform initialized.")


async def run_plan(orchestrator: ClusterOrchestrator) -> None:
    terraform_plan, tasks = await orchestrator.plan()
    print(terraform_plan)
    for task in tasks:
        suffix = f" ({task.detail})" if task.detail else ""
        print(f"  {task.status:<10} {task.name}{suffix}")


async def run_apply(orchestrator: ClusterOrchestrator) -> None:
    await orchestrator.apply()
    print("Cluster applied and healthy.")


async def run_plan_apply(orchestrator: ClusterOrchestrator) -> None:
    await run_plan(orchestrator)
    await run_apply(orchestrator)


async def run_health(orchestrator: ClusterOrchestrator) -> None:
    await orchestrator.health()
    print("Cluster healthy.")


async def run_info(orchestrator: ClusterOrchestrator) -> None:
    for info in await orchestrator.info():
        print(
            f"{info.name} ({info.address}): "
            f"installer={info.installer_image or '-'} os={info.os_release or '-'}"
        )


async def run_upgrade(orchestrator: ClusterOrchestrator) -> None:
    image = await orchestrator.upgrade()
    print(f"All nodes upgraded to {image}.")


async def run_destroy(orchestrator: ClusterOrchestrator) -> None:
    await orchestrator.destroy()
    print("Cluster destroyed.")


COMMANDS: Dict[str, Callable[[ClusterOrchestrator], Coroutine[Any, Any, None]]] = {
    "apply": run_apply,
    "destroy": run_destroy,
    "health": run_health,
    "info": run_info,
    "init": run_init,
    "plan": run_plan,
    "plan-apply": run_plan_apply,
    "upgrade": run_upgrade,
}


def configure_logging(settings: ClusterSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        filename=settings.log_path,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or args[0] not in COMMANDS:
        print(USAGE, file=sys.stderr)
        return 1

    try:
        settings = ClusterSettings()
        configure_logging(settings)
        asyncio.run(COMMANDS[args[0]](build_orchestrator(settings)))
    except Exception as exc:
        logging.getLogger(__name__).debug("Command %s failed", args[0], exc_info=True)
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
