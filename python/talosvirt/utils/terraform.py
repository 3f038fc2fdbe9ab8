"""
talosvirt/utils/terraform.py

Terraform commands (init, plan, apply, destroy, show) for the node provisioner
root, plus helpers for building command arrays. Variables are handed over in
an ephemeral `.auto.tfvars.json` file so they never land in the Terraform
directory.

Exports:
    - init_terraform
    - plan_terraform
    - apply_terraform
    - destroy_terraform
    - read_terraform_state
    - get_output_from_state
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Type, TypeVar

from talosvirt.models.terraform import TerraformState
from talosvirt.models.validator import validate_type
from talosvirt.utils.async_command_runner import run_command
from talosvirt.utils.ephemeral_file import ephemeral_document

T = TypeVar("T")

_VARIABLE_ACTIONS = ("plan", "apply", "destroy")


def _libvirt_error_parser(stderr: str) -> Optional[str]:
    """Turn the usual libvirt connection failure into a short message."""
    low = stderr.lower()
    if "failed to connect socket" in low or "failed to connect to the hypervisor" in low:
        return (
            "Terraform could not reach libvirt. Check that libvirtd is running "
            "and that the current user may use qemu:///system."
        )
    return None


def _make_base_command(action: str) -> List[str]:
    """Builds the Terraform command for `action`, without variable flags.

    Args:
        action: "init", "plan", "apply", "destroy" or "show".

    Returns:
        A list of command tokens, e.g. ["terraform","apply","-no-color","-auto-approve"].
    """
    base = ["terraform", action, "-no-color"]
    show_flags = ["-json"] if action == "show" else []
    approve_flags = ["-auto-approve"] if action in ("apply", "destroy") else []
    init_flags = ["-upgrade"] if action == "init" else []
    return base + show_flags + approve_flags + init_flags


@asynccontextmanager
async def maybe_tfvars(
    action: str, variables: Optional[Dict[str, Any]]
) -> AsyncGenerator[List[str], None]:
    """
    Yields `["-var-file", <ephemeral path>]` for actions that take variables, or an
    empty list when there is nothing to pass.
    """
    if action not in _VARIABLE_ACTIONS or not variables:
        yield []
        return

    async with ephemeral_document(
        "talosvirt.auto.tfvars.json", json.dumps(variables, indent=2), prefix="tfvars-"
    ) as tfvars_file:
        yield ["-var-file", tfvars_file]


async def _terraform_command(
    action: str,
    terraform_dir: str,
    env: Optional[Dict[str, str]],
    variables: Optional[Dict[str, Any]],
    sensitive: bool,
    capture_output: bool,
) -> Optional[str]:
    """
    Internal runner for 'terraform <action>' in `terraform_dir`.

    Raises:
        ValueError: If `terraform_dir` does not exist.
        CommandError: If Terraform exits non-zero.
    """
    if not os.path.isdir(terraform_dir):
        raise ValueError(f"Terraform directory not found: {terraform_dir}")

    async with maybe_tfvars(action, variables) as tfvars_args:
        output = await run_command(
            _make_base_command(action) + tfvars_args,
            sensitive=sensitive,
            env=env,
            cwd=terraform_dir,
            error_parser=_libvirt_error_parser,
        )
    return output if capture_output else None


async def init_terraform(
    terraform_dir: str, env: Optional[Dict[str, str]] = None
) -> None:
    """Run 'terraform init' (provider download, backend setup)."""
    await _terraform_command(
        "init", terraform_dir, env, variables=None, sensitive=False, capture_output=False
    )


async def plan_terraform(
    terraform_dir: str,
    variables: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
) -> str:
    """Run 'terraform plan' and return its human-readable output."""
    output = await _terraform_command(
        "plan", terraform_dir, env, variables, sensitive=False, capture_output=True
    )
    return output or ""


async def apply_terraform(
    terraform_dir: str,
    variables: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
) -> None:
    """Run 'terraform apply -auto-approve' with the given variables."""
    await _terraform_command(
        "apply", terraform_dir, env, variables, sensitive=False, capture_output=False
    )


async def destroy_terraform(
    terraform_dir: str,
    variables: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
) -> None:
    """Run 'terraform destroy -auto-approve' with the given variables."""
    await _terraform_command(
        "destroy", terraform_dir, env, variables, sensitive=False, capture_output=False
    )


async def read_terraform_state(
    terraform_dir: str, env: Optional[Dict[str, str]] = None
) -> TerraformState:
    """Run 'terraform show -json' and parse it.

    Raises:
        RuntimeError: If the output is empty.
    """
    output = await _terraform_command(
        "show", terraform_dir, env, variables=None, sensitive=True, capture_output=True
    )
    if not output:
        raise RuntimeError("Failed to retrieve terraform state (empty output).")
    return TerraformState.model_validate_json(output)


def get_output_from_state(
    state: TerraformState, output_name: str, output_type: Type[T]
) -> T:
    """Retrieve a typed root output from a TerraformState.

    Raises:
        KeyError: If the output is missing.
        ValueError: If the value does not fit `output_type`.
    """
    return validate_type(
        state.output(output_name), output_type, source=f"terraform output '{output_name}'"
    )
