"""
talosvirt/models/terraform.py

The slice of `terraform show -json` the provisioner reads: root module outputs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OutputValue(BaseModel):
    value: Any
    sensitive: bool = False


class StateValues(BaseModel):
    outputs: Dict[str, OutputValue] = Field(default_factory=dict)


class TerraformState(BaseModel):
    """
    Attributes:
        format_version: JSON format version reported by Terraform.
        terraform_version: Terraform release that wrote the state.
        values: Root outputs. Absent from the JSON of an empty workspace.
    """

    format_version: str
    terraform_version: Optional[str] = None
    values: StateValues = Field(default_factory=StateValues)

    def output(self, name: str) -> Any:
        """Raw value of root output `name`.

        Raises:
            KeyError: If the output does not exist (nothing provisioned yet).
        """
        if name not in self.values.outputs:
            raise KeyError(f"Output '{name}' not found in Terraform state.")
        return self.values.outputs[name].value
