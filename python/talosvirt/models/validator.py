"""
talosvirt/models/validator.py

Checks untyped data (parsed JSON/YAML handed back by Terraform or talosctl)
against a type pydantic understands.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T], source: str = "data") -> T:
    """
    Args:
        obj: The parsed object.
        expected_type: Pydantic model, typing construct or builtin.
        source: Where `obj` came from, used in the error (e.g. "terraform output 'nodes'").

    Raises:
        ValueError: If `obj` does not fit `expected_type`.
    """
    adapter: TypeAdapter[T] = TypeAdapter(expected_type)
    try:
        return adapter.validate_python(obj)
    except ValidationError as exc:
        raise ValueError(
            f"Unexpected shape of {source} ({exc.error_count()} error(s)): {exc}"
        ) from exc
