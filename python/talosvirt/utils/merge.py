"""
talosvirt/utils/merge.py

Overlay merging for machine configuration documents.

Overlays are applied left to right and the last applied value wins:
  - mapping + mapping => merged key by key, recursively
  - anything else     => the later value replaces the earlier one (lists included)

Inputs are never mutated; every result is a fresh structure, so a role-level
document can be shared by all nodes of that role and specialized per node.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Mapping, Sequence


def merge_overlay(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Return `base` with `overlay` merged on top of it.

    Args:
        base: The document being overlaid.
        overlay: The fragment whose values win on conflicts.

    Returns:
        A new dictionary; neither argument is modified.
    """
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_overlay(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_overlays(
    base: Mapping[str, Any], overlays: Sequence[Mapping[str, Any]]
) -> Dict[str, Any]:
    """Apply `overlays` to `base` in order (the last overlay has the final say)."""
    result: Dict[str, Any] = copy.deepcopy(dict(base))
    for overlay in overlays:
        result = merge_overlay(result, overlay)
    return result
