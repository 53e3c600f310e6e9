"""JSON merge patch (RFC 7396) for chart values."""

import copy
from typing import Any


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply ``patch`` to ``target`` and return a new document.

    Objects merge key by key recursively, ``None`` deletes a key, and any
    other value (arrays included) replaces the target wholesale. Neither
    argument is modified.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result
