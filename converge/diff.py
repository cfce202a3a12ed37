import json
from typing import Any, Dict, List, Optional

from converge.models.expression import UNKNOWN, contains_unknown
from converge.models.plan import AttributeDiff
from converge.providers.base import ResourceSchema


def _normalize(value: Any) -> Any:
    """Policy documents may be declared as JSON text or as a mapping."""
    if isinstance(value, str) and value.lstrip().startswith(("{", "[")):
        try:
            return json.loads(value)
        except ValueError:
            return value
    if isinstance(value, tuple):
        return [_normalize(v) for v in value]
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    return value


def compute_diff(
    schema: ResourceSchema,
    desired: Dict[str, Any],
    live: Optional[Dict[str, Any]],
) -> List[AttributeDiff]:
    """
    Attribute-level differences between desired inputs and live attributes.

    Computed outputs are never diffed. A desired value that is not known yet
    always counts as a change.
    """
    live = live or {}
    diffs = []
    for key in sorted(desired):
        if key in schema.outputs and key not in schema.inputs:
            continue
        after = desired[key]
        before = live.get(key)
        if after is UNKNOWN or contains_unknown(after) or _normalize(before) != _normalize(after):
            diffs.append(AttributeDiff(
                attribute=key,
                before=before,
                after=after,
                requires_replace=key in schema.immutable,
            ))
    return diffs


def creation_diff(desired: Dict[str, Any]) -> List[AttributeDiff]:
    return [AttributeDiff(attribute=k, before=None, after=v) for k, v in sorted(desired.items())]
