"""
Flow document (de)serialization.

The persisted shape is the editor's JSON: camelCase keys, ``nodes`` and
``edges`` as arrays. Rows written by older builds stored ``nodes``/``edges``
as JSON-encoded strings and used legacy node type names; both are accepted
on load.
"""
from __future__ import annotations

import json
from typing import Any, Optional, Union

from models.schemas import Flow


def flow_to_dict(flow: Flow) -> dict[str, Any]:
    return flow.model_dump(mode="json", by_alias=True)


def serialize(flow: Flow, indent: Optional[int] = None) -> str:
    return json.dumps(flow_to_dict(flow), indent=indent, ensure_ascii=False)


def deserialize(payload: Union[str, bytes, dict[str, Any]]) -> Flow:
    """Load a Flow from JSON text or an already-decoded dict. Raises pydantic.ValidationError."""
    raw = json.loads(payload) if isinstance(payload, (str, bytes)) else dict(payload)
    for key in ("nodes", "edges"):
        if isinstance(raw.get(key), str):
            raw[key] = json.loads(raw[key]) if raw[key].strip() else []
        elif raw.get(key) is None:
            raw[key] = []
    return Flow.model_validate(raw)
