"""Non-destructive payload merging.

Task payloads are written by two parties: the runner that owns the task and
the engine when it records status-transition metadata. Every write is a
JSON merge patch (RFC 7396) applied to the stored payload, never a blind
overwrite:

- keys present in the patch replace the stored value
- nested objects are merged recursively
- a ``None`` value removes the key
- keys absent from the patch are preserved

SQLite's ``json_patch()`` implements the same algorithm, which lets the
SQLite store apply patches inside a single UPDATE statement.
"""

from __future__ import annotations

import copy
import json
from typing import Any

JsonDict = dict[str, Any]


def merge_payload(base: JsonDict, patch: JsonDict) -> JsonDict:
    """Return a new payload with ``patch`` merged over ``base``.

    Neither argument is modified.

    Example:
        >>> merge_payload({"a": 1, "b": {"x": 1}}, {"b": {"y": 2}, "a": None})
        {'b': {'x': 1, 'y': 2}}
    """
    result = copy.deepcopy(base) if isinstance(base, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict):
            current = result.get(key)
            result[key] = merge_payload(current if isinstance(current, dict) else {}, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def encode_payload(payload: JsonDict) -> str:
    """Serialize a payload to JSON text.

    Raises:
        TypeError: If the payload is not a dict
        ValueError: If the payload holds values JSON cannot represent
    """
    if not isinstance(payload, dict):
        raise TypeError(f"Payload must be a dict, got {type(payload).__name__}")
    return json.dumps(payload, allow_nan=False, separators=(",", ":"))


def decode_payload(text: str | bytes | None) -> JsonDict:
    """Parse stored JSON text back into a payload dict."""
    if not text:
        return {}
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"Stored payload is not a JSON object: {value!r}")
    return value
