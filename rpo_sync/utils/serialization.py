"""
Serialization Utilities

Sorted-set members are compared byte-for-byte by Redis, so values are
encoded as canonical JSON: sorted keys, compact separators, UTF-8 text.
"""

import json
from typing import Any


def _default_handler(obj: Any) -> Any:
    if hasattr(obj, 'isoformat'):
        return obj.isoformat()
    if hasattr(obj, '__dict__'):
        return obj.__dict__
    return str(obj)


def serialize_value(value: Any) -> str:
    """
    Serialize a Python value to a canonical JSON string.

    Datetimes and dates become ISO-8601 strings; Decimals and other scalars
    fall back to their string form.
    """
    return json.dumps(
        value,
        default=_default_handler,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    )


def deserialize_value(data: Any) -> Any:
    """Deserialize a cached JSON string (or bytes) back to a Python value."""
    if not data:
        return None
    if isinstance(data, bytes):
        data = data.decode('utf-8')
    return json.loads(data)
