import hashlib
import json
from datetime import datetime
from typing import Any


def _canonical_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value, key=str)
    raise TypeError(f"value of type {type(value).__name__} is not hashable metadata")


def canonical_json(data: Any) -> str:
    """Serialize ``data`` so equal content always yields identical text.

    Keys are sorted at every level and whitespace is fixed, so the source
    record's field order never leaks into the result.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_canonical_default)


def content_hash(data: Any) -> str:
    """SHA-1 hex digest of the canonical JSON form of ``data``."""
    return hashlib.sha1(canonical_json(data).encode("utf-8")).hexdigest()
