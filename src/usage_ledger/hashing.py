"""Content and canonical hashing helpers."""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Any


def sha256_hex(data: bytes | str) -> str:
    """Hex SHA-256 digest of raw bytes (strings are UTF-8 encoded)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def canonicalize(value: Any) -> Any:
    """Return a JSON-ready structure with deterministic ordering.

    - Mappings: keys sorted (keys are coerced to str)
    - Lists/tuples: elements canonicalized, then sorted by their JSON text
    - Dates and datetimes: ISO 8601 strings
    """
    if isinstance(value, dict):
        return {str(k): canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        elements = [canonicalize(v) for v in value]
        return [v for _, v in sorted(((_json_dumps(v), v) for v in elements), key=lambda pair: pair[0])]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def canonical_json(value: Any) -> str:
    return _json_dumps(canonicalize(value))


def stable_hash(value: Any) -> str:
    """Order-insensitive SHA-256 digest of a structured value."""
    return sha256_hex(canonical_json(value))
