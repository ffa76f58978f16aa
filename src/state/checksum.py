# src/state/checksum.py - v1
"""Canonical serialization and SHA-256 checksums for phase payloads.

The checksum is computed over the canonical JSON form (sorted keys,
compact separators), so it is independent of dict ordering and of the
indentation used in the stored file.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Deterministic JSON text for a payload.

    Raises TypeError for values JSON cannot represent.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def json_violations(value: Any, path: str = "payload") -> list[str]:
    """Paths in ``value`` that would not survive a JSON round trip unchanged.

    Allowed: dict with str keys, list, str, int, float, bool, None.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return []
    if isinstance(value, list):
        found: list[str] = []
        for i, item in enumerate(value):
            found.extend(json_violations(item, f"{path}[{i}]"))
        return found
    if isinstance(value, dict):
        found = []
        for key, item in value.items():
            if not isinstance(key, str):
                found.append(f"{path}: non-string key {key!r}")
                continue
            found.extend(json_violations(item, f"{path}.{key}"))
        return found
    return [f"{path}: not JSON-serializable ({type(value).__name__})"]


def compute_checksum(payload: Any) -> str:
    """SHA-256 hex digest of the canonical payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def payload_size(payload: Any) -> int:
    """Size in bytes of the canonical payload."""
    return len(canonical_json(payload).encode("utf-8"))


def verify_checksum(payload: Any, expected: str) -> tuple[bool, str]:
    """Return (matches, actual_checksum)."""
    actual = compute_checksum(payload)
    return actual == expected, actual
