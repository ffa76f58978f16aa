# src/audit/redactor.py - v1
"""Credential redaction for audit details and log output.

Two masks:
  - secret-valued keys (token, password, secret, key, ...): full mask
  - identifier-valued keys (account id, zone id): first 8 chars kept
Free-text strings are scanned for ``name=value`` / ``name: value`` pairs.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"
CIRCULAR = "[CIRCULAR REFERENCE]"
PARTIAL_KEEP = 8

SENSITIVE_KEY_PARTS: tuple[str, ...] = (
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "authkey",
    "privatekey",
    "private_key",
    "credential",
    "key",
)
PARTIAL_KEY_PARTS: tuple[str, ...] = ("accountid", "account_id", "zoneid", "zone_id")

_TEXT_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(CLOUDFLARE_API_TOKEN=?)(\w{20,})", re.IGNORECASE), r"\1" + REDACTED),
    (
        re.compile(
            r"(account[_-]?id|zone[_-]?id)([\"']?\s*[:=]\s*[\"']?)([a-zA-Z0-9]{8})([a-zA-Z0-9]*)",
            re.IGNORECASE,
        ),
        r"\1\2\3" + REDACTED,
    ),
    (
        re.compile(
            r"(api[_-]?token|api[_-]?key|auth[_-]?token|token)([\"']?\s*[:=]\s*)([a-zA-Z0-9_\-.]{6,})",
            re.IGNORECASE,
        ),
        r"\1\2" + REDACTED,
    ),
    (
        re.compile(r"(password|passwd|pwd)([\"']?\s*[:=]\s*)([^\"'\s,;]{4,})", re.IGNORECASE),
        r"\1\2" + REDACTED,
    ),
    (
        re.compile(r"(secret)([\"']?\s*[:=]\s*)([a-zA-Z0-9_\-]{6,})", re.IGNORECASE),
        r"\1\2" + REDACTED,
    ),
]


def _normalized(key: str) -> str:
    return key.lower().replace("-", "_")


def is_partial_key(key: str) -> bool:
    k = _normalized(key)
    return any(part in k for part in PARTIAL_KEY_PARTS)


def is_sensitive_key(key: str) -> bool:
    k = _normalized(key)
    if is_partial_key(k):
        return False
    return any(part in k for part in SENSITIVE_KEY_PARTS)


def mask_partial(value: str) -> str:
    """Keep the first 8 characters of an identifier."""
    if len(value) <= PARTIAL_KEEP:
        return REDACTED
    return value[:PARTIAL_KEEP] + REDACTED


def redact_text(text: str) -> str:
    """Pattern-based redaction of credentials embedded in free text."""
    for pattern, replacement in _TEXT_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _mask_identifier(value: Any, seen: set[int]) -> Any:
    # account/zone ids may arrive as numbers or lists of them
    if isinstance(value, (list, tuple, set)):
        if id(value) in seen:
            return CIRCULAR
        return [_mask_identifier(item, seen | {id(value)}) for item in value]
    if value is None or isinstance(value, (bool, dict)):
        return redact(value, seen)
    return mask_partial(str(value))


def redact(value: Any, _seen: set[int] | None = None) -> Any:
    """Return a redacted deep copy of ``value``."""
    seen = _seen if _seen is not None else set()

    if isinstance(value, str):
        return redact_text(value)

    if isinstance(value, (dict, list, tuple, set)):
        if id(value) in seen:
            return CIRCULAR
        seen = seen | {id(value)}

    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            skey = str(key)
            if is_partial_key(skey):
                out[skey] = _mask_identifier(item, seen)
            elif is_sensitive_key(skey):
                if isinstance(item, (list, tuple)):
                    out[skey] = [REDACTED for _ in item]
                elif item is None or isinstance(item, bool):
                    out[skey] = item
                else:
                    out[skey] = REDACTED
            else:
                out[skey] = redact(item, seen)
        return out

    if isinstance(value, (list, tuple, set)):
        return [redact(item, seen) for item in value]

    return value
