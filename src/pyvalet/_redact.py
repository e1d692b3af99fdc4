"""Helpers for safe debug logging.

pyvalet handles API credentials, QR tokens (bearer credentials for a car)
and owner phone numbers. This module redacts sensitive fields before they
are emitted in DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "token",
        "accesstoken",
        "access_token",
        "verifytoken",
        "verify_token",
        "hub.verify_token",
        "apisecret",
        "api_secret",
        "signature",
        "authorization",
        "cookie",
        "scantext",
        "scan_text",
        "qrpayload",
        "qr_payload",
    }
)


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if key.lower() in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)


def redact_scan_text(text: str) -> str:
    """Mask the token part of a ``qr_scan:`` message for logging."""
    head, sep, rest = text.partition(":")
    if not sep:
        return text
    token, sep2, tail = rest.partition(":")
    masked = f"{token[:4]}…" if token else token
    return f"{head}:{masked}{sep2}{tail}"
