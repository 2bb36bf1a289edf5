from __future__ import annotations

import re
from typing import Any, Mapping


# 2547XXXXXXXX / 2541XXXXXXXX as Daraja sends it, with or without '+',
# and the local 07XXXXXXXX / 01XXXXXXXX form payers type in
_MSISDN_RE = re.compile(r"\+?\b254[17]\d{8}\b|\b0[17]\d{8}\b|\+\d{6,15}")
_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_BEARER_MARKERS = ("access_token", "bearer")

# Daraja's STK "Password" is base64(shortcode + passkey + timestamp)
_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "cookie",
    "secret",
    "password",
    "passkey",
    "consumer_key",
)

REDACTED = "[REDACTED]"


def mask_phone(value: str) -> str:
    if len(value) <= 8:
        return value
    return f"{value[:6]}****{value[-2:]}"


def redact_text(value: str) -> str:
    lowered = value.lower()
    if any(marker in lowered for marker in _BEARER_MARKERS):
        return REDACTED

    masked = _EMAIL_RE.sub(lambda m: f"{m.group(1)}***{m.group(3)}", value)
    return _MSISDN_RE.sub(lambda m: mask_phone(m.group(0)), masked)


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    # callback metadata carries PhoneNumber as a bare number
    if isinstance(value, int) and not isinstance(value, bool) and _MSISDN_RE.fullmatch(str(value)):
        return mask_phone(str(value))
    return value


def redact_dict(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {k: REDACTED if _is_sensitive_key(k) else redact_value(v) for k, v in payload.items()}


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: "***" if _is_sensitive_key(k) else redact_text(v) for k, v in headers.items()}
