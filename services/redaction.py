from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
# international (+234...) and local (080...) phone numbers
_PHONE_RE = re.compile(r"(?<![\w-])(\+\d{8,15}|0\d{9,10})\b")

# wallet addresses and card/bank numbers are never logged in full
_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "password",
    "key",
)
_MASK_TAIL_KEYS = ("account_number", "wallet_address", "crypto_sender")


def _mask_email(match: re.Match) -> str:
    return f"{match.group(1)}***{match.group(3)}"


def _mask_phone(match: re.Match) -> str:
    value = match.group(0)
    return f"{value[:4]}****{value[-2:]}"


def mask_tail(value: str, keep: int = 4) -> str:
    if len(value) <= keep:
        return "*" * len(value)
    return "*" * (len(value) - keep) + value[-keep:]


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    return _PHONE_RE.sub(_mask_phone, masked)


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        elif k in _MASK_TAIL_KEYS and isinstance(v, str):
            out[k] = mask_tail(v)
        else:
            out[k] = redact_value(v)
    return out
