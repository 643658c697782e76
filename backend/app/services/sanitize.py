from __future__ import annotations

import re
from typing import Any, Optional

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]*>")
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)

WHATSAPP_JID_SUFFIXES = ("@c.us", "@s.whatsapp.net", "@g.us")
SENSITIVE_KEYS = ("password", "token", "api_key", "secret", "authorization")
REDACTED = "[REDACTED]"


def normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def sanitize_input(value: str) -> str:
    cleaned = _SCRIPT_BLOCK.sub("", value.strip())
    cleaned = _HTML_TAG.sub("", cleaned)
    cleaned = _JS_SCHEME.sub("", cleaned)
    return _INLINE_HANDLER.sub("", cleaned)


def sanitize_phone(phone: str) -> str:
    return "".join(char for char in phone if char.isdigit())


def sanitize_email(email: str) -> str:
    return email.strip().lower()


def canonicalize_whatsapp_phone(sender: str) -> str:
    value = sender.strip()
    for suffix in WHATSAPP_JID_SUFFIXES:
        if value.endswith(suffix):
            value = value[: -len(suffix)]
            break
    return sanitize_phone(value)


def redact_sensitive_data(data: Any) -> Any:
    if isinstance(data, list):
        return [redact_sensitive_data(item) for item in data]
    if not isinstance(data, dict):
        return data
    redacted = {}
    for key, value in data.items():
        if any(marker in str(key).lower() for marker in SENSITIVE_KEYS):
            redacted[key] = REDACTED
        else:
            redacted[key] = redact_sensitive_data(value)
    return redacted
