"""Credential scrubbing for log records."""

import re
from typing import Any

REPLACEMENT = "***REDACTED***"

# Values under these field names are hidden outright (redis and SSH credentials).
SECRET_FIELDS = ("password", "passphrase", "acl_password")

_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r'(password|passwd|passphrase|token|secret)\s*[=:]\s*["\']?[^\s"\',]{4,}["\']?',
    r'(rediss?|ssh)://[^:/@\s]*:[^@\s]*@[^\s]+',  # URLs carrying user:password
    r'-----BEGIN\s+[A-Z ]*PRIVATE\s+KEY-----[\s\S]*?-----END\s+[A-Z ]*PRIVATE\s+KEY-----',
)]


def redact(text: str) -> str:
    if not text:
        return text
    for pattern in _PATTERNS:
        text = pattern.sub(REPLACEMENT, text)
    return text


def redact_value(value: Any) -> Any:
    """Scrub strings anywhere inside nested dicts, lists and tuples."""
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [redact_value(item) for item in value]
    return value


def redact_dict(data: dict) -> dict:
    return {
        key: REPLACEMENT if value and str(key).lower() in SECRET_FIELDS else redact_value(value)
        for key, value in data.items()
    }
