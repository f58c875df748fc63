"""Redaction helpers for safe logging.

Phone numbers, WhatsApp addresses and message text are PII: every value that
reaches a log line goes through safe_log_context().
"""

import re
from typing import Any

# Order matters: addresses contain phone-like digit runs
_JID_PATTERN = re.compile(r"[\w.\-]+@(?:s\.whatsapp\.net|lid|g\.us|broadcast|newsletter|c\.us)")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"

# Length of identifier prefixes allowed in logs
ID_PREFIX_LEN = 8


def redact_string(value: str) -> str:
    """Redact PII patterns from a string."""
    result = _JID_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Structure only, never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}


def id_prefix(value: str | None) -> str | None:
    """Shorten an opaque identifier (message id, contact id) for logging."""
    if not value:
        return None
    return value[:ID_PREFIX_LEN]
