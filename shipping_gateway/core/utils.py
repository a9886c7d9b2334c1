"""
Shared utilities for the shipping gateway.
"""
import hashlib
import json
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 carrier timestamp into an aware UTC datetime.

    Carriers send "Z" suffixes, explicit offsets, or naive local strings.
    Naive values are treated as UTC. Returns None for empty input.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Unserializable value: {type(value).__name__}")


def stable_digest(payload: Any) -> str:
    """SHA-256 of a canonical JSON rendering (sorted keys)."""
    encoded = json.dumps(payload, sort_keys=True, default=_json_default, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


_REDACTIONS = [
    # Bearer / Basic credentials
    (r'\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+', r'\1 [REDACTED]'),
    (r'"(access_token|client_secret|api_secret|password)"\s*:\s*"[^"]*"', r'"\1": "[REDACTED]"'),
    # Emails
    (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[EMAIL]'),
    # Phone numbers
    (r'\+\d{1,3}[-.\s]?\d{1,4}[-.\s]?\d{1,4}[-.\s]?\d{1,9}\b', '[PHONE]'),
    (r'\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b', '[PHONE]'),
]


def sanitize_for_logging(text: Optional[str], max_length: int = 500) -> str:
    """
    Remove credentials and contact PII from carrier payloads before logging.

    Args:
        text: Raw response body or message
        max_length: Maximum length of result

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ""

    sanitized = text[:max_length]
    for pattern, replacement in _REDACTIONS:
        sanitized = re.sub(pattern, replacement, sanitized)
    return sanitized
