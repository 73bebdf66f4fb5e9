"""
Security module for SnagLink.

Provides constant-time comparison, input validation, caller
identification and log sanitization.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Union

from .config import PIN_MAX_LENGTH, PIN_MIN_LENGTH
from .models import AccessLevel, CallerInfo


# ============================================================
# Constant-Time Comparison
# ============================================================

def constant_time_equal(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two secrets without leaking where they first differ.

    Every byte position up to the longer input's length is visited,
    with missing bytes read as zero, and the length difference is folded
    into the accumulator so unequal lengths never short-circuit.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')

    len_a = len(a)
    len_b = len(b)
    result = len_a ^ len_b
    for i in range(max(len_a, len_b)):
        x = a[i] if i < len_a else 0
        y = b[i] if i < len_b else 0
        result |= x ^ y
    return result == 0


# ============================================================
# Input Validation
# ============================================================

PIN_PATTERN = re.compile(r'^[0-9]+$')
IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,64}$')
TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_-]{16,128}$')
SLUG_PATTERN = re.compile(r'^[a-z0-9]{3}-[a-z0-9]{6,10}$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_pin(value: Any) -> str:
    """
    Validate a PIN chosen at link creation (4-8 digits).

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError("pin", "must be a string")
    if not (PIN_MIN_LENGTH <= len(value) <= PIN_MAX_LENGTH):
        raise ValidationError("pin", f"must be between {PIN_MIN_LENGTH} and {PIN_MAX_LENGTH} digits")
    if not PIN_PATTERN.match(value):
        raise ValidationError("pin", "must contain only digits")
    return value


def validate_pin_attempt(value: Any) -> str:
    """Validate a submitted PIN; only emptiness and type are checked."""
    if not isinstance(value, str) or not value:
        raise ValidationError("pin", "is required")
    if len(value) > 64:
        raise ValidationError("pin", "is too long")
    return value


def validate_access_level(value: Any) -> AccessLevel:
    try:
        return AccessLevel(value)
    except ValueError:
        raise ValidationError("access_level", "must be one of: view, update, full")


def validate_identifier(value: Any, field_name: str) -> str:
    """Validate an opaque record identifier (uuid, slug-like id)."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_identifier_list(values: Any, field_name: str) -> List[str]:
    if not isinstance(values, list) or not values:
        raise ValidationError(field_name, "at least one identifier is required")
    return [validate_identifier(v, f"{field_name}[{i}]") for i, v in enumerate(values)]


def validate_future_epoch(value: int, now: int, field_name: str) -> int:
    if value <= now:
        raise ValidationError(field_name, "must be in the future")
    return value


def validate_email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValidationError("contractor_email", "invalid email address")
    return value


def is_well_formed_token(value: str) -> bool:
    """Cheap shape check before touching the store."""
    return bool(TOKEN_PATTERN.match(value))


def is_well_formed_slug(value: str) -> bool:
    return bool(SLUG_PATTERN.match(value))


# ============================================================
# Caller Identification
# ============================================================

def extract_caller(headers: Mapping[str, str], peer_ip: Optional[str] = None,
                   trust_proxy: bool = True) -> CallerInfo:
    """
    Extract the client IP and user agent from request headers.

    With trust_proxy, proxy headers are checked in order (X-Forwarded-For
    first hop, X-Real-IP, CF-Connecting-IP) before the direct peer address.
    These headers are client-controlled unless a reverse proxy overwrites
    them, so rate-limit keys derived from them are only as trustworthy as
    that proxy. Without trust_proxy only the peer address is used.
    """
    ip = None

    if trust_proxy:
        forwarded = headers.get("x-forwarded-for", "")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                ip = first

        if ip is None:
            ip = headers.get("x-real-ip", "").strip() or None

        if ip is None:
            ip = headers.get("cf-connecting-ip", "").strip() or None

    if ip is None:
        ip = peer_ip or "unknown"

    return CallerInfo(ip_address=ip, user_agent=headers.get("user-agent") or None)


# ============================================================
# Audit Logging Helpers
# ============================================================

SENSITIVE_FIELDS = ["token", "pin", "pin_hash", "pin_salt", "secret", "password", "authorization"]


def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    result = {}
    for key, value in data.items():
        if key in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
