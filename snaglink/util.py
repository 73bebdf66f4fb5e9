"""
Utility functions for SnagLink.

Provides hashing, encoding, identifier and time helpers.
"""

import base64
import hashlib
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Union


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def utc_rfc3339(ts_epoch: Optional[int]) -> Optional[str]:
    """Convert Unix timestamp to RFC3339 UTC string."""
    if ts_epoch is None:
        return None
    return datetime.fromtimestamp(ts_epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def datetime_to_epoch(dt: datetime) -> int:
    """Convert a datetime to Unix seconds; naive values are treated as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def seconds_until(target: int, now: int) -> int:
    """Whole seconds from now until target, rounded up, never negative."""
    return max(0, int(math.ceil(target - now)))


def generate_id() -> str:
    """Generate a random record identifier."""
    return uuid.uuid4().hex


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]
