"""
Secure token, salt and slug generation.

All randomness comes from the operating system CSPRNG (os.urandom,
and secrets for slug characters). If that source is unavailable the
call fails with RandomSourceUnavailable; there is no fallback.
"""

import logging
import os
import secrets
import string
from typing import Callable, Optional

from .errors import RandomSourceUnavailable
from .util import b64url_encode

logger = logging.getLogger(__name__)

SLUG_ALPHABET = string.ascii_lowercase + string.digits
SLUG_PREFIX_DEFAULT = "snl"
SLUG_RANDOM_LENGTH = 6
SLUG_FALLBACK_LENGTH = 10
SLUG_MAX_RETRIES = 10


def _random_bytes(byte_count: int) -> bytes:
    if byte_count < 1:
        raise ValueError("byte_count must be positive")
    try:
        return os.urandom(byte_count)
    except (NotImplementedError, OSError) as e:
        logger.critical("OS random source unavailable: %s", e)
        raise RandomSourceUnavailable() from e


def generate_token(byte_count: int = 32) -> str:
    """
    Generate an unguessable URL-safe token.

    Args:
        byte_count: Number of random bytes (default 32, 256 bits)

    Returns:
        Unpadded URL-safe base64 string (43 characters for 32 bytes)
    """
    return b64url_encode(_random_bytes(byte_count))


def generate_salt(byte_count: int = 16) -> str:
    """Generate a salt as lowercase hex (32 characters for 16 bytes)."""
    return _random_bytes(byte_count).hex()


def _random_chars(length: int) -> str:
    try:
        return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))
    except (NotImplementedError, OSError) as e:
        logger.critical("OS random source unavailable: %s", e)
        raise RandomSourceUnavailable() from e


def slug_prefix(contractor_name: Optional[str]) -> str:
    """First three ASCII letters of the contractor name, else 'snl'."""
    if not contractor_name:
        return SLUG_PREFIX_DEFAULT
    letters = [c for c in contractor_name.lower() if c in string.ascii_lowercase]
    if len(letters) < 3:
        return SLUG_PREFIX_DEFAULT
    return "".join(letters[:3])


def generate_slug(contractor_name: Optional[str] = None) -> str:
    """Generate a short human-friendly alias, e.g. 'abc-x7k2m3'."""
    return f"{slug_prefix(contractor_name)}-{_random_chars(SLUG_RANDOM_LENGTH)}"


def generate_fallback_slug() -> str:
    return f"{SLUG_PREFIX_DEFAULT}-{_random_chars(SLUG_FALLBACK_LENGTH)}"


def generate_unique_slug(contractor_name: Optional[str], exists: Callable[[str], bool]) -> str:
    """
    Generate a slug not yet present in the store.

    Args:
        contractor_name: Used for the prefix
        exists: Predicate reporting whether a slug is already taken

    Returns:
        A short slug, or the longer fallback form after repeated collisions
    """
    for _ in range(SLUG_MAX_RETRIES):
        slug = generate_slug(contractor_name)
        if not exists(slug):
            return slug
    logger.warning("slug collisions persisted for prefix %s; using fallback", slug_prefix(contractor_name))
    return generate_fallback_slug()
