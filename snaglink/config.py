"""
Configuration module for SnagLink.

Centralizes all configuration with environment variable support
and validation. Module-level constants hold the environment defaults;
Settings bundles them so the application factory and tests can override
individual values.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Tuple

logger = logging.getLogger(__name__)

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("SNAGLINK_ENV", "dev")  # dev|stage|prod

DB_PATH = os.getenv("SNAGLINK_DB_PATH", "data/snaglink.db")
BASE_URL = os.getenv("BASE_URL", "https://snaglist.app")

# Owner authentication
DEFAULT_JWT_SECRET = "development-secret-key-change-me!!"
JWT_SECRET = os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET)
JWT_TTL_MINUTES = int(os.getenv("JWT_TTL_MINUTES", "60"))

# PIN gate
PIN_MAX_ATTEMPTS = int(os.getenv("PIN_MAX_ATTEMPTS", "5"))
PIN_LOCKOUT_SECONDS = int(os.getenv("PIN_LOCKOUT_SECONDS", "300"))
PIN_HASH_SCHEME = os.getenv("PIN_HASH_SCHEME", "sha256")  # sha256|argon2id
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 8

# Rate limits: (max requests, window seconds)
TOKEN_LOOKUP_LIMIT = int(os.getenv("TOKEN_LOOKUP_LIMIT", "20"))
TOKEN_LOOKUP_WINDOW = int(os.getenv("TOKEN_LOOKUP_WINDOW", "60"))
PIN_ATTEMPT_LIMIT = int(os.getenv("PIN_ATTEMPT_LIMIT", "5"))
PIN_ATTEMPT_WINDOW = int(os.getenv("PIN_ATTEMPT_WINDOW", "300"))
API_CALL_LIMIT = int(os.getenv("API_CALL_LIMIT", "100"))
API_CALL_WINDOW = int(os.getenv("API_CALL_WINDOW", "60"))

# Seconds between reclamation sweeps of dead rate-limit counters (0 disables)
RATE_LIMIT_SWEEP_SECONDS = int(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "300"))

# Trust X-Forwarded-For / X-Real-IP / CF-Connecting-IP for the caller IP.
# Only safe behind a proxy that overwrites them; disable when exposed directly.
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "true").lower() in ("1", "true", "yes")

# Audit sink
AUDIT_SINK = os.getenv("AUDIT_SINK", "sqlite")  # sqlite|s3_object_lock
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "snaglink/audit-log/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "365"))
S3_LEGAL_HOLD = os.getenv("S3_LEGAL_HOLD", "OFF")

# Background work queue shared by audit writes and notifications
DISPATCH_QUEUE_SIZE = int(os.getenv("DISPATCH_QUEUE_SIZE", "1000"))

# Contractor notification webhook (empty disables)
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT_SECONDS = int(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


def _default_rate_limits() -> Dict[str, Tuple[int, int]]:
    return {
        "token_lookup": (TOKEN_LOOKUP_LIMIT, TOKEN_LOOKUP_WINDOW),
        "pin_attempt": (PIN_ATTEMPT_LIMIT, PIN_ATTEMPT_WINDOW),
        "api_call": (API_CALL_LIMIT, API_CALL_WINDOW),
    }


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings, defaulting to the environment values above."""
    env: str = ENV
    db_path: str = DB_PATH
    base_url: str = BASE_URL
    jwt_secret: str = JWT_SECRET
    jwt_ttl_minutes: int = JWT_TTL_MINUTES
    pin_max_attempts: int = PIN_MAX_ATTEMPTS
    pin_lockout_seconds: int = PIN_LOCKOUT_SECONDS
    pin_hash_scheme: str = PIN_HASH_SCHEME
    rate_limits: Dict[str, Tuple[int, int]] = field(default_factory=_default_rate_limits)
    rate_limit_sweep_seconds: int = RATE_LIMIT_SWEEP_SECONDS
    trust_proxy_headers: bool = TRUST_PROXY_HEADERS
    audit_sink: str = AUDIT_SINK
    s3_bucket: str = S3_BUCKET
    s3_prefix: str = S3_PREFIX
    s3_retention_days: int = S3_RETENTION_DAYS
    s3_legal_hold: str = S3_LEGAL_HOLD
    dispatch_queue_size: int = DISPATCH_QUEUE_SIZE
    notify_webhook_url: str = NOTIFY_WEBHOOK_URL
    notify_timeout_seconds: int = NOTIFY_TIMEOUT_SECONDS
    log_level: str = LOG_LEVEL
    log_json: bool = LOG_JSON

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)


# ============================================================
# Validation
# ============================================================

PIN_HASH_SCHEMES = ("sha256", "argon2id")
AUDIT_SINKS = ("sqlite", "s3_object_lock")


def validate_settings(settings: Settings) -> None:
    """
    Validate settings and warn about insecure defaults.

    Raises:
        ValueError: If a setting is out of range
    """
    if settings.pin_hash_scheme not in PIN_HASH_SCHEMES:
        raise ValueError(f"PIN_HASH_SCHEME must be one of {PIN_HASH_SCHEMES}")
    if settings.audit_sink not in AUDIT_SINKS:
        raise ValueError(f"AUDIT_SINK must be one of {AUDIT_SINKS}")
    if settings.audit_sink == "s3_object_lock" and not settings.s3_bucket:
        raise ValueError("S3_BUCKET required for s3_object_lock audit sink")
    if settings.pin_max_attempts < 1:
        raise ValueError("PIN_MAX_ATTEMPTS must be positive")
    if settings.pin_lockout_seconds < 1:
        raise ValueError("PIN_LOCKOUT_SECONDS must be positive")
    for action, (limit, window) in settings.rate_limits.items():
        if limit < 1 or window < 1:
            raise ValueError(f"rate limit for {action} must be positive")

    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        if is_production(settings):
            raise ValueError("JWT_SECRET must be set in production")
        logger.warning("JWT_SECRET not set, using default (NOT SECURE FOR PRODUCTION)")

    if settings.pin_hash_scheme == "sha256":
        # Online lockout is the only brute-force defense for this scheme
        logger.warning(
            "PIN_HASH_SCHEME=sha256: PIN hashes use a fast salted digest; "
            "a leaked store can be brute forced offline. Set PIN_HASH_SCHEME=argon2id "
            "to use a slow KDF for new links."
        )


def is_production(settings: Settings) -> bool:
    """Check if running in production mode."""
    return settings.env == "prod"
