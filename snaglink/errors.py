"""
Error taxonomy for SnagLink.

Link validation and PIN outcomes are normally carried as result values
(see validator.ValidationResult and pin_gate.PinResult); the classes here
give each outcome a stable code and HTTP status for the API boundary.
Only RandomSourceUnavailable and PersistenceUnavailable are raised through
business logic.
"""

from typing import Optional


class SnagLinkError(Exception):
    """Base class for all SnagLink errors."""
    code = "ERROR"
    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFound(SnagLinkError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Token not found"


class Expired(SnagLinkError):
    code = "EXPIRED"
    status_code = 410
    message = "Token has expired"


class Revoked(SnagLinkError):
    code = "REVOKED"
    status_code = 410
    message = "Token has been revoked"


class Locked(SnagLinkError):
    code = "LOCKED"
    status_code = 429
    message = "Token is temporarily locked due to too many failed attempts"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["retry_after_seconds"] = self.retry_after
        return d


class RateLimited(SnagLinkError):
    code = "RATE_LIMITED"
    status_code = 429
    message = "Rate limit exceeded"

    def __init__(self, retry_after: int, limit: int, reset_at: int, message: Optional[str] = None):
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(message or f"Rate limit exceeded. Try again in {retry_after} seconds.")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({
            "limit": self.limit,
            "remaining": 0,
            "reset_at": self.reset_at,
            "retry_after_seconds": self.retry_after,
        })
        return d


class PinMismatch(SnagLinkError):
    code = "PIN_MISMATCH"
    status_code = 401
    message = "Invalid PIN"

    def __init__(self, attempts_remaining: int, message: Optional[str] = None):
        self.attempts_remaining = attempts_remaining
        super().__init__(message or f"Invalid PIN. {attempts_remaining} attempt(s) remaining.")

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["attempts_remaining"] = self.attempts_remaining
        return d


class PinNotConfigured(SnagLinkError):
    code = "PIN_NOT_CONFIGURED"
    status_code = 400
    message = "This magic link does not require a PIN"


class RandomSourceUnavailable(SnagLinkError):
    """The operating system's secure random source could not be used."""
    code = "RANDOM_SOURCE_UNAVAILABLE"
    status_code = 500
    message = "Secure random source unavailable"


class PersistenceUnavailable(SnagLinkError):
    """The backing store failed; callers may retry the whole request."""
    code = "PERSISTENCE_UNAVAILABLE"
    status_code = 503
    message = "Storage temporarily unavailable"


class Forbidden(SnagLinkError):
    code = "FORBIDDEN"
    status_code = 403
    message = "You do not have permission to access this magic link"


class Unauthorized(SnagLinkError):
    code = "UNAUTHORIZED"
    status_code = 401
    message = "Authentication required"


class LinkNotFound(SnagLinkError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Magic link not found"


class AlreadyRevoked(SnagLinkError):
    code = "ALREADY_REVOKED"
    status_code = 400
    message = "Magic link is already revoked"
