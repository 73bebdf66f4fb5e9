from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .util import utc_rfc3339


class AccessLevel(str, Enum):
    VIEW = "view"
    UPDATE = "update"
    FULL = "full"


class AuditEventType(str, Enum):
    MAGIC_LINK_CREATED = "magic_link.created"
    MAGIC_LINK_VALIDATED = "magic_link.validated"
    MAGIC_LINK_REVOKED = "magic_link.revoked"
    PIN_VERIFY_SUCCESS = "pin.verify.success"
    PIN_VERIFY_FAILURE = "pin.verify.failure"
    PIN_LOCKOUT = "pin.lockout"
    RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"
    OWNER_ACCESS_DENIED = "owner.access.denied"


class ResourceType(str, Enum):
    MAGIC_LINK = "magic_link"
    USER = "user"


# ============================================================
# Persisted records
# ============================================================

@dataclass
class MagicLink:
    id: str
    token: str
    access_level: AccessLevel
    expires_at: int
    snag_ids: List[str]
    project_id: str
    created_by_id: str
    pin_hash: Optional[str] = None
    pin_salt: Optional[str] = None
    pin_scheme: Optional[str] = None
    contractor_id: Optional[str] = None
    slug: Optional[str] = None
    revoked_at: Optional[int] = None
    open_count: int = 0
    last_opened_at: Optional[int] = None
    failed_pin_attempts: int = 0
    locked_until: Optional[int] = None
    created_at: Optional[int] = None

    @property
    def requires_pin(self) -> bool:
        return self.pin_hash is not None and self.pin_salt is not None

    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at

    def is_locked(self, now: int) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class AccessRecord:
    id: str
    magic_link_id: str
    ip_address: str
    user_agent: Optional[str]
    pin_verified: bool
    accessed_at: int


@dataclass
class CallerInfo:
    ip_address: str = "unknown"
    user_agent: Optional[str] = None


@dataclass
class AuditEntry:
    event_type: AuditEventType
    resource_type: ResourceType
    ip_address: str
    success: bool
    created_at: int
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[str] = None
    id: str = field(default="")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "success": self.success,
            "details": self.details,
            "created_at": self.created_at,
        }


# ============================================================
# API schemas
# ============================================================

class CreateMagicLinkRequest(BaseModel):
    access_level: str
    expires_at: datetime
    snag_ids: List[str]
    project_id: str
    pin: Optional[str] = None
    contractor_id: Optional[str] = None
    contractor_name: Optional[str] = None
    contractor_email: Optional[str] = None
    project_name: Optional[str] = None


class VerifyPinRequest(BaseModel):
    pin: str


class MagicLinkResponse(BaseModel):
    id: str
    token: str
    slug: Optional[str] = None
    short_url: Optional[str] = None
    access_level: str
    requires_pin: bool
    expires_at: str
    revoked_at: Optional[str] = None
    open_count: int
    last_opened_at: Optional[str] = None
    snag_ids: List[str]
    project_id: str
    contractor_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_link(cls, link: MagicLink, include_token: bool = False,
                  base_url: Optional[str] = None) -> "MagicLinkResponse":
        short_url = f"{base_url}/m/{link.slug}" if base_url and link.slug else None
        return cls(
            id=link.id,
            token=link.token if include_token else "***",
            slug=link.slug,
            short_url=short_url,
            access_level=link.access_level.value,
            requires_pin=link.requires_pin,
            expires_at=utc_rfc3339(link.expires_at),
            revoked_at=utc_rfc3339(link.revoked_at),
            open_count=link.open_count,
            last_opened_at=utc_rfc3339(link.last_opened_at),
            snag_ids=list(link.snag_ids),
            project_id=link.project_id,
            contractor_id=link.contractor_id,
            created_at=utc_rfc3339(link.created_at),
        )


class ValidationResponse(BaseModel):
    valid: bool
    code: Optional[str] = None
    message: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    access_level: Optional[str] = None
    requires_pin: Optional[bool] = None
    expires_at: Optional[str] = None
    snag_ids: Optional[List[str]] = None
    project_id: Optional[str] = None


class PinVerificationResponse(BaseModel):
    verified: bool
    code: Optional[str] = None
    message: Optional[str] = None
    attempts_remaining: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    access_level: Optional[str] = None
    snag_ids: Optional[List[str]] = None
    project_id: Optional[str] = None


class AccessRecordResponse(BaseModel):
    ip_address: str
    user_agent: Optional[str] = None
    pin_verified: bool
    accessed_at: str


class AnalyticsResponse(BaseModel):
    id: str
    total_accesses: int
    unique_ips: int
    last_accessed_at: Optional[str] = None
    accesses: List[AccessRecordResponse] = Field(default_factory=list)
