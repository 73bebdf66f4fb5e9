"""
Link validation for SnagLink.

Resolves a bearer token (or slug) to a link and decides whether it can
be used right now. Conditions are checked in a fixed order so the most
permanent reason wins: not found, revoked, expired, locked.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .db import Store
from .errors import Expired, Locked, NotFound, Revoked, SnagLinkError
from .models import AccessRecord, CallerInfo, MagicLink
from .security import is_well_formed_slug, is_well_formed_token
from .util import generate_id, mask_sensitive, now_epoch, seconds_until

logger = logging.getLogger(__name__)


class LinkStatus(str, Enum):
    ACTIVE = "active"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    LOCKED = "locked"


@dataclass
class ValidationResult:
    status: LinkStatus
    link: Optional[MagicLink] = None
    retry_after: Optional[int] = None

    @property
    def valid(self) -> bool:
        return self.status == LinkStatus.ACTIVE

    def error(self) -> Optional[SnagLinkError]:
        """Error describing a non-active status, None when active."""
        if self.status == LinkStatus.ACTIVE:
            return None
        if self.status == LinkStatus.NOT_FOUND:
            return NotFound()
        if self.status == LinkStatus.REVOKED:
            return Revoked()
        if self.status == LinkStatus.EXPIRED:
            return Expired()
        if self.status == LinkStatus.LOCKED:
            return Locked(retry_after=self.retry_after or 0)
        raise ValueError(f"unhandled link status: {self.status}")


def evaluate(link: Optional[MagicLink], now: int) -> ValidationResult:
    """Apply the validity checks to an already loaded link."""
    if link is None:
        return ValidationResult(LinkStatus.NOT_FOUND)
    if link.is_revoked():
        return ValidationResult(LinkStatus.REVOKED, link)
    if link.is_expired(now):
        return ValidationResult(LinkStatus.EXPIRED, link)
    if link.is_locked(now):
        return ValidationResult(LinkStatus.LOCKED, link, retry_after=seconds_until(link.locked_until, now))
    return ValidationResult(LinkStatus.ACTIVE, link)


class LinkValidator:

    def __init__(self, store: Store, clock: Callable[[], int] = now_epoch):
        self._store = store
        self._clock = clock

    def validate(self, token: str) -> ValidationResult:
        link = self._store.get_link_by_token(token) if is_well_formed_token(token) else None
        if link is None:
            logger.debug("no magic link for token %s", mask_sensitive(token))
        return evaluate(link, self._clock())

    def validate_slug(self, slug: str) -> ValidationResult:
        link = self._store.get_link_by_slug(slug) if is_well_formed_slug(slug) else None
        return evaluate(link, self._clock())

    def evaluate(self, link: Optional[MagicLink]) -> ValidationResult:
        return evaluate(link, self._clock())

    def record_access(self, link: MagicLink, caller: CallerInfo, pin_verified: bool) -> AccessRecord:
        """Append an access record and bump the link's open counter."""
        record = AccessRecord(
            id=generate_id(),
            magic_link_id=link.id,
            ip_address=caller.ip_address,
            user_agent=caller.user_agent,
            pin_verified=pin_verified,
            accessed_at=self._clock(),
        )
        self._store.record_access(record)
        return record
