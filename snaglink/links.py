"""
Magic link management for link owners.

Creation, listing, revocation, analytics and retention purges. Public
contractor access (validation and PIN entry) lives in the API layer on
top of LinkValidator and PinGate.
"""

import logging
from typing import Callable, List, Optional

from .audit import AuditRecorder
from .db import Store
from .errors import AlreadyRevoked, Forbidden, LinkNotFound, PersistenceUnavailable
from .models import (
    AccessRecordResponse, AnalyticsResponse, AuditEventType, CallerInfo,
    CreateMagicLinkRequest, MagicLink, ResourceType,
)
from .notify import WebhookNotifier
from .pin_gate import PinGate
from .security import (
    sanitize_for_logging, validate_access_level, validate_email, validate_future_epoch,
    validate_identifier, validate_identifier_list, validate_pin,
)
from .tokens import SLUG_MAX_RETRIES, generate_token, generate_unique_slug
from .util import datetime_to_epoch, generate_id, now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class LinkService:

    def __init__(self, store: Store, pin_gate: PinGate, audit: AuditRecorder,
                 notifier: Optional[WebhookNotifier] = None, base_url: str = "",
                 clock: Callable[[], int] = now_epoch):
        self._store = store
        self._pin_gate = pin_gate
        self._audit = audit
        self._notifier = notifier
        self._base_url = base_url
        self._clock = clock

    def create_link(self, owner_id: str, req: CreateMagicLinkRequest,
                    caller: Optional[CallerInfo] = None) -> MagicLink:
        """
        Issue a new magic link.

        Raises:
            ValidationError: If any field is invalid
        """
        logger.debug("create magic link request from %s: %s", owner_id,
                     sanitize_for_logging(req.model_dump(mode="json")))
        now = self._clock()
        access_level = validate_access_level(req.access_level)
        expires_at = validate_future_epoch(datetime_to_epoch(req.expires_at), now, "expires_at")
        snag_ids = validate_identifier_list(req.snag_ids, "snag_ids")
        project_id = validate_identifier(req.project_id, "project_id")
        contractor_id = validate_identifier(req.contractor_id, "contractor_id") if req.contractor_id else None
        contractor_email = validate_email(req.contractor_email) if req.contractor_email else None

        pin_hash = pin_salt = pin_scheme = None
        if req.pin is not None:
            pin_hash, pin_salt, pin_scheme = self._pin_gate.hash_pin(validate_pin(req.pin))

        link = None
        for _ in range(SLUG_MAX_RETRIES):
            candidate = MagicLink(
                id=generate_id(),
                token=generate_token(),
                slug=generate_unique_slug(req.contractor_name, self._store.slug_exists),
                access_level=access_level,
                pin_hash=pin_hash,
                pin_salt=pin_salt,
                pin_scheme=pin_scheme,
                expires_at=expires_at,
                snag_ids=snag_ids,
                project_id=project_id,
                contractor_id=contractor_id,
                created_by_id=owner_id,
                created_at=now,
            )
            # A concurrent insert can still take the slug between check and insert
            if self._store.insert_link(candidate):
                link = candidate
                break
        if link is None:
            raise PersistenceUnavailable("could not allocate a unique link")

        self._audit.log(
            AuditEventType.MAGIC_LINK_CREATED,
            ResourceType.MAGIC_LINK,
            resource_id=link.id,
            actor_id=owner_id,
            caller=caller,
            detail={"access_level": access_level.value, "snag_count": len(snag_ids),
                    "requires_pin": link.requires_pin},
        )
        logger.info("magic link %s created by %s", link.id, owner_id)

        if self._notifier is not None:
            self._notifier.notify_link_created(link, self._base_url, contractor_email,
                                               req.contractor_name, req.project_name)
        return link

    def list_links(self, owner_id: str) -> List[MagicLink]:
        return self._store.list_links_by_owner(owner_id)

    def _owned_link(self, owner_id: str, link_id: str, action: str,
                    caller: Optional[CallerInfo] = None) -> MagicLink:
        link = self._store.get_link(link_id)
        if link is None or link.created_by_id != owner_id:
            reason = "not_found" if link is None else "not_owner"
            self._audit.log(
                AuditEventType.OWNER_ACCESS_DENIED,
                ResourceType.MAGIC_LINK,
                resource_id=link.id if link else None,
                actor_id=owner_id,
                caller=caller,
                success=False,
                detail={"action": action, "reason": reason, "link_id": link_id[:64]},
            )
            logger.warning("owner %s denied %s on magic link %s: %s", owner_id, action, link_id[:64], reason)
            if link is None:
                raise LinkNotFound()
            raise Forbidden()
        return link

    def revoke_link(self, owner_id: str, link_id: str, caller: Optional[CallerInfo] = None) -> None:
        """
        Revoke a link. Revocation is permanent.

        Raises:
            LinkNotFound: Unknown link id
            Forbidden: Caller does not own the link
            AlreadyRevoked: Link was revoked before
        """
        link = self._owned_link(owner_id, link_id, "revoke", caller)
        if link.is_revoked() or not self._store.revoke_link(link.id, self._clock()):
            raise AlreadyRevoked()
        self._audit.log(
            AuditEventType.MAGIC_LINK_REVOKED,
            ResourceType.MAGIC_LINK,
            resource_id=link.id,
            actor_id=owner_id,
            caller=caller,
        )
        logger.info("magic link %s revoked by %s", link.id, owner_id)

    def analytics(self, owner_id: str, link_id: str,
                  caller: Optional[CallerInfo] = None) -> AnalyticsResponse:
        link = self._owned_link(owner_id, link_id, "analytics", caller)
        accesses = self._store.list_accesses(link.id)
        return AnalyticsResponse(
            id=link.id,
            total_accesses=len(accesses),
            unique_ips=len({a.ip_address for a in accesses}),
            last_accessed_at=utc_rfc3339(accesses[0].accessed_at) if accesses else None,
            accesses=[
                AccessRecordResponse(
                    ip_address=a.ip_address,
                    user_agent=a.user_agent,
                    pin_verified=a.pin_verified,
                    accessed_at=utc_rfc3339(a.accessed_at),
                )
                for a in accesses
            ],
        )

    def purge_links(self, older_than_days: int) -> int:
        """Delete links expired or revoked more than N days ago."""
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")
        cutoff = self._clock() - older_than_days * SECONDS_PER_DAY
        removed = self._store.purge_links(cutoff)
        logger.info("purged %d magic links expired or revoked before %s", removed, utc_rfc3339(cutoff))
        return removed
