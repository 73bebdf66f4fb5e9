"""
Audit trail for SnagLink.

AuditRecorder turns each security decision into an AuditEntry, logs it
through the structured security logger and hands it to a sink on the
background dispatcher. Recording never blocks or fails the request.

Sinks:
    sqlite          audit_logs table in the main store (default)
    s3_object_lock  one immutable JSON object per entry in an S3 bucket
                    with Object Lock enabled
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .config import Settings
from .db import Store
from .dispatch import BackgroundDispatcher
from .logging_config import SecurityLogger, security_log
from .models import AuditEntry, AuditEventType, CallerInfo, ResourceType
from .util import generate_id, now_epoch

logger = logging.getLogger(__name__)


class AuditSink:
    def write(self, entry: AuditEntry) -> None:
        raise NotImplementedError


class SqliteAuditSink(AuditSink):
    def __init__(self, store: Store):
        self._store = store

    def write(self, entry: AuditEntry) -> None:
        self._store.append_audit(entry)


class S3ObjectLockAuditSink(AuditSink):
    """Writes each audit entry as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF", client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        if client is None:
            import boto3
            client = boto3.client("s3")
        self._client = client

    def object_key(self, entry: AuditEntry) -> str:
        return f"{self.prefix}{entry.created_at}-{entry.event_type.value}-{entry.id}.json"

    def write(self, entry: AuditEntry) -> None:
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        self._client.put_object(
            Bucket=self.bucket,
            Key=self.object_key(entry),
            Body=json.dumps(entry.to_dict(), sort_keys=True).encode("utf-8"),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )


def get_audit_sink(settings: Settings, store: Store) -> AuditSink:
    if settings.audit_sink == "s3_object_lock":
        logger.info("audit entries go to s3://%s/%s with object lock", settings.s3_bucket, settings.s3_prefix)
        return S3ObjectLockAuditSink(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            retention_days=settings.s3_retention_days,
            legal_hold=settings.s3_legal_hold,
        )
    return SqliteAuditSink(store)


class AuditRecorder:
    """Fire-and-forget audit logging."""

    def __init__(self, sink: AuditSink, dispatcher: BackgroundDispatcher,
                 clock: Callable[[], int] = now_epoch,
                 security_logger: Optional[SecurityLogger] = None):
        self._sink = sink
        self._dispatcher = dispatcher
        self._clock = clock
        self._security_log = security_logger or security_log

    def log(
        self,
        event: AuditEventType,
        resource_type: ResourceType,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        caller: Optional[CallerInfo] = None,
        success: bool = True,
        detail: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        caller = caller or CallerInfo()
        entry = AuditEntry(
            id=generate_id(),
            event_type=event,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=actor_id,
            ip_address=caller.ip_address,
            user_agent=caller.user_agent,
            success=success,
            details=json.dumps(detail, sort_keys=True) if detail else None,
            created_at=self._clock(),
        )
        self._security_log.audit_event(
            event.value,
            success,
            resource_type.value,
            resource_id=resource_id,
            user_id=actor_id,
            ip_address=caller.ip_address,
            details=entry.details,
        )
        if not self._dispatcher.submit("audit", self._write, entry):
            self._security_log.audit_dropped(event.value, "queue full")
        return entry

    def _write(self, entry: AuditEntry) -> None:
        try:
            self._sink.write(entry)
        except Exception as e:
            self._security_log.audit_dropped(entry.event_type.value, str(e))
            raise

    def flush(self) -> None:
        self._dispatcher.flush()

    def close(self) -> None:
        self._dispatcher.close()
