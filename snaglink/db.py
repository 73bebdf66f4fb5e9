"""
Database module for SnagLink.

Provides the Store interface the access core depends on and its SQLite
implementation: magic links, access records, rate-limit counters and
audit entries. The two race-sensitive counters (failed PIN attempts and
rate-limit hits) are updated inside BEGIN IMMEDIATE transactions so each
increment-and-compare is atomic across threads and processes.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import PersistenceUnavailable
from .models import AccessLevel, AccessRecord, AuditEntry, MagicLink
from .util import generate_id

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


@dataclass
class CounterUpdate:
    """Outcome of an atomic rate-limit increment."""
    allowed: bool
    count: int
    window_start: int
    window_end: int


@dataclass
class FailureUpdate:
    """Outcome of an atomic failed-PIN increment.

    applied is False when the link was already locked (or is gone) and
    the counter was left untouched.
    """
    applied: bool
    failed_attempts: int
    locked_until: Optional[int]


class Store(ABC):
    """Persistence contract for the access core."""

    @abstractmethod
    def init(self) -> None:
        pass

    # Links

    @abstractmethod
    def insert_link(self, link: MagicLink) -> bool:
        """Insert a link. Returns False if the token or slug is already taken."""
        pass

    @abstractmethod
    def get_link(self, link_id: str) -> Optional[MagicLink]:
        pass

    @abstractmethod
    def get_link_by_token(self, token: str) -> Optional[MagicLink]:
        pass

    @abstractmethod
    def get_link_by_slug(self, slug: str) -> Optional[MagicLink]:
        pass

    @abstractmethod
    def slug_exists(self, slug: str) -> bool:
        pass

    @abstractmethod
    def list_links_by_owner(self, owner_id: str) -> List[MagicLink]:
        pass

    @abstractmethod
    def revoke_link(self, link_id: str, revoked_at: int) -> bool:
        """Set revoked_at once. Returns False if already revoked or unknown."""
        pass

    @abstractmethod
    def purge_links(self, before: int) -> int:
        """Delete links expired or revoked before the given time."""
        pass

    # Access records

    @abstractmethod
    def record_access(self, record: AccessRecord) -> None:
        """Bump open_count/last_opened_at and append the access record."""
        pass

    @abstractmethod
    def list_accesses(self, link_id: str) -> List[AccessRecord]:
        pass

    # PIN failure counter

    @abstractmethod
    def increment_failure_and_maybe_lock(self, link_id: str, max_attempts: int,
                                         lock_until: int, now: int) -> FailureUpdate:
        pass

    @abstractmethod
    def reset_pin_failures(self, link_id: str) -> None:
        pass

    # Rate limiting

    @abstractmethod
    def increment_if_below(self, key: str, action: str, limit: int,
                           window_seconds: int, now: int) -> CounterUpdate:
        pass

    @abstractmethod
    def delete_expired_rate_limits(self, now: int) -> int:
        pass

    # Audit

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    def list_audit(self, resource_id: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
        pass


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS magic_links (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        slug TEXT,
        access_level TEXT NOT NULL,
        pin_hash TEXT,
        pin_salt TEXT,
        pin_scheme TEXT,
        expires_at INTEGER NOT NULL,
        revoked_at INTEGER,
        open_count INTEGER NOT NULL DEFAULT 0,
        last_opened_at INTEGER,
        failed_pin_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until INTEGER,
        snag_ids TEXT NOT NULL,
        project_id TEXT NOT NULL,
        contractor_id TEXT,
        created_by_id TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        CHECK ((pin_hash IS NULL) = (pin_salt IS NULL))
    );""",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_magic_links_slug
    ON magic_links(slug) WHERE slug IS NOT NULL;""",
    """
    CREATE INDEX IF NOT EXISTS idx_magic_links_owner
    ON magic_links(created_by_id, created_at);""",
    """
    CREATE TABLE IF NOT EXISTS magic_link_accesses (
        id TEXT PRIMARY KEY,
        magic_link_id TEXT NOT NULL REFERENCES magic_links(id) ON DELETE CASCADE,
        ip_address TEXT NOT NULL,
        user_agent TEXT,
        pin_verified INTEGER NOT NULL DEFAULT 0,
        accessed_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_accesses_link
    ON magic_link_accesses(magic_link_id, accessed_at);""",
    """
    CREATE TABLE IF NOT EXISTS rate_limit_entries (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL,
        action TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 1,
        window_start INTEGER NOT NULL,
        window_end INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_rate_limit_entries_key_action
    ON rate_limit_entries(key, action, window_end);""",
    """
    CREATE INDEX IF NOT EXISTS idx_rate_limit_entries_window_end
    ON rate_limit_entries(window_end);""",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        resource_id TEXT REFERENCES magic_links(id) ON DELETE CASCADE,
        user_id TEXT,
        ip_address TEXT NOT NULL,
        user_agent TEXT,
        success INTEGER NOT NULL,
        details TEXT,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_audit_logs_resource
    ON audit_logs(resource_id, created_at);""",
]

TABLES = ["magic_links", "magic_link_accesses", "rate_limit_entries", "audit_logs"]


def _row_to_link(row: sqlite3.Row) -> MagicLink:
    return MagicLink(
        id=row["id"],
        token=row["token"],
        slug=row["slug"],
        access_level=AccessLevel(row["access_level"]),
        pin_hash=row["pin_hash"],
        pin_salt=row["pin_salt"],
        pin_scheme=row["pin_scheme"],
        expires_at=row["expires_at"],
        revoked_at=row["revoked_at"],
        open_count=row["open_count"],
        last_opened_at=row["last_opened_at"],
        failed_pin_attempts=row["failed_pin_attempts"],
        locked_until=row["locked_until"],
        snag_ids=json.loads(row["snag_ids"]),
        project_id=row["project_id"],
        contractor_id=row["contractor_id"],
        created_by_id=row["created_by_id"],
        created_at=row["created_at"],
    )


def _row_to_access(row: sqlite3.Row) -> AccessRecord:
    return AccessRecord(
        id=row["id"],
        magic_link_id=row["magic_link_id"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        pin_verified=bool(row["pin_verified"]),
        accessed_at=row["accessed_at"],
    )


class SqliteStore(Store):
    """
    SQLite-backed store.

    Connections are thread-local and reused within a thread. Use a file
    path; ':memory:' would give every thread its own empty database.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self._path), check_same_thread=False,
                                       isolation_level=None, timeout=BUSY_TIMEOUT_MS / 1000)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA foreign_keys=ON;")
                conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
            except sqlite3.Error as e:
                raise PersistenceUnavailable(f"cannot open database: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction holding the database write lock from the start.
        Commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise PersistenceUnavailable(str(e)) from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            raise PersistenceUnavailable(str(e)) from e
        except BaseException:
            self._rollback(conn)
            raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise PersistenceUnavailable(str(e)) from e

    def init(self) -> None:
        """
        Initialize schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            for stmt in SCHEMA:
                conn.execute(stmt)

    # ------------------------------------------------------------
    # Links
    # ------------------------------------------------------------

    def insert_link(self, link: MagicLink) -> bool:
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO magic_links(id, token, slug, access_level, pin_hash, pin_salt, "
                    "pin_scheme, expires_at, revoked_at, open_count, last_opened_at, "
                    "failed_pin_attempts, locked_until, snag_ids, project_id, contractor_id, "
                    "created_by_id, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (link.id, link.token, link.slug, link.access_level.value, link.pin_hash,
                     link.pin_salt, link.pin_scheme, link.expires_at, link.revoked_at,
                     link.open_count, link.last_opened_at, link.failed_pin_attempts,
                     link.locked_until, json.dumps(link.snag_ids), link.project_id,
                     link.contractor_id, link.created_by_id, link.created_at)
                )
            return True
        except sqlite3.IntegrityError as e:
            logger.info("magic link insert rejected: %s", e)
            return False

    def get_link(self, link_id: str) -> Optional[MagicLink]:
        rows = self._query("SELECT * FROM magic_links WHERE id=?", (link_id,))
        return _row_to_link(rows[0]) if rows else None

    def get_link_by_token(self, token: str) -> Optional[MagicLink]:
        rows = self._query("SELECT * FROM magic_links WHERE token=?", (token,))
        return _row_to_link(rows[0]) if rows else None

    def get_link_by_slug(self, slug: str) -> Optional[MagicLink]:
        rows = self._query("SELECT * FROM magic_links WHERE slug=?", (slug,))
        return _row_to_link(rows[0]) if rows else None

    def slug_exists(self, slug: str) -> bool:
        return bool(self._query("SELECT 1 FROM magic_links WHERE slug=?", (slug,)))

    def list_links_by_owner(self, owner_id: str) -> List[MagicLink]:
        rows = self._query(
            "SELECT * FROM magic_links WHERE created_by_id=? ORDER BY created_at DESC, rowid DESC",
            (owner_id,)
        )
        return [_row_to_link(r) for r in rows]

    def revoke_link(self, link_id: str, revoked_at: int) -> bool:
        """Uses UPDATE with a WHERE guard so revocation happens exactly once."""
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE magic_links SET revoked_at=? WHERE id=? AND revoked_at IS NULL",
                (revoked_at, link_id)
            )
            return cur.rowcount == 1

    def purge_links(self, before: int) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM magic_links WHERE expires_at < ? OR (revoked_at IS NOT NULL AND revoked_at < ?)",
                (before, before)
            )
            return cur.rowcount

    # ------------------------------------------------------------
    # Access records
    # ------------------------------------------------------------

    def record_access(self, record: AccessRecord) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE magic_links SET open_count = open_count + 1, last_opened_at=? WHERE id=?",
                (record.accessed_at, record.magic_link_id)
            )
            conn.execute(
                "INSERT INTO magic_link_accesses(id, magic_link_id, ip_address, user_agent, "
                "pin_verified, accessed_at) VALUES(?,?,?,?,?,?)",
                (record.id, record.magic_link_id, record.ip_address, record.user_agent,
                 int(record.pin_verified), record.accessed_at)
            )

    def list_accesses(self, link_id: str) -> List[AccessRecord]:
        rows = self._query(
            "SELECT * FROM magic_link_accesses WHERE magic_link_id=? "
            "ORDER BY accessed_at DESC, rowid DESC",
            (link_id,)
        )
        return [_row_to_access(r) for r in rows]

    # ------------------------------------------------------------
    # PIN failure counter
    # ------------------------------------------------------------

    def increment_failure_and_maybe_lock(self, link_id: str, max_attempts: int,
                                         lock_until: int, now: int) -> FailureUpdate:
        """
        Atomically add one failed attempt and set locked_until when the
        count reaches max_attempts. A link locked at `now` is left as is.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE magic_links SET failed_pin_attempts = failed_pin_attempts + 1, "
                "locked_until = CASE WHEN failed_pin_attempts + 1 >= ? THEN ? ELSE locked_until END "
                "WHERE id=? AND (locked_until IS NULL OR locked_until <= ?)",
                (max_attempts, lock_until, link_id, now)
            )
            applied = cur.rowcount == 1
            row = conn.execute(
                "SELECT failed_pin_attempts, locked_until FROM magic_links WHERE id=?",
                (link_id,)
            ).fetchone()
        if row is None:
            return FailureUpdate(applied=False, failed_attempts=0, locked_until=None)
        return FailureUpdate(applied=applied, failed_attempts=row["failed_pin_attempts"],
                             locked_until=row["locked_until"])

    def reset_pin_failures(self, link_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE magic_links SET failed_pin_attempts=0, locked_until=NULL WHERE id=?",
                (link_id,)
            )

    # ------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------

    def increment_if_below(self, key: str, action: str, limit: int,
                           window_seconds: int, now: int) -> CounterUpdate:
        """
        Count one hit against the live (key, action) window.

        Counters whose window has ended are ignored; a new window starts
        at `now` with count 1.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, count, window_start, window_end FROM rate_limit_entries "
                "WHERE key=? AND action=? AND window_end > ? "
                "ORDER BY window_end DESC LIMIT 1",
                (key, action, now)
            ).fetchone()

            if row is None:
                window_end = now + window_seconds
                conn.execute(
                    "INSERT INTO rate_limit_entries(id, key, action, count, window_start, window_end) "
                    "VALUES(?,?,?,1,?,?)",
                    (generate_id(), key, action, now, window_end)
                )
                return CounterUpdate(allowed=True, count=1, window_start=now, window_end=window_end)

            if row["count"] >= limit:
                return CounterUpdate(allowed=False, count=row["count"],
                                     window_start=row["window_start"], window_end=row["window_end"])

            conn.execute("UPDATE rate_limit_entries SET count = count + 1 WHERE id=?", (row["id"],))
            return CounterUpdate(allowed=True, count=row["count"] + 1,
                                 window_start=row["window_start"], window_end=row["window_end"])

    def delete_expired_rate_limits(self, now: int) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM rate_limit_entries WHERE window_end <= ?", (now,))
            return cur.rowcount

    # ------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO audit_logs(id, event_type, resource_type, resource_id, user_id, "
                "ip_address, user_agent, success, details, created_at) VALUES(?,?,?,?,?,?,?,?,?,?)",
                (entry.id or generate_id(), entry.event_type.value, entry.resource_type.value,
                 entry.resource_id, entry.user_id, entry.ip_address, entry.user_agent,
                 int(entry.success), entry.details, entry.created_at)
            )

    def list_audit(self, resource_id: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
        if resource_id is None:
            rows = self._query(
                "SELECT * FROM audit_logs ORDER BY created_at ASC, rowid ASC LIMIT ?", (limit,)
            )
        else:
            rows = self._query(
                "SELECT * FROM audit_logs WHERE resource_id=? ORDER BY created_at ASC, rowid ASC LIMIT ?",
                (resource_id, limit)
            )
        result = []
        for r in rows:
            d = dict(r)
            d["success"] = bool(d["success"])
            result.append(d)
        return result

    # ------------------------------------------------------------
    # Metrics and maintenance
    # ------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        """Row counts for monitoring."""
        stats = {}
        for table in TABLES:
            rows = self._query(f"SELECT COUNT(*) AS cnt FROM {table}")
            stats[f"{table}_count"] = rows[0]["cnt"]
        return stats

    def reset(self) -> None:
        """Clear all tables but preserve schema (test isolation)."""
        with self._transaction() as conn:
            for table in ["magic_link_accesses", "audit_logs", "rate_limit_entries", "magic_links"]:
                conn.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
