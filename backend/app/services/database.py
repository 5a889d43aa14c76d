import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Optional, TypeVar
from uuid import uuid4

from app.services.errors import MarketplaceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked", "disk i/o error")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


class Database:
    """Shared sqlite handle. Each ``run`` call is one atomic step."""

    def __init__(
        self,
        db_path: str,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_seconds: float = 5.0,
        retry_delay_seconds: float = 0.05,
    ) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._clock = clock
        self._busy_timeout = busy_timeout_seconds
        self._retry_delay = retry_delay_seconds
        self._lock = Lock()
        self._init_db()

    def now(self) -> datetime:
        return self._clock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=self._busy_timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def run(self, fn: Callable[[sqlite3.Connection], T], *, write: bool = True) -> T:
        """Run ``fn`` inside one transaction.

        Transient lock/busy failures are retried once; the whole step is rolled
        back before the retry so no partial writes survive. A second failure
        surfaces as ``MarketplaceUnavailableError``.
        """
        attempt = 0
        while True:
            attempt += 1
            with self._lock:
                conn = self._connect()
                try:
                    conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                    result = fn(conn)
                    conn.execute("COMMIT")
                    return result
                except sqlite3.OperationalError as exc:
                    self._rollback(conn)
                    if not _is_transient(exc):
                        raise
                    if attempt >= 2:
                        logger.error("Transaction failed after retry: %s", exc)
                        raise MarketplaceUnavailableError("The marketplace is temporarily unavailable") from exc
                    logger.warning("Transient database failure, retrying once: %s", exc)
                except Exception:
                    self._rollback(conn)
                    raise
                finally:
                    conn.close()
            time.sleep(self._retry_delay)

    def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return self.run(fn, write=False)

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        role TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS work_profiles (
                        provider_id TEXT PRIMARY KEY,
                        categories_json TEXT NOT NULL DEFAULT '[]',
                        localities_json TEXT NOT NULL DEFAULT '[]',
                        is_available INTEGER NOT NULL DEFAULT 0,
                        availability_type TEXT NOT NULL DEFAULT 'offline',
                        subscription_tier TEXT NOT NULL DEFAULT 'free',
                        verification_status TEXT NOT NULL DEFAULT 'pending',
                        push_enabled INTEGER NOT NULL DEFAULT 1,
                        quiet_hours_start TEXT,
                        quiet_hours_end TEXT,
                        about TEXT NOT NULL DEFAULT '',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS requester_profiles (
                        user_id TEXT PRIMARY KEY,
                        preferred_categories_json TEXT NOT NULL DEFAULT '[]',
                        preferred_localities_json TEXT NOT NULL DEFAULT '[]',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS role_history (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        old_role TEXT NOT NULL,
                        new_role TEXT NOT NULL,
                        reason TEXT NOT NULL,
                        switched_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS service_requests (
                        id TEXT PRIMARY KEY,
                        requester_id TEXT NOT NULL,
                        category_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL,
                        locality TEXT NOT NULL,
                        urgency_tier TEXT NOT NULL,
                        budget_min REAL,
                        budget_max REAL,
                        status TEXT NOT NULL,
                        selected_provider_id TEXT,
                        interested_count INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS interests (
                        id TEXT PRIMARY KEY,
                        request_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        proposed_price REAL,
                        message TEXT NOT NULL,
                        estimated_completion_time TEXT,
                        status TEXT NOT NULL,
                        viewed_by_requester INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        UNIQUE (request_id, provider_id)
                    );

                    CREATE TABLE IF NOT EXISTS connections (
                        id TEXT PRIMARY KEY,
                        requester_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        request_id TEXT,
                        interest_id TEXT NOT NULL UNIQUE,
                        channel_id TEXT NOT NULL UNIQUE,
                        status TEXT NOT NULL,
                        requester_confirmed INTEGER NOT NULL DEFAULT 0,
                        provider_confirmed INTEGER NOT NULL DEFAULT 0,
                        requester_confirmed_at TEXT,
                        provider_confirmed_at TEXT,
                        agreed_price REAL,
                        started_at TEXT NOT NULL,
                        completed_at TEXT,
                        cancelled_at TEXT,
                        cancelled_by TEXT
                    );

                    CREATE TABLE IF NOT EXISTS completion_confirmations (
                        id TEXT PRIMARY KEY,
                        connection_id TEXT NOT NULL,
                        party_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        satisfaction TEXT NOT NULL,
                        satisfaction_note TEXT NOT NULL,
                        evidence_flag INTEGER NOT NULL DEFAULT 0,
                        confirmed_at TEXT NOT NULL,
                        UNIQUE (connection_id, party_id)
                    );

                    CREATE TABLE IF NOT EXISTS review_obligations (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        owner_role TEXT NOT NULL,
                        connection_id TEXT NOT NULL,
                        counterparty_id TEXT NOT NULL,
                        due_at TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        resolved INTEGER NOT NULL DEFAULT 0,
                        resolved_at TEXT,
                        review_id TEXT,
                        blocking INTEGER NOT NULL DEFAULT 0,
                        UNIQUE (owner_id, connection_id)
                    );

                    CREATE TABLE IF NOT EXISTS reviews (
                        id TEXT PRIMARY KEY,
                        connection_id TEXT NOT NULL,
                        author_id TEXT NOT NULL,
                        author_role TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        rating INTEGER NOT NULL,
                        comment TEXT NOT NULL,
                        dimensions_json TEXT NOT NULL DEFAULT '{}',
                        would_engage_again INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        editable_until TEXT NOT NULL,
                        UNIQUE (connection_id, author_id)
                    );

                    CREATE TABLE IF NOT EXISTS request_notifications (
                        request_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        score REAL NOT NULL,
                        status TEXT NOT NULL,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        last_attempt_at TEXT,
                        PRIMARY KEY (request_id, provider_id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_requests_requester ON service_requests (requester_id, status);
                    CREATE INDEX IF NOT EXISTS idx_interests_provider ON interests (provider_id, status);
                    CREATE INDEX IF NOT EXISTS idx_connections_provider ON connections (provider_id, status);
                    CREATE INDEX IF NOT EXISTS idx_connections_requester ON connections (requester_id, status);
                    CREATE INDEX IF NOT EXISTS idx_obligations_owner ON review_obligations (owner_id, resolved, blocking);
                    CREATE INDEX IF NOT EXISTS idx_reviews_subject ON reviews (subject_id);
                    """
                )
            finally:
                conn.close()


def new_id(prefix: str, length: int = 10) -> str:
    return f"{prefix}_{uuid4().hex[:length]}"


def optional_iso(value: Optional[str]) -> Optional[datetime]:
    return from_iso(value) if value else None
