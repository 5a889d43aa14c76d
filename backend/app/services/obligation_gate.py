import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from app.models import BlockingStatus, Connection, ReviewObligation
from app.services.database import Database, new_id, to_iso
from app.services.errors import BlockedError
from app.services.rows import obligation_from_row

logger = logging.getLogger(__name__)


def _counterpart_noun(owner_roles: List[str], count: int) -> str:
    roles = set(owner_roles)
    if roles == {"requester"}:
        noun = "provider"
    elif roles == {"provider"}:
        noun = "client"
    else:
        noun = "partner"
    return noun if count == 1 else f"{noun}s"


class ReviewObligationGate:
    """Single answer to "is this user blocked by overdue reviews?".

    Obligations are opened in pairs when a connection completes and start
    out non-blocking. ``sweep_overdue`` flips unresolved ones past their due
    time; a review resolves them, which unblocks immediately.
    """

    def __init__(self, db: Database, review_window_days: int = 7) -> None:
        self._db = db
        self._window = timedelta(days=review_window_days)

    def open_pair(self, conn: sqlite3.Connection, connection: Connection, completed_at: datetime) -> List[ReviewObligation]:
        due_at = to_iso(completed_at + self._window)
        created_at = to_iso(completed_at)
        parties = (
            (connection.requester_id, "requester", connection.provider_id),
            (connection.provider_id, "provider", connection.requester_id),
        )
        for owner_id, owner_role, counterparty_id in parties:
            conn.execute(
                """
                INSERT OR IGNORE INTO review_obligations (
                    id, owner_id, owner_role, connection_id, counterparty_id, due_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (new_id("obl"), owner_id, owner_role, connection.id, counterparty_id, due_at, created_at),
            )
        rows = conn.execute(
            "SELECT * FROM review_obligations WHERE connection_id = ? ORDER BY owner_role DESC",
            (connection.id,),
        ).fetchall()
        return [obligation_from_row(row) for row in rows]

    def _flip_overdue_in(self, conn: sqlite3.Connection, owner_id: Optional[str] = None) -> int:
        query = "UPDATE review_obligations SET blocking = 1 WHERE resolved = 0 AND blocking = 0 AND due_at <= ?"
        params: list = [to_iso(self._db.now())]
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        return conn.execute(query, params).rowcount

    def _blocking_rows(self, conn: sqlite3.Connection, user_id: str) -> List[sqlite3.Row]:
        # Overdue rows count even when no sweep has run since they fell due.
        self._flip_overdue_in(conn, user_id)
        return conn.execute(
            """
            SELECT * FROM review_obligations
            WHERE owner_id = ? AND resolved = 0 AND blocking = 1
            ORDER BY due_at, id
            """,
            (user_id,),
        ).fetchall()

    def _reasons(self, rows: List[sqlite3.Row]) -> List[str]:
        return [f"Review for connection {row['connection_id']} was due {row['due_at'][:10]}" for row in rows]

    def blocking_status_in(self, conn: sqlite3.Connection, user_id: str) -> BlockingStatus:
        rows = self._blocking_rows(conn, user_id)
        return BlockingStatus(blocked=bool(rows), count=len(rows), reasons=self._reasons(rows))

    def blocking_status(self, user_id: str) -> BlockingStatus:
        return self._db.run(lambda conn: self.blocking_status_in(conn, user_id))

    def is_blocked(self, user_id: str) -> bool:
        return self.blocking_status(user_id).blocked

    def assert_not_blocked_in(self, conn: sqlite3.Connection, user_id: str, action: str) -> None:
        rows = self._blocking_rows(conn, user_id)
        if not rows:
            return
        count = len(rows)
        noun = _counterpart_noun([row["owner_role"] for row in rows], count)
        raise BlockedError(
            f"You have {count} overdue review{'s' if count != 1 else ''} and cannot {action} yet",
            count=count,
            reasons=self._reasons(rows),
            remediation=f"Review {count} {noun} first.",
        )

    def assert_not_blocked(self, user_id: str, action: str) -> None:
        self._db.run(lambda conn: self.assert_not_blocked_in(conn, user_id, action))

    def sweep_overdue(self, owner_id: Optional[str] = None) -> int:
        """Mark unresolved obligations past due as blocking. Safe to repeat."""
        flipped = self._db.run(lambda conn: self._flip_overdue_in(conn, owner_id))
        if flipped:
            logger.info("Obligation sweep marked %s obligation(s) as blocking", flipped)
        return flipped

    def find_in(self, conn: sqlite3.Connection, connection_id: str, owner_id: str) -> Optional[ReviewObligation]:
        row = conn.execute(
            "SELECT * FROM review_obligations WHERE connection_id = ? AND owner_id = ?",
            (connection_id, owner_id),
        ).fetchone()
        return obligation_from_row(row) if row else None

    def resolve(self, conn: sqlite3.Connection, connection_id: str, owner_id: str, review_id: str) -> bool:
        updated = conn.execute(
            """
            UPDATE review_obligations
            SET resolved = 1, resolved_at = ?, review_id = ?, blocking = 0
            WHERE connection_id = ? AND owner_id = ? AND resolved = 0
            """,
            (to_iso(self._db.now()), review_id, connection_id, owner_id),
        )
        return updated.rowcount == 1

    def list_pending(self, user_id: str) -> List[ReviewObligation]:
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT * FROM review_obligations WHERE owner_id = ? AND resolved = 0 ORDER BY due_at, id",
                (user_id,),
            ).fetchall()
        )
        return [obligation_from_row(row) for row in rows]
