import logging
import secrets
import sqlite3
from datetime import datetime
from typing import List, Optional

from app.models import Connection, Interest
from app.services.database import Database, new_id, to_iso
from app.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
)
from app.services.notification_store import NotificationStore
from app.services.rows import connection_from_row

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("active", "service_in_progress")


def party_role(connection: Connection, user_id: str) -> Optional[str]:
    if user_id == connection.requester_id:
        return "requester"
    if user_id == connection.provider_id:
        return "provider"
    return None


def counterpart_of(connection: Connection, user_id: str) -> str:
    return connection.provider_id if user_id == connection.requester_id else connection.requester_id


class ConnectionCoordinator:
    """Lifecycle of the working relationship opened by an accepted interest."""

    def __init__(self, db: Database, notifications: NotificationStore) -> None:
        self._db = db
        self._notifications = notifications

    def get_in(self, conn: sqlite3.Connection, connection_id: str) -> Connection:
        row = conn.execute("SELECT * FROM connections WHERE id = ?", (connection_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Connection not found")
        return connection_from_row(row)

    def get(self, connection_id: str) -> Connection:
        return self._db.read(lambda conn: self.get_in(conn, connection_id))

    def open(
        self,
        conn: sqlite3.Connection,
        interest: Interest,
        requester_id: str,
        agreed_price: Optional[float] = None,
    ) -> Connection:
        connection_id = new_id("con")
        try:
            conn.execute(
                """
                INSERT INTO connections (
                    id, requester_id, provider_id, request_id, interest_id, channel_id, status, agreed_price, started_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'service_in_progress', ?, ?)
                """,
                (
                    connection_id,
                    requester_id,
                    interest.provider_id,
                    interest.request_id,
                    interest.id,
                    secrets.token_hex(16),
                    agreed_price,
                    to_iso(self._db.now()),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise MarketplaceConflictError("A connection already exists for this interest") from exc
        return self.get_in(conn, connection_id)

    def mark_party_confirmed(self, conn: sqlite3.Connection, connection_id: str, role: str, confirmed_at: datetime) -> None:
        column = "requester" if role == "requester" else "provider"
        updated = conn.execute(
            f"""
            UPDATE connections
            SET {column}_confirmed = 1, {column}_confirmed_at = ?
            WHERE id = ? AND {column}_confirmed = 0 AND status = 'service_in_progress'
            """,
            (to_iso(confirmed_at), connection_id),
        )
        if updated.rowcount != 1:
            raise MarketplaceConflictError("Completion was already confirmed by this party")

    def mark_completed(self, conn: sqlite3.Connection, connection_id: str, completed_at: datetime) -> Connection:
        """Complete a connection whose two confirmations are both recorded."""
        completed_iso = to_iso(completed_at)
        updated = conn.execute(
            """
            UPDATE connections
            SET status = 'completed', completed_at = ?
            WHERE id = ? AND status = 'service_in_progress'
              AND requester_confirmed = 1 AND provider_confirmed = 1
            """,
            (completed_iso, connection_id),
        )
        if updated.rowcount != 1:
            raise MarketplaceConflictError("Both parties must confirm before the service is completed")
        connection = self.get_in(conn, connection_id)
        if connection.request_id:
            conn.execute(
                "UPDATE service_requests SET status = 'completed', updated_at = ? WHERE id = ? AND status = 'in_progress'",
                (completed_iso, connection.request_id),
            )
        return connection

    def cancel(self, connection_id: str, actor_id: str, reason: str = "") -> Connection:
        def apply(conn: sqlite3.Connection) -> Connection:
            connection = self.get_in(conn, connection_id)
            if party_role(connection, actor_id) is None:
                raise MarketplacePermissionError("Only the requester or provider can cancel this connection")
            if connection.status not in OPEN_STATUSES:
                raise MarketplaceConflictError(f"Connection is already {connection.status}")
            confirmed = conn.execute(
                "SELECT COUNT(*) AS total FROM completion_confirmations WHERE connection_id = ?",
                (connection_id,),
            ).fetchone()
            if confirmed["total"] or connection.requester_confirmed or connection.provider_confirmed:
                raise MarketplaceConflictError(
                    "Completion has already been confirmed; the connection can no longer be cancelled",
                    remediation="Confirm completion to finish the service instead.",
                )
            now_iso = to_iso(self._db.now())
            conn.execute(
                "UPDATE connections SET status = 'cancelled', cancelled_at = ?, cancelled_by = ? WHERE id = ?",
                (now_iso, actor_id, connection_id),
            )
            if connection.request_id:
                conn.execute(
                    "UPDATE service_requests SET status = 'cancelled', updated_at = ? WHERE id = ? AND status = 'in_progress'",
                    (now_iso, connection.request_id),
                )
            return self.get_in(conn, connection_id)

        cancelled = self._db.run(apply)
        logger.info("Connection %s cancelled by %s", connection_id, actor_id)
        counterpart = counterpart_of(cancelled, actor_id)
        self._notifications.notify(
            user_id=counterpart,
            event="connection_cancelled",
            payload={"connection_id": cancelled.id, "request_id": cancelled.request_id, "reason": reason},
            title="Connection cancelled",
            body=reason or "The other party cancelled this service.",
            category="connection",
            deep_link=f"connection:{cancelled.id}",
        )
        return cancelled

    def list_for_user(self, user_id: str, status: Optional[str] = None) -> List[Connection]:
        query = "SELECT * FROM connections WHERE (requester_id = ? OR provider_id = ?)"
        params: list = [user_id, user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY started_at DESC"
        rows = self._db.read(lambda conn: conn.execute(query, params).fetchall())
        return [connection_from_row(row) for row in rows]

    def list_pending_confirmation(self, user_id: str) -> List[Connection]:
        """In-progress connections still waiting on this user's confirmation."""
        rows = self._db.read(
            lambda conn: conn.execute(
                """
                SELECT * FROM connections
                WHERE status = 'service_in_progress'
                  AND ((requester_id = ? AND requester_confirmed = 0)
                    OR (provider_id = ? AND provider_confirmed = 0))
                ORDER BY started_at
                """,
                (user_id, user_id),
            ).fetchall()
        )
        return [connection_from_row(row) for row in rows]

    def count_open_for_provider_in(self, conn: sqlite3.Connection, provider_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM connections WHERE provider_id = ? AND status IN ('active', 'service_in_progress')",
            (provider_id,),
        ).fetchone()
        return int(row["total"])

    def count_open_for_provider(self, provider_id: str) -> int:
        return self._db.read(lambda conn: self.count_open_for_provider_in(conn, provider_id))
