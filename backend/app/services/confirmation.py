"""Mutual completion: a connection completes only when both parties confirm.

The state is derived from the two persisted flags, so there is no way to
reach ``COMPLETED`` with a single confirmation.
"""
import logging
import sqlite3
from enum import Enum
from typing import Dict, List, Tuple

from app.models import (
    CompletionConfirmation,
    ConfirmationResult,
    ConfirmCompletionRequest,
    Connection,
    ConnectionStatusView,
    PartyConfirmationView,
)
from app.services.connection_coordinator import ConnectionCoordinator, counterpart_of, party_role
from app.services.database import Database, new_id, to_iso
from app.services.errors import MarketplaceConflictError, MarketplacePermissionError
from app.services.notification_store import NotificationStore
from app.services.obligation_gate import ReviewObligationGate
from app.services.rows import confirmation_from_row

logger = logging.getLogger(__name__)


class ConfirmationState(str, Enum):
    NO_CONFIRMATIONS = "no_confirmations"
    ONE_CONFIRMED = "one_confirmed"
    COMPLETED = "completed"


def confirmation_state(connection: Connection) -> ConfirmationState:
    if connection.status == "completed":
        return ConfirmationState.COMPLETED
    confirmed = int(connection.requester_confirmed) + int(connection.provider_confirmed)
    if confirmed == 0:
        return ConfirmationState.NO_CONFIRMATIONS
    if confirmed == 1:
        return ConfirmationState.ONE_CONFIRMED
    return ConfirmationState.COMPLETED


class CompletionConfirmationCoordinator:
    def __init__(
        self,
        db: Database,
        connections: ConnectionCoordinator,
        gate: ReviewObligationGate,
        notifications: NotificationStore,
    ) -> None:
        self._db = db
        self._connections = connections
        self._gate = gate
        self._notifications = notifications

    def confirm(self, connection_id: str, party_id: str, payload: ConfirmCompletionRequest) -> ConfirmationResult:
        def apply(conn: sqlite3.Connection) -> Tuple[Connection, bool]:
            connection = self._connections.get_in(conn, connection_id)
            role = party_role(connection, party_id)
            if role is None:
                raise MarketplacePermissionError("Only the requester or provider can confirm completion")
            already = connection.requester_confirmed if role == "requester" else connection.provider_confirmed
            if already:
                raise MarketplaceConflictError("You have already confirmed completion of this service")
            if connection.status != "service_in_progress":
                raise MarketplaceConflictError(f"Connection is {connection.status}; completion cannot be confirmed")

            now = self._db.now()
            try:
                conn.execute(
                    """
                    INSERT INTO completion_confirmations (
                        id, connection_id, party_id, role, satisfaction, satisfaction_note, evidence_flag, confirmed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        new_id("cfm"),
                        connection_id,
                        party_id,
                        role,
                        payload.satisfaction,
                        payload.note.strip(),
                        1 if payload.evidence else 0,
                        to_iso(now),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise MarketplaceConflictError("You have already confirmed completion of this service") from exc
            self._connections.mark_party_confirmed(conn, connection_id, role, now)

            refreshed = self._connections.get_in(conn, connection_id)
            if not (refreshed.requester_confirmed and refreshed.provider_confirmed):
                return refreshed, False
            completed = self._connections.mark_completed(conn, connection_id, now)
            self._gate.open_pair(conn, completed, now)
            return completed, True

        connection, both_confirmed = self._db.run(apply)
        if both_confirmed:
            logger.info("Connection %s mutually completed", connection.id)
            for user_id in (connection.requester_id, connection.provider_id):
                self._notifications.notify(
                    user_id=user_id,
                    event="service_mutually_completed",
                    payload={"connection_id": connection.id, "request_id": connection.request_id},
                    title="Service completed",
                    body="Both parties confirmed. Please leave a review.",
                    category="connection",
                    deep_link=f"connection:{connection.id}",
                )
        else:
            self._notifications.notify(
                user_id=counterpart_of(connection, party_id),
                event="partner_confirmed_completion",
                payload={"connection_id": connection.id, "request_id": connection.request_id},
                title="Completion confirmed",
                body="The other party confirmed the service is complete. Please confirm too.",
                category="connection",
                deep_link=f"connection:{connection.id}",
            )
        return ConfirmationResult(
            both_confirmed=both_confirmed,
            state=confirmation_state(connection).value,
            connection=connection,
        )

    def list_confirmations(self, connection_id: str) -> List[CompletionConfirmation]:
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT * FROM completion_confirmations WHERE connection_id = ? ORDER BY confirmed_at",
                (connection_id,),
            ).fetchall()
        )
        return [confirmation_from_row(row) for row in rows]

    def status_view(self, connection_id: str, viewer_id: str) -> ConnectionStatusView:
        def load(conn: sqlite3.Connection) -> Tuple[Connection, List[CompletionConfirmation]]:
            connection = self._connections.get_in(conn, connection_id)
            if party_role(connection, viewer_id) is None:
                raise MarketplacePermissionError("Only the requester or provider can view this connection")
            rows = conn.execute(
                "SELECT * FROM completion_confirmations WHERE connection_id = ?",
                (connection_id,),
            ).fetchall()
            return connection, [confirmation_from_row(row) for row in rows]

        connection, confirmations = self._db.read(load)
        by_role = {item.role: item for item in confirmations}
        parties: Dict[str, PartyConfirmationView] = {}
        for role in ("requester", "provider"):
            item = by_role.get(role)
            if item is None:
                parties[role] = PartyConfirmationView(confirmed=False)
            else:
                parties[role] = PartyConfirmationView(
                    confirmed=True,
                    confirmed_at=item.confirmed_at,
                    note=item.satisfaction_note,
                    satisfaction=item.satisfaction,
                    evidence_flag=item.evidence_flag,
                )
        viewer_role = party_role(connection, viewer_id)
        partner_role = "provider" if viewer_role == "requester" else "requester"
        state = confirmation_state(connection)
        return ConnectionStatusView(
            connection=connection,
            state=state.value,
            viewer_role=viewer_role,
            both_confirmed=connection.requester_confirmed and connection.provider_confirmed,
            viewer_confirmed=parties[viewer_role].confirmed,
            partner_confirmed=parties[partner_role].confirmed,
            service_completed=state is ConfirmationState.COMPLETED,
            confirmations=parties,
        )
