import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from app.models import Interest, InterestCreate, InterestUpdate, ServiceRequest
from app.services.database import Database, new_id, to_iso
from app.services.errors import (
    MarketplaceConflictError,
    MarketplaceExpiredError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
)
from app.services.matching import covers_request
from app.services.notification_store import NotificationStore
from app.services.obligation_gate import ReviewObligationGate
from app.services.profile_directory import WorkProfileDirectory
from app.services.rows import interest_from_row, request_from_row

logger = logging.getLogger(__name__)


class InterestLedger:
    """Provider interest in open requests, at most one per (request, provider)."""

    def __init__(
        self,
        db: Database,
        directory: WorkProfileDirectory,
        gate: ReviewObligationGate,
        notifications: NotificationStore,
    ) -> None:
        self._db = db
        self._directory = directory
        self._gate = gate
        self._notifications = notifications

    def _request_in(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Service request not found")
        return request_from_row(row)

    def get_in(self, conn: sqlite3.Connection, interest_id: str) -> Interest:
        row = conn.execute("SELECT * FROM interests WHERE id = ?", (interest_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Interest not found")
        return interest_from_row(row)

    def get(self, interest_id: str) -> Interest:
        return self._db.read(lambda conn: self.get_in(conn, interest_id))

    def submit(self, request_id: str, provider_id: str, payload: InterestCreate) -> Interest:
        def apply(conn: sqlite3.Connection) -> Tuple[Interest, ServiceRequest]:
            self._gate.assert_not_blocked_in(conn, provider_id, "express interest in requests")
            request = self._request_in(conn, request_id)
            now = self._db.now()
            if request.status != "active" or request.expires_at <= now:
                raise MarketplaceExpiredError("This request is no longer accepting interest")
            if request.requester_id == provider_id:
                raise MarketplacePermissionError("You cannot express interest in your own request")
            if self._directory.ensure_user_in(conn, provider_id) != "provider":
                raise MarketplacePermissionError(
                    "Only providers can express interest",
                    remediation="Switch to the provider role first.",
                )
            profile = self._directory.get_profile_in(conn, provider_id)
            if profile is None or not covers_request(profile, request):
                raise MarketplacePermissionError(
                    "Your work profile does not cover this category and locality",
                    remediation="Add the category and locality to your work profile.",
                )
            existing = conn.execute(
                "SELECT id FROM interests WHERE request_id = ? AND provider_id = ?",
                (request_id, provider_id),
            ).fetchone()
            if existing:
                raise MarketplaceConflictError("You have already expressed interest in this request")

            interest_id = new_id("int")
            now_iso = to_iso(now)
            try:
                conn.execute(
                    """
                    INSERT INTO interests (
                        id, request_id, provider_id, proposed_price, message, estimated_completion_time,
                        status, viewed_by_requester, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                    """,
                    (
                        interest_id,
                        request_id,
                        provider_id,
                        payload.proposed_price,
                        payload.message.strip(),
                        payload.estimated_completion_time,
                        now_iso,
                        now_iso,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise MarketplaceConflictError("You have already expressed interest in this request") from exc
            conn.execute(
                "UPDATE service_requests SET interested_count = interested_count + 1, updated_at = ? WHERE id = ?",
                (now_iso, request_id),
            )
            return self.get_in(conn, interest_id), request

        interest, request = self._db.run(apply)
        self._notifications.notify(
            user_id=request.requester_id,
            event="new_interest",
            payload={
                "request_id": request.id,
                "interest_id": interest.id,
                "provider_id": provider_id,
                "proposed_price": interest.proposed_price,
            },
            title="New interest in your request",
            body=f"A provider is interested in '{request.title}'",
            category="interest",
            deep_link=f"request:{request.id}",
        )
        return interest

    def accept_exclusive(self, conn: sqlite3.Connection, request_id: str, interest_id: str) -> Interest:
        """Accept one pending interest and reject its pending siblings, in the caller's transaction."""
        row = conn.execute("SELECT * FROM interests WHERE id = ?", (interest_id,)).fetchone()
        if not row or row["request_id"] != request_id:
            raise MarketplaceConflictError("Interest does not belong to this request")
        if row["status"] != "pending":
            raise MarketplaceConflictError(f"Interest is already {row['status']}")
        now_iso = to_iso(self._db.now())
        conn.execute(
            "UPDATE interests SET status = 'accepted', updated_at = ? WHERE id = ?",
            (now_iso, interest_id),
        )
        conn.execute(
            "UPDATE interests SET status = 'rejected', updated_at = ? WHERE request_id = ? AND id != ? AND status = 'pending'",
            (now_iso, request_id, interest_id),
        )
        return self.get_in(conn, interest_id)

    def _editable_in(self, conn: sqlite3.Connection, interest_id: str, provider_id: str) -> Interest:
        interest = self.get_in(conn, interest_id)
        if interest.provider_id != provider_id:
            raise MarketplacePermissionError("Only the provider who submitted this interest can change it")
        if interest.status != "pending":
            raise MarketplaceConflictError(f"Interest is already {interest.status}")
        request = self._request_in(conn, interest.request_id)
        if request.status != "active" or request.expires_at <= self._db.now():
            raise MarketplaceConflictError("The request is no longer open")
        return interest

    def update(self, interest_id: str, provider_id: str, payload: InterestUpdate) -> Interest:
        changes: Dict[str, Any] = payload.model_dump(exclude_unset=True)
        if "message" in changes and changes["message"] is not None:
            changes["message"] = changes["message"].strip()
        if changes.get("message") is None:
            changes.pop("message", None)
        if "proposed_price" in changes or "message" in changes:
            # A revised offer is unread again for the requester.
            changes["viewed_by_requester"] = 0

        def apply(conn: sqlite3.Connection) -> Interest:
            self._editable_in(conn, interest_id, provider_id)
            if changes:
                assignments = ", ".join(f"{column} = ?" for column in changes)
                conn.execute(
                    f"UPDATE interests SET {assignments}, updated_at = ? WHERE id = ?",
                    (*changes.values(), to_iso(self._db.now()), interest_id),
                )
            return self.get_in(conn, interest_id)

        return self._db.run(apply)

    def withdraw(self, interest_id: str, provider_id: str) -> Interest:
        def apply(conn: sqlite3.Connection) -> Interest:
            interest = self._editable_in(conn, interest_id, provider_id)
            now_iso = to_iso(self._db.now())
            conn.execute(
                "UPDATE interests SET status = 'withdrawn', updated_at = ? WHERE id = ?",
                (now_iso, interest_id),
            )
            conn.execute(
                "UPDATE service_requests SET interested_count = MAX(interested_count - 1, 0), updated_at = ? WHERE id = ?",
                (now_iso, interest.request_id),
            )
            return self.get_in(conn, interest_id)

        withdrawn = self._db.run(apply)
        logger.info("Interest %s withdrawn by %s", interest_id, provider_id)
        return withdrawn

    def list_for_request(self, request_id: str, owner_id: str) -> List[Interest]:
        """Interests on the owner's request. Reading them marks them viewed."""

        def apply(conn: sqlite3.Connection) -> List[Interest]:
            request = self._request_in(conn, request_id)
            if request.requester_id != owner_id:
                raise MarketplacePermissionError("Only the requester can view interests on this request")
            conn.execute(
                "UPDATE interests SET viewed_by_requester = 1 WHERE request_id = ? AND viewed_by_requester = 0",
                (request_id,),
            )
            rows = conn.execute(
                "SELECT * FROM interests WHERE request_id = ? ORDER BY created_at, id",
                (request_id,),
            ).fetchall()
            return [interest_from_row(row) for row in rows]

        return self._db.run(apply)

    def list_for_provider(self, provider_id: str, status: Optional[str] = None) -> List[Interest]:
        query = "SELECT * FROM interests WHERE provider_id = ?"
        params: list = [provider_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id"
        rows = self._db.read(lambda conn: conn.execute(query, params).fetchall())
        return [interest_from_row(row) for row in rows]

    def count_pending_for_provider_in(self, conn: sqlite3.Connection, provider_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM interests WHERE provider_id = ? AND status = 'pending'",
            (provider_id,),
        ).fetchone()
        return int(row["total"])
