import logging
import sqlite3
from datetime import timedelta
from typing import List, Optional, Tuple

from app.models import AvailableRequest, DispatchReport, SelectionResult, ServiceRequest, ServiceRequestCreate
from app.services.connection_coordinator import ConnectionCoordinator
from app.services.database import Database, new_id, to_iso
from app.services.errors import (
    MarketplaceConflictError,
    MarketplaceExpiredError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from app.services.interest_ledger import InterestLedger
from app.services.matching import covers_request
from app.services.matching_engine import MatchingEngine
from app.services.notification_store import NotificationStore
from app.services.obligation_gate import ReviewObligationGate
from app.services.profile_directory import WorkProfileDirectory
from app.services.rows import request_from_row

logger = logging.getLogger(__name__)

URGENCY_EXPIRY_HOURS = {
    "emergency": 24,
    "high": 72,
    "medium": 120,
    "low": 168,
}
REQUEST_STATUSES = {"active", "in_progress", "completed", "cancelled", "expired"}
URGENCY_RANK = {"emergency": 0, "high": 1, "medium": 2, "low": 3}
DEFAULT_AVAILABLE_LIMIT = 20


class RequestRegistry:
    """Owns service requests from creation through selection or expiry."""

    def __init__(
        self,
        db: Database,
        directory: WorkProfileDirectory,
        gate: ReviewObligationGate,
        ledger: InterestLedger,
        connections: ConnectionCoordinator,
        engine: MatchingEngine,
        notifications: NotificationStore,
    ) -> None:
        self._db = db
        self._directory = directory
        self._gate = gate
        self._ledger = ledger
        self._connections = connections
        self._engine = engine
        self._notifications = notifications

    def _get_in(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Service request not found")
        return request_from_row(row)

    def get(self, request_id: str) -> ServiceRequest:
        return self._db.read(lambda conn: self._get_in(conn, request_id))

    def create(self, requester_id: str, payload: ServiceRequestCreate) -> Tuple[ServiceRequest, DispatchReport]:
        title = payload.title.strip()
        category_id = payload.category_id.strip()
        locality = payload.locality.strip()
        if not title or not category_id or not locality:
            raise MarketplaceValidationError("title, category_id and locality are required")
        if (
            payload.budget_min is not None
            and payload.budget_max is not None
            and payload.budget_min > payload.budget_max
        ):
            raise MarketplaceValidationError("budget_min cannot be greater than budget_max")

        def apply(conn: sqlite3.Connection) -> ServiceRequest:
            self._gate.assert_not_blocked_in(conn, requester_id, "create new service requests")
            if self._directory.ensure_user_in(conn, requester_id) != "requester":
                raise MarketplacePermissionError(
                    "Only requesters can create service requests",
                    remediation="Switch to the requester role to post a request.",
                )
            now = self._db.now()
            request_id = new_id("req")
            now_iso = to_iso(now)
            conn.execute(
                """
                INSERT INTO service_requests (
                    id, requester_id, category_id, title, description, locality, urgency_tier,
                    budget_min, budget_max, status, created_at, expires_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)
                """,
                (
                    request_id,
                    requester_id,
                    category_id,
                    title,
                    payload.description.strip(),
                    locality,
                    payload.urgency_tier,
                    payload.budget_min,
                    payload.budget_max,
                    now_iso,
                    to_iso(now + timedelta(hours=URGENCY_EXPIRY_HOURS[payload.urgency_tier])),
                    now_iso,
                ),
            )
            return self._get_in(conn, request_id)

        request = self._db.run(apply)
        logger.info("Request %s created by %s urgency=%s", request.id, requester_id, request.urgency_tier)
        report = self._engine.dispatch(request)
        return request, report

    def list_for_requester(self, requester_id: str, status: Optional[str] = None) -> List[ServiceRequest]:
        if status and status not in REQUEST_STATUSES:
            raise MarketplaceValidationError("Invalid status. Allowed: active, in_progress, completed, cancelled, expired")
        query = "SELECT * FROM service_requests WHERE requester_id = ?"
        params: list = [requester_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id"

        def apply(conn: sqlite3.Connection) -> List[sqlite3.Row]:
            self._expire_overdue_in(conn, requester_id)
            return conn.execute(query, params).fetchall()

        rows = self._db.run(apply)
        return [request_from_row(row) for row in rows]

    def _expire_overdue_in(self, conn: sqlite3.Connection, requester_id: str) -> int:
        # Past-deadline requests read as expired whether or not the sweeper has run.
        now_iso = to_iso(self._db.now())
        return conn.execute(
            """
            UPDATE service_requests SET status = 'expired', updated_at = ?
            WHERE requester_id = ? AND status = 'active' AND expires_at <= ?
              AND NOT EXISTS (
                SELECT 1 FROM interests
                WHERE interests.request_id = service_requests.id AND interests.status = 'accepted'
              )
            """,
            (now_iso, requester_id, now_iso),
        ).rowcount

    def list_open_for_provider(
        self,
        provider_id: str,
        category_id: Optional[str] = None,
        locality: Optional[str] = None,
        urgency: Optional[str] = None,
        min_budget: Optional[float] = None,
        limit: int = DEFAULT_AVAILABLE_LIMIT,
    ) -> List[AvailableRequest]:
        """Active, unexpired requests this provider's work profile covers, most urgent first."""
        if urgency and urgency not in URGENCY_RANK:
            raise MarketplaceValidationError("Invalid urgency. Allowed: emergency, high, medium, low")
        if limit < 1:
            raise MarketplaceValidationError("limit must be at least 1")

        def load(conn: sqlite3.Connection) -> List[AvailableRequest]:
            if self._directory.ensure_user_in(conn, provider_id) != "provider":
                raise MarketplacePermissionError(
                    "Only providers can browse available requests",
                    remediation="Switch to the provider role to respond to requests.",
                )
            profile = self._directory.get_profile_in(conn, provider_id)
            if profile is None:
                return []
            query = """
                SELECT r.*,
                    (SELECT COUNT(*) FROM interests i WHERE i.request_id = r.id) AS total_interests,
                    EXISTS (
                        SELECT 1 FROM interests i WHERE i.request_id = r.id AND i.provider_id = ?
                    ) AS already_interested
                FROM service_requests r
                WHERE r.status = 'active' AND r.expires_at > ? AND r.requester_id != ?
            """
            params: list = [provider_id, to_iso(self._db.now()), provider_id]
            if category_id:
                query += " AND r.category_id = ?"
                params.append(category_id)
            if urgency:
                query += " AND r.urgency_tier = ?"
                params.append(urgency)
            if min_budget is not None:
                query += " AND r.budget_max >= ?"
                params.append(min_budget)
            results: List[AvailableRequest] = []
            for row in conn.execute(query, params).fetchall():
                request = request_from_row(row)
                if not covers_request(profile, request):
                    continue
                if locality and request.locality.strip().casefold() != locality.strip().casefold():
                    continue
                results.append(
                    AvailableRequest(
                        **request.model_dump(),
                        already_interested=bool(row["already_interested"]),
                        total_interests=int(row["total_interests"]),
                    )
                )
            return results

        results = self._db.run(load)
        results.sort(key=lambda item: item.created_at, reverse=True)
        results.sort(key=lambda item: URGENCY_RANK[item.urgency_tier])
        return results[:limit]

    def cancel(self, request_id: str, actor_id: str) -> ServiceRequest:
        def apply(conn: sqlite3.Connection) -> ServiceRequest:
            request = self._get_in(conn, request_id)
            if request.requester_id != actor_id:
                raise MarketplacePermissionError("Only the requester can cancel this request")
            if request.status != "active":
                raise MarketplaceConflictError(f"Request is already {request.status}")
            conn.execute(
                "UPDATE service_requests SET status = 'cancelled', updated_at = ? WHERE id = ?",
                (to_iso(self._db.now()), request_id),
            )
            return self._get_in(conn, request_id)

        return self._db.run(apply)

    def expire(self, request_id: str) -> bool:
        """Move an overdue active request to ``expired``. Returns False when nothing changed."""

        def apply(conn: sqlite3.Connection) -> bool:
            request = self._get_in(conn, request_id)
            now = self._db.now()
            if request.status != "active" or request.expires_at > now:
                return False
            accepted = conn.execute(
                "SELECT 1 FROM interests WHERE request_id = ? AND status = 'accepted' LIMIT 1",
                (request_id,),
            ).fetchone()
            if accepted:
                return False
            conn.execute(
                "UPDATE service_requests SET status = 'expired', updated_at = ? WHERE id = ? AND status = 'active'",
                (to_iso(now), request_id),
            )
            return True

        return self._db.run(apply)

    def sweep_expired(self) -> int:
        now_iso = to_iso(self._db.now())
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT id FROM service_requests WHERE status = 'active' AND expires_at <= ?",
                (now_iso,),
            ).fetchall()
        )
        expired = sum(1 for row in rows if self.expire(row["id"]))
        if expired:
            logger.info("Request sweep expired %s request(s)", expired)
        return expired

    def select(
        self,
        request_id: str,
        interest_id: str,
        actor_id: str,
        agreed_price: Optional[float] = None,
    ) -> SelectionResult:
        def apply(conn: sqlite3.Connection) -> SelectionResult:
            request = self._get_in(conn, request_id)
            if request.requester_id != actor_id:
                raise MarketplacePermissionError("Only the requester can select a provider")
            if request.status != "active":
                raise MarketplaceConflictError(f"Request is {request.status}; a provider can no longer be selected")
            now = self._db.now()
            if request.expires_at <= now:
                raise MarketplaceExpiredError("This request has expired")
            interest = self._ledger.accept_exclusive(conn, request_id, interest_id)
            conn.execute(
                """
                UPDATE service_requests
                SET status = 'in_progress', selected_provider_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (interest.provider_id, to_iso(now), request_id),
            )
            price = agreed_price if agreed_price is not None else interest.proposed_price
            connection = self._connections.open(conn, interest, request.requester_id, price)
            return SelectionResult(
                connection_id=connection.id,
                channel_id=connection.channel_id,
                request_id=request_id,
                provider_id=interest.provider_id,
            )

        result = self._db.run(apply)
        logger.info("Request %s selected provider %s", request_id, result.provider_id)
        self._notifications.notify(
            user_id=result.provider_id,
            event="interest_accepted",
            payload={
                "request_id": request_id,
                "interest_id": interest_id,
                "connection_id": result.connection_id,
                "channel_id": result.channel_id,
            },
            title="You were selected",
            body="The requester accepted your interest. Say hello in the chat.",
            category="interest",
            deep_link=f"connection:{result.connection_id}",
        )
        return result
