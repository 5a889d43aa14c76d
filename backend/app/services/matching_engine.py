import json
import logging
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, tzinfo
from threading import Lock
from typing import Iterable, List, Optional, Set

from app.models import DispatchReport, ServiceRequest, WorkProfile
from app.services.database import Database, to_iso
from app.services.matching import DEFAULT_ELIGIBLE_TIERS, eligible_ranked, priority_score
from app.services.notification_store import NotificationStore
from app.services.profile_directory import WorkProfileDirectory

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Finds eligible providers for a request and fans out notifications.

    Each (request, provider) pair is logged once in ``request_notifications``.
    Deliveries run on a worker pool so a slow or failing channel never holds
    up request creation or another provider's delivery. Failed rows are picked
    up again by the next dispatch of the same request.
    """

    def __init__(
        self,
        db: Database,
        directory: WorkProfileDirectory,
        notifications: NotificationStore,
        eligible_tiers: Iterable[str] = DEFAULT_ELIGIBLE_TIERS,
        local_tz: Optional[tzinfo] = None,
        max_workers: int = 4,
    ) -> None:
        self._db = db
        self._directory = directory
        self._notifications = notifications
        self._eligible_tiers = frozenset(eligible_tiers)
        self._local_tz = local_tz
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")
        self._pending: Set[Future] = set()
        self._pending_lock = Lock()

    def eligible_providers(self, request: ServiceRequest, now: Optional[datetime] = None) -> List[WorkProfile]:
        moment = now or self._db.now()
        candidates = self._directory.list_candidates(request.category_id)
        return eligible_ranked(request, candidates, moment, eligible_tiers=self._eligible_tiers, local_tz=self._local_tz)

    def dispatch(self, request: ServiceRequest) -> DispatchReport:
        now = self._db.now()
        report = DispatchReport(request_id=request.id)
        if request.status != "active" or request.expires_at <= now:
            logger.info("Skipping dispatch for request=%s status=%s", request.id, request.status)
            return report

        ranked = self.eligible_providers(request, now)
        report.eligible = len(ranked)
        report.ranked_provider_ids = [profile.provider_id for profile in ranked]

        claimed, duplicates = self._db.run(lambda conn: self._claim(conn, request.id, ranked, now))
        report.queued = len(claimed)
        report.skipped_duplicates = duplicates
        for provider_id in claimed:
            self._submit(request, provider_id)

        logger.info("dispatch_report=%s", json.dumps(report.model_dump(), sort_keys=True))
        return report

    def _claim(
        self,
        conn: sqlite3.Connection,
        request_id: str,
        ranked: List[WorkProfile],
        now: datetime,
    ) -> tuple[List[str], int]:
        row = conn.execute("SELECT status FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row or row["status"] != "active":
            return [], 0

        claimed: List[str] = []
        duplicates = 0
        now_iso = to_iso(now)
        for profile in ranked:
            inserted = conn.execute(
                """
                INSERT OR IGNORE INTO request_notifications (request_id, provider_id, score, status, attempts, created_at)
                VALUES (?, ?, ?, 'queued', 0, ?)
                """,
                (request_id, profile.provider_id, priority_score(profile), now_iso),
            )
            if inserted.rowcount == 1:
                claimed.append(profile.provider_id)
                continue
            retried = conn.execute(
                """
                UPDATE request_notifications
                SET status = 'queued'
                WHERE request_id = ? AND provider_id = ? AND status = 'failed'
                """,
                (request_id, profile.provider_id),
            )
            if retried.rowcount == 1:
                claimed.append(profile.provider_id)
            else:
                duplicates += 1
        return claimed, duplicates

    def _submit(self, request: ServiceRequest, provider_id: str) -> None:
        future = self._executor.submit(self._deliver, request, provider_id)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _deliver(self, request: ServiceRequest, provider_id: str) -> None:
        emergency = request.urgency_tier == "emergency"
        payload = {
            "request_id": request.id,
            "category_id": request.category_id,
            "title": request.title,
            "locality": request.locality,
            "urgency": request.urgency_tier,
            "budget_min": request.budget_min,
            "budget_max": request.budget_max,
            "expires_at": to_iso(request.expires_at),
        }
        try:
            self._notifications.deliver(
                user_id=provider_id,
                event="new_service_request",
                payload=payload,
                title="Urgent service request" if emergency else "New service request in your area",
                body=f"{request.title} in {request.locality} ({request.urgency_tier})",
                category="request",
                deep_link=f"request:{request.id}",
            )
            status = "sent"
        except Exception:
            logger.exception("Delivery failed for request=%s provider=%s", request.id, provider_id)
            status = "failed"
        try:
            self._db.run(lambda conn: self._record_attempt(conn, request.id, provider_id, status))
        except Exception:
            logger.exception("Could not record delivery status for request=%s provider=%s", request.id, provider_id)

    def _record_attempt(self, conn: sqlite3.Connection, request_id: str, provider_id: str, status: str) -> None:
        conn.execute(
            """
            UPDATE request_notifications
            SET status = ?, attempts = attempts + 1, last_attempt_at = ?
            WHERE request_id = ? AND provider_id = ?
            """,
            (status, to_iso(self._db.now()), request_id, provider_id),
        )

    def delivery_log(self, request_id: str) -> List[dict]:
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT provider_id, score, status, attempts FROM request_notifications WHERE request_id = ? ORDER BY score DESC, provider_id",
                (request_id,),
            ).fetchall()
        )
        return [dict(row) for row in rows]

    def drain(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for in-flight deliveries; returns False if some are still running."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
