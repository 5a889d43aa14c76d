import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List

from app.models import Review, ReviewCreate, ReviewUpdate
from app.services.database import Database, new_id, to_iso
from app.services.errors import (
    MarketplaceConflictError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from app.services.notification_store import NotificationStore
from app.services.obligation_gate import ReviewObligationGate
from app.services.rows import review_from_row

logger = logging.getLogger(__name__)

# Requesters rate the provider's work; providers rate the client.
REVIEW_DIMENSIONS = {
    "requester": ("service_quality", "punctuality", "communication", "value_for_money"),
    "provider": ("payment_reliability", "communication", "clarity_of_requirements", "respect"),
}


def _validate_rating(value: int, field: str = "rating") -> None:
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 5:
        raise MarketplaceValidationError(f"{field} must be an integer from 1 to 5")


def _validate_dimensions(author_role: str, dimensions: Dict[str, int]) -> Dict[str, int]:
    allowed = REVIEW_DIMENSIONS[author_role]
    unknown = sorted(set(dimensions) - set(allowed))
    if unknown:
        raise MarketplaceValidationError(
            f"Unknown review dimension(s): {', '.join(unknown)}. Allowed: {', '.join(allowed)}"
        )
    for name, score in dimensions.items():
        _validate_rating(score, field=name)
    return dict(dimensions)


class ReviewBook:
    """Reviews written after mutual completion; submitting one resolves the author's obligation."""

    def __init__(
        self,
        db: Database,
        gate: ReviewObligationGate,
        notifications: NotificationStore,
        edit_window_hours: int = 24,
    ) -> None:
        self._db = db
        self._gate = gate
        self._notifications = notifications
        self._edit_window = timedelta(hours=edit_window_hours)

    def _get_in(self, conn: sqlite3.Connection, review_id: str) -> Review:
        row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Review not found")
        return review_from_row(row)

    def submit(self, author_id: str, payload: ReviewCreate) -> Review:
        _validate_rating(payload.rating)
        comment = payload.comment.strip()
        if not comment:
            raise MarketplaceValidationError("comment is required")

        def apply(conn: sqlite3.Connection) -> Review:
            obligation = self._gate.find_in(conn, payload.connection_id, author_id)
            if obligation is None:
                raise MarketplaceNotFoundError(
                    "No completed connection is awaiting your review",
                    remediation="Reviews open once both parties confirm completion.",
                )
            if obligation.resolved:
                raise MarketplaceConflictError("You have already reviewed this connection")
            dimensions = _validate_dimensions(obligation.owner_role, payload.dimensions)

            now = self._db.now()
            review_id = new_id("rev")
            try:
                conn.execute(
                    """
                    INSERT INTO reviews (
                        id, connection_id, author_id, author_role, subject_id, rating, comment,
                        dimensions_json, would_engage_again, created_at, updated_at, editable_until
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        review_id,
                        payload.connection_id,
                        author_id,
                        obligation.owner_role,
                        obligation.counterparty_id,
                        payload.rating,
                        comment,
                        json.dumps(dimensions, sort_keys=True),
                        1 if payload.would_engage_again else 0,
                        to_iso(now),
                        to_iso(now),
                        to_iso(now + self._edit_window),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise MarketplaceConflictError("You have already reviewed this connection") from exc
            self._gate.resolve(conn, payload.connection_id, author_id, review_id)
            return self._get_in(conn, review_id)

        review = self._db.run(apply)
        logger.info("Review %s submitted for connection %s", review.id, review.connection_id)
        self._notifications.notify(
            user_id=review.subject_id,
            event="new_review_received",
            payload={"review_id": review.id, "connection_id": review.connection_id, "rating": review.rating},
            title="You received a review",
            body=f"{review.rating}/5: {review.comment[:80]}",
            category="review",
            deep_link=f"review:{review.id}",
        )
        return review

    def update(self, review_id: str, author_id: str, payload: ReviewUpdate) -> Review:
        changes: Dict[str, Any] = payload.model_dump(exclude_unset=True)

        def apply(conn: sqlite3.Connection) -> Review:
            review = self._get_in(conn, review_id)
            if review.author_id != author_id:
                raise MarketplacePermissionError("Only the author can edit this review")
            now = self._db.now()
            if now > review.editable_until:
                raise MarketplaceConflictError(
                    "The edit window for this review has closed",
                    remediation=f"Reviews can only be edited within {int(self._edit_window.total_seconds() // 3600)} hours of posting.",
                )
            columns: Dict[str, Any] = {}
            if changes.get("rating") is not None:
                _validate_rating(changes["rating"])
                columns["rating"] = changes["rating"]
            if changes.get("comment") is not None:
                comment = changes["comment"].strip()
                if not comment:
                    raise MarketplaceValidationError("comment cannot be empty")
                columns["comment"] = comment
            if changes.get("dimensions") is not None:
                columns["dimensions_json"] = json.dumps(
                    _validate_dimensions(review.author_role, changes["dimensions"]),
                    sort_keys=True,
                )
            if changes.get("would_engage_again") is not None:
                columns["would_engage_again"] = 1 if changes["would_engage_again"] else 0
            if columns:
                assignments = ", ".join(f"{column} = ?" for column in columns)
                conn.execute(
                    f"UPDATE reviews SET {assignments}, updated_at = ? WHERE id = ?",
                    (*columns.values(), to_iso(now), review_id),
                )
            return self._get_in(conn, review_id)

        return self._db.run(apply)

    def list_for_subject(self, subject_id: str) -> List[Review]:
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT * FROM reviews WHERE subject_id = ? ORDER BY created_at DESC, id",
                (subject_id,),
            ).fetchall()
        )
        return [review_from_row(row) for row in rows]

    def list_by_author(self, author_id: str) -> List[Review]:
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT * FROM reviews WHERE author_id = ? ORDER BY created_at DESC, id",
                (author_id,),
            ).fetchall()
        )
        return [review_from_row(row) for row in rows]
