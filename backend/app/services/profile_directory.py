import json
import sqlite3
from datetime import time
from typing import Any, Dict, List, Optional

from app.models import AvailabilityUpdate, WorkProfile, WorkProfileUpdate
from app.services.database import Database, to_iso
from app.services.errors import (
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)

ALL_LOCALITIES = "all_localities"
USER_ROLES = {"requester", "provider"}
SUBSCRIPTION_TIERS = {"free", "basic", "premium"}
VERIFICATION_STATUSES = {"pending", "verified", "rejected"}


def _clean_list(values: List[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        cleaned = value.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class WorkProfileDirectory:
    """Provider capability profiles and user roles.

    The matching core only reads from here; the write methods back the
    profile endpoints and the role switch.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # Users

    def ensure_user(self, user_id: str, role: str = "requester") -> str:
        return self._db.run(lambda conn: self.ensure_user_in(conn, user_id, role))

    def ensure_user_in(self, conn: sqlite3.Connection, user_id: str, role: str = "requester") -> str:
        if role not in USER_ROLES:
            raise MarketplaceValidationError("Invalid role. Allowed: requester, provider")
        row = conn.execute("SELECT role FROM users WHERE id = ?", (user_id,)).fetchone()
        if row:
            return str(row["role"])
        now_iso = to_iso(self._db.now())
        conn.execute(
            "INSERT INTO users (id, role, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (user_id, role, now_iso, now_iso),
        )
        if role == "provider":
            self.seed_work_profile(conn, user_id)
        else:
            self.seed_requester_profile(conn, user_id)
        return role

    def get_role(self, user_id: str) -> str:
        return self.ensure_user(user_id)

    def set_role(self, conn: sqlite3.Connection, user_id: str, role: str) -> None:
        conn.execute(
            "UPDATE users SET role = ?, updated_at = ? WHERE id = ?",
            (role, to_iso(self._db.now()), user_id),
        )

    # Provider profiles

    def _row_to_profile(self, row: sqlite3.Row, rating_row: Optional[sqlite3.Row] = None) -> WorkProfile:
        avg_rating = None
        review_count = 0
        if rating_row is not None and rating_row["review_count"]:
            avg_rating = round(float(rating_row["avg_rating"]), 2)
            review_count = int(rating_row["review_count"])
        return WorkProfile(
            provider_id=row["provider_id"],
            categories=json.loads(row["categories_json"] or "[]"),
            localities=json.loads(row["localities_json"] or "[]"),
            is_available=bool(row["is_available"]),
            availability_type=row["availability_type"],
            subscription_tier=row["subscription_tier"],
            verification_status=row["verification_status"],
            push_enabled=bool(row["push_enabled"]),
            quiet_hours_start=row["quiet_hours_start"],
            quiet_hours_end=row["quiet_hours_end"],
            about=row["about"] or "",
            is_active=bool(row["is_active"]),
            avg_rating=avg_rating,
            review_count=review_count,
        )

    def _rating_row(self, conn: sqlite3.Connection, provider_id: str) -> sqlite3.Row:
        return conn.execute(
            """
            SELECT AVG(rating) AS avg_rating, COUNT(*) AS review_count
            FROM reviews
            WHERE subject_id = ? AND author_role = 'requester'
            """,
            (provider_id,),
        ).fetchone()

    def get_profile_in(self, conn: sqlite3.Connection, provider_id: str) -> Optional[WorkProfile]:
        row = conn.execute("SELECT * FROM work_profiles WHERE provider_id = ?", (provider_id,)).fetchone()
        if not row:
            return None
        return self._row_to_profile(row, self._rating_row(conn, provider_id))

    def _require_profile_in(self, conn: sqlite3.Connection, provider_id: str) -> WorkProfile:
        profile = self.get_profile_in(conn, provider_id)
        if profile is None:
            raise MarketplaceNotFoundError("Work profile not found")
        return profile

    def get_profile(self, provider_id: str) -> Optional[WorkProfile]:
        return self._db.read(lambda conn: self.get_profile_in(conn, provider_id))

    def list_candidates(self, category_id: str) -> List[WorkProfile]:
        """Active provider profiles declaring ``category_id``, with derived ratings."""

        def load(conn: sqlite3.Connection) -> List[WorkProfile]:
            rows = conn.execute(
                """
                SELECT wp.*
                FROM work_profiles wp
                JOIN users u ON u.id = wp.provider_id
                WHERE u.role = 'provider' AND wp.is_active = 1
                """
            ).fetchall()
            rating_rows = conn.execute(
                """
                SELECT subject_id, AVG(rating) AS avg_rating, COUNT(*) AS review_count
                FROM reviews
                WHERE author_role = 'requester'
                GROUP BY subject_id
                """
            ).fetchall()
            ratings = {row["subject_id"]: row for row in rating_rows}
            profiles = []
            for row in rows:
                profile = self._row_to_profile(row, ratings.get(row["provider_id"]))
                if category_id in profile.categories:
                    profiles.append(profile)
            return profiles

        return self._db.read(load)

    def _require_provider(self, conn: sqlite3.Connection, provider_id: str) -> None:
        role = self.ensure_user_in(conn, provider_id)
        if role != "provider":
            raise MarketplacePermissionError(
                "Only providers have a work profile",
                remediation="Switch to the provider role to set up a work profile.",
            )

    def upsert_work_profile(self, provider_id: str, update: WorkProfileUpdate) -> WorkProfile:
        changes: Dict[str, Any] = update.model_dump(exclude_unset=True)
        for field in ("quiet_hours_start", "quiet_hours_end"):
            value = changes.get(field)
            if value:
                try:
                    time.fromisoformat(value)
                except ValueError as exc:
                    raise MarketplaceValidationError(f"Invalid {field}; expected HH:MM") from exc

        columns: Dict[str, Any] = {}
        if "categories" in changes:
            columns["categories_json"] = json.dumps(_clean_list(changes["categories"] or []))
        if "localities" in changes:
            columns["localities_json"] = json.dumps(_clean_list(changes["localities"] or []))
        if "push_enabled" in changes:
            columns["push_enabled"] = 1 if changes["push_enabled"] else 0
        for field in ("quiet_hours_start", "quiet_hours_end", "about"):
            if field in changes:
                columns[field] = changes[field]

        def apply(conn: sqlite3.Connection) -> WorkProfile:
            self._require_provider(conn, provider_id)
            self.seed_work_profile(conn, provider_id)
            self._update_columns(conn, provider_id, columns)
            return self._require_profile_in(conn, provider_id)

        return self._db.run(apply)

    def set_availability(self, provider_id: str, update: AvailabilityUpdate) -> WorkProfile:
        availability_type = update.availability_type or ("online" if update.is_available else "offline")

        def apply(conn: sqlite3.Connection) -> WorkProfile:
            self._require_provider(conn, provider_id)
            self.seed_work_profile(conn, provider_id)
            self._update_columns(
                conn,
                provider_id,
                {"is_available": 1 if update.is_available else 0, "availability_type": availability_type},
            )
            return self._require_profile_in(conn, provider_id)

        return self._db.run(apply)

    def set_verification(self, provider_id: str, status: str) -> None:
        if status not in VERIFICATION_STATUSES:
            raise MarketplaceValidationError("Invalid verification status. Allowed: pending, verified, rejected")
        self._set_column(provider_id, "verification_status", status)

    def set_subscription_tier(self, provider_id: str, tier: str) -> None:
        if tier not in SUBSCRIPTION_TIERS:
            raise MarketplaceValidationError("Invalid subscription tier. Allowed: free, basic, premium")
        self._set_column(provider_id, "subscription_tier", tier)

    def _set_column(self, provider_id: str, column: str, value: Any) -> None:
        def apply(conn: sqlite3.Connection) -> None:
            row = conn.execute("SELECT provider_id FROM work_profiles WHERE provider_id = ?", (provider_id,)).fetchone()
            if not row:
                raise MarketplaceNotFoundError("Work profile not found")
            self._update_columns(conn, provider_id, {column: value})

        self._db.run(apply)

    def _update_columns(self, conn: sqlite3.Connection, provider_id: str, columns: Dict[str, Any]) -> None:
        if not columns:
            return
        assignments = ", ".join(f"{column} = ?" for column in columns)
        conn.execute(
            f"UPDATE work_profiles SET {assignments}, updated_at = ? WHERE provider_id = ?",
            (*columns.values(), to_iso(self._db.now()), provider_id),
        )

    # Role-specific rows, used inside the role switch transaction

    def seed_work_profile(self, conn: sqlite3.Connection, provider_id: str) -> None:
        conn.execute(
            """
            INSERT INTO work_profiles (provider_id, updated_at)
            VALUES (?, ?)
            ON CONFLICT(provider_id) DO UPDATE SET is_active = 1, updated_at = excluded.updated_at
            """,
            (provider_id, to_iso(self._db.now())),
        )

    def deactivate_work_profile(self, conn: sqlite3.Connection, provider_id: str) -> None:
        conn.execute(
            "UPDATE work_profiles SET is_active = 0, is_available = 0, availability_type = 'offline', updated_at = ? WHERE provider_id = ?",
            (to_iso(self._db.now()), provider_id),
        )

    def seed_requester_profile(self, conn: sqlite3.Connection, user_id: str) -> None:
        conn.execute(
            """
            INSERT INTO requester_profiles (user_id, updated_at)
            VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET is_active = 1, updated_at = excluded.updated_at
            """,
            (user_id, to_iso(self._db.now())),
        )

    def deactivate_requester_profile(self, conn: sqlite3.Connection, user_id: str) -> None:
        conn.execute(
            "UPDATE requester_profiles SET is_active = 0, updated_at = ? WHERE user_id = ?",
            (to_iso(self._db.now()), user_id),
        )
