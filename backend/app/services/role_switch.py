import logging
import sqlite3
from typing import List

from app.models import RoleHistoryEntry, RoleSwitchEligibility
from app.services.connection_coordinator import ConnectionCoordinator
from app.services.database import Database, new_id, to_iso
from app.services.errors import MarketplaceConflictError, MarketplaceValidationError
from app.services.interest_ledger import InterestLedger
from app.services.obligation_gate import ReviewObligationGate
from app.services.profile_directory import USER_ROLES, WorkProfileDirectory
from app.services.rows import role_history_from_row

logger = logging.getLogger(__name__)


def _other_role(role: str) -> str:
    return "provider" if role == "requester" else "requester"


class RoleSwitchGuard:
    """Moves a user between requester and provider without stranding open work."""

    def __init__(
        self,
        db: Database,
        directory: WorkProfileDirectory,
        gate: ReviewObligationGate,
        connections: ConnectionCoordinator,
        ledger: InterestLedger,
    ) -> None:
        self._db = db
        self._directory = directory
        self._gate = gate
        self._connections = connections
        self._ledger = ledger

    def _assess_in(self, conn: sqlite3.Connection, user_id: str) -> RoleSwitchEligibility:
        current_role = self._directory.ensure_user_in(conn, user_id)
        reasons: List[str] = []
        advisories: List[str] = []

        blocking = self._gate.blocking_status_in(conn, user_id)
        if blocking.blocked:
            reasons.append(f"Submit {blocking.count} overdue review(s) first")
        if current_role == "provider":
            open_connections = self._connections.count_open_for_provider_in(conn, user_id)
            if open_connections:
                reasons.append(f"Complete or cancel {open_connections} active connection(s) first")
            pending = self._ledger.count_pending_for_provider_in(conn, user_id)
            if pending:
                advisories.append(f"{pending} pending interest(s) will stay open until the requester decides")

        return RoleSwitchEligibility(
            can_switch=not reasons,
            current_role=current_role,
            target_role=_other_role(current_role),
            reasons=reasons,
            advisories=advisories,
        )

    def can_switch(self, user_id: str) -> RoleSwitchEligibility:
        return self._db.run(lambda conn: self._assess_in(conn, user_id))

    def switch(self, user_id: str, new_role: str, reason: str = "") -> RoleHistoryEntry:
        if new_role not in USER_ROLES:
            raise MarketplaceValidationError("Invalid role. Allowed: requester, provider")

        def apply(conn: sqlite3.Connection) -> RoleHistoryEntry:
            eligibility = self._assess_in(conn, user_id)
            old_role = eligibility.current_role
            if old_role == new_role:
                raise MarketplaceConflictError(f"You are already a {new_role}")
            self._gate.assert_not_blocked_in(conn, user_id, "switch roles")
            if not eligibility.can_switch:
                raise MarketplaceConflictError(
                    "Role switch is not possible right now",
                    remediation="; ".join(eligibility.reasons),
                )

            entry_id = new_id("role")
            conn.execute(
                """
                INSERT INTO role_history (id, user_id, old_role, new_role, reason, switched_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entry_id, user_id, old_role, new_role, reason.strip(), to_iso(self._db.now())),
            )
            self._directory.set_role(conn, user_id, new_role)
            if old_role == "provider":
                self._directory.deactivate_work_profile(conn, user_id)
                self._directory.seed_requester_profile(conn, user_id)
            else:
                self._directory.deactivate_requester_profile(conn, user_id)
                self._directory.seed_work_profile(conn, user_id)
            row = conn.execute("SELECT * FROM role_history WHERE id = ?", (entry_id,)).fetchone()
            return role_history_from_row(row)

        entry = self._db.run(apply)
        logger.info("User %s switched role %s -> %s", user_id, entry.old_role, entry.new_role)
        return entry

    def history(self, user_id: str) -> List[RoleHistoryEntry]:
        rows = self._db.read(
            lambda conn: conn.execute(
                "SELECT * FROM role_history WHERE user_id = ? ORDER BY switched_at DESC, id",
                (user_id,),
            ).fetchall()
        )
        return [role_history_from_row(row) for row in rows]
