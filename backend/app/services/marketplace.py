import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import Settings, settings as default_settings
from app.models import SweepReport
from app.services.confirmation import CompletionConfirmationCoordinator
from app.services.connection_coordinator import ConnectionCoordinator
from app.services.database import Database, utc_now
from app.services.interest_ledger import InterestLedger
from app.services.matching_engine import MatchingEngine
from app.services.notification_store import NotificationStore, notification_store
from app.services.obligation_gate import ReviewObligationGate
from app.services.profile_directory import WorkProfileDirectory
from app.services.request_registry import RequestRegistry
from app.services.review_book import ReviewBook
from app.services.role_switch import RoleSwitchGuard

logger = logging.getLogger(__name__)


def _resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown MARKETPLACE_TIMEZONE %r, falling back to UTC", name)
        return timezone.utc


class Marketplace:
    """Wires the marketplace components around one shared database."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
        config: Optional[Settings] = None,
        notifications: Optional[NotificationStore] = None,
    ) -> None:
        self.settings = config or default_settings
        self.db = Database(db_path or self.settings.db_path, clock=clock)
        self.notifications = notifications or notification_store
        self.directory = WorkProfileDirectory(self.db)
        self.gate = ReviewObligationGate(self.db, review_window_days=self.settings.review_window_days)
        self.connections = ConnectionCoordinator(self.db, self.notifications)
        self.engine = MatchingEngine(
            self.db,
            self.directory,
            self.notifications,
            eligible_tiers=self.settings.eligible_tiers,
            local_tz=_resolve_timezone(self.settings.local_timezone),
            max_workers=self.settings.notification_workers,
        )
        self.ledger = InterestLedger(self.db, self.directory, self.gate, self.notifications)
        self.registry = RequestRegistry(
            self.db,
            self.directory,
            self.gate,
            self.ledger,
            self.connections,
            self.engine,
            self.notifications,
        )
        self.confirmations = CompletionConfirmationCoordinator(self.db, self.connections, self.gate, self.notifications)
        self.reviews = ReviewBook(
            self.db,
            self.gate,
            self.notifications,
            edit_window_hours=self.settings.review_edit_hours,
        )
        self.roles = RoleSwitchGuard(self.db, self.directory, self.gate, self.connections, self.ledger)

    def run_sweeps(self) -> SweepReport:
        return SweepReport(
            expired_requests=self.registry.sweep_expired(),
            obligations_now_blocking=self.gate.sweep_overdue(),
        )

    def shutdown(self) -> None:
        self.engine.drain(timeout=5.0)
        self.engine.shutdown()


class SweepRunner:
    """Runs request expiry and the overdue-review sweep on a daemon thread."""

    def __init__(self, target: Marketplace, interval_seconds: float) -> None:
        self._target = target
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                report = self._target.run_sweeps()
            except Exception:
                logger.exception("Background sweep failed")
                continue
            if report.expired_requests or report.obligations_now_blocking:
                logger.info(
                    "Background sweep expired=%s now_blocking=%s",
                    report.expired_requests,
                    report.obligations_now_blocking,
                )

    def start(self) -> None:
        if self._interval <= 0 or self._thread is not None:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="marketplace_sweeps", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1)
            self._thread = None


marketplace = Marketplace()
sweep_runner = SweepRunner(marketplace, default_settings.sweep_interval_seconds)
