import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

# Point the app's module-level singletons at a throwaway database before anything imports them.
os.environ["MARKETPLACE_DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="marketplace-tests-"), "marketplace.sqlite3")
os.environ["AUTH_REQUIRED"] = "false"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ.pop("FIREBASE_CREDENTIALS_PATH", None)

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import AvailabilityUpdate, InterestCreate, ServiceRequestCreate, WorkProfileUpdate
from app.services.marketplace import Marketplace
from app.services.notification_store import NotificationStore
from app.services.push_sender import PushSender

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifications():
    return NotificationStore(sender=PushSender(credentials_path=""))


@pytest.fixture
def market(tmp_path, clock, notifications):
    instance = Marketplace(db_path=str(tmp_path / "market.sqlite3"), clock=clock, notifications=notifications)
    yield instance
    instance.shutdown()


@pytest.fixture
def make_requester(market):
    def factory() -> str:
        user_id = f"req_{uuid4().hex[:8]}"
        market.directory.ensure_user(user_id, role="requester")
        return user_id

    return factory


@pytest.fixture
def make_provider(market):
    def factory(
        categories=("plumbing",),
        localities=("downtown",),
        tier="basic",
        verified=True,
        availability="online",
        push_enabled=True,
        quiet_hours=None,
    ) -> str:
        provider_id = f"prov_{uuid4().hex[:8]}"
        market.directory.ensure_user(provider_id, role="provider")
        update = WorkProfileUpdate(categories=list(categories), localities=list(localities), push_enabled=push_enabled)
        if quiet_hours:
            update = WorkProfileUpdate(
                categories=list(categories),
                localities=list(localities),
                push_enabled=push_enabled,
                quiet_hours_start=quiet_hours[0],
                quiet_hours_end=quiet_hours[1],
            )
        market.directory.upsert_work_profile(provider_id, update)
        market.directory.set_availability(
            provider_id,
            AvailabilityUpdate(is_available=availability != "offline", availability_type=availability),
        )
        if verified:
            market.directory.set_verification(provider_id, "verified")
        market.directory.set_subscription_tier(provider_id, tier)
        return provider_id

    return factory


@pytest.fixture
def make_request(market):
    def factory(requester_id: str, urgency="medium", category_id="plumbing", locality="downtown"):
        request, _ = market.registry.create(
            requester_id,
            ServiceRequestCreate(
                category_id=category_id,
                title="Leaking kitchen tap",
                description="Drips all night",
                locality=locality,
                urgency_tier=urgency,
                budget_min=50,
                budget_max=120,
            ),
        )
        return request

    return factory


@pytest.fixture
def open_connection(market, make_requester, make_provider, make_request):
    """Requester, provider and a selected connection in service_in_progress."""

    def factory(urgency="medium"):
        requester_id = make_requester()
        provider_id = make_provider()
        request = make_request(requester_id, urgency=urgency)
        interest = market.ledger.submit(request.id, provider_id, InterestCreate(proposed_price=80, message="Can do today"))
        selection = market.registry.select(request.id, interest.id, requester_id)
        return {
            "requester_id": requester_id,
            "provider_id": provider_id,
            "request": request,
            "interest": interest,
            "connection_id": selection.connection_id,
        }

    return factory
