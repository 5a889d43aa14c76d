import os
import sys
from typing import Set

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import ServiceRequestCreate
from app.services.marketplace import Marketplace
from app.services.notification_store import NotificationStore
from app.services.push_sender import PushSender


class FlakyNotificationStore(NotificationStore):
    """Fails deliveries for selected users until they are healed."""

    def __init__(self) -> None:
        super().__init__(sender=PushSender(credentials_path=""))
        self.failing: Set[str] = set()

    def deliver(self, user_id, event, payload, title, body, category="system", deep_link=None):
        if user_id in self.failing:
            raise ConnectionError(f"channel down for {user_id}")
        return super().deliver(user_id, event, payload, title, body, category=category, deep_link=deep_link)


@pytest.fixture
def notifications():
    return FlakyNotificationStore()


def _received(market: Marketplace, user_id: str) -> int:
    return sum(1 for event in market.notifications.events_since(user_id) if event.event == "new_service_request")


def _create_payload(urgency: str) -> ServiceRequestCreate:
    return ServiceRequestCreate(
        category_id="plumbing",
        title="Burst pipe",
        description="Water everywhere",
        locality="downtown",
        urgency_tier=urgency,
    )


def test_dispatch_reaches_only_eligible_providers(market, make_requester, make_provider, make_request):
    eligible = make_provider()
    wildcard = make_provider(localities=("all_localities",))
    busy = make_provider(availability="busy")
    offline = make_provider(availability="offline")
    free_tier = make_provider(tier="free")
    unverified = make_provider(verified=False)
    muted = make_provider(push_enabled=False)
    other_trade = make_provider(categories=("electrical",))

    request = make_request(make_requester())
    assert market.engine.drain()

    for provider_id in (eligible, wildcard, busy):
        assert _received(market, provider_id) == 1
    for provider_id in (offline, free_tier, unverified, muted, other_trade):
        assert _received(market, provider_id) == 0
    log = {row["provider_id"]: row for row in market.engine.delivery_log(request.id)}
    assert set(log) == {eligible, wildcard, busy}
    assert all(row["status"] == "sent" and row["attempts"] == 1 for row in log.values())


def test_redispatch_never_sends_twice(market, make_requester, make_provider, make_request):
    provider_id = make_provider()
    request = make_request(make_requester())
    assert market.engine.drain()

    report = market.engine.dispatch(market.registry.get(request.id))
    assert market.engine.drain()

    assert report.eligible == 1
    assert report.queued == 0
    assert report.skipped_duplicates == 1
    assert _received(market, provider_id) == 1


def test_failed_delivery_does_not_block_others_and_is_retried(market, notifications, make_requester, make_provider, make_request):
    healthy = make_provider()
    flaky = make_provider()
    notifications.failing.add(flaky)

    request = make_request(make_requester())
    assert market.engine.drain()

    assert _received(market, healthy) == 1
    log = {row["provider_id"]: row for row in market.engine.delivery_log(request.id)}
    assert log[flaky]["status"] == "failed"

    notifications.failing.clear()
    report = market.engine.dispatch(market.registry.get(request.id))
    assert market.engine.drain()

    assert report.queued == 1
    assert _received(market, flaky) == 1
    assert _received(market, healthy) == 1
    log = {row["provider_id"]: row for row in market.engine.delivery_log(request.id)}
    assert log[flaky]["status"] == "sent"
    assert log[flaky]["attempts"] == 2


def test_closed_or_expired_requests_are_not_dispatched(market, make_requester, make_provider, make_request, clock):
    make_provider()
    requester_id = make_requester()
    cancelled = make_request(requester_id)
    market.registry.cancel(cancelled.id, requester_id)
    assert market.engine.dispatch(market.registry.get(cancelled.id)).queued == 0

    urgent = make_request(requester_id, urgency="emergency")
    clock.advance(hours=25)
    assert market.engine.dispatch(market.registry.get(urgent.id)).eligible == 0


def test_quiet_hours_hold_back_routine_requests_but_not_emergencies(market, make_requester, make_provider):
    # The test clock sits at 12:00 UTC.
    sleeping = make_provider(quiet_hours=("11:00", "13:00"))
    requester_id = make_requester()

    _, routine_report = market.registry.create(requester_id, _create_payload("medium"))
    _, emergency_report = market.registry.create(requester_id, _create_payload("emergency"))
    assert market.engine.drain()

    assert sleeping not in routine_report.ranked_provider_ids
    assert sleeping in emergency_report.ranked_provider_ids
    assert _received(market, sleeping) == 1


def test_dispatch_ranks_premium_before_basic(market, make_requester, make_provider):
    basic = make_provider(tier="basic")
    premium = make_provider(tier="premium")
    _, report = market.registry.create(make_requester(), _create_payload("high"))
    assert report.ranked_provider_ids == [premium, basic]
