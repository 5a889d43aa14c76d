import os
import sys
import threading
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.models import InterestCreate, ServiceRequestCreate
from app.services.errors import (
    MarketplaceConflictError,
    MarketplaceExpiredError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from app.services.request_registry import URGENCY_EXPIRY_HOURS


def _payload(**overrides) -> ServiceRequestCreate:
    fields = {
        "category_id": "plumbing",
        "title": "Leaking kitchen tap",
        "description": "Drips all night",
        "locality": "downtown",
    }
    fields.update(overrides)
    return ServiceRequestCreate(**fields)


def test_expiry_follows_urgency_tier(market, make_requester, clock):
    requester_id = make_requester()
    for urgency, hours in URGENCY_EXPIRY_HOURS.items():
        request, _ = market.registry.create(requester_id, _payload(urgency_tier=urgency))
        assert request.status == "active"
        assert request.expires_at == clock.current + timedelta(hours=hours)
    assert URGENCY_EXPIRY_HOURS == {"emergency": 24, "high": 72, "medium": 120, "low": 168}


def test_create_rejects_blank_fields_and_inverted_budget(market, make_requester):
    requester_id = make_requester()
    with pytest.raises(MarketplaceValidationError):
        market.registry.create(requester_id, _payload(title="   "))
    with pytest.raises(MarketplaceValidationError):
        market.registry.create(requester_id, _payload(budget_min=200, budget_max=100))


def test_providers_cannot_create_requests(market, make_provider):
    provider_id = make_provider()
    with pytest.raises(MarketplacePermissionError):
        market.registry.create(provider_id, _payload())


def test_expire_only_after_deadline_and_only_once(market, make_requester, make_request, clock):
    request = make_request(make_requester(), urgency="low")
    clock.advance(hours=167)
    assert market.registry.expire(request.id) is False
    clock.advance(hours=1)
    assert market.registry.expire(request.id) is True
    assert market.registry.expire(request.id) is False
    assert market.registry.get(request.id).status == "expired"


def test_sweep_expires_every_overdue_request(market, make_requester, make_request, clock):
    requester_id = make_requester()
    urgent = make_request(requester_id, urgency="emergency")
    relaxed = make_request(requester_id, urgency="low")
    clock.advance(hours=25)
    assert market.registry.sweep_expired() == 1
    assert market.registry.get(urgent.id).status == "expired"
    assert market.registry.get(relaxed.id).status == "active"
    assert market.registry.sweep_expired() == 0


def test_select_opens_connection_and_rejects_other_interests(market, make_requester, make_provider, make_request):
    requester_id = make_requester()
    chosen, other = make_provider(), make_provider()
    request = make_request(requester_id)
    chosen_interest = market.ledger.submit(request.id, chosen, InterestCreate(proposed_price=90))
    other_interest = market.ledger.submit(request.id, other, InterestCreate(proposed_price=70))

    result = market.registry.select(request.id, chosen_interest.id, requester_id)

    updated = market.registry.get(request.id)
    assert updated.status == "in_progress"
    assert updated.selected_provider_id == chosen
    assert market.ledger.get(chosen_interest.id).status == "accepted"
    assert market.ledger.get(other_interest.id).status == "rejected"

    connection = market.connections.get(result.connection_id)
    assert connection.status == "service_in_progress"
    assert connection.agreed_price == 90
    assert not connection.requester_confirmed and not connection.provider_confirmed
    assert len(connection.channel_id) == 32
    int(connection.channel_id, 16)

    assert market.engine.drain()
    events = [event.event for event in market.notifications.events_since(chosen)]
    assert events.count("new_service_request") == 1
    assert "interest_accepted" in events


def test_select_is_owner_only(market, make_requester, make_provider, make_request):
    request = make_request(make_requester())
    interest = market.ledger.submit(request.id, make_provider(), InterestCreate())
    with pytest.raises(MarketplacePermissionError):
        market.registry.select(request.id, interest.id, make_requester())


def test_select_rejects_interest_from_another_request(market, make_requester, make_provider, make_request):
    requester_id = make_requester()
    provider_id = make_provider()
    first = make_request(requester_id)
    second = make_request(requester_id)
    foreign = market.ledger.submit(second.id, provider_id, InterestCreate())
    with pytest.raises(MarketplaceConflictError):
        market.registry.select(first.id, foreign.id, requester_id)


def test_select_after_selection_conflicts(market, open_connection):
    setup = open_connection()
    with pytest.raises(MarketplaceConflictError):
        market.registry.select(setup["request"].id, setup["interest"].id, setup["requester_id"])


def test_select_past_expiry_is_expired(market, make_requester, make_provider, make_request, clock):
    requester_id = make_requester()
    request = make_request(requester_id, urgency="emergency")
    interest = market.ledger.submit(request.id, make_provider(), InterestCreate())
    clock.advance(hours=24)
    with pytest.raises(MarketplaceExpiredError):
        market.registry.select(request.id, interest.id, requester_id)


def test_concurrent_selects_open_exactly_one_connection(market, make_requester, make_provider, make_request):
    requester_id = make_requester()
    request = make_request(requester_id)
    interests = [market.ledger.submit(request.id, make_provider(), InterestCreate()) for _ in range(2)]
    barrier = threading.Barrier(len(interests))
    outcomes = []

    def select(interest_id: str) -> None:
        barrier.wait()
        try:
            outcomes.append(market.registry.select(request.id, interest_id, requester_id))
        except MarketplaceConflictError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=select, args=(interest.id,)) for interest in interests]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for item in outcomes if isinstance(item, MarketplaceConflictError)) == 1
    assert len(market.connections.list_for_user(requester_id)) == 1
    statuses = sorted(market.ledger.get(interest.id).status for interest in interests)
    assert statuses == ["accepted", "rejected"]


def test_cancel_is_owner_only_and_only_while_active(market, make_requester, make_request):
    requester_id = make_requester()
    request = make_request(requester_id)
    with pytest.raises(MarketplacePermissionError):
        market.registry.cancel(request.id, make_requester())
    assert market.registry.cancel(request.id, requester_id).status == "cancelled"
    with pytest.raises(MarketplaceConflictError):
        market.registry.cancel(request.id, requester_id)


def test_list_for_requester_filters_by_status(market, make_requester, make_request):
    requester_id = make_requester()
    kept = make_request(requester_id)
    dropped = make_request(requester_id)
    market.registry.cancel(dropped.id, requester_id)
    active = market.registry.list_for_requester(requester_id, status="active")
    assert [item.id for item in active] == [kept.id]
    assert len(market.registry.list_for_requester(requester_id)) == 2
    with pytest.raises(MarketplaceValidationError):
        market.registry.list_for_requester(requester_id, status="archived")


def test_listing_shows_past_deadline_requests_as_expired(market, make_requester, make_request, clock):
    requester_id = make_requester()
    urgent = make_request(requester_id, urgency="emergency")
    relaxed = make_request(requester_id, urgency="low")
    clock.advance(hours=24)

    statuses = {item.id: item.status for item in market.registry.list_for_requester(requester_id)}
    assert statuses == {urgent.id: "expired", relaxed.id: "active"}
    active = market.registry.list_for_requester(requester_id, status="active")
    assert [item.id for item in active] == [relaxed.id]
    assert market.registry.get(urgent.id).status == "expired"
    assert market.registry.sweep_expired() == 0


def test_available_requests_follow_profile_coverage_and_urgency(market, make_requester, make_provider, make_request, clock):
    requester_id = make_requester()
    provider_id = make_provider(localities=("all_localities",))
    low = make_request(requester_id, urgency="low")
    clock.advance(minutes=1)
    older_high = make_request(requester_id, urgency="high", locality="uptown")
    clock.advance(minutes=1)
    newer_high = make_request(requester_id, urgency="high")
    clock.advance(minutes=1)
    emergency = make_request(requester_id, urgency="emergency")
    make_request(requester_id, category_id="electrical")
    cancelled = make_request(requester_id)
    market.registry.cancel(cancelled.id, requester_id)

    listed = market.registry.list_open_for_provider(provider_id)
    assert [item.id for item in listed] == [emergency.id, newer_high.id, older_high.id, low.id]

    downtown_only = make_provider()
    nearby = market.registry.list_open_for_provider(downtown_only)
    assert older_high.id not in [item.id for item in nearby]

    clock.advance(hours=24)
    later = market.registry.list_open_for_provider(provider_id)
    assert [item.id for item in later] == [newer_high.id, older_high.id, low.id]


def test_available_requests_apply_filters_and_limit(market, make_requester, make_provider, make_request, clock):
    requester_id = make_requester()
    provider_id = make_provider(localities=("downtown", "uptown"))
    urgent = make_request(requester_id, urgency="emergency")
    clock.advance(minutes=1)
    uptown = make_request(requester_id, locality="uptown")
    clock.advance(minutes=1)
    generous, _ = market.registry.create(requester_id, _payload(budget_max=300))

    def ids(**filters):
        return [item.id for item in market.registry.list_open_for_provider(provider_id, **filters)]

    assert ids(urgency="emergency") == [urgent.id]
    assert ids(locality="Uptown") == [uptown.id]
    assert ids(min_budget=200) == [generous.id]
    assert ids(category_id="electrical") == []
    assert ids(limit=2) == [urgent.id, generous.id]

    with pytest.raises(MarketplaceValidationError):
        market.registry.list_open_for_provider(provider_id, urgency="whenever")
    with pytest.raises(MarketplaceValidationError):
        market.registry.list_open_for_provider(provider_id, limit=0)


def test_available_requests_report_interest_counts(market, make_requester, make_provider, make_request):
    request = make_request(make_requester())
    other, viewer = make_provider(), make_provider()
    withdrawn = market.ledger.submit(request.id, other, InterestCreate())
    market.ledger.withdraw(withdrawn.id, other)

    [before] = market.registry.list_open_for_provider(viewer)
    assert before.already_interested is False
    assert before.total_interests == 1
    assert before.interested_count == 0

    market.ledger.submit(request.id, viewer, InterestCreate())
    [after] = market.registry.list_open_for_provider(viewer)
    assert after.already_interested is True
    assert after.total_interests == 2


def test_available_requests_are_provider_only(market, make_requester, make_request):
    requester_id = make_requester()
    make_request(requester_id)
    with pytest.raises(MarketplacePermissionError):
        market.registry.list_open_for_provider(requester_id)
