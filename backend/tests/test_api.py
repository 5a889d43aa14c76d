import os
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.main import app
from app.services.marketplace import marketplace

client = TestClient(app)


def _user(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def _as(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def _provider(locality: str, categories=("electrical",)) -> str:
    provider_id = _user("provider")
    switched = client.post("/roles/switch", json={"new_role": "provider", "reason": "Side business"}, headers=_as(provider_id))
    assert switched.status_code == 200
    client.put(
        "/profiles/work",
        json={"categories": list(categories), "localities": [locality]},
        headers=_as(provider_id),
    )
    client.post("/profiles/work/availability", json={"is_available": True}, headers=_as(provider_id))
    marketplace.directory.set_verification(provider_id, "verified")
    marketplace.directory.set_subscription_tier(provider_id, "basic")
    return provider_id


def _post_request(requester_id: str, locality: str, **overrides) -> dict:
    body = {
        "category_id": "electrical",
        "title": "Replace light switch",
        "description": "Switch sparks when used",
        "locality": locality,
        "urgency_tier": "medium",
    }
    body.update(overrides)
    response = client.post("/requests", json=body, headers=_as(requester_id))
    assert response.status_code == 201
    return response.json()


def test_health_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_reports_push_and_sweep_settings():
    response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["push_configured"] is False
    assert payload["sweep_interval_seconds"] == 0


def test_auth_login_and_me():
    user_id = _user("login")
    login = client.post("/auth/login", json={"user_id": user_id, "password": "marketplace-demo"})
    assert login.status_code == 200
    token = login.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json() == {"user_id": user_id, "role": "requester"}


def test_auth_rejects_bad_password_and_bad_token():
    bad_login = client.post("/auth/login", json={"user_id": _user("login"), "password": "nope"})
    assert bad_login.status_code == 401

    me = client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert me.status_code == 401


def test_missing_identity_is_unauthorized():
    response = client.get("/requests/mine")
    assert response.status_code == 401


def test_create_request_validates_payload():
    requester = _user("requester")
    missing_title = client.post(
        "/requests",
        json={"category_id": "electrical", "description": "", "locality": "north"},
        headers=_as(requester),
    )
    assert missing_title.status_code == 422

    inverted_budget = client.post(
        "/requests",
        json={
            "category_id": "electrical",
            "title": "Fix socket",
            "description": "",
            "locality": "north",
            "budget_min": 200,
            "budget_max": 100,
        },
        headers=_as(requester),
    )
    assert inverted_budget.status_code == 400
    assert inverted_budget.json()["detail"]["error"] == "validation_error"


def test_provider_cannot_post_requests():
    locality = _user("loc")
    provider = _provider(locality)
    response = client.post(
        "/requests",
        json={"category_id": "electrical", "title": "Self job", "description": "", "locality": locality},
        headers=_as(provider),
    )
    assert response.status_code == 403
    assert response.json()["detail"]["error"] == "forbidden"


def test_request_listing_and_lookup():
    locality = _user("loc")
    requester = _user("requester")
    created = _post_request(requester, locality)

    mine = client.get("/requests/mine", headers=_as(requester))
    assert mine.status_code == 200
    assert [item["id"] for item in mine.json()] == [created["id"]]

    active = client.get("/requests/mine", params={"status": "active"}, headers=_as(requester))
    assert len(active.json()) == 1
    bad_status = client.get("/requests/mine", params={"status": "sleeping"}, headers=_as(requester))
    assert bad_status.status_code == 400

    fetched = client.get(f"/requests/{created['id']}", headers=_as(requester))
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "active"

    missing = client.get("/requests/req_missing", headers=_as(requester))
    assert missing.status_code == 404


def test_interest_on_cancelled_request_is_gone():
    locality = _user("loc")
    requester = _user("requester")
    provider = _provider(locality)
    created = _post_request(requester, locality)

    cancelled = client.post(f"/requests/{created['id']}/cancel", headers=_as(requester))
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    late = client.post(f"/requests/{created['id']}/interests", json={}, headers=_as(provider))
    assert late.status_code == 410
    assert late.json()["detail"]["error"] == "expired"


def test_only_owner_can_see_interests_or_select():
    locality = _user("loc")
    requester = _user("requester")
    provider = _provider(locality)
    created = _post_request(requester, locality)
    interest = client.post(f"/requests/{created['id']}/interests", json={"proposed_price": 45}, headers=_as(provider))
    assert interest.status_code == 200

    peek = client.get(f"/requests/{created['id']}/interests", headers=_as(provider))
    assert peek.status_code == 403

    hijack = client.post(
        f"/requests/{created['id']}/select",
        json={"interest_id": interest.json()["interest_id"]},
        headers=_as(_user("stranger")),
    )
    assert hijack.status_code == 403


def test_interest_edit_withdraw_and_listing():
    locality = _user("loc")
    requester = _user("requester")
    provider = _provider(locality)
    created = _post_request(requester, locality)
    interest_id = client.post(
        f"/requests/{created['id']}/interests",
        json={"proposed_price": 60, "message": "Evening works"},
        headers=_as(provider),
    ).json()["interest_id"]

    edited = client.patch(f"/interests/{interest_id}", json={"proposed_price": 55}, headers=_as(provider))
    assert edited.status_code == 200
    assert edited.json()["proposed_price"] == 55
    assert edited.json()["message"] == "Evening works"

    other = client.patch(f"/interests/{interest_id}", json={"message": "mine now"}, headers=_as(_user("provider")))
    assert other.status_code == 403

    mine = client.get("/interests/mine", headers=_as(provider))
    assert [item["id"] for item in mine.json()] == [interest_id]

    withdrawn = client.post(f"/interests/{interest_id}/withdraw", headers=_as(provider))
    assert withdrawn.status_code == 200
    assert withdrawn.json()["status"] == "withdrawn"
    assert client.get(f"/requests/{created['id']}", headers=_as(requester)).json()["interested_count"] == 0

    again = client.post(f"/interests/{interest_id}/withdraw", headers=_as(provider))
    assert again.status_code == 409


def test_selection_creates_connection_and_rejects_siblings():
    locality = _user("loc")
    requester = _user("requester")
    chosen = _provider(locality)
    passed_over = _provider(locality)
    created = _post_request(requester, locality)
    chosen_interest = client.post(
        f"/requests/{created['id']}/interests", json={"proposed_price": 80}, headers=_as(chosen)
    ).json()["interest_id"]
    client.post(f"/requests/{created['id']}/interests", json={"proposed_price": 70}, headers=_as(passed_over))

    selected = client.post(
        f"/requests/{created['id']}/select",
        json={"interest_id": chosen_interest},
        headers=_as(requester),
    )
    assert selected.status_code == 200
    assert selected.json()["provider_id"] == chosen

    second = client.post(
        f"/requests/{created['id']}/select",
        json={"interest_id": chosen_interest},
        headers=_as(requester),
    )
    assert second.status_code == 409

    statuses = {item["provider_id"]: item["status"] for item in client.get(
        f"/requests/{created['id']}/interests", headers=_as(requester)
    ).json()}
    assert statuses == {chosen: "accepted", passed_over: "rejected"}

    connections = client.get("/connections/mine", headers=_as(chosen))
    assert connections.status_code == 200
    connection = connections.json()[0]
    assert connection["status"] == "service_in_progress"
    assert connection["agreed_price"] == 80

    outsider = client.get(f"/connections/{connection['id']}/status", headers=_as(passed_over))
    assert outsider.status_code == 403
    missing = client.post("/connections/conn_missing/confirm-completion", json={}, headers=_as(requester))
    assert missing.status_code == 404


def test_connection_cancel_before_confirmation():
    locality = _user("loc")
    requester = _user("requester")
    provider = _provider(locality)
    created = _post_request(requester, locality)
    interest_id = client.post(f"/requests/{created['id']}/interests", json={}, headers=_as(provider)).json()["interest_id"]
    connection_id = client.post(
        f"/requests/{created['id']}/select", json={"interest_id": interest_id}, headers=_as(requester)
    ).json()["connection_id"]

    cancelled = client.post(
        f"/connections/{connection_id}/cancel",
        json={"reason": "Found a neighbour to help"},
        headers=_as(requester),
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.get(f"/requests/{created['id']}", headers=_as(requester)).json()["status"] == "cancelled"


def test_pending_confirmation_and_notifications_feed():
    locality = _user("loc")
    requester = _user("requester")
    provider = _provider(locality)
    created = _post_request(requester, locality)
    interest_id = client.post(f"/requests/{created['id']}/interests", json={}, headers=_as(provider)).json()["interest_id"]
    connection_id = client.post(
        f"/requests/{created['id']}/select", json={"interest_id": interest_id}, headers=_as(requester)
    ).json()["connection_id"]
    client.post(f"/connections/{connection_id}/confirm-completion", json={}, headers=_as(provider))

    waiting = client.get("/connections/pending-confirmation", headers=_as(requester))
    assert [item["id"] for item in waiting.json()] == [connection_id]

    first_page = client.get("/notifications/events", params={"limit": 1}, headers=_as(requester))
    assert first_page.status_code == 200
    page = first_page.json()
    assert len(page["events"]) == 1
    rest = client.get("/notifications/events", params={"after": page["last_seq"]}, headers=_as(requester)).json()
    events = [event["event"] for event in page["events"] + rest["events"]]
    assert "new_interest" in events
    assert "partner_confirmed_completion" in events

    inbox = client.get("/notifications", params={"unread_only": True}, headers=_as(requester))
    assert inbox.status_code == 200
    notification_id = inbox.json()[0]["id"]
    read = client.post(f"/notifications/{notification_id}/read", headers=_as(requester))
    assert read.status_code == 200
    assert read.json()["read"] is True
    assert client.post("/notifications/ntf_missing/read", headers=_as(requester)).status_code == 404


def test_register_device_token():
    response = client.post(
        "/notifications/register-device",
        json={"device_token": "fcm-token-123", "platform": "ios"},
        headers=_as(_user("provider")),
    )
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_role_switch_routes():
    user_id = _user("switcher")
    check = client.get("/roles/can-switch", headers=_as(user_id))
    assert check.status_code == 200
    assert check.json()["target_role"] == "provider"

    same = client.post("/roles/switch", json={"new_role": "requester"}, headers=_as(user_id))
    assert same.status_code == 409

    switched = client.post("/roles/switch", json={"new_role": "provider"}, headers=_as(user_id))
    assert switched.status_code == 200
    profile = client.get("/profiles/work/me", headers=_as(user_id))
    assert profile.status_code == 200
    assert profile.json()["is_active"] is True

    history = client.get("/roles/history", headers=_as(user_id))
    assert [(item["old_role"], item["new_role"]) for item in history.json()] == [("requester", "provider")]


def test_work_profile_requires_provider_role():
    requester = _user("requester")
    response = client.put("/profiles/work", json={"categories": ["electrical"]}, headers=_as(requester))
    assert response.status_code == 403
    assert client.get("/profiles/work/me", headers=_as(_user("nobody"))).status_code == 404

    provider = _provider(_user("loc"))
    bad_hours = client.put("/profiles/work", json={"quiet_hours_start": "25:99"}, headers=_as(provider))
    assert bad_hours.status_code == 400


def test_review_routes_reject_missing_obligation():
    response = client.post(
        "/reviews",
        json={"connection_id": "conn_missing", "rating": 4, "comment": "Fine"},
        headers=_as(_user("requester")),
    )
    assert response.status_code == 404

    mine = client.get("/reviews/mine", headers=_as(_user("requester")))
    assert mine.status_code == 200
    assert mine.json() == []


def test_available_requests_route_for_providers():
    locality = _user("loc")
    requester = _user("requester")
    provider = _provider(locality)
    routine = _post_request(requester, locality)
    urgent = _post_request(requester, locality, urgency_tier="emergency", budget_max=500)

    available = client.get("/requests/available", headers=_as(provider))
    assert available.status_code == 200
    listed = available.json()
    assert [item["id"] for item in listed] == [urgent["id"], routine["id"]]
    assert listed[0]["already_interested"] is False
    assert listed[0]["total_interests"] == 0

    filtered = client.get("/requests/available", params={"min_budget": 100}, headers=_as(provider))
    assert [item["id"] for item in filtered.json()] == [urgent["id"]]

    bad_urgency = client.get("/requests/available", params={"urgency": "soon"}, headers=_as(provider))
    assert bad_urgency.status_code == 400
    assert client.get("/requests/available", headers=_as(requester)).status_code == 403


def test_sweep_route_requires_identity():
    assert client.post("/system/sweep").status_code == 401
    swept = client.post("/system/sweep", headers=_as(_user("requester")))
    assert swept.status_code == 200
