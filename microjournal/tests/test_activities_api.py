"""HTTP surface: status codes and the normalized error envelope."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from microjournal.features.journal.service import JournalService
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.features.streaks.partners import StaticPartnerDirectory
from microjournal.features.streaks.service import StreakTracker
from microjournal.main import app


@pytest.fixture
def client(db, clock):
    partners = StaticPartnerDirectory()
    partners.link(1, 2)
    tracker = StreakTracker()
    app.state.journal_service = JournalService(tracker, partners=partners, cutoff_hour=6, now=clock)
    app.state.streak_tracker = tracker
    app.state.endpoint_registry = PushEndpointRegistry()
    yield TestClient(app)
    app.state.journal_service = None
    app.state.streak_tracker = None
    app.state.endpoint_registry = None


def _post(client, user_id, text="today was good"):
    return client.post("/v1/activities", headers={"X-User-Id": str(user_id)}, json={"text": text})


def test_create_activity_returns_201(client, make_user):
    make_user(1)
    resp = _post(client, 1)
    assert resp.status_code == 201
    body = resp.json()
    assert body["user_id"] == 1
    assert body["journal_date"] == "2024-01-10"
    assert body["text"] == "today was good"


def test_duplicate_activity_is_conflict(client, make_user):
    make_user(1)
    _post(client, 1)
    resp = _post(client, 1, "again")

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"]["code"] == "duplicate_activity"
    assert body["error"]["message"] == "already posted for this journal date"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")


def test_invalid_timezone_is_bad_request(client, make_user):
    make_user(1, tz="Nowhere/Special")
    resp = _post(client, 1)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_timezone"


@pytest.mark.parametrize("tz", ["America", "A" * 300])
def test_timezone_that_is_not_a_zone_file_is_bad_request(client, make_user, tz):
    make_user(1, tz=tz)
    resp = _post(client, 1)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_timezone"


def test_unknown_user_is_not_found(client):
    resp = _post(client, 99)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_non_numeric_user_header(client):
    resp = client.get("/v1/activities/today", headers={"X-User-Id": "abc"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_text_longer_than_limit_rejected(client, make_user):
    make_user(1)
    resp = _post(client, 1, "x" * 281)
    assert resp.status_code == 422


def test_today_endpoint_204_then_200(client, make_user):
    make_user(1)
    empty = client.get("/v1/activities/today", headers={"X-User-Id": "1"})
    assert empty.status_code == 204

    _post(client, 1)
    found = client.get("/v1/activities/today", headers={"X-User-Id": "1"})
    assert found.status_code == 200
    assert found.json()["text"] == "today was good"


def test_streak_endpoints(client, make_user):
    make_user(1)
    make_user(2)
    _post(client, 1)
    _post(client, 2)

    current = client.get("/v1/streaks/current", headers={"X-User-Id": "1"}).json()
    assert current["streak_count"] == 1
    assert current["is_active"] is True

    pairs = client.get("/v1/streaks/pairs", headers={"X-User-Id": "1"}).json()["streaks"]
    assert len(pairs) == 1
    assert pairs[0]["other_user_id"] == 2
    assert pairs[0]["streak_count"] == 1
    assert pairs[0]["needs_self_post"] is False


def test_register_push_endpoint(client, make_user):
    make_user(1)
    resp = client.post(
        "/v1/push/endpoints",
        headers={"X-User-Id": "1"},
        json={"token": "fcm-token-abcdefghijklmnop"},
    )
    assert resp.status_code == 201
    assert resp.json()["token"] != "fcm-token-abcdefghijklmnop"
    assert [e.token for e in PushEndpointRegistry().endpoints_for(1)] == ["fcm-token-abcdefghijklmnop"]


def test_healthz_and_metrics(client, make_user):
    make_user(1)
    _post(client, 1)

    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").status_code == 200
    metrics = client.get("/metrics").text
    assert "activities_created_total 1.0" in metrics
    assert "http_requests_total" in metrics


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"
