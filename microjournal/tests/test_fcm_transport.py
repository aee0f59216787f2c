import json
from unittest.mock import MagicMock

import httpx
import pytest

from microjournal.core.errors import PushTransportError
from microjournal.features.notifications.transport import FcmTransport, LoggingTransport, build_transport
from microjournal.models.notification import DeliveryOutcome, PushMessage

MESSAGE = PushMessage(title="Time to reflect", body="Write something", data={"type": "daily_reminder"})


def _credentials():
    creds = MagicMock()
    creds.valid = True
    creds.token = "access-token"
    return creds


def _transport(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return FcmTransport("demo-project", _credentials(), client=client)


def _fcm_error(status_code, status, message, error_code=None):
    details = [{"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError", "errorCode": error_code}] if error_code else []
    return httpx.Response(status_code, json={"error": {"code": status_code, "status": status, "message": message, "details": details}})


def test_classifies_each_token():
    sent = []

    def handler(request):
        body = json.loads(request.content)
        token = body["message"]["token"]
        sent.append(token)
        assert request.headers["Authorization"] == "Bearer access-token"
        assert request.url.path == "/v1/projects/demo-project/messages:send"
        if token == "ok":
            return httpx.Response(200, json={"name": "projects/demo-project/messages/1"})
        if token == "gone":
            return _fcm_error(404, "NOT_FOUND", "Requested entity was not found.", "UNREGISTERED")
        if token == "garbage":
            return _fcm_error(400, "INVALID_ARGUMENT", "The registration token is not a valid FCM registration token")
        return _fcm_error(503, "UNAVAILABLE", "try later", "UNAVAILABLE")

    results = _transport(handler).send_multicast(["ok", "gone", "garbage", "busy"], MESSAGE)

    outcomes = {r.token: r.outcome for r in results}
    assert sent == ["ok", "gone", "garbage", "busy"]
    assert outcomes == {
        "ok": DeliveryOutcome.DELIVERED,
        "gone": DeliveryOutcome.UNREGISTERED,
        "garbage": DeliveryOutcome.UNREGISTERED,
        "busy": DeliveryOutcome.TRANSIENT,
    }


def test_payload_invalid_argument_is_transient():
    def handler(request):
        return _fcm_error(400, "INVALID_ARGUMENT", "Invalid JSON payload received.")

    [result] = _transport(handler).send_multicast(["tok"], MESSAGE)
    assert result.outcome is DeliveryOutcome.TRANSIENT


def test_network_failure_for_whole_batch_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PushTransportError):
        _transport(handler).send_multicast(["a", "b"], MESSAGE)


def test_partial_network_failure_is_transient():
    def handler(request):
        if json.loads(request.content)["message"]["token"] == "a":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={})

    results = _transport(handler).send_multicast(["a", "b"], MESSAGE)
    assert [r.outcome for r in results] == [DeliveryOutcome.TRANSIENT, DeliveryOutcome.DELIVERED]


def test_rejected_credentials_raise():
    def handler(request):
        return httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED"}})

    with pytest.raises(PushTransportError):
        _transport(handler).send_multicast(["a"], MESSAGE)


def test_expired_credentials_are_refreshed():
    creds = _credentials()
    creds.valid = False

    def refresh(request):
        creds.valid = True

    creds.refresh.side_effect = refresh
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    transport = FcmTransport("demo-project", creds, client=client)

    transport.send_multicast(["a"], MESSAGE)
    creds.refresh.assert_called_once()


def test_build_transport_stub_mode():
    cfg = MagicMock(PUSH_MODE="stub")
    assert isinstance(build_transport(cfg), LoggingTransport)


def test_build_transport_rejects_unknown_mode():
    with pytest.raises(ValueError):
        build_transport(MagicMock(PUSH_MODE="carrier-pigeon"))
