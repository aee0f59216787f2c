from unittest.mock import MagicMock

import pytest

from microjournal.core.errors import PushTransportError, StorageUnavailable
from microjournal.core.metrics import push_deliveries_total, push_endpoints_pruned_total
from microjournal.features.notifications.dispatcher import NotificationDispatcher
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.models.notification import DeliveryOutcome, PushEndpoint, TokenResult


class FakeTransport:
    def __init__(self, outcomes=None, error=None):
        self.outcomes = outcomes or {}
        self.error = error
        self.calls = []

    def send_multicast(self, tokens, message):
        self.calls.append((list(tokens), message))
        if self.error:
            raise self.error
        return [TokenResult(t, self.outcomes.get(t, DeliveryOutcome.DELIVERED)) for t in tokens]


@pytest.fixture
def registry(db, make_user):
    make_user(1)
    make_user(2)
    return PushEndpointRegistry()


def test_dead_token_is_pruned(registry):
    good = registry.register(1, "token-good")
    dead = registry.register(1, "token-dead")
    other = registry.register(2, "token-other")
    transport = FakeTransport({"token-dead": DeliveryOutcome.UNREGISTERED})

    report = NotificationDispatcher(transport, registry).send_bulk(
        {good, dead, other}, "Hello", "World", {"type": "test", "n": 3}
    )

    assert report.success_count == 2
    assert report.failure_count == 1
    assert report.success_count + report.failure_count == 3
    assert report.pruned_tokens == ("token-dead",)
    assert [e.token for e in registry.endpoints_for(1)] == ["token-good"]
    assert push_endpoints_pruned_total.value() == 1
    assert push_deliveries_total.value(labels={"outcome": "unregistered"}) == 1


def test_transient_failures_are_kept(registry):
    ep = registry.register(1, "token-flaky")
    transport = FakeTransport({"token-flaky": DeliveryOutcome.TRANSIENT})

    report = NotificationDispatcher(transport, registry).send_bulk([ep], "t", "b")

    assert report.failure_count == 1
    assert report.pruned_tokens == ()
    assert registry.endpoints_for(1) == [ep]


def test_data_values_are_stringified(registry):
    ep = registry.register(1, "token-a")
    transport = FakeTransport()
    NotificationDispatcher(transport, registry).send_bulk([ep], "t", "b", {"user_id": 42, "flag": None})
    _, message = transport.calls[0]
    assert message.data == {"user_id": "42", "flag": ""}


def test_empty_input_skips_transport(registry):
    transport = FakeTransport()
    report = NotificationDispatcher(transport, registry).send_bulk([], "t", "b")
    assert report.attempted == 0
    assert transport.calls == []


def test_duplicate_tokens_sent_once(registry):
    ep = PushEndpoint(user_id=1, token="shared")
    also = PushEndpoint(user_id=2, token="shared")
    transport = FakeTransport()

    report = NotificationDispatcher(transport, registry).send_bulk([ep, ep, also], "t", "b")

    assert transport.calls[0][0] == ["shared"]
    assert report.success_count == 2


def test_total_failure_raises_and_keeps_registry(registry):
    ep = registry.register(1, "token-a")
    transport = FakeTransport(error=PushTransportError("unreachable"))

    with pytest.raises(PushTransportError):
        NotificationDispatcher(transport, registry).send_bulk([ep], "t", "b")
    assert registry.endpoints_for(1) == [ep]


def test_prune_failure_is_logged_not_raised():
    registry = MagicMock()
    registry.delete_tokens.side_effect = StorageUnavailable("down")
    transport = FakeTransport({"dead": DeliveryOutcome.UNREGISTERED})

    report = NotificationDispatcher(transport, registry).send_bulk(
        [PushEndpoint(1, "dead"), PushEndpoint(1, "alive")], "t", "b"
    )

    assert report.success_count == 1
    assert report.failure_count == 1
    assert report.pruned_tokens == ()


def test_tokens_already_gone_are_not_reported_pruned():
    registry = MagicMock()
    registry.delete_tokens.return_value = []
    transport = FakeTransport({"dead": DeliveryOutcome.UNREGISTERED})

    report = NotificationDispatcher(transport, registry).send_bulk([PushEndpoint(1, "dead")], "t", "b")

    assert report.pruned_tokens == ()
    assert push_endpoints_pruned_total.value() == 0


def test_only_removed_tokens_are_reported(registry):
    dead = registry.register(1, "token-dead")
    stale = PushEndpoint(2, "token-stale")  # deleted by an earlier send
    transport = FakeTransport(
        {"token-dead": DeliveryOutcome.UNREGISTERED, "token-stale": DeliveryOutcome.UNREGISTERED}
    )

    report = NotificationDispatcher(transport, registry).send_bulk([dead, stale], "t", "b")

    assert report.pruned_tokens == ("token-dead",)
    assert push_endpoints_pruned_total.value() == 1


def test_notify_user_without_endpoints(registry):
    transport = FakeTransport()
    report = NotificationDispatcher(transport, registry).notify_user(2, "t", "b")
    assert report.attempted == 0
    assert transport.calls == []


def test_register_refreshes_existing_endpoint(registry):
    first = registry.register(1, "token-a")
    again = registry.register(1, "token-a")
    assert len(registry.endpoints_for(1)) == 1
    assert again == first
