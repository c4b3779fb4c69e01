from __future__ import annotations

import json

import pytest

from conftest import FakeBroker
from stickguard.config import MqttSettings
from stickguard.errors import NotConnectedError, TransportConnectionError
from stickguard.transport.inbound import InboundMessage, InboundQueue, MessageParseError
from stickguard.transport.router import ConnectionState, TransportRouter
from stickguard.transport.topics import (
    command_topic,
    device_id_from_topic,
    device_topic_pattern,
    topic_matches,
    validate_pattern,
)


def _router(broker: FakeBroker, **overrides) -> TransportRouter:
    settings = {"client_id": "router-test", "connect_timeout_sec": 0.2, "reconnect_max_attempts": 3}
    settings.update(overrides)
    return TransportRouter(MqttSettings(**settings), client_factory=broker)


# ---- Topic matching ----


@pytest.mark.parametrize(
    "pattern,topic,expected",
    [
        ("smartstick/+/telemetry", "smartstick/stick-001/telemetry", True),
        ("smartstick/+/telemetry", "smartstick/stick-001/sos", False),
        ("smartstick/+/telemetry", "smartstick/a/b/telemetry", False),
        ("smartstick/#", "smartstick", True),
        ("smartstick/#", "smartstick/stick-001/status/extra", True),
        ("smartstick/stick-001/sos", "smartstick/stick-001/sos", True),
        ("smartstick/stick-001/sos", "smartstick/stick-002/sos", False),
    ],
)
def test_topic_matches(pattern: str, topic: str, expected: bool):
    assert topic_matches(pattern, topic) is expected


@pytest.mark.parametrize("pattern", ["", "smartstick/#/sos", "smartstick/dev+/sos", "smartstick/x#"])
def test_validate_pattern_rejects_misplaced_wildcards(pattern: str):
    with pytest.raises(ValueError):
        validate_pattern(pattern)


def test_device_topic_helpers():
    assert device_topic_pattern("smartstick", "sos") == "smartstick/+/sos"
    assert command_topic("smartstick", "stick-001") == "smartstick/stick-001/command"
    assert device_id_from_topic("smartstick/stick-001/telemetry", "smartstick") == "stick-001"
    assert device_id_from_topic("other/stick-001/telemetry", "smartstick") is None
    assert device_id_from_topic("smartstick/stick-001", "smartstick") is None


# ---- Connection lifecycle ----


def test_connect_subscribes_registered_routes_once_per_pattern():
    broker = FakeBroker()
    router = _router(broker, username="svc", password="secret")
    router.add_route("smartstick/+/telemetry", lambda m: None)
    router.add_route("smartstick/+/telemetry", lambda m: None, qos=2)
    router.add_route("smartstick/+/sos", lambda m: None)

    router.connect()

    assert router.state == ConnectionState.connected
    assert broker.client.credentials == ("svc", "secret")
    assert broker.client.reconnect_delay == (1, 30)
    assert broker.client.subscriptions == [("smartstick/+/telemetry", 2), ("smartstick/+/sos", 1)]


def test_connect_timeout_raises_and_leaves_router_disconnected():
    broker = FakeBroker(mode="silent")
    router = _router(broker)

    with pytest.raises(TransportConnectionError):
        router.connect(timeout=0.05)

    assert router.state == ConnectionState.disconnected
    assert broker.client.loop_running is False


def test_refused_connection_gives_up_after_max_attempts():
    broker = FakeBroker(mode="refuse")
    router = _router(broker, reconnect_max_attempts=1)

    with pytest.raises(TransportConnectionError):
        router.connect(timeout=1.0)

    assert router.state == ConnectionState.permanently_disconnected


def test_lost_connection_reconnects_until_the_limit():
    broker = FakeBroker()
    router = _router(broker, reconnect_max_attempts=3)
    router.add_route("smartstick/+/sos", lambda m: None)
    router.connect()
    client = broker.client

    client.drop_connection()
    assert router.state == ConnectionState.reconnecting

    client.fail_attempt()
    client.fail_attempt()
    assert router.state == ConnectionState.reconnecting
    assert router.status()["reconnectAttempts"] == 2

    client.fail_attempt()
    assert router.state == ConnectionState.permanently_disconnected

    # No further transitions once terminal.
    client.fail_attempt()
    assert router.state == ConnectionState.permanently_disconnected
    with pytest.raises(NotConnectedError):
        router.publish("smartstick/stick-001/command", {"command": "beep"})


def test_reconnect_resubscribes_every_route():
    broker = FakeBroker()
    router = _router(broker)
    router.add_route("smartstick/+/telemetry", lambda m: None)
    router.connect()
    client = broker.client

    client.drop_connection()
    client.on_connect(client, None, {}, 0, None)

    assert router.state == ConnectionState.connected
    assert client.subscriptions == [("smartstick/+/telemetry", 1), ("smartstick/+/telemetry", 1)]


def test_intentional_disconnect_does_not_reconnect():
    broker = FakeBroker()
    router = _router(broker)
    router.connect()
    client = broker.client

    router.disconnect()
    client.drop_connection()

    assert router.state == ConnectionState.disconnected


# ---- Subscribe / publish ----


def test_subscribe_and_publish_require_connection():
    router = _router(FakeBroker())

    with pytest.raises(NotConnectedError):
        router.subscribe("smartstick/+/status", lambda m: None)
    with pytest.raises(NotConnectedError):
        router.publish("smartstick/stick-001/command", {"command": "beep"})


def test_publish_encodes_json_and_raises_qos_to_one():
    broker = FakeBroker()
    router = _router(broker)
    router.connect()

    result = router.publish("smartstick/stick-001/command", {"command": "beep", "parameters": {}}, qos=0)

    assert result.ok is True
    sent = broker.client.published[-1]
    assert sent["qos"] == 1
    assert json.loads(sent["payload"]) == {"command": "beep", "parameters": {}}


def test_publish_failure_is_a_result_not_an_exception():
    broker = FakeBroker()
    router = _router(broker)
    router.connect()
    broker.client.publish_rc = 4

    result = router.publish("smartstick/stick-001/command", "{}")

    assert result.ok is False
    assert "rc=4" in result.error


# ---- Routing ----


def test_first_matching_route_wins():
    broker = FakeBroker()
    router = _router(broker)
    calls = []
    router.add_route("smartstick/stick-001/sos", lambda m: calls.append("specific"))
    router.add_route("smartstick/+/sos", lambda m: calls.append("wildcard"))
    router.add_route("smartstick/#", lambda m: calls.append("catch-all"))

    assert router.dispatch(InboundMessage(topic="smartstick/stick-001/sos", payload=b"{}")) is True
    assert router.dispatch(InboundMessage(topic="smartstick/stick-002/sos", payload=b"{}")) is True
    assert router.dispatch(InboundMessage(topic="smartstick/stick-002/status", payload=b"{}")) is True
    assert router.dispatch(InboundMessage(topic="elsewhere/stick-002/status", payload=b"{}")) is False

    assert calls == ["specific", "wildcard", "catch-all"]


def test_unparseable_payload_is_dropped_and_next_message_still_dispatched():
    broker = FakeBroker()
    router = _router(broker)
    seen = []
    router.add_route("smartstick/+/telemetry", lambda m: seen.append(m.json()))
    router.connect()

    broker.client.deliver("smartstick/stick-001/telemetry", b"not json")
    broker.client.deliver("smartstick/stick-001/telemetry", b"[1, 2]")
    broker.client.deliver("smartstick/stick-001/telemetry", b'{"ok": true}')

    assert router.dispatch_next(timeout=0.1) is True
    assert router.dispatch_next(timeout=0.1) is True
    assert router.dispatch_next(timeout=0.1) is True
    assert router.dispatch_next(timeout=0.01) is False
    assert seen == [{"ok": True}]


def test_inbound_message_json_requires_object():
    with pytest.raises(MessageParseError):
        InboundMessage(topic="t", payload=b'"text"').json()
    assert InboundMessage(topic="t", payload=b"").json() == {}


# ---- Backpressure ----


def _msg(n: int) -> InboundMessage:
    return InboundMessage(topic=f"smartstick/d{n}/telemetry", payload=b"{}")


def test_full_queue_drops_oldest_by_default():
    queue = InboundQueue(max_size=2)
    assert queue.put(_msg(1)) and queue.put(_msg(2)) and queue.put(_msg(3))

    assert queue.get(timeout=0).topic == "smartstick/d2/telemetry"
    assert queue.get(timeout=0).topic == "smartstick/d3/telemetry"
    stats = queue.stats()
    assert stats["droppedOldest"] == 1
    assert stats["rejected"] == 0
    assert stats["dropPolicy"] == "drop_oldest"


def test_full_queue_can_reject_newest():
    queue = InboundQueue(max_size=2, drop_oldest=False)
    queue.put(_msg(1))
    queue.put(_msg(2))

    assert queue.put(_msg(3)) is False
    assert len(queue) == 2
    assert queue.get(timeout=0).topic == "smartstick/d1/telemetry"
    assert queue.stats()["rejected"] == 1
