from __future__ import annotations

import json

import pytest


def _deliver(broker, state, topic: str, payload) -> None:
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    broker.client.deliver(topic, raw)
    assert state.router.dispatch_next(timeout=0.1) is True


def test_routes_are_subscribed_on_connect(broker, state):
    assert broker.client.subscriptions == [
        ("smartstick/+/telemetry", 1),
        ("smartstick/+/sos", 1),
        ("smartstick/+/status", 1),
        ("smartstick/+/response", 1),
    ]
    assert state.router.routes() == [p for p, _ in broker.client.subscriptions]


def test_telemetry_over_mqtt_uses_topic_device_id(broker, state, mongo_db):
    _deliver(broker, state, "smartstick/stick-001/telemetry", {"deviceId": "spoofed", "sensors": {"battery": {"level": 5}}})

    stored = mongo_db["telemetry"].find_one({})
    assert stored["deviceId"] == "stick-001"
    assert mongo_db["telemetry"].count_documents({"deviceId": "spoofed"}) == 0
    incident = mongo_db["incidents"].find_one({"type": "LOW_BATTERY"})
    assert incident["deviceId"] == "stick-001"
    assert incident["severity"] == "high"


def test_sos_over_mqtt_defaults_to_button_press(broker, state, mongo_db, push_sender):
    _deliver(broker, state, "smartstick/stick-001/sos", {"gps": {"lat": 10.0, "lon": 20.0}})

    incident = mongo_db["incidents"].find_one({"type": "SOS"})
    assert incident["severity"] == "critical"
    assert incident["metadata"]["emergencyType"] == "button_press"
    assert incident["metadata"]["trigger"] == "mqtt"
    assert incident["location"]["coordinates"] == [20.0, 10.0]
    assert len(push_sender.sent) == 1


@pytest.mark.parametrize("online,itype,severity", [(True, "DEVICE_ONLINE", "low"), (False, "DEVICE_OFFLINE", "medium")])
def test_status_reports_become_presence_incidents(broker, state, mongo_db, online, itype, severity):
    _deliver(broker, state, "smartstick/stick-002/status", {"online": online, "firmware": "1.4.2"})

    incident = mongo_db["incidents"].find_one({"deviceId": "stick-002"})
    assert incident["type"] == itype
    assert incident["severity"] == severity
    assert incident["metadata"]["online"] is online
    assert incident["metadata"]["deviceStatus"]["firmware"] == "1.4.2"


def test_bad_messages_are_dropped_without_side_effects(broker, state, mongo_db):
    _deliver(broker, state, "smartstick/stick-001/telemetry", b"{not json")
    _deliver(broker, state, "smartstick/stick-001/telemetry", {"sensors": {"battery": {"level": 400}}})
    _deliver(broker, state, "smartstick/bad id/telemetry", {"sensors": {}})

    assert mongo_db["telemetry"].count_documents({}) == 0
    assert mongo_db["incidents"].count_documents({}) == 0

    # The pipeline keeps going after dropped messages.
    _deliver(broker, state, "smartstick/stick-001/telemetry", {"sensors": {"battery": {"level": 50}}})
    assert mongo_db["telemetry"].count_documents({}) == 1


def test_transport_status_reports_queue_and_routes(state):
    status = state.router.status()

    assert status["state"] == "connected"
    assert status["clientId"] == "stickguard-test"
    assert status["queue"]["maxSize"] == 10000
    assert len(status["routes"]) == 4


def test_sos_over_mqtt_with_null_metadata_is_not_dropped(broker, state, mongo_db):
    _deliver(broker, state, "smartstick/stick-001/sos", {"metadata": None})

    incident = mongo_db["incidents"].find_one({"type": "SOS"})
    assert incident is not None
    assert incident["metadata"]["emergencyType"] == "button_press"
    assert incident["metadata"]["trigger"] == "mqtt"
