from __future__ import annotations

import json

import httpx
import pytest

from conftest import as_user


def _published(broker):
    return [{"topic": p["topic"], **json.loads(p["payload"])} for p in broker.client.published]


@pytest.mark.anyio
async def test_command_parameters_round_trip_to_the_device_topic(async_client: httpx.AsyncClient, broker):
    res = await async_client.post(
        "/commands/stick-001",
        json={"command": "vibrate", "parameters": {"intensity": "high", "duration": 5}},
        headers=as_user("user-1"),
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is True
    assert body["messageId"].startswith("msg_")

    sent = _published(broker)[-1]
    assert sent["topic"] == "smartstick/stick-001/command"
    assert sent["command"] == "vibrate"
    assert sent["parameters"] == {"intensity": "high", "duration": 5}
    assert sent["messageId"] == body["messageId"]


@pytest.mark.anyio
async def test_command_is_recorded_in_history(async_client: httpx.AsyncClient):
    headers = as_user("user-1")
    res = await async_client.post("/commands/stick-001", json={"command": "led_off"}, headers=headers)
    message_id = res.json()["messageId"]

    res = await async_client.get("/commands/stick-001/history", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 1
    record = body["items"][0]
    assert record["type"] == "COMMAND_SENT"
    assert record["outcome"] == "published"
    assert record["userId"] == "user-1"

    res = await async_client.get(f"/commands/messages/{message_id}", headers=headers)
    assert res.status_code == 200
    assert res.json()["command"] == "led_off"


@pytest.mark.anyio
async def test_recorded_parameters_read_back_equal_to_dispatched(async_client: httpx.AsyncClient):
    headers = as_user("user-1")
    params = {"intensity": "medium", "duration": 7, "repeat": True, "pattern": [1, 0, 1], "extra": {"level": 2.5}}

    res = await async_client.post("/commands/stick-001", json={"command": "vibrate", "parameters": params}, headers=headers)
    message_id = res.json()["messageId"]

    res = await async_client.get(f"/commands/messages/{message_id}", headers=headers)
    assert res.status_code == 200
    assert res.json()["parameters"] == params


@pytest.mark.anyio
async def test_string_parameters_are_recorded_as_sanitized_and_published(async_client: httpx.AsyncClient, broker):
    headers = as_user("user-1")

    res = await async_client.post(
        "/commands/stick-001",
        json={"command": "beep", "parameters": {"text": " <b>hi</b> ", "n": 3}},
        headers=headers,
    )
    message_id = res.json()["messageId"]

    recorded = (await async_client.get(f"/commands/messages/{message_id}", headers=headers)).json()["parameters"]
    assert recorded == {"text": "bhi/b", "n": 3}
    assert _published(broker)[-1]["parameters"] == recorded

@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload,field",
    [
        ({"command": "self_destruct"}, "command"),
        ({"command": "beep", "parameters": {"$where": "1"}}, "parameters.$where"),
    ],
)
async def test_invalid_command_is_rejected(async_client: httpx.AsyncClient, broker, payload, field):
    res = await async_client.post("/commands/stick-001", json=payload, headers=as_user("user-1"))

    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "validation_error"
    assert field in [e["field"] for e in body["meta"]["errors"]]
    assert broker.client.published == []


@pytest.mark.anyio
async def test_commands_unavailable_without_transport(async_client: httpx.AsyncClient, state, mongo_db):
    state.router.disconnect()

    res = await async_client.post("/commands/stick-001", json={"command": "beep"}, headers=as_user("user-1"))

    assert res.status_code == 503
    assert res.json()["code"] == "service_unavailable"
    assert mongo_db["command_dispatches"].count_documents({}) == 0


@pytest.mark.anyio
async def test_failed_publish_is_reported_and_recorded(async_client: httpx.AsyncClient, broker, mongo_db):
    broker.client.publish_rc = 4

    res = await async_client.post("/commands/stick-001", json={"command": "beep"}, headers=as_user("user-1"))

    assert res.status_code == 500
    assert mongo_db["command_dispatches"].find_one({"command": "beep"})["outcome"] == "failed"


@pytest.mark.anyio
async def test_commands_require_device_access(async_client: httpx.AsyncClient):
    res = await async_client.post("/commands/stick-001", json={"command": "beep"}, headers=as_user("user-2"))
    assert res.status_code == 403

    res = await async_client.post("/commands/stick-001", json={"command": "beep"}, headers=as_user("admin"))
    assert res.status_code == 200


@pytest.mark.anyio
async def test_bulk_isolates_failing_devices(async_client: httpx.AsyncClient, broker):
    res = await async_client.post(
        "/commands/bulk",
        json={"deviceIds": ["a", "bad id", "b"], "command": "beep", "parameters": {"pattern": "double"}},
        headers=as_user("admin"),
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is True
    assert body["successCount"] == 2
    assert body["failureCount"] == 1
    results = body["results"]
    assert [r["success"] for r in results] == [True, False, True]
    assert results[1]["deviceId"] == "bad id"
    assert results[1]["error"] == "Invalid device ID format"
    assert [p["topic"] for p in _published(broker)] == ["smartstick/a/command", "smartstick/b/command"]


@pytest.mark.anyio
async def test_bulk_with_every_publish_failing_is_an_error(async_client: httpx.AsyncClient, broker):
    broker.client.publish_rc = 4

    res = await async_client.post(
        "/commands/bulk", json={"deviceIds": ["a", "b"], "command": "beep"}, headers=as_user("admin")
    )

    assert res.status_code == 500
    body = res.json()
    assert body["success"] is False
    assert body["failureCount"] == 2


@pytest.mark.anyio
async def test_bulk_is_admin_only(async_client: httpx.AsyncClient):
    res = await async_client.post(
        "/commands/bulk", json={"deviceIds": ["stick-001"], "command": "beep"}, headers=as_user("user-1")
    )
    assert res.status_code == 403


@pytest.mark.anyio
async def test_emergency_bundle_defaults(async_client: httpx.AsyncClient, broker):
    res = await async_client.post("/commands/stick-001/emergency", headers=as_user("user-1"))

    assert res.status_code == 200, res.text
    assert res.json()["successCount"] == 3

    sent = _published(broker)
    assert [p["command"] for p in sent] == ["led_on", "vibrate", "beep"]
    assert sent[0]["parameters"] == {"pattern": "emergency", "duration": 10}
    assert sent[1]["parameters"] == {"intensity": "high", "duration": 10}
    assert sent[2]["parameters"] == {"pattern": "emergency", "duration": 10}


@pytest.mark.anyio
async def test_emergency_bundle_custom_intensity(async_client: httpx.AsyncClient, broker):
    res = await async_client.post(
        "/commands/stick-001/emergency", json={"intensity": "low", "duration": 3}, headers=as_user("user-1")
    )

    assert res.status_code == 200
    assert _published(broker)[1]["parameters"] == {"intensity": "low", "duration": 3}


@pytest.mark.anyio
async def test_status_request_and_device_response_correlation(
    async_client: httpx.AsyncClient, broker, state, mongo_db
):
    res = await async_client.post("/commands/stick-001/status", headers=as_user("user-1"))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["command"] == "status_check"
    assert body["parameters"]["requestedBy"] == "user-1"
    message_id = body["messageId"]

    reply = {"messageId": message_id, "command": "status_check", "status": "ok", "battery": 77}
    broker.client.deliver("smartstick/stick-001/response", json.dumps(reply).encode())
    assert state.router.dispatch_next(timeout=0.1) is True

    sent = mongo_db["command_dispatches"].find_one({"type": "COMMAND_SENT", "messageId": message_id})
    assert sent["respondedAt"] is not None

    res = await async_client.get("/commands/stick-001/history", headers=as_user("user-1"))
    types = [r["type"] for r in res.json()["items"]]
    assert sorted(types) == ["COMMAND_RECEIVED", "COMMAND_SENT"]


@pytest.mark.anyio
async def test_available_commands(async_client: httpx.AsyncClient):
    res = await async_client.get("/commands/available")

    assert res.status_code == 200
    names = [c["command"] for c in res.json()["items"]]
    assert names == ["vibrate", "beep", "led_on", "led_off", "status_check", "reboot"]
