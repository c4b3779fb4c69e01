from __future__ import annotations

import httpx
import pytest

from conftest import as_user
from stickguard.schemas.common import Severity
from stickguard.schemas.incidents import IncidentType


def _create_incident(state, device_id: str = "stick-001", incident_type=IncidentType.OBSTACLE_DETECTED) -> str:
    incident = state.incidents.create(incident_type, device_id, Severity.medium, title="Obstacle Detected")
    return incident.id


@pytest.mark.anyio
async def test_acknowledge_twice_keeps_both_entries(async_client: httpx.AsyncClient, state):
    incident_id = _create_incident(state)

    res = await async_client.post(
        f"/incidents/{incident_id}/acknowledge", json={"note": "on my way"}, headers=as_user("user-1")
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "acknowledged"
    assert body["acknowledgments"][0]["userId"] == "user-1"
    assert body["acknowledgments"][0]["note"] == "on my way"

    res = await async_client.post(f"/incidents/{incident_id}/acknowledge", headers=as_user("admin"))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "acknowledged"
    assert [a["userId"] for a in body["acknowledgments"]] == ["user-1", "admin"]


@pytest.mark.anyio
async def test_second_resolve_conflicts_and_keeps_first_resolution(async_client: httpx.AsyncClient, state):
    incident_id = _create_incident(state)

    res = await async_client.post(
        f"/incidents/{incident_id}/resolve",
        json={"resolutionNote": "cleared path", "actions": ["moved chair", " "]},
        headers=as_user("user-1"),
    )
    assert res.status_code == 200, res.text
    first = res.json()
    assert first["status"] == "resolved"
    assert first["resolution"]["resolvedBy"] == "user-1"
    assert first["resolution"]["actions"] == ["moved chair"]

    res = await async_client.post(
        f"/incidents/{incident_id}/resolve", json={"resolutionNote": "again"}, headers=as_user("admin")
    )
    assert res.status_code == 409
    assert res.json()["code"] == "conflict"

    res = await async_client.get(f"/incidents/{incident_id}", headers=as_user("user-1"))
    assert res.json()["resolution"] == first["resolution"]


@pytest.mark.anyio
async def test_acknowledge_after_resolve_is_rejected(async_client: httpx.AsyncClient, state):
    incident_id = _create_incident(state)
    state.incidents.resolve(incident_id, "user-1")

    res = await async_client.post(f"/incidents/{incident_id}/acknowledge", headers=as_user("user-1"))

    assert res.status_code == 409
    assert state.incidents.get(incident_id).acknowledgments == []


@pytest.mark.anyio
@pytest.mark.parametrize("level,expected", [(9, 5), (0, 1), (-3, 1), (3, 3)])
async def test_escalation_level_is_clamped(async_client: httpx.AsyncClient, state, level: int, expected: int):
    incident_id = _create_incident(state)

    res = await async_client.post(
        f"/incidents/{incident_id}/escalate",
        json={"escalatedTo": "caregiver-team", "reason": "no response", "level": level},
        headers=as_user("user-1"),
    )

    assert res.status_code == 200, res.text
    escalation = res.json()["escalation"]
    assert escalation["level"] == expected
    assert escalation["escalatedTo"] == "caregiver-team"
    assert escalation["escalatedBy"] == "user-1"


@pytest.mark.anyio
async def test_escalation_overwrites_and_is_allowed_after_resolution(async_client: httpx.AsyncClient, state):
    incident_id = _create_incident(state)
    state.incidents.escalate(incident_id, "first-responder", level=2)
    state.incidents.resolve(incident_id, "user-1")

    res = await async_client.post(
        f"/incidents/{incident_id}/escalate", json={"escalatedTo": "supervisor", "level": 4}, headers=as_user("admin")
    )

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["status"] == "resolved"
    assert body["escalation"]["escalatedTo"] == "supervisor"
    assert body["escalation"]["level"] == 4


@pytest.mark.anyio
async def test_escalate_requires_target(async_client: httpx.AsyncClient, state):
    incident_id = _create_incident(state)

    res = await async_client.post(f"/incidents/{incident_id}/escalate", json={"level": 2}, headers=as_user("user-1"))

    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "validation_error"
    assert [e["field"] for e in body["meta"]["errors"]] == ["escalatedTo"]


@pytest.mark.anyio
async def test_incident_access_is_scoped_to_owners(async_client: httpx.AsyncClient, state):
    incident_id = _create_incident(state, device_id="stick-001")

    res = await async_client.get(f"/incidents/{incident_id}", headers=as_user("user-2"))
    assert res.status_code == 403

    res = await async_client.post(f"/incidents/{incident_id}/resolve", headers=as_user("user-2"))
    assert res.status_code == 403
    assert state.incidents.get(incident_id).status == "active"

    res = await async_client.get(f"/incidents/{incident_id}")
    assert res.status_code == 403
    assert res.json()["detail"] == "Authentication required"

    res = await async_client.get(f"/incidents/{incident_id}", headers=as_user("nobody"))
    assert res.status_code == 403


@pytest.mark.anyio
async def test_unknown_or_malformed_incident_id_is_not_found(async_client: httpx.AsyncClient):
    res = await async_client.get("/incidents/not-an-object-id", headers=as_user("admin"))
    assert res.status_code == 404

    res = await async_client.post("/incidents/65a000000000000000000000/acknowledge", headers=as_user("admin"))
    assert res.status_code == 404


@pytest.mark.anyio
async def test_list_incidents_filters_and_scopes(async_client: httpx.AsyncClient, state):
    _create_incident(state, "stick-001", IncidentType.OBSTACLE_DETECTED)
    _create_incident(state, "stick-001", IncidentType.GPS_LOST)
    _create_incident(state, "stick-002", IncidentType.OBSTACLE_DETECTED)

    res = await async_client.get("/incidents", headers=as_user("user-1"))
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 2
    assert {i["deviceId"] for i in body["items"]} == {"stick-001"}

    res = await async_client.get("/incidents", params={"type": "OBSTACLE_DETECTED"}, headers=as_user("admin"))
    assert res.json()["total"] == 2

    res = await async_client.get("/incidents", params={"deviceId": "stick-002"}, headers=as_user("user-1"))
    assert res.status_code == 403


@pytest.mark.anyio
async def test_incident_stats(async_client: httpx.AsyncClient, state):
    sos_id = state.incidents.raise_sos({"deviceId": "stick-001"}).id
    state.incidents.acknowledge(sos_id, "user-1")
    _create_incident(state, "stick-001", IncidentType.OBSTACLE_DETECTED)
    _create_incident(state, "stick-001", IncidentType.OBSTACLE_DETECTED)

    res = await async_client.get("/incidents/stats", params={"hours": 1}, headers=as_user("user-1"))

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["windowHours"] == 1
    assert body["total"] == 3
    by_type = {s["type"]: s for s in body["byType"]}
    assert by_type["OBSTACLE_DETECTED"]["count"] == 2
    assert by_type["SOS"]["critical"] == 1
    assert by_type["SOS"]["unresolved"] == 1
    assert body["avgSosResponseMinutes"] is not None


def test_active_by_device_excludes_resolved(state):
    keep = _create_incident(state)
    gone = _create_incident(state)
    _create_incident(state, device_id="stick-002")
    state.incidents.resolve(gone, "user-1", note="cleared")

    active = state.incidents.active_by_device("stick-001")

    assert [i.id for i in active] == [keep]
    assert state.incidents.active_by_device("stick-001", IncidentType.LOW_BATTERY.value) == []
