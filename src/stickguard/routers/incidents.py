from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from stickguard.routers.deps import app_state, ensure_device_access, get_caller
from stickguard.schemas.common import ErrorResponse, Severity
from stickguard.schemas.incidents import (
    AcknowledgeRequest,
    EscalateRequest,
    IncidentListResponse,
    IncidentOut,
    IncidentStatsResponse,
    IncidentStatus,
    IncidentType,
    ResolveRequest,
)
from stickguard.services.device_registry import Caller
from stickguard.state import AppState

router = APIRouter(prefix="/incidents", tags=["Incidents"])

_ERRORS = {403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


def _scope(caller: Caller, device_id: Optional[str]):
    """Device filter for list/stats: admins see everything, others only their devices."""
    if device_id:
        ensure_device_access(caller, device_id)
        return [device_id]
    return None if caller.is_admin else list(caller.device_ids)


def _authorize_incident(state: AppState, caller: Caller, incident_id: str) -> None:
    ensure_device_access(caller, state.incidents.device_of(incident_id))


@router.get(
    "",
    response_model=IncidentListResponse,
    summary="List incidents",
    description="Incidents visible to the caller, newest first, with optional filters.",
    operation_id="list_incidents",
)
def list_incidents(
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    incident_type: Optional[IncidentType] = Query(default=None, alias="type"),
    status: Optional[IncidentStatus] = Query(default=None),
    severity: Optional[Severity] = Query(default=None),
    start: Optional[datetime] = Query(default=None, description="Start time (inclusive)."),
    end: Optional[datetime] = Query(default=None, description="End time (inclusive)."),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> IncidentListResponse:
    items, total = state.incidents.list(
        device_ids=_scope(caller, device_id),
        incident_type=incident_type.value if incident_type else None,
        status=status.value if status else None,
        severity=severity.value if severity else None,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return IncidentListResponse(items=items, total=total)


@router.get(
    "/stats",
    response_model=IncidentStatsResponse,
    summary="Incident statistics",
    description="Per-type counts (total, critical, unresolved) and mean SOS acknowledgment delay.",
    operation_id="incident_stats",
)
def incident_stats(
    hours: int = Query(24, ge=1, le=24 * 90),
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> IncidentStatsResponse:
    return state.incidents.statistics(hours=hours, device_ids=_scope(caller, device_id))


@router.get(
    "/{incident_id}",
    response_model=IncidentOut,
    responses=_ERRORS,
    summary="Get incident",
    operation_id="get_incident",
)
def get_incident(
    incident_id: str = Path(..., description="Incident id (Mongo ObjectId string)."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> IncidentOut:
    incident = state.incidents.get(incident_id)
    ensure_device_access(caller, incident.device_id)
    return incident


@router.post(
    "/{incident_id}/acknowledge",
    response_model=IncidentOut,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
    summary="Acknowledge incident",
    description="Append an acknowledgment; an active incident becomes acknowledged. Rejected once resolved.",
    operation_id="acknowledge_incident",
)
def acknowledge_incident(
    payload: Optional[AcknowledgeRequest] = None,
    incident_id: str = Path(..., description="Incident id (Mongo ObjectId string)."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> IncidentOut:
    _authorize_incident(state, caller, incident_id)
    note = payload.note if payload else None
    return state.incidents.acknowledge(incident_id, caller.user_id, note)


@router.post(
    "/{incident_id}/resolve",
    response_model=IncidentOut,
    responses={**_ERRORS, 409: {"model": ErrorResponse}},
    summary="Resolve incident",
    description="Resolve the incident (terminal). Resolving twice is a conflict.",
    operation_id="resolve_incident",
)
def resolve_incident(
    payload: Optional[ResolveRequest] = None,
    incident_id: str = Path(..., description="Incident id (Mongo ObjectId string)."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> IncidentOut:
    _authorize_incident(state, caller, incident_id)
    payload = payload or ResolveRequest()
    return state.incidents.resolve(incident_id, caller.user_id, payload.resolution_note, payload.actions)


@router.post(
    "/{incident_id}/escalate",
    response_model=IncidentOut,
    responses=_ERRORS,
    summary="Escalate incident",
    description="Record the escalation target, reason and level (clamped to 1..5). Overwrites earlier escalations.",
    operation_id="escalate_incident",
)
def escalate_incident(
    payload: EscalateRequest,
    incident_id: str = Path(..., description="Incident id (Mongo ObjectId string)."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> IncidentOut:
    _authorize_incident(state, caller, incident_id)
    return state.incidents.escalate(
        incident_id, payload.escalated_to, payload.reason, payload.level, user_id=caller.user_id
    )
