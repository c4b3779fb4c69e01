from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

from stickguard.routers.deps import app_state, ensure_device_access, get_caller
from stickguard.schemas.common import ErrorResponse
from stickguard.schemas.telemetry import (
    GpsTrackResponse,
    TelemetryAccepted,
    TelemetryListResponse,
    TelemetryOut,
    TelemetryStatsResponse,
)
from stickguard.services.device_registry import Caller
from stickguard.state import AppState
from stickguard.validation import TelemetryIn

router = APIRouter(prefix="/telemetry", tags=["Telemetry"])


@router.post(
    "",
    response_model=TelemetryAccepted,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Ingest telemetry",
    description="Validate and store one reading, then run alert rules on it. Used by device firmware over HTTP.",
    operation_id="ingest_telemetry",
)
def ingest_telemetry(payload: TelemetryIn, state: AppState = Depends(app_state)) -> TelemetryAccepted:
    result = state.ingestor.ingest(payload)
    return TelemetryAccepted(id=result.id, deviceId=result.device_id, timestamp=result.timestamp, alerts=result.alert_ids)


@router.get(
    "/{device_id}",
    response_model=TelemetryListResponse,
    responses={403: {"model": ErrorResponse}},
    summary="Telemetry history",
    description="Readings for a device, newest first, with optional time range and GPS-only filter.",
    operation_id="list_telemetry",
)
def list_telemetry(
    device_id: str = Path(..., description="Device id."),
    start: Optional[datetime] = Query(default=None, description="Start time (inclusive)."),
    end: Optional[datetime] = Query(default=None, description="End time (inclusive)."),
    with_gps: bool = Query(default=False, alias="withGps", description="Only readings with coordinates."),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0, le=100000),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> TelemetryListResponse:
    ensure_device_access(caller, device_id)
    items, total = state.ingestor.history(
        device_id, start=start, end=end, with_gps=with_gps, limit=limit, offset=offset
    )
    return TelemetryListResponse(items=items, total=total)


@router.get(
    "/{device_id}/latest",
    response_model=TelemetryOut,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Latest reading",
    operation_id="latest_telemetry",
)
def latest_telemetry(
    device_id: str = Path(..., description="Device id."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> TelemetryOut:
    ensure_device_access(caller, device_id)
    return state.ingestor.latest(device_id)


@router.get(
    "/{device_id}/stats",
    response_model=TelemetryStatsResponse,
    responses={403: {"model": ErrorResponse}},
    summary="Telemetry statistics",
    description="Reading count and battery min/avg/max over the last N hours.",
    operation_id="telemetry_stats",
)
def telemetry_stats(
    device_id: str = Path(..., description="Device id."),
    hours: int = Query(24, ge=1, le=24 * 30),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> TelemetryStatsResponse:
    ensure_device_access(caller, device_id)
    return state.ingestor.stats(device_id, hours=hours)


@router.get(
    "/{device_id}/gps-track",
    response_model=GpsTrackResponse,
    responses={403: {"model": ErrorResponse}},
    summary="GPS track",
    description="GPS fixes in chronological order.",
    operation_id="gps_track",
)
def gps_track(
    device_id: str = Path(..., description="Device id."),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(1000, ge=1, le=5000),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> GpsTrackResponse:
    ensure_device_access(caller, device_id)
    items = state.ingestor.gps_track(device_id, start=start, end=end, limit=limit)
    return GpsTrackResponse(deviceId=device_id, items=items, total=len(items))
