from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import JSONResponse

from stickguard.errors import InternalError
from stickguard.routers.deps import app_state, ensure_device_access, get_caller, require_admin
from stickguard.schemas.commands import (
    BatchDispatchResponse,
    BulkCommandRequest,
    CommandCatalogResponse,
    CommandDispatchOut,
    CommandHistoryResponse,
    CommandRecordOut,
    CommandRequest,
    EmergencyRequest,
)
from stickguard.schemas.common import ErrorResponse
from stickguard.services.command_dispatcher import BatchOutcome, DispatchOutcome
from stickguard.services.device_registry import Caller
from stickguard.state import AppState

router = APIRouter(prefix="/commands", tags=["Commands"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _dispatch_out(o: DispatchOutcome) -> CommandDispatchOut:
    return CommandDispatchOut(
        deviceId=o.device_id,
        command=o.command,
        parameters=o.parameters,
        messageId=o.message_id,
        timestamp=o.timestamp,
        success=o.ok,
        error=o.error,
    )


def _batch_response(batch: BatchOutcome) -> JSONResponse:
    """200 when at least one dispatch succeeded, 500 otherwise (body lists every outcome)."""
    body = BatchDispatchResponse(
        success=batch.success,
        successCount=batch.success_count,
        failureCount=batch.failure_count,
        results=[_dispatch_out(o) for o in batch.outcomes],
    )
    return JSONResponse(status_code=200 if batch.success else 500, content=body.model_dump(by_alias=True, mode="json"))


@router.get(
    "/available",
    response_model=CommandCatalogResponse,
    summary="Available commands",
    description="Command names with their parameters and defaults.",
    operation_id="available_commands",
)
def available_commands(state: AppState = Depends(app_state)) -> CommandCatalogResponse:
    return CommandCatalogResponse(items=state.commands.available_commands())


@router.get(
    "/messages/{message_id}",
    response_model=CommandRecordOut,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get dispatched command",
    description="Look up a dispatched command by its correlation id.",
    operation_id="get_command",
)
def get_command(
    message_id: str = Path(..., description="Correlation id returned when the command was sent."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> CommandRecordOut:
    record = state.commands.get(message_id)
    ensure_device_access(caller, record.device_id)
    return record


@router.post(
    "/bulk",
    response_model=BatchDispatchResponse,
    responses=_ERRORS,
    summary="Bulk command (admin)",
    description="Send one command to many devices. Each device succeeds or fails on its own.",
    operation_id="bulk_command",
)
def bulk_command(
    payload: BulkCommandRequest,
    caller: Caller = Depends(require_admin),
    state: AppState = Depends(app_state),
) -> JSONResponse:
    batch = state.commands.bulk(payload.device_ids, payload.command, payload.parameters, user_id=caller.user_id)
    return _batch_response(batch)


@router.post(
    "/{device_id}",
    response_model=CommandDispatchOut,
    responses=_ERRORS,
    summary="Send command",
    description="Publish a command to the device's command topic and record the dispatch.",
    operation_id="send_command",
)
def send_command(
    payload: CommandRequest,
    device_id: str = Path(..., description="Device id."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> CommandDispatchOut:
    ensure_device_access(caller, device_id)
    outcome = state.commands.dispatch(device_id, payload.command, payload.parameters, user_id=caller.user_id)
    if not outcome.ok:
        raise InternalError("Failed to send command to device", errors=[{"field": "command", "message": outcome.error}])
    return _dispatch_out(outcome)


@router.post(
    "/{device_id}/emergency",
    response_model=BatchDispatchResponse,
    responses=_ERRORS,
    summary="Emergency signals",
    description="LED, vibration and beep in emergency mode, each sent independently.",
    operation_id="emergency_commands",
)
def emergency_commands(
    payload: Optional[EmergencyRequest] = None,
    device_id: str = Path(..., description="Device id."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> JSONResponse:
    ensure_device_access(caller, device_id)
    payload = payload or EmergencyRequest()
    batch = state.commands.emergency(device_id, payload.intensity, payload.duration, user_id=caller.user_id)
    return _batch_response(batch)


@router.post(
    "/{device_id}/status",
    response_model=CommandDispatchOut,
    responses=_ERRORS,
    summary="Request device status",
    description="Send status_check; the device answers asynchronously on its response channel.",
    operation_id="request_device_status",
)
def request_device_status(
    device_id: str = Path(..., description="Device id."),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> CommandDispatchOut:
    ensure_device_access(caller, device_id)
    outcome = state.commands.status_check(device_id, user_id=caller.user_id)
    if not outcome.ok:
        raise InternalError("Failed to send status request to device")
    return _dispatch_out(outcome)


@router.get(
    "/{device_id}/history",
    response_model=CommandHistoryResponse,
    responses={403: {"model": ErrorResponse}},
    summary="Command history",
    description="Sent commands and device responses, newest first.",
    operation_id="command_history",
)
def command_history(
    device_id: str = Path(..., description="Device id."),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
    caller: Caller = Depends(get_caller),
    state: AppState = Depends(app_state),
) -> CommandHistoryResponse:
    ensure_device_access(caller, device_id)
    items, total = state.commands.history(device_id, limit=limit, offset=offset)
    return CommandHistoryResponse(items=items, total=total)
