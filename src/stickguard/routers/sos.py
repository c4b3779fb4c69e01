from __future__ import annotations

from fastapi import APIRouter, Depends, status

from stickguard.routers.deps import app_state
from stickguard.schemas.common import ErrorResponse
from stickguard.schemas.incidents import SosAccepted
from stickguard.state import AppState
from stickguard.validation import SosIn

router = APIRouter(prefix="/sos", tags=["SOS"])


@router.post(
    "",
    response_model=SosAccepted,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Raise SOS",
    description=(
        "Create a critical SOS incident for the device and push it to the device owners. "
        "Succeeds even when no recipient could be notified; notificationsSent reports deliveries."
    ),
    operation_id="raise_sos",
)
def raise_sos(payload: SosIn, state: AppState = Depends(app_state)) -> SosAccepted:
    incident = state.incidents.raise_sos(payload)
    return SosAccepted(
        eventId=incident.id,
        deviceId=incident.device_id,
        timestamp=incident.timestamp,
        notificationsSent=incident.notification.success_count,
        status=incident.status,
    )
