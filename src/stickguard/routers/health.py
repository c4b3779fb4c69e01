from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from stickguard.config import sanitize_mongo_uri
from stickguard.schemas.common import HealthResponse, utc_now
from stickguard.state import get_state

router = APIRouter(tags=["Health"])


class TransportStatusResponse(BaseModel):
    """Broker connection and inbound channel diagnostics."""

    state: str = Field(..., description="disconnected|connecting|connected|reconnecting|permanently_disconnected")
    connected: bool
    broker: str = Field(..., description="host:port of the MQTT broker.")
    client_id: str = Field(..., alias="clientId")
    routes: List[str] = Field(default_factory=list, description="Route patterns in match order.")
    reconnect_attempts: int = Field(..., alias="reconnectAttempts")
    max_reconnect_attempts: int = Field(..., alias="maxReconnectAttempts")
    queue: Dict[str, Any] = Field(default_factory=dict, description="Inbound queue statistics.")


class MongoConnectivityResponse(BaseModel):
    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    mongo_uri_sanitized: str = Field(..., description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/health/transport",
    response_model=TransportStatusResponse,
    summary="MQTT transport status",
    description="Connection state, registered routes, reconnect attempts and inbound queue statistics.",
    operation_id="transport_status",
)
def transport_status(request: Request) -> TransportStatusResponse:
    return TransportStatusResponse.model_validate(get_state(request.app).router.status())


@router.get(
    "/health/mongo",
    response_model=MongoConnectivityResponse,
    summary="Mongo connectivity check",
    description="Pings the configured MongoDB. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    state = get_state(request.app)
    return MongoConnectivityResponse(
        ok=state.mongo.ping(),
        mongo_uri_sanitized=sanitize_mongo_uri(state.config.mongo_uri),
        timestamp=utc_now().isoformat(),
    )
