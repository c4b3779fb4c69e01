from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stickguard.config import BackendConfig, MqttSettings, load_config
from stickguard.errors import ServiceError, TransportConnectionError
from stickguard.routers import commands, health, incidents, sos, telemetry
from stickguard.schemas.common import ErrorResponse
from stickguard.services.notification_service import PushSender
from stickguard.state import build_state, get_state, init_state
from stickguard.transport.router import dispatch_loop

openapi_tags = [
    {"name": "Health", "description": "Service liveness, MQTT transport and Mongo diagnostics."},
    {"name": "Telemetry", "description": "Device readings: ingestion, history, statistics and GPS track."},
    {"name": "SOS", "description": "Emergency signals from devices."},
    {"name": "Incidents", "description": "Incident lifecycle: acknowledge, resolve, escalate."},
    {"name": "Commands", "description": "Commands to devices over MQTT."},
]

logger = logging.getLogger(__name__)

_REQUEST_LOCATIONS = ("body", "query", "path", "header", "cookie")


def _error_body(detail: str, code: str, errors: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    meta = {"errors": errors} if errors else {}
    return ErrorResponse(detail=detail, code=code, meta=meta).model_dump()


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.detail, exc.code, exc.errors))


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for err in exc.errors():
        loc = list(err.get("loc", ()))
        if loc and loc[0] in _REQUEST_LOCATIONS:
            loc = loc[1:]
        errors.append({"field": ".".join(str(p) for p in loc) or "body", "message": err.get("msg", "invalid value")})
    return JSONResponse(status_code=400, content=_error_body("Invalid request", "validation_error", errors))


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)


# PUBLIC_INTERFACE
def create_app(
    config: Optional[BackendConfig] = None,
    *,
    mongo_client: Optional[Any] = None,
    mqtt_client_factory: Optional[Callable[[MqttSettings], Any]] = None,
    push_sender: Optional[PushSender] = None,
) -> FastAPI:
    """Build the FastAPI app. Overrides are for tests (in-memory Mongo, fake broker, recording push)."""
    config = config or load_config()
    _configure_logging(config.log_level)

    app = FastAPI(
        title="StickGuard Device Events API",
        description=(
            "Backend for smart-stick field devices: telemetry ingestion, alert rules, SOS and incident "
            "lifecycle, push notification fan-out, and device commands over MQTT."
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
    )

    init_state(
        app,
        build_state(config, mongo_client=mongo_client, mqtt_client_factory=mqtt_client_factory, push_sender=push_sender),
    )

    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: verify Mongo, ensure indexes, connect MQTT and start the dispatch loop."""
        state = get_state(app)

        state.mongo.connect_app()
        if not state.mongo.ping():
            raise RuntimeError("Mongo connectivity check failed during startup. Verify MONGO_URI.")

        state.mongo.init_indexes(
            telemetry_ttl_seconds=int(state.config.telemetry_ttl_seconds),
            resolved_incident_ttl_seconds=int(state.config.resolved_incident_ttl_seconds),
        )

        # Without a broker the HTTP surface still works; commands answer 503 until connected.
        try:
            await asyncio.to_thread(state.router.connect)
        except TransportConnectionError:
            logger.exception("MQTT connection failed; running without device transport")

        app.state._dispatch_shutdown = asyncio.Event()
        state.dispatch_task = asyncio.create_task(dispatch_loop(state.router, app.state._dispatch_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the dispatch loop, disconnect MQTT and close Mongo."""
        state = get_state(app)

        dispatch_shutdown = getattr(app.state, "_dispatch_shutdown", None)
        if dispatch_shutdown is not None:
            dispatch_shutdown.set()
        dispatch_task = state.dispatch_task
        if dispatch_task is not None:
            try:
                await asyncio.wait_for(dispatch_task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping MQTT dispatch task")

        state.router.disconnect()
        state.mongo.close()

    # CORS: local mobile/web dev origins plus explicit extra origins.
    allowed_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    allowed_origins.extend(config.cors_allow_origins)
    _seen = set()
    allowed_origins = [o for o in allowed_origins if not (o in _seen or _seen.add(o))]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(telemetry.router)
    app.include_router(sos.router)
    app.include_router(incidents.router)
    app.include_router(commands.router)
    return app


app = create_app()
