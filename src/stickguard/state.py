from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import FastAPI

from stickguard.config import BackendConfig, MqttSettings
from stickguard.db.mongo import MongoManager
from stickguard.services.alert_engine import AlertRuleEngine
from stickguard.services.command_dispatcher import CommandDispatcher
from stickguard.services.device_events import DeviceEventHandlers
from stickguard.services.device_registry import DeviceRegistry
from stickguard.services.incident_manager import IncidentManager
from stickguard.services.notification_service import FcmPushSender, NotificationFanout, PushSender
from stickguard.services.telemetry_ingestor import TelemetryIngestor
from stickguard.transport.router import TransportRouter


@dataclass
class AppState:
    """Typed app.state container: config, storage, transport and the pipeline services."""

    config: BackendConfig
    mongo: MongoManager
    router: TransportRouter
    registry: DeviceRegistry
    incidents: IncidentManager
    alerts: AlertRuleEngine
    ingestor: TelemetryIngestor
    commands: CommandDispatcher
    dispatch_task: Optional[object] = None  # asyncio.Task, kept loose to avoid import cycles


# PUBLIC_INTERFACE
def build_state(
    config: BackendConfig,
    *,
    mongo_client: Optional[Any] = None,
    mqtt_client_factory: Optional[Callable[[MqttSettings], Any]] = None,
    push_sender: Optional[PushSender] = None,
) -> AppState:
    """
    Wire every component with its collaborators.

    Overrides let tests inject an in-memory Mongo client, a fake MQTT client and a recording
    push sender.
    """
    mongo = MongoManager(config.mongo_uri, config.mongo_db_name, client=mongo_client)
    cols = mongo.collections()

    router = TransportRouter(config.mqtt, client_factory=mqtt_client_factory)
    registry = DeviceRegistry(cols.users)
    sender = push_sender or FcmPushSender(
        config.fcm_service_account,
        timeout=config.push_timeout_sec,
    )
    incidents = IncidentManager(cols.incidents, registry, NotificationFanout(sender))
    alerts = AlertRuleEngine(incidents, config.cooldowns)
    ingestor = TelemetryIngestor(cols.telemetry, registry, alerts)
    commands = CommandDispatcher(router, cols.command_dispatches)

    DeviceEventHandlers(config.mqtt.topic_root, ingestor, incidents, commands).register(router)

    return AppState(
        config=config,
        mongo=mongo,
        router=router,
        registry=registry,
        incidents=incidents,
        alerts=alerts,
        ingestor=ingestor,
        commands=commands,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, state: AppState) -> None:
    app.state.state = state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
