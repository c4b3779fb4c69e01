"""Broker topic handlers: device -> server channels under ``{root}/{deviceId}/...``.

The device id always comes from the topic; a payload ``deviceId`` that disagrees is overridden
and logged.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from stickguard.services.command_dispatcher import CommandDispatcher
from stickguard.services.incident_manager import IncidentManager
from stickguard.services.telemetry_ingestor import TelemetryIngestor
from stickguard.transport.inbound import InboundMessage, MessageParseError
from stickguard.transport.router import TransportRouter
from stickguard.transport.topics import device_id_from_topic, device_topic_pattern
from stickguard.validation import validate_device_id

logger = logging.getLogger(__name__)


class DeviceEventHandlers:
    def __init__(
        self,
        topic_root: str,
        ingestor: TelemetryIngestor,
        incidents: IncidentManager,
        commands: CommandDispatcher,
    ):
        self._root = topic_root
        self._ingestor = ingestor
        self._incidents = incidents
        self._commands = commands

    # PUBLIC_INTERFACE
    def register(self, router: TransportRouter) -> None:
        """Add one route per device channel (subscribed when the router connects)."""
        router.add_route(device_topic_pattern(self._root, "telemetry"), self.on_telemetry)
        router.add_route(device_topic_pattern(self._root, "sos"), self.on_sos)
        router.add_route(device_topic_pattern(self._root, "status"), self.on_status)
        router.add_route(device_topic_pattern(self._root, "response"), self.on_response)

    def _device_payload(self, message: InboundMessage) -> Dict[str, Any]:
        device_id = device_id_from_topic(message.topic, self._root)
        if device_id is None:
            raise MessageParseError(f"unexpected topic shape {message.topic}")
        validate_device_id(device_id)
        payload = message.json()
        claimed = payload.get("deviceId")
        if claimed is not None and claimed != device_id:
            logger.warning("Payload deviceId=%s disagrees with topic deviceId=%s; using topic", claimed, device_id)
        payload["deviceId"] = device_id
        return payload

    def on_telemetry(self, message: InboundMessage) -> None:
        result = self._ingestor.ingest(self._device_payload(message))
        logger.debug("MQTT telemetry stored deviceId=%s id=%s alerts=%d", result.device_id, result.id, len(result.alert_ids))

    def on_sos(self, message: InboundMessage) -> None:
        payload = self._device_payload(message)
        if not isinstance(payload.get("metadata"), dict):
            payload["metadata"] = {}
        payload["metadata"].setdefault("emergencyType", "button_press")
        payload["metadata"].setdefault("trigger", "mqtt")
        self._incidents.raise_sos(payload)

    def on_status(self, message: InboundMessage) -> None:
        payload = self._device_payload(message)
        device_id = payload.pop("deviceId")
        self._incidents.record_device_status(device_id, payload)

    def on_response(self, message: InboundMessage) -> None:
        payload = self._device_payload(message)
        device_id = payload.pop("deviceId")
        self._commands.record_response(device_id, payload)
