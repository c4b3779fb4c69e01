"""Device command dispatch over the transport router.

A successful publish only means the broker took the message. Device replies arrive later on the
``response`` channel and are matched by ``messageId``; nothing waits for them or retries.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo.collection import Collection

from stickguard.db.mongo import mongo_now, to_mongo_datetime
from stickguard.errors import NotConnectedError, NotFoundError, ServiceError, ServiceUnavailableError
from stickguard.schemas.commands import CommandRecordOut, CommandSpec, CommandType
from stickguard.schemas.common import as_utc
from stickguard.transport.router import TransportRouter
from stickguard.transport.topics import command_topic
from stickguard.validation import sanitize_parameters, validate_command, validate_device_id

logger = logging.getLogger(__name__)

COMMAND_SENT = "COMMAND_SENT"
COMMAND_RECEIVED = "COMMAND_RECEIVED"

COMMAND_CATALOG: List[Dict[str, Any]] = [
    {
        "command": "vibrate",
        "description": "Activate vibration motor",
        "parameters": [
            {"name": "intensity", "type": "string", "options": ["low", "medium", "high"], "default": "medium"},
            {"name": "duration", "type": "number", "description": "Duration in seconds", "default": 3},
        ],
    },
    {
        "command": "beep",
        "description": "Activate buzzer",
        "parameters": [
            {"name": "pattern", "type": "string", "options": ["single", "double", "emergency"], "default": "single"},
            {"name": "duration", "type": "number", "description": "Duration in seconds", "default": 2},
        ],
    },
    {
        "command": "led_on",
        "description": "Turn on LED indicators",
        "parameters": [
            {"name": "pattern", "type": "string", "options": ["solid", "blink", "emergency"], "default": "solid"},
            {"name": "color", "type": "string", "options": ["red", "green", "blue", "white"], "default": "white"},
            {"name": "duration", "type": "number", "description": "Duration in seconds (0 = indefinite)", "default": 0},
        ],
    },
    {"command": "led_off", "description": "Turn off LED indicators", "parameters": []},
    {"command": "status_check", "description": "Request a device status report", "parameters": []},
    {
        "command": "reboot",
        "description": "Restart the device",
        "parameters": [{"name": "delay", "type": "number", "description": "Delay in seconds", "default": 5}],
    },
]


@dataclass(frozen=True)
class DispatchOutcome:
    device_id: str
    command: str
    parameters: Dict[str, Any]
    timestamp: datetime
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchOutcome:
    outcomes: List[DispatchOutcome] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failure_count(self) -> int:
        return len(self.outcomes) - self.success_count

    @property
    def success(self) -> bool:
        return self.success_count > 0


# PUBLIC_INTERFACE
def new_message_id() -> str:
    """Correlation id: msg_<epoch ms>_<random>."""
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# PUBLIC_INTERFACE
def emergency_bundle(intensity: str = "high", duration: int = 10) -> List[Tuple[str, Dict[str, Any]]]:
    """Visual, haptic and audible signals, in that order."""
    return [
        ("led_on", {"pattern": "emergency", "duration": duration}),
        ("vibrate", {"intensity": intensity, "duration": duration}),
        ("beep", {"pattern": "emergency", "duration": duration}),
    ]


def _doc_to_out(doc: dict) -> CommandRecordOut:
    return CommandRecordOut(
        id=str(doc["_id"]),
        type=doc["type"],
        deviceId=doc["deviceId"],
        userId=doc.get("userId"),
        command=doc.get("command"),
        parameters=doc.get("parameters") or {},
        messageId=doc.get("messageId"),
        timestamp=as_utc(doc["timestamp"]),
        outcome=doc.get("outcome"),
        error=doc.get("error"),
        response=doc.get("response") or {},
    )


class CommandDispatcher:
    def __init__(self, router: TransportRouter, dispatches: Collection):
        self._router = router
        self._dispatches = dispatches

    def _require_transport(self) -> None:
        if not self._router.is_connected:
            raise ServiceUnavailableError("MQTT service unavailable")

    # PUBLIC_INTERFACE
    def dispatch(
        self,
        device_id: str,
        command: Any,
        parameters: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        emergency: bool = False,
    ) -> DispatchOutcome:
        """
        Validate, publish and record one command.

        Raises ValidationError for a bad device id, command or parameters, and
        ServiceUnavailableError when the transport is down. A rejected publish is returned as
        ``ok=False`` and recorded with outcome "failed".
        """
        validate_device_id(device_id)
        cmd = validate_command(command)
        params = sanitize_parameters(parameters)
        self._require_transport()

        message_id = new_message_id()
        now = mongo_now()
        payload = {
            "command": cmd.value,
            "parameters": params,
            "messageId": message_id,
            "timestamp": as_utc(now).isoformat(),
        }
        try:
            result = self._router.publish(command_topic(self._router.topic_root, device_id), payload, qos=1)
        except NotConnectedError:
            raise ServiceUnavailableError("MQTT service unavailable") from None

        doc = {
            "type": COMMAND_SENT,
            "deviceId": device_id,
            "userId": user_id,
            "command": cmd.value,
            "parameters": params,
            "messageId": message_id,
            "timestamp": now,
            "outcome": "published" if result.ok else "failed",
            "error": result.error,
            "emergencySequence": bool(emergency),
            "createdAt": now,
        }
        self._dispatches.insert_one(doc)

        if result.ok:
            logger.info("Command sent deviceId=%s command=%s messageId=%s", device_id, cmd.value, message_id)
        else:
            logger.error("Command publish failed deviceId=%s command=%s error=%s", device_id, cmd.value, result.error)
        return DispatchOutcome(
            device_id=device_id,
            command=cmd.value,
            parameters=params,
            timestamp=as_utc(now),
            ok=result.ok,
            message_id=message_id,
            error=result.error,
        )

    def _isolated(
        self,
        device_id: Any,
        command: Any,
        parameters: Optional[Dict[str, Any]],
        user_id: Optional[str],
        emergency: bool = False,
    ) -> DispatchOutcome:
        try:
            return self.dispatch(device_id, command, parameters, user_id=user_id, emergency=emergency)
        except ServiceError as exc:
            error = exc.detail
            logger.warning("Command rejected deviceId=%s command=%s: %s", device_id, command, error)
        except Exception as exc:
            error = f"dispatch failed: {exc}"
            logger.exception("Command dispatch failed deviceId=%s command=%s", device_id, command)
        return DispatchOutcome(
            device_id=str(device_id),
            command=str(command),
            parameters=dict(parameters or {}),
            timestamp=as_utc(mongo_now()),
            ok=False,
            error=error,
        )

    # PUBLIC_INTERFACE
    def bulk(
        self,
        device_ids: Sequence[Any],
        command: Any,
        parameters: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
    ) -> BatchOutcome:
        """Same command to many devices; each device succeeds or fails on its own."""
        validate_command(command)
        sanitize_parameters(parameters)
        self._require_transport()
        batch = BatchOutcome()
        for device_id in device_ids:
            batch.outcomes.append(self._isolated(device_id, command, parameters, user_id))
        logger.info("Bulk command %s: %d/%d succeeded", command, batch.success_count, len(batch.outcomes))
        return batch

    # PUBLIC_INTERFACE
    def emergency(
        self,
        device_id: str,
        intensity: str = "high",
        duration: int = 10,
        *,
        user_id: Optional[str] = None,
    ) -> BatchOutcome:
        """Emergency bundle to one device; each of the three commands is sent independently."""
        validate_device_id(device_id)
        self._require_transport()
        batch = BatchOutcome()
        for command, params in emergency_bundle(intensity, duration):
            batch.outcomes.append(self._isolated(device_id, command, params, user_id, emergency=True))
        logger.warning("Emergency bundle deviceId=%s: %d/3 succeeded", device_id, batch.success_count)
        return batch

    # PUBLIC_INTERFACE
    def status_check(self, device_id: str, *, user_id: Optional[str] = None) -> DispatchOutcome:
        return self.dispatch(
            device_id,
            CommandType.status_check,
            {"requestId": uuid.uuid4().hex, "requestedBy": user_id},
            user_id=user_id,
        )

    # PUBLIC_INTERFACE
    def record_response(self, device_id: str, payload: Dict[str, Any]) -> CommandRecordOut:
        """Store a device reply as COMMAND_RECEIVED and mark the matching dispatch as answered."""
        validate_device_id(device_id)
        now = mongo_now()
        message_id = payload.get("messageId")
        doc = {
            "type": COMMAND_RECEIVED,
            "deviceId": device_id,
            "command": payload.get("command"),
            "parameters": {},
            "messageId": message_id,
            "timestamp": now,
            "response": dict(payload),
            "createdAt": now,
        }
        res = self._dispatches.insert_one(doc)
        doc["_id"] = res.inserted_id

        if message_id:
            matched = self._dispatches.update_one(
                {"type": COMMAND_SENT, "deviceId": device_id, "messageId": message_id},
                {"$set": {"respondedAt": now}},
            ).matched_count
            if not matched:
                logger.info("Response without matching dispatch deviceId=%s messageId=%s", device_id, message_id)
        return _doc_to_out(doc)

    # PUBLIC_INTERFACE
    def history(
        self,
        device_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CommandRecordOut], int]:
        validate_device_id(device_id)
        q: Dict[str, Any] = {"deviceId": device_id, "type": {"$in": [COMMAND_SENT, COMMAND_RECEIVED]}}
        if start or end:
            q["timestamp"] = {}
            if start:
                q["timestamp"]["$gte"] = to_mongo_datetime(start)
            if end:
                q["timestamp"]["$lte"] = to_mongo_datetime(end)
        total = self._dispatches.count_documents(q)
        docs = list(self._dispatches.find(q).sort("timestamp", -1).skip(int(offset)).limit(int(limit)))
        return [_doc_to_out(d) for d in docs], int(total)

    # PUBLIC_INTERFACE
    def get(self, message_id: str) -> CommandRecordOut:
        doc = self._dispatches.find_one({"type": COMMAND_SENT, "messageId": message_id})
        if not doc:
            raise NotFoundError("Command not found")
        return _doc_to_out(doc)

    # PUBLIC_INTERFACE
    def available_commands(self) -> List[CommandSpec]:
        return [CommandSpec.model_validate(c) for c in COMMAND_CATALOG]
