from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from stickguard.errors import ValidationError
from stickguard.schemas.common import Severity

logger = logging.getLogger(__name__)

MAX_EXTRA_KEYS = 32


class IncidentType(str, Enum):
    """Incident kinds. Alert subtypes are derived from telemetry by the rule engine."""

    SOS = "SOS"
    ALERT = "ALERT"
    DEVICE_ONLINE = "DEVICE_ONLINE"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"
    LOW_BATTERY = "LOW_BATTERY"
    FALL_DETECTED = "FALL_DETECTED"
    OBSTACLE_DETECTED = "OBSTACLE_DETECTED"
    GPS_LOST = "GPS_LOST"
    MAINTENANCE_REQUIRED = "MAINTENANCE_REQUIRED"
    COMMAND_SENT = "COMMAND_SENT"
    COMMAND_RECEIVED = "COMMAND_RECEIVED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class IncidentStatus(str, Enum):
    active = "active"
    acknowledged = "acknowledged"
    resolved = "resolved"
    ignored = "ignored"


class EmergencyType(str, Enum):
    fall = "fall"
    medical = "medical"
    panic = "panic"
    obstacle = "obstacle"
    manual = "manual"
    automatic = "automatic"
    button_press = "button_press"


ALERT_TYPES = frozenset(
    {
        IncidentType.ALERT,
        IncidentType.LOW_BATTERY,
        IncidentType.FALL_DETECTED,
        IncidentType.OBSTACLE_DETECTED,
        IncidentType.GPS_LOST,
        IncidentType.MAINTENANCE_REQUIRED,
    }
)

# Types that trigger a push to the device owners on creation.
NOTIFIED_TYPES = frozenset({IncidentType.SOS, IncidentType.FALL_DETECTED, IncidentType.LOW_BATTERY})


# ---- Typed metadata (tagged on "kind") ----


class _MetadataBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    extra: Dict[str, Any] = Field(
        default_factory=dict,
        description=f"Forward-compatible, non-critical fields (at most {MAX_EXTRA_KEYS} keys).",
    )

    @field_validator("extra")
    @classmethod
    def _bound_extra(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if len(v) <= MAX_EXTRA_KEYS:
            return v
        kept = dict(list(v.items())[:MAX_EXTRA_KEYS])
        logger.warning("Incident metadata extra map truncated from %d to %d keys", len(v), MAX_EXTRA_KEYS)
        return kept


class SosMetadata(_MetadataBase):
    kind: Literal["sos"] = "sos"
    emergency_type: EmergencyType = Field(EmergencyType.manual, alias="emergencyType")
    trigger: Optional[str] = None
    sensor_data: Dict[str, Any] = Field(default_factory=dict, alias="sensorData")


class AlertMetadata(_MetadataBase):
    kind: Literal["alert"] = "alert"
    alert_value: Optional[float] = Field(default=None, alias="alertValue")
    alert_threshold: Optional[float] = Field(default=None, alias="alertThreshold")
    message: Optional[str] = None
    sensor_data: Dict[str, Any] = Field(default_factory=dict, alias="sensorData")


class DeviceStatusMetadata(_MetadataBase):
    kind: Literal["device_status"] = "device_status"
    online: bool
    device_status: Dict[str, Any] = Field(default_factory=dict, alias="deviceStatus")


class CommandMetadata(_MetadataBase):
    kind: Literal["command"] = "command"
    command: Optional[str] = None
    message_id: Optional[str] = Field(default=None, alias="messageId")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    response: Dict[str, Any] = Field(default_factory=dict)


class SystemMetadata(_MetadataBase):
    kind: Literal["system"] = "system"
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


IncidentMetadata = Annotated[
    Union[SosMetadata, AlertMetadata, DeviceStatusMetadata, CommandMetadata, SystemMetadata],
    Field(discriminator="kind"),
]

_METADATA_ADAPTER = TypeAdapter(IncidentMetadata)

_METADATA_VARIANTS: Dict[str, Type[_MetadataBase]] = {
    "sos": SosMetadata,
    "alert": AlertMetadata,
    "device_status": DeviceStatusMetadata,
    "command": CommandMetadata,
    "system": SystemMetadata,
}


# PUBLIC_INTERFACE
def metadata_kind_for(incident_type: IncidentType) -> str:
    """Default metadata variant for an incident type."""
    if incident_type == IncidentType.SOS:
        return "sos"
    if incident_type in ALERT_TYPES:
        return "alert"
    if incident_type in (IncidentType.DEVICE_ONLINE, IncidentType.DEVICE_OFFLINE):
        return "device_status"
    if incident_type in (IncidentType.COMMAND_SENT, IncidentType.COMMAND_RECEIVED):
        return "command"
    return "system"


# PUBLIC_INTERFACE
def normalize_metadata(incident_type: IncidentType, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate a metadata map against its variant and return the storage form.

    Missing ``kind`` defaults from the incident type. Keys the variant does not know are moved
    into ``extra`` (subject to its size bound).
    """
    data = dict(metadata or {})
    data.setdefault("kind", metadata_kind_for(incident_type))
    variant = _METADATA_VARIANTS.get(str(data["kind"]))
    if variant is None:
        raise ValidationError(
            "Invalid incident metadata",
            errors=[{"field": "metadata.kind", "message": f"unknown metadata kind {data['kind']!r}"}],
        )

    known = set()
    for name, f in variant.model_fields.items():
        known.add(name)
        if f.alias:
            known.add(f.alias)
    extra = dict(data.pop("extra", None) or {})
    for key in list(data.keys()):
        if key not in known:
            extra[key] = data.pop(key)
    data["extra"] = extra

    try:
        model = _METADATA_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid incident metadata",
            errors=[
                {"field": "metadata." + ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg", "")}
                for e in exc.errors()
            ],
        ) from None
    return model.model_dump(by_alias=True, mode="json")


# ---- Lifecycle records ----


class AcknowledgmentOut(BaseModel):
    user_id: str = Field(..., alias="userId")
    acknowledged_at: datetime = Field(..., alias="acknowledgedAt")
    note: Optional[str] = None


class ResolutionOut(BaseModel):
    resolved_by: str = Field(..., alias="resolvedBy")
    resolved_at: datetime = Field(..., alias="resolvedAt")
    resolution_note: Optional[str] = Field(default=None, alias="resolutionNote")
    actions: List[str] = Field(default_factory=list)


class EscalationOut(BaseModel):
    escalated_to: str = Field(..., alias="escalatedTo")
    reason: Optional[str] = None
    level: int = Field(..., ge=1, le=5)
    escalated_at: datetime = Field(..., alias="escalatedAt")
    escalated_by: Optional[str] = Field(default=None, alias="escalatedBy")


class NotificationOut(BaseModel):
    """Audit record of the push fan-out for an incident."""

    sent: bool = False
    timestamp: Optional[datetime] = None
    success_count: int = Field(0, alias="successCount")
    failure_count: int = Field(0, alias="failureCount")
    error: Optional[str] = None


class IncidentOut(BaseModel):
    """Response model for an incident."""

    id: str = Field(..., description="Incident id (Mongo ObjectId string).")
    type: IncidentType
    device_id: str = Field(..., alias="deviceId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    timestamp: datetime
    severity: Severity
    status: IncidentStatus
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[Dict[str, Any]] = Field(default=None, description="GeoJSON point [lon, lat].")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    notification: NotificationOut = Field(default_factory=NotificationOut)
    acknowledgments: List[AcknowledgmentOut] = Field(default_factory=list)
    resolution: Optional[ResolutionOut] = None
    escalation: Optional[EscalationOut] = None
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class IncidentListResponse(BaseModel):
    items: List[IncidentOut] = Field(..., description="Incidents, newest first.")
    total: int = Field(..., ge=0, description="Total matching incidents (before pagination).")


class IncidentTypeStats(BaseModel):
    type: IncidentType
    count: int = 0
    critical: int = 0
    unresolved: int = 0


class IncidentStatsResponse(BaseModel):
    window_hours: int = Field(..., alias="windowHours")
    total: int = 0
    by_type: List[IncidentTypeStats] = Field(default_factory=list, alias="byType")
    avg_sos_response_minutes: Optional[float] = Field(
        default=None,
        alias="avgSosResponseMinutes",
        description="Average time from SOS creation to first acknowledgment.",
    )


# ---- Request bodies ----


class AcknowledgeRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class ResolveRequest(BaseModel):
    resolution_note: Optional[str] = Field(default=None, alias="resolutionNote", max_length=1000)
    actions: List[str] = Field(default_factory=list, max_length=50)


class EscalateRequest(BaseModel):
    """Escalation target. Level is clamped to 1..5 rather than rejected."""

    escalated_to: str = Field(..., alias="escalatedTo", min_length=1, max_length=200)
    reason: Optional[str] = Field(default=None, max_length=500)
    level: int = Field(1, description="Escalation level; values outside 1..5 are clamped.")


class SosAccepted(BaseModel):
    event_id: str = Field(..., alias="eventId")
    device_id: str = Field(..., alias="deviceId")
    timestamp: datetime
    notifications_sent: int = Field(..., alias="notificationsSent")
    status: IncidentStatus
