"""Input validation for device payloads and command requests.

Everything here is independent of storage: callers get typed readings back, or a single
``ValidationError`` that lists every failing field as ``{"field": "gps.lat", "message": ...}``.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from stickguard.errors import ValidationError
from stickguard.schemas.commands import CommandType

DEVICE_ID_PATTERN = r"^[A-Za-z0-9_-]{1,50}$"
_DEVICE_ID_RE = re.compile(DEVICE_ID_PATTERN)

ULTRASONIC_MAX_CM = 1000.0


class _Reading(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False, extra="ignore")


class Vector3(_Reading):
    x: float
    y: float
    z: float


class ImuReading(_Reading):
    accelerometer: Optional[Vector3] = None
    gyroscope: Optional[Vector3] = None
    magnetometer: Optional[Vector3] = None
    temperature: Optional[float] = None


class BatteryReading(_Reading):
    level: Optional[float] = Field(default=None, ge=0, le=100)
    voltage: Optional[float] = None
    charging: bool = False


class SensorReadings(_Reading):
    ultrasonic_left: Optional[float] = Field(default=None, ge=0, le=ULTRASONIC_MAX_CM, alias="ultrasonicLeft")
    ultrasonic_center: Optional[float] = Field(default=None, ge=0, le=ULTRASONIC_MAX_CM, alias="ultrasonicCenter")
    ultrasonic_right: Optional[float] = Field(default=None, ge=0, le=ULTRASONIC_MAX_CM, alias="ultrasonicRight")
    ir: Optional[float] = Field(default=None, ge=0, le=ULTRASONIC_MAX_CM, alias="IR")
    imu: Optional[ImuReading] = Field(default=None, alias="IMU")
    battery: Optional[BatteryReading] = None
    environment: Optional[Dict[str, float]] = None


class GpsReading(_Reading):
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lon: Optional[float] = Field(default=None, ge=-180, le=180)
    altitude: Optional[float] = None
    accuracy: Optional[float] = Field(default=None, ge=0)
    speed: Optional[float] = None
    heading: Optional[float] = None
    satellites: Optional[int] = Field(default=None, ge=0)
    fix: Optional[bool] = None

    def has_fix(self) -> bool:
        return self.lat is not None and self.lon is not None and self.fix is not False


class TelemetryIn(_Reading):
    """One telemetry snapshot as accepted from HTTP or the broker."""

    device_id: str = Field(..., alias="deviceId", pattern=DEVICE_ID_PATTERN)
    timestamp: Optional[datetime] = None
    sensors: SensorReadings = Field(default_factory=SensorReadings)
    gps: Optional[GpsReading] = None
    connectivity: Dict[str, Any] = Field(default_factory=dict)
    device_status: Dict[str, Any] = Field(default_factory=dict, alias="deviceStatus")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("sensors", "connectivity", "device_status", "metadata", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class SosIn(_Reading):
    device_id: str = Field(..., alias="deviceId", pattern=DEVICE_ID_PATTERN)
    gps: Optional[GpsReading] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v


def _field_errors(exc: PydanticValidationError, prefix: str = "") -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        if prefix:
            loc = f"{prefix}.{loc}" if loc else prefix
        out.append({"field": loc or "body", "message": err.get("msg", "invalid value")})
    return out


def _require_object(payload: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{what} must be a JSON object", errors=[{"field": "body", "message": "must be an object"}])
    return payload


# PUBLIC_INTERFACE
def validate_telemetry(payload: Any) -> TelemetryIn:
    """Validate a telemetry payload; raises ValidationError listing every failing field."""
    body = _require_object(payload, "telemetry")
    try:
        return TelemetryIn.model_validate(dict(body))
    except PydanticValidationError as exc:
        raise ValidationError("Invalid telemetry data", errors=_field_errors(exc)) from None


# PUBLIC_INTERFACE
def validate_sos(payload: Any) -> SosIn:
    """Validate an SOS payload; raises ValidationError listing every failing field."""
    body = _require_object(payload, "sos")
    try:
        return SosIn.model_validate(dict(body))
    except PydanticValidationError as exc:
        raise ValidationError("Invalid SOS data", errors=_field_errors(exc)) from None


# PUBLIC_INTERFACE
def is_valid_device_id(device_id: Any) -> bool:
    return isinstance(device_id, str) and bool(_DEVICE_ID_RE.match(device_id))


# PUBLIC_INTERFACE
def validate_device_id(device_id: Any, field: str = "deviceId") -> str:
    if not is_valid_device_id(device_id):
        raise ValidationError(
            "Invalid device ID format",
            errors=[{"field": field, "message": "must be 1-50 characters of letters, digits, '_' or '-'"}],
        )
    return device_id


# PUBLIC_INTERFACE
def sanitize_text(value: Any) -> Any:
    """Trim and strip angle brackets from free text; non-strings pass through."""
    if not isinstance(value, str):
        return value
    return value.strip().replace("<", "").replace(">", "")


# PUBLIC_INTERFACE
def sanitize_parameters(parameters: Any, field: str = "parameters") -> Dict[str, Any]:
    """
    Validate a command parameter map and sanitize its string values.

    Keys must be storable as document keys: non-empty, no leading '$', no '.'.
    """
    if parameters is None:
        return {}
    if not isinstance(parameters, Mapping):
        raise ValidationError("Parameters must be an object", errors=[{"field": field, "message": "must be an object"}])

    errors: List[Dict[str, Any]] = []
    clean: Dict[str, Any] = {}
    for key, value in parameters.items():
        if not isinstance(key, str) or not key or key.startswith("$") or "." in key:
            errors.append({"field": f"{field}.{key}", "message": "invalid parameter name"})
            continue
        clean[key] = sanitize_text(value)
    if errors:
        raise ValidationError("Invalid command parameters", errors=errors)
    return clean


# PUBLIC_INTERFACE
def validate_command(command: Any, field: str = "command") -> CommandType:
    """Check a command name against the fixed command set."""
    try:
        return CommandType(command)
    except ValueError:
        valid = ", ".join(c.value for c in CommandType)
        raise ValidationError(
            f"Invalid command. Valid commands: {valid}",
            errors=[{"field": field, "message": f"must be one of: {valid}"}],
        ) from None
