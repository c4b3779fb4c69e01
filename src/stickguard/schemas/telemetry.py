from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TelemetryAccepted(BaseModel):
    """Response for an accepted telemetry message."""

    id: str = Field(..., description="Telemetry record id (Mongo ObjectId string).")
    device_id: str = Field(..., alias="deviceId")
    timestamp: datetime = Field(..., description="Reading timestamp (device-supplied or server time).")
    alerts: List[str] = Field(default_factory=list, description="Incident ids created from this reading.")


class TelemetryOut(BaseModel):
    id: str
    device_id: str = Field(..., alias="deviceId")
    timestamp: datetime
    received_at: Optional[datetime] = Field(default=None, alias="receivedAt")
    sensors: Dict[str, Any] = Field(default_factory=dict)
    gps: Optional[Dict[str, Any]] = None
    connectivity: Dict[str, Any] = Field(default_factory=dict)
    device_status: Dict[str, Any] = Field(default_factory=dict, alias="deviceStatus")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TelemetryListResponse(BaseModel):
    items: List[TelemetryOut] = Field(..., description="Telemetry records, newest first.")
    total: int = Field(..., ge=0, description="Total matching records (before pagination).")


class TelemetryStatsResponse(BaseModel):
    """Simple aggregation over a device's recent telemetry."""

    device_id: str = Field(..., alias="deviceId")
    hours: int
    count: int = 0
    avg_battery: Optional[float] = Field(default=None, alias="avgBattery")
    min_battery: Optional[float] = Field(default=None, alias="minBattery")
    max_battery: Optional[float] = Field(default=None, alias="maxBattery")
    first_seen: Optional[datetime] = Field(default=None, alias="firstSeen")
    last_seen: Optional[datetime] = Field(default=None, alias="lastSeen")


class GpsPoint(BaseModel):
    timestamp: datetime
    lat: float
    lon: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None


class GpsTrackResponse(BaseModel):
    device_id: str = Field(..., alias="deviceId")
    items: List[GpsPoint] = Field(..., description="Fixes in chronological order.")
    total: int = Field(..., ge=0)
