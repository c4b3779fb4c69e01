"""Telemetry alert rules and cooldown suppression.

Rules (each evaluated independently; one reading may yield several alerts):
- LOW_BATTERY: battery level < 20; high below 10, else medium
- OBSTACLE_DETECTED: min(left, right ultrasonic) < 30 cm; high below 15, else medium
- FALL_DETECTED: |acceleration| > 20; critical from 40 (twice the threshold), else high
- GPS_LOST: reading has no fix while the device's previous reading had one; medium

Suppression: a candidate is dropped when an incident of the same (device, type) was created
within that type's cooldown window. The check is read-then-insert without a lock, so two
near-simultaneous readings can both pass it; duplicates are possible in that race.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

from stickguard.config import AlertCooldowns
from stickguard.db.mongo import mongo_now
from stickguard.schemas.common import Severity
from stickguard.schemas.incidents import IncidentOut, IncidentType
from stickguard.services.incident_manager import IncidentManager, geo_point
from stickguard.validation import TelemetryIn

logger = logging.getLogger(__name__)

LOW_BATTERY_THRESHOLD = 20.0
CRITICAL_BATTERY_THRESHOLD = 10.0
OBSTACLE_THRESHOLD_CM = 30.0
NEAR_OBSTACLE_THRESHOLD_CM = 15.0
FALL_THRESHOLD = 20.0
SEVERE_FALL_THRESHOLD = 2 * FALL_THRESHOLD


@dataclass(frozen=True)
class AlertCandidate:
    type: IncidentType
    severity: Severity
    title: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def stored_has_fix(doc: Optional[Mapping[str, Any]]) -> bool:
    """Fix test for a stored telemetry document (mirrors GpsReading.has_fix)."""
    if not doc:
        return False
    gps = doc.get("gps") or {}
    return gps.get("lat") is not None and gps.get("lon") is not None and gps.get("fix") is not False


def _battery_rule(record: TelemetryIn) -> Optional[AlertCandidate]:
    battery = record.sensors.battery
    if battery is None or battery.level is None or battery.level >= LOW_BATTERY_THRESHOLD:
        return None
    level = battery.level
    return AlertCandidate(
        type=IncidentType.LOW_BATTERY,
        severity=Severity.high if level < CRITICAL_BATTERY_THRESHOLD else Severity.medium,
        title="Low Battery Warning",
        description=f"Device {record.device_id} battery level is {level:g}%",
        metadata={
            "kind": "alert",
            "alertValue": level,
            "alertThreshold": LOW_BATTERY_THRESHOLD,
            "sensorData": {"batteryLevel": level, "charging": battery.charging},
        },
    )


def _obstacle_rule(record: TelemetryIn) -> Optional[AlertCandidate]:
    s = record.sensors
    readings = [v for v in (s.ultrasonic_left, s.ultrasonic_right) if v is not None]
    if not readings:
        return None
    distance = min(readings)
    if distance >= OBSTACLE_THRESHOLD_CM:
        return None
    return AlertCandidate(
        type=IncidentType.OBSTACLE_DETECTED,
        severity=Severity.high if distance < NEAR_OBSTACLE_THRESHOLD_CM else Severity.medium,
        title="Obstacle Detected",
        description=f"Obstacle detected at {distance:g}cm from device {record.device_id}",
        metadata={
            "kind": "alert",
            "alertValue": distance,
            "alertThreshold": OBSTACLE_THRESHOLD_CM,
            "sensorData": {
                "ultrasonicLeft": s.ultrasonic_left,
                "ultrasonicRight": s.ultrasonic_right,
                "minDistance": distance,
            },
        },
    )


def _fall_rule(record: TelemetryIn) -> Optional[AlertCandidate]:
    imu = record.sensors.imu
    if imu is None or imu.accelerometer is None:
        return None
    a = imu.accelerometer
    magnitude = math.sqrt(a.x * a.x + a.y * a.y + a.z * a.z)
    if magnitude <= FALL_THRESHOLD:
        return None
    return AlertCandidate(
        type=IncidentType.FALL_DETECTED,
        severity=Severity.critical if magnitude >= SEVERE_FALL_THRESHOLD else Severity.high,
        title="Potential Fall Detected",
        description=f"Sudden impact detected on device {record.device_id} ({magnitude:.2f} m/s2)",
        metadata={
            "kind": "alert",
            "alertValue": round(magnitude, 3),
            "alertThreshold": FALL_THRESHOLD,
            "sensorData": {"accelerometer": {"x": a.x, "y": a.y, "z": a.z}, "magnitude": round(magnitude, 3)},
        },
    )


def _gps_rule(record: TelemetryIn, previous: Optional[Mapping[str, Any]]) -> Optional[AlertCandidate]:
    if record.gps is not None and record.gps.has_fix():
        return None
    if not stored_has_fix(previous):
        return None
    prev_gps = (previous or {}).get("gps") or {}
    return AlertCandidate(
        type=IncidentType.GPS_LOST,
        severity=Severity.medium,
        title="GPS Signal Lost",
        description=f"GPS signal lost for device {record.device_id}",
        metadata={
            "kind": "alert",
            "sensorData": {
                "current": record.gps.model_dump(exclude_none=True) if record.gps else {},
                "lastFix": {"lat": prev_gps.get("lat"), "lon": prev_gps.get("lon")},
            },
        },
    )


# PUBLIC_INTERFACE
def evaluate_telemetry(record: TelemetryIn, previous: Optional[Mapping[str, Any]] = None) -> List[AlertCandidate]:
    """
    Pure rule evaluation over one reading.

    ``previous`` is the device's most recent stored reading before this one (or None).
    """
    candidates = [_battery_rule(record), _obstacle_rule(record), _fall_rule(record), _gps_rule(record, previous)]
    return [c for c in candidates if c is not None]


class AlertRuleEngine:
    """Evaluates readings, applies per-type cooldowns and hands survivors to the incident manager."""

    def __init__(self, incidents: IncidentManager, cooldowns: AlertCooldowns):
        self._incidents = incidents
        self._cooldowns = cooldowns

    def is_suppressed(self, device_id: str, alert_type: IncidentType) -> bool:
        window = self._cooldowns.window_for(alert_type.value)
        if window <= 0:
            return False
        since = mongo_now() - timedelta(seconds=window)
        return self._incidents.last_created_at(device_id, alert_type.value, since) is not None

    # PUBLIC_INTERFACE
    def process(self, record: TelemetryIn, previous: Optional[Mapping[str, Any]] = None) -> List[IncidentOut]:
        """Evaluate a reading and create an incident for every candidate outside its cooldown."""
        created: List[IncidentOut] = []
        for candidate in evaluate_telemetry(record, previous):
            if self.is_suppressed(record.device_id, candidate.type):
                logger.debug("Alert suppressed by cooldown deviceId=%s type=%s", record.device_id, candidate.type.value)
                continue
            created.append(
                self._incidents.create(
                    candidate.type,
                    record.device_id,
                    candidate.severity,
                    candidate.metadata,
                    geo_point(record.gps),
                    title=candidate.title,
                    description=candidate.description,
                    timestamp=record.timestamp,
                )
            )
        return created
