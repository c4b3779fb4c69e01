from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from pymongo.collection import Collection

from stickguard.db.mongo import mongo_now, to_mongo_datetime
from stickguard.errors import NotFoundError
from stickguard.schemas.common import as_utc
from stickguard.schemas.telemetry import GpsPoint, TelemetryOut, TelemetryStatsResponse
from stickguard.services.alert_engine import AlertRuleEngine
from stickguard.services.device_registry import DeviceRegistry
from stickguard.services.incident_manager import geo_point
from stickguard.validation import TelemetryIn, validate_device_id, validate_telemetry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    id: str
    device_id: str
    timestamp: datetime
    alert_ids: List[str] = field(default_factory=list)


def _doc_to_out(doc: dict) -> TelemetryOut:
    return TelemetryOut(
        id=str(doc["_id"]),
        deviceId=doc["deviceId"],
        timestamp=as_utc(doc["timestamp"]),
        receivedAt=as_utc(doc.get("receivedAt")),
        sensors=doc.get("sensors") or {},
        gps=doc.get("gps"),
        connectivity=doc.get("connectivity") or {},
        deviceStatus=doc.get("deviceStatus") or {},
        metadata=doc.get("metadata") or {},
    )


def _time_range(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    rng: Dict[str, Any] = {}
    if start:
        rng["$gte"] = to_mongo_datetime(start)
    if end:
        rng["$lte"] = to_mongo_datetime(end)
    return rng


class TelemetryIngestor:
    """Validates and stores readings, refreshes presence, then runs the alert rules."""

    def __init__(self, telemetry: Collection, registry: DeviceRegistry, engine: AlertRuleEngine):
        self._telemetry = telemetry
        self._registry = registry
        self._engine = engine

    # PUBLIC_INTERFACE
    def ingest(self, payload: Union[TelemetryIn, Dict[str, Any]]) -> IngestResult:
        """
        Store one reading. Raises ValidationError (nothing stored) on bad input.

        Every accepted reading becomes a new record. Presence updates and alert evaluation
        are best-effort: their failures are logged, the reading stays stored.
        """
        record = payload if isinstance(payload, TelemetryIn) else validate_telemetry(payload)
        received_at = mongo_now()
        ts = to_mongo_datetime(record.timestamp) if record.timestamp else received_at

        previous = self._telemetry.find_one(
            {"deviceId": record.device_id, "timestamp": {"$lt": ts}},
            projection={"gps": 1, "timestamp": 1},
            sort=[("timestamp", -1)],
        )

        doc: Dict[str, Any] = {
            "deviceId": record.device_id,
            "timestamp": ts,
            "receivedAt": received_at,
            "sensors": record.sensors.model_dump(by_alias=True, exclude_none=True),
            "gps": record.gps.model_dump(exclude_none=True) if record.gps else None,
            "connectivity": record.connectivity,
            "deviceStatus": record.device_status,
            "metadata": record.metadata,
        }
        res = self._telemetry.insert_one(doc)
        logger.debug("Telemetry stored id=%s deviceId=%s", res.inserted_id, record.device_id)

        self._registry.touch_last_seen(record.device_id, received_at, location=geo_point(record.gps))

        # Rules see the stored timestamp, not the possibly-absent device one.
        evaluated = record.model_copy(update={"timestamp": ts})
        alert_ids: List[str] = []
        try:
            alert_ids = [i.id for i in self._engine.process(evaluated, previous)]
        except Exception:
            logger.exception("Alert evaluation failed deviceId=%s telemetry=%s", record.device_id, res.inserted_id)

        return IngestResult(id=str(res.inserted_id), device_id=record.device_id, timestamp=as_utc(ts), alert_ids=alert_ids)

    # PUBLIC_INTERFACE
    def latest(self, device_id: str) -> TelemetryOut:
        validate_device_id(device_id)
        doc = self._telemetry.find_one({"deviceId": device_id}, sort=[("timestamp", -1)])
        if not doc:
            raise NotFoundError("No telemetry data found for device")
        return _doc_to_out(doc)

    # PUBLIC_INTERFACE
    def history(
        self,
        device_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        with_gps: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[TelemetryOut], int]:
        validate_device_id(device_id)
        q: Dict[str, Any] = {"deviceId": device_id}
        rng = _time_range(start, end)
        if rng:
            q["timestamp"] = rng
        if with_gps:
            q["gps.lat"] = {"$exists": True, "$ne": None}
            q["gps.lon"] = {"$exists": True, "$ne": None}

        total = self._telemetry.count_documents(q)
        docs = list(self._telemetry.find(q).sort("timestamp", -1).skip(int(offset)).limit(int(limit)))
        return [_doc_to_out(d) for d in docs], int(total)

    # PUBLIC_INTERFACE
    def stats(self, device_id: str, hours: int = 24) -> TelemetryStatsResponse:
        """Count and battery min/avg/max over the last ``hours``."""
        validate_device_id(device_id)
        since = mongo_now() - timedelta(hours=int(hours))
        cursor = self._telemetry.find(
            {"deviceId": device_id, "timestamp": {"$gte": since}},
            projection={"timestamp": 1, "sensors.battery.level": 1},
        )

        count = 0
        levels: List[float] = []
        first: Optional[datetime] = None
        last: Optional[datetime] = None
        for doc in cursor:
            count += 1
            ts = doc["timestamp"]
            first = ts if first is None or ts < first else first
            last = ts if last is None or ts > last else last
            level = ((doc.get("sensors") or {}).get("battery") or {}).get("level")
            if level is not None:
                levels.append(float(level))

        return TelemetryStatsResponse(
            deviceId=device_id,
            hours=int(hours),
            count=count,
            avgBattery=round(sum(levels) / len(levels), 2) if levels else None,
            minBattery=min(levels) if levels else None,
            maxBattery=max(levels) if levels else None,
            firstSeen=as_utc(first),
            lastSeen=as_utc(last),
        )

    # PUBLIC_INTERFACE
    def gps_track(
        self,
        device_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000,
    ) -> List[GpsPoint]:
        """Fixes in chronological order (the newest ``limit`` of them)."""
        validate_device_id(device_id)
        q: Dict[str, Any] = {
            "deviceId": device_id,
            "gps.lat": {"$exists": True, "$ne": None},
            "gps.lon": {"$exists": True, "$ne": None},
        }
        rng = _time_range(start, end)
        if rng:
            q["timestamp"] = rng

        docs = list(self._telemetry.find(q, projection={"timestamp": 1, "gps": 1}).sort("timestamp", -1).limit(int(limit)))
        points: List[GpsPoint] = []
        for doc in reversed(docs):
            gps = doc["gps"]
            if gps.get("fix") is False:
                continue
            points.append(
                GpsPoint(
                    timestamp=as_utc(doc["timestamp"]),
                    lat=gps["lat"],
                    lon=gps["lon"],
                    accuracy=gps.get("accuracy"),
                    speed=gps.get("speed"),
                    heading=gps.get("heading"),
                )
            )
        return points
