"""Incident lifecycle.

States: active -> acknowledged -> resolved (terminal). Escalation is orthogonal to status.

Every transition is a single conditional ``update_one`` so concurrent callers are serialized by
the store, not by in-process locks:
- acknowledge: append an entry; active becomes acknowledged; a resolved incident is a conflict
- resolve: only from a non-resolved status; a second resolve is a conflict and changes nothing
- escalate: any status; level clamped to 1..5; overwrites the previous escalation record

Authorization is the caller's job; nothing here checks who is asking.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.collection import Collection

from stickguard.db.mongo import mongo_now, to_mongo_datetime
from stickguard.errors import ConflictError, NotFoundError, ValidationError
from stickguard.schemas.common import Severity, as_utc
from stickguard.schemas.incidents import (
    AcknowledgmentOut,
    EmergencyType,
    EscalationOut,
    IncidentOut,
    IncidentStatsResponse,
    IncidentStatus,
    IncidentType,
    IncidentTypeStats,
    NOTIFIED_TYPES,
    NotificationOut,
    ResolutionOut,
    normalize_metadata,
)
from stickguard.services.device_registry import DeviceRegistry
from stickguard.services.notification_service import NotificationFanout
from stickguard.validation import GpsReading, SosIn, sanitize_text, validate_device_id, validate_sos

logger = logging.getLogger(__name__)

MIN_ESCALATION_LEVEL = 1
MAX_ESCALATION_LEVEL = 5


def _parse_oid(incident_id: str) -> ObjectId:
    try:
        return ObjectId(incident_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Incident not found") from None


# PUBLIC_INTERFACE
def clamp_escalation_level(level: Any) -> int:
    try:
        value = int(level)
    except (TypeError, ValueError):
        value = MIN_ESCALATION_LEVEL
    return max(MIN_ESCALATION_LEVEL, min(MAX_ESCALATION_LEVEL, value))


# PUBLIC_INTERFACE
def geo_point(gps: Optional[GpsReading]) -> Optional[Dict[str, Any]]:
    """GeoJSON point ([lon, lat]) for a reading with a fix; None otherwise."""
    if gps is None or not gps.has_fix():
        return None
    point: Dict[str, Any] = {"type": "Point", "coordinates": [float(gps.lon), float(gps.lat)]}
    if gps.accuracy is not None:
        point["accuracy"] = float(gps.accuracy)
    return point


def _sos_metadata(raw: Dict[str, Any]) -> Dict[str, Any]:
    """SOS metadata in storage form. Malformed known fields are kept under ``extra``, never rejected."""
    meta = dict(raw)
    extra: Dict[str, Any] = {}

    emergency_type = meta.pop("emergencyType", None) or EmergencyType.manual.value
    if not isinstance(emergency_type, str) or emergency_type not in EmergencyType._value2member_map_:
        extra["reportedEmergencyType"] = emergency_type
        emergency_type = EmergencyType.manual.value

    trigger = meta.pop("trigger", None)
    if isinstance(trigger, (int, float, bool)):
        trigger = str(trigger)
    elif trigger is not None and not isinstance(trigger, str):
        extra["trigger"] = trigger
        trigger = None

    sensor_data = meta.pop("sensorData", None) or {}
    if not isinstance(sensor_data, dict):
        extra["sensorData"] = sensor_data
        sensor_data = {}

    meta.update(extra)
    return {
        "kind": "sos",
        "emergencyType": emergency_type,
        "trigger": trigger,
        "sensorData": sensor_data,
        "extra": meta,
    }


def _doc_to_out(doc: dict) -> IncidentOut:
    notification = doc.get("notification") or {}
    resolution = doc.get("resolution")
    escalation = doc.get("escalation")
    return IncidentOut(
        id=str(doc["_id"]),
        type=doc["type"],
        deviceId=doc["deviceId"],
        userId=doc.get("userId"),
        timestamp=as_utc(doc["timestamp"]),
        severity=doc.get("severity", Severity.medium.value),
        status=doc.get("status", IncidentStatus.active.value),
        title=doc.get("title"),
        description=doc.get("description"),
        location=doc.get("location"),
        metadata=doc.get("metadata") or {},
        notification=NotificationOut(
            sent=bool(notification.get("sent", False)),
            timestamp=as_utc(notification.get("timestamp")),
            successCount=int(notification.get("successCount", 0)),
            failureCount=int(notification.get("failureCount", 0)),
            error=notification.get("error"),
        ),
        acknowledgments=[
            AcknowledgmentOut(userId=a["userId"], acknowledgedAt=as_utc(a["acknowledgedAt"]), note=a.get("note"))
            for a in (doc.get("acknowledgments") or [])
        ],
        resolution=(
            ResolutionOut(
                resolvedBy=resolution["resolvedBy"],
                resolvedAt=as_utc(resolution["resolvedAt"]),
                resolutionNote=resolution.get("resolutionNote"),
                actions=list(resolution.get("actions") or []),
            )
            if resolution
            else None
        ),
        escalation=(
            EscalationOut(
                escalatedTo=escalation["escalatedTo"],
                reason=escalation.get("reason"),
                level=clamp_escalation_level(escalation.get("level")),
                escalatedAt=as_utc(escalation["escalatedAt"]),
                escalatedBy=escalation.get("escalatedBy"),
            )
            if escalation
            else None
        ),
        createdAt=as_utc(doc["createdAt"]),
        updatedAt=as_utc(doc["updatedAt"]),
    )


class IncidentManager:
    def __init__(
        self,
        incidents: Collection,
        registry: DeviceRegistry,
        fanout: NotificationFanout,
    ):
        self._incidents = incidents
        self._registry = registry
        self._fanout = fanout

    # ---- Creation ----

    # PUBLIC_INTERFACE
    def create(
        self,
        incident_type: Union[IncidentType, str],
        device_id: str,
        severity: Union[Severity, str],
        metadata: Optional[Dict[str, Any]] = None,
        location: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        notify: Optional[bool] = None,
    ) -> IncidentOut:
        """
        Create an active incident.

        Types in NOTIFIED_TYPES are pushed to the device owners unless ``notify`` says otherwise.
        The push outcome is stored on the incident; a failed push never fails creation.
        """
        try:
            itype = IncidentType(incident_type)
            sev = Severity(severity)
        except ValueError as exc:
            raise ValidationError("Invalid incident", errors=[{"field": "type/severity", "message": str(exc)}]) from None
        validate_device_id(device_id)

        now = mongo_now()
        doc: Dict[str, Any] = {
            "type": itype.value,
            "deviceId": device_id,
            "userId": user_id,
            "timestamp": to_mongo_datetime(timestamp) if timestamp else now,
            "severity": sev.value,
            "status": IncidentStatus.active.value,
            "title": sanitize_text(title),
            "description": sanitize_text(description),
            "location": location,
            "metadata": normalize_metadata(itype, metadata),
            "notification": {"sent": False, "timestamp": None, "successCount": 0, "failureCount": 0, "error": None},
            "acknowledgments": [],
            "resolution": None,
            "escalation": None,
            "createdAt": now,
            "updatedAt": now,
        }
        res = self._incidents.insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info("Incident created id=%s type=%s deviceId=%s severity=%s", doc["_id"], itype.value, device_id, sev.value)

        should_notify = (itype in NOTIFIED_TYPES) if notify is None else bool(notify)
        if should_notify:
            doc["notification"] = self._notify(doc)
        return _doc_to_out(doc)

    def _notify(self, doc: dict) -> Dict[str, Any]:
        try:
            tokens = self._registry.tokens_for_device(doc["deviceId"])
            result = self._fanout.deliver(doc, tokens)
            record = result.to_record(mongo_now())
            for token in result.invalid_tokens:
                self._registry.remove_token(token)
        except Exception as exc:
            logger.exception("Notification fan-out failed incident=%s", doc.get("_id"))
            record = {
                "sent": False,
                "timestamp": mongo_now(),
                "successCount": 0,
                "failureCount": 0,
                "error": f"notification failed: {exc}",
            }

        try:
            self._incidents.update_one({"_id": doc["_id"]}, {"$set": {"notification": record}})
        except Exception:
            logger.exception("Failed to record notification outcome incident=%s", doc.get("_id"))
        return record

    # PUBLIC_INTERFACE
    def raise_sos(self, payload: Union[SosIn, Dict[str, Any]], *, user_id: Optional[str] = None) -> IncidentOut:
        """Create a critical SOS incident from a device/HTTP payload and notify the owners."""
        sos = payload if isinstance(payload, SosIn) else validate_sos(payload)
        location = geo_point(sos.gps)

        metadata = _sos_metadata(sos.metadata)
        logger.warning("SOS received deviceId=%s", sos.device_id)
        incident = self.create(
            IncidentType.SOS,
            sos.device_id,
            Severity.critical,
            metadata,
            location,
            user_id=user_id,
            title="SOS Emergency Alert",
            description=f"Emergency SOS triggered from device {sos.device_id}",
            timestamp=sos.timestamp,
        )
        self._registry.touch_last_seen(sos.device_id, mongo_now(), location=location)
        return incident

    # PUBLIC_INTERFACE
    def record_device_status(self, device_id: str, status: Dict[str, Any]) -> IncidentOut:
        """DEVICE_ONLINE (low) or DEVICE_OFFLINE (medium) from a device status report."""
        validate_device_id(device_id)
        online = bool(status.get("online", False))
        incident = self.create(
            IncidentType.DEVICE_ONLINE if online else IncidentType.DEVICE_OFFLINE,
            device_id,
            Severity.low if online else Severity.medium,
            {"kind": "device_status", "online": online, "deviceStatus": dict(status)},
            title=f"Device {'Online' if online else 'Offline'}",
            description=f"Device {device_id} is now {'online' if online else 'offline'}",
        )
        self._registry.set_active(device_id, online, mongo_now())
        return incident

    # ---- Transitions ----

    def _require_exists(self, oid: ObjectId) -> dict:
        doc = self._incidents.find_one({"_id": oid}, projection={"status": 1})
        if not doc:
            raise NotFoundError("Incident not found")
        return doc

    # PUBLIC_INTERFACE
    def acknowledge(self, incident_id: str, user_id: str, note: Optional[str] = None) -> IncidentOut:
        """Append an acknowledgment; active -> acknowledged. ConflictError once resolved."""
        oid = _parse_oid(incident_id)
        now = mongo_now()
        entry = {"userId": user_id, "acknowledgedAt": now, "note": sanitize_text(note) or None}

        res = self._incidents.update_one(
            {"_id": oid, "status": IncidentStatus.active.value},
            {
                "$set": {"status": IncidentStatus.acknowledged.value, "updatedAt": now},
                "$push": {"acknowledgments": entry},
            },
        )
        if res.matched_count == 0:
            res = self._incidents.update_one(
                {"_id": oid, "status": {"$ne": IncidentStatus.resolved.value}},
                {"$set": {"updatedAt": now}, "$push": {"acknowledgments": entry}},
            )
        if res.matched_count == 0:
            self._require_exists(oid)
            raise ConflictError("Incident is already resolved")

        logger.info("Incident acknowledged id=%s by=%s", incident_id, user_id)
        return self.get(incident_id)

    # PUBLIC_INTERFACE
    def resolve(
        self,
        incident_id: str,
        user_id: str,
        note: Optional[str] = None,
        actions: Optional[Sequence[str]] = None,
    ) -> IncidentOut:
        """Resolve (terminal). A second resolve raises ConflictError and leaves the first record intact."""
        oid = _parse_oid(incident_id)
        now = mongo_now()
        resolution = {
            "resolvedBy": user_id,
            "resolvedAt": now,
            "resolutionNote": sanitize_text(note) or None,
            "actions": [sanitize_text(a) for a in (actions or []) if isinstance(a, str) and a.strip()],
        }
        res = self._incidents.update_one(
            {"_id": oid, "status": {"$ne": IncidentStatus.resolved.value}},
            {"$set": {"status": IncidentStatus.resolved.value, "resolution": resolution, "updatedAt": now}},
        )
        if res.matched_count == 0:
            self._require_exists(oid)
            raise ConflictError("Incident is already resolved")

        logger.info("Incident resolved id=%s by=%s", incident_id, user_id)
        return self.get(incident_id)

    # PUBLIC_INTERFACE
    def escalate(
        self,
        incident_id: str,
        escalated_to: str,
        reason: Optional[str] = None,
        level: Any = 1,
        *,
        user_id: Optional[str] = None,
    ) -> IncidentOut:
        """Record (or overwrite) the escalation; allowed in any status."""
        oid = _parse_oid(incident_id)
        now = mongo_now()
        escalation = {
            "escalatedTo": sanitize_text(escalated_to),
            "reason": sanitize_text(reason) or None,
            "level": clamp_escalation_level(level),
            "escalatedAt": now,
            "escalatedBy": user_id,
        }
        res = self._incidents.update_one({"_id": oid}, {"$set": {"escalation": escalation, "updatedAt": now}})
        if res.matched_count == 0:
            raise NotFoundError("Incident not found")

        logger.warning("Incident escalated id=%s to=%s level=%d", incident_id, escalation["escalatedTo"], escalation["level"])
        return self.get(incident_id)

    # ---- Reads ----

    # PUBLIC_INTERFACE
    def get(self, incident_id: str) -> IncidentOut:
        doc = self._incidents.find_one({"_id": _parse_oid(incident_id)})
        if not doc:
            raise NotFoundError("Incident not found")
        return _doc_to_out(doc)

    # PUBLIC_INTERFACE
    def device_of(self, incident_id: str) -> str:
        """Device id of an incident (for caller-side authorization)."""
        doc = self._incidents.find_one({"_id": _parse_oid(incident_id)}, projection={"deviceId": 1})
        if not doc:
            raise NotFoundError("Incident not found")
        return str(doc["deviceId"])

    # PUBLIC_INTERFACE
    def list(
        self,
        *,
        device_ids: Optional[Sequence[str]] = None,
        incident_type: Optional[str] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[IncidentOut], int]:
        """
        Filtered, paginated incidents, newest first.

        ``device_ids`` scopes the query (None = every device; an empty list matches nothing).
        """
        q: Dict[str, Any] = {}
        if device_ids is not None:
            q["deviceId"] = {"$in": list(device_ids)}
        if incident_type:
            q["type"] = incident_type
        if status:
            q["status"] = status
        if severity:
            q["severity"] = severity
        if start or end:
            q["timestamp"] = {}
            if start:
                q["timestamp"]["$gte"] = to_mongo_datetime(start)
            if end:
                q["timestamp"]["$lte"] = to_mongo_datetime(end)

        total = self._incidents.count_documents(q)
        docs = list(self._incidents.find(q).sort("timestamp", -1).skip(int(offset)).limit(int(limit)))
        return [_doc_to_out(d) for d in docs], int(total)

    # PUBLIC_INTERFACE
    def active_by_device(self, device_id: str, incident_type: Optional[str] = None) -> List[IncidentOut]:
        """Unresolved (active or acknowledged) incidents of one device, newest first."""
        q: Dict[str, Any] = {
            "deviceId": device_id,
            "status": {"$in": [IncidentStatus.active.value, IncidentStatus.acknowledged.value]},
        }
        if incident_type:
            q["type"] = incident_type
        return [_doc_to_out(d) for d in self._incidents.find(q).sort("timestamp", -1)]

    # PUBLIC_INTERFACE
    def last_created_at(self, device_id: str, incident_type: str, since: datetime) -> Optional[datetime]:
        """Creation time of the newest (device, type) incident created at or after ``since``."""
        doc = self._incidents.find_one(
            {"deviceId": device_id, "type": incident_type, "createdAt": {"$gte": to_mongo_datetime(since)}},
            projection={"createdAt": 1},
            sort=[("createdAt", -1)],
        )
        return doc["createdAt"] if doc else None

    # PUBLIC_INTERFACE
    def statistics(self, hours: int = 24, device_ids: Optional[Sequence[str]] = None) -> IncidentStatsResponse:
        """Per-type counts over the last ``hours`` plus the mean SOS acknowledgment delay."""
        since = mongo_now() - timedelta(hours=int(hours))
        q: Dict[str, Any] = {"timestamp": {"$gte": since}}
        if device_ids is not None:
            q["deviceId"] = {"$in": list(device_ids)}

        per_type: Dict[str, IncidentTypeStats] = {}
        response_minutes: List[float] = []
        total = 0
        projection = {"type": 1, "severity": 1, "status": 1, "timestamp": 1, "acknowledgments": 1}
        for doc in self._incidents.find(q, projection=projection):
            total += 1
            itype = doc["type"]
            stats = per_type.setdefault(itype, IncidentTypeStats(type=itype))
            stats.count += 1
            if doc.get("severity") == Severity.critical.value:
                stats.critical += 1
            if doc.get("status") != IncidentStatus.resolved.value:
                stats.unresolved += 1
            acks = doc.get("acknowledgments") or []
            if itype == IncidentType.SOS.value and acks:
                delay = (acks[0]["acknowledgedAt"] - doc["timestamp"]).total_seconds() / 60.0
                response_minutes.append(max(0.0, delay))

        by_type = sorted(per_type.values(), key=lambda s: s.count, reverse=True)
        avg = round(sum(response_minutes) / len(response_minutes), 2) if response_minutes else None
        return IncidentStatsResponse(windowHours=int(hours), total=total, byType=by_type, avgSosResponseMinutes=avg)
