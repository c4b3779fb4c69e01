from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


DEFAULT_DB_NAME = "stickguard"


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    telemetry: Collection
    incidents: Collection
    command_dispatches: Collection

    # Device registry owned by the user/identity service; read here, plus last-seen writes.
    users: Collection


# PUBLIC_INTERFACE
def to_mongo_datetime(dt: datetime) -> datetime:
    """
    Normalize a datetime for storage: naive UTC, millisecond precision.

    BSON dates carry milliseconds and no zone, so this keeps what we write equal to what we read.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


# PUBLIC_INTERFACE
def mongo_now() -> datetime:
    """Current time in storage form."""
    return to_mongo_datetime(datetime.now(timezone.utc))


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the app's storage DB. A pre-built client may be injected
    (tests pass an in-memory pymongo-compatible client).
    """

    def __init__(self, mongo_uri: str, db_name: str = DEFAULT_DB_NAME, client: Optional[Any] = None):
        self._mongo_uri = mongo_uri
        self._db_name = db_name
        self._client: Optional[Any] = client
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize the Mongo client if needed."""
        with self._lock:
            if self._client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling. Collection handles are
            # built at app creation; the first real round-trip is the startup ping.
            self._client = MongoClient(self._mongo_uri, connect=False)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._client is None:
                self.connect_app()
            assert self._client is not None
            self._client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        """Close the Mongo client."""
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                except Exception:
                    logger.exception("Error closing MongoClient")
                self._client = None

    def app_db(self) -> Database:
        """Return the application database handle."""
        if self._client is None:
            self.connect_app()
        assert self._client is not None
        return self._client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(
            telemetry=db["telemetry"],
            incidents=db["incidents"],
            command_dispatches=db["command_dispatches"],
            users=db["users"],
        )

    def init_indexes(self, *, telemetry_ttl_seconds: int = 0, resolved_incident_ttl_seconds: int = 0) -> None:
        """
        Create required indexes (idempotent).

        TTL behavior:
        - telemetry_ttl_seconds == 0 disables TTL index creation on telemetry.timestamp
        - resolved_incident_ttl_seconds == 0 disables TTL on incidents.resolution.resolvedAt

        Incidents that were never resolved have no resolution.resolvedAt and are never expired
        by the TTL monitor.
        """
        cols = self.collections()

        # ---- Telemetry ----
        cols.telemetry.create_index([("deviceId", ASCENDING), ("timestamp", DESCENDING)], name="idx_device_ts")
        cols.telemetry.create_index([("deviceId", ASCENDING), ("receivedAt", DESCENDING)], name="idx_device_received")
        if int(telemetry_ttl_seconds) > 0:
            cols.telemetry.create_index(
                [("timestamp", ASCENDING)],
                name="ttl_telemetry_ts",
                expireAfterSeconds=int(telemetry_ttl_seconds),
            )

        # ---- Incidents ----
        cols.incidents.create_index([("deviceId", ASCENDING), ("timestamp", DESCENDING)], name="idx_incidents_device_ts")
        # Cooldown lookup: latest incident of a type for a device, by server creation time.
        cols.incidents.create_index(
            [("deviceId", ASCENDING), ("type", ASCENDING), ("createdAt", DESCENDING)],
            name="idx_incidents_device_type_created",
        )
        cols.incidents.create_index([("status", ASCENDING), ("timestamp", DESCENDING)], name="idx_incidents_status_ts")
        cols.incidents.create_index([("severity", ASCENDING), ("status", ASCENDING)], name="idx_incidents_severity_status")
        if int(resolved_incident_ttl_seconds) > 0:
            cols.incidents.create_index(
                [("resolution.resolvedAt", ASCENDING)],
                name="ttl_incidents_resolved_at",
                expireAfterSeconds=int(resolved_incident_ttl_seconds),
            )

        # ---- Command dispatches ----
        cols.command_dispatches.create_index([("messageId", ASCENDING)], name="idx_dispatch_message")
        cols.command_dispatches.create_index(
            [("deviceId", ASCENDING), ("timestamp", DESCENDING)],
            name="idx_dispatch_device_ts",
        )

        # ---- Registry lookups ----
        cols.users.create_index([("devices.deviceId", ASCENDING)], name="idx_users_device")
