"""Narrow access to the external device registry (the ``users`` collection).

The registry is owned by the user/identity service. This module only reads ownership and push
tokens, and writes presence fields (lastSeen, isActive, lastLocation) and token pruning.
Writes are best-effort: failures are logged and never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from stickguard.db.mongo import to_mongo_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """An authenticated user as seen by the core."""

    user_id: str
    is_admin: bool = False
    device_ids: List[str] = field(default_factory=list)

    def can_access(self, device_id: str) -> bool:
        return self.is_admin or device_id in self.device_ids


class DeviceRegistry:
    def __init__(self, users: Collection):
        self._users = users

    # PUBLIC_INTERFACE
    def get_caller(self, user_id: str) -> Optional[Caller]:
        """Resolve a user id to a Caller; None if the user is unknown."""
        doc = self._users.find_one({"_id": user_id}, projection={"isAdmin": 1, "devices.deviceId": 1})
        if not doc:
            return None
        devices = [d.get("deviceId") for d in (doc.get("devices") or []) if d.get("deviceId")]
        return Caller(user_id=str(doc["_id"]), is_admin=bool(doc.get("isAdmin", False)), device_ids=devices)

    # PUBLIC_INTERFACE
    def tokens_for_device(self, device_id: str) -> List[str]:
        """Push tokens of every user that owns the device (deduplicated, stable order)."""
        tokens: List[str] = []
        for doc in self._users.find({"devices.deviceId": device_id}, projection={"fcmToken": 1}):
            token = doc.get("fcmToken")
            if token and token not in tokens:
                tokens.append(token)
        return tokens

    # PUBLIC_INTERFACE
    def touch_last_seen(self, device_id: str, seen_at: datetime, location: Optional[Dict[str, Any]] = None) -> bool:
        """Update lastSeen (and lastLocation when given) on every owner's device entry. Best-effort."""
        update: Dict[str, Any] = {"devices.$.lastSeen": to_mongo_datetime(seen_at)}
        if location is not None:
            update["devices.$.lastLocation"] = location
        return self._update_devices(device_id, update, "last-seen")

    # PUBLIC_INTERFACE
    def set_active(self, device_id: str, active: bool, seen_at: datetime) -> bool:
        update = {"devices.$.isActive": bool(active), "devices.$.lastSeen": to_mongo_datetime(seen_at)}
        return self._update_devices(device_id, update, "active-flag")

    # PUBLIC_INTERFACE
    def remove_token(self, token: str) -> int:
        """Unset a push token the provider reported as invalid. Best-effort; returns users touched."""
        try:
            res = self._users.update_many({"fcmToken": token}, {"$unset": {"fcmToken": ""}})
        except PyMongoError:
            logger.exception("Failed to prune invalid push token")
            return 0
        if res.modified_count:
            logger.info("Pruned invalid push token from %d user(s)", res.modified_count)
        return int(res.modified_count)

    def _update_devices(self, device_id: str, update: Dict[str, Any], what: str) -> bool:
        try:
            # Positional '$' targets the matched entry in each owner's devices array.
            self._users.update_many({"devices.deviceId": device_id}, {"$set": update})
            return True
        except Exception:
            logger.exception("Device registry %s update failed deviceId=%s", what, device_id)
            return False
