"""Push notification fan-out.

One logical notification per incident, delivered to every recipient token independently:
a failing token never blocks the remaining ones. Results carry per-token failure reasons and a
``remove_token`` flag for tokens the provider reported as invalid, so the caller can prune them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "push notifications not configured"

FIREBASE_APP_NAME = "stickguard"
ANDROID_CHANNEL_ID = "smartstick_emergency"

# Failure reasons for tokens the provider will never accept again.
TOKEN_NOT_REGISTERED = "registration-token-not-registered"
TOKEN_INVALID = "invalid-registration-token"


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: Optional[str] = None
    remove_token: bool = False
    message_id: Optional[str] = None


class PushSender(Protocol):
    def send(self, token: str, message: PushMessage) -> SendResult: ...


class FcmPushSender:
    """Firebase Cloud Messaging sender (Admin SDK, HTTP v1), one ``messaging.send`` per token."""

    def __init__(
        self,
        service_account: Optional[str],
        timeout: float = 5.0,
        app: Optional[firebase_admin.App] = None,
        app_name: str = FIREBASE_APP_NAME,
    ):
        self._service_account = service_account
        self._timeout = float(timeout)
        self._app = app
        self._app_name = app_name
        self._lock = threading.Lock()

    def _firebase_app(self) -> Optional[firebase_admin.App]:
        if self._app is not None or not self._service_account:
            return self._app
        with self._lock:
            if self._app is None:
                try:
                    self._app = firebase_admin.get_app(self._app_name)
                except ValueError:
                    self._app = firebase_admin.initialize_app(
                        credentials.Certificate(self._service_account),
                        options={"httpTimeout": self._timeout},
                        name=self._app_name,
                    )
                    logger.info("Firebase app initialized name=%s", self._app_name)
        return self._app

    def send(self, token: str, message: PushMessage) -> SendResult:
        app = self._firebase_app()
        if app is None:
            return SendResult(ok=False, error=NOT_CONFIGURED)

        msg = messaging.Message(
            token=token,
            notification=messaging.Notification(title=message.title, body=message.body),
            data=dict(message.data),
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(sound="default", channel_id=ANDROID_CHANNEL_ID),
            ),
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1))),
        )
        try:
            message_id = messaging.send(msg, app=app)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as exc:
            logger.info("FCM token no longer valid: %s", exc)
            return SendResult(ok=False, error=TOKEN_NOT_REGISTERED, remove_token=True)
        except exceptions.InvalidArgumentError as exc:
            logger.info("FCM rejected token as invalid: %s", exc)
            return SendResult(ok=False, error=TOKEN_INVALID, remove_token=True)
        except exceptions.FirebaseError as exc:
            logger.warning("FCM send failed code=%s: %s", exc.code, exc)
            return SendResult(ok=False, error=f"{exc.code}: {exc}")
        return SendResult(ok=True, message_id=message_id)


@dataclass(frozen=True)
class TokenFailure:
    token: str
    reason: str
    remove_token: bool = False


@dataclass
class FanoutResult:
    success_count: int = 0
    failure_count: int = 0
    failures: List[TokenFailure] = field(default_factory=list)

    @property
    def invalid_tokens(self) -> List[str]:
        return [f.token for f in self.failures if f.remove_token]

    def to_record(self, at: datetime) -> Dict[str, Any]:
        """Storage form of the outcome, kept on the incident for audit."""
        error = None
        if self.failures:
            reasons = sorted({f.reason for f in self.failures})
            error = "; ".join(reasons)
        return {
            "sent": self.success_count > 0,
            "timestamp": at,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "error": error,
        }


def _coord(value: Any) -> str:
    return "" if value is None else str(value)


# PUBLIC_INTERFACE
def build_push_message(incident: Mapping[str, Any]) -> PushMessage:
    """Title, body and string-only data payload for an incident document."""
    itype = str(incident.get("type"))
    device_id = str(incident.get("deviceId"))
    metadata = incident.get("metadata") or {}

    lat = lon = None
    coords = (incident.get("location") or {}).get("coordinates")
    if coords and len(coords) == 2:
        lon, lat = coords[0], coords[1]

    data = {
        "type": itype,
        "deviceId": device_id,
        "incidentId": str(incident.get("_id") or ""),
        "severity": str(incident.get("severity") or ""),
        "latitude": _coord(lat),
        "longitude": _coord(lon),
    }

    if itype == "SOS":
        data["alertType"] = "emergency"
        data["emergencyType"] = str(metadata.get("emergencyType") or "manual")
        return PushMessage(
            title="Smart Stick Emergency Alert",
            body=f"Emergency alert from device {device_id}. Immediate assistance required.",
            data=data,
        )

    data["alertType"] = itype
    title = incident.get("title") or itype.replace("_", " ").title()
    body = incident.get("description") or f"{title} on device {device_id}."
    return PushMessage(title=str(title), body=str(body), data=data)


class NotificationFanout:
    def __init__(self, sender: PushSender):
        self._sender = sender

    # PUBLIC_INTERFACE
    def deliver(self, incident: Mapping[str, Any], tokens: Sequence[str]) -> FanoutResult:
        """Deliver the incident's notification to each token. Zero tokens is a valid, empty result."""
        result = FanoutResult()
        if not tokens:
            return result

        message = build_push_message(incident)
        for token in tokens:
            try:
                outcome = self._sender.send(token, message)
            except Exception as exc:
                logger.exception("Push sender raised for incident=%s", incident.get("_id"))
                outcome = SendResult(ok=False, error=f"sender error: {exc}")

            if outcome.ok:
                result.success_count += 1
                continue
            result.failure_count += 1
            result.failures.append(
                TokenFailure(token=token, reason=outcome.error or "unknown error", remove_token=outcome.remove_token)
            )

        if result.failure_count:
            logger.warning(
                "Notification fan-out partial failure incident=%s ok=%d failed=%d",
                incident.get("_id"),
                result.success_count,
                result.failure_count,
            )
        else:
            logger.info("Notification fan-out incident=%s delivered=%d", incident.get("_id"), result.success_count)
        return result
