"""MQTT transport router.

One paho-mqtt client per process. paho's network thread only enqueues inbound messages into a
bounded ``InboundQueue``; ``dispatch_loop`` drains the queue and runs handlers.

Routing is an ordered rule table: a message goes to the FIRST registered route whose pattern
matches its topic (registration order), and to no other route.

Connection states:
    DISCONNECTED -> CONNECTING -> CONNECTED <-> RECONNECTING -> PERMANENTLY_DISCONNECTED
paho retries with exponential backoff between ``reconnect_min_delay_sec`` and
``reconnect_max_delay_sec``; after ``reconnect_max_attempts`` failed attempts the router gives
up and stays in PERMANENTLY_DISCONNECTED.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt

from stickguard.config import MqttSettings
from stickguard.errors import NotConnectedError, TransportConnectionError, ValidationError
from stickguard.transport.inbound import InboundMessage, InboundQueue, MessageParseError
from stickguard.transport.topics import topic_matches, validate_pattern

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Any]


class ConnectionState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    reconnecting = "reconnecting"
    permanently_disconnected = "permanently_disconnected"


@dataclass(frozen=True)
class Route:
    pattern: str
    handler: MessageHandler
    qos: int = 1


@dataclass(frozen=True)
class PublishResult:
    """Outcome of a publish; a failure is a value, not an exception."""

    ok: bool
    topic: str
    mid: Optional[int] = None
    error: Optional[str] = None


def _rc_int(rc: Any) -> int:
    # paho 2.x hands ReasonCode objects to callbacks; older paths use plain ints.
    try:
        return int(getattr(rc, "value", rc))
    except Exception:
        return -1


def _default_client_factory(settings: MqttSettings) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=settings.client_id,
        protocol=mqtt.MQTTv311,
    )


def _encode_payload(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, default=str, separators=(",", ":")).encode("utf-8")


class TransportRouter:
    """Owns the broker connection, the route table and the inbound queue."""

    def __init__(
        self,
        settings: MqttSettings,
        client_factory: Optional[Callable[[MqttSettings], Any]] = None,
        queue: Optional[InboundQueue] = None,
    ):
        self._settings = settings
        self._client_factory = client_factory or _default_client_factory
        self._queue = queue or InboundQueue(max_size=settings.queue_max_size, drop_oldest=settings.drop_oldest)

        self._lock = threading.RLock()
        self._routes: List[Route] = []
        self._client: Optional[Any] = None
        self._state = ConnectionState.disconnected
        self._reconnect_attempts = 0
        self._closing = False
        self._settled = threading.Event()

    # ---- Introspection ----

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.connected

    @property
    def queue(self) -> InboundQueue:
        return self._queue

    @property
    def topic_root(self) -> str:
        return self._settings.topic_root

    def routes(self) -> List[str]:
        with self._lock:
            return [r.pattern for r in self._routes]

    def status(self) -> Dict[str, Any]:
        """Snapshot for health endpoints."""
        with self._lock:
            return {
                "state": self._state.value,
                "connected": self._state == ConnectionState.connected,
                "broker": f"{self._settings.host}:{self._settings.port}",
                "clientId": self._settings.client_id,
                "routes": [r.pattern for r in self._routes],
                "reconnectAttempts": self._reconnect_attempts,
                "maxReconnectAttempts": self._settings.reconnect_max_attempts,
                "queue": self._queue.stats(),
            }

    # ---- Connection lifecycle ----

    # PUBLIC_INTERFACE
    def connect(self, timeout: Optional[float] = None) -> None:
        """
        Connect to the broker and (re)subscribe every registered route.

        Blocks until the broker accepts the connection. Raises TransportConnectionError when that
        does not happen within ``timeout`` (default: settings.connect_timeout_sec); the background
        network loop is stopped in that case.
        """
        timeout = self._settings.connect_timeout_sec if timeout is None else float(timeout)
        with self._lock:
            if self._state == ConnectionState.connected:
                return
            self._closing = False
            self._reconnect_attempts = 0
            self._settled.clear()
            self._state = ConnectionState.connecting
            client = self._client = self._build_client()

        logger.info("Connecting to MQTT broker host=%s port=%s", self._settings.host, self._settings.port)
        try:
            client.connect_async(self._settings.host, self._settings.port, keepalive=self._settings.keepalive_sec)
            client.loop_start()
        except Exception as exc:
            with self._lock:
                self._state = ConnectionState.disconnected
            raise TransportConnectionError(f"MQTT connect failed: {exc}") from exc

        self._settled.wait(timeout)
        with self._lock:
            state = self._state
        if state == ConnectionState.connected:
            return

        self._stop_client(client)
        with self._lock:
            if self._state != ConnectionState.permanently_disconnected:
                self._state = ConnectionState.disconnected
        if state == ConnectionState.permanently_disconnected:
            raise TransportConnectionError("MQTT broker refused the connection; retry limit reached")
        raise TransportConnectionError(f"MQTT connection timeout after {timeout:.1f}s")

    # PUBLIC_INTERFACE
    def disconnect(self) -> None:
        """Close the connection on purpose; no reconnect follows."""
        with self._lock:
            client = self._client
            self._closing = True
            self._state = ConnectionState.disconnected
        if client is not None:
            self._stop_client(client)
        logger.info("MQTT router disconnected")

    def _build_client(self) -> Any:
        client = self._client_factory(self._settings)
        if self._settings.username:
            client.username_pw_set(self._settings.username, self._settings.password)
        client.reconnect_delay_set(
            min_delay=self._settings.reconnect_min_delay_sec,
            max_delay=self._settings.reconnect_max_delay_sec,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_connect_fail = self._on_connect_fail
        client.on_message = self._on_message
        return client

    def _stop_client(self, client: Any) -> None:
        try:
            client.disconnect()
        except Exception:
            logger.exception("Error disconnecting MQTT client")
        try:
            client.loop_stop()
        except Exception:
            logger.exception("Error stopping MQTT network loop")

    # ---- paho callbacks (network thread) ----

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        rc = _rc_int(reason_code)
        if rc != 0:
            logger.error("MQTT broker refused connection rc=%s", rc)
            self._count_failed_attempt(client)
            return

        with self._lock:
            was_reconnecting = self._state == ConnectionState.reconnecting
            self._state = ConnectionState.connected
            self._reconnect_attempts = 0
            patterns = self._unique_patterns()
        logger.info("MQTT connected%s", " (reconnected)" if was_reconnecting else "")

        for pattern, qos in patterns:
            result, _mid = client.subscribe(pattern, qos=qos)
            if _rc_int(result) != 0:
                logger.warning("MQTT resubscribe failed pattern=%s rc=%s", pattern, result)
            else:
                logger.info("MQTT subscribed pattern=%s", pattern)
        self._settled.set()

    def _on_disconnect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        with self._lock:
            if self._closing or self._state == ConnectionState.permanently_disconnected:
                return
            if self._state == ConnectionState.connected:
                self._state = ConnectionState.reconnecting
                self._reconnect_attempts = 0
                logger.warning("MQTT connection lost rc=%s; reconnecting", _rc_int(reason_code))

    def _on_connect_fail(self, client: Any, userdata: Any) -> None:
        logger.warning("MQTT connection attempt failed")
        self._count_failed_attempt(client)

    def _count_failed_attempt(self, client: Any) -> None:
        with self._lock:
            if self._closing or self._state == ConnectionState.permanently_disconnected:
                return
            self._reconnect_attempts += 1
            attempts = self._reconnect_attempts
            give_up = attempts >= self._settings.reconnect_max_attempts
            if give_up:
                self._state = ConnectionState.permanently_disconnected
            elif self._state == ConnectionState.connected:
                self._state = ConnectionState.reconnecting

        if not give_up:
            logger.info("MQTT reconnect attempt %d/%d", attempts, self._settings.reconnect_max_attempts)
            return

        logger.error("MQTT reconnect limit reached (%d attempts); giving up", attempts)
        self._stop_client(client)
        self._settled.set()

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        self._queue.put(
            InboundMessage(
                topic=str(message.topic),
                payload=bytes(message.payload or b""),
                qos=int(getattr(message, "qos", 1) or 0),
            )
        )

    # ---- Routing ----

    def _unique_patterns(self) -> List[tuple]:
        seen: Dict[str, int] = {}
        for r in self._routes:
            seen[r.pattern] = max(seen.get(r.pattern, 0), r.qos)
        return list(seen.items())

    # PUBLIC_INTERFACE
    def add_route(self, pattern: str, handler: MessageHandler, qos: int = 1) -> None:
        """Register a route without subscribing; it is subscribed on the next (re)connect."""
        validate_pattern(pattern)
        with self._lock:
            self._routes.append(Route(pattern=pattern, handler=handler, qos=max(1, min(2, int(qos)))))

    # PUBLIC_INTERFACE
    def subscribe(self, pattern: str, handler: MessageHandler, qos: int = 1) -> bool:
        """
        Register a route and subscribe it on the live connection.

        Raises NotConnectedError when the router is not connected. Returns True when the broker
        accepted the subscription request.
        """
        validate_pattern(pattern)
        with self._lock:
            if self._state != ConnectionState.connected or self._client is None:
                raise NotConnectedError("MQTT client not connected")
            route = Route(pattern=pattern, handler=handler, qos=max(1, min(2, int(qos))))
            self._routes.append(route)
            client = self._client

        result, _mid = client.subscribe(pattern, qos=route.qos)
        ok = _rc_int(result) == 0
        if ok:
            logger.info("MQTT subscribed pattern=%s", pattern)
        else:
            logger.warning("MQTT subscribe failed pattern=%s rc=%s", pattern, result)
        return ok

    # PUBLIC_INTERFACE
    def publish(self, topic: str, payload: Any, qos: int = 1, retain: bool = False) -> PublishResult:
        """
        Publish a message (dicts/lists are JSON-encoded). QoS below 1 is raised to 1.

        Raises NotConnectedError when disconnected; every other failure is returned in the result.
        """
        with self._lock:
            if self._state != ConnectionState.connected or self._client is None:
                raise NotConnectedError("MQTT client not connected")
            client = self._client

        try:
            info = client.publish(topic, _encode_payload(payload), qos=max(1, min(2, int(qos))), retain=retain)
        except Exception as exc:
            logger.exception("MQTT publish raised topic=%s", topic)
            return PublishResult(ok=False, topic=topic, error=str(exc))

        rc = _rc_int(getattr(info, "rc", -1))
        mid = getattr(info, "mid", None)
        if rc != 0:
            logger.error("MQTT publish failed topic=%s rc=%s", topic, rc)
            return PublishResult(ok=False, topic=topic, mid=mid, error=f"publish failed rc={rc}")
        logger.debug("MQTT published topic=%s mid=%s", topic, mid)
        return PublishResult(ok=True, topic=topic, mid=mid)

    def match(self, topic: str) -> Optional[Route]:
        """First route (registration order) whose pattern matches the topic."""
        with self._lock:
            routes = list(self._routes)
        for route in routes:
            if topic_matches(route.pattern, topic):
                return route
        return None

    # PUBLIC_INTERFACE
    def dispatch(self, message: InboundMessage) -> bool:
        """
        Run the handler of the first matching route.

        Handler failures are logged and dropped. Returns True when a handler completed.
        """
        route = self.match(message.topic)
        if route is None:
            logger.debug("No route for topic=%s; dropped", message.topic)
            return False
        try:
            route.handler(message)
            return True
        except MessageParseError as exc:
            logger.warning("Dropped unparseable message: %s", exc)
        except ValidationError as exc:
            logger.warning("Dropped invalid message topic=%s detail=%s errors=%s", message.topic, exc.detail, exc.errors)
        except Exception:
            logger.exception("Handler failed for topic=%s", message.topic)
        return False

    def dispatch_next(self, timeout: float = 0.5) -> bool:
        """Take one message off the inbound queue and dispatch it. False if the queue stayed empty."""
        message = self._queue.get(timeout=timeout)
        if message is None:
            return False
        self.dispatch(message)
        return True


# PUBLIC_INTERFACE
async def dispatch_loop(router: TransportRouter, shutdown_event: asyncio.Event, poll_interval: float = 0.5) -> None:
    """Drain the inbound queue until shutdown_event is set. Handlers run in a worker thread."""
    logger.info("MQTT dispatch loop started")
    while not shutdown_event.is_set():
        try:
            await asyncio.to_thread(router.dispatch_next, poll_interval)
        except Exception:
            logger.exception("MQTT dispatch loop iteration failed")
            await asyncio.sleep(poll_interval)
    logger.info("MQTT dispatch loop stopped")
