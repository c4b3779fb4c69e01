from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import httpx
import mongomock
import pytest

from stickguard.config import AlertCooldowns, BackendConfig, MqttSettings
from stickguard.services.notification_service import TOKEN_NOT_REGISTERED, PushMessage, SendResult

DB_NAME = "stickguard_test"


class FakeMqttClient:
    """
    Stand-in for paho.mqtt.client.Client.

    ``mode`` controls what happens on loop_start():
      - "accept": the broker accepts immediately (on_connect rc=0)
      - "refuse": the broker refuses (on_connect rc=5)
      - "silent": nothing happens (connect times out)
    """

    def __init__(self, mode: str = "accept"):
        self.mode = mode
        self.on_connect = None
        self.on_disconnect = None
        self.on_connect_fail = None
        self.on_message = None

        self.credentials: Optional[Tuple[str, Optional[str]]] = None
        self.reconnect_delay: Optional[Tuple[int, int]] = None
        self.target: Optional[Tuple[str, int, int]] = None
        self.subscriptions: List[Tuple[str, int]] = []
        self.published: List[Dict[str, Any]] = []
        self.publish_rc = 0
        self.loop_running = False

    # ---- paho surface ----

    def username_pw_set(self, username: str, password: Optional[str] = None) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay: int = 1, max_delay: int = 120) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    def connect_async(self, host: str, port: int = 1883, keepalive: int = 60) -> None:
        self.target = (host, port, keepalive)

    def loop_start(self) -> None:
        self.loop_running = True
        if self.mode == "accept":
            self.on_connect(self, None, {}, 0, None)
        elif self.mode == "refuse":
            self.on_connect(self, None, {}, 5, None)

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        pass

    def subscribe(self, topic: str, qos: int = 0) -> Tuple[int, int]:
        self.subscriptions.append((topic, qos))
        return 0, len(self.subscriptions)

    def publish(self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False) -> SimpleNamespace:
        self.published.append({"topic": topic, "payload": payload, "qos": qos, "retain": retain})
        return SimpleNamespace(rc=self.publish_rc, mid=len(self.published))

    # ---- test helpers (simulate the network thread) ----

    def deliver(self, topic: str, payload: bytes, qos: int = 1) -> None:
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload, qos=qos))

    def drop_connection(self, rc: int = 7) -> None:
        self.on_disconnect(self, None, {}, rc, None)

    def fail_attempt(self) -> None:
        self.on_connect_fail(self, None)


class FakeBroker:
    """Client factory handed to the transport router; remembers every client it built."""

    def __init__(self, mode: str = "accept"):
        self.mode = mode
        self.clients: List[FakeMqttClient] = []

    def __call__(self, settings: MqttSettings) -> FakeMqttClient:
        client = FakeMqttClient(self.mode)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeMqttClient:
        return self.clients[-1]


class RecordingPushSender:
    """Push sender that records every delivery; tokens in ``invalid_tokens`` fail as unregistered."""

    def __init__(self):
        self.sent: List[Tuple[str, PushMessage]] = []
        self.invalid_tokens: set = set()

    def send(self, token: str, message: PushMessage) -> SendResult:
        self.sent.append((token, message))
        if token in self.invalid_tokens:
            return SendResult(ok=False, error=TOKEN_NOT_REGISTERED, remove_token=True)
        return SendResult(ok=True, message_id=f"push-{len(self.sent)}")


def make_config(**mqtt_overrides: Any) -> BackendConfig:
    mqtt_settings = {
        "client_id": "stickguard-test",
        "connect_timeout_sec": 1.0,
        "reconnect_max_attempts": 3,
    }
    mqtt_settings.update(mqtt_overrides)
    return BackendConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name=DB_NAME,
        mqtt=MqttSettings(**mqtt_settings),
        cooldowns=AlertCooldowns(),
        telemetry_ttl_seconds=0,
        resolved_incident_ttl_seconds=0,
        fcm_service_account=None,
        push_timeout_sec=1.0,
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def mongo_client() -> mongomock.MongoClient:
    """In-memory pymongo-compatible client; a fresh one per test."""
    return mongomock.MongoClient()


@pytest.fixture
def mongo_db(mongo_client: mongomock.MongoClient):
    return mongo_client[DB_NAME]


@pytest.fixture(autouse=True)
def seed_users(mongo_db) -> None:
    """
    Device registry rows:
      - user-1 owns stick-001 and has a push token
      - user-2 owns stick-002 and has no push token
      - admin owns nothing but may access everything
    """
    mongo_db["users"].insert_many(
        [
            {"_id": "user-1", "fcmToken": "token-user-1", "devices": [{"deviceId": "stick-001", "isActive": True}]},
            {"_id": "user-2", "devices": [{"deviceId": "stick-002", "isActive": True}]},
            {"_id": "admin", "isAdmin": True, "fcmToken": "token-admin", "devices": []},
        ]
    )


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def push_sender() -> RecordingPushSender:
    return RecordingPushSender()


@pytest.fixture
def app(mongo_client, broker: FakeBroker, push_sender: RecordingPushSender) -> Iterator[Any]:
    """
    FastAPI app wired to in-memory Mongo, a fake broker and a recording push sender.

    httpx's ASGITransport does not run startup hooks, so the transport is connected here.
    """
    from stickguard.main import create_app
    from stickguard.state import get_state

    fastapi_app = create_app(
        make_config(),
        mongo_client=mongo_client,
        mqtt_client_factory=broker,
        push_sender=push_sender,
    )
    state = get_state(fastapi_app)
    state.router.connect(timeout=1.0)
    try:
        yield fastapi_app
    finally:
        state.router.disconnect()


@pytest.fixture
def state(app):
    from stickguard.state import get_state

    return get_state(app)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def as_user(user_id: str) -> Dict[str, str]:
    return {"X-User-Id": user_id}
