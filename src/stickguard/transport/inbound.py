"""Bounded channel between paho's network thread and the dispatch loop.

The broker callback only enqueues; handlers run on the consumer side. When the queue is full
the policy decides which message is lost:
- drop_oldest=True: evict the oldest queued message and accept the new one
- drop_oldest=False: reject the new message
Either way the loss is counted in ``stats()``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from stickguard.schemas.common import utc_now

logger = logging.getLogger(__name__)


class MessageParseError(ValueError):
    """Inbound payload is not a JSON object."""


@dataclass(frozen=True)
class InboundMessage:
    """One message received from the broker."""

    topic: str
    payload: bytes
    qos: int = 1
    received_at: datetime = field(default_factory=utc_now)

    def json(self) -> Dict[str, Any]:
        """Decode the payload as a JSON object."""
        try:
            data = json.loads(self.payload.decode("utf-8")) if self.payload else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MessageParseError(f"invalid JSON payload on {self.topic}: {exc}") from exc
        if not isinstance(data, dict):
            raise MessageParseError(f"payload on {self.topic} is not a JSON object")
        return data


@dataclass
class QueueStats:
    max_size: int
    enqueued: int = 0
    dequeued: int = 0
    dropped_oldest: int = 0
    rejected: int = 0


class InboundQueue:
    """Thread-safe bounded FIFO of InboundMessage."""

    def __init__(self, max_size: int = 10000, drop_oldest: bool = True):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = int(max_size)
        self._drop_oldest = bool(drop_oldest)
        self._items: Deque[InboundMessage] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._stats = QueueStats(max_size=self._max_size)

    def put(self, item: InboundMessage) -> bool:
        """Enqueue a message. Returns False when it was rejected by a full queue."""
        with self._lock:
            if len(self._items) >= self._max_size:
                if not self._drop_oldest:
                    self._stats.rejected += 1
                    logger.warning("Inbound queue full (max=%d); rejected message topic=%s", self._max_size, item.topic)
                    return False
                evicted = self._items.popleft()
                self._stats.dropped_oldest += 1
                logger.warning(
                    "Inbound queue full (max=%d); dropped oldest message topic=%s",
                    self._max_size,
                    evicted.topic,
                )
            self._items.append(item)
            self._stats.enqueued += 1
            self._not_empty.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        """Dequeue the oldest message, waiting up to ``timeout`` seconds; None when nothing arrived."""
        with self._not_empty:
            if not self._items:
                self._not_empty.wait(timeout)
            if not self._items:
                return None
            self._stats.dequeued += 1
            return self._items.popleft()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._items),
                "maxSize": self._stats.max_size,
                "dropPolicy": "drop_oldest" if self._drop_oldest else "reject_newest",
                "enqueued": self._stats.enqueued,
                "dequeued": self._stats.dequeued,
                "droppedOldest": self._stats.dropped_oldest,
                "rejected": self._stats.rejected,
            }
