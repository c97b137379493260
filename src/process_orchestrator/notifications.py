"""Per-workspace push channel.

Messages are numbered per workspace, delivered to in-process subscribers, and kept in a
bounded buffer so HTTP clients can poll with ``after=<seq>``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from process_orchestrator.store import utc_now

logger = logging.getLogger(__name__)


SLA_WARNING = "sla:warning"
SLA_BREACH = "sla:breach"
SLA_BATCH_UPDATE = "sla:batch-update"
TASK_CREATED = "task:created"
TASK_UPDATED = "task:updated"


@dataclass(frozen=True, slots=True)
class Notification:
    seq: int
    workspace_id: str
    type: str
    payload: dict[str, Any]
    sent_at: datetime

    def to_json(self) -> dict[str, object]:
        return {
            "seq": self.seq,
            "workspace_id": self.workspace_id,
            "type": self.type,
            "payload": self.payload,
            "sent_at": self.sent_at.isoformat(),
        }


Subscriber = Callable[[Notification], None]


class Notifier(Protocol):
    def publish(self, workspace_id: str, type: str, payload: dict[str, Any]) -> Notification: ...


class NotificationHub:
    def __init__(self, *, buffer_size: int = 500, clock: Callable[[], datetime] = utc_now) -> None:
        self._buffer_size = buffer_size
        self._clock = clock
        self._lock = threading.Lock()
        self._buffers: dict[str, deque[Notification]] = {}
        self._seq: dict[str, int] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}

    def publish(self, workspace_id: str, type: str, payload: dict[str, Any]) -> Notification:
        with self._lock:
            seq = self._seq.get(workspace_id, 0) + 1
            self._seq[workspace_id] = seq
            message = Notification(
                seq=seq,
                workspace_id=workspace_id,
                type=type,
                payload=payload,
                sent_at=self._clock(),
            )
            buffer = self._buffers.setdefault(workspace_id, deque(maxlen=self._buffer_size))
            buffer.append(message)
            subscribers = list(self._subscribers.get(workspace_id, ()))

        # Delivered outside the lock.
        for subscriber in subscribers:
            try:
                subscriber(message)
            except Exception:
                logger.exception(
                    "Notification subscriber failed",
                    extra={"workspace_id": workspace_id, "type": type, "seq": seq},
                )
        return message

    def subscribe(self, workspace_id: str, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; returns a function that unsubscribes it."""

        with self._lock:
            self._subscribers.setdefault(workspace_id, []).append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(workspace_id, [])
                if subscriber in subs:
                    subs.remove(subscriber)

        return unsubscribe

    def poll(self, workspace_id: str, *, after: int = 0, limit: int = 100) -> list[Notification]:
        with self._lock:
            buffer = list(self._buffers.get(workspace_id, ()))
        return [m for m in buffer if m.seq > after][:limit]
