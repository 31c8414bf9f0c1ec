"""Best-effort delivery of lifecycle notifications.

Commands hand a notification to :class:`NotificationDispatcher` after their
transaction committed. The dispatcher only enqueues; a background worker
publishes each event through the event bus (outbox row plus in-process
subscribers). Delivery failures are retried a bounded number of times, then
logged and dropped. Nothing here can fail or slow down the caller.
"""

from __future__ import annotations

import os
import queue
import threading
import time
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any, Protocol

import structlog

from gearguard.domain.models import EventEnvelope
from gearguard.infra.events import event_bus

NOTIFY_QUEUE_SIZE = int(os.getenv("NOTIFY_QUEUE_SIZE", "1000"))
NOTIFY_MAX_ATTEMPTS = int(os.getenv("NOTIFY_MAX_ATTEMPTS", "3"))

logger = structlog.get_logger(__name__)


class NotificationEvent(StrEnum):
    REQUEST_CREATED = "request.created"
    REQUEST_ASSIGNED = "request.assigned"
    STAGE_CHANGED = "request.stage_changed"
    EQUIPMENT_SCRAPPED = "equipment.scrapped"


class Notifier(Protocol):
    def notify(
        self,
        event_type: str,
        company_id: str,
        payload_refs: Mapping[str, Any],
        *,
        actor_id: str | None = None,
    ) -> None: ...


class NotificationDispatcher:
    def __init__(
        self,
        publish: Callable[[EventEnvelope], None] | None = None,
        *,
        queue_size: int = NOTIFY_QUEUE_SIZE,
        max_attempts: int = NOTIFY_MAX_ATTEMPTS,
    ) -> None:
        self._publish = publish or event_bus.publish
        self._queue: queue.Queue[EventEnvelope | None] = queue.Queue(maxsize=queue_size)
        self._max_attempts = max(1, max_attempts)
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="notification-dispatcher", daemon=True)
            self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None or not worker.is_alive():
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("notification.stop_timeout", pending=self._queue.qsize())
            return
        worker.join(timeout)

    def notify(
        self,
        event_type: str,
        company_id: str,
        payload_refs: Mapping[str, Any],
        *,
        actor_id: str | None = None,
    ) -> None:
        envelope = EventEnvelope(
            event_type=str(event_type),
            company_id=company_id,
            actor_id=actor_id,
            payload=dict(payload_refs),
        )
        self.start()
        try:
            self._queue.put_nowait(envelope)
        except queue.Full:
            logger.warning(
                "notification.dropped",
                reason="queue_full",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
            )

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued notification was handled; False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _run(self) -> None:
        while True:
            envelope = self._queue.get()
            try:
                if envelope is None:
                    return
                self._deliver(envelope)
            finally:
                self._queue.task_done()

    def _deliver(self, envelope: EventEnvelope) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._publish(envelope)
            except Exception:
                logger.warning(
                    "notification.delivery_failed",
                    event_type=envelope.event_type,
                    event_id=envelope.event_id,
                    attempt=attempt,
                    exc_info=True,
                )
                continue
            logger.debug("notification.delivered", event_type=envelope.event_type, event_id=envelope.event_id)
            return
        logger.error(
            "notification.dropped",
            reason="max_attempts",
            event_type=envelope.event_type,
            event_id=envelope.event_id,
            attempts=self._max_attempts,
        )


notification_dispatcher = NotificationDispatcher()
