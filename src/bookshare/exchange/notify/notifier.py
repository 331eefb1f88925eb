"""Notifier implementations.

Delivery (email, push) lives outside the engine. These classes cover the
engine side of the boundary: a structured-log notifier, an in-memory
recorder, and a debouncing wrapper for chatty message events.
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog

from .schemas import EventKind, NotificationEvent

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Fire-and-forget notification capability."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Deliver or enqueue one event."""


class LoggingNotifier(Notifier):
    """Writes each event as a structured log line."""

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "notification",
            kind=event.kind.value,
            recipient_user_id=event.recipient_user_id,
            **event.payload,
        )


class RecordingNotifier(Notifier):
    """Keeps events in memory."""

    def __init__(self):
        self.events: list[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[NotificationEvent]:
        return [e for e in self.events if e.kind == kind]

    def for_user(self, user_id: str) -> list[NotificationEvent]:
        return [e for e in self.events if e.recipient_user_id == user_id]

    def clear(self) -> None:
        self.events.clear()


class DebouncingNotifier(Notifier):
    """Drops repeated new-message events inside a time window.

    Only ``new_message`` events are debounced, per recipient and thread.
    Everything else passes straight through.
    """

    def __init__(
        self,
        inner: Notifier,
        window_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.inner = inner
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._last_sent: dict[tuple[str, str], float] = {}

    def notify(self, event: NotificationEvent) -> None:
        if event.kind != EventKind.NEW_MESSAGE:
            self.inner.notify(event)
            return

        key = (event.recipient_user_id, str(event.payload.get("thread_id", "")))
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.window_seconds:
            logger.debug(
                "notification_debounced",
                recipient_user_id=event.recipient_user_id,
                thread_id=key[1],
            )
            return

        self._prune(now)
        self._last_sent[key] = now
        self.inner.notify(event)

    def _prune(self, now: float) -> None:
        """Forget keys whose window has already passed."""
        expired = [k for k, sent in self._last_sent.items() if now - sent >= self.window_seconds]
        for k in expired:
            del self._last_sent[k]
