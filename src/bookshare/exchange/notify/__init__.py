"""Notification events and notifier implementations."""

from .notifier import DebouncingNotifier, LoggingNotifier, Notifier, RecordingNotifier
from .schemas import EventKind, NotificationEvent

__all__ = [
    "DebouncingNotifier",
    "LoggingNotifier",
    "Notifier",
    "RecordingNotifier",
    "EventKind",
    "NotificationEvent",
]
