"""
Events module for CleanCity
Post-commit workflow events and notifications
"""

from .bus import DomainEvent, EventBus, EventKind
from .notifier import LoggingNotifier, Notification

__all__ = [
    "DomainEvent",
    "EventBus",
    "EventKind",
    "LoggingNotifier",
    "Notification",
]
