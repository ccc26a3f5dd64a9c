"""Database models package."""

from scheduled_messaging.models.database import (
    Base,
    ScheduledMessage,
    ScheduledMessageEvent,
    MessageKind,
    ScheduledStatus,
    ProviderRole,
    EventType,
    TERMINAL_STATUSES,
    utcnow,
)

__all__ = [
    "Base",
    "ScheduledMessage",
    "ScheduledMessageEvent",
    "MessageKind",
    "ScheduledStatus",
    "ProviderRole",
    "EventType",
    "TERMINAL_STATUSES",
    "utcnow",
]
