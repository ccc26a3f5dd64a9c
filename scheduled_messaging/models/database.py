"""
Database models for the scheduled messaging service.
Defines the ScheduledMessage entity and its lifecycle event log.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Text, JSON, Enum, Index,
    CheckConstraint, Integer, Numeric, TypeDecorator
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.types import CHAR
from sqlalchemy.orm import relationship, declarative_base
import enum
import uuid


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# UUID type compatible with both PostgreSQL and SQLite
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type if available, otherwise uses
    CHAR(36), storing UUIDs as strings.
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID())
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == "postgresql":
            return str(value)
        else:
            if isinstance(value, uuid.UUID):
                return str(value)
            else:
                return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if isinstance(value, uuid.UUID):
                return value
            else:
                return uuid.UUID(value)


class MessageKind(str, enum.Enum):
    """Enumeration of deliverable message kinds."""
    TEXT = "text"
    VOICE = "voice"
    AUDIO = "audio"


class ScheduledStatus(str, enum.Enum):
    """Scheduled message lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ScheduledStatus.SENT,
    ScheduledStatus.FAILED,
    ScheduledStatus.CANCELLED,
})


class ProviderRole(str, enum.Enum):
    """Gateway variant that handled a send."""
    PRIMARY = "primary"
    BACKUP = "backup"


class EventType(str, enum.Enum):
    """Scheduled message lifecycle events."""
    CREATED = "created"
    CLAIMED = "claimed"
    SENT = "sent"
    RETRY = "retry"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RELEASED = "released"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class ScheduledMessage(Base):
    """
    A message scheduled for bulk delivery at a future time.
    """
    __tablename__ = "scheduled_messages"

    id = Column(UUID, primary_key=True, default=uuid.uuid4)
    owner_ref = Column(String(255), nullable=False, index=True)

    kind = Column(Enum(MessageKind, values_callable=_enum_values), nullable=False, default=MessageKind.TEXT)
    content = Column(Text, nullable=False)
    sender_id = Column(String(20), nullable=False)

    recipients = Column(JSON, nullable=False, default=list)
    recipient_count = Column(Integer, nullable=False, default=0)

    scheduled_at = Column(DateTime, nullable=False)
    status = Column(
        Enum(ScheduledStatus, values_callable=_enum_values),
        default=ScheduledStatus.PENDING,
        nullable=False,
        index=True
    )

    # Billing
    cost = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    # Retry information
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text)

    # Provider outcome
    provider = Column(Enum(ProviderRole, values_callable=_enum_values))
    provider_name = Column(String(100))
    provider_message_id = Column(String(255))
    accepted_count = Column(Integer)
    rejected_count = Column(Integer)

    # Tracking
    processed_at = Column(DateTime)
    sent_at = Column(DateTime)
    failed_at = Column(DateTime)
    cancelled_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    events = relationship(
        "ScheduledMessageEvent",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="ScheduledMessageEvent.created_at"
    )

    # Claim query scans (status, scheduled_at)
    __table_args__ = (
        Index("idx_scheduled_status_due", "status", "scheduled_at"),
        Index("idx_scheduled_failed_at", "failed_at"),
        CheckConstraint("retry_count >= 0", name="check_retry_count_positive"),
        CheckConstraint("max_retries >= 0", name="check_max_retries_positive"),
        CheckConstraint("retry_count <= max_retries", name="check_retry_count_bounded"),
        CheckConstraint("cost >= 0", name="check_cost_positive"),
    )

    def __repr__(self):
        return f"<ScheduledMessage(id={self.id}, kind={self.kind}, status={self.status})>"


class ScheduledMessageEvent(Base):
    """
    Audit trail of lifecycle transitions, one row per transition.
    """
    __tablename__ = "scheduled_message_events"

    id = Column(UUID, primary_key=True, default=uuid.uuid4)
    message_id = Column(
        UUID,
        ForeignKey("scheduled_messages.id", ondelete="CASCADE"),
        nullable=False
    )

    event_type = Column(Enum(EventType, values_callable=_enum_values), nullable=False)
    event_data = Column(JSON, default=dict)
    provider = Column(Enum(ProviderRole, values_callable=_enum_values))
    error_message = Column(Text)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    message = relationship("ScheduledMessage", back_populates="events")

    __table_args__ = (
        Index("idx_scheduled_event_message_created", "message_id", "created_at"),
    )

    def __repr__(self):
        return f"<ScheduledMessageEvent(id={self.id}, type={self.event_type}, message_id={self.message_id})>"
