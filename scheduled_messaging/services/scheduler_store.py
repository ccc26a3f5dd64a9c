"""
Persistence of scheduled messages and their lifecycle transitions.

Every transition is a conditional UPDATE guarded by the expected source status,
so two writers racing on one record resolve to exactly one winner. The loser
re-reads the row and gets InvalidStateError (or NotFoundError).
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple, Union

from sqlalchemy import String, cast, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from scheduled_messaging.core.config import settings
from scheduled_messaging.core.exceptions import (
    InvalidStateError, NotFoundError, PersistenceError, RetryExhaustedError
)
from scheduled_messaging.core.observability import get_logger, MetricsCollector, monitor_performance
from scheduled_messaging.db.session import DatabaseManager, db_manager
from scheduled_messaging.models.database import (
    EventType, MessageKind, ProviderRole, ScheduledMessage, ScheduledMessageEvent,
    ScheduledStatus, to_naive_utc, utcnow
)
from scheduled_messaging.services.cost_calculator import quantize


logger = get_logger(__name__)

MessageId = Union[uuid.UUID, str]


def _as_uuid(message_id: MessageId) -> uuid.UUID:
    if isinstance(message_id, uuid.UUID):
        return message_id
    try:
        return uuid.UUID(str(message_id))
    except ValueError:
        raise NotFoundError(message_id)


class SchedulerStore:
    """Transactional store for scheduled messages."""

    def __init__(
        self,
        database: Optional[DatabaseManager] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.db = database or db_manager
        self.backoff_base = backoff_base if backoff_base is not None else settings.retry_backoff_base
        self.backoff_max = backoff_max if backoff_max is not None else settings.retry_backoff_max

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the ``retry_count``-th retry (1-based), doubling each time."""
        seconds = self.backoff_base * (2 ** max(retry_count - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_max))

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.db.session_context() as session:
                yield session
        except IntegrityError:
            raise
        except (OperationalError, InterfaceError, DBAPIError) as e:
            logger.error("Store operation failed", operation=operation, error=str(e))
            raise PersistenceError(f"Store unavailable during {operation}: {e}") from e

    async def _apply_transition(
        self,
        session: AsyncSession,
        message_id: uuid.UUID,
        expected: ScheduledStatus,
        attempted: str,
        values: Dict[str, Any],
        *criteria,
        owner_ref: Optional[str] = None
    ) -> ScheduledMessage:
        # Another owner's row is reported as missing, never as a state conflict
        scope = [ScheduledMessage.id == message_id]
        if owner_ref is not None:
            scope.append(ScheduledMessage.owner_ref == owner_ref)

        stmt = (
            update(ScheduledMessage)
            .where(*scope, ScheduledMessage.status == expected, *criteria)
            .values(**values)
            .returning(ScheduledMessage)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        message = result.scalars().one_or_none()
        if message is None:
            current = await session.scalar(select(ScheduledMessage.status).where(*scope))
            if current is None:
                raise NotFoundError(message_id)
            raise InvalidStateError(message_id, current, attempted)
        return message

    @staticmethod
    def _event(
        message_id: uuid.UUID,
        event_type: EventType,
        now: datetime,
        provider: Optional[ProviderRole] = None,
        error_message: Optional[str] = None,
        **data
    ) -> ScheduledMessageEvent:
        return ScheduledMessageEvent(
            id=uuid.uuid4(),
            message_id=message_id,
            event_type=event_type,
            event_data=data,
            provider=provider,
            error_message=error_message,
            created_at=now,
        )

    @monitor_performance("store_create")
    async def create(
        self,
        owner_ref: str,
        kind: MessageKind,
        content: str,
        sender_id: str,
        recipients: List[str],
        scheduled_at: datetime,
        cost: Decimal = Decimal("0.00"),
        max_retries: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledMessage:
        """Persist a new pending message with its ``created`` event."""
        now = to_naive_utc(now or utcnow())
        message = ScheduledMessage(
            id=uuid.uuid4(),
            owner_ref=owner_ref,
            kind=MessageKind(kind),
            content=content,
            sender_id=sender_id,
            recipients=list(recipients),
            recipient_count=len(recipients),
            scheduled_at=to_naive_utc(scheduled_at),
            status=ScheduledStatus.PENDING,
            cost=quantize(cost),
            retry_count=0,
            max_retries=settings.default_max_retries if max_retries is None else max_retries,
            created_at=now,
            updated_at=now,
        )
        async with self._transaction("create") as session:
            session.add(message)
            await session.flush()
            session.add(self._event(
                message.id,
                EventType.CREATED,
                now,
                scheduled_at=message.scheduled_at.isoformat(),
                recipient_count=message.recipient_count,
                cost=str(message.cost),
            ))

        MetricsCollector.track_scheduled(message.kind.value)
        logger.info(
            "Scheduled message created",
            message_id=str(message.id),
            kind=message.kind.value,
            scheduled_at=message.scheduled_at.isoformat(),
            recipient_count=message.recipient_count
        )
        return message

    @monitor_performance("store_claim")
    async def claim_due_messages(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[ScheduledMessage]:
        """
        Atomically move up to ``limit`` due pending messages to processing.

        Concurrent callers receive disjoint batches: rows locked by another
        claimer are skipped, and the status guard rejects rows already taken.
        """
        now = to_naive_utc(now or utcnow())
        limit = settings.scheduler_batch_size if limit is None else limit
        if limit <= 0:
            return []

        due = (
            select(ScheduledMessage.id)
            .where(
                ScheduledMessage.status == ScheduledStatus.PENDING,
                ScheduledMessage.scheduled_at <= now
            )
            .order_by(ScheduledMessage.scheduled_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(ScheduledMessage)
            .where(
                ScheduledMessage.id.in_(due.scalar_subquery()),
                ScheduledMessage.status == ScheduledStatus.PENDING
            )
            .values(status=ScheduledStatus.PROCESSING, processed_at=now, updated_at=now)
            .returning(ScheduledMessage)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction("claim") as session:
            result = await session.execute(stmt)
            claimed = list(result.scalars().all())
            session.add_all([
                self._event(m.id, EventType.CLAIMED, now, retry_count=m.retry_count)
                for m in claimed
            ])

        claimed.sort(key=lambda m: m.scheduled_at)
        if claimed:
            MetricsCollector.track_transition("claimed", len(claimed))
            logger.info("Claimed due messages", count=len(claimed))
        return claimed

    async def mark_sent(
        self,
        message_id: MessageId,
        provider_message_id: Optional[str],
        cost: Decimal,
        provider: Optional[ProviderRole] = None,
        provider_name: Optional[str] = None,
        accepted_count: Optional[int] = None,
        rejected_count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledMessage:
        """processing -> sent, recording the provider outcome and final cost."""
        message_id = _as_uuid(message_id)
        now = to_naive_utc(now or utcnow())

        async with self._transaction("mark_sent") as session:
            message = await self._apply_transition(
                session,
                message_id,
                ScheduledStatus.PROCESSING,
                "mark sent",
                {
                    "status": ScheduledStatus.SENT,
                    "provider_message_id": provider_message_id,
                    "cost": quantize(cost),
                    "provider": provider,
                    "provider_name": provider_name,
                    "accepted_count": accepted_count,
                    "rejected_count": rejected_count,
                    "error_message": None,
                    "sent_at": now,
                    "updated_at": now,
                },
            )
            session.add(self._event(
                message_id,
                EventType.SENT,
                now,
                provider=provider,
                provider_message_id=provider_message_id,
                accepted_count=accepted_count,
                rejected_count=rejected_count,
                cost=str(quantize(cost)),
            ))

        MetricsCollector.track_transition("sent")
        logger.info(
            "Scheduled message sent",
            message_id=str(message_id),
            provider=provider.value if provider else None,
            provider_message_id=provider_message_id
        )
        return message

    async def mark_failed(
        self,
        message_id: MessageId,
        error_message: str,
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> ScheduledMessage:
        """
        Record a failed delivery attempt.

        A retryable failure with attempts left goes back to pending with a
        backoff; anything else lands in the terminal failed state.
        """
        message_id = _as_uuid(message_id)
        now = to_naive_utc(now or utcnow())

        async with self._transaction("mark_failed") as session:
            row = (await session.execute(
                select(
                    ScheduledMessage.status,
                    ScheduledMessage.retry_count,
                    ScheduledMessage.max_retries
                ).where(ScheduledMessage.id == message_id)
            )).one_or_none()
            if row is None:
                raise NotFoundError(message_id)
            status, retry_count, max_retries = row
            if status != ScheduledStatus.PROCESSING:
                raise InvalidStateError(message_id, status, "mark failed")

            observed = ScheduledMessage.retry_count == retry_count
            if retryable and retry_count + 1 < max_retries:
                next_attempt = now + self.backoff(retry_count + 1)
                message = await self._apply_transition(
                    session,
                    message_id,
                    ScheduledStatus.PROCESSING,
                    "mark failed",
                    {
                        "status": ScheduledStatus.PENDING,
                        "retry_count": retry_count + 1,
                        "scheduled_at": next_attempt,
                        "error_message": None,
                        "updated_at": now,
                    },
                    observed,
                )
                session.add(self._event(
                    message_id,
                    EventType.RETRY,
                    now,
                    error_message=error_message,
                    retry_count=retry_count + 1,
                    next_attempt_at=next_attempt.isoformat(),
                ))
                transition = "retry"
            else:
                final_error = (
                    str(RetryExhaustedError(retry_count + 1, error_message)) if retryable else error_message
                )
                message = await self._apply_transition(
                    session,
                    message_id,
                    ScheduledStatus.PROCESSING,
                    "mark failed",
                    {
                        "status": ScheduledStatus.FAILED,
                        "retry_count": max_retries,
                        "error_message": final_error,
                        "failed_at": now,
                        "updated_at": now,
                    },
                    observed,
                )
                session.add(self._event(
                    message_id,
                    EventType.FAILED,
                    now,
                    error_message=final_error,
                    retryable=retryable,
                    attempts=retry_count + 1,
                ))
                transition = "failed"

        MetricsCollector.track_transition(transition)
        logger.warning(
            "Scheduled message delivery failed",
            message_id=str(message_id),
            transition=transition,
            retry_count=message.retry_count,
            error=error_message
        )
        return message

    async def cancel(
        self,
        message_id: MessageId,
        now: Optional[datetime] = None,
        owner_ref: Optional[str] = None
    ) -> ScheduledMessage:
        """
        pending -> cancelled; any other status is refused unchanged.

        With ``owner_ref`` the row must also belong to that owner, otherwise
        it is reported as not found.
        """
        message_id = _as_uuid(message_id)
        now = to_naive_utc(now or utcnow())

        async with self._transaction("cancel") as session:
            message = await self._apply_transition(
                session,
                message_id,
                ScheduledStatus.PENDING,
                "cancel",
                {
                    "status": ScheduledStatus.CANCELLED,
                    "cancelled_at": now,
                    "updated_at": now,
                },
                owner_ref=owner_ref,
            )
            session.add(self._event(message_id, EventType.CANCELLED, now))

        MetricsCollector.track_transition("cancelled")
        logger.info("Scheduled message cancelled", message_id=str(message_id))
        return message

    async def get(self, message_id: MessageId) -> ScheduledMessage:
        message_id = _as_uuid(message_id)
        async with self._transaction("get") as session:
            message = await session.get(ScheduledMessage, message_id)
        if message is None:
            raise NotFoundError(message_id)
        return message

    async def get_many(
        self,
        message_ids: List[MessageId],
        owner_ref: Optional[str] = None
    ) -> List[ScheduledMessage]:
        """
        Fetch several messages at once, in no particular order.

        Unknown or malformed ids are skipped, as are rows of another owner
        when ``owner_ref`` is given.
        """
        ids = []
        for message_id in message_ids:
            try:
                ids.append(_as_uuid(message_id))
            except NotFoundError:
                continue
        if not ids:
            return []

        query = select(ScheduledMessage).where(ScheduledMessage.id.in_(ids))
        if owner_ref is not None:
            query = query.where(ScheduledMessage.owner_ref == owner_ref)

        async with self._transaction("get_many") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @monitor_performance("store_list")
    async def list_for_owner(
        self,
        owner_ref: str,
        kind: Optional[MessageKind] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[ScheduledMessage], int]:
        """
        Page through one owner's messages, latest scheduled time first.

        ``search`` matches content, sender id or any recipient, case-insensitively.
        Returns the page and the total number of matching rows.
        """
        filters = [ScheduledMessage.owner_ref == owner_ref]
        if kind is not None:
            filters.append(ScheduledMessage.kind == MessageKind(kind))
        if search:
            pattern = f"%{search}%"
            filters.append(or_(
                ScheduledMessage.content.ilike(pattern),
                ScheduledMessage.sender_id.ilike(pattern),
                cast(ScheduledMessage.recipients, String).ilike(pattern),
            ))

        page = max(page, 1)
        async with self._transaction("list_for_owner") as session:
            total = await session.scalar(
                select(func.count(ScheduledMessage.id)).where(*filters)
            ) or 0
            result = await session.execute(
                select(ScheduledMessage)
                .where(*filters)
                .order_by(ScheduledMessage.scheduled_at.desc(), ScheduledMessage.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def list_events(self, message_id: MessageId) -> List[ScheduledMessageEvent]:
        """Audit trail of a message, oldest first."""
        message_id = _as_uuid(message_id)
        async with self._transaction("list_events") as session:
            result = await session.execute(
                select(ScheduledMessageEvent)
                .where(ScheduledMessageEvent.message_id == message_id)
                .order_by(ScheduledMessageEvent.created_at)
            )
            return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        async with self._transaction("count_by_status") as session:
            result = await session.execute(
                select(ScheduledMessage.status, func.count(ScheduledMessage.id))
                .group_by(ScheduledMessage.status)
            )
            rows = result.all()

        counts = {status.value: 0 for status in ScheduledStatus}
        for status, count in rows:
            counts[ScheduledStatus(status).value] = count
        for status, count in counts.items():
            MetricsCollector.update_queue_depth(status, count)
        return counts

    async def count_failed_since(self, since: datetime) -> int:
        async with self._transaction("count_failed_since") as session:
            return await session.scalar(
                select(func.count(ScheduledMessage.id)).where(
                    ScheduledMessage.status == ScheduledStatus.FAILED,
                    ScheduledMessage.failed_at >= to_naive_utc(since)
                )
            ) or 0

    async def release_stale_claims(
        self,
        older_than: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> int:
        """
        Return messages stuck in processing since before ``older_than`` to pending.

        Covers workers that died between claim and outcome. The retry budget is
        left untouched.
        """
        now = to_naive_utc(now or utcnow())
        older_than = to_naive_utc(older_than) if older_than else now - timedelta(seconds=settings.claim_timeout)

        stmt = (
            update(ScheduledMessage)
            .where(
                ScheduledMessage.status == ScheduledStatus.PROCESSING,
                ScheduledMessage.processed_at < older_than
            )
            .values(status=ScheduledStatus.PENDING, updated_at=now)
            .returning(ScheduledMessage.id)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction("release_stale_claims") as session:
            released = list((await session.execute(stmt)).scalars().all())
            session.add_all([
                self._event(message_id, EventType.RELEASED, now, claimed_before=older_than.isoformat())
                for message_id in released
            ])

        if released:
            MetricsCollector.track_transition("released", len(released))
            logger.warning("Released stale claims", count=len(released))
        return len(released)
