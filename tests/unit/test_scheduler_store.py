import asyncio
import uuid
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from scheduled_messaging.core.exceptions import InvalidStateError, NotFoundError, PersistenceError
from scheduled_messaging.models.database import EventType, MessageKind, ProviderRole, ScheduledStatus, utcnow


@pytest.mark.asyncio
async def test_create_persists_pending_message(store, create_message):
    message = await create_message()

    stored = await store.get(message.id)
    assert stored.status == ScheduledStatus.PENDING
    assert stored.recipient_count == len(stored.recipients) == 2
    assert stored.retry_count == 0
    assert stored.cost == Decimal("8.00")

    events = await store.list_events(message.id)
    assert [e.event_type for e in events] == [EventType.CREATED]


@pytest.mark.asyncio
async def test_get_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.get(uuid.uuid4())
    with pytest.raises(NotFoundError):
        await store.get("not-a-uuid")


@pytest.mark.asyncio
async def test_claim_only_returns_due_messages(store, create_message):
    due = await create_message()
    await create_message(due_in=timedelta(hours=1))

    claimed = await store.claim_due_messages(limit=10)

    assert [m.id for m in claimed] == [due.id]
    assert claimed[0].status == ScheduledStatus.PROCESSING
    assert claimed[0].processed_at is not None
    assert await store.claim_due_messages(limit=10) == []


@pytest.mark.asyncio
async def test_claim_orders_by_scheduled_at_and_respects_limit(store, create_message):
    later = await create_message(due_in=timedelta(minutes=-1))
    earlier = await create_message(due_in=timedelta(minutes=-10))
    await create_message(due_in=timedelta(minutes=-5))

    claimed = await store.claim_due_messages(limit=2)

    assert len(claimed) == 2
    assert claimed[0].id == earlier.id
    assert later.id not in {m.id for m in claimed}


@pytest.mark.asyncio
async def test_claim_with_zero_limit_claims_nothing(store, create_message):
    await create_message()
    assert await store.claim_due_messages(limit=0) == []


@pytest.mark.asyncio
async def test_concurrent_claims_for_one_message(store, create_message):
    """Two pollers at the same instant: exactly one gets the message."""
    message = await create_message()
    now = utcnow()

    first, second = await asyncio.gather(
        store.claim_due_messages(now=now, limit=10),
        store.claim_due_messages(now=now, limit=10),
    )

    claimed_ids = [m.id for m in first] + [m.id for m in second]
    assert claimed_ids == [message.id]


@pytest.mark.asyncio
async def test_concurrent_claim_batches_are_disjoint(store, create_message):
    created = {(await create_message()).id for _ in range(12)}

    batches = await asyncio.gather(*[store.claim_due_messages(limit=5) for _ in range(4)])

    seen = [m.id for batch in batches for m in batch]
    assert len(seen) == len(set(seen))
    assert set(seen) == created


@pytest.mark.asyncio
async def test_mark_sent_records_provider_outcome(store, create_message):
    message = await create_message()
    await store.claim_due_messages(limit=1)

    sent = await store.mark_sent(
        message.id,
        "backup-sms-1",
        Decimal("4.004"),
        provider=ProviderRole.BACKUP,
        provider_name="backup-sms",
        accepted_count=1,
        rejected_count=1,
    )

    assert sent.status == ScheduledStatus.SENT
    assert sent.provider == ProviderRole.BACKUP
    assert sent.provider_message_id == "backup-sms-1"
    assert sent.cost == Decimal("4.00")
    assert sent.sent_at is not None
    assert sent.error_message is None


@pytest.mark.asyncio
async def test_double_mark_sent_is_invalid(store, create_message):
    message = await create_message()
    await store.claim_due_messages(limit=1)
    await store.mark_sent(message.id, "p-1", Decimal("8.00"))

    with pytest.raises(InvalidStateError) as exc_info:
        await store.mark_sent(message.id, "p-2", Decimal("8.00"))

    assert exc_info.value.current_status == ScheduledStatus.SENT
    assert (await store.get(message.id)).provider_message_id == "p-1"


@pytest.mark.asyncio
async def test_mark_sent_requires_processing(store, create_message):
    message = await create_message()
    with pytest.raises(InvalidStateError):
        await store.mark_sent(message.id, "p-1", Decimal("8.00"))


@pytest.mark.asyncio
async def test_retryable_failure_returns_to_pending_with_backoff(store, create_message):
    message = await create_message(max_retries=3)
    await store.claim_due_messages(limit=1)
    now = utcnow()

    retried = await store.mark_failed(message.id, "Provider timeout", now=now)

    assert retried.status == ScheduledStatus.PENDING
    assert retried.retry_count == 1
    assert retried.scheduled_at == now + timedelta(seconds=60)
    # Not due until the backoff elapses
    assert await store.claim_due_messages(now=now, limit=10) == []
    assert len(await store.claim_due_messages(now=now + timedelta(seconds=61), limit=10)) == 1


@pytest.mark.asyncio
async def test_retry_keeps_error_only_in_the_event_trail(store, create_message):
    message = await create_message(max_retries=3)
    await store.claim_due_messages(limit=1)

    retried = await store.mark_failed(message.id, "Provider server error 500")
    assert retried.status == ScheduledStatus.PENDING
    assert retried.error_message is None
    assert (await store.get(message.id)).error_message is None

    retry_event = [e for e in await store.list_events(message.id) if e.event_type == EventType.RETRY][0]
    assert retry_event.error_message == "Provider server error 500"

    cancelled = await store.cancel(message.id)
    assert cancelled.status == ScheduledStatus.CANCELLED
    assert cancelled.error_message is None
    assert (await store.get(message.id)).error_message is None


def test_backoff_doubles_and_caps(store):
    assert store.backoff(1) == timedelta(seconds=60)
    assert store.backoff(2) == timedelta(seconds=120)
    assert store.backoff(3) == timedelta(seconds=240)
    assert store.backoff(10) == timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_retries_exhaust_into_failed(immediate_store, create_message):
    """Three failed attempts with max_retries=3 end in failed and are never claimed again."""
    message = await create_message(target_store=immediate_store, max_retries=3)

    statuses = []
    for attempt in range(3):
        claimed = await immediate_store.claim_due_messages(limit=10)
        assert [m.id for m in claimed] == [message.id]
        updated = await immediate_store.mark_failed(message.id, f"Provider outage #{attempt + 1}")
        statuses.append(updated.status)
        assert updated.retry_count <= updated.max_retries

    assert statuses == [ScheduledStatus.PENDING, ScheduledStatus.PENDING, ScheduledStatus.FAILED]

    failed = await immediate_store.get(message.id)
    assert failed.retry_count == failed.max_retries == 3
    assert "Provider outage #3" in failed.error_message
    assert failed.failed_at is not None
    assert await immediate_store.claim_due_messages(now=utcnow() + timedelta(days=1), limit=10) == []

    events = [e.event_type for e in await immediate_store.list_events(message.id)]
    assert events.count(EventType.RETRY) == 2
    assert events[-1] == EventType.FAILED


@pytest.mark.asyncio
async def test_non_retryable_failure_is_terminal_immediately(store, create_message):
    message = await create_message(max_retries=5)
    await store.claim_due_messages(limit=1)

    failed = await store.mark_failed(message.id, "All 2 recipient(s) rejected", retryable=False)

    assert failed.status == ScheduledStatus.FAILED
    assert failed.retry_count == 5
    assert failed.error_message == "All 2 recipient(s) rejected"


@pytest.mark.asyncio
async def test_zero_max_retries_fails_on_first_attempt(store, create_message):
    message = await create_message(max_retries=0)
    await store.claim_due_messages(limit=1)

    failed = await store.mark_failed(message.id, "boom")

    assert failed.status == ScheduledStatus.FAILED
    assert failed.retry_count == 0


@pytest.mark.asyncio
async def test_failed_message_never_mutates_again(store, create_message):
    message = await create_message(max_retries=1)
    await store.claim_due_messages(limit=1)
    failed = await store.mark_failed(message.id, "boom")
    assert failed.status == ScheduledStatus.FAILED

    with pytest.raises(InvalidStateError):
        await store.mark_failed(message.id, "again")
    with pytest.raises(InvalidStateError):
        await store.mark_sent(message.id, "p-1", Decimal("1.00"))
    with pytest.raises(InvalidStateError):
        await store.cancel(message.id)

    after = await store.get(message.id)
    assert after.updated_at == failed.updated_at
    assert after.error_message == failed.error_message
    assert after.retry_count == failed.retry_count


@pytest.mark.asyncio
async def test_cancel_pending_then_cancel_again(store, create_message):
    message = await create_message(due_in=timedelta(hours=2))

    cancelled = await store.cancel(message.id)
    assert cancelled.status == ScheduledStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    with pytest.raises(InvalidStateError):
        await store.cancel(message.id)


@pytest.mark.asyncio
async def test_cancel_sent_leaves_every_field_unchanged(store, create_message):
    message = await create_message()
    await store.claim_due_messages(limit=1)
    await store.mark_sent(message.id, "p-1", Decimal("8.00"), provider=ProviderRole.PRIMARY)
    before = await store.get(message.id)

    with pytest.raises(InvalidStateError) as exc_info:
        await store.cancel(message.id)

    assert "cancel" in str(exc_info.value)
    after = await store.get(message.id)
    for column in before.__table__.columns.keys():
        assert getattr(after, column) == getattr(before, column), column


@pytest.mark.asyncio
async def test_cancel_processing_is_invalid(store, create_message):
    message = await create_message()
    await store.claim_due_messages(limit=1)

    with pytest.raises(InvalidStateError):
        await store.cancel(message.id)


@pytest.mark.asyncio
async def test_cancel_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        await store.cancel(uuid.uuid4())


@pytest.mark.asyncio
async def test_owner_scoped_cancel(store, create_message):
    message = await create_message(due_in=timedelta(hours=2), owner_ref="account-42")

    with pytest.raises(NotFoundError):
        await store.cancel(message.id, owner_ref="account-7")
    assert (await store.get(message.id)).status == ScheduledStatus.PENDING

    cancelled = await store.cancel(message.id, owner_ref="account-42")
    assert cancelled.status == ScheduledStatus.CANCELLED

    # Still another owner's row: not found rather than a state conflict
    with pytest.raises(NotFoundError):
        await store.cancel(message.id, owner_ref="account-7")
    with pytest.raises(InvalidStateError):
        await store.cancel(message.id, owner_ref="account-42")


@pytest.mark.asyncio
async def test_list_for_owner_pages_latest_first(store, create_message):
    first = await create_message(due_in=timedelta(hours=1))
    second = await create_message(due_in=timedelta(hours=2))
    third = await create_message(due_in=timedelta(hours=3))
    await create_message(due_in=timedelta(hours=4), owner_ref="account-7")

    page_one, total = await store.list_for_owner("account-42", page=1, limit=2)
    assert total == 3
    assert [m.id for m in page_one] == [third.id, second.id]

    page_two, total = await store.list_for_owner("account-42", page=2, limit=2)
    assert total == 3
    assert [m.id for m in page_two] == [first.id]

    assert await store.list_for_owner("account-42", page=3, limit=2) == ([], 3)
    assert await store.list_for_owner("nobody") == ([], 0)


@pytest.mark.asyncio
async def test_list_for_owner_filters_by_kind_and_search(store, create_message):
    text = await create_message(content="Clinic opens at 9am")
    voice = await create_message(kind=MessageKind.VOICE, content="Your results are ready")
    by_sender = await create_message(content="Weekly update", sender_id="Pharmacy")
    by_recipient = await create_message(content="Weekly update", recipients=["+2348099999999"])

    voices, total = await store.list_for_owner("account-42", kind=MessageKind.VOICE)
    assert total == 1
    assert voices[0].id == voice.id

    found, _ = await store.list_for_owner("account-42", search="clinic OPENS")
    assert [m.id for m in found] == [text.id]

    found, _ = await store.list_for_owner("account-42", search="pharm")
    assert [m.id for m in found] == [by_sender.id]

    found, _ = await store.list_for_owner("account-42", search="8099999")
    assert [m.id for m in found] == [by_recipient.id]

    found, total = await store.list_for_owner("account-42", kind=MessageKind.TEXT, search="results")
    assert (found, total) == ([], 0)


@pytest.mark.asyncio
async def test_get_many_skips_unknown_and_foreign_ids(store, create_message):
    mine = await create_message()
    other = await create_message(owner_ref="account-7")

    found = await store.get_many([mine.id, str(other.id), uuid.uuid4(), "not-a-uuid"])
    assert {m.id for m in found} == {mine.id, other.id}

    scoped = await store.get_many([mine.id, other.id], owner_ref="account-42")
    assert [m.id for m in scoped] == [mine.id]

    assert await store.get_many(["not-a-uuid"]) == []


@pytest.mark.asyncio
async def test_release_stale_claims(store, create_message):
    message = await create_message(max_retries=3)
    claimed_at = utcnow()
    await store.claim_due_messages(now=claimed_at, limit=1)

    assert await store.release_stale_claims(older_than=claimed_at) == 0
    released = await store.release_stale_claims(older_than=claimed_at + timedelta(seconds=1))

    assert released == 1
    again = await store.get(message.id)
    assert again.status == ScheduledStatus.PENDING
    assert again.retry_count == 0


@pytest.mark.asyncio
async def test_counts(store, create_message):
    await create_message(due_in=timedelta(hours=1))
    failing = await create_message(max_retries=0)
    await store.claim_due_messages(limit=10)
    await store.mark_failed(failing.id, "boom")

    counts = await store.count_by_status()
    assert counts["pending"] == 1
    assert counts["failed"] == 1
    assert counts["processing"] == 0
    assert await store.count_failed_since(utcnow() - timedelta(hours=24)) == 1
    assert await store.count_failed_since(utcnow() + timedelta(minutes=1)) == 0


@pytest.mark.asyncio
async def test_database_outage_raises_persistence_error(store, create_message):
    message = await create_message()

    with patch.object(
        store.db,
        "session_context",
        side_effect=OperationalError("SELECT 1", {}, Exception("database is locked")),
    ):
        with pytest.raises(PersistenceError):
            await store.cancel(message.id)

    assert (await store.get(message.id)).status == ScheduledStatus.PENDING
