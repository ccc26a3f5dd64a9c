"""
Background worker that delivers scheduled messages once they fall due.
"""

import asyncio
import signal
import sys
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from scheduled_messaging.core.config import settings
from scheduled_messaging.core.exceptions import (
    InvalidStateError, NotFoundError, PersistenceError, ProviderUnavailableError, ValidationError
)
from scheduled_messaging.core.observability import get_logger, MetricsCollector, init_observability
from scheduled_messaging.models.database import ScheduledMessage, ScheduledStatus
from scheduled_messaging.providers.base import DeliveryOutcome, DeliveryResult
from scheduled_messaging.services.cost_calculator import CostCalculator, quantize
from scheduled_messaging.services.scheduler_store import SchedulerStore


logger = get_logger(__name__)


@dataclass
class ProcessingSummary:
    """Counts for one processing pass."""
    claimed: int = 0
    sent: int = 0
    partial: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class DispatchWorker:
    """
    Claims due messages and hands them to the provider gateway.

    Several workers, or both loops of one worker, may run side by side: the
    store's atomic claim guarantees each message is handed to exactly one of
    them. ``max_in_flight`` bounds concurrent sends across both loops.
    """

    def __init__(
        self,
        store: SchedulerStore,
        gateway,
        calculator: Optional[CostCalculator] = None,
        enabled: Optional[bool] = None,
        batch_size: Optional[int] = None,
        max_in_flight: Optional[int] = None,
        poll_interval: Optional[float] = None,
        notifier=None,
        channel: Optional[str] = None,
        store_retry_attempts: Optional[int] = None,
        store_retry_wait: float = 0.5,
    ):
        self.store = store
        self.gateway = gateway
        self.calculator = calculator or gateway.calculator
        self.enabled = settings.scheduler_enabled if enabled is None else enabled
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.max_in_flight = max_in_flight or settings.scheduler_max_in_flight
        self.poll_interval = settings.scheduler_poll_interval if poll_interval is None else poll_interval
        self.notifier = notifier
        self.channel = channel or settings.scheduler_wakeup_channel
        self.store_retry_attempts = store_retry_attempts or settings.store_retry_attempts
        self.store_retry_wait = store_retry_wait

        self.running = False
        self.tasks: List[asyncio.Task] = []
        self.total_claimed = 0
        self._in_flight = 0
        self._slots_changed = asyncio.Condition()
        self._wakeup = asyncio.Event()
        self._active: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _reserve_slots(self, wanted: int) -> int:
        async with self._slots_changed:
            await self._slots_changed.wait_for(lambda: self._in_flight < self.max_in_flight)
            reserved = min(wanted, self.max_in_flight - self._in_flight)
            self._in_flight += reserved
            MetricsCollector.update_in_flight(self._in_flight)
            return reserved

    async def _release_slots(self, count: int):
        if count <= 0:
            return
        async with self._slots_changed:
            self._in_flight -= count
            MetricsCollector.update_in_flight(self._in_flight)
            self._slots_changed.notify_all()

    async def process_due(self, now: Optional[datetime] = None) -> ProcessingSummary:
        """
        Claim due messages up to the free concurrency slots and dispatch them.

        Waits for a slot when the worker is saturated. Returns once every
        message claimed by this pass has a recorded outcome.
        """
        summary = ProcessingSummary()
        reserved = await self._reserve_slots(self.batch_size)
        try:
            messages = await self.store.claim_due_messages(now=now, limit=reserved)
        except BaseException:
            await self._release_slots(reserved)
            raise
        await self._release_slots(reserved - len(messages))

        summary.claimed = len(messages)
        self.total_claimed += len(messages)
        if not messages:
            return summary

        tasks = [asyncio.create_task(self._dispatch_reserved(message)) for message in messages]
        for task in tasks:
            self._active.add(task)
            task.add_done_callback(self._active.discard)

        # Sends finish even if the calling loop is cancelled
        outcomes = await asyncio.shield(asyncio.gather(*tasks))
        for outcome in outcomes:
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        logger.info("Processing pass complete", **summary.to_dict())
        return summary

    async def _dispatch_reserved(self, message: ScheduledMessage) -> str:
        try:
            return await self.dispatch(message)
        finally:
            await self._release_slots(1)

    async def dispatch(self, message: ScheduledMessage) -> str:
        """
        Deliver one claimed message and record its outcome.

        Returns the summary field the outcome counts towards.
        """
        log = logger.bind(message_id=str(message.id), kind=message.kind.value)

        try:
            result = await self.gateway.send_message(
                message.kind, message.recipients, message.content, message.sender_id
            )
        except ProviderUnavailableError as e:
            log.warning("Providers unavailable, scheduling retry", error=str(e))
            return await self._record_failure(message, str(e), retryable=True)
        except ValidationError as e:
            log.warning("Message not deliverable", error=str(e))
            return await self._record_failure(message, str(e), retryable=False)
        except Exception as e:
            log.error("Unexpected error while sending", error=str(e), exc_info=True)
            await self._record_failure(message, f"Unexpected error: {e}", retryable=True)
            return "errors"

        if result.status == DeliveryOutcome.REJECTED:
            error = f"All {result.rejected_count} recipient(s) rejected"
            log.warning("Every recipient rejected", rejected_count=result.rejected_count)
            return await self._record_failure(message, error, retryable=False)

        cost = self.accepted_cost(message, result)
        try:
            await self._write_outcome(
                self.store.mark_sent,
                message.id,
                result.provider_message_id,
                cost,
                provider=result.provider,
                provider_name=result.provider_name,
                accepted_count=result.accepted_count,
                rejected_count=result.rejected_count,
            )
        except (PersistenceError, InvalidStateError, NotFoundError) as e:
            log.error("Could not record sent outcome", error=str(e))
            return "errors"

        return "partial" if result.status == DeliveryOutcome.PARTIAL else "sent"

    def accepted_cost(self, message: ScheduledMessage, result: DeliveryResult) -> Decimal:
        """Cost of the recipients the provider actually accepted."""
        accepted = result.accepted_recipients
        if not accepted or result.accepted_count <= 0:
            return Decimal("0.00")
        total = self.calculator.total_cost(message.content, accepted, message.kind)
        if len(accepted) == result.accepted_count:
            return total
        # Provider reported rejections without naming them
        return quantize(total * result.accepted_count / len(accepted))

    async def _record_failure(self, message: ScheduledMessage, error: str, retryable: bool) -> str:
        try:
            updated = await self._write_outcome(
                self.store.mark_failed, message.id, error, retryable=retryable
            )
        except (PersistenceError, InvalidStateError, NotFoundError) as e:
            logger.error(
                "Could not record failed outcome",
                message_id=str(message.id),
                error=str(e)
            )
            return "errors"
        return "retried" if updated.status == ScheduledStatus.PENDING else "failed"

    async def _write_outcome(self, operation, *args, **kwargs):
        result = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.store_retry_attempts),
            wait=wait_exponential(multiplier=self.store_retry_wait, max=5),
            retry=retry_if_exception_type(PersistenceError),
            reraise=True,
        ):
            with attempt:
                result = await operation(*args, **kwargs)
        return result

    def trigger(self):
        """Wake the event loop for an immediate pass."""
        self._wakeup.set()

    async def run_interval_loop(self):
        """Poll for due messages every ``poll_interval`` seconds."""
        logger.info("Interval loop started", poll_interval=self.poll_interval)
        while self.running:
            try:
                await self.store.release_stale_claims()
                summary = await self.process_due()
                await self.store.count_by_status()
                if summary.claimed >= self.batch_size:
                    continue
            except Exception as e:
                logger.error("Error in interval loop", error=str(e))
            await asyncio.sleep(self.poll_interval)

    async def run_event_loop(self):
        """Process as soon as a wake-up arrives, in-process or over pub/sub."""
        listener = None
        if self.notifier is not None:
            listener = asyncio.create_task(self._listen_for_wakeups())
        logger.info("Event loop started", channel=self.channel if listener else None)
        try:
            while self.running:
                await self._wakeup.wait()
                self._wakeup.clear()
                if not self.running:
                    break
                try:
                    await self.process_due()
                except Exception as e:
                    logger.error("Error in event loop", error=str(e))
        finally:
            if listener is not None:
                listener.cancel()
                await asyncio.gather(listener, return_exceptions=True)

    async def _listen_for_wakeups(self):
        while self.running:
            try:
                async for notification in self.notifier.listen(self.channel):
                    logger.debug("Wake-up received", notification=notification)
                    self.trigger()
            except Exception as e:
                logger.warning("Wake-up listener interrupted", error=str(e))
            await asyncio.sleep(self.poll_interval)

    async def start(self):
        """Launch both loops, unless processing is disabled."""
        if not self.enabled:
            logger.info("Scheduled processing disabled, loops not started")
            return
        if self.running:
            return

        self.running = True
        self.tasks = [
            asyncio.create_task(self.run_interval_loop()),
            asyncio.create_task(self.run_event_loop()),
        ]
        logger.info(
            "Dispatch worker started",
            batch_size=self.batch_size,
            max_in_flight=self.max_in_flight
        )

    async def stop(self, timeout: Optional[float] = None):
        """Cancel the loops and wait for in-flight sends to finish."""
        logger.info("Stopping dispatch worker...")
        self.running = False
        self._wakeup.set()

        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        if self._active:
            await asyncio.wait(set(self._active), timeout=timeout)
        logger.info("Dispatch worker stopped")

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "claimed": self.total_claimed,
            "in_flight": self._in_flight,
        }


async def main():
    """Main entry point for a standalone worker process."""
    from scheduled_messaging.db.session import db_manager
    from scheduled_messaging.db.redis import redis_manager
    from scheduled_messaging.providers.gateway import ProviderFactory

    init_observability()
    db_manager.init_db()
    await db_manager.create_tables()
    await redis_manager.init_redis()

    gateway = ProviderFactory.create_gateway()
    worker = DispatchWorker(SchedulerStore(db_manager), gateway, notifier=redis_manager)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_requested.set)

    exit_code = 0
    try:
        await worker.start()
        if not worker.enabled:
            logger.warning("SCHEDULER_ENABLED is false, worker has nothing to do")
            return
        await stop_requested.wait()
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.error(f"Worker failed: {e}")
        exit_code = 1
    finally:
        await worker.stop(timeout=settings.provider_timeout * 2)
        await gateway.close()
        await redis_manager.close()
        await db_manager.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    asyncio.run(main())
