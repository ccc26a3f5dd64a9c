"""Test configuration and fixtures."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Iterable, List, Optional

import pytest

from scheduled_messaging.core.exceptions import ProviderTransientError
from scheduled_messaging.db.session import DatabaseManager
from scheduled_messaging.models.database import MessageKind, utcnow
from scheduled_messaging.providers.base import (
    BackendResponse, DeliveryBackend, DeliveryStatus, ProviderDeliveryState
)
from scheduled_messaging.providers.gateway import ProviderGateway
from scheduled_messaging.services.cost_calculator import CostCalculator
from scheduled_messaging.services.scheduler_store import SchedulerStore


class ScriptedBackend(DeliveryBackend):
    """In-memory backend whose behaviour each test scripts."""

    def __init__(
        self,
        name: str,
        error: Optional[Exception] = None,
        healthy: bool = True,
        reject: Iterable[str] = (),
        reject_all: bool = False,
        delay: float = 0.0,
        health_error: Optional[Exception] = None,
    ):
        self.name = name
        self.error = error
        self.healthy = healthy
        self.reject = set(reject)
        self.reject_all = reject_all
        self.delay = delay
        self.health_error = health_error
        self.calls: List[List[str]] = []
        self.health_checks = 0
        self.active = 0
        self.max_active = 0

    async def send(self, kind, recipients, content, sender_id) -> BackendResponse:
        self.calls.append(list(recipients))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
        finally:
            self.active -= 1

        rejected = list(recipients) if self.reject_all else [r for r in recipients if r in self.reject]
        return BackendResponse(
            provider_message_id=f"{self.name}-{len(self.calls)}",
            accepted_count=len(recipients) - len(rejected),
            rejected_count=len(rejected),
            rejected_recipients=rejected,
        )

    async def get_status(self, provider_message_id: str) -> DeliveryStatus:
        if self.error is not None:
            raise self.error
        return DeliveryStatus(provider_message_id, ProviderDeliveryState.DELIVERED, delivered_count=1)

    async def health_check(self) -> bool:
        self.health_checks += 1
        if self.health_error is not None:
            raise self.health_error
        return self.healthy


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """File-backed SQLite so that concurrent sessions see one database."""
    manager = DatabaseManager()
    manager.init_db(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def store(database) -> SchedulerStore:
    return SchedulerStore(database, backoff_base=60, backoff_max=3600)


@pytest.fixture
def immediate_store(database) -> SchedulerStore:
    """Store whose retries are due again immediately."""
    return SchedulerStore(database, backoff_base=0, backoff_max=0)


@pytest.fixture
def calculator() -> CostCalculator:
    return CostCalculator(
        domestic_sms_rate=Decimal("4.00"),
        international_sms_rate=Decimal("20.00"),
        domestic_voice_rate=Decimal("15.00"),
        international_voice_rate=Decimal("60.00"),
        dialing_code="234",
    )


@pytest.fixture
def primary_backend() -> ScriptedBackend:
    return ScriptedBackend("primary-sms")


@pytest.fixture
def backup_backend() -> ScriptedBackend:
    return ScriptedBackend("backup-sms")


@pytest.fixture
def failing_primary() -> ScriptedBackend:
    return ScriptedBackend("primary-sms", error=ProviderTransientError("Provider server error 500", "primary-sms"))


@pytest.fixture
def make_gateway(calculator):
    def factory(primary, backup=None, timeout=1.0, health_ttl=30.0):
        return ProviderGateway(
            primary,
            backup,
            calculator=calculator,
            default_sender="Broadcast",
            timeout=timeout,
            health_ttl=health_ttl,
            dialing_code="234",
        )
    return factory


@pytest.fixture
def domestic_recipients() -> List[str]:
    return ["+2348030000001", "+2348030000002", "+2348030000003"]


@pytest.fixture
def create_message(store):
    """Persist a message that is already due."""
    async def factory(
        target_store: Optional[SchedulerStore] = None,
        recipients: Optional[List[str]] = None,
        max_retries: int = 3,
        due_in: timedelta = timedelta(minutes=-1),
        content: str = "Service reminder: your appointment is tomorrow 9am",
        kind: MessageKind = MessageKind.TEXT,
        owner_ref: str = "account-42",
        sender_id: str = "Clinic",
    ):
        return await (target_store or store).create(
            owner_ref=owner_ref,
            kind=kind,
            content=content,
            sender_id=sender_id,
            recipients=recipients or ["+2348030000001", "+2348030000002"],
            scheduled_at=utcnow() + due_in,
            cost=Decimal("8.00"),
            max_retries=max_retries,
        )
    return factory


@pytest.fixture
def backend_factory():
    """Build scripted backends with per-test behaviour."""
    return ScriptedBackend
