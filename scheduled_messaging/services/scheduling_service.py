"""
Caller-facing operations for scheduled messages.
"""

import re
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from scheduled_messaging.core.config import settings
from scheduled_messaging.core.exceptions import ValidationError
from scheduled_messaging.core.observability import get_logger, MetricsCollector, trace_operation, monitor_performance
from scheduled_messaging.models.database import (
    MessageKind, ProviderRole, ScheduledMessage, ScheduledStatus, to_naive_utc, utcnow
)
from scheduled_messaging.providers.base import DeliveryStatus, ProviderDeliveryState
from scheduled_messaging.services.cost_calculator import CostBreakdown, CostCalculator
from scheduled_messaging.services.recipients import partition_recipients
from scheduled_messaging.services.scheduler_store import SchedulerStore


logger = get_logger(__name__)

_ALPHANUMERIC_SENDER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 .\-]{0,10}$")
_NUMERIC_SENDER = re.compile(r"^\+?[0-9]{3,15}$")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SchedulingService:
    """Validates, persists and inspects scheduled messages."""

    def __init__(
        self,
        store: SchedulerStore,
        gateway,
        worker=None,
        cache=None,
        calculator: Optional[CostCalculator] = None,
    ):
        """
        Args:
            store: Scheduler store
            gateway: Provider gateway, used for estimates and delivery status
            worker: Dispatch worker for manual processing and diagnostics
            cache: Redis manager for terminal status caching and wake-ups
            calculator: Cost calculator; defaults to the gateway's
        """
        self.store = store
        self.gateway = gateway
        self.worker = worker
        self.cache = cache
        self.calculator = calculator or gateway.calculator

    def validate(
        self,
        owner_ref: str,
        kind: Any,
        content: str,
        sender_id: Optional[str],
        recipients: List[str],
        scheduled_at: Optional[datetime],
        max_retries: Optional[int],
    ) -> Dict[str, Any]:
        """
        Check a scheduling request and return its normalized fields.

        Raises ValidationError listing every problem found.
        """
        errors: List[str] = []

        if not owner_ref or not str(owner_ref).strip():
            errors.append("owner_ref is required")

        try:
            kind = MessageKind(kind)
        except ValueError:
            errors.append(f"kind must be one of: {', '.join(k.value for k in MessageKind)}")
            kind = None

        if not content or not content.strip():
            errors.append("content is required")
        elif kind == MessageKind.AUDIO and not re.match(r"^https?://", content):
            errors.append("audio content must be an http(s) URL of the recording")

        sender_id = (sender_id or settings.default_sender_id).strip()
        if not (_ALPHANUMERIC_SENDER.match(sender_id) or _NUMERIC_SENDER.match(sender_id)):
            errors.append("sender_id must be up to 11 alphanumeric characters or a phone number")

        normalized: List[str] = []
        if not recipients:
            errors.append("at least one recipient is required")
        elif len(recipients) > settings.max_recipients:
            errors.append(f"at most {settings.max_recipients} recipients are allowed")
        else:
            normalized, invalid = partition_recipients(recipients)
            if invalid:
                errors.append(f"invalid recipient(s): {', '.join(map(str, invalid[:10]))}")

        if scheduled_at is None:
            errors.append("scheduled_at is required")

        if max_retries is None:
            max_retries = settings.default_max_retries
        if not isinstance(max_retries, int) or isinstance(max_retries, bool):
            errors.append("max_retries must be an integer")
        elif not 0 <= max_retries <= settings.max_retries_limit:
            errors.append(f"max_retries must be between 0 and {settings.max_retries_limit}")

        if errors:
            raise ValidationError("; ".join(errors), errors)

        return {
            "owner_ref": str(owner_ref).strip(),
            "kind": kind,
            "content": content,
            "sender_id": sender_id,
            "recipients": normalized,
            "scheduled_at": to_naive_utc(scheduled_at),
            "max_retries": max_retries,
        }

    @trace_operation("schedule_message")
    @monitor_performance("schedule_message")
    async def schedule(
        self,
        owner_ref: str,
        kind: Any,
        content: str,
        sender_id: Optional[str],
        recipients: List[str],
        scheduled_at: datetime,
        max_retries: Optional[int] = None,
    ) -> ScheduledMessage:
        """Persist a pending message with its estimated cost."""
        fields = self.validate(owner_ref, kind, content, sender_id, recipients, scheduled_at, max_retries)
        estimate = self.calculator.estimate(fields["content"], fields["recipients"], fields["kind"])

        message = await self.store.create(cost=estimate.total_cost, **fields)

        if message.scheduled_at <= utcnow():
            await self._notify_due(message)
        return message

    async def _notify_due(self, message: ScheduledMessage):
        if self.worker is not None:
            self.worker.trigger()
        if self.cache is not None:
            await self.cache.publish(
                settings.scheduler_wakeup_channel,
                {"message_id": str(message.id), "scheduled_at": message.scheduled_at.isoformat()}
            )

    async def cancel(self, message_id: Any, owner_ref: Optional[str] = None) -> ScheduledMessage:
        return await self.store.cancel(message_id, owner_ref=owner_ref)

    @monitor_performance("list_scheduled")
    async def list_messages(
        self,
        owner_ref: str,
        kind: Any = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """One page of an owner's messages plus paging totals."""
        errors: List[str] = []
        if not owner_ref or not str(owner_ref).strip():
            errors.append("owner_ref is required")
        if kind is not None:
            try:
                kind = MessageKind(kind)
            except ValueError:
                errors.append(f"kind must be one of: {', '.join(k.value for k in MessageKind)}")
        if page < 1:
            errors.append("page must be at least 1")
        if not 1 <= limit <= settings.list_page_limit:
            errors.append(f"limit must be between 1 and {settings.list_page_limit}")
        if errors:
            raise ValidationError("; ".join(errors), errors)

        search = search.strip() if search else None
        items, total = await self.store.list_for_owner(
            str(owner_ref).strip(), kind=kind, search=search or None, page=page, limit=limit
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        }

    async def get_updates(self, message_ids: List[Any], owner_ref: Optional[str] = None) -> List[ScheduledMessage]:
        """
        Current state of several messages, for callers polling a batch.

        Ids that do not exist (or belong to another owner) are left out.
        """
        if not message_ids:
            raise ValidationError("at least one message id is required")
        if len(message_ids) > settings.max_update_ids:
            raise ValidationError(f"at most {settings.max_update_ids} message ids are allowed")
        return await self.store.get_many(message_ids, owner_ref=owner_ref)

    async def get_status(self, message_id: Any) -> ScheduledMessage:
        """Current record; terminal records are served from cache once seen."""
        cache_key = f"scheduled:{message_id}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached:
                MetricsCollector.track_cache_operation("get", True)
                return self._from_cache(cached)
            MetricsCollector.track_cache_operation("get", False)

        message = await self.store.get(message_id)

        if self.cache is not None and message.status.is_terminal:
            await self.cache.set(cache_key, self._to_cache(message), ttl=settings.status_cache_ttl)
            MetricsCollector.track_cache_operation("set", True)
        return message

    @staticmethod
    def _to_cache(message: ScheduledMessage) -> Dict[str, Any]:
        return {
            "id": str(message.id),
            "owner_ref": message.owner_ref,
            "kind": message.kind.value,
            "content": message.content,
            "sender_id": message.sender_id,
            "recipients": list(message.recipients or []),
            "recipient_count": message.recipient_count,
            "scheduled_at": _iso(message.scheduled_at),
            "status": message.status.value,
            "cost": str(message.cost),
            "retry_count": message.retry_count,
            "max_retries": message.max_retries,
            "error_message": message.error_message,
            "provider": message.provider.value if message.provider else None,
            "provider_name": message.provider_name,
            "provider_message_id": message.provider_message_id,
            "accepted_count": message.accepted_count,
            "rejected_count": message.rejected_count,
            "processed_at": _iso(message.processed_at),
            "sent_at": _iso(message.sent_at),
            "failed_at": _iso(message.failed_at),
            "cancelled_at": _iso(message.cancelled_at),
            "created_at": _iso(message.created_at),
            "updated_at": _iso(message.updated_at),
        }

    @staticmethod
    def _from_cache(data: Dict[str, Any]) -> ScheduledMessage:
        # Detached instance, never added to a session
        return ScheduledMessage(
            id=uuid.UUID(data["id"]),
            owner_ref=data["owner_ref"],
            kind=MessageKind(data["kind"]),
            content=data["content"],
            sender_id=data["sender_id"],
            recipients=data.get("recipients", []),
            recipient_count=data["recipient_count"],
            scheduled_at=_parse(data["scheduled_at"]),
            status=ScheduledStatus(data["status"]),
            cost=Decimal(data["cost"]),
            retry_count=data["retry_count"],
            max_retries=data["max_retries"],
            error_message=data.get("error_message"),
            provider=ProviderRole(data["provider"]) if data.get("provider") else None,
            provider_name=data.get("provider_name"),
            provider_message_id=data.get("provider_message_id"),
            accepted_count=data.get("accepted_count"),
            rejected_count=data.get("rejected_count"),
            processed_at=_parse(data.get("processed_at")),
            sent_at=_parse(data.get("sent_at")),
            failed_at=_parse(data.get("failed_at")),
            cancelled_at=_parse(data.get("cancelled_at")),
            created_at=_parse(data.get("created_at")),
            updated_at=_parse(data.get("updated_at")),
        )

    async def force_process_now(self) -> Dict[str, Any]:
        """Run one processing pass immediately, even when the loops are disabled."""
        if self.worker is None:
            raise RuntimeError("No dispatch worker configured")
        summary = await self.worker.process_due()
        logger.info("Manual processing pass", **summary.to_dict())
        return summary.to_dict()

    async def health(self) -> Dict[str, int]:
        counts = await self.store.count_by_status()
        failed_recent = await self.store.count_failed_since(utcnow() - timedelta(hours=24))
        return {
            "claimed": self.worker.total_claimed if self.worker is not None else 0,
            "pending": counts[ScheduledStatus.PENDING.value],
            "processing": counts[ScheduledStatus.PROCESSING.value],
            "failed_last_24h": failed_recent,
        }

    def estimate_cost(self, kind: Any, content: str, recipients: List[str]) -> CostBreakdown:
        try:
            kind = MessageKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown message kind: {kind}")
        if not recipients:
            raise ValidationError("at least one recipient is required")
        return self.gateway.estimate_cost(kind, recipients, content or "")

    async def get_delivery_status(self, message_id: Any) -> DeliveryStatus:
        """Reconcile with the provider variant that accepted the message."""
        message = await self.store.get(message_id)
        if not message.provider_message_id:
            return DeliveryStatus(
                provider_message_id="",
                status=ProviderDeliveryState.UNKNOWN,
                error=f"Message is {message.status.value} and has no provider message id",
            )
        return await self.gateway.get_message_status(
            message.provider_message_id, message.provider or ProviderRole.PRIMARY
        )
