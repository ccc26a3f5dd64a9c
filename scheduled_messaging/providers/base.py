"""
Provider abstraction layer implementing strategy pattern for delivery backends.
Every backend exposes the same capability set: send, health check, status lookup.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from datetime import datetime
import asyncio
import enum
import random
import time

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_fixed, retry_if_exception_type
from circuitbreaker import CircuitBreaker, CircuitBreakerError

from scheduled_messaging.core.config import settings
from scheduled_messaging.core.exceptions import (
    ProviderError, ProviderTransientError, ProviderRejectedError
)
from scheduled_messaging.core.observability import get_logger, MetricsCollector, trace_operation
from scheduled_messaging.models.database import MessageKind, ProviderRole


logger = get_logger(__name__)


class DeliveryOutcome(str, enum.Enum):
    """Aggregate outcome of one send across its recipients."""
    ACCEPTED = "accepted"
    PARTIAL = "partial"
    REJECTED = "rejected"


class ProviderDeliveryState(str, enum.Enum):
    """Normalized post-send delivery state reported by a provider."""
    DELIVERED = "delivered"
    SENT = "sent"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class BackendResponse:
    """What a single backend reports for an accepted request."""
    provider_message_id: str
    accepted_count: int
    rejected_count: int = 0
    rejected_recipients: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    """Gateway-level result of a send, whichever variant handled it."""
    status: DeliveryOutcome
    provider_message_id: Optional[str]
    accepted_count: int
    rejected_count: int
    provider: Optional[ProviderRole]
    provider_name: Optional[str] = None
    rejected_recipients: List[str] = field(default_factory=list)
    accepted_recipients: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "provider_message_id": self.provider_message_id,
            "accepted_count": self.accepted_count,
            "rejected_count": self.rejected_count,
            "provider": self.provider.value if self.provider else None,
            "provider_name": self.provider_name,
            "rejected_recipients": list(self.rejected_recipients),
        }


@dataclass
class DeliveryStatus:
    """Reconciliation status for an accepted send."""
    provider_message_id: str
    status: ProviderDeliveryState
    delivered_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    provider: Optional[ProviderRole] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_message_id": self.provider_message_id,
            "status": self.status.value,
            "delivered_count": self.delivered_count,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "provider": self.provider.value if self.provider else None,
            "error": self.error,
            "timestamp": self.timestamp,
        }


def map_provider_status(provider_status: Optional[str]) -> ProviderDeliveryState:
    """Map provider-specific status strings to the standard set."""
    status = (provider_status or "").lower()
    if status in ("delivered", "completed", "success"):
        return ProviderDeliveryState.DELIVERED
    if status in ("sent", "queued", "accepted", "processing"):
        return ProviderDeliveryState.SENT
    if status in ("failed", "rejected", "error", "expired", "undelivered"):
        return ProviderDeliveryState.FAILED
    return ProviderDeliveryState.UNKNOWN


class DeliveryBackend(ABC):
    """Abstract base class for delivery backends."""

    name: str

    @abstractmethod
    async def send(
        self,
        kind: MessageKind,
        recipients: List[str],
        content: str,
        sender_id: str
    ) -> BackendResponse:
        """Send one message to normalized recipients."""

    @abstractmethod
    async def get_status(self, provider_message_id: str) -> DeliveryStatus:
        """Get delivery status from the provider."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check provider health."""

    async def close(self):
        """Release network resources."""


class HttpDeliveryBackend(DeliveryBackend):
    """
    JSON-over-HTTP delivery backend.

    Each send gets one bounded internal retry on transient failures (timeouts,
    network errors, 5xx and 429). A per-instance circuit breaker stops hammering
    a backend that keeps failing.
    """

    SEND_PATHS = {
        MessageKind.TEXT: "/sms/send",
        MessageKind.VOICE: "/voice/send",
        MessageKind.AUDIO: "/audio/send",
    }
    SUCCESS_STATUSES = {"success", "ok", "queued", "accepted", "sent"}

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        timeout: Optional[float] = None,
        retry_wait: Optional[float] = None,
        max_attempts: int = 2,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else settings.provider_timeout
        self.retry_wait = retry_wait if retry_wait is not None else settings.provider_retry_wait
        self.max_attempts = max_attempts
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            timeout=self.timeout,
            transport=transport,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=failure_threshold or settings.provider_failure_threshold,
            recovery_timeout=recovery_timeout or settings.provider_recovery_timeout,
            expected_exception=ProviderTransientError,
            name=f"provider:{name}",
        )
        self._guarded_post = self.breaker(self._post_send)

    @trace_operation("backend_send")
    async def send(
        self,
        kind: MessageKind,
        recipients: List[str],
        content: str,
        sender_id: str
    ) -> BackendResponse:
        kind = MessageKind(kind)
        payload = {
            "type": kind.value,
            "to": recipients,
            "sender": sender_id,
        }
        if kind == MessageKind.AUDIO:
            payload["audio_url"] = content
        else:
            payload["message"] = content

        response = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.retry_wait),
                retry=retry_if_exception_type(ProviderTransientError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying send after transient provider error",
                            provider=self.name,
                            attempt=attempt.retry_state.attempt_number
                        )
                    response = await self._guarded_post(self.SEND_PATHS[kind], payload)
        except CircuitBreakerError as e:
            MetricsCollector.track_provider_error(self.name, "circuit_open")
            raise ProviderError(f"Circuit open for provider {self.name}", self.name) from e
        except ProviderError as e:
            MetricsCollector.track_provider_error(self.name, type(e).__name__)
            logger.error(
                "Provider send failed",
                provider=self.name,
                error=str(e),
                recipient_count=len(recipients)
            )
            raise

        return self._parse_send_response(response, recipients)

    async def _post_send(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Provider timeout: {e}", self.name) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Provider network error: {e}", self.name) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderTransientError(
                "Provider rate limit exceeded",
                self.name,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if response.status_code >= 500:
            raise ProviderTransientError(
                f"Provider server error {response.status_code}", self.name
            )
        if response.status_code >= 400:
            raise ProviderRejectedError(
                f"Provider rejected request: {self._error_text(response)}",
                self.name,
                status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderRejectedError("Invalid JSON response from provider", self.name) from e

    def _parse_send_response(self, data: Dict[str, Any], recipients: List[str]) -> BackendResponse:
        if not isinstance(data, dict):
            raise ProviderRejectedError(
                f"Malformed provider response: expected an object, got {type(data).__name__}", self.name
            )

        status = str(data.get("status", "")).lower()
        code = str(data.get("code", ""))
        if status not in self.SUCCESS_STATUSES and code not in ("1000", "200", "ok"):
            raise ProviderRejectedError(
                f"Provider API error: {data.get('message') or 'Unknown error'}", self.name
            )

        try:
            rejected_recipients = [r for r in data.get("failed_recipients") or [] if r in recipients]
            rejected_count = int(data.get("failed") or len(rejected_recipients))
        except (AttributeError, TypeError, ValueError) as e:
            raise ProviderRejectedError(f"Malformed provider response: {e}", self.name) from e
        rejected_count = min(max(rejected_count, 0), len(recipients))
        message_id = data.get("message_id") or data.get("id")
        if not message_id:
            raise ProviderRejectedError("Provider response carried no message id", self.name)

        return BackendResponse(
            provider_message_id=str(message_id),
            accepted_count=len(recipients) - rejected_count,
            rejected_count=rejected_count,
            rejected_recipients=rejected_recipients,
            raw=data,
        )

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            return response.json().get("message") or response.text
        except (AttributeError, ValueError):
            return response.text

    async def get_status(self, provider_message_id: str) -> DeliveryStatus:
        try:
            response = await self.client.get(f"/status/{provider_message_id}")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderRejectedError(
                f"Status lookup failed: {e.response.status_code}",
                self.name,
                status_code=e.response.status_code
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderTransientError(f"Status lookup failed: {e}", self.name) from e

        try:
            return DeliveryStatus(
                provider_message_id=provider_message_id,
                status=map_provider_status(data.get("status")),
                delivered_count=int(data.get("delivered") or 0),
                sent_count=int(data.get("sent") or 0),
                failed_count=int(data.get("failed") or 0),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ProviderRejectedError(f"Malformed status response: {e}", self.name) from e

    async def health_check(self) -> bool:
        if self.breaker.opened:
            return False
        try:
            response = await self.client.get("/health")
            return response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning("Provider health check failed", provider=self.name, error=str(e))
            return False

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()


class SimulatedDeliveryBackend(DeliveryBackend):
    """
    Development backend that accepts every send without network calls.

    Messages report "sent" for the first minute and "delivered" afterwards.
    Only the latest ``max_tracked`` sends are remembered; older ids report
    "unknown".
    """

    def __init__(self, name: str, latency: float = 0.05, healthy: bool = True, max_tracked: int = 10000):
        self.name = name
        self.latency = latency
        self.healthy = healthy
        self.max_tracked = max_tracked
        self._sent: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    async def send(
        self,
        kind: MessageKind,
        recipients: List[str],
        content: str,
        sender_id: str
    ) -> BackendResponse:
        if self.latency:
            await asyncio.sleep(self.latency)
        message_id = f"sim_{self.name}_{int(time.time() * 1000)}_{random.randint(0, 9999)}"
        self._sent[message_id] = {"count": len(recipients), "sent_at": time.monotonic()}
        while len(self._sent) > self.max_tracked:
            self._sent.popitem(last=False)

        logger.info(
            "Simulated send",
            provider=self.name,
            kind=MessageKind(kind).value,
            recipient_count=len(recipients),
            sender=sender_id,
            message_id=message_id
        )
        return BackendResponse(provider_message_id=message_id, accepted_count=len(recipients))

    async def get_status(self, provider_message_id: str) -> DeliveryStatus:
        record = self._sent.get(provider_message_id)
        if record is None:
            return DeliveryStatus(provider_message_id, ProviderDeliveryState.UNKNOWN)
        if time.monotonic() - record["sent_at"] < 60:
            return DeliveryStatus(provider_message_id, ProviderDeliveryState.SENT, sent_count=record["count"])
        return DeliveryStatus(
            provider_message_id, ProviderDeliveryState.DELIVERED, delivered_count=record["count"]
        )

    async def health_check(self) -> bool:
        return self.healthy
