"""
Provider gateway: health-ordered failover across the primary and backup backends.
"""

import asyncio
import time
from typing import Dict, List, Optional, Tuple

from scheduled_messaging.core.config import settings
from scheduled_messaging.core.exceptions import (
    ProviderError, ProviderUnavailableError, ValidationError
)
from scheduled_messaging.core.observability import get_logger, MetricsCollector, trace_operation
from scheduled_messaging.models.database import MessageKind, ProviderRole
from scheduled_messaging.providers.base import (
    DeliveryBackend, DeliveryOutcome, DeliveryResult, DeliveryStatus,
    HttpDeliveryBackend, ProviderDeliveryState, SimulatedDeliveryBackend
)
from scheduled_messaging.services.cost_calculator import CostBreakdown, CostCalculator
from scheduled_messaging.services.recipients import partition_recipients


logger = get_logger(__name__)


class ProviderGateway:
    """
    Sends through the healthiest configured variant.

    Health is remembered per variant for ``health_ttl`` seconds. A variant that
    fails a send is marked unhealthy so that later sends go straight to the
    backup until the entry expires or a health check says otherwise.
    """

    def __init__(
        self,
        primary: DeliveryBackend,
        backup: Optional[DeliveryBackend] = None,
        calculator: Optional[CostCalculator] = None,
        default_sender: Optional[str] = None,
        timeout: Optional[float] = None,
        health_ttl: Optional[float] = None,
        dialing_code: Optional[str] = None,
    ):
        self.backends: Dict[ProviderRole, DeliveryBackend] = {ProviderRole.PRIMARY: primary}
        if backup is not None:
            self.backends[ProviderRole.BACKUP] = backup
        self.calculator = calculator or CostCalculator(dialing_code=dialing_code)
        self.default_sender = default_sender or settings.default_sender_id
        # Covers the backend's internal retry as well as each HTTP attempt
        self.timeout = timeout if timeout is not None else (
            settings.provider_timeout * 2 + settings.provider_retry_wait
        )
        self.health_ttl = health_ttl if health_ttl is not None else settings.provider_health_ttl
        self.dialing_code = dialing_code or settings.domestic_dialing_code
        self._health: Dict[ProviderRole, Tuple[bool, float]] = {}

    @property
    def backup_enabled(self) -> bool:
        return ProviderRole.BACKUP in self.backends

    def _mark(self, role: ProviderRole, healthy: bool):
        self._health[role] = (healthy, time.monotonic())
        MetricsCollector.update_provider_health(self.backends[role].name, healthy)

    def _known_healthy(self, role: ProviderRole) -> Optional[bool]:
        """Cached health, or None when never checked or expired."""
        entry = self._health.get(role)
        if entry is None:
            return None
        healthy, checked_at = entry
        if time.monotonic() - checked_at > self.health_ttl:
            return None
        return healthy

    def candidates(self) -> List[ProviderRole]:
        """Variants in the order a send should try them."""
        roles = list(self.backends)
        if (
            self.backup_enabled
            and self._known_healthy(ProviderRole.PRIMARY) is False
            and self._known_healthy(ProviderRole.BACKUP) is not False
        ):
            roles = [ProviderRole.BACKUP, ProviderRole.PRIMARY]
        return roles

    @trace_operation("gateway_send")
    async def send_message(
        self,
        kind: MessageKind,
        recipients: List[str],
        content: str,
        sender_id: Optional[str] = None
    ) -> DeliveryResult:
        """
        Deliver one message to every valid recipient.

        Malformed recipients are counted as rejected and never reach a backend.
        Raises ProviderUnavailableError once every variant has failed.
        """
        kind = MessageKind(kind)
        if not recipients:
            raise ValidationError("At least one recipient is required")
        if not content:
            raise ValidationError("Message content is required")

        valid, invalid = partition_recipients(recipients, self.dialing_code)
        if not valid:
            logger.warning("No valid recipients, nothing sent", rejected_count=len(invalid))
            MetricsCollector.track_delivery(kind.value, DeliveryOutcome.REJECTED.value, "none")
            return DeliveryResult(
                status=DeliveryOutcome.REJECTED,
                provider_message_id=None,
                accepted_count=0,
                rejected_count=len(invalid),
                provider=None,
                rejected_recipients=list(invalid),
            )

        sender = sender_id or self.default_sender
        attempts: List[str] = []
        previous: Optional[ProviderRole] = None

        for role in self.candidates():
            backend = self.backends[role]
            if previous is not None:
                MetricsCollector.track_failover(previous.value, role.value)
                logger.warning(
                    "Failing over to next provider",
                    from_provider=previous.value,
                    to_provider=role.value
                )
            previous = role

            try:
                with MetricsCollector.track_duration(kind.value, backend.name):
                    response = await asyncio.wait_for(
                        backend.send(kind, valid, content, sender),
                        timeout=self.timeout
                    )
            except asyncio.TimeoutError:
                self._mark(role, False)
                MetricsCollector.track_provider_error(backend.name, "timeout")
                attempts.append(f"{role.value}: timed out after {self.timeout}s")
                continue
            except ProviderError as e:
                self._mark(role, False)
                attempts.append(f"{role.value}: {e}")
                continue
            except Exception as e:
                # A broken backend counts as a failed variant, the next one still gets its turn
                self._mark(role, False)
                MetricsCollector.track_provider_error(backend.name, type(e).__name__)
                logger.error(
                    "Unexpected provider failure",
                    provider=role.value,
                    provider_name=backend.name,
                    error=str(e) or type(e).__name__,
                    exc_info=True
                )
                attempts.append(f"{role.value}: {type(e).__name__}: {e}")
                continue

            self._mark(role, True)
            rejected = list(invalid) + list(response.rejected_recipients)
            rejected_count = len(invalid) + response.rejected_count
            accepted_count = response.accepted_count

            if accepted_count == 0:
                status = DeliveryOutcome.REJECTED
            elif rejected_count:
                status = DeliveryOutcome.PARTIAL
            else:
                status = DeliveryOutcome.ACCEPTED

            named_rejects = set(response.rejected_recipients)
            accepted = [r for r in valid if r not in named_rejects]

            MetricsCollector.track_delivery(kind.value, status.value, role.value)
            logger.info(
                "Message handed to provider",
                provider=role.value,
                provider_name=backend.name,
                provider_message_id=response.provider_message_id,
                status=status.value,
                accepted_count=accepted_count,
                rejected_count=rejected_count
            )
            return DeliveryResult(
                status=status,
                provider_message_id=response.provider_message_id,
                accepted_count=accepted_count,
                rejected_count=rejected_count,
                provider=role,
                provider_name=backend.name,
                rejected_recipients=rejected,
                accepted_recipients=accepted,
            )

        MetricsCollector.track_delivery(kind.value, "unavailable", "none")
        logger.error("All providers failed", attempts=attempts)
        raise ProviderUnavailableError(
            "All providers failed: " + "; ".join(attempts), attempts=attempts
        )

    async def health_check(self, force: bool = False) -> Dict[str, str]:
        """Check each variant, reusing fresh cached results unless forced."""
        results = {}
        for role in (ProviderRole.PRIMARY, ProviderRole.BACKUP):
            backend = self.backends.get(role)
            if backend is None:
                results[role.value] = "disabled"
                continue

            healthy = None if force else self._known_healthy(role)
            if healthy is None:
                try:
                    healthy = await asyncio.wait_for(backend.health_check(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    healthy = False
                except Exception as e:
                    logger.warning(
                        "Provider health check raised",
                        provider=role.value,
                        provider_name=backend.name,
                        error=str(e) or type(e).__name__
                    )
                    healthy = False
                self._mark(role, bool(healthy))
            results[role.value] = "healthy" if healthy else "unhealthy"
        return results

    async def get_message_status(
        self,
        provider_message_id: str,
        provider: ProviderRole = ProviderRole.PRIMARY
    ) -> DeliveryStatus:
        """Look up delivery status on the variant that accepted the message."""
        role = ProviderRole(provider) if provider else ProviderRole.PRIMARY
        backend = self.backends.get(role)
        if backend is None:
            return DeliveryStatus(
                provider_message_id=provider_message_id,
                status=ProviderDeliveryState.UNKNOWN,
                provider=role,
                error=f"Provider {role.value} is not configured",
            )

        try:
            status = await asyncio.wait_for(
                backend.get_status(provider_message_id), timeout=self.timeout
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.error(
                "Failed to get message status",
                provider=role.value,
                provider_message_id=provider_message_id,
                error=str(e) or type(e).__name__
            )
            return DeliveryStatus(
                provider_message_id=provider_message_id,
                status=ProviderDeliveryState.UNKNOWN,
                provider=role,
                error=str(e) or type(e).__name__,
            )

        status.provider = role
        return status

    def estimate_cost(
        self,
        kind: MessageKind,
        recipients: List[str],
        content: str
    ) -> CostBreakdown:
        valid, _ = partition_recipients(recipients, self.dialing_code)
        return self.calculator.estimate(content, valid, kind)

    async def close(self):
        for backend in self.backends.values():
            await backend.close()


class ProviderFactory:
    """Factory for creating backends and the gateway from settings."""

    @staticmethod
    def create_backend(
        kind: str,
        name: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> DeliveryBackend:
        if kind == "http":
            if not base_url:
                raise ValueError(f"Provider {name} needs a base URL")
            return HttpDeliveryBackend(name=name, base_url=base_url, api_key=api_key or "")
        if kind == "simulated":
            return SimulatedDeliveryBackend(name=name)
        raise ValueError(f"Unknown provider kind: {kind}")

    @classmethod
    def create_gateway(cls, calculator: Optional[CostCalculator] = None) -> ProviderGateway:
        primary = cls.create_backend(
            settings.primary_provider_kind,
            settings.primary_provider_name,
            settings.primary_provider_url,
            settings.primary_provider_api_key,
        )
        backup = None
        if settings.backup_provider_enabled:
            backup = cls.create_backend(
                settings.backup_provider_kind,
                settings.backup_provider_name,
                settings.backup_provider_url,
                settings.backup_provider_api_key,
            )
        logger.info(
            "Provider gateway configured",
            primary=primary.name,
            backup=backup.name if backup else None
        )
        return ProviderGateway(primary, backup, calculator=calculator)
