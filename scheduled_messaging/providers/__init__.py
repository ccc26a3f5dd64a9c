"""Delivery backends and the failover gateway."""

from scheduled_messaging.providers.base import (
    DeliveryBackend,
    DeliveryResult,
    DeliveryStatus,
    DeliveryOutcome,
    HttpDeliveryBackend,
    SimulatedDeliveryBackend,
)
from scheduled_messaging.providers.gateway import ProviderGateway, ProviderFactory

__all__ = [
    "DeliveryBackend",
    "DeliveryResult",
    "DeliveryStatus",
    "DeliveryOutcome",
    "HttpDeliveryBackend",
    "SimulatedDeliveryBackend",
    "ProviderGateway",
    "ProviderFactory",
]
