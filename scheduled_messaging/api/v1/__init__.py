"""API v1 endpoints."""

from scheduled_messaging.api.v1 import scheduled, health
from scheduled_messaging.api.v1.models import (
    ScheduleMessageRequest,
    ScheduledMessageResponse,
    CostEstimateRequest,
    CostEstimateResponse,
    HealthResponse,
    ErrorResponse,
)

__all__ = [
    "scheduled",
    "health",
    "ScheduleMessageRequest",
    "ScheduledMessageResponse",
    "CostEstimateRequest",
    "CostEstimateResponse",
    "HealthResponse",
    "ErrorResponse",
]
