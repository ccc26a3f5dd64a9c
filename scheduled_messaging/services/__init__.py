"""Scheduling services."""

from scheduled_messaging.services.cost_calculator import CostCalculator, CostBreakdown
from scheduled_messaging.services.recipients import normalize_phone_number, partition_recipients
from scheduled_messaging.services.scheduler_store import SchedulerStore
from scheduled_messaging.services.scheduling_service import SchedulingService

__all__ = [
    "CostCalculator",
    "CostBreakdown",
    "normalize_phone_number",
    "partition_recipients",
    "SchedulerStore",
    "SchedulingService",
]
