"""Core utilities and configuration."""

from scheduled_messaging.core.config import settings, get_settings
from scheduled_messaging.core.observability import (
    get_logger,
    MetricsCollector,
    health_monitor,
    init_observability,
    trace_operation,
    monitor_performance,
)

__all__ = [
    "settings",
    "get_settings",
    "get_logger",
    "MetricsCollector",
    "health_monitor",
    "init_observability",
    "trace_operation",
    "monitor_performance",
]
