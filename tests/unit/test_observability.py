import pytest
from unittest.mock import patch

from scheduled_messaging.core.observability import (
    HealthMonitor, MetricsCollector, init_observability, monitor_performance
)


@patch("scheduled_messaging.core.observability.setup_logging")
@patch("scheduled_messaging.core.observability.setup_tracing")
def test_init_observability(mock_tracing, mock_logging):
    init_observability()
    mock_logging.assert_called_once()
    mock_tracing.assert_called_once()


def test_metrics_collector():
    MetricsCollector.track_scheduled("text")
    MetricsCollector.track_transition("claimed", 3)
    MetricsCollector.track_transition("claimed", 0)
    MetricsCollector.track_delivery("text", "accepted", "primary-sms")
    MetricsCollector.track_failover("primary-sms", "backup-sms")
    MetricsCollector.track_provider_error("primary-sms", "ProviderTransientError")
    MetricsCollector.update_provider_health("primary-sms", False)
    MetricsCollector.update_queue_depth("pending", 10)
    MetricsCollector.update_in_flight(2)
    MetricsCollector.track_cache_operation("get", True)
    MetricsCollector.track_api_request("GET", "/test", 200, 0.1)

    with MetricsCollector.track_duration("text", "primary-sms"):
        pass

    exposition = MetricsCollector.get_metrics().decode()
    assert "provider_failovers_total" in exposition
    assert "dispatch_in_flight 2.0" in exposition


@pytest.mark.asyncio
async def test_health_monitor():
    monitor = HealthMonitor()

    def sync_check():
        return True

    async def async_check():
        return True

    def fail_check():
        return False

    monitor.register_check("sync", sync_check)
    monitor.register_check("async", async_check)

    result = await monitor.check_health()
    assert result["status"] == "healthy"
    assert result["checks"]["sync"]["status"] == "healthy"
    assert result["checks"]["async"]["status"] == "healthy"

    monitor.register_check("fail", fail_check)
    result = await monitor.check_health()
    assert result["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_health_monitor_reports_raising_check():
    monitor = HealthMonitor()

    async def broken():
        raise ConnectionError("redis down")

    monitor.register_check("redis", broken)
    result = await monitor.check_health()

    assert result["status"] == "unhealthy"
    assert result["checks"]["redis"]["error"] == "redis down"


@pytest.mark.asyncio
async def test_monitor_performance_reraises():
    @monitor_performance("explode")
    async def explode():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await explode()
