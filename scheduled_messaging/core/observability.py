"""
Observability module providing structured logging, metrics collection, and distributed tracing.
"""

import asyncio
import logging
import time
import uuid
from typing import Dict, Any, Callable
from functools import wraps
from contextlib import contextmanager
from datetime import datetime
import structlog
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CollectorRegistry
)
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from scheduled_messaging.core.config import settings


# Initialize structured logging
def setup_logging():
    """Configure structured logging with correlation IDs."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                    structlog.processors.CallsiteParameter.LINENO,
                ]
            ),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.log_level.upper())
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


# Metrics Registry
registry = CollectorRegistry()

scheduled_counter = Counter(
    'scheduled_messages_total',
    'Total number of scheduled messages accepted',
    ['kind'],
    registry=registry
)

transition_counter = Counter(
    'scheduled_message_transitions_total',
    'Lifecycle transitions applied by the scheduler store',
    ['transition'],  # claimed, sent, retry, failed, cancelled, released
    registry=registry
)

delivery_counter = Counter(
    'deliveries_total',
    'Delivery attempts through the provider gateway',
    ['kind', 'status', 'provider'],
    registry=registry
)

delivery_duration = Histogram(
    'delivery_duration_seconds',
    'Provider send duration',
    ['kind', 'provider'],
    registry=registry
)

failover_counter = Counter(
    'provider_failovers_total',
    'Sends that fell over from one gateway variant to the next',
    ['from_provider', 'to_provider'],
    registry=registry
)

provider_errors = Counter(
    'provider_errors_total',
    'Provider API errors',
    ['provider', 'error_type'],
    registry=registry
)

provider_health_gauge = Gauge(
    'provider_healthy',
    'Provider health as last checked (1 healthy, 0 unhealthy)',
    ['provider'],
    registry=registry
)

queue_depth_gauge = Gauge(
    'scheduled_queue_depth',
    'Scheduled messages per lifecycle status',
    ['status'],
    registry=registry
)

in_flight_gauge = Gauge(
    'dispatch_in_flight',
    'Sends currently holding a worker concurrency slot',
    registry=registry
)

cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result'],  # hit/miss
    registry=registry
)

api_request_counter = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

api_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint'],
    registry=registry
)


class MetricsCollector:
    """Collects and exposes application metrics."""

    @staticmethod
    def track_scheduled(kind: str):
        scheduled_counter.labels(kind=kind).inc()

    @staticmethod
    def track_transition(transition: str, count: int = 1):
        if count:
            transition_counter.labels(transition=transition).inc(count)

    @staticmethod
    def track_delivery(kind: str, status: str, provider: str):
        delivery_counter.labels(kind=kind, status=status, provider=provider).inc()

    @staticmethod
    @contextmanager
    def track_duration(kind: str, provider: str):
        """Track send duration."""
        start = time.time()
        try:
            yield
        finally:
            delivery_duration.labels(kind=kind, provider=provider).observe(time.time() - start)

    @staticmethod
    def track_failover(from_provider: str, to_provider: str):
        failover_counter.labels(from_provider=from_provider, to_provider=to_provider).inc()

    @staticmethod
    def track_provider_error(provider: str, error_type: str):
        """Track provider errors."""
        provider_errors.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def update_provider_health(provider: str, healthy: bool):
        provider_health_gauge.labels(provider=provider).set(1 if healthy else 0)

    @staticmethod
    def update_queue_depth(status: str, depth: int):
        """Update queue depth metric."""
        queue_depth_gauge.labels(status=status).set(depth)

    @staticmethod
    def update_in_flight(count: int):
        in_flight_gauge.set(count)

    @staticmethod
    def track_cache_operation(operation: str, hit: bool):
        """Track cache operations."""
        result = "hit" if hit else "miss"
        cache_operations.labels(operation=operation, result=result).inc()

    @staticmethod
    def track_api_request(method: str, endpoint: str, status_code: int, duration: float):
        """Track API request metrics."""
        api_request_counter.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code
        ).inc()
        api_request_duration.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    @staticmethod
    def get_metrics() -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest(registry)


# Tracing Setup
tracer = None


def setup_tracing():
    """Configure OpenTelemetry tracing."""
    global tracer

    if not settings.tracing_enabled:
        return

    resource = Resource.create({
        "service.name": "scheduled-messaging",
        "service.version": settings.app_version,
        "deployment.environment": settings.environment,
    })

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    # Export only outside development
    if settings.environment != "development":
        otlp_exporter = OTLPSpanExporter(
            endpoint="otel-collector:4317",
            insecure=True
        )
        provider.add_span_processor(
            BatchSpanProcessor(otlp_exporter)
        )

    tracer = trace.get_tracer(__name__)


def trace_operation(name: str):
    """Decorator to trace function execution."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if not tracer:
                return await func(*args, **kwargs)

            with tracer.start_as_current_span(name) as span:
                try:
                    span.set_attribute("function.name", func.__name__)
                    result = await func(*args, **kwargs)
                    span.set_status(trace.Status(trace.StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(
                        trace.Status(trace.StatusCode.ERROR, str(e))
                    )
                    span.record_exception(e)
                    raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if not tracer:
                return func(*args, **kwargs)

            with tracer.start_as_current_span(name) as span:
                try:
                    span.set_attribute("function.name", func.__name__)
                    result = func(*args, **kwargs)
                    span.set_status(trace.Status(trace.StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(
                        trace.Status(trace.StatusCode.ERROR, str(e))
                    )
                    span.record_exception(e)
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


class CorrelationIdMiddleware:
    """Middleware to add correlation IDs to requests."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            correlation_id = str(uuid.uuid4())

            structlog.contextvars.bind_contextvars(
                correlation_id=correlation_id
            )

            async def send_wrapper(message):
                if message["type"] == "http.response.start":
                    headers = dict(message.get("headers", []))
                    headers[b"x-correlation-id"] = correlation_id.encode()
                    message["headers"] = list(headers.items())
                await send(message)

            try:
                await self.app(scope, receive, send_wrapper)
            finally:
                structlog.contextvars.unbind_contextvars("correlation_id")
        else:
            await self.app(scope, receive, send)


class HealthMonitor:
    """Monitor application health."""

    def __init__(self):
        self.checks = {}

    def register_check(self, name: str, check_func: Callable):
        """Register a health check."""
        self.checks[name] = check_func

    async def check_health(self) -> Dict[str, Any]:
        """Run all health checks."""
        results = {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "checks": {}
        }

        for name, check_func in self.checks.items():
            try:
                if asyncio.iscoroutinefunction(check_func):
                    result = await check_func()
                else:
                    result = check_func()

                results["checks"][name] = {
                    "status": "healthy" if result else "unhealthy",
                    "result": result
                }

                if not result:
                    results["status"] = "unhealthy"

            except Exception as e:
                results["checks"][name] = {
                    "status": "unhealthy",
                    "error": str(e)
                }
                results["status"] = "unhealthy"

        return results


health_monitor = HealthMonitor()


def monitor_performance(operation_name: str):
    """Decorator to monitor function performance."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = get_logger(__name__)
            start_time = time.time()

            try:
                result = await func(*args, **kwargs)
                logger.debug(
                    f"{operation_name} completed",
                    operation=operation_name,
                    duration=time.time() - start_time,
                    status="success"
                )
                return result

            except Exception as e:
                logger.error(
                    f"{operation_name} failed",
                    operation=operation_name,
                    duration=time.time() - start_time,
                    status="error",
                    error=str(e)
                )
                raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            logger = get_logger(__name__)
            start_time = time.time()

            try:
                result = func(*args, **kwargs)
                logger.debug(
                    f"{operation_name} completed",
                    operation=operation_name,
                    duration=time.time() - start_time,
                    status="success"
                )
                return result

            except Exception as e:
                logger.error(
                    f"{operation_name} failed",
                    operation=operation_name,
                    duration=time.time() - start_time,
                    status="error",
                    error=str(e)
                )
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def init_observability():
    """Initialize all observability components."""
    setup_logging()
    setup_tracing()

    logger = get_logger(__name__)
    logger.info(
        "Observability initialized",
        metrics_enabled=settings.metrics_enabled,
        tracing_enabled=settings.tracing_enabled,
        log_level=settings.log_level
    )
