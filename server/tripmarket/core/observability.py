"""Observability setup for OpenTelemetry, Prometheus metrics, and structured logging."""

import logging
from typing import Any

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CollectorRegistry
import structlog

from .config import settings

SERVICE_NAME = "tripmarket-booking-engine"
SERVICE_VERSION = "1.0.0"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Inventory metrics
SEAT_HOLDS_CREATED = Counter(
    'seat_holds_created_total',
    'Seat holds granted',
    registry=REGISTRY
)

SEAT_HOLDS_REJECTED = Counter(
    'seat_holds_rejected_total',
    'Seat hold attempts rejected for lack of capacity',
    registry=REGISTRY
)

SEAT_HOLDS_RELEASED = Counter(
    'seat_holds_released_total',
    'Seat holds released back to inventory',
    ['reason'],
    registry=REGISTRY
)

SEATS_REMAINING = Gauge(
    'trip_seats_remaining',
    'Seats remaining on a trip after the last inventory change',
    ['trip_id'],
    registry=REGISTRY
)

# Booking lifecycle metrics
BOOKINGS_CREATED = Counter(
    'bookings_created_total',
    'Bookings created in pending state',
    ['charge_mode'],
    registry=REGISTRY
)

BOOKINGS_CONFIRMED = Counter(
    'bookings_confirmed_total',
    'Bookings confirmed',
    ['source'],
    registry=REGISTRY
)

BOOKINGS_CANCELLED = Counter(
    'bookings_cancelled_total',
    'Bookings cancelled',
    ['previous_status'],
    registry=REGISTRY
)

BOOKINGS_EXPIRED = Counter(
    'bookings_expired_total',
    'Pending bookings expired at their hold deadline',
    registry=REGISTRY
)

# Reconciliation metrics
PAYMENT_SIGNALS = Counter(
    'payment_signals_total',
    'Payment signals processed, by outcome',
    ['outcome'],
    registry=REGISTRY
)

REVIEW_FLAGS = Counter(
    'review_flags_total',
    'Consistency problems routed to operations review',
    ['reason'],
    registry=REGISTRY
)

# Referral metrics
REFERRALS_RECORDED = Counter(
    'referrals_recorded_total',
    'Referrals recorded, by type',
    ['referral_type'],
    registry=REGISTRY
)


def _add_trace_context(logger, method_name, event_dict):
    """Add trace context to log events."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict['trace_id'] = format(ctx.trace_id, '032x')
        event_dict['span_id'] = format(ctx.span_id, '016x')
    return event_dict


def setup_structured_logging():
    """Configure structlog. The request id arrives through contextvars bound by middleware."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource(app_name: str) -> Resource:
    return Resource.create({
        "service.name": app_name,
        "service.version": SERVICE_VERSION,
        "environment": settings.environment,
    })


def setup_tracing(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry tracing, exporting over OTLP when an endpoint is configured."""
    provider = TracerProvider(resource=_resource(app_name))

    if settings.otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint))
        )

    trace.set_tracer_provider(provider)
    return trace.get_tracer(__name__)


def setup_metrics(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=settings.otlp_endpoint),
            export_interval_millis=60000,
        )
        metrics.set_meter_provider(
            MeterProvider(resource=_resource(app_name), metric_readers=[reader])
        )

    return metrics.get_meter(__name__)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine):
    """Instrument the SQLAlchemy engine with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class MetricsCollector:
    """Collector for business metrics."""

    @staticmethod
    def record_hold_created(trip_id: str, remaining: int):
        SEAT_HOLDS_CREATED.inc()
        SEATS_REMAINING.labels(trip_id=trip_id).set(remaining)

    @staticmethod
    def record_hold_rejected():
        SEAT_HOLDS_REJECTED.inc()

    @staticmethod
    def record_hold_released(trip_id: str, reason: str, remaining: int):
        SEAT_HOLDS_RELEASED.labels(reason=reason).inc()
        SEATS_REMAINING.labels(trip_id=trip_id).set(remaining)

    @staticmethod
    def record_booking_created(charge_mode: str):
        BOOKINGS_CREATED.labels(charge_mode=charge_mode).inc()

    @staticmethod
    def record_booking_confirmed(source: str):
        """Record a confirmation; source is 'gateway' or 'offline'."""
        BOOKINGS_CONFIRMED.labels(source=source).inc()

    @staticmethod
    def record_booking_cancelled(previous_status: str):
        BOOKINGS_CANCELLED.labels(previous_status=previous_status).inc()

    @staticmethod
    def record_booking_expired():
        BOOKINGS_EXPIRED.inc()

    @staticmethod
    def record_payment_signal(outcome: str):
        PAYMENT_SIGNALS.labels(outcome=outcome).inc()

    @staticmethod
    def record_review_flag(reason: str):
        REVIEW_FLAGS.labels(reason=reason).inc()

    @staticmethod
    def record_referral(referral_type: str):
        REFERRALS_RECORDED.labels(referral_type=referral_type).inc()

    @staticmethod
    def record_seats_remaining(trip_id: str, remaining: int):
        SEATS_REMAINING.labels(trip_id=trip_id).set(remaining)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()


class StructuredLogger:
    """Structured logger with business context."""

    def __init__(self, name: str, bound: Any = None):
        self.logger = bound if bound is not None else structlog.get_logger(name)
        self.name = name

    def info(self, message: str, **kwargs):
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(message, **kwargs)

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **kwargs)

    def with_context(self, **kwargs) -> "StructuredLogger":
        """Return a logger with extra key/values bound to every event."""
        return StructuredLogger(self.name, bound=self.logger.bind(**kwargs))


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
