"""Monitoring and observability setup.

Tracing and metrics are exported over OTLP gRPC when OTEL_ENABLED is set.
With it unset the OpenTelemetry API falls back to its no-op providers, so
spans and instruments below can be used unconditionally.

Exemplars are attached automatically to the histograms when they are
recorded inside an active trace, linking e.g. a large checkout amount to
the checkout trace that produced it.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
import pyroscope

from config import (
    OTEL_ENABLED,
    OTEL_EXPORTER_OTLP_ENDPOINT,
    PYROSCOPE_ENABLED,
    PYROSCOPE_SERVER,
    SERVICE_NAME,
)

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    if OTEL_ENABLED:
        resource = Resource.create({"service.name": SERVICE_NAME})

        tracer_provider = TracerProvider(resource=resource)
        otlp_span_exporter = OTLPSpanExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
        trace.set_tracer_provider(tracer_provider)

        logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    if OTEL_ENABLED:
        resource = Resource.create({"service.name": SERVICE_NAME})

        otlp_metric_exporter = OTLPMetricExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        otlp_metric_reader = PeriodicExportingMetricReader(
            otlp_metric_exporter,
            export_interval_millis=5000
        )

        meter_provider = MeterProvider(
            resource=resource,
            metric_readers=[otlp_metric_reader]
        )
        metrics.set_meter_provider(meter_provider)

        logger.info("Metrics initialized with OTLP exporter")

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Initialize Pyroscope profiling."""
    if not PYROSCOPE_ENABLED:
        return
    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": "demo"}
        )
        logger.info(f"Profiling initialized with server: {PYROSCOPE_SERVER}")
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


# Initialize tracer and meter
tracer = init_tracing()
meter = init_metrics()

# Checkout metrics
checkout_counter = meter.create_counter(
    "webstore.checkouts",
    description="Total number of checkout attempts by outcome",
    unit="1"
)

checkout_amount_histogram = meter.create_histogram(
    "webstore.checkout.amount",
    description="Order total of completed checkouts",
    unit="EUR"
)

checkout_discount_histogram = meter.create_histogram(
    "webstore.checkout.discount",
    description="Discount granted on completed checkouts",
    unit="EUR"
)

coupon_redemptions_counter = meter.create_counter(
    "webstore.coupons.redemptions",
    description="Coupons redeemed at checkout",
    unit="1"
)

# Concurrency monitoring
transaction_conflicts_counter = meter.create_counter(
    "webstore.transactions.conflicts",
    description="Units of work aborted by a concurrent write (before retry)",
    unit="1"
)

# Order lifecycle metrics
order_status_transitions_counter = meter.create_counter(
    "webstore.orders.status_transitions",
    description="Order status transitions by source and target status",
    unit="1"
)

order_cancellations_counter = meter.create_counter(
    "webstore.orders.cancellations",
    description="Orders cancelled with stock and coupon compensation",
    unit="1"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "webstore.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "webstore.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

# Post-commit side effects
notification_duration_histogram = meter.create_histogram(
    "webstore.external.notifications.duration",
    description="Duration of calls to the notification service",
    unit="s"
)

cache_invalidation_failures_counter = meter.create_counter(
    "webstore.cache.invalidation_failures",
    description="Cache invalidations that could not be applied",
    unit="1"
)

# Cart and coupon administration
cart_updates_counter = meter.create_counter(
    "webstore.cart.updates",
    description="Cart mutations by operation",
    unit="1"
)

coupons_created_counter = meter.create_counter(
    "webstore.coupons.created",
    description="Coupons created by issuer role",
    unit="1"
)

product_views_counter = meter.create_counter(
    "webstore.products.views",
    description="Product catalogue and detail views",
    unit="1"
)
