"""
Prometheus metrics for the booking and payment backend.

Service timings come from the @measure_operation decorator; the payment
lifecycle adds counters for webhook outcomes, scheduled actions and
reconciliation results.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "carshare_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "carshare_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "carshare_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "carshare_webhook_events_total",
    "Stripe webhook events by type and outcome",
    ["event_type", "outcome"],  # processed | ignored | duplicate | failed
    registry=REGISTRY,
)

scheduled_actions_total = Counter(
    "carshare_scheduled_actions_total",
    "Scheduled actions executed by action and outcome",
    ["action", "outcome"],  # completed | retried | failed
    registry=REGISTRY,
)

reconciliation_results_total = Counter(
    "carshare_reconciliation_results_total",
    "Reconciliation attempts by path and outcome",
    ["path", "outcome"],  # redirect | stale_sweep
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingIntakeService')
            operation: Operation name (e.g., 'create_pending_payment')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str) -> None:
        webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_scheduled_action(action: str, outcome: str) -> None:
        scheduled_actions_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def record_reconciliation(path: str, outcome: str) -> None:
        reconciliation_results_total.labels(path=path, outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


# Singleton instance
prometheus_metrics = PrometheusMetrics()
