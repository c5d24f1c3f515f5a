"""
Prometheus metrics for the scheduling core.

Service operations decorated with ``@BaseService.measure_operation`` report
their duration and outcome here. Metrics live in a custom registry so that
embedding hosts can expose them next to their own.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "mathbridge_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "mathbridge_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "mathbridge_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

scheduling_conflicts_total = Counter(
    "mathbridge_scheduling_conflicts_total",
    "Scheduling conflicts detected at commit time",
    ["operation"],
    registry=REGISTRY,
)

reschedule_transitions_total = Counter(
    "mathbridge_reschedule_transitions_total",
    "Reschedule request state transitions",
    ["to_status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Records scheduling-core metrics."""

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
            service: Service name (e.g., 'RescheduleService')
            operation: Operation/method name (e.g., 'approve_request')
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
    def record_scheduling_conflict(operation: str) -> None:
        scheduling_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def record_reschedule_transition(to_status: str) -> None:
        reschedule_transitions_total.labels(to_status=to_status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(REGISTRY)


prometheus_metrics = PrometheusMetrics()
