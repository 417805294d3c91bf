"""
Metrics Collection with Prometheus.

Exposes settlement and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from settlement.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSITION = "transition"
    OUTCOME = "outcome"
    PROVIDER = "provider"
    ERROR_TYPE = "error_type"


class SettlementMetrics:
    """
    Centralized metrics for the settlement API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Purchase transitions (rate by transition and outcome, settled amounts)
    - Gateway calls (rate by provider and outcome, latency)
    - Balance mutations and notification failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "settlement_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "settlement_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "settlement_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "settlement_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Transition Metrics
        # ====================================================================
        self.transitions_total = Counter(
            "settlement_transitions_total",
            "Purchase transition attempts",
            [MetricLabels.TRANSITION, MetricLabels.OUTCOME],
        )

        self.settled_amount = Histogram(
            "settlement_completed_amount",
            "Completed purchase amounts in minor units",
            buckets=(0, 1000, 5000, 10000, 30000, 50000, 100000, 300000, 1000000),
        )

        # ====================================================================
        # Gateway Metrics
        # ====================================================================
        self.gateway_requests_total = Counter(
            "settlement_gateway_requests_total",
            "Payment gateway requests",
            [MetricLabels.PROVIDER, MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.gateway_request_duration_seconds = Histogram(
            "settlement_gateway_request_duration_seconds",
            "Payment gateway request duration in seconds",
            [MetricLabels.PROVIDER, MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Side Effect Metrics
        # ====================================================================
        self.balance_mutations_total = Counter(
            "settlement_balance_mutations_total",
            "Creator balance mutations",
            [MetricLabels.OPERATION, "success"],
        )

        self.notification_failures_total = Counter(
            "settlement_notification_failures_total",
            "Notifications that could not be recorded",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "settlement_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_transition(self, transition: str, outcome: str, amount: int | None = None) -> None:
        """Record a purchase transition attempt."""
        self.transitions_total.labels(transition=transition, outcome=outcome).inc()
        if outcome == "success" and amount is not None:
            self.settled_amount.observe(amount)

    def record_gateway_request(
        self, provider: str, operation: str, outcome: str, duration: float
    ) -> None:
        """Record a payment gateway round trip."""
        self.gateway_requests_total.labels(
            provider=provider, operation=operation, outcome=outcome
        ).inc()
        self.gateway_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration)

    def record_balance_mutation(self, operation: str, success: bool) -> None:
        """Record a creator balance credit/debit."""
        self.balance_mutations_total.labels(operation=operation, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = SettlementMetrics()
