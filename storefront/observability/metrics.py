"""
Metrics Collection with Prometheus.

Exposes checkout, webhook and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from storefront.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    KIND = "kind"
    OUTCOME = "outcome"


class StorefrontMetrics:
    """
    Centralized metrics for the storefront payments API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Payment requests built (by kind, amount)
    - Gateway notifications (by outcome)
    - Rate-limit rejections (by route class)
    - Collaborator forwards (by action, outcome)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "storefront_service",
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
            "storefront_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "storefront_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Checkout Metrics
        # ====================================================================
        self.payment_requests_total = Counter(
            "storefront_payment_requests_total",
            "Signed payment requests built",
            [MetricLabels.KIND],
        )

        self.payment_amount = Histogram(
            "storefront_payment_amount",
            "Payment request amounts in smallest currency unit",
            buckets=(100, 500, 1000, 2000, 3500, 5000, 10000, 25000),
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_notifications_total = Counter(
            "storefront_webhook_notifications_total",
            "Gateway notifications by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Anti-abuse Metrics
        # ====================================================================
        self.rate_limit_rejections_total = Counter(
            "storefront_rate_limit_rejections_total",
            "Requests rejected by a rate limit",
            ["route_class"],
        )

        self.verification_failures_total = Counter(
            "storefront_verification_failures_total",
            "Checkouts rejected by human verification",
        )

        # ====================================================================
        # Collaborator Metrics
        # ====================================================================
        self.order_forwards_total = Counter(
            "storefront_order_forwards_total",
            "Forwards to the persistence collaborator",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "storefront_errors_total",
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

    def record_payment_request(self, kind: str, amount: int) -> None:
        """Record a successfully built payment request."""
        self.payment_requests_total.labels(kind=kind).inc()
        self.payment_amount.observe(amount)

    def record_webhook(self, outcome: str) -> None:
        """Record a gateway notification outcome."""
        self.webhook_notifications_total.labels(outcome=outcome).inc()

    def record_rate_limited(self, route_class: str) -> None:
        self.rate_limit_rejections_total.labels(route_class=route_class).inc()

    def record_verification_failure(self) -> None:
        self.verification_failures_total.inc()

    def record_order_forward(self, operation: str, success: bool) -> None:
        """Record a collaborator forward attempt."""
        self.order_forwards_total.labels(
            operation=operation, outcome="success" if success else "failure"
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = StorefrontMetrics()
