"""
Metrics Collection with Prometheus.

Exposes admission-control, token economy and job metrics for monitoring.
Workers have no HTTP surface, so the scrape endpoint is served by
`start_metrics_server`.
"""

import time
from enum import Enum

from prometheus_client import Counter, Histogram, Info, start_http_server

from tokengate.config import settings
from tokengate.models.domain import TokenOperationMetrics


class MetricLabels(str, Enum):
    """Standard metric label names."""

    TIER = "tier"
    OPERATION = "operation"
    QUEUE = "queue"
    STATUS = "status"
    ERROR_TYPE = "error_type"
    ALERT_TYPE = "alert_type"


class TokenGateMetrics:
    """
    Centralized metrics for the token economy.

    Covers:
    - Rate limit decisions (by tier, operation, outcome)
    - Token operations (rate, amount, duration, success/failure)
    - Payment settlement outcomes
    - Job outcomes (completed, failed, retried, dead-lettered, rollback)
    - Cache hits, misses and store errors
    - Alerts fired
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "tokengate_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Admission Control
        # ====================================================================
        self.rate_limit_checks_total = Counter(
            "tokengate_rate_limit_checks_total",
            "Total rate limit checks",
            [MetricLabels.TIER, MetricLabels.OPERATION, "allowed"],
        )

        self.rate_limit_check_duration_seconds = Histogram(
            "tokengate_rate_limit_check_duration_seconds",
            "Rate limit check duration in seconds",
            buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1),
        )

        # ====================================================================
        # Token Operations
        # ====================================================================
        self.token_operations_total = Counter(
            "tokengate_token_operations_total",
            "Total token operations",
            [MetricLabels.OPERATION, "success"],
        )

        self.token_operation_amount = Histogram(
            "tokengate_token_operation_amount",
            "Token amounts moved by successful operations",
            [MetricLabels.OPERATION],
            buckets=(1, 5, 10, 25, 50, 100, 500, 1000, 2000, 5000, 10000),
        )

        self.token_operation_duration_seconds = Histogram(
            "tokengate_token_operation_duration_seconds",
            "Token operation duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Payments
        # ====================================================================
        self.payments_processed_total = Counter(
            "tokengate_payments_processed_total",
            "Total payment events processed",
            [MetricLabels.STATUS, "outcome"],
        )

        self.tokens_granted_total = Counter(
            "tokengate_tokens_granted_total",
            "Total tokens granted by payments",
            [MetricLabels.TIER],
        )

        # ====================================================================
        # Jobs
        # ====================================================================
        self.jobs_total = Counter(
            "tokengate_jobs_total",
            "Total job outcomes",
            [MetricLabels.QUEUE, MetricLabels.STATUS],
        )

        self.job_duration_seconds = Histogram(
            "tokengate_job_duration_seconds",
            "Job processing duration in seconds",
            [MetricLabels.QUEUE],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
        )

        # ====================================================================
        # Cache
        # ====================================================================
        self.cache_requests_total = Counter(
            "tokengate_cache_requests_total",
            "Total cache lookups",
            ["result"],
        )

        self.cache_errors_total = Counter(
            "tokengate_cache_errors_total",
            "Total cache store errors (degraded)",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Alerts and Errors
        # ====================================================================
        self.alerts_total = Counter(
            "tokengate_alerts_total",
            "Total alerts fired",
            [MetricLabels.ALERT_TYPE, "severity"],
        )

        self.errors_total = Counter(
            "tokengate_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_rate_limit(self, tier: str, operation: str, allowed: bool, duration: float) -> None:
        """Record a rate limit decision."""
        self.rate_limit_checks_total.labels(
            tier=tier, operation=operation, allowed=str(allowed)
        ).inc()
        self.rate_limit_check_duration_seconds.observe(duration)

    def record_token_operation(
        self, operation: str, success: bool, amount: int, duration: float
    ) -> None:
        """Record token operation metrics."""
        self.token_operations_total.labels(operation=operation, success=str(success)).inc()
        if success:
            self.token_operation_amount.labels(operation=operation).observe(amount)
        self.token_operation_duration_seconds.labels(operation=operation).observe(duration)

    def record_payment(self, status: str, outcome: str) -> None:
        """Record a processed payment event."""
        self.payments_processed_total.labels(status=status, outcome=outcome).inc()

    def record_tokens_granted(self, tier: str, amount: int) -> None:
        """Record tokens granted by a payment."""
        self.tokens_granted_total.labels(tier=tier).inc(amount)

    def record_job(self, queue: str, status: str, duration: float) -> None:
        """Record a job outcome."""
        self.jobs_total.labels(queue=queue, status=status).inc()
        self.job_duration_seconds.labels(queue=queue).observe(duration)

    def record_cache_lookup(self, hit: bool) -> None:
        """Record cache hit or miss."""
        self.cache_requests_total.labels(result="hit" if hit else "miss").inc()

    def record_cache_error(self, operation: str) -> None:
        """Record a degraded cache operation."""
        self.cache_errors_total.labels(operation=operation).inc()

    def record_alert(self, alert_type: str, severity: str) -> None:
        """Record a fired alert."""
        self.alerts_total.labels(alert_type=alert_type, severity=severity).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = TokenGateMetrics()


class PrometheusTokenMetrics:
    """Token operation metrics observer backed by the global registry."""

    def record(self, event: TokenOperationMetrics) -> None:
        metrics.record_token_operation(event.operation, event.success, event.amount, event.duration)
        if not event.success:
            metrics.record_error("token_operation_failed", event.operation)


class track_job:
    """
    Context manager for tracking job duration and outcome.

    Usage:
        with track_job("image-generation") as tracker:
            outcome = await process_job(...)
            tracker.set_status(outcome.status)
    """

    def __init__(self, queue: str) -> None:
        self.queue = queue
        self.status = "completed"
        self.start_time: float = 0.0

    def set_status(self, status: str) -> None:
        """Set the job outcome status."""
        self.status = status

    def __enter__(self) -> "track_job":
        """Start tracking."""
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.monotonic() - self.start_time
        if exc_type is not None:
            self.status = "error"
        metrics.record_job(self.queue, self.status, duration)


def start_metrics_server() -> None:
    """Expose the Prometheus registry on the configured port."""
    if not settings.metrics_enabled:
        return
    start_http_server(settings.metrics_port)
