"""
Alert Manager - Threshold-gated operational alerts.

Alerts are counted per (type, severity); once a type's threshold is
reached the alert is logged at error level, optionally posted to a
webhook, and the count starts over. Delivery problems are logged and
never raised to the caller.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx

from tokengate.config import settings
from tokengate.observability.logging import get_logger
from tokengate.observability.metrics import metrics

logger = get_logger(__name__)


class AlertType(str, Enum):
    """Kinds of operational alerts."""

    QUEUE_FAILURE = "queue_failure"
    PAYMENT_FAILURE = "payment_failure"
    HIGH_ERROR_RATE = "high_error_rate"
    SERVICE_DEGRADATION = "service_degradation"
    CRITICAL_ERROR = "critical_error"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


DEFAULT_THRESHOLDS: dict[AlertType, int] = {
    AlertType.QUEUE_FAILURE: 5,
    AlertType.PAYMENT_FAILURE: 3,
    AlertType.HIGH_ERROR_RATE: 10,
}


@dataclass(frozen=True)
class Alert:
    """One alert occurrence."""

    type: AlertType
    severity: AlertSeverity
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class AlertManager:
    """Counts alert occurrences and fires once a type's threshold is met."""

    def __init__(
        self,
        webhook_url: str | None = None,
        thresholds: dict[AlertType, int] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.webhook_url = settings.alert_webhook_url if webhook_url is None else webhook_url
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self.timeout = settings.alert_timeout_seconds if timeout is None else timeout
        self._http_client = http_client
        self._counts: dict[tuple[AlertType, AlertSeverity], int] = {}
        self.fired: list[Alert] = []

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def threshold_for(self, alert_type: AlertType) -> int:
        return self.thresholds.get(alert_type, 1)

    def pending_count(self, alert_type: AlertType, severity: AlertSeverity) -> int:
        """Occurrences counted since the last time this alert fired."""
        return self._counts.get((alert_type, severity), 0)

    async def send_alert(self, alert: Alert) -> bool:
        """
        Count an alert occurrence and fire it when the threshold is reached.

        Returns:
            True if the alert fired on this occurrence
        """
        key = (alert.type, alert.severity)
        count = self._counts.get(key, 0) + 1
        self._counts[key] = count

        if count < self.threshold_for(alert.type):
            return False

        logger.error(
            "alert_triggered",
            alert_type=alert.type.value,
            severity=alert.severity.value,
            alert_message=alert.message,
            context=alert.context,
            occurrences=count,
        )
        metrics.record_alert(alert.type.value, alert.severity.value)
        self.fired.append(alert)

        if self.webhook_url:
            await self._send_webhook(alert, count)

        self._counts[key] = 0
        return True

    async def _send_webhook(self, alert: Alert, occurrences: int) -> None:
        payload = {
            "type": alert.type.value,
            "severity": alert.severity.value,
            "message": alert.message,
            "context": alert.context,
            "timestamp": alert.timestamp.isoformat(),
            "occurrences": occurrences,
        }
        try:
            response = await self.http_client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "alert_webhook_rejected",
                status=e.response.status_code,
                alert_type=alert.type.value,
            )
        except httpx.HTTPError as e:
            logger.error("alert_webhook_error", error=str(e), alert_type=alert.type.value)

    # ========================================================================
    # Convenience helpers
    # ========================================================================

    async def alert_queue_failure(
        self, queue_name: str, error: BaseException, job_data: dict[str, Any] | None = None
    ) -> bool:
        return await self.send_alert(
            Alert(
                type=AlertType.QUEUE_FAILURE,
                severity=AlertSeverity.ERROR,
                message=f"Queue {queue_name} job failed: {error}",
                context={"queue": queue_name, "error": str(error), "job_data": job_data},
            )
        )

    async def alert_payment_failure(
        self, payment_id: str, error: BaseException, payment_data: dict[str, Any] | None = None
    ) -> bool:
        return await self.send_alert(
            Alert(
                type=AlertType.PAYMENT_FAILURE,
                severity=AlertSeverity.CRITICAL,
                message=f"Payment {payment_id} failed: {error}",
                context={
                    "payment_id": payment_id,
                    "error": str(error),
                    "payment_data": payment_data,
                },
            )
        )

    async def alert_high_error_rate(self, service: str, error_count: int, time_window: str) -> bool:
        return await self.send_alert(
            Alert(
                type=AlertType.HIGH_ERROR_RATE,
                severity=AlertSeverity.WARNING,
                message=(
                    f"High error rate detected in {service}: "
                    f"{error_count} errors in {time_window}"
                ),
                context={
                    "service": service,
                    "error_count": error_count,
                    "time_window": time_window,
                },
            )
        )

    async def alert_service_degradation(
        self, service: str, metric: str, value: float, threshold: float
    ) -> bool:
        return await self.send_alert(
            Alert(
                type=AlertType.SERVICE_DEGRADATION,
                severity=AlertSeverity.WARNING,
                message=(
                    f"Service degradation detected: {metric} is {value}, threshold is {threshold}"
                ),
                context={
                    "service": service,
                    "metric": metric,
                    "value": value,
                    "threshold": threshold,
                },
            )
        )

    async def alert_critical_error(
        self, error: BaseException, context: dict[str, Any] | None = None
    ) -> bool:
        """Critical errors have threshold 1 and always fire."""
        return await self.send_alert(
            Alert(
                type=AlertType.CRITICAL_ERROR,
                severity=AlertSeverity.CRITICAL,
                message=f"Critical error: {error}",
                context={"error": str(error), **(context or {})},
            )
        )
