"""
Observability module - Logging, Metrics, Tracing and Alerts.
"""

from tokengate.observability.alerts import AlertManager
from tokengate.observability.logging import get_logger, log_context, setup_logging
from tokengate.observability.metrics import metrics, start_metrics_server
from tokengate.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "AlertManager",
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "start_metrics_server",
    "setup_tracing",
    "trace_operation",
]
