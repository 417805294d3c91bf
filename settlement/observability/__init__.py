"""
Observability module - Logging, Metrics, and Tracing.
"""

from settlement.observability.logging import get_logger, log_context, setup_logging
from settlement.observability.metrics import metrics
from settlement.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
