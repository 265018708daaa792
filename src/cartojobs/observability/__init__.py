"""Logging and metrics for cartojobs processes."""

from cartojobs.observability.logging import LogContext, configure_logging
from cartojobs.observability.metrics import JobMetrics

__all__ = ["JobMetrics", "LogContext", "configure_logging"]
