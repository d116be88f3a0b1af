"""Logging and metrics for the margin engine."""

from src.monitoring.logging import bind_runtime_context, configure_logging
from src.monitoring.metrics import Metrics

__all__ = ["Metrics", "bind_runtime_context", "configure_logging"]
