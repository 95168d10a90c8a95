"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobmill.observability.logging import (
    bind_context,
    unbind_context,
    reopen_log_files,
    setup_logging,
)
from jobmill.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobmill.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "reopen_log_files",
    "bind_context",
    "unbind_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
