"""Sentinel observability: structured logging and performance instrumentation."""

from __future__ import annotations

from sentinel.observability.logging import (
    StructuredFormatter,
    configure_structured_logging,
    log_event,
    timed_operation,
)
from sentinel.observability.performance import (
    Bottleneck,
    DebugContext,
    PerformanceMonitor,
    PerformanceSpan,
    PerformanceSummary,
    StoreErrorContext,
    StoreErrorRecord,
    redact_query,
    sanitize_auth_state,
)

__all__ = [
    # Logging
    "StructuredFormatter",
    "configure_structured_logging",
    "log_event",
    "timed_operation",
    # Performance
    "Bottleneck",
    "DebugContext",
    "PerformanceMonitor",
    "PerformanceSpan",
    "PerformanceSummary",
    "StoreErrorContext",
    "StoreErrorRecord",
    "redact_query",
    "sanitize_auth_state",
]
