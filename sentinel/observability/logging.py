"""Structured logging helpers for Sentinel observability.

Provides:
- StructuredFormatter: JSON log formatter for structured log output
- log_event: Structured event sink used by every service
- timed_operation: Context manager that logs operation timing
- configure_structured_logging: One-shot root logger setup

Uses stdlib logging only. Handler failures are routed through
``logging.Handler.handleError`` and never reach the code being logged.

Usage:
    from sentinel.observability.logging import log_event

    log_event(logger, "connectivity.probe.success", latency_ms=42.0)
    log_event(logger, "recovery.retry.failed", logging.WARNING,
              operation_id="abc", attempt=2, error="timeout")
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    Outputs log records as single-line JSON with standard fields:
    timestamp, level, logger, message, plus any structured extras.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "event_type"):
            entry["event"] = record.event_type  # type: ignore[attr-defined, unused-ignore]
        if hasattr(record, "category"):
            entry["category"] = record.category  # type: ignore[attr-defined, unused-ignore]
        if getattr(record, "metrics", None):
            entry["metrics"] = record.metrics  # type: ignore[attr-defined, unused-ignore]
        if getattr(record, "metadata", None):
            entry["metadata"] = record.metadata  # type: ignore[attr-defined, unused-ignore]

        if record.exc_info and record.exc_info[1]:
            entry["error"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


def log_event(
    log: logging.Logger,
    event_type: str,
    level: int = logging.INFO,
    message: str | None = None,
    **fields: Any,
) -> None:
    """Log a structured event with typed fields.

    The category is the first dotted segment of ``event_type``
    (``"recovery.retry.delay"`` -> ``"recovery"``).

    Args:
        log: Logger instance.
        event_type: Dotted event name.
        level: Log level.
        message: Optional human-readable message. Defaults to event_type.
        **fields: Arbitrary key-value fields. Numeric values go to metrics,
                  others go to metadata.
    """
    metrics = {
        k: v for k, v in fields.items() if isinstance(v, (int, float)) and not isinstance(v, bool)
    }
    metadata = {k: v for k, v in fields.items() if k not in metrics}

    log.log(
        level,
        message or event_type,
        extra={
            "event_type": event_type,
            "category": event_type.split(".", 1)[0],
            "metrics": metrics if metrics else None,
            "metadata": metadata if metadata else None,
        },
    )


@contextmanager
def timed_operation(
    log: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **extra: Any,
) -> Iterator[dict[str, Any]]:
    """Context manager that logs an operation's completion or failure with timing.

    Args:
        log: Logger instance.
        operation: Dotted operation name (e.g. "diagnostics.connectivity").
        level: Log level for the completion record.
        **extra: Additional fields included in both records.

    Yields:
        dict that can be filled with additional fields during the operation.
    """
    ctx: dict[str, Any] = {}
    start = time.perf_counter()
    try:
        yield ctx
    except Exception:
        elapsed_ms = (time.perf_counter() - start) * 1000
        log_event(
            log,
            f"{operation}.failed",
            logging.ERROR,
            f"{operation} failed after {elapsed_ms:.1f}ms",
            latency_ms=round(elapsed_ms, 1),
            **extra,
        )
        raise
    elapsed_ms = (time.perf_counter() - start) * 1000
    log_event(
        log,
        f"{operation}.complete",
        level,
        f"{operation} completed in {elapsed_ms:.1f}ms",
        latency_ms=round(elapsed_ms, 1),
        **{**extra, **ctx},
    )


def configure_structured_logging(level: int = logging.INFO) -> None:
    """Configure root logger with structured JSON output.

    Call this once at application startup.

    Args:
        level: Root log level.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
