"""Performance instrumentation: timing spans, store errors and bottlenecks.

Provides:
- PerformanceMonitor: span timing, store-error logging with query redaction,
  threshold-based bottleneck detection, summaries and debug snapshots
- redact_query / sanitize_auth_state: credential scrubbing helpers

Every collection is bounded twice: by a count cap enforced on insert and
by an age purge that runs periodically once ``start()`` is called.
Instrumentation never raises into the operation being measured.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import platform
import re
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

import psutil

from contracts.resilience import ConnectivityState, PerfCategory, Severity
from sentinel.config import PerformanceSettings
from sentinel.errors import SentinelError, StoreError, classify_error
from sentinel.observability.logging import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

BYTES_PER_MB = 1024 * 1024

_RECOMMENDATIONS: dict[PerfCategory, tuple[str, ...]] = {
    PerfCategory.AUTH: (
        "Check network connectivity",
        "Verify authentication server status",
        "Consider implementing authentication caching",
        "Review session management logic",
    ),
    PerfCategory.DATABASE: (
        "Optimize database queries",
        "Add appropriate indexes",
        "Check for table locks",
        "Consider query result caching",
    ),
    PerfCategory.NETWORK: (
        "Check network connection quality",
        "Consider request batching",
        "Implement request caching",
        "Use CDN for static resources",
    ),
    PerfCategory.UI: (
        "Optimize component rendering",
        "Memoize expensive components",
        "Implement virtual scrolling for large lists",
        "Reduce unnecessary re-renders",
    ),
}

_SLOW_QUERY_RECOMMENDATIONS = (
    "Consider adding database indexes",
    "Optimize query structure",
    "Check for table locks",
    "Monitor database performance",
)

_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(password|token|secret|api_key)\s*=\s*'[^']*'", re.IGNORECASE), r"\1='***'"),
    (re.compile(r'\b(password|token|secret|api_key)\s*=\s*"[^"]*"', re.IGNORECASE), r'\1="***"'),
    (re.compile(r"(authorization:\s*bearer\s+)\S+", re.IGNORECASE), r"\1***"),
)

_DROPPED_AUTH_KEYS = frozenset({"access_token", "refresh_token", "accessToken", "refreshToken"})


def redact_query(query: str) -> str:
    """Replace credential-like assignments in query text with ``***``."""
    for pattern, replacement in _REDACTIONS:
        query = pattern.sub(replacement, query)
    return query


def sanitize_auth_state(auth_state: dict[str, Any] | None) -> dict[str, Any] | None:
    """Copy an auth state dict without tokens and with the e-mail masked."""
    if not auth_state:
        return None
    sanitized = {k: v for k, v in auth_state.items() if k not in _DROPPED_AUTH_KEYS}
    user = sanitized.get("user")
    if isinstance(user, dict):
        sanitized["user"] = {
            "id": user.get("id"),
            "email": "***@***.***" if user.get("email") else None,
            "role": user.get("role"),
        }
    return sanitized


def severity_for_ratio(ratio: float) -> Severity:
    """Scale severity by how many times the threshold was exceeded."""
    if ratio > 3:
        return Severity.CRITICAL
    if ratio > 2:
        return Severity.HIGH
    if ratio > 1.5:
        return Severity.MEDIUM
    return Severity.LOW


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class PerformanceSpan:
    """A timed operation.

    ``start_wall`` is used for windowing and retention, ``start_monotonic``
    for the duration.
    """

    id: str
    name: str
    category: PerfCategory
    start_monotonic: float
    start_wall: float
    end_monotonic: float | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: tuple[str, ...] = ()

    @property
    def completed(self) -> bool:
        return self.duration_ms is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "start_time": _iso(self.start_wall),
            "duration_ms": self.duration_ms,
            "metadata": dict(self.metadata),
            "tags": list(self.tags),
        }


@dataclass
class StoreErrorContext:
    """Caller-supplied context for a failed store query."""

    table: str | None = None
    operation: str = "unknown"
    duration_ms: float | None = None
    retry_count: int = 0
    additional: dict[str, Any] = field(default_factory=dict)


@dataclass
class StoreErrorRecord:
    """A logged store failure with the query text already redacted."""

    id: str
    timestamp: float
    query: str
    table: str | None
    operation: str
    error_message: str
    error_code: str | None
    error_kind: str
    duration_ms: float | None = None
    retry_count: int = 0
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "query": self.query,
            "table": self.table,
            "operation": self.operation,
            "error": {
                "message": self.error_message,
                "code": self.error_code,
                "kind": self.error_kind,
            },
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
            "context": dict(self.context),
        }


@dataclass
class Bottleneck:
    """An operation that exceeded its category threshold."""

    id: str
    type: str
    severity: Severity
    description: str
    metrics: dict[str, float]
    affected_operations: tuple[str, ...]
    recommendations: tuple[str, ...]
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "metrics": dict(self.metrics),
            "affected_operations": list(self.affected_operations),
            "recommendations": list(self.recommendations),
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class DebugContext:
    """Point-in-time diagnostic snapshot for support requests."""

    timestamp: float
    principal_id: str | None
    session_id: str | None
    operation: str | None
    network_state: dict[str, Any] | None
    auth_state: dict[str, Any] | None
    recent_spans: list[PerformanceSpan]
    recent_errors: list[StoreErrorRecord]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "principal_id": self.principal_id,
            "session_id": self.session_id,
            "operation": self.operation,
            "network_state": self.network_state,
            "auth_state": self.auth_state,
            "recent_spans": [s.to_dict() for s in self.recent_spans],
            "recent_errors": [e.to_dict() for e in self.recent_errors],
        }


@dataclass
class PerformanceSummary:
    """Aggregates over a trailing time window.

    Attributes:
        spans: Spans started inside the window (completed or not).
        store_errors: Store errors logged inside the window.
        bottlenecks: Bottlenecks recorded inside the window.
        total_measurements: Number of spans in the window.
        average_duration_ms: Mean duration of completed spans (0 if none).
        slowest_span: Completed span with the longest duration.
        error_rate: store errors / measurements (0 if no measurements).
        critical_bottlenecks: Count of critical bottlenecks in the window.
    """

    spans: list[PerformanceSpan]
    store_errors: list[StoreErrorRecord]
    bottlenecks: list[Bottleneck]
    total_measurements: int
    average_duration_ms: float
    slowest_span: PerformanceSpan | None
    error_rate: float
    critical_bottlenecks: int


class PerformanceMonitor:
    """Collects timing spans, store errors and bottlenecks.

    Example:
        >>> monitor = PerformanceMonitor()
        >>> span_id = monitor.start_measurement("load_members", PerfCategory.DATABASE)
        >>> monitor.end_measurement(span_id)
        >>> rows = await monitor.measure_function("fetch", fetch_rows, PerfCategory.DATABASE)
        >>> monitor.get_performance_summary(window_ms=60_000).error_rate
    """

    def __init__(
        self,
        settings: PerformanceSettings | None = None,
        *,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize the monitor.

        Args:
            settings: Thresholds, caps and retention.
            wall_clock: Epoch-seconds source for timestamps and windows.
            monotonic: Monotonic source for span durations.
        """
        self._settings = settings or PerformanceSettings()
        self._wall = wall_clock
        self._monotonic = monotonic

        self._spans: dict[str, PerformanceSpan] = {}
        self._store_errors: deque[StoreErrorRecord] = deque(maxlen=self._settings.max_store_errors)
        self._bottlenecks: deque[Bottleneck] = deque(maxlen=self._settings.max_bottlenecks)
        self._debug_contexts: deque[DebugContext] = deque(
            maxlen=self._settings.max_debug_contexts
        )
        self._purge_task: asyncio.Task[None] | None = None

    @property
    def settings(self) -> PerformanceSettings:
        return self._settings

    def threshold_for(self, category: PerfCategory) -> float | None:
        """Bottleneck threshold in ms, None for unmonitored categories."""
        return self._settings.thresholds_ms.get(category)

    # Spans

    def start_measurement(
        self,
        name: str,
        category: PerfCategory = PerfCategory.GENERAL,
        metadata: dict[str, Any] | None = None,
        tags: Iterable[str] = (),
    ) -> str:
        """Open a span and return its id."""
        span_id = _new_id("perf")
        try:
            span = PerformanceSpan(
                id=span_id,
                name=name,
                category=category,
                start_monotonic=self._monotonic(),
                start_wall=self._wall(),
                metadata=dict(metadata or {}),
                tags=tuple(tags),
            )
            self._spans[span_id] = span
            while len(self._spans) > self._settings.max_spans:
                del self._spans[next(iter(self._spans))]
        except Exception:
            logger.exception("Failed to start measurement %s", name)
        return span_id

    def end_measurement(
        self,
        span_id: str,
        extra_metadata: dict[str, Any] | None = None,
    ) -> PerformanceSpan | None:
        """Finalize a span and check it against its category threshold.

        Returns:
            The finalized span, or None if the id is unknown.
        """
        try:
            span = self._spans.get(span_id)
            if span is None:
                log_event(
                    logger, "performance.span.unknown", logging.WARNING, span_id=span_id
                )
                return None
            if span.completed:
                return span

            span.end_monotonic = self._monotonic()
            span.duration_ms = (span.end_monotonic - span.start_monotonic) * 1000
            if extra_metadata:
                span.metadata.update(extra_metadata)

            log_event(
                logger,
                "performance.span.completed",
                logging.DEBUG,
                name=span.name,
                category=span.category.value,
                duration_ms=span.duration_ms,
            )
            self._check_span_threshold(span)
            return span
        except Exception:
            logger.exception("Failed to end measurement %s", span_id)
            return None

    async def measure_function(
        self,
        name: str,
        fn: Callable[[], T | Awaitable[T]],
        category: PerfCategory = PerfCategory.GENERAL,
        metadata: dict[str, Any] | None = None,
    ) -> T:
        """Run ``fn`` (sync or async) inside a span.

        The span is finalized whether ``fn`` returns or raises; its
        exception is re-raised unchanged.
        """
        span_id = self.start_measurement(name, category, metadata)
        outcome: dict[str, Any] = {"success": False}
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            outcome["success"] = True
            return result  # type: ignore[return-value]
        except Exception as e:
            outcome["error"] = str(e)
            outcome["error_kind"] = classify_error(e).value
            raise
        finally:
            self.end_measurement(span_id, outcome)

    def get_span(self, span_id: str) -> PerformanceSpan | None:
        return self._spans.get(span_id)

    # Store errors and bottlenecks

    def log_store_error(
        self,
        query: str,
        error: BaseException,
        context: StoreErrorContext | None = None,
    ) -> StoreErrorRecord | None:
        """Record a failed store query with its credentials redacted.

        A slow failure (duration above the database threshold) also
        records a ``slow_query`` bottleneck.
        """
        context = context or StoreErrorContext()
        try:
            if isinstance(error, StoreError) and error.store_code:
                code: str | None = error.store_code
            elif isinstance(error, SentinelError):
                code = error.code.value
            else:
                code = getattr(error, "code", None)
                code = str(code) if code is not None else None

            record = StoreErrorRecord(
                id=_new_id("dberr"),
                timestamp=self._wall(),
                query=redact_query(query),
                table=context.table,
                operation=context.operation,
                error_message=str(error) or "Unknown database error",
                error_code=code,
                error_kind=classify_error(error).value,
                duration_ms=context.duration_ms,
                retry_count=context.retry_count,
                context=dict(context.additional),
            )
            self._store_errors.append(record)
            log_event(
                logger,
                "performance.store_error.logged",
                logging.WARNING,
                table=record.table,
                operation=record.operation,
                error_code=record.error_code,
                error_kind=record.error_kind,
                retry_count=record.retry_count,
            )

            threshold = self.threshold_for(PerfCategory.DATABASE)
            duration = context.duration_ms
            if threshold is not None and duration is not None and duration > threshold:
                self.report_bottleneck(
                    "slow_query",
                    (
                        Severity.CRITICAL
                        if duration > self._settings.store_timeout_ms
                        else Severity.HIGH
                    ),
                    f"Slow database query on table {context.table or 'unknown'}",
                    metrics={"duration_ms": duration, "threshold_ms": threshold},
                    affected_operations=(f"{context.operation}:{context.table or 'unknown'}",),
                    recommendations=_SLOW_QUERY_RECOMMENDATIONS,
                )
            return record
        except Exception:
            logger.exception("Failed to log store error")
            return None

    def report_bottleneck(
        self,
        type: str,
        severity: Severity,
        description: str,
        metrics: dict[str, float] | None = None,
        affected_operations: Iterable[str] = (),
        recommendations: Iterable[str] = (),
    ) -> Bottleneck | None:
        """Record a bottleneck found by the monitor or reported by a caller.

        Returns:
            The recorded bottleneck, or None if it could not be recorded.
        """
        try:
            bottleneck = Bottleneck(
                id=_new_id("bneck"),
                type=type,
                severity=severity,
                description=description,
                metrics=dict(metrics or {}),
                affected_operations=tuple(affected_operations),
                recommendations=tuple(recommendations),
                timestamp=self._wall(),
            )
            self._bottlenecks.append(bottleneck)
            log_event(
                logger,
                "performance.bottleneck.reported",
                logging.ERROR if severity is Severity.CRITICAL else logging.WARNING,
                description,
                bottleneck_type=type,
                severity=severity.value,
                metrics=bottleneck.metrics,
            )
            return bottleneck
        except Exception:
            logger.exception("Failed to report bottleneck %s", type)
            return None

    def _check_span_threshold(self, span: PerformanceSpan) -> None:
        threshold = self.threshold_for(span.category)
        if threshold is None or span.duration_ms is None or span.duration_ms <= threshold:
            return
        ratio = span.duration_ms / threshold
        self.report_bottleneck(
            "high_latency" if span.category is PerfCategory.NETWORK else "slow_query",
            severity_for_ratio(ratio),
            (
                f"Slow {span.category.value} operation: {span.name} took "
                f"{span.duration_ms:.0f}ms (threshold {threshold:.0f}ms)"
            ),
            metrics={"duration_ms": span.duration_ms, "threshold_ms": threshold, "ratio": ratio},
            affected_operations=(span.name,),
            recommendations=_RECOMMENDATIONS.get(span.category, ()),
        )

    # Reporting

    def get_performance_summary(self, window_ms: float = 5 * 60 * 1000) -> PerformanceSummary:
        """Aggregate everything recorded in the trailing ``window_ms``."""
        cutoff = self._wall() - window_ms / 1000
        spans = [s for s in self._spans.values() if s.start_wall >= cutoff]
        errors = [e for e in self._store_errors if e.timestamp >= cutoff]
        bottlenecks = [b for b in self._bottlenecks if b.timestamp >= cutoff]

        completed = [s for s in spans if s.duration_ms is not None]
        average = (
            sum(s.duration_ms for s in completed) / len(completed)  # type: ignore[misc]
            if completed
            else 0.0
        )
        slowest = max(completed, key=lambda s: s.duration_ms or 0.0, default=None)

        return PerformanceSummary(
            spans=spans,
            store_errors=errors,
            bottlenecks=bottlenecks,
            total_measurements=len(spans),
            average_duration_ms=average,
            slowest_span=slowest,
            error_rate=len(errors) / len(spans) if spans else 0.0,
            critical_bottlenecks=sum(1 for b in bottlenecks if b.severity is Severity.CRITICAL),
        )

    def capture_debug_context(
        self,
        principal_id: str | None = None,
        session_id: str | None = None,
        auth_state: dict[str, Any] | None = None,
        network_state: ConnectivityState | dict[str, Any] | None = None,
        operation: str | None = None,
    ) -> DebugContext | None:
        """Snapshot recent spans and errors with sanitized auth state."""
        try:
            if isinstance(network_state, ConnectivityState):
                network_state = network_state.to_dict()
            context = DebugContext(
                timestamp=self._wall(),
                principal_id=principal_id,
                session_id=session_id,
                operation=operation,
                network_state=network_state,
                auth_state=sanitize_auth_state(auth_state),
                recent_spans=list(self._spans.values())[-10:],
                recent_errors=list(self._store_errors)[-5:],
            )
            self._debug_contexts.append(context)
            log_event(
                logger,
                "performance.debug_context.captured",
                principal_id=principal_id,
                operation=operation,
                span_count=len(context.recent_spans),
                error_count=len(context.recent_errors),
            )
            return context
        except Exception:
            logger.exception("Failed to capture debug context")
            return None

    def export_performance_data(self) -> dict[str, Any]:
        """Dump every retained record plus process info as JSON-friendly data."""
        return {
            "timestamp": _iso(self._wall()),
            "spans": [s.to_dict() for s in self._spans.values()],
            "store_errors": [e.to_dict() for e in self._store_errors],
            "bottlenecks": [b.to_dict() for b in self._bottlenecks],
            "debug_contexts": [c.to_dict() for c in self._debug_contexts],
            "system_info": self._system_info(),
        }

    def _system_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "platform": platform.platform(),
            "python": platform.python_version(),
        }
        try:
            mem_info = psutil.Process(os.getpid()).memory_info()
            system_mem = psutil.virtual_memory()
            info["memory"] = {
                "rss_mb": round(mem_info.rss / BYTES_PER_MB, 1),
                "vms_mb": round(mem_info.vms / BYTES_PER_MB, 1),
                "system_available_mb": round(system_mem.available / BYTES_PER_MB, 1),
            }
        except (OSError, psutil.Error) as e:
            logger.debug("Cannot read memory info: %s", e)
        return info

    # Retention

    def clear_performance_data(self) -> None:
        """Drop every retained span, error, bottleneck and debug context."""
        self._spans.clear()
        self._store_errors.clear()
        self._bottlenecks.clear()
        self._debug_contexts.clear()
        log_event(logger, "performance.data.cleared")

    def purge_expired(self) -> int:
        """Remove entries older than the retention window.

        Returns:
            Number of entries removed.
        """
        cutoff = self._wall() - self._settings.retention_hours * 3600
        removed = 0

        for span_id in [k for k, s in self._spans.items() if s.start_wall < cutoff]:
            del self._spans[span_id]
            removed += 1

        for collection in (self._store_errors, self._bottlenecks, self._debug_contexts):
            kept = [item for item in collection if item.timestamp >= cutoff]
            removed += len(collection) - len(kept)
            collection.clear()
            collection.extend(kept)

        if removed:
            log_event(logger, "performance.purge.completed", logging.DEBUG, removed=removed)
        return removed

    def start(self) -> None:
        """Start the periodic age purge. Idempotent."""
        if self._purge_task is not None and not self._purge_task.done():
            return
        self._purge_task = asyncio.get_running_loop().create_task(self._purge_loop())

    async def stop(self) -> None:
        """Stop the periodic age purge."""
        task, self._purge_task = self._purge_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.purge_interval_seconds)
            try:
                self.purge_expired()
            except Exception:
                logger.exception("Performance data purge failed")
