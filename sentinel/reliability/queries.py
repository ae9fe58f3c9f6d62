"""Instrumented data-store queries.

Wraps a store call with the recovery engine and the performance monitor:
one ``database`` span per query, one logged store error per failed
attempt, and a critical bottleneck when a query fails for good.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from contracts.resilience import (
    ErrorKind,
    OperationContext,
    OperationType,
    PerfCategory,
    RecoveryMethod,
    Severity,
)
from sentinel.config import RecoveryOptions, RetryPolicy
from sentinel.errors import classify_error
from sentinel.observability.logging import log_event
from sentinel.observability.performance import PerformanceMonitor, StoreErrorContext
from sentinel.reliability.recovery import RecoveryEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that retrying cannot fix: rejected permissions, bad syntax, missing tables
CRITICAL_KINDS = frozenset({ErrorKind.PERMISSION_DENIED, ErrorKind.VALIDATION})

_FAILURE_RECOMMENDATIONS = (
    "Check database connectivity",
    "Verify table permissions",
    "Check for database locks",
    "Review query syntax and parameters",
    "Contact database administrator if issue persists",
)


@dataclass
class QueryResult(Generic[T]):
    """Outcome of an instrumented query.

    Attributes:
        data: Query result when successful.
        error: Last real error when unsuccessful.
        span_id: Performance span covering the whole query.
        duration_ms: Wall time of the whole query including retries.
        attempts_used: Number of times the store was called.
        recovery_method: Layer that produced the result.
    """

    data: T | None
    error: BaseException | None
    span_id: str
    duration_ms: float
    attempts_used: int
    recovery_method: RecoveryMethod

    @property
    def success(self) -> bool:
        return self.error is None


class QueryRunner:
    """Runs store queries with retry, error logging and timing.

    Example:
        >>> runner = QueryRunner(engine, performance)
        >>> result = await runner.run(lambda: db.fetch_members(), "members", "select")
        >>> rows = result.data if result.success else []
    """

    def __init__(
        self,
        engine: RecoveryEngine,
        performance: PerformanceMonitor,
        *,
        monotonic: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._engine = engine
        self._performance = performance
        self._monotonic = monotonic

    async def run(
        self,
        query_fn: Callable[[], Awaitable[T]],
        table: str,
        operation: str,
        *,
        query_text: str | None = None,
        retry_policy: RetryPolicy | Mapping[str, Any] | None = None,
        options: RecoveryOptions | None = None,
    ) -> QueryResult[T]:
        """Execute a store query through the recovery engine.

        Args:
            query_fn: Zero-argument coroutine function performing the query.
            table: Table or collection being queried.
            operation: Operation name (select, insert, update, ...).
            query_text: Query text stored (redacted) with failures.
            retry_policy: Policy or overrides for the database default.
            options: Recovery layer flags.

        Returns:
            The query outcome. Store failures are reported, never raised.
        """
        if isinstance(retry_policy, RetryPolicy):
            policy = retry_policy
        elif retry_policy:
            policy = self._engine.policy_for(OperationType.DATABASE).with_overrides(**retry_policy)
        else:
            policy = self._engine.policy_for(OperationType.DATABASE)

        span_id = self._performance.start_measurement(
            f"db_{operation}_{table}",
            PerfCategory.DATABASE,
            {"table": table, "operation": operation},
            tags=("database", operation, table),
        )
        attempts = 0
        start = self._monotonic()

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            attempt_start = self._monotonic()
            try:
                return await query_fn()
            except Exception as e:
                self._performance.log_store_error(
                    query_text or f"{operation} {table}",
                    e,
                    StoreErrorContext(
                        table=table,
                        operation=operation,
                        duration_ms=(self._monotonic() - attempt_start) * 1000,
                        retry_count=attempts - 1,
                    ),
                )
                raise

        context = OperationContext(
            operation_type=OperationType.DATABASE,
            metadata={"table": table, "operation": operation},
        )
        result = await self._engine.execute_with_recovery(
            attempt, context, policy, options, measure=False
        )
        duration_ms = (self._monotonic() - start) * 1000

        self._performance.end_measurement(
            span_id,
            {
                "success": result.success,
                "attempts_used": attempts,
                "recovery_method": result.recovery_method.value,
            },
        )

        if not result.success and result.error is not None:
            exhausted = attempts >= policy.max_attempts
            self._report_failure(result.error, table, operation, attempts, duration_ms, exhausted)

        return QueryResult(
            data=result.data if result.success else None,
            error=None if result.success else result.error,
            span_id=span_id,
            duration_ms=duration_ms,
            attempts_used=attempts,
            recovery_method=result.recovery_method,
        )

    def _report_failure(
        self,
        error: BaseException,
        table: str,
        operation: str,
        attempts: int,
        duration_ms: float,
        exhausted: bool,
    ) -> None:
        kind = classify_error(error)
        if kind not in CRITICAL_KINDS and not exhausted:
            return
        log_event(
            logger,
            "queries.failure.critical",
            logging.ERROR,
            table=table,
            operation=operation,
            error_kind=kind.value,
            attempts=attempts,
        )
        self._performance.report_bottleneck(
            "slow_query",
            Severity.CRITICAL,
            f"Database {operation} operation failed on {table} after {attempts} attempts",
            metrics={"attempts": attempts, "duration_ms": duration_ms},
            affected_operations=(f"{operation}_{table}",),
            recommendations=_FAILURE_RECOMMENDATIONS,
        )
