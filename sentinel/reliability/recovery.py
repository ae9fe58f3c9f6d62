"""Layered error recovery for arbitrary async operations.

Operations run through up to five layers, first success wins:

1. retry: repeat retryable failures with exponential backoff and jitter
2. fallback: the single registered fallback method
3. cached: the last verified principal snapshot (auth operations only)
4. degraded: the degradation handler registered for the operation type
5. failure: the last real error from the operation

Cancellation is cooperative. ``abort_operation`` is observed before each
attempt, before each backoff wait (waking the wait immediately) and before
the non-retry layers. It cannot interrupt an attempt already running.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from contracts.resilience import (
    OperationContext,
    OperationType,
    PerfCategory,
    RecoveryMethod,
    RecoveryResult,
    UserRecoveryAction,
)
from sentinel.config import RecoveryOptions, RetryPolicy, SentinelConfig
from sentinel.errors import (
    ConfigurationError,
    ValidationError,
    classify_error,
    nothing_to_retry,
    operation_cancelled,
    operation_timed_out,
    unknown_recovery_action,
)
from sentinel.observability.logging import log_event
from sentinel.observability.performance import PerformanceMonitor
from sentinel.reliability.auth_cache import AuthStateCache
from sentinel.reliability.cancellation import CancellationToken
from sentinel.reliability.connectivity import ConnectivityMonitor

if TYPE_CHECKING:
    from sentinel.auth.permissions import PermissionVerifier

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]
FallbackMethod = Callable[[], Any]
DegradationHandler = Callable[[OperationContext, BaseException | None], Any]
LogoutHook = Callable[[], Any]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def default_degradation_handlers() -> dict[OperationType, DegradationHandler]:
    """Minimal payloads that keep auth, database and UI callers functional."""

    def auth(context: OperationContext, error: BaseException | None) -> dict[str, Any]:
        return {
            "user": None,
            "is_authenticated": False,
            "message": "Authentication service unavailable",
        }

    def database(context: OperationContext, error: BaseException | None) -> dict[str, Any]:
        return {"data": [], "message": "Database service unavailable"}

    def ui(context: OperationContext, error: BaseException | None) -> dict[str, Any]:
        return {"component": "ErrorBoundary", "message": "UI component failed to load"}

    return {
        OperationType.AUTH: auth,
        OperationType.DATABASE: database,
        OperationType.UI: ui,
    }


@dataclass
class _ActiveOperation:
    context: OperationContext
    token: CancellationToken
    started_at: float


@dataclass
class _FailedOperation:
    operation: Operation
    context: OperationContext
    retry_policy: RetryPolicy
    options: RecoveryOptions


class RecoveryEngine:
    """Runs operations through retry, fallback, cached and degraded layers.

    Never raises for operation failures: every call resolves to a
    RecoveryResult. Only configuration-contract violations (an invalid
    retry override, a duplicate in-flight operation id) raise.

    Example:
        >>> engine = RecoveryEngine(connectivity=monitor, auth_cache=cache)
        >>> result = await engine.execute_with_recovery(
        ...     fetch_profile, OperationContext(OperationType.AUTH)
        ... )
        >>> if not result.success:
        ...     show_error(result.error)
    """

    def __init__(
        self,
        config: SentinelConfig | None = None,
        *,
        connectivity: ConnectivityMonitor | None = None,
        auth_cache: AuthStateCache | None = None,
        verifier: PermissionVerifier | None = None,
        performance: PerformanceMonitor | None = None,
        logout_hook: LogoutHook | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Retry policies per operation type and default layer flags.
            connectivity: Consulted for offline mode and logged with each run.
            auth_cache: Source of the cached layer.
            verifier: Used by the ``refresh`` user recovery action.
            performance: Receives one span per measured execution.
            logout_hook: Called by the ``force_logout`` user recovery action.
            rng: Source of [0, 1) values for backoff jitter.
        """
        config = config or SentinelConfig()
        self._policies: dict[OperationType, RetryPolicy] = dict(config.retry)
        self._options = config.recovery
        self._connectivity = connectivity
        self._auth_cache = auth_cache
        self._verifier = verifier
        self._performance = performance
        self._logout_hook = logout_hook
        self._rng = rng

        self._fallback: FallbackMethod | None = None
        self._degradation_handlers: dict[OperationType, DegradationHandler] = {}
        self._active: dict[str, _ActiveOperation] = {}
        self._last_failed: dict[OperationType, _FailedOperation] = {}

    @property
    def options(self) -> RecoveryOptions:
        return self._options

    def policy_for(self, operation_type: OperationType) -> RetryPolicy:
        """Default retry policy of an operation type."""
        return self._policies[operation_type]

    # Registration

    def register_fallback_auth_method(self, method: FallbackMethod | None) -> None:
        """Set the single fallback method, replacing any previous one.

        Passing None clears the slot.
        """
        if self._fallback is not None and method is not None:
            log_event(logger, "recovery.fallback.replaced", logging.DEBUG)
        self._fallback = method

    def register_degradation_handler(
        self,
        operation_type: OperationType,
        handler: DegradationHandler,
    ) -> None:
        """Set the degradation handler for an operation type, replacing any previous one."""
        if operation_type in self._degradation_handlers:
            log_event(
                logger,
                "recovery.degradation.replaced",
                logging.DEBUG,
                operation_type=operation_type.value,
            )
        self._degradation_handlers[operation_type] = handler

    def update_config(
        self,
        options: RecoveryOptions | None = None,
        retry_policies: Mapping[OperationType, RetryPolicy] | None = None,
    ) -> None:
        """Replace default layer flags and/or per-type retry policies.

        Raises:
            ConfigurationError: If a value has the wrong type.
        """
        if options is not None:
            if not isinstance(options, RecoveryOptions):
                raise ConfigurationError(
                    "options must be a RecoveryOptions", config_key="recovery"
                )
            self._options = options
        for op_type, policy in (retry_policies or {}).items():
            if not isinstance(op_type, OperationType) or not isinstance(policy, RetryPolicy):
                raise ConfigurationError(
                    f"Invalid retry policy entry for {op_type!r}", config_key="retry"
                )
            self._policies[op_type] = policy
        log_event(logger, "recovery.config.updated")

    # Execution

    async def execute_with_recovery(
        self,
        operation: Operation,
        context: OperationContext,
        retry_policy: RetryPolicy | Mapping[str, Any] | None = None,
        options: RecoveryOptions | None = None,
        *,
        measure: bool = True,
    ) -> RecoveryResult:
        """Run an operation through the recovery layers.

        Args:
            operation: Zero-argument coroutine function to execute.
            context: Operation type, unique id and metadata.
            retry_policy: Full policy, field overrides for the type's default, or None.
            options: Layer flags for this call. Defaults to the engine's flags.
            measure: Record a performance span for the execution. Callers that
                time the operation themselves pass False.

        Returns:
            The outcome. Operation errors are reported, never raised.

        Raises:
            ConfigurationError: For an invalid policy override or a reused
                in-flight operation id.
        """
        policy = self._resolve_policy(context.operation_type, retry_policy)
        options = options or self._options
        if context.operation_id in self._active:
            raise ConfigurationError(
                f"Operation {context.operation_id} is already in flight",
                config_key="operation_id",
            )

        token = CancellationToken()
        self._active[context.operation_id] = _ActiveOperation(context, token, time.monotonic())

        state = self._connectivity.get_state() if self._connectivity else None
        log_event(
            logger,
            "recovery.operation.started",
            logging.DEBUG,
            operation_id=context.operation_id,
            operation_type=context.operation_type.value,
            max_attempts=policy.max_attempts,
            connection_quality=state.connection_quality.value if state else None,
        )

        span_id = None
        if measure and self._performance is not None:
            span_id = self._performance.start_measurement(
                f"recovery.{context.operation_type.value}",
                PerfCategory(context.operation_type.value),
                {"operation_id": context.operation_id},
            )

        result: RecoveryResult | None = None
        try:
            result = await self._run_layers(operation, context, policy, options, token)
        finally:
            self._active.pop(context.operation_id, None)
            if self._performance is not None and span_id is not None:
                self._performance.end_measurement(
                    span_id,
                    {
                        "success": bool(result and result.success),
                        "recovery_method": result.recovery_method.value if result else None,
                    },
                )

        if self._connectivity is not None and not self._connectivity.get_state().is_online:
            result.offline_mode = True

        if result.success:
            self._last_failed.pop(context.operation_type, None)
        else:
            self._last_failed[context.operation_type] = _FailedOperation(
                operation, context, policy, options
            )

        log_event(
            logger,
            "recovery.operation.completed" if result.success else "recovery.operation.failed",
            logging.INFO if result.success else logging.WARNING,
            operation_id=context.operation_id,
            operation_type=context.operation_type.value,
            recovery_method=result.recovery_method.value,
            attempts_used=result.attempts_used,
            offline_mode=result.offline_mode,
            error=str(result.error) if result.error else None,
        )
        return result

    async def _run_layers(
        self,
        operation: Operation,
        context: OperationContext,
        policy: RetryPolicy,
        options: RecoveryOptions,
        token: CancellationToken,
    ) -> RecoveryResult:
        op_id = context.operation_id
        max_attempts = policy.max_attempts if options.enable_retry else 1
        attempts = 0
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            if token.cancelled:
                return self._cancelled(op_id, attempts)

            attempts = attempt
            try:
                data = await self._attempt(operation, context, policy)
            except Exception as e:
                last_error = e
            else:
                return RecoveryResult(
                    success=True,
                    data=data,
                    recovery_method=RecoveryMethod.RETRY if attempt > 1 else RecoveryMethod.NONE,
                    attempts_used=attempt,
                )

            kind = classify_error(last_error)
            if not policy.is_retryable(kind):
                log_event(
                    logger,
                    "recovery.retry.not_retryable",
                    logging.DEBUG,
                    operation_id=op_id,
                    attempt=attempt,
                    error_kind=kind.value,
                )
                break
            if attempt == max_attempts:
                break

            delay = policy.backoff_delay(attempt) + self._rng() * policy.jitter
            log_event(
                logger,
                "recovery.retry.delay",
                logging.INFO,
                operation_id=op_id,
                attempt=attempt,
                delay_seconds=round(delay, 3),
                error_kind=kind.value,
                error=str(last_error),
            )
            if token.cancelled or await token.sleep(delay):
                return self._cancelled(op_id, attempts)

        if token.cancelled:
            return self._cancelled(op_id, attempts)

        if options.enable_fallback and self._fallback is not None:
            data = await self._invoke_layer("fallback", op_id, self._fallback)
            if data is not None:
                return RecoveryResult(
                    success=True,
                    data=data,
                    recovery_method=RecoveryMethod.FALLBACK,
                    attempts_used=attempts,
                    fallback_used=True,
                )

        if (
            options.enable_cached
            and context.operation_type is OperationType.AUTH
            and self._auth_cache is not None
        ):
            snapshot = self._auth_cache.get()
            if snapshot is not None:
                log_event(logger, "recovery.cached.used", operation_id=op_id)
                return RecoveryResult(
                    success=True,
                    data=snapshot,
                    recovery_method=RecoveryMethod.CACHED,
                    attempts_used=attempts,
                    offline_mode=True,
                )

        handler = self._degradation_handlers.get(context.operation_type)
        if options.enable_degradation and handler is not None:
            data = await self._invoke_layer(
                "degradation", op_id, lambda: handler(context, last_error)
            )
            if data is not None:
                return RecoveryResult(
                    success=True,
                    data=data,
                    recovery_method=RecoveryMethod.DEGRADED,
                    attempts_used=attempts,
                )

        return RecoveryResult(success=False, error=last_error, attempts_used=attempts)

    async def _attempt(
        self,
        operation: Operation,
        context: OperationContext,
        policy: RetryPolicy,
    ) -> Any:
        if policy.timeout is None:
            return await _resolve(operation())
        try:
            async with asyncio.timeout(policy.timeout) as scope:
                return await _resolve(operation())
        except TimeoutError as e:
            if scope.expired():
                raise operation_timed_out(context.operation_id, policy.timeout) from e
            raise

    async def _invoke_layer(self, layer: str, op_id: str, fn: Callable[[], Any]) -> Any:
        try:
            data = await _resolve(fn())
        except Exception as e:
            log_event(
                logger,
                f"recovery.{layer}.failed",
                logging.WARNING,
                operation_id=op_id,
                error=str(e),
            )
            return None
        if data is None:
            log_event(logger, f"recovery.{layer}.empty", logging.DEBUG, operation_id=op_id)
        else:
            log_event(logger, f"recovery.{layer}.used", operation_id=op_id)
        return data

    def _cancelled(self, op_id: str, attempts: int) -> RecoveryResult:
        log_event(logger, "recovery.operation.aborted", operation_id=op_id, attempts_used=attempts)
        return RecoveryResult(
            success=False,
            error=operation_cancelled(op_id),
            attempts_used=attempts,
        )

    def _resolve_policy(
        self,
        operation_type: OperationType,
        retry_policy: RetryPolicy | Mapping[str, Any] | None,
    ) -> RetryPolicy:
        if retry_policy is None:
            return self._policies[operation_type]
        if isinstance(retry_policy, RetryPolicy):
            return retry_policy
        return self._policies[operation_type].with_overrides(**dict(retry_policy))

    # Cancellation

    def abort_operation(self, operation_id: str) -> bool:
        """Request cancellation of an in-flight operation.

        Returns:
            True if the operation was in flight. Later calls for the same id
            return False.
        """
        active = self._active.pop(operation_id, None)
        if active is None:
            return False
        active.token.cancel()
        log_event(
            logger,
            "recovery.abort.requested",
            operation_id=operation_id,
            operation_type=active.context.operation_type.value,
        )
        return True

    def abort_all_operations(self) -> int:
        """Abort every in-flight operation and return how many there were."""
        return sum(self.abort_operation(op_id) for op_id in list(self._active))

    def get_recovery_stats(self) -> dict[str, Any]:
        """Counts of in-flight operations and registered handlers."""
        return {
            "active_operations": len(self._active),
            "fallback_methods": 1 if self._fallback is not None else 0,
            "degradation_handlers": len(self._degradation_handlers),
            "recorded_failures": len(self._last_failed),
        }

    # User-initiated recovery

    async def initiate_user_recovery(
        self,
        operation_type: OperationType,
        action: UserRecoveryAction | str,
    ) -> RecoveryResult:
        """Run a recovery action chosen by the user.

        Returns:
            A result with ``recovery_method=user_initiated``. Never raises.
        """
        try:
            action = UserRecoveryAction(action)
        except ValueError:
            return self._user_result(False, error=unknown_recovery_action(action))

        log_event(
            logger,
            "recovery.user_action.started",
            operation_type=operation_type.value,
            action=action.value,
        )
        try:
            result = await self._run_user_action(operation_type, action)
        except Exception as e:
            logger.exception("User recovery action %s failed", action.value)
            result = self._user_result(False, error=e)

        log_event(
            logger,
            "recovery.user_action.completed",
            logging.INFO if result.success else logging.WARNING,
            operation_type=operation_type.value,
            action=action.value,
            success=result.success,
        )
        return result

    async def _run_user_action(
        self,
        operation_type: OperationType,
        action: UserRecoveryAction,
    ) -> RecoveryResult:
        if action is UserRecoveryAction.RETRY:
            failed = self._last_failed.get(operation_type)
            if failed is None:
                return self._user_result(False, error=nothing_to_retry(operation_type.value))
            context = OperationContext(
                operation_type=operation_type,
                metadata={**failed.context.metadata, "user_initiated": True},
            )
            result = await self.execute_with_recovery(
                failed.operation, context, failed.retry_policy, failed.options
            )
            return replace(result, recovery_method=RecoveryMethod.USER_INITIATED)

        if action is UserRecoveryAction.REFRESH:
            if self._verifier is None:
                return self._user_result(
                    False, error=ValidationError("No permission verifier configured")
                )
            verification = await self._verifier.verify_user_role(use_cache=False)
            error = None if verification.is_verified else ValidationError(
                verification.error or "Verification failed"
            )
            return self._user_result(verification.is_verified, data=verification, error=error)

        if action is UserRecoveryAction.RESET:
            aborted = self.abort_all_operations()
            self._last_failed.clear()
            return self._user_result(True, data={"aborted_operations": aborted})

        if action is UserRecoveryAction.CLEAR_CACHE:
            self._clear_auth_state()
            return self._user_result(True, data={"cache_cleared": True})

        # FORCE_LOGOUT
        aborted = self.abort_all_operations()
        self._last_failed.clear()
        self._clear_auth_state()
        if self._logout_hook is not None:
            await _resolve(self._logout_hook())
        return self._user_result(True, data={"logged_out": True, "aborted_operations": aborted})

    def _clear_auth_state(self) -> None:
        if self._auth_cache is not None:
            self._auth_cache.clear()
        if self._verifier is not None:
            self._verifier.invalidate()

    @staticmethod
    def _user_result(
        success: bool,
        data: Any = None,
        error: BaseException | None = None,
    ) -> RecoveryResult:
        return RecoveryResult(
            success=success,
            data=data,
            error=error,
            recovery_method=RecoveryMethod.USER_INITIATED,
        )
