"""Tests for RecoveryEngine layers, cancellation and user recovery."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from contracts.resilience import (
    OperationContext,
    OperationType,
    RecoveryMethod,
    UserRecoveryAction,
)
from sentinel.auth.permissions import PermissionVerifier
from sentinel.config import RecoveryOptions, RetryPolicy
from sentinel.errors import (
    ConfigurationError,
    ErrorCode,
    NetworkError,
    OperationCancelledError,
    OperationTimeoutError,
    ServiceUnavailableError,
    ValidationError,
)
from sentinel.observability.performance import PerformanceMonitor
from sentinel.reliability.auth_cache import AuthStateCache
from sentinel.reliability.connectivity import ConnectivityMonitor
from sentinel.reliability.recovery import RecoveryEngine, default_degradation_handlers
from tests.fakes import ADMIN, FakeProbe

NO_LAYERS = RecoveryOptions(enable_fallback=False, enable_cached=False, enable_degradation=False)


class FlakyOperation:
    """Fails with the given errors in order, then returns ``result``."""

    def __init__(self, *errors: BaseException, result: object = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class AlwaysFails:
    def __init__(self, make_error=NetworkError) -> None:
        self.make_error = make_error
        self.calls = 0
        self.raised: list[BaseException] = []

    async def __call__(self) -> object:
        self.calls += 1
        error = self.make_error(f"failure {self.calls}")
        self.raised.append(error)
        raise error


@pytest.fixture
def engine() -> RecoveryEngine:
    return RecoveryEngine(rng=lambda: 0.0)


def _ctx(op_type: OperationType = OperationType.DATABASE, op_id: str | None = None):
    if op_id is None:
        return OperationContext(op_type)
    return OperationContext(op_type, operation_id=op_id)


class TestRetryLayer:
    """Tests for retry with backoff."""

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, engine, fast_policy):
        operation = FlakyOperation(NetworkError(), OperationTimeoutError())

        result = await engine.execute_with_recovery(operation, _ctx(), fast_policy, NO_LAYERS)

        assert result.success
        assert result.attempts_used == 3
        assert result.data == "ok"
        assert result.recovery_method is RecoveryMethod.RETRY

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, engine, fast_policy):
        result = await engine.execute_with_recovery(FlakyOperation(), _ctx(), fast_policy)
        assert result.attempts_used == 1
        assert result.recovery_method is RecoveryMethod.NONE
        assert not result.fallback_used
        assert not result.offline_mode

    @pytest.mark.asyncio
    async def test_exhausted_returns_last_error(self, engine, fast_policy):
        operation = AlwaysFails()
        policy = fast_policy.with_overrides(max_attempts=2)

        result = await engine.execute_with_recovery(operation, _ctx(), policy, NO_LAYERS)

        assert not result.success
        assert result.attempts_used == 2
        assert operation.calls == 2
        assert result.error is operation.raised[-1]
        assert result.recovery_method is RecoveryMethod.NONE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first_success", [1, 2, 4, 6])
    async def test_invocations_are_bounded(self, engine, fast_policy, first_success):
        """A retryable failure is retried until success or max_attempts."""
        operation = FlakyOperation(*[NetworkError() for _ in range(first_success - 1)])
        policy = fast_policy.with_overrides(max_attempts=4)

        await engine.execute_with_recovery(operation, _ctx(), policy, NO_LAYERS)

        assert operation.calls == min(first_success, 4)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [1, 3, 10])
    async def test_non_retryable_runs_once(self, engine, fast_policy, max_attempts):
        operation = AlwaysFails(ValidationError)
        policy = fast_policy.with_overrides(max_attempts=max_attempts)

        result = await engine.execute_with_recovery(operation, _ctx(), policy, NO_LAYERS)

        assert result.attempts_used == 1
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_message_text_does_not_make_error_retryable(self, engine, fast_policy):
        operation = AlwaysFails(lambda msg: ValueError(f"network timeout {msg}"))
        result = await engine.execute_with_recovery(operation, _ctx(), fast_policy, NO_LAYERS)
        assert result.attempts_used == 1

    @pytest.mark.asyncio
    async def test_retry_disabled(self, engine, fast_policy):
        operation = AlwaysFails()
        options = NO_LAYERS.model_copy(update={"enable_retry": False})
        result = await engine.execute_with_recovery(operation, _ctx(), fast_policy, options)
        assert result.attempts_used == 1

    @pytest.mark.asyncio
    async def test_policy_overrides_mapping(self, fast_policy):
        engine = RecoveryEngine(rng=lambda: 0.0)
        engine.update_config(retry_policies={OperationType.DATABASE: fast_policy})
        operation = AlwaysFails()

        result = await engine.execute_with_recovery(
            operation, _ctx(), {"max_attempts": 2}, NO_LAYERS
        )

        assert result.attempts_used == 2

    @pytest.mark.asyncio
    async def test_invalid_override_raises(self, engine):
        with pytest.raises(ConfigurationError):
            await engine.execute_with_recovery(FlakyOperation(), _ctx(), {"max_attempts": 0})

    @pytest.mark.asyncio
    async def test_backoff_uses_jitter(self):
        """Waits are backoff plus rng * jitter."""
        engine = RecoveryEngine(rng=lambda: 0.5)
        policy = RetryPolicy(max_attempts=2, base_delay=0.01, jitter=0.02)

        started = time.monotonic()
        await engine.execute_with_recovery(AlwaysFails(), _ctx(), policy, NO_LAYERS)

        assert time.monotonic() - started >= 0.015

    @pytest.mark.asyncio
    async def test_per_attempt_timeout(self, engine, fast_policy):
        async def slow():
            await asyncio.sleep(1.0)

        policy = fast_policy.with_overrides(max_attempts=2, timeout=0.01)
        result = await engine.execute_with_recovery(slow, _ctx(), policy, NO_LAYERS)

        assert not result.success
        assert result.attempts_used == 2
        assert isinstance(result.error, OperationTimeoutError)

    @pytest.mark.asyncio
    async def test_sync_operation(self, engine, fast_policy):
        result = await engine.execute_with_recovery(lambda: 5, _ctx(), fast_policy)
        assert result.data == 5


class TestFallbackLayers:
    """Tests for fallback, cached and degraded layers."""

    @pytest.mark.asyncio
    async def test_fallback(self, engine, fast_policy):
        engine.register_fallback_auth_method(AsyncMock(return_value={"session": "backup"}))

        result = await engine.execute_with_recovery(AlwaysFails(), _ctx(), fast_policy)

        assert result.success
        assert result.fallback_used
        assert result.recovery_method is RecoveryMethod.FALLBACK
        assert result.data == {"session": "backup"}
        assert result.attempts_used == 3

    @pytest.mark.asyncio
    async def test_fallback_slot_overwrites(self, engine, fast_policy):
        engine.register_fallback_auth_method(lambda: "first")
        engine.register_fallback_auth_method(lambda: "second")
        result = await engine.execute_with_recovery(AlwaysFails(), _ctx(), fast_policy)
        assert result.data == "second"
        assert engine.get_recovery_stats()["fallback_methods"] == 1

        engine.register_fallback_auth_method(None)
        assert engine.get_recovery_stats()["fallback_methods"] == 0

    @pytest.mark.asyncio
    async def test_failed_fallback_keeps_operation_error(self, engine, fast_policy):
        engine.register_fallback_auth_method(AsyncMock(side_effect=RuntimeError("fallback")))
        operation = AlwaysFails()

        result = await engine.execute_with_recovery(operation, _ctx(), fast_policy)

        assert not result.success
        assert result.error is operation.raised[-1]

    @pytest.mark.asyncio
    async def test_fallback_returning_none_is_failure(self, engine, fast_policy):
        engine.register_fallback_auth_method(lambda: None)
        result = await engine.execute_with_recovery(AlwaysFails(), _ctx(), fast_policy)
        assert not result.success
        assert not result.fallback_used

    @pytest.mark.asyncio
    async def test_cached_for_auth(self, clock, fast_policy):
        cache = AuthStateCache(clock=clock)
        snapshot = cache.cache(ADMIN, "admin")
        engine = RecoveryEngine(auth_cache=cache, rng=lambda: 0.0)

        result = await engine.execute_with_recovery(
            AlwaysFails(), _ctx(OperationType.AUTH), fast_policy
        )

        assert result.success
        assert result.data is snapshot
        assert result.recovery_method is RecoveryMethod.CACHED
        assert result.offline_mode

    @pytest.mark.asyncio
    async def test_cached_only_for_auth(self, clock, fast_policy):
        cache = AuthStateCache(clock=clock)
        cache.cache(ADMIN, "admin")
        engine = RecoveryEngine(auth_cache=cache, rng=lambda: 0.0)

        result = await engine.execute_with_recovery(AlwaysFails(), _ctx(), fast_policy)

        assert not result.success

    @pytest.mark.asyncio
    async def test_expired_cache_skipped(self, clock, fast_policy):
        cache = AuthStateCache(ttl_seconds=10, clock=clock)
        cache.cache(ADMIN, "admin")
        clock.advance(10)
        engine = RecoveryEngine(auth_cache=cache, rng=lambda: 0.0)

        result = await engine.execute_with_recovery(
            AlwaysFails(), _ctx(OperationType.AUTH), fast_policy
        )

        assert not result.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("op_type", "message"),
        [
            (OperationType.AUTH, "Authentication service unavailable"),
            (OperationType.DATABASE, "Database service unavailable"),
            (OperationType.UI, "UI component failed to load"),
        ],
    )
    async def test_default_degradation(self, engine, fast_policy, op_type, message):
        for registered_type, handler in default_degradation_handlers().items():
            engine.register_degradation_handler(registered_type, handler)

        result = await engine.execute_with_recovery(AlwaysFails(), _ctx(op_type), fast_policy)

        assert result.success
        assert result.recovery_method is RecoveryMethod.DEGRADED
        assert result.data["message"] == message

    @pytest.mark.asyncio
    async def test_degradation_receives_context_and_error(self, engine, fast_policy):
        handler = MagicMock(return_value="degraded")
        engine.register_degradation_handler(OperationType.DATABASE, handler)
        operation = AlwaysFails()
        context = _ctx()

        await engine.execute_with_recovery(operation, context, fast_policy)

        handler.assert_called_once_with(context, operation.raised[-1])

    @pytest.mark.asyncio
    async def test_layer_order(self, clock, fast_policy):
        """Fallback wins over cached, cached wins over degraded."""
        cache = AuthStateCache(clock=clock)
        cache.cache(ADMIN, "admin")
        engine = RecoveryEngine(auth_cache=cache, rng=lambda: 0.0)
        engine.register_degradation_handler(OperationType.AUTH, lambda ctx, err: "degraded")

        result = await engine.execute_with_recovery(
            AlwaysFails(), _ctx(OperationType.AUTH), fast_policy
        )
        assert result.recovery_method is RecoveryMethod.CACHED

        engine.register_fallback_auth_method(lambda: "fallback")
        result = await engine.execute_with_recovery(
            AlwaysFails(), _ctx(OperationType.AUTH), fast_policy
        )
        assert result.recovery_method is RecoveryMethod.FALLBACK

    @pytest.mark.asyncio
    async def test_disabled_layers_skipped(self, engine, fast_policy):
        engine.register_fallback_auth_method(lambda: "fallback")
        engine.register_degradation_handler(OperationType.DATABASE, lambda ctx, err: "degraded")

        result = await engine.execute_with_recovery(AlwaysFails(), _ctx(), fast_policy, NO_LAYERS)

        assert not result.success


class TestCancellation:
    """Tests for abort_operation and abort_all_operations."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(5)
    async def test_abort_during_backoff_resolves_promptly(self, engine):
        """Aborting mid-wait ends the call without waiting out the delay."""
        operation = AlwaysFails()
        policy = RetryPolicy(max_attempts=3, base_delay=30.0, max_delay=30.0, jitter=0.0)
        engine.register_fallback_auth_method(lambda: "fallback")
        context = _ctx(op_id="op-abort")

        task = asyncio.ensure_future(engine.execute_with_recovery(operation, context, policy))
        while operation.calls == 0:
            await asyncio.sleep(0)
        await asyncio.sleep(0.01)

        started = time.monotonic()
        assert engine.abort_operation("op-abort") is True
        result = await task

        assert time.monotonic() - started < 1.0
        assert not result.success
        assert result.attempts_used == 1
        assert isinstance(result.error, OperationCancelledError)
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_abort_unknown_or_twice(self, engine):
        assert engine.abort_operation("nope") is False

        context = _ctx(op_id="op-twice")
        policy = RetryPolicy(max_attempts=2, base_delay=30.0, max_delay=30.0, jitter=0.0)
        task = asyncio.ensure_future(engine.execute_with_recovery(AlwaysFails(), context, policy))
        await asyncio.sleep(0.01)

        assert engine.abort_operation("op-twice") is True
        assert engine.abort_operation("op-twice") is False
        await task

    @pytest.mark.asyncio
    async def test_abort_all(self, engine):
        policy = RetryPolicy(max_attempts=2, base_delay=30.0, max_delay=30.0, jitter=0.0)
        tasks = [
            asyncio.ensure_future(engine.execute_with_recovery(AlwaysFails(), _ctx(), policy))
            for _ in range(3)
        ]
        await asyncio.sleep(0.01)
        assert engine.get_recovery_stats()["active_operations"] == 3

        assert engine.abort_all_operations() == 3
        results = await asyncio.gather(*tasks)

        assert all(not r.success for r in results)
        assert engine.get_recovery_stats()["active_operations"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_operation_id_rejected(self, engine):
        policy = RetryPolicy(max_attempts=2, base_delay=30.0, max_delay=30.0, jitter=0.0)
        context = _ctx(op_id="dup")
        task = asyncio.ensure_future(engine.execute_with_recovery(AlwaysFails(), context, policy))
        await asyncio.sleep(0.01)

        with pytest.raises(ConfigurationError):
            await engine.execute_with_recovery(FlakyOperation(), _ctx(op_id="dup"))

        engine.abort_operation("dup")
        await task

    @pytest.mark.asyncio
    async def test_id_reusable_after_completion(self, engine, fast_policy):
        await engine.execute_with_recovery(FlakyOperation(), _ctx(op_id="same"), fast_policy)
        result = await engine.execute_with_recovery(
            FlakyOperation(), _ctx(op_id="same"), fast_policy
        )
        assert result.success


class TestIntegrationWithServices:
    """Tests for connectivity and performance wiring."""

    @pytest.mark.asyncio
    async def test_offline_mode_flag(self, fast_policy):
        monitor = ConnectivityMonitor(FakeProbe(), lambda: False)
        await monitor.check_connectivity()
        engine = RecoveryEngine(connectivity=monitor, rng=lambda: 0.0)

        result = await engine.execute_with_recovery(FlakyOperation(), _ctx(), fast_policy)

        assert result.success
        assert result.offline_mode

    @pytest.mark.asyncio
    async def test_records_span(self, fast_policy):
        performance = PerformanceMonitor()
        engine = RecoveryEngine(performance=performance, rng=lambda: 0.0)

        await engine.execute_with_recovery(FlakyOperation(), _ctx(OperationType.UI), fast_policy)

        [span] = performance.get_performance_summary().spans
        assert span.name == "recovery.ui"
        assert span.metadata["success"] is True
        assert span.metadata["recovery_method"] == "none"


class TestUserRecovery:
    """Tests for initiate_user_recovery."""

    @pytest.mark.asyncio
    async def test_retry_last_failure(self, engine, fast_policy):
        operation = FlakyOperation(*[ServiceUnavailableError() for _ in range(3)])
        failed = await engine.execute_with_recovery(operation, _ctx(), fast_policy, NO_LAYERS)
        assert not failed.success

        result = await engine.initiate_user_recovery(OperationType.DATABASE, "retry")

        assert result.success
        assert result.recovery_method is RecoveryMethod.USER_INITIATED
        assert operation.calls == 4
        assert engine.get_recovery_stats()["recorded_failures"] == 0

    @pytest.mark.asyncio
    async def test_retry_without_failure(self, engine):
        result = await engine.initiate_user_recovery(OperationType.AUTH, UserRecoveryAction.RETRY)
        assert not result.success
        assert result.error.code is ErrorCode.RCV_NOTHING_TO_RETRY

    @pytest.mark.asyncio
    async def test_unknown_action(self, engine):
        result = await engine.initiate_user_recovery(OperationType.AUTH, "explode")
        assert not result.success
        assert result.error.code is ErrorCode.VAL_UNKNOWN_ACTION
        assert result.recovery_method is RecoveryMethod.USER_INITIATED

    @pytest.mark.asyncio
    async def test_refresh(self, identity_store):
        engine = RecoveryEngine(verifier=PermissionVerifier(identity_store))
        result = await engine.initiate_user_recovery(OperationType.AUTH, "refresh")
        assert result.success
        assert result.data.role == "admin"

    @pytest.mark.asyncio
    async def test_refresh_without_verifier(self, engine):
        result = await engine.initiate_user_recovery(OperationType.AUTH, "refresh")
        assert not result.success

    @pytest.mark.asyncio
    async def test_reset(self, engine, fast_policy):
        await engine.execute_with_recovery(AlwaysFails(), _ctx(), fast_policy, NO_LAYERS)
        result = await engine.initiate_user_recovery(OperationType.DATABASE, "reset")
        assert result.success
        assert engine.get_recovery_stats()["recorded_failures"] == 0

    @pytest.mark.asyncio
    async def test_clear_cache(self, clock):
        cache = AuthStateCache(clock=clock)
        cache.cache(ADMIN, "admin")
        engine = RecoveryEngine(auth_cache=cache)

        result = await engine.initiate_user_recovery(OperationType.AUTH, "clear_cache")

        assert result.success
        assert cache.get() is None

    @pytest.mark.asyncio
    async def test_force_logout(self, clock):
        cache = AuthStateCache(clock=clock)
        cache.cache(ADMIN, "admin")
        hook = AsyncMock()
        engine = RecoveryEngine(auth_cache=cache, logout_hook=hook)

        result = await engine.initiate_user_recovery(OperationType.AUTH, "force_logout")

        assert result.success
        hook.assert_awaited_once()
        assert cache.get() is None

    @pytest.mark.asyncio
    async def test_failing_hook_reported_not_raised(self):
        engine = RecoveryEngine(logout_hook=MagicMock(side_effect=RuntimeError("hook")))
        result = await engine.initiate_user_recovery(OperationType.AUTH, "force_logout")
        assert not result.success
        assert str(result.error) == "hook"


class TestConfiguration:
    """Tests for update_config and stats."""

    def test_update_config_rejects_wrong_types(self, engine):
        with pytest.raises(ConfigurationError):
            engine.update_config(options={"enable_retry": False})
        with pytest.raises(ConfigurationError):
            engine.update_config(retry_policies={"auth": RetryPolicy()})

    def test_update_config(self, engine):
        engine.update_config(
            RecoveryOptions(enable_degradation=False),
            {OperationType.UI: RetryPolicy(max_attempts=7)},
        )
        assert not engine.options.enable_degradation
        assert engine.policy_for(OperationType.UI).max_attempts == 7

    def test_stats(self, engine):
        engine.register_degradation_handler(OperationType.UI, lambda ctx, err: {})
        engine.register_degradation_handler(OperationType.UI, lambda ctx, err: {})
        assert engine.get_recovery_stats() == {
            "active_operations": 0,
            "fallback_methods": 0,
            "degradation_handlers": 1,
            "recorded_failures": 0,
        }
