"""Pytest configuration for Sentinel tests.

Provides fixtures built on the fakes in ``tests.fakes``. Every test builds its own service
instances; nothing global is reset between tests.
"""

from __future__ import annotations

import pytest

from sentinel.config import RetryPolicy, SentinelConfig
from tests.fakes import ADMIN, FakeClock, FakeIdentityStore, FakeProbe


@pytest.fixture
def identity_store() -> FakeIdentityStore:
    """Store whose current principal is an admin."""
    return FakeIdentityStore(
        principal=ADMIN,
        roles={"admin-1": "admin", "member-1": "user", "super-1": "superuser"},
    )


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> SentinelConfig:
    return SentinelConfig()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy with no waiting, so retry tests run instantly."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)
