"""Tests for the diagnostics command."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from rich.console import Console

from contracts.resilience import ConnectivityState
from sentinel import config as config_module
from sentinel import diagnostics
from sentinel.config import ConnectivitySettings, SentinelConfig, reset_config, save_config
from sentinel.errors import ServiceUnavailableError
from tests.fakes import FakeProbe


@pytest.fixture
def fake_probe(monkeypatch) -> FakeProbe:
    probe = FakeProbe()
    monkeypatch.setattr(diagnostics, "HttpHealthProbe", lambda url, timeout: probe)
    monkeypatch.setattr(diagnostics, "interface_is_up", lambda: True)
    monkeypatch.setattr(diagnostics, "configure_structured_logging", MagicMock())
    return probe


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setattr(config_module, "CONFIG_PATH", path)
    reset_config()
    yield path
    reset_config()


def _console() -> Console:
    return Console(record=True, width=120, force_terminal=False)


class TestRenderState:
    """Tests for render_state."""

    def test_renders_offline_state(self):
        console = _console()
        diagnostics.render_state(console, ConnectivityState(), "https://x/health")
        text = console.export_text()
        assert "https://x/health" in text
        assert "offline" in text
        assert "n/a" in text


class TestDiagnose:
    """Tests for diagnose."""

    @pytest.mark.asyncio
    async def test_reachable(self, fake_probe):
        console = _console()
        ok = await diagnostics.diagnose("https://x/health", ConnectivitySettings(), console)
        assert ok is True
        assert "Service reachable" in console.export_text()

    @pytest.mark.asyncio
    async def test_unreachable_shows_steps(self, fake_probe):
        fake_probe.error = ServiceUnavailableError()
        console = _console()

        ok = await diagnostics.diagnose("https://x/health", ConnectivitySettings(), console)

        text = console.export_text()
        assert ok is False
        assert "Database connection failed" in text
        assert "Contact support if the problem continues" in text


class TestMain:
    """Tests for the command-line entry point."""

    def test_no_url_is_usage_error(self, fake_probe, config_path):
        assert diagnostics.main([]) == 2

    def test_url_argument(self, fake_probe, config_path):
        assert diagnostics.main(["--url", "https://x/health", "--timeout", "2"]) == 0

    def test_url_from_config(self, fake_probe, config_path):
        config = SentinelConfig()
        config.connectivity.health_url = "https://configured/health"
        save_config(config, config_path)
        fake_probe.error = ServiceUnavailableError()

        assert diagnostics.main([]) == 1
