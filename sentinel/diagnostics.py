"""Connectivity diagnostics for the command line.

Probes a health endpoint once and prints the resulting connectivity state
and, on failure, the troubleshooting steps a user would be shown.

Usage:
    python -m sentinel --url https://api.example.com/health
    python -m sentinel --timeout 5 -v
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from contracts.resilience import ConnectionQuality, ConnectivityState
from sentinel.config import ConnectivitySettings, get_config
from sentinel.observability.logging import configure_structured_logging, timed_operation
from sentinel.reliability.connectivity import (
    ConnectivityMonitor,
    HttpHealthProbe,
    interface_is_up,
)

logger = logging.getLogger(__name__)

QUALITY_STYLES = {
    ConnectionQuality.EXCELLENT: "[green]excellent[/green]",
    ConnectionQuality.GOOD: "[green]good[/green]",
    ConnectionQuality.POOR: "[yellow]poor[/yellow]",
    ConnectionQuality.OFFLINE: "[red]offline[/red]",
}


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


def render_state(console: Console, state: ConnectivityState, url: str) -> None:
    """Print a connectivity snapshot as a table."""
    table = Table(title="Connectivity", show_header=True, header_style="bold")
    table.add_column("Check", style="cyan")
    table.add_column("Result")

    table.add_row("Endpoint", url)
    table.add_row("Network interface up", _yes_no(state.is_online))
    table.add_row("Service reachable", _yes_no(state.is_service_connected))
    table.add_row("Quality", QUALITY_STYLES[state.connection_quality])
    table.add_row(
        "Latency",
        f"{state.latency_ms:.1f} ms" if state.latency_ms is not None else "[dim]n/a[/dim]",
    )
    console.print(table)


async def diagnose(
    url: str,
    settings: ConnectivitySettings,
    console: Console,
) -> bool:
    """Probe ``url`` once and print the outcome.

    Returns:
        True if the service answered.
    """
    probe = HttpHealthProbe(url, timeout=settings.probe_timeout)
    monitor = ConnectivityMonitor(probe, interface_is_up, settings)
    with timed_operation(logger, "diagnostics.connectivity", url=url) as ctx:
        state = await monitor.check_connectivity()
        ctx["connected"] = state.is_service_connected

    console.print()
    render_state(console, state, url)
    console.print()

    if state.is_service_connected:
        console.print(Panel.fit("[green]Service reachable[/green]", border_style="green"))
        return True

    report = monitor.generate_connection_error(monitor.last_error)
    steps = "\n".join(f"{i}. {step}" for i, step in enumerate(report.troubleshooting_steps, 1))
    console.print(
        Panel.fit(
            f"[red]{report.message}[/red]\n\n{steps}\n\n"
            f"[dim]Retry in {report.retry_delay:g}s[/dim]",
            title=f"Connection problem ({report.type.value})",
            border_style="red",
        )
    )
    return False


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m sentinel``.

    Returns:
        Exit code (0 if the service is reachable, 1 otherwise, 2 for usage errors).
    """
    parser = argparse.ArgumentParser(
        prog="python -m sentinel",
        description="Sentinel diagnostics - check connectivity to the backing service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m sentinel --url https://api.example.com/health
  python -m sentinel --timeout 5 -v
        """,
    )
    parser.add_argument("--url", help="Health endpoint (defaults to connectivity.health_url)")
    parser.add_argument("--timeout", type=float, help="Probe timeout in seconds")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable structured debug logging",
    )
    args = parser.parse_args(argv)

    configure_structured_logging(logging.DEBUG if args.verbose else logging.WARNING)

    settings = get_config().connectivity
    if args.timeout is not None:
        settings = settings.model_copy(update={"probe_timeout": args.timeout})
    url = args.url or settings.health_url

    console = Console()
    if not url:
        console.print("[red]No health endpoint: pass --url or set connectivity.health_url[/red]")
        return 2

    return 0 if asyncio.run(diagnose(url, settings, console)) else 1


if __name__ == "__main__":
    sys.exit(main())
