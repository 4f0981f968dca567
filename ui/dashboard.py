"""
Rich-based terminal dashboard for measurement results.

All formatting helpers live in ``rmbt.stats`` -- this module only does
presentation via the ``rich`` library.
"""
from __future__ import annotations

import asyncio
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from rmbt.constants import STATUS_INTERVAL
from rmbt.orchestrator import TestOrchestrator
from rmbt.params import TestParameters
from rmbt.progress import TestStatus
from rmbt.results import TotalTestResult
from rmbt.stats import SpeedStats, format_latency, format_speed

console = Console()

PHASE_LABELS = {
    TestStatus.CONNECT: "Connecting",
    TestStatus.PRETEST_DOWN: "Calibrating download",
    TestStatus.PING: "Ping",
    TestStatus.DOWN: "Download",
    TestStatus.INIT_UP: "Calibrating upload",
    TestStatus.UP: "Upload",
}


# ---------------------------------------------------------------------------
# Histogram helper
# ---------------------------------------------------------------------------

_BARS = "▁▂▃▄▅▆▇█"


def create_histogram(values: List[float]) -> str:
    """Return a single-line Unicode bar-chart."""
    if not values:
        return "No data"

    lo, hi = min(values), max(values)
    span = hi - lo if hi > lo else 1.0
    return "".join(_BARS[min(int((v - lo) / span * (len(_BARS) - 1)), len(_BARS) - 1)] for v in values)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------

def print_header() -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]RMBT Client[/bold cyan]\n"
            "[dim]Multi-connection throughput and latency measurement[/dim]",
            border_style="cyan",
        )
    )
    console.print()


def print_test_parameters(params: TestParameters) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="bold")
    table.add_row("Server:", f"{params.host}:{params.port}")
    table.add_row("Encryption:", "TLS" if params.encryption else "none")
    table.add_row("Threads:", str(params.threads))
    table.add_row("Duration:", f"{params.duration} s (calibration {params.pretest_duration:g} s)")
    console.print(Panel(table, title="[bold]Test Parameters[/bold]", border_style="blue"))


def print_speed_result(total: TotalTestResult, stats: SpeedStats, title: str, upload: bool, color: str) -> None:
    """Print a download or upload result table with per-connection rows."""
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Speed", f"[bold {color}]{format_speed(stats.speed_mbps)}[/bold {color}]")
    table.add_row("Data (common window)", f"{stats.bytes_transferred / 1_000_000:.1f} MB")
    table.add_row("Window", f"{stats.duration_ms / 1000:.2f} s")
    console.print(table)

    ct = Table(title="Per-Connection Samples", box=box.SIMPLE)
    ct.add_column("Thread", style="dim")
    ct.add_column("Samples", justify="right")
    ct.add_column("Bytes", justify="right")
    ct.add_column("Time", justify="right")
    for t in total.threads:
        series_b = t.up_bytes if upload else t.down_bytes
        series_t = t.up_nsec if upload else t.down_nsec
        if not series_b:
            continue
        ct.add_row(
            str(t.thread_id),
            str(len(series_b)),
            f"{series_b[-1] / 1_000_000:.1f} MB",
            f"{series_t[-1] / 1e9:.2f} s",
        )
    console.print(ct)


def print_ping_details(total: TotalTestResult) -> None:
    ping = total.ping
    if not ping.count:
        console.print("[yellow]No valid ping samples[/yellow]")
        return

    table = Table(title="Ping", box=box.ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Shortest", format_latency(ping.min))
    table.add_row("Median", format_latency(ping.median))
    table.add_row("Jitter", f"{ping.jitter:.2f} ms")
    table.add_row("Samples", str(ping.count))
    console.print(table)
    console.print(Panel(f"[cyan]{create_histogram(ping.samples)}[/cyan]", title="Ping Histogram"))


def print_final_results(total: TotalTestResult, params: TestParameters) -> None:
    mode = "single thread (fallback)" if total.fallback else f"{params.threads} threads"
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Server:[/bold cyan] {params.host}:{params.port}  [dim]({mode})[/dim]\n\n"
            f"[bold white]   Ping:[/bold white]  [bold yellow]{format_latency(total.ping_ms)}[/bold yellow]\n"
            f"[bold white]   Download:[/bold white]  [bold green]{format_speed(total.download.speed_mbps)}[/bold green]\n"
            f"[bold white]   Upload:[/bold white]  [bold blue]{format_speed(total.upload.speed_mbps)}[/bold blue]",
            title="[bold]Results[/bold]",
            border_style="cyan",
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Progress display
# ---------------------------------------------------------------------------

class ProgressDisplay:
    """Shows the current phase and the live aggregated rate of a running test."""

    def __init__(self, orchestrator: TestOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(bar_width=40),
            TextColumn("[bold cyan]{task.fields[speed]}[/bold cyan]"),
            TimeElapsedColumn(),
            console=console,
        )
        self._task_id = None
        self._poller: Optional[asyncio.Task] = None

    def on_status(self, status: TestStatus) -> None:
        if self._task_id is None:
            return
        label = PHASE_LABELS.get(status)
        if label:
            self.progress.update(self._task_id, description=label, speed="...")

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(STATUS_INTERVAL)
            if self._task_id is None:
                continue
            status = self.orchestrator.status
            if status in (TestStatus.DOWN, TestStatus.UP):
                mbps = self.orchestrator.current_speed_bps() / 1_000_000
                self.progress.update(self._task_id, speed=format_speed(mbps) if mbps > 0 else "...")

    def start(self) -> None:
        self.progress.start()
        self._task_id = self.progress.add_task(PHASE_LABELS[TestStatus.CONNECT], total=None, speed="")
        self.orchestrator.on_status = self.on_status
        self._poller = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._poller:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        self.progress.stop()
