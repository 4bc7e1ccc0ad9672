from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..normalize.schema import RegionOutcome, RegionStatus


def _format_region_states(states: Dict[str, str], *, max_regions: int = 4) -> str:
    failed = sorted(name for name, state in states.items() if state != RegionStatus.OK.value)
    if not failed:
        return ""
    shown = failed[:max_regions]
    rendered = "failed: " + ", ".join(shown)
    tail = len(failed) - len(shown)
    if tail > 0:
        rendered = f"{rendered} (+{tail} more)"
    return rendered


class RunProgress:
    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._console = console or Console(stderr=True)
        self._enabled = bool(enabled and self._console.is_terminal)
        self._progress: Optional[Progress] = None
        self._task: Optional[Any] = None
        self._states: Dict[str, str] = {}
        self._started = False
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TextColumn("{task.fields[regions]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RunProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_regions(self, regions: Sequence[str]) -> None:
        if not self._enabled or not self._progress:
            return
        self._states = {}
        self._task = self._progress.add_task("Regions", total=len(regions), regions="")

    def region_done(self, outcome: RegionOutcome) -> None:
        # Called from the coordinating thread as each region completes
        if not self._enabled or not self._progress or self._task is None:
            return
        self._states[outcome.region] = outcome.status.value
        self._progress.update(self._task, advance=1, regions=_format_region_states(self._states))


def render_run_summary_table(
    *,
    enabled: bool,
    status: str,
    metrics: Dict[str, Any],
    regions: Sequence[str],
    outdir: str,
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    table = Table(title="Run Summary", show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Status", status)
    table.add_row("Window", f"{metrics.get('window_start', '')} .. {metrics.get('window_end', '')}")
    table.add_row("Regions in scope", ", ".join(regions))
    failed = metrics.get("regions_failed") or []
    table.add_row("Regions failed", ", ".join(failed) if failed else "none")
    table.add_row("Lifecycle records", str(metrics.get("records_total", 0)))
    table.add_row("Still running", str(metrics.get("still_running", 0)))
    table.add_row("Orphan terminations", str(metrics.get("orphan_terminations", 0)))
    table.add_row("Malformed records", str(metrics.get("malformed_records", 0)))
    table.add_row("Output dir", outdir)
    (console or Console()).print(table)
