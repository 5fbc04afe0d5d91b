"""
scheduler/reporter.py — ProgressReporter and report sinks

ProgressReporter turns snapshot copies + a ReportSummary into text, dicts
or a rich Table. It is stateless and never touches live scheduler state.

Sinks receive (snapshots, summary) on the scheduler's report cadence and
once at termination:
    LogReportSink   — one structlog line per report
    RichReportSink  — a rich table printed to a Console
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from autocycle.observability.logger import get_logger
from autocycle.scheduler.types import ProgressSnapshot, ReportSummary

log = get_logger(__name__)


class ReportSink(Protocol):
    def __call__(self, snapshots: Sequence[ProgressSnapshot], summary: ReportSummary) -> None: ...


def format_duration(seconds: float) -> str:
    """4521.7 → '1:15:21'."""
    total = int(max(seconds, 0))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def _fmt_metric(value: float) -> str:
    return f"{value:g}"


class ProgressReporter:
    """Pure formatting of scheduler progress."""

    @staticmethod
    def format_snapshot(snapshot: ProgressSnapshot) -> str:
        mark = "done" if snapshot.finished else f"{snapshot.percent:5.1f}%"
        return (
            f"{snapshot.key}: {_fmt_metric(snapshot.current_metric)}"
            f"/{_fmt_metric(snapshot.target_metric)} "
            f"(+{_fmt_metric(snapshot.gained)}, {snapshot.action_count} actions) [{mark}]"
        )

    @staticmethod
    def format_summary(summary: ReportSummary) -> str:
        current = summary.current_key or "-"
        return (
            f"{summary.phase.value} | elapsed {format_duration(summary.elapsed_s)} | "
            f"actions {summary.total_actions} | cycles {summary.cycles} | "
            f"breaks {summary.breaks_taken} ({format_duration(summary.total_break_time_s)}) | "
            f"current {current}"
        )

    def render_text(self, snapshots: Sequence[ProgressSnapshot], summary: ReportSummary) -> str:
        lines = [self.format_summary(summary)]
        lines.extend(f"  {self.format_snapshot(s)}" for s in snapshots)
        return "\n".join(lines)

    @staticmethod
    def to_dict(snapshots: Sequence[ProgressSnapshot], summary: ReportSummary) -> dict[str, Any]:
        return {
            "phase": summary.phase.value,
            "current_key": summary.current_key,
            "elapsed_s": round(summary.elapsed_s, 1),
            "total_actions": summary.total_actions,
            "cycles": summary.cycles,
            "breaks_taken": summary.breaks_taken,
            "milestones": summary.milestones,
            "failed_actions": summary.failed_actions,
            "final": summary.final,
            "activities": [
                {
                    "key": s.key,
                    "current": s.current_metric,
                    "target": s.target_metric,
                    "actions": s.action_count,
                    "finished": s.finished,
                }
                for s in snapshots
            ],
        }

    def render_table(
        self,
        snapshots: Sequence[ProgressSnapshot],
        summary: Optional[ReportSummary] = None,
        title: str = "Activity Progress",
    ) -> Table:
        caption = self.format_summary(summary) if summary is not None else None
        table = Table(
            title=title,
            caption=caption,
            box=box.ROUNDED,
            border_style="dim",
        )
        table.add_column("Activity", style="cyan", no_wrap=True)
        table.add_column("Baseline", justify="right")
        table.add_column("Current", justify="right")
        table.add_column("Target", justify="right")
        table.add_column("Actions", justify="right")
        table.add_column("Progress", justify="right")
        for s in snapshots:
            if s.finished:
                status = "[green]✓ finished[/]"
            elif summary is not None and s.key == summary.current_key:
                status = f"[bold yellow]{s.percent:.1f}% ▶[/]"
            else:
                status = f"{s.percent:.1f}%"
            table.add_row(
                s.key,
                _fmt_metric(s.baseline_metric),
                _fmt_metric(s.current_metric),
                _fmt_metric(s.target_metric),
                str(s.action_count),
                status,
            )
        return table


# ─────────────────────────────────────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────────────────────────────────────

class LogReportSink:
    """Emit each report as a single structured log line."""

    def __init__(self, reporter: Optional[ProgressReporter] = None) -> None:
        self._reporter = reporter or ProgressReporter()

    def __call__(self, snapshots: Sequence[ProgressSnapshot], summary: ReportSummary) -> None:
        event = "report.final" if summary.final else "report.progress"
        log.info(event, **self._reporter.to_dict(snapshots, summary))


class RichReportSink:
    """Print a progress table to a rich Console."""

    def __init__(
        self,
        console: Optional[Console] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        self.console = console or Console()
        self._reporter = reporter or ProgressReporter()

    def __call__(self, snapshots: Sequence[ProgressSnapshot], summary: ReportSummary) -> None:
        title = "Final Progress" if summary.final else "Activity Progress"
        self.console.print(self._reporter.render_table(snapshots, summary, title=title))
