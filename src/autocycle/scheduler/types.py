"""
scheduler/types.py — Activity Scheduler Data Contracts

All dataclasses and enums shared across the scheduler, persistence and
reporting layers. Nothing here imports from the rest of the scheduler.

  - Phase:            closed set of state-machine states
  - ActivityConfig:   one configured activity (key, work callable, target, weight)
  - ActivityRecord:   the persistable part of an ActivityConfig (no callable)
  - ProgressSnapshot: immutable copy of one activity's progress
  - WorkResult:       what a work callable reports back for one invocation
  - BreakDecision:    a fired break (duration + why)
  - SchedulerState:   mutable run state owned by the control loop
  - ReportSummary / SchedulerStatus / RunResult: read-only views handed out
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from autocycle.exceptions import ConfigurationError


# ─────────────────────────────────────────────────────────────────────────────
# Phase
# ─────────────────────────────────────────────────────────────────────────────

class Phase(str, Enum):
    INIT           = "init"
    AWAIT_SESSION  = "await_session"
    SELECT         = "select"
    EXECUTE        = "execute"
    MILESTONE      = "milestone"
    BREAK          = "break"
    DONE_EXHAUSTED = "done_exhausted"
    DONE_TIMEOUT   = "done_timeout"
    TERMINATED     = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.TERMINATED

    @property
    def is_done(self) -> bool:
        return self in (Phase.DONE_EXHAUSTED, Phase.DONE_TIMEOUT, Phase.TERMINATED)


class RunOutcome(str, Enum):
    EXHAUSTED = "exhausted"
    TIMEOUT   = "timeout"
    STOPPED   = "stopped"
    FATAL     = "fatal"


# ─────────────────────────────────────────────────────────────────────────────
# Collaborator signatures
# ─────────────────────────────────────────────────────────────────────────────

# (key) -> WorkResult | Mapping | None, or an awaitable of one of those
WorkCallable = Callable[[str], Any]
# (key) -> float, or an awaitable float
MetricProbe = Callable[[str], Union[float, Awaitable[float]]]
# () -> bool, or an awaitable bool
SessionPredicate = Callable[[], Union[bool, Awaitable[bool]]]


def normalize_key(key: str) -> str:
    """Activity keys are case-insensitive; the lower-cased form is canonical."""
    if not isinstance(key, str) or not key.strip():
        raise ConfigurationError(f"Activity key must be a non-empty string, got {key!r}")
    return key.strip().lower()


# ─────────────────────────────────────────────────────────────────────────────
# ActivityConfig / ActivityRecord
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActivityRecord:
    """The persistable fields of an activity. Used by ProfileStore."""
    key: str
    target_metric: float
    weight: float
    enabled: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "target_metric": self.target_metric,
            "weight": self.weight,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ActivityRecord":
        return cls(
            key=normalize_key(data["key"]),
            target_metric=float(data["target_metric"]),
            weight=float(data["weight"]),
            enabled=bool(data["enabled"]),
        )


@dataclass
class ActivityConfig:
    """
    One configured activity.

    key             Unique, case-insensitive identifier (stored lower-cased).
    work            Opaque callable performing one unit of work.
    target_metric   Numeric goal; the activity is finished once reached.
    weight          Selection probability mass. <= 0 means never eligible.
    enabled         Toggled between cycles via ActivityRegistry.enable().
    baseline_metric Metric at setup when no probe is supplied.
    metric_probe    Separate metric read, used when the work result
                    carries no metric_after.
    """
    key: str
    work: WorkCallable
    target_metric: float
    weight: float = 1.0
    enabled: bool = True
    baseline_metric: Optional[float] = None
    metric_probe: Optional[MetricProbe] = None

    def __post_init__(self) -> None:
        self.key = normalize_key(self.key)
        if not callable(self.work):
            raise ConfigurationError(f"Activity '{self.key}' work must be callable")

    @property
    def eligible_by_config(self) -> bool:
        return self.enabled and self.weight > 0

    def to_record(self) -> ActivityRecord:
        return ActivityRecord(
            key=self.key,
            target_metric=float(self.target_metric),
            weight=float(self.weight),
            enabled=self.enabled,
        )


# ─────────────────────────────────────────────────────────────────────────────
# ProgressSnapshot
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Immutable copy of one activity's progress. Only ProgressTracker creates
    these; everything else receives copies.
    """
    key: str
    baseline_metric: float
    current_metric: float
    target_metric: float
    action_count: int = 0
    finished: bool = False

    @property
    def gained(self) -> float:
        return self.current_metric - self.baseline_metric

    @property
    def remaining(self) -> float:
        return max(self.target_metric - self.current_metric, 0.0)

    @property
    def percent(self) -> float:
        if self.finished:
            return 100.0
        span = self.target_metric - self.baseline_metric
        if span <= 0:
            return 100.0 if self.current_metric >= self.target_metric else 0.0
        return max(0.0, min(100.0, 100.0 * self.gained / span))

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "baseline_metric": self.baseline_metric,
            "current_metric": self.current_metric,
            "target_metric": self.target_metric,
            "action_count": self.action_count,
            "finished": self.finished,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProgressSnapshot":
        return cls(
            key=normalize_key(data["key"]),
            baseline_metric=float(data["baseline_metric"]),
            current_metric=float(data["current_metric"]),
            target_metric=float(data["target_metric"]),
            action_count=int(data.get("action_count", 0)),
            finished=bool(data.get("finished", False)),
        )


# ─────────────────────────────────────────────────────────────────────────────
# WorkResult
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkResult:
    """
    What a work callable reports for one invocation.

    actions_performed  Added to the activity's action_count on success.
    metric_after       Metric observed after the work; None = use the probe.
    milestone_crossed  Caller-flagged notable boundary (e.g. level-up).
    fatal              Unrecoverable condition; terminates the run.
    """
    actions_performed: int = 1
    metric_after: Optional[float] = None
    milestone_crossed: bool = False
    fatal: Optional[Union[BaseException, str]] = None

    @classmethod
    def coerce(cls, value: Any) -> "WorkResult":
        """Accept a WorkResult, a mapping with the same field names, or None."""
        if value is None:
            return cls()
        if isinstance(value, WorkResult):
            return value
        if isinstance(value, Mapping):
            metric = value.get("metric_after")
            return cls(
                actions_performed=int(value.get("actions_performed", 1)),
                metric_after=None if metric is None else float(metric),
                milestone_crossed=bool(value.get("milestone_crossed", False)),
                fatal=value.get("fatal"),
            )
        raise TypeError(f"Work callable returned unsupported type {type(value).__name__}")


# ─────────────────────────────────────────────────────────────────────────────
# Breaks
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BreakDecision:
    duration: float
    reason: str                      # "scheduled" | "random"
    schedule_index: Optional[int] = None


# ─────────────────────────────────────────────────────────────────────────────
# SchedulerState
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class SchedulerState:
    """
    Mutable run state. Owned and mutated only by the control loop.

    next_break_idx only advances; it is never reset within a run.
    """
    phase: Phase = Phase.INIT
    current_key: Optional[str] = None
    start_time: float = 0.0
    last_switch_time: float = 0.0
    total_actions: int = 0
    max_runtime: Optional[float] = None
    switch_interval: float = 0.0
    break_chance: float = 0.0
    break_duration_range: tuple[float, float] = (0.0, 0.0)
    break_schedule: tuple[float, ...] = ()
    next_break_idx: int = 0
    cycles: int = 0
    breaks_taken: int = 0
    total_break_time: float = 0.0
    milestones: int = 0
    failed_actions: int = 0

    def elapsed(self, now: float) -> float:
        return now - self.start_time

    def since_switch(self, now: float) -> float:
        return now - self.last_switch_time


# ─────────────────────────────────────────────────────────────────────────────
# Read-only views
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReportSummary:
    """Scheduler summary handed to report sinks alongside the snapshot list."""
    phase: Phase
    current_key: Optional[str]
    elapsed_s: float
    total_actions: int
    cycles: int
    breaks_taken: int
    total_break_time_s: float
    milestones: int
    failed_actions: int
    final: bool = False


@dataclass(frozen=True)
class SchedulerStatus:
    """Copy-only status for callers outside the control loop."""
    summary: ReportSummary
    snapshots: tuple[ProgressSnapshot, ...]
    running: bool


@dataclass
class RunResult:
    """Returned by ActivityScheduler.run()."""
    phase: Phase
    outcome: RunOutcome
    elapsed_s: float
    total_actions: int
    cycles: int
    breaks_taken: int
    snapshots: list[ProgressSnapshot] = field(default_factory=list)
    error: Optional[BaseException] = None
    persistence_errors: list[Exception] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (RunOutcome.EXHAUSTED, RunOutcome.TIMEOUT) and self.error is None

    def snapshot(self, key: str) -> Optional[ProgressSnapshot]:
        wanted = normalize_key(key)
        return next((s for s in self.snapshots if s.key == wanted), None)
