"""
scheduler/progress.py — ProgressTracker

Pure bookkeeping: one progress record per activity key. No scheduling logic.

Rules:
  - initialize() exactly once per key, before any update().
  - update() stores whatever metric it is given (no monotonicity check) and
    recomputes `finished`. Once finished, a key stays finished even if a
    lower metric arrives later.
  - Unknown keys raise ConfigurationError — a registry/tracker
    desynchronisation is a bug, never silently ignored.
  - Callers only ever receive frozen ProgressSnapshot copies.
"""

from __future__ import annotations

from dataclasses import dataclass

from autocycle.exceptions import ConfigurationError
from autocycle.observability.logger import get_logger
from autocycle.scheduler.types import ProgressSnapshot, normalize_key

log = get_logger(__name__)


@dataclass
class _Progress:
    baseline_metric: float
    current_metric: float
    target_metric: float
    action_count: int = 0
    finished: bool = False

    def recompute(self) -> bool:
        """Latch `finished`. Returns True if this call flipped it."""
        if not self.finished and self.current_metric >= self.target_metric:
            self.finished = True
            return True
        return False


class ProgressTracker:
    """Owns and mutates every activity's progress record."""

    def __init__(self) -> None:
        self._records: dict[str, _Progress] = {}

    def __contains__(self, key: str) -> bool:
        return normalize_key(key) in self._records

    def __len__(self) -> int:
        return len(self._records)

    def _require(self, key: str) -> tuple[str, _Progress]:
        k = normalize_key(key)
        record = self._records.get(k)
        if record is None:
            raise ConfigurationError(
                f"Progress for activity '{k}' was never initialised. "
                f"Registry and tracker are out of sync."
            )
        return k, record

    # ── Setup ─────────────────────────────────────────────────────────────────

    def initialize(self, key: str, baseline_metric: float, target_metric: float) -> ProgressSnapshot:
        k = normalize_key(key)
        if k in self._records:
            raise ConfigurationError(f"Progress for activity '{k}' is already initialised.")
        record = _Progress(
            baseline_metric=float(baseline_metric),
            current_metric=float(baseline_metric),
            target_metric=float(target_metric),
        )
        record.recompute()
        self._records[k] = record
        log.debug(
            "progress.initialized",
            key=k,
            baseline=record.baseline_metric,
            target=record.target_metric,
            finished=record.finished,
        )
        return self._freeze(k, record)

    def restore(self, snapshot: ProgressSnapshot, target_metric: float | None = None) -> ProgressSnapshot:
        """
        Seed a key from persisted progress instead of initialize().

        The saved baseline is kept. A different target (config changed since
        the save) replaces the saved one and `finished` is re-derived from it,
        so raising a target re-opens a finished activity.
        """
        k = normalize_key(snapshot.key)
        if k in self._records:
            raise ConfigurationError(f"Progress for activity '{k}' is already initialised.")
        target = snapshot.target_metric if target_metric is None else float(target_metric)
        record = _Progress(
            baseline_metric=snapshot.baseline_metric,
            current_metric=snapshot.current_metric,
            target_metric=target,
            action_count=snapshot.action_count,
            finished=snapshot.finished and target == snapshot.target_metric,
        )
        record.recompute()
        self._records[k] = record
        log.debug("progress.restored", key=k, current=record.current_metric, finished=record.finished)
        return self._freeze(k, record)

    # ── Mutation (control loop only) ──────────────────────────────────────────

    def update(self, key: str, new_metric: float) -> bool:
        """Store a new metric reading. Returns True if the key just finished."""
        k, record = self._require(key)
        if new_metric < record.current_metric:
            log.warning(
                "progress.metric_regressed",
                key=k,
                previous=record.current_metric,
                new=new_metric,
            )
        record.current_metric = float(new_metric)
        flipped = record.recompute()
        if flipped:
            log.info(
                "progress.finished",
                key=k,
                metric=record.current_metric,
                target=record.target_metric,
                actions=record.action_count,
            )
        return flipped

    def record_actions(self, key: str, count: int = 1) -> int:
        """Add to the key's action counter. Returns the new count."""
        if count < 0:
            raise ValueError("action count increments must be >= 0")
        _, record = self._require(key)
        record.action_count += count
        return record.action_count

    # ── Reads ─────────────────────────────────────────────────────────────────

    def is_finished(self, key: str) -> bool:
        return self._require(key)[1].finished

    def snapshot(self, key: str) -> ProgressSnapshot:
        k, record = self._require(key)
        return self._freeze(k, record)

    def snapshots(self) -> list[ProgressSnapshot]:
        return [self._freeze(k, r) for k, r in self._records.items()]

    def all_finished(self) -> bool:
        return all(r.finished for r in self._records.values())

    @staticmethod
    def _freeze(key: str, record: _Progress) -> ProgressSnapshot:
        return ProgressSnapshot(
            key=key,
            baseline_metric=record.baseline_metric,
            current_metric=record.current_metric,
            target_metric=record.target_metric,
            action_count=record.action_count,
            finished=record.finished,
        )
