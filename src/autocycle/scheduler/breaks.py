"""
scheduler/breaks.py — BreakController

Decides, once per completed execution cycle, whether the control loop
should pause and for how long.

Two triggers, the fixed schedule checked first:
  1. Scheduled — the next unfired offset in `schedule` has elapsed since the
     run started. Fires once and advances the cursor by one.
  2. Random — otherwise a uniform draw in [0, 1) below `chance` fires.

A fired break gets a duration from `duration_policy` (uniform over
`duration_range` by default). The controller never sleeps itself; the
scheduler suspends the whole loop for the returned duration.
"""

from __future__ import annotations

import random
from typing import Callable, Optional, Sequence

from autocycle.exceptions import ConfigurationError
from autocycle.observability.logger import get_logger
from autocycle.scheduler.types import BreakDecision

log = get_logger(__name__)

DurationPolicy = Callable[[random.Random, tuple[float, float]], float]


def uniform_duration(rng: random.Random, duration_range: tuple[float, float]) -> float:
    low, high = duration_range
    return rng.uniform(low, high)


class BreakController:

    def __init__(
        self,
        chance: float = 0.0,
        duration_range: tuple[float, float] = (0.0, 0.0),
        schedule: Sequence[float] = (),
        rng: Optional[random.Random] = None,
        duration_policy: DurationPolicy = uniform_duration,
    ) -> None:
        if not (0.0 <= chance <= 1.0):
            raise ConfigurationError(f"break chance must be within [0, 1], got {chance}")
        low, high = duration_range
        if low < 0 or high < low:
            raise ConfigurationError(
                f"break duration range must satisfy 0 <= min <= max, got {duration_range}"
            )
        offsets = tuple(float(o) for o in schedule)
        if any(o < 0 for o in offsets):
            raise ConfigurationError("break schedule offsets must be >= 0")
        if list(offsets) != sorted(offsets):
            raise ConfigurationError(f"break schedule must be ascending, got {list(offsets)}")

        self.chance = float(chance)
        self.duration_range = (float(low), float(high))
        self.schedule = offsets
        self._rng = rng or random.Random()
        self._duration_policy = duration_policy

    def check(self, elapsed: float, next_break_idx: int) -> tuple[Optional[BreakDecision], int]:
        """
        Evaluate both triggers at a cycle boundary.

        Returns (decision or None, new cursor). The cursor only moves forward.
        """
        if next_break_idx < len(self.schedule) and elapsed >= self.schedule[next_break_idx]:
            decision = BreakDecision(
                duration=self._draw_duration(),
                reason="scheduled",
                schedule_index=next_break_idx,
            )
            log.info(
                "breaks.fired",
                reason="scheduled",
                offset_s=self.schedule[next_break_idx],
                elapsed_s=round(elapsed, 1),
                duration_s=round(decision.duration, 2),
            )
            return decision, next_break_idx + 1

        if self.chance > 0 and self._rng.random() < self.chance:
            decision = BreakDecision(duration=self._draw_duration(), reason="random")
            log.info(
                "breaks.fired",
                reason="random",
                chance=self.chance,
                duration_s=round(decision.duration, 2),
            )
            return decision, next_break_idx

        return None, next_break_idx

    def remaining_scheduled(self, next_break_idx: int) -> int:
        return max(len(self.schedule) - next_break_idx, 0)

    def _draw_duration(self) -> float:
        duration = float(self._duration_policy(self._rng, self.duration_range))
        return max(duration, 0.0)
