"""
simulation.py — Simulated activities for demos and integration tests

Stands in for the external environment: each SimulatedActivity keeps an
experience total, gains a random amount per action and reports its level
(derived from the classic 99-level experience curve) as the metric. A
level-up is flagged as a milestone.

Usage::

    works, probes = build_simulation(settings.activities, rng=random.Random(7))
    scheduler = ActivityScheduler.from_settings(settings, works, probes=probes)
"""

from __future__ import annotations

import asyncio
import math
import random
from functools import lru_cache
from typing import Awaitable, Callable, Iterable, Optional

from autocycle.exceptions import CollaboratorError, FatalCollaboratorError
from autocycle.observability.logger import get_logger
from autocycle.scheduler.types import MetricProbe, WorkCallable, WorkResult

log = get_logger(__name__)

MAX_LEVEL = 126


# ─────────────────────────────────────────────────────────────────────────────
# Experience curve
# ─────────────────────────────────────────────────────────────────────────────

@lru_cache(maxsize=None)
def xp_for_level(level: int) -> int:
    """Total experience needed to reach `level` (level 1 = 0 xp, level 2 = 83)."""
    if level <= 1:
        return 0
    level = min(level, MAX_LEVEL)
    points = 0
    for n in range(1, level):
        points += math.floor(n + 300 * 2 ** (n / 7))
    return points // 4


def level_for_xp(xp: float) -> int:
    """Highest level whose experience requirement is <= xp."""
    level = 1
    while level < MAX_LEVEL and xp_for_level(level + 1) <= xp:
        level += 1
    return level


# ─────────────────────────────────────────────────────────────────────────────
# Simulated work callable
# ─────────────────────────────────────────────────────────────────────────────

class SimulatedActivity:
    """
    Work callable + metric probe for one simulated activity.

    xp_per_action   (min, max) experience gained per successful action.
    action_delay    Seconds each action takes (awaited via `sleep`).
    failure_rate    Chance an action raises a recoverable CollaboratorError.
    fatal_after     Raise FatalCollaboratorError on this action number (tests).
    """

    def __init__(
        self,
        key: str,
        start_level: int = 1,
        xp_per_action: tuple[float, float] = (20.0, 60.0),
        action_delay: float = 0.0,
        failure_rate: float = 0.0,
        fatal_after: Optional[int] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        low, high = xp_per_action
        if low < 0 or high < low:
            raise ValueError(f"xp_per_action must satisfy 0 <= min <= max, got {xp_per_action}")
        self.key = key
        self.xp = float(xp_for_level(max(int(start_level), 1)))
        self.xp_per_action = (float(low), float(high))
        self.action_delay = action_delay
        self.failure_rate = failure_rate
        self.fatal_after = fatal_after
        self.actions = 0
        self._rng = rng or random.Random()
        self._sleep = sleep

    @property
    def level(self) -> int:
        return level_for_xp(self.xp)

    async def __call__(self, key: str) -> WorkResult:
        if self.action_delay > 0:
            await self._sleep(self.action_delay)
        self.actions += 1
        if self.fatal_after is not None and self.actions >= self.fatal_after:
            raise FatalCollaboratorError("Simulated session lost", key=key)
        if self.failure_rate > 0 and self._rng.random() < self.failure_rate:
            raise CollaboratorError("Simulated action misclick", key=key)

        before = self.level
        self.xp += self._rng.uniform(*self.xp_per_action)
        after = self.level
        if after > before:
            log.debug("simulation.level_up", key=key, level=after, xp=round(self.xp))
        return WorkResult(
            actions_performed=1,
            metric_after=float(after),
            milestone_crossed=after > before,
        )

    def probe(self, key: str) -> float:
        return float(self.level)


class SimulatedSession:
    """Session predicate that turns ready after `ready_after` polls."""

    def __init__(self, ready_after: int = 0) -> None:
        self.ready_after = ready_after
        self.polls = 0

    def __call__(self) -> bool:
        self.polls += 1
        return self.polls > self.ready_after


def build_simulation(
    specs: Iterable,
    *,
    rng: Optional[random.Random] = None,
    action_delay: float = 0.0,
    failure_rate: float = 0.0,
    xp_per_action: tuple[float, float] = (20.0, 60.0),
) -> tuple[dict[str, WorkCallable], dict[str, MetricProbe]]:
    """Build work callables and metric probes for every ActivitySpec."""
    rng = rng or random.Random()
    works: dict[str, WorkCallable] = {}
    probes: dict[str, MetricProbe] = {}
    for spec in specs:
        start = int(spec.baseline_metric) if spec.baseline_metric is not None else 1
        activity = SimulatedActivity(
            spec.key,
            start_level=start,
            xp_per_action=xp_per_action,
            action_delay=action_delay,
            failure_rate=failure_rate,
            rng=rng,
        )
        works[spec.key] = activity
        probes[spec.key] = activity.probe
    return works, probes
