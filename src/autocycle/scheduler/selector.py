"""
scheduler/selector.py — WeightedSelector

Cumulative-weight sampling over the eligible pool. Holds nothing but the
injected random source, so one instance can be shared and re-entered.
"""

from __future__ import annotations

import random
from typing import Optional, Sequence

from autocycle.exceptions import SchedulerInvariantError


class WeightedSelector:
    """
    Pick a key with probability weight / sum(weights).

    The caller filters the pool: it must be non-empty and every weight must
    be > 0. Ties between equal weights resolve by pool order.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def select(self, pool: Sequence[tuple[str, float]]) -> str:
        if not pool:
            raise SchedulerInvariantError("WeightedSelector.select() called with an empty pool")
        bad = [key for key, weight in pool if not weight > 0]
        if bad:
            raise SchedulerInvariantError(f"Pool contains non-positive weights: {bad}")

        if len(pool) == 1:
            return pool[0][0]

        total = sum(weight for _, weight in pool)
        draw = self._rng.random() * total
        cumulative = 0.0
        for key, weight in pool:
            cumulative += weight
            if cumulative > draw:
                return key
        # Float rounding can leave draw == cumulative on the last entry
        return pool[-1][0]
