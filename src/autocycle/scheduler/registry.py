"""
scheduler/registry.py — ActivityRegistry

The configured set of activities, fixed in size once the run starts.

enable() and reweight() may be called at any time, from any thread. They are
validated immediately (unknown key / non-positive weight raise
ConfigurationError at the call site) but only buffered; the scheduler
applies the buffer atomically with apply_pending() at each SELECT boundary,
so a cycle never observes a half-applied change.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Callable, Iterator, Optional

from autocycle.exceptions import ConfigurationError
from autocycle.observability.logger import get_logger
from autocycle.scheduler.types import ActivityConfig, normalize_key

log = get_logger(__name__)


@dataclass(frozen=True)
class _PendingChange:
    key: str
    enabled: Optional[bool] = None
    weight: Optional[float] = None


class ActivityRegistry:

    def __init__(self, activities: Optional[list[ActivityConfig]] = None) -> None:
        self._activities: dict[str, ActivityConfig] = {}
        self._pending: list[_PendingChange] = []
        self._lock = threading.Lock()
        self._frozen = False
        for config in activities or []:
            self.register(config)

    def __len__(self) -> int:
        return len(self._activities)

    def __contains__(self, key: str) -> bool:
        return normalize_key(key) in self._activities

    def __iter__(self) -> Iterator[ActivityConfig]:
        return iter(self.configs())

    # ── Setup ─────────────────────────────────────────────────────────────────

    def register(self, config: ActivityConfig) -> None:
        """Add an activity. Only allowed before the run starts."""
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register '{config.key}': the activity set is fixed once the run starts."
            )
        if config.key in self._activities:
            raise ConfigurationError(f"Activity '{config.key}' already registered.")
        if not config.weight > 0:
            raise ConfigurationError(
                f"Activity '{config.key}' has weight {config.weight}; weights must be > 0."
            )
        self._activities[config.key] = config
        log.debug(
            "registry.registered",
            key=config.key,
            weight=config.weight,
            target=config.target_metric,
            enabled=config.enabled,
        )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Buffered mutation ─────────────────────────────────────────────────────

    def enable(self, key: str, enabled: bool = True) -> None:
        k = self._require_key(key)
        self._submit(_PendingChange(key=k, enabled=bool(enabled)))

    def disable(self, key: str) -> None:
        self.enable(key, False)

    def reweight(self, key: str, new_weight: float) -> None:
        k = self._require_key(key)
        if not new_weight > 0:
            raise ConfigurationError(
                f"Cannot reweight '{k}' to {new_weight}; weights must be > 0."
            )
        self._submit(_PendingChange(key=k, weight=float(new_weight)))

    def _submit(self, change: _PendingChange) -> None:
        if not self._frozen:
            # Before the run there is no cycle to tear; apply immediately.
            self._apply(change)
            return
        with self._lock:
            self._pending.append(change)

    def apply_pending(self) -> int:
        """Apply every buffered change in submission order. Returns how many were applied."""
        with self._lock:
            pending, self._pending = self._pending, []
        for change in pending:
            self._apply(change)
        return len(pending)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _apply(self, change: _PendingChange) -> None:
        config = self._activities[change.key]
        if change.enabled is not None and change.enabled != config.enabled:
            config.enabled = change.enabled
            log.info("registry.enabled_changed", key=change.key, enabled=change.enabled)
        if change.weight is not None and change.weight != config.weight:
            log.info("registry.reweighted", key=change.key, old=config.weight, new=change.weight)
            config.weight = change.weight

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, key: str) -> ActivityConfig:
        return self._activities[self._require_key(key)]

    def keys(self) -> list[str]:
        return list(self._activities)

    def configs(self) -> list[ActivityConfig]:
        """Copies of every config, safe to hand outside the control loop."""
        return [replace(c) for c in self._activities.values()]

    def eligible_pool(self, is_finished: Callable[[str], bool]) -> list[tuple[str, float]]:
        """(key, weight) for every activity that is enabled, unfinished and positively weighted."""
        return [
            (key, config.weight)
            for key, config in self._activities.items()
            if config.eligible_by_config and not is_finished(key)
        ]

    def has_eligible_config(self) -> bool:
        return any(c.eligible_by_config for c in self._activities.values())

    def _require_key(self, key: str) -> str:
        k = normalize_key(key)
        if k not in self._activities:
            raise ConfigurationError(f"Unknown activity '{k}'.")
        return k
