"""
scheduler/scheduler.py — ActivityScheduler

Single-loop state machine that interleaves weighted activities until every
one reaches its target, the runtime ceiling passes, a collaborator reports a
fatal condition, or stop() is called.

Design
------
* One asyncio control loop. Work callables never run concurrently; a sync
  callable blocks the loop while it runs, an async one is awaited.
* Phase dispatch is a Phase → handler table. Activity keys resolve to their
  work callable once, at registration.
* Stop and timeout are checked at the top of every cycle only. An in-flight
  work invocation is never pre-empted.
* Breaks suspend the whole loop (await sleep), raced against the stop signal
  so stop() still takes effect promptly.
* Registry mutations requested mid-run are buffered and applied at SELECT.
* Collaborator failures are contained per cycle. A fatal one saves
  best-effort and goes straight to TERMINATED.
* Persistence is saved on every `finished` transition and at termination;
  persistence failures never stop the run but are returned in RunResult.

Phases::

    INIT → AWAIT_SESSION → SELECT → EXECUTE ─┬→ SELECT
                              ↑              ├→ MILESTONE ─┬→ SELECT
                              │              │             └→ BREAK
                              └──── BREAK ←──┘
    SELECT (empty pool)        → DONE_EXHAUSTED → TERMINATED
    any non-terminal (timeout) → DONE_TIMEOUT   → TERMINATED

Usage::

    scheduler = ActivityScheduler(activities, switch_interval=300, break_chance=0.02,
                                  break_duration_range=(30, 120))
    result = await scheduler.run()
"""

from __future__ import annotations

import asyncio
import inspect
import random
import threading
import time
import uuid
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, Union

from autocycle.exceptions import (
    CollaboratorError,
    ConfigurationError,
    FatalCollaboratorError,
    PersistenceError,
    SchedulerInvariantError,
)
from autocycle.observability.logger import bind_run, clear_run, get_logger
from autocycle.persistence.store import NullProfileStore, ProfileState, ProfileStore
from autocycle.scheduler.breaks import BreakController, DurationPolicy, uniform_duration
from autocycle.scheduler.progress import ProgressTracker
from autocycle.scheduler.registry import ActivityRegistry
from autocycle.scheduler.reporter import ReportSink
from autocycle.scheduler.selector import WeightedSelector
from autocycle.scheduler.types import (
    ActivityConfig,
    BreakDecision,
    MetricProbe,
    Phase,
    ProgressSnapshot,
    ReportSummary,
    RunOutcome,
    RunResult,
    SchedulerState,
    SchedulerStatus,
    SessionPredicate,
    WorkCallable,
    WorkResult,
)

log = get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]
PhaseHook = Callable[[Phase, Phase], None]


async def _resolve(value: Any) -> Any:
    """Await `value` if it is awaitable — collaborators may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value


def _always_ready() -> bool:
    return True


class ActivityScheduler:
    """
    Orchestrates registry, tracker, selector and break controller.

    Lifecycle::

        scheduler = ActivityScheduler(activities, ...)
        await scheduler.setup()       # optional; run() calls it when needed
        result = await scheduler.run()
        scheduler.stop()              # from any thread or coroutine

    Introspection::

        scheduler.status()            # SchedulerStatus copy, safe from any thread
        scheduler.phase               # current Phase
        scheduler.registry            # enable()/reweight() between cycles
    """

    def __init__(
        self,
        activities: Union[ActivityRegistry, Iterable[ActivityConfig]],
        *,
        max_runtime: Optional[float] = None,
        switch_interval: float = 0.0,
        break_chance: float = 0.0,
        break_duration_range: tuple[float, float] = (0.0, 0.0),
        break_schedule: Sequence[float] = (),
        session_ready: Optional[SessionPredicate] = None,
        session_poll_interval: float = 1.0,
        store: Optional[ProfileStore] = None,
        profile_id: str = "default",
        prefer_config: bool = False,
        report_sinks: Sequence[ReportSink] = (),
        report_interval: float = 0.0,
        rng: Optional[random.Random] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        duration_policy: DurationPolicy = uniform_duration,
        on_phase_change: Optional[PhaseHook] = None,
        strict: bool = False,
    ) -> None:
        if max_runtime is not None and max_runtime <= 0:
            raise ConfigurationError(f"max_runtime must be > 0 or None, got {max_runtime}")
        if switch_interval < 0:
            raise ConfigurationError(f"switch_interval must be >= 0, got {switch_interval}")
        if session_poll_interval <= 0:
            raise ConfigurationError("session_poll_interval must be > 0")

        self.registry = (
            activities if isinstance(activities, ActivityRegistry) else ActivityRegistry(list(activities))
        )
        self.tracker = ProgressTracker()

        rng = rng or random.Random()
        self._selector = WeightedSelector(rng)
        self._breaks = BreakController(
            chance=break_chance,
            duration_range=break_duration_range,
            schedule=break_schedule,
            rng=rng,
            duration_policy=duration_policy,
        )

        self._state = SchedulerState(
            max_runtime=max_runtime,
            switch_interval=float(switch_interval),
            break_chance=self._breaks.chance,
            break_duration_range=self._breaks.duration_range,
            break_schedule=self._breaks.schedule,
        )

        self._session_ready = session_ready or _always_ready
        self._session_poll_interval = float(session_poll_interval)
        self._store = store or NullProfileStore()
        self.profile_id = profile_id
        self._prefer_config = prefer_config
        self._report_sinks = list(report_sinks)
        self._report_interval = float(report_interval)
        self._clock = clock
        self._sleep = sleep
        self._on_phase_change = on_phase_change
        self.strict = strict

        self._handlers: dict[Phase, Callable[[], Awaitable[None]]] = {
            Phase.AWAIT_SESSION:  self._on_await_session,
            Phase.SELECT:         self._on_select,
            Phase.EXECUTE:        self._on_execute,
            Phase.MILESTONE:      self._on_milestone,
            Phase.BREAK:          self._on_break,
            Phase.DONE_EXHAUSTED: self._on_done,
            Phase.DONE_TIMEOUT:   self._on_done,
        }

        self.run_id = uuid.uuid4().hex[:12]
        self._setup_done = False
        self._running = False
        self._pending_break: Optional[BreakDecision] = None
        self._last_report_at: Optional[float] = None
        self._final_reported = False
        self._outcome: Optional[RunOutcome] = None
        self._error: Optional[BaseException] = None
        self._persistence_errors: list[Exception] = []
        self._store_open = False

        self._stop_requested = threading.Event()
        self._wake: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        works: Mapping[str, WorkCallable],
        *,
        probes: Optional[Mapping[str, MetricProbe]] = None,
        store: Optional[ProfileStore] = None,
        **kwargs: Any,
    ) -> "ActivityScheduler":
        """
        Build a scheduler from Settings plus a key → work callable mapping.

        Every configured activity needs a work callable; extra callables
        without a configured activity are rejected too.
        """
        works = {k.strip().lower(): fn for k, fn in works.items()}
        probes = {k.strip().lower(): fn for k, fn in (probes or {}).items()}
        configured = {spec.key for spec in settings.activities}
        missing = sorted(configured - works.keys())
        if missing:
            raise ConfigurationError(f"No work callable supplied for activities: {missing}")
        unknown = sorted(works.keys() - configured)
        if unknown:
            raise ConfigurationError(f"Work callables supplied for unconfigured activities: {unknown}")

        activities = [
            ActivityConfig(
                key=spec.key,
                work=works[spec.key],
                target_metric=spec.target_metric,
                weight=spec.weight,
                enabled=spec.enabled,
                baseline_metric=spec.baseline_metric,
                metric_probe=probes.get(spec.key),
            )
            for spec in settings.activities
        ]
        s = settings.scheduler
        seed_rng = random.Random(s.seed) if s.seed is not None else None
        options: dict[str, Any] = dict(
            max_runtime=s.max_runtime_seconds,
            switch_interval=s.switch_interval_seconds,
            break_chance=s.break_chance,
            break_duration_range=tuple(s.break_duration_range),
            break_schedule=list(s.break_schedule),
            session_poll_interval=s.session_poll_interval_seconds,
            report_interval=s.report_interval_seconds,
            profile_id=settings.persistence.profile_id,
            prefer_config=s.prefer_config,
            strict=s.strict,
            rng=seed_rng,
            store=store,
        )
        options.update(kwargs)
        return cls(activities, **options)

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def state(self) -> SchedulerState:
        """Live state. Only the control loop may mutate it; use status() elsewhere."""
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    async def setup(self) -> None:
        """
        INIT: validate, freeze the registry, load the profile, seed progress.

        Raises ConfigurationError synchronously for an invalid activity set.
        """
        if self._setup_done:
            return
        if self._state.phase is not Phase.INIT:
            raise SchedulerInvariantError(f"setup() called in phase {self._state.phase.value}")

        if len(self.registry) == 0:
            raise ConfigurationError("No activities registered.")
        if not self.registry.has_eligible_config():
            raise ConfigurationError(
                "No enabled activity with a positive weight. Enable at least one activity."
            )
        self.registry.freeze()

        profile = await self._load_profile()
        if profile is not None:
            self._merge_profile(profile)
        for key in self.registry.keys():
            if key in self.tracker:
                continue
            config = self.registry.get(key)
            baseline = await self._read_baseline(config)
            self.tracker.initialize(key, baseline, config.target_metric)

        now = self._clock()
        self._state.start_time = now
        self._state.last_switch_time = now
        self._last_report_at = now
        self._setup_done = True
        log.info(
            "scheduler.setup_complete",
            run_id=self.run_id,
            activities=self.registry.keys(),
            max_runtime_s=self._state.max_runtime,
            switch_interval_s=self._state.switch_interval,
            break_chance=self._state.break_chance,
            scheduled_breaks=len(self._state.break_schedule),
            resumed=profile is not None,
        )
        self._transition(Phase.AWAIT_SESSION)

    async def run(self) -> RunResult:
        """Run the control loop until TERMINATED. Never raises for collaborator failures."""
        if self._running:
            raise SchedulerInvariantError("ActivityScheduler.run() is already running")
        if self._state.phase is Phase.TERMINATED:
            raise SchedulerInvariantError("ActivityScheduler instances are single-use")

        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        if self._stop_requested.is_set():
            self._wake.set()
        bind_run(self.run_id, self.profile_id)
        self._running = True
        try:
            await self.setup()
            while not self._state.phase.is_terminal:
                try:
                    await self._step()
                except asyncio.CancelledError:
                    raise
                except FatalCollaboratorError as e:
                    log.error("scheduler.collaborator_fatal", phase=self._state.phase.value, error=str(e))
                    await self._terminate_fatal(e)
                except (SchedulerInvariantError, ConfigurationError) as e:
                    # A tracker/registry desync mid-run is a programming error
                    if self.strict:
                        raise
                    log.error(
                        "scheduler.invariant_violation",
                        phase=self._state.phase.value,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    await self._terminate_fatal(e)
                except Exception as e:
                    if self.strict:
                        raise
                    log.error(
                        "scheduler.loop_crashed",
                        phase=self._state.phase.value,
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    await self._terminate_fatal(SchedulerInvariantError(f"{type(e).__name__}: {e}"))
        except asyncio.CancelledError:
            log.info("scheduler.cancelled", phase=self._state.phase.value)
            await self._save("cancelled")
            self._outcome = self._outcome or RunOutcome.STOPPED
            if not self._final_reported:
                self._emit_report(final=True)
            if not self._state.phase.is_terminal:
                self._transition(Phase.TERMINATED)
            raise
        finally:
            self._running = False
            await self._close_store()
            clear_run()
        return self._build_result()

    def stop(self) -> None:
        """
        Request a stop. Safe from any thread. Takes effect at the next cycle
        boundary, or immediately during a break or session wait.
        """
        if self._stop_requested.is_set():
            return
        self._stop_requested.set()
        log.info("scheduler.stop_requested", phase=self._state.phase.value)
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wake.set()
        else:
            loop.call_soon_threadsafe(wake.set)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def status(self) -> SchedulerStatus:
        """
        Copy-only view for callers outside the control loop.

        Snapshots stay empty until setup() has seeded every activity.
        """
        return SchedulerStatus(
            summary=self._summary(),
            snapshots=tuple(self.tracker.snapshots()) if self._setup_done else (),
            running=self._running,
        )

    # ── Cycle ─────────────────────────────────────────────────────────────────

    async def _step(self) -> None:
        phase = self._state.phase
        if not phase.is_done:
            if self._stop_requested.is_set():
                await self._terminate_stopped()
                return
            if self._timed_out():
                log.info(
                    "scheduler.timeout",
                    elapsed_s=round(self._elapsed(), 1),
                    max_runtime_s=self._state.max_runtime,
                    phase=phase.value,
                )
                self._transition(Phase.DONE_TIMEOUT)
                return
        handler = self._handlers.get(phase)
        if handler is None:
            raise SchedulerInvariantError(f"No handler for phase {phase.value}")
        await handler()

    async def _on_await_session(self) -> None:
        if await self._check_session():
            log.info("scheduler.session_ready", waited_s=round(self._elapsed(), 1))
            self._transition(Phase.SELECT)
            return
        log.debug("scheduler.session_waiting", poll_s=self._session_poll_interval)
        await self._pause(self._session_poll_interval)

    async def _check_session(self) -> bool:
        try:
            return bool(await _resolve(self._session_ready()))
        except FatalCollaboratorError:
            raise
        except Exception as e:
            log.warning("scheduler.session_check_failed", error=str(e), error_type=type(e).__name__)
            return False

    async def _on_select(self) -> None:
        applied = self.registry.apply_pending()
        if applied:
            log.debug("scheduler.registry_changes_applied", count=applied)
        self._maybe_report()

        pool = self.registry.eligible_pool(self.tracker.is_finished)
        if not pool:
            log.info("scheduler.exhausted", cycles=self._state.cycles)
            self._transition(Phase.DONE_EXHAUSTED)
            return

        now = self._clock()
        current = self._state.current_key
        pool_keys = {key for key, _ in pool}
        dwelling = (
            current is not None
            and current in pool_keys
            and self._state.since_switch(now) < self._state.switch_interval
        )
        if dwelling:
            key = current
        else:
            key = self._selector.select(pool)
            self._state.last_switch_time = now
            if key != current:
                log.info(
                    "scheduler.switch",
                    previous=current,
                    key=key,
                    pool=[k for k, _ in pool],
                )
            self._state.current_key = key

        self._state.cycles += 1
        log.debug("scheduler.cycle.select", key=key, dwell=dwelling, cycle=self._state.cycles)
        self._transition(Phase.EXECUTE)

    async def _on_execute(self) -> None:
        key = self._state.current_key
        if key is None:
            raise SchedulerInvariantError("EXECUTE entered without a selected activity")
        activity = self.registry.get(key)

        milestone = False
        try:
            result = WorkResult.coerce(await _resolve(activity.work(key)))
            if result.fatal is not None:
                fatal = result.fatal
                if isinstance(fatal, FatalCollaboratorError):
                    raise fatal
                if isinstance(fatal, BaseException):
                    raise FatalCollaboratorError(str(fatal), key=key) from fatal
                raise FatalCollaboratorError(str(fatal), key=key)
            milestone = await self._apply_result(activity, result)
        except asyncio.CancelledError:
            raise
        except FatalCollaboratorError as e:
            log.error("scheduler.work.fatal", key=key, error=str(e))
            await self._terminate_fatal(e)
            return
        except (ConfigurationError, SchedulerInvariantError):
            raise
        except Exception as e:
            self._state.failed_actions += 1
            log.warning(
                "scheduler.work.failed",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
                failed_actions=self._state.failed_actions,
            )

        if milestone:
            self._transition(Phase.MILESTONE)
            return
        self._after_execution()

    async def _apply_result(self, activity: ActivityConfig, result: WorkResult) -> bool:
        """Apply one successful work result. Returns True if a milestone was flagged."""
        key = activity.key
        metric = result.metric_after
        if metric is None and activity.metric_probe is not None:
            try:
                metric = float(await _resolve(activity.metric_probe(key)))
            except FatalCollaboratorError:
                raise
            except Exception as e:
                log.warning("scheduler.metric_probe_failed", key=key, error=str(e))
                metric = None

        just_finished = False
        if metric is not None:
            just_finished = self.tracker.update(key, metric)
        actions = max(int(result.actions_performed), 0)
        count = self.tracker.record_actions(key, actions)
        self._state.total_actions += actions

        log.debug(
            "scheduler.cycle.executed",
            key=key,
            metric=metric,
            actions=actions,
            action_count=count,
            total_actions=self._state.total_actions,
        )
        if just_finished:
            await self._save("finished")
        return result.milestone_crossed

    def _after_execution(self) -> None:
        """Break check — exactly once per completed execution cycle."""
        decision, self._state.next_break_idx = self._breaks.check(
            self._elapsed(), self._state.next_break_idx
        )
        if decision is not None:
            self._pending_break = decision
            self._transition(Phase.BREAK)
        else:
            self._transition(Phase.SELECT)

    async def _on_milestone(self) -> None:
        self._state.milestones += 1
        key = self._state.current_key
        snapshot = self.tracker.snapshot(key) if key else None
        log.info(
            "scheduler.milestone",
            key=key,
            metric=snapshot.current_metric if snapshot else None,
            milestones=self._state.milestones,
        )
        await self._save("milestone")
        self._after_execution()

    async def _on_break(self) -> None:
        decision = self._pending_break
        self._pending_break = None
        if decision is None:
            raise SchedulerInvariantError("BREAK entered without a break decision")
        self._state.breaks_taken += 1
        log.info(
            "scheduler.break.start",
            reason=decision.reason,
            duration_s=round(decision.duration, 2),
            breaks_taken=self._state.breaks_taken,
        )
        started = self._clock()
        await self._pause(decision.duration)
        slept = self._clock() - started
        self._state.total_break_time += slept
        log.info("scheduler.break.end", slept_s=round(slept, 2))
        self._transition(Phase.SELECT)

    async def _on_done(self) -> None:
        self._outcome = (
            RunOutcome.EXHAUSTED if self._state.phase is Phase.DONE_EXHAUSTED else RunOutcome.TIMEOUT
        )
        await self._finalize()

    # ── Termination ───────────────────────────────────────────────────────────

    async def _terminate_stopped(self) -> None:
        self._outcome = RunOutcome.STOPPED
        await self._finalize()

    async def _terminate_fatal(self, error: BaseException) -> None:
        self._outcome = RunOutcome.FATAL
        self._error = error
        await self._finalize()

    async def _finalize(self) -> None:
        await self._save("terminated")
        self._emit_report(final=True)
        log.info(
            "scheduler.terminated",
            outcome=self._outcome.value if self._outcome else None,
            elapsed_s=round(self._elapsed(), 1),
            total_actions=self._state.total_actions,
            cycles=self._state.cycles,
            breaks=self._state.breaks_taken,
            error=str(self._error) if self._error else None,
        )
        self._transition(Phase.TERMINATED)

    def _build_result(self) -> RunResult:
        return RunResult(
            phase=self._state.phase,
            outcome=self._outcome or RunOutcome.STOPPED,
            elapsed_s=self._elapsed(),
            total_actions=self._state.total_actions,
            cycles=self._state.cycles,
            breaks_taken=self._state.breaks_taken,
            snapshots=self.tracker.snapshots(),
            error=self._error,
            persistence_errors=list(self._persistence_errors),
        )

    # ── Persistence ───────────────────────────────────────────────────────────

    async def _load_profile(self) -> Optional[ProfileState]:
        try:
            await self._store.init()
            self._store_open = True
            return self._check_profile(await self._store.load(self.profile_id))
        except PersistenceError as e:
            self._persistence_errors.append(e)
            log.warning("scheduler.profile_load_failed", profile_id=self.profile_id, error=str(e))
            return None

    def _check_profile(self, profile: Optional[ProfileState]) -> Optional[ProfileState]:
        """Reject a profile that lists an activity twice before anything is seeded from it."""
        if profile is None:
            return None
        for section, keys in (
            ("activities", [a.key for a in profile.activities]),
            ("progress", [p.key for p in profile.progress]),
        ):
            repeated = sorted({k for k in keys if keys.count(k) > 1})
            if repeated:
                raise PersistenceError(
                    self.profile_id,
                    "load",
                    f"Profile '{self.profile_id}' lists {', '.join(repeated)} more than once in {section}.",
                )
        return profile

    def _merge_profile(self, profile: ProfileState) -> None:
        """Seed progress (and, unless prefer_config, enabled/weight) from a saved profile."""
        known = set(self.registry.keys())
        for record in profile.activities:
            if record.key not in known:
                log.info("scheduler.profile_activity_ignored", key=record.key)
                continue
            if self._prefer_config:
                continue
            self.registry.enable(record.key, record.enabled)
            if record.weight > 0:
                self.registry.reweight(record.key, record.weight)
        self.registry.apply_pending()

        for snapshot in profile.progress:
            if snapshot.key not in known:
                continue
            config = self.registry.get(snapshot.key)
            self.tracker.restore(snapshot, target_metric=config.target_metric)
        log.info(
            "scheduler.profile_resumed",
            profile_id=profile.profile_id,
            restored=[p.key for p in profile.progress if p.key in known],
        )

    async def _save(self, reason: str) -> None:
        if not self._store_open:
            return
        try:
            await self._store.save(
                self.profile_id,
                [c.to_record() for c in self.registry.configs()],
                self.tracker.snapshots(),
            )
            log.debug("scheduler.saved", reason=reason, profile_id=self.profile_id)
        except PersistenceError as e:
            self._persistence_errors.append(e)
            log.warning("scheduler.save_failed", reason=reason, error=str(e))
        except Exception as e:
            err = PersistenceError(self.profile_id, "save", f"{type(e).__name__}: {e}")
            self._persistence_errors.append(err)
            log.warning("scheduler.save_failed", reason=reason, error=str(err))

    async def _close_store(self) -> None:
        if not self._store_open:
            return
        self._store_open = False
        try:
            await self._store.close()
        except Exception as e:
            log.warning("scheduler.store_close_failed", error=str(e))

    async def _read_baseline(self, config: ActivityConfig) -> float:
        if config.metric_probe is None:
            return float(config.baseline_metric or 0.0)
        try:
            return float(await _resolve(config.metric_probe(config.key)))
        except Exception as e:
            raise CollaboratorError(
                f"Could not read baseline metric for '{config.key}': {e}", key=config.key
            ) from e

    # ── Reporting ─────────────────────────────────────────────────────────────

    def _summary(self, final: bool = False) -> ReportSummary:
        s = self._state
        return ReportSummary(
            phase=s.phase,
            current_key=s.current_key,
            elapsed_s=self._elapsed() if self._setup_done else 0.0,
            total_actions=s.total_actions,
            cycles=s.cycles,
            breaks_taken=s.breaks_taken,
            total_break_time_s=s.total_break_time,
            milestones=s.milestones,
            failed_actions=s.failed_actions,
            final=final,
        )

    def _maybe_report(self) -> None:
        if self._report_interval <= 0 or not self._report_sinks:
            return
        now = self._clock()
        if self._last_report_at is None or now - self._last_report_at >= self._report_interval:
            self._last_report_at = now
            self._emit_report(final=False)

    def _emit_report(self, final: bool) -> None:
        if final:
            self._final_reported = True
        snapshots: list[ProgressSnapshot] = self.tracker.snapshots()
        summary = self._summary(final=final)
        for sink in self._report_sinks:
            try:
                sink(snapshots, summary)
            except Exception as e:
                log.warning("scheduler.report_sink_failed", sink=repr(sink), error=str(e))

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _elapsed(self) -> float:
        return self._state.elapsed(self._clock())

    def _timed_out(self) -> bool:
        limit = self._state.max_runtime
        return limit is not None and self._elapsed() >= limit

    def _transition(self, new: Phase) -> None:
        old = self._state.phase
        if old is new:
            return
        if old.is_terminal:
            raise SchedulerInvariantError(f"Cannot leave terminal phase for {new.value}")
        self._state.phase = new
        log.debug("scheduler.phase", old=old.value, new=new.value)
        if self._on_phase_change is not None:
            try:
                self._on_phase_change(old, new)
            except Exception as e:
                log.warning("scheduler.phase_hook_failed", error=str(e))

    async def _pause(self, seconds: float) -> None:
        """Suspend the control loop, waking early if stop() is called."""
        if seconds <= 0:
            return
        wake = self._wake
        if wake is None:
            await self._sleep(seconds)
            return
        if wake.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waker = asyncio.ensure_future(wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waker, return_exceptions=True)
