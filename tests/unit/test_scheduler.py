"""
tests/unit/test_scheduler.py — ActivityScheduler State Machine Tests

All runs use a fake clock and a fake sleep that advances it, so timing
behaviour is exact and no test waits on wall-clock time.

Covers:
  - Setup: empty / all-disabled activity sets raise ConfigurationError,
    duplicate keys rejected, baseline from probe / config / zero, probe
    failure surfaces as CollaboratorError
  - Exhaustion: weighted A/B run ends DONE_EXHAUSTED with both at target
  - Sticky dwell: no switch inside switch_interval; re-rolls only on the
    interval boundary
  - Timeout: DONE_TIMEOUT at elapsed >= max_runtime, including session wait
  - Breaks: break_chance=1 breaks after every cycle; scheduled offsets fire
    once each; break time accumulates
  - Failures: recoverable work errors are counted and skipped; fatal errors
    and WorkResult.fatal terminate with outcome FATAL; strict mode re-raises
  - Stop: before run, between cycles, during a break, from another thread
  - Cancellation: CancelledError propagates after TERMINATED
  - Registry changes requested mid-run are applied at the next SELECT
  - Resume: JSON profile round-trip, saved enabled/weight vs prefer_config,
    changed targets re-open finished activities, corrupt / bad-key /
    repeated-key profile recorded and the run starts fresh
  - Reporting: cadence, final report (also on cancellation), failing sinks,
    phase hook, status() (empty snapshots during setup)
  - from_settings(): work-callable mapping validation
"""

from __future__ import annotations

import asyncio
import json
import random
import threading
from typing import Any, Optional

import pytest

from autocycle.config.settings import Settings
from autocycle.exceptions import (
    CollaboratorError,
    ConfigurationError,
    FatalCollaboratorError,
    PersistenceError,
    SchedulerInvariantError,
)
from autocycle.persistence.store import JsonProfileStore, NullProfileStore
from autocycle.scheduler.registry import ActivityRegistry
from autocycle.scheduler.scheduler import ActivityScheduler
from autocycle.scheduler.types import (
    ActivityConfig,
    ActivityRecord,
    Phase,
    ReportSummary,
    RunOutcome,
    WorkResult,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class CountingWork:
    """Work callable that raises its metric by `step` and costs `cost` seconds."""

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        start: float = 0.0,
        step: float = 10.0,
        cost: float = 1.0,
    ) -> None:
        self.clock = clock
        self.metric = start
        self.step = step
        self.cost = cost
        self.calls = 0

    def __call__(self, key: str) -> WorkResult:
        self.calls += 1
        if self.clock is not None:
            self.clock.advance(self.cost)
        self.metric += self.step
        return WorkResult(actions_performed=1, metric_after=self.metric)


class RecordingStore(NullProfileStore):
    """In-memory store that records every save; optionally fails them."""

    def __init__(self, fail_saves: bool = False) -> None:
        self.saves: list[tuple[str, list, list]] = []
        self.fail_saves = fail_saves
        self.closed = False

    async def save(self, profile_id, activities, progress) -> None:
        if self.fail_saves:
            raise PersistenceError(profile_id, "save", "disk full")
        self.saves.append((profile_id, list(activities), list(progress)))

    async def close(self) -> None:
        self.closed = True


def _make_activity(key: str, work: Any, target: float = 50.0, weight: float = 1.0, **kwargs) -> ActivityConfig:
    return ActivityConfig(key=key, work=work, target_metric=target, weight=weight, **kwargs)


def _make_scheduler(activities, clock: Optional[FakeClock] = None, **kwargs) -> ActivityScheduler:
    clock = clock or FakeClock()
    kwargs.setdefault("rng", random.Random(1234))
    return ActivityScheduler(activities, clock=clock, sleep=clock.sleep, **kwargs)


async def _blocking_sleep(seconds: float) -> None:
    await asyncio.Event().wait()


# ─────────────────────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────────────────────

class TestSetup:
    @pytest.mark.asyncio
    async def test_empty_activity_set_raises(self):
        scheduler = _make_scheduler([])
        with pytest.raises(ConfigurationError, match="No activities"):
            await scheduler.run()

    @pytest.mark.asyncio
    async def test_all_disabled_raises(self):
        scheduler = _make_scheduler([_make_activity("a", CountingWork(), enabled=False)])
        with pytest.raises(ConfigurationError, match="Enable at least one"):
            await scheduler.run()

    def test_duplicate_keys_raise_at_construction(self):
        with pytest.raises(ConfigurationError):
            _make_scheduler([_make_activity("a", CountingWork()), _make_activity("A", CountingWork())])

    def test_invalid_options_raise_at_construction(self):
        with pytest.raises(ConfigurationError):
            _make_scheduler([_make_activity("a", CountingWork())], max_runtime=0)
        with pytest.raises(ConfigurationError):
            _make_scheduler([_make_activity("a", CountingWork())], switch_interval=-1)
        with pytest.raises(ConfigurationError):
            _make_scheduler([_make_activity("a", CountingWork())], break_chance=2.0)

    @pytest.mark.asyncio
    async def test_baseline_sources(self):
        scheduler = _make_scheduler([
            _make_activity("probed", CountingWork(), metric_probe=lambda key: 17.0),
            _make_activity("configured", CountingWork(), baseline_metric=5.0),
            _make_activity("default", CountingWork()),
        ])
        await scheduler.setup()
        snaps = {s.key: s for s in scheduler.tracker.snapshots()}
        assert snaps["probed"].baseline_metric == 17.0
        assert snaps["configured"].baseline_metric == 5.0
        assert snaps["default"].baseline_metric == 0.0
        assert scheduler.phase is Phase.AWAIT_SESSION
        assert scheduler.registry.frozen

    @pytest.mark.asyncio
    async def test_async_probe_supported(self):
        async def probe(key: str) -> float:
            return 9.0

        scheduler = _make_scheduler([_make_activity("a", CountingWork(), metric_probe=probe)])
        await scheduler.setup()
        assert scheduler.tracker.snapshot("a").current_metric == 9.0

    @pytest.mark.asyncio
    async def test_probe_failure_raises_collaborator_error(self):
        def probe(key: str) -> float:
            raise OSError("client not running")

        scheduler = _make_scheduler([_make_activity("a", CountingWork(), metric_probe=probe)])
        with pytest.raises(CollaboratorError, match="baseline"):
            await scheduler.run()

    @pytest.mark.asyncio
    async def test_setup_is_idempotent(self):
        scheduler = _make_scheduler([_make_activity("a", CountingWork())])
        await scheduler.setup()
        await scheduler.setup()
        assert len(scheduler.tracker) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Exhaustion
# ─────────────────────────────────────────────────────────────────────────────

class TestExhaustion:
    @pytest.mark.asyncio
    async def test_weighted_pair_runs_to_exhaustion(self):
        clock = FakeClock()
        work_a = CountingWork(clock, start=10.0)
        work_b = CountingWork(clock, start=10.0)
        scheduler = _make_scheduler(
            [
                _make_activity("A", work_a, target=50, weight=25, baseline_metric=10),
                _make_activity("B", work_b, target=50, weight=75, baseline_metric=10),
            ],
            clock=clock,
        )
        result = await scheduler.run()

        assert result.phase is Phase.TERMINATED
        assert result.outcome is RunOutcome.EXHAUSTED
        assert result.succeeded
        for key in ("a", "b"):
            snap = result.snapshot(key)
            assert snap.finished is True
            assert snap.current_metric == 50.0
            assert snap.action_count == 4
        assert work_a.calls == work_b.calls == 4
        assert result.total_actions == 8
        assert result.cycles == 8

    @pytest.mark.asyncio
    async def test_already_finished_activity_is_never_run(self):
        done = CountingWork()
        todo = CountingWork(step=25.0)
        scheduler = _make_scheduler([
            _make_activity("done", done, target=10, baseline_metric=10),
            _make_activity("todo", todo, target=50),
        ])
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert done.calls == 0
        assert todo.calls == 2

    @pytest.mark.asyncio
    async def test_finished_activity_leaves_pool_despite_regression(self):
        metrics = iter([60.0, 40.0])
        calls = {"a": 0, "b": 0}

        def regressing(key: str) -> WorkResult:
            calls[key] += 1
            return WorkResult(metric_after=next(metrics, 0.0))

        scheduler = _make_scheduler(
            [_make_activity("a", regressing), _make_activity("b", CountingWork(step=50.0))],
            rng=random.Random(0),
        )
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert calls["a"] == 1
        assert result.snapshot("a").finished is True

    @pytest.mark.asyncio
    async def test_metric_from_probe_when_result_has_none(self):
        state = {"metric": 0.0}

        def work(key: str) -> None:
            state["metric"] += 20.0

        scheduler = _make_scheduler([
            _make_activity("a", work, target=50, metric_probe=lambda key: state["metric"]),
        ])
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert result.snapshot("a").current_metric == 60.0
        assert result.total_actions == 3

    @pytest.mark.asyncio
    async def test_mapping_results_and_async_work(self):
        state = {"metric": 0.0}

        async def work(key: str) -> dict:
            state["metric"] += 25.0
            return {"actions_performed": 3, "metric_after": state["metric"]}

        scheduler = _make_scheduler([_make_activity("a", work, target=50)])
        result = await scheduler.run()
        assert result.total_actions == 6
        assert result.snapshot("a").action_count == 6


# ─────────────────────────────────────────────────────────────────────────────
# Sticky dwell
# ─────────────────────────────────────────────────────────────────────────────

class TestStickyDwell:
    @pytest.mark.asyncio
    async def test_no_switch_inside_interval(self):
        clock = FakeClock()
        work_a = CountingWork(clock, step=0.1)
        work_b = CountingWork(clock, step=0.1)
        scheduler = _make_scheduler(
            [_make_activity("a", work_a, target=1e9), _make_activity("b", work_b, target=1e9)],
            clock=clock,
            switch_interval=100,
            max_runtime=50,
        )
        result = await scheduler.run()

        assert result.outcome is RunOutcome.TIMEOUT
        assert result.total_actions == 50
        assert sorted([work_a.calls, work_b.calls]) == [0, 50]

    @pytest.mark.asyncio
    async def test_rerolls_only_on_interval_boundaries(self):
        clock = FakeClock()
        sequence: list[str] = []

        def make_work():
            def work(key: str) -> WorkResult:
                sequence.append(key)
                clock.advance(1.0)
                return WorkResult(metric_after=0.0)
            return work

        scheduler = _make_scheduler(
            [_make_activity("a", make_work(), target=1e9), _make_activity("b", make_work(), target=1e9)],
            clock=clock,
            switch_interval=10,
            max_runtime=400,
        )
        await scheduler.run()

        assert len(sequence) == 400
        switch_points = [i for i in range(1, len(sequence)) if sequence[i] != sequence[i - 1]]
        assert switch_points, "equal weights over 40 re-rolls should switch at least once"
        assert all(i % 10 == 0 for i in switch_points)

    @pytest.mark.asyncio
    async def test_zero_interval_rerolls_every_cycle(self):
        clock = FakeClock()
        work_a = CountingWork(clock, step=0.0)
        work_b = CountingWork(clock, step=0.0)
        scheduler = _make_scheduler(
            [_make_activity("a", work_a), _make_activity("b", work_b)],
            clock=clock,
            max_runtime=200,
        )
        await scheduler.run()
        assert work_a.calls > 50
        assert work_b.calls > 50

    @pytest.mark.asyncio
    async def test_dwell_ends_when_current_finishes(self):
        clock = FakeClock()
        work_a = CountingWork(clock, step=50.0)
        work_b = CountingWork(clock, step=50.0)
        scheduler = _make_scheduler(
            [_make_activity("a", work_a), _make_activity("b", work_b)],
            clock=clock,
            switch_interval=1_000,
        )
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert work_a.calls == work_b.calls == 1


# ─────────────────────────────────────────────────────────────────────────────
# Timeout
# ─────────────────────────────────────────────────────────────────────────────

class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_at_max_runtime(self):
        clock = FakeClock()
        work = CountingWork(clock, step=0.0, cost=3.0)
        scheduler = _make_scheduler([_make_activity("a", work)], clock=clock, max_runtime=10)
        result = await scheduler.run()

        assert result.outcome is RunOutcome.TIMEOUT
        assert result.phase is Phase.TERMINATED
        assert work.calls == 4  # 0, 3, 6, 9 start below the limit; 12 does not
        assert result.elapsed_s == pytest.approx(12.0)
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_timeout_during_session_wait(self):
        clock = FakeClock()
        work = CountingWork(clock)
        scheduler = _make_scheduler(
            [_make_activity("a", work)],
            clock=clock,
            max_runtime=5,
            session_ready=lambda: False,
            session_poll_interval=1.0,
        )
        result = await scheduler.run()
        assert result.outcome is RunOutcome.TIMEOUT
        assert work.calls == 0
        assert clock.sleeps == [1.0] * 5

    @pytest.mark.asyncio
    async def test_unfinished_snapshots_reported_on_timeout(self):
        clock = FakeClock()
        scheduler = _make_scheduler(
            [_make_activity("a", CountingWork(clock, step=1.0), target=100)],
            clock=clock,
            max_runtime=3,
        )
        result = await scheduler.run()
        snap = result.snapshot("a")
        assert snap.finished is False
        assert snap.current_metric == 3.0


# ─────────────────────────────────────────────────────────────────────────────
# Session
# ─────────────────────────────────────────────────────────────────────────────

class TestSession:
    @pytest.mark.asyncio
    async def test_waits_for_session(self):
        clock = FakeClock()
        polls = {"n": 0}

        async def ready() -> bool:
            polls["n"] += 1
            return polls["n"] > 3

        work = CountingWork(clock, step=50.0)
        scheduler = _make_scheduler(
            [_make_activity("a", work)], clock=clock, session_ready=ready, session_poll_interval=2.0,
        )
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert polls["n"] == 4
        assert clock.sleeps == [2.0, 2.0, 2.0]

    @pytest.mark.asyncio
    async def test_predicate_error_is_treated_as_not_ready(self):
        clock = FakeClock()
        answers = iter([RuntimeError("flaky"), True])

        def ready() -> bool:
            answer = next(answers)
            if isinstance(answer, Exception):
                raise answer
            return answer

        scheduler = _make_scheduler(
            [_make_activity("a", CountingWork(clock, step=50.0))], clock=clock, session_ready=ready,
        )
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED

    @pytest.mark.asyncio
    async def test_fatal_predicate_error_terminates(self):
        def ready() -> bool:
            raise FatalCollaboratorError("account banned")

        scheduler = _make_scheduler([_make_activity("a", CountingWork())], session_ready=ready)
        result = await scheduler.run()
        assert result.outcome is RunOutcome.FATAL
        assert isinstance(result.error, FatalCollaboratorError)


# ─────────────────────────────────────────────────────────────────────────────
# Breaks
# ─────────────────────────────────────────────────────────────────────────────

class TestBreaks:
    @pytest.mark.asyncio
    async def test_break_chance_one_breaks_after_every_cycle(self):
        clock = FakeClock()
        phases: list[Phase] = []
        scheduler = _make_scheduler(
            [_make_activity("a", CountingWork(clock), target=30)],
            clock=clock,
            break_chance=1.0,
            break_duration_range=(5.0, 5.0),
            on_phase_change=lambda old, new: phases.append(new),
        )
        result = await scheduler.run()

        assert result.outcome is RunOutcome.EXHAUSTED
        assert result.cycles == 3
        assert result.breaks_taken == 3
        assert scheduler.state.total_break_time == pytest.approx(15.0)
        executes = [i for i, p in enumerate(phases) if p is Phase.EXECUTE]
        for i in executes:
            assert phases[i + 1] is Phase.BREAK
            assert phases[i + 2] is Phase.SELECT

    @pytest.mark.asyncio
    async def test_scheduled_break_fires_once(self):
        clock = FakeClock()
        scheduler = _make_scheduler(
            [_make_activity("a", CountingWork(clock), target=50)],
            clock=clock,
            break_schedule=[2.5],
            break_duration_range=(4.0, 4.0),
        )
        result = await scheduler.run()

        assert result.breaks_taken == 1
        assert clock.sleeps == [4.0]
        assert result.elapsed_s == pytest.approx(9.0)
        assert scheduler.state.next_break_idx == 1

    @pytest.mark.asyncio
    async def test_each_scheduled_offset_fires_once(self):
        clock = FakeClock()
        scheduler = _make_scheduler(
            [_make_activity("a", CountingWork(clock, step=1.0), target=100)],
            clock=clock,
            break_schedule=[10, 20, 30],
            break_duration_range=(1.0, 1.0),
        )
        result = await scheduler.run()
        assert result.breaks_taken == 3
        assert scheduler.state.next_break_idx == 3

    @pytest.mark.asyncio
    async def test_failed_cycles_still_run_the_break_check(self):
        def broken(key: str) -> None:
            raise RuntimeError("misclick")

        clock = FakeClock()
        scheduler = _make_scheduler(
            [_make_activity("a", broken)],
            clock=clock,
            break_chance=1.0,
            break_duration_range=(2.0, 2.0),
            max_runtime=10,
        )
        result = await scheduler.run()
        assert result.outcome is RunOutcome.TIMEOUT
        assert result.breaks_taken == 5
        assert scheduler.state.failed_actions == 5


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_recoverable_failures_are_counted_and_skipped(self):
        state = {"calls": 0, "metric": 0.0}

        def flaky(key: str) -> WorkResult:
            state["calls"] += 1
            if state["calls"] % 2 == 0:
                raise CollaboratorError("dropped item", key=key)
            state["metric"] += 25.0
            return WorkResult(metric_after=state["metric"])

        scheduler = _make_scheduler([_make_activity("a", flaky, target=50)])
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert scheduler.state.failed_actions == 1
        assert result.total_actions == 2
        assert result.cycles == 3

    @pytest.mark.asyncio
    async def test_unsupported_return_type_is_a_failed_cycle(self):
        calls = {"n": 0}

        def odd(key: str) -> Any:
            calls["n"] += 1
            return 42 if calls["n"] == 1 else WorkResult(metric_after=100.0)

        scheduler = _make_scheduler([_make_activity("a", odd)])
        result = await scheduler.run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert scheduler.state.failed_actions == 1

    @pytest.mark.asyncio
    async def test_fatal_error_terminates_and_saves(self):
        calls = {"n": 0}
        store = RecordingStore()

        def work(key: str) -> WorkResult:
            calls["n"] += 1
            if calls["n"] == 3:
                raise FatalCollaboratorError("session lost", key=key)
            return WorkResult(metric_after=float(calls["n"]))

        scheduler = _make_scheduler([_make_activity("a", work)], store=store)
        result = await scheduler.run()

        assert result.phase is Phase.TERMINATED
        assert result.outcome is RunOutcome.FATAL
        assert not result.succeeded
        assert isinstance(result.error, FatalCollaboratorError)
        assert result.total_actions == 2
        assert store.saves, "fatal termination must save best-effort"
        assert store.saves[-1][2][0].current_metric == 2.0
        assert store.closed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fatal", ["logged out", RuntimeError("logged out")])
    async def test_fatal_field_in_result_terminates(self, fatal):
        scheduler = _make_scheduler([_make_activity("a", lambda key: WorkResult(fatal=fatal))])
        result = await scheduler.run()
        assert result.outcome is RunOutcome.FATAL
        assert isinstance(result.error, FatalCollaboratorError)
        assert "logged out" in str(result.error)
        assert result.total_actions == 0

    @pytest.mark.asyncio
    async def test_configuration_error_in_loop_is_fatal_by_default(self):
        def work(key: str) -> None:
            raise ConfigurationError("tracker desync")

        scheduler = _make_scheduler([_make_activity("a", work)])
        result = await scheduler.run()
        assert result.outcome is RunOutcome.FATAL
        assert isinstance(result.error, ConfigurationError)
        assert scheduler.state.failed_actions == 0

    @pytest.mark.asyncio
    async def test_strict_mode_reraises_invariant_errors(self):
        def work(key: str) -> None:
            raise SchedulerInvariantError("broken")

        scheduler = _make_scheduler([_make_activity("a", work)], strict=True)
        with pytest.raises(SchedulerInvariantError):
            await scheduler.run()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_run_is_single_use(self):
        scheduler = _make_scheduler([_make_activity("a", CountingWork(step=50.0))])
        await scheduler.run()
        with pytest.raises(SchedulerInvariantError, match="single-use"):
            await scheduler.run()


# ─────────────────────────────────────────────────────────────────────────────
# Stop / cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestStop:
    @pytest.mark.asyncio
    async def test_stop_before_run(self):
        work = CountingWork()
        scheduler = _make_scheduler([_make_activity("a", work)])
        scheduler.stop()
        result = await scheduler.run()
        assert result.outcome is RunOutcome.STOPPED
        assert result.phase is Phase.TERMINATED
        assert work.calls == 0

    @pytest.mark.asyncio
    async def test_stop_takes_effect_before_next_execute(self):
        holder: dict[str, ActivityScheduler] = {}
        calls = {"n": 0}

        def work(key: str) -> WorkResult:
            calls["n"] += 1
            if calls["n"] == 3:
                holder["s"].stop()
            return WorkResult(metric_after=float(calls["n"]))

        scheduler = _make_scheduler([_make_activity("a", work, target=1e9)])
        holder["s"] = scheduler
        result = await scheduler.run()
        assert result.outcome is RunOutcome.STOPPED
        assert calls["n"] == 3
        assert result.total_actions == 3
        assert scheduler.stop_requested

    @pytest.mark.asyncio
    async def test_stop_interrupts_break(self):
        scheduler = ActivityScheduler(
            [_make_activity("a", CountingWork(), target=1e9)],
            break_chance=1.0,
            break_duration_range=(3600.0, 3600.0),
            sleep=_blocking_sleep,
            rng=random.Random(1),
        )
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, scheduler.stop)
        result = await asyncio.wait_for(scheduler.run(), timeout=5)
        assert result.outcome is RunOutcome.STOPPED
        assert result.breaks_taken == 1

    @pytest.mark.asyncio
    async def test_stop_from_another_thread(self):
        scheduler = ActivityScheduler(
            [_make_activity("a", CountingWork(), target=1e9)],
            session_ready=lambda: False,
            session_poll_interval=3600.0,
            sleep=_blocking_sleep,
        )
        timer = threading.Timer(0.05, scheduler.stop)
        timer.start()
        try:
            result = await asyncio.wait_for(scheduler.run(), timeout=5)
        finally:
            timer.cancel()
        assert result.outcome is RunOutcome.STOPPED
        assert result.total_actions == 0

    @pytest.mark.asyncio
    async def test_cancellation_propagates_after_termination(self):
        started = asyncio.Event()
        store = RecordingStore()
        reports: list[ReportSummary] = []

        async def slow(key: str) -> None:
            started.set()
            await asyncio.Event().wait()

        scheduler = _make_scheduler(
            [_make_activity("a", slow)],
            store=store,
            report_sinks=[lambda snaps, summary: reports.append(summary)],
        )
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert scheduler.phase is Phase.TERMINATED
        assert not scheduler.running
        assert store.saves
        assert store.closed
        assert [r.final for r in reports] == [True]


# ─────────────────────────────────────────────────────────────────────────────
# Registry changes mid-run
# ─────────────────────────────────────────────────────────────────────────────

class TestRegistryChanges:
    @pytest.mark.asyncio
    async def test_disable_is_buffered_until_select(self):
        holder: dict[str, ActivityScheduler] = {}
        observed: dict[str, Any] = {}
        calls = {"a": 0, "b": 0}

        def work(key: str) -> WorkResult:
            calls[key] += 1
            registry = holder["s"].registry
            if "pending" not in observed:
                registry.disable("b")
                observed["pending"] = registry.pending_count
                observed["b_enabled"] = registry.get("b").enabled
            return WorkResult(metric_after=float(calls[key] * 10))

        registry = ActivityRegistry([
            _make_activity("a", work, target=30),
            _make_activity("b", work, target=30),
        ])
        scheduler = _make_scheduler(registry)
        holder["s"] = scheduler
        result = await scheduler.run()

        assert observed == {"pending": 1, "b_enabled": True}
        assert result.outcome is RunOutcome.EXHAUSTED
        assert calls["b"] <= 1
        assert result.snapshot("a").finished
        assert not result.snapshot("b").finished

    @pytest.mark.asyncio
    async def test_reweight_applied_between_cycles(self):
        holder: dict[str, ActivityScheduler] = {}
        clock = FakeClock()
        calls = {"a": 0, "b": 0}

        def work(key: str) -> WorkResult:
            calls[key] += 1
            clock.advance(1.0)
            if sum(calls.values()) == 1:
                holder["s"].registry.reweight("b", 1e-9)
            return WorkResult(metric_after=0.0)

        scheduler = _make_scheduler(
            [_make_activity("a", work, target=1e9), _make_activity("b", work, target=1e9)],
            clock=clock,
            max_runtime=200,
        )
        holder["s"] = scheduler
        await scheduler.run()
        assert scheduler.registry.get("b").weight == 1e-9
        assert calls["b"] <= 2


# ─────────────────────────────────────────────────────────────────────────────
# Persistence / resume
# ─────────────────────────────────────────────────────────────────────────────

class TestResume:
    @pytest.mark.asyncio
    async def test_resume_from_json_profile(self, tmp_path):
        store_dir = tmp_path / "profiles"

        clock = FakeClock()
        first = _make_scheduler(
            [_make_activity("a", CountingWork(clock), target=30)],
            clock=clock,
            store=JsonProfileStore(store_dir),
            profile_id="main",
            max_runtime=2,
        )
        first_result = await first.run()
        assert first_result.outcome is RunOutcome.TIMEOUT

        saved = await JsonProfileStore(store_dir).load("main")
        assert saved.snapshot("a").current_metric == 20.0
        assert saved.snapshot("a").action_count == 2

        second = _make_scheduler(
            [_make_activity("a", CountingWork(start=20.0), target=30)],
            store=JsonProfileStore(store_dir),
            profile_id="main",
        )
        result = await second.run()
        snap = result.snapshot("a")
        assert result.outcome is RunOutcome.EXHAUSTED
        assert result.total_actions == 1
        assert snap.baseline_metric == 0.0
        assert snap.action_count == 3
        assert snap.finished

    @pytest.mark.asyncio
    async def test_finished_profile_exhausts_immediately(self, tmp_path):
        store = JsonProfileStore(tmp_path)
        await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0))], store=store, profile_id="p",
        ).run()

        work = CountingWork()
        result = await _make_scheduler([_make_activity("a", work)], store=store, profile_id="p").run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert work.calls == 0

    @pytest.mark.asyncio
    async def test_raised_target_reopens_finished_activity(self, tmp_path):
        store = JsonProfileStore(tmp_path)
        await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0), target=50)], store=store, profile_id="p",
        ).run()

        work = CountingWork(start=50.0, step=50.0)
        result = await _make_scheduler(
            [_make_activity("a", work, target=100)], store=store, profile_id="p",
        ).run()
        assert work.calls == 1
        assert result.snapshot("a").target_metric == 100.0

    @pytest.mark.asyncio
    async def test_saved_enabled_state_wins_over_config(self, tmp_path):
        store = JsonProfileStore(tmp_path)
        await store.save(
            "p",
            [ActivityRecord("a", 50.0, 1.0, True), ActivityRecord("b", 50.0, 1.0, False)],
            [],
        )
        work_b = CountingWork(step=50.0)
        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0)), _make_activity("b", work_b)],
            store=store,
            profile_id="p",
        ).run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert work_b.calls == 0

    @pytest.mark.asyncio
    async def test_prefer_config_ignores_saved_enabled_state(self, tmp_path):
        store = JsonProfileStore(tmp_path)
        await store.save("p", [ActivityRecord("b", 50.0, 1.0, False)], [])
        work_b = CountingWork(step=50.0)
        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0)), _make_activity("b", work_b)],
            store=store,
            profile_id="p",
            prefer_config=True,
        ).run()
        assert work_b.calls == 1
        assert result.snapshot("b").finished

    @pytest.mark.asyncio
    async def test_profile_disabling_everything_exhausts(self, tmp_path):
        store = JsonProfileStore(tmp_path)
        await store.save("p", [ActivityRecord("a", 50.0, 1.0, False)], [])
        work = CountingWork()
        result = await _make_scheduler([_make_activity("a", work)], store=store, profile_id="p").run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert work.calls == 0

    @pytest.mark.asyncio
    async def test_corrupt_profile_is_reported_and_run_starts_fresh(self, tmp_path):
        (tmp_path / "p.json").write_text("garbage", encoding="utf-8")
        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0))],
            store=JsonProfileStore(tmp_path),
            profile_id="p",
        ).run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert len(result.persistence_errors) == 1
        assert isinstance(result.persistence_errors[0], PersistenceError)
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_profile_with_invalid_key_starts_fresh(self, tmp_path):
        snapshot = {
            "key": None,
            "baseline_metric": 0.0,
            "current_metric": 10.0,
            "target_metric": 50.0,
            "action_count": 3,
            "finished": False,
        }
        (tmp_path / "p.json").write_text(
            json.dumps({"version": 1, "profile_id": "p", "progress": [snapshot]}), encoding="utf-8"
        )
        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0))],
            store=JsonProfileStore(tmp_path),
            profile_id="p",
        ).run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert len(result.persistence_errors) == 1
        assert result.persistence_errors[0].operation == "load"

    @pytest.mark.asyncio
    async def test_profile_with_repeated_key_starts_fresh(self, tmp_path):
        snapshot = {
            "key": "a",
            "baseline_metric": 0.0,
            "current_metric": 10.0,
            "target_metric": 50.0,
            "action_count": 3,
            "finished": False,
        }
        (tmp_path / "p.json").write_text(
            json.dumps({"version": 1, "profile_id": "p", "progress": [snapshot, dict(snapshot)]}),
            encoding="utf-8",
        )
        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0))],
            store=JsonProfileStore(tmp_path),
            profile_id="p",
        ).run()
        assert result.outcome is RunOutcome.EXHAUSTED
        assert len(result.persistence_errors) == 1
        assert "more than once" in str(result.persistence_errors[0])
        assert result.snapshot("a").action_count == 1

    @pytest.mark.asyncio
    async def test_save_failures_do_not_stop_the_run(self):
        store = RecordingStore(fail_saves=True)
        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=25.0))], store=store,
        ).run()
        assert result.outcome is RunOutcome.EXHAUSTED
        # one save on the finished transition, one at termination
        assert len(result.persistence_errors) == 2
        assert all(e.operation == "save" for e in result.persistence_errors)

    @pytest.mark.asyncio
    async def test_saves_on_finish_milestone_and_termination(self):
        store = RecordingStore()
        calls = {"n": 0}

        def work(key: str) -> WorkResult:
            calls["n"] += 1
            return WorkResult(metric_after=calls["n"] * 25.0, milestone_crossed=calls["n"] == 1)

        await _make_scheduler([_make_activity("a", work)], store=store).run()
        # milestone (cycle 1), finished (cycle 2), terminated
        assert len(store.saves) == 3
        assert store.saves[-1][2][0].finished


# ─────────────────────────────────────────────────────────────────────────────
# Reporting / introspection
# ─────────────────────────────────────────────────────────────────────────────

class TestReporting:
    @pytest.mark.asyncio
    async def test_report_cadence_and_final_report(self):
        clock = FakeClock()
        reports: list[ReportSummary] = []

        def sink(snapshots, summary) -> None:
            reports.append(summary)

        await _make_scheduler(
            [_make_activity("a", CountingWork(clock, step=1.0), target=20)],
            clock=clock,
            report_sinks=[sink],
            report_interval=5,
        ).run()

        progress = [r for r in reports if not r.final]
        final = [r for r in reports if r.final]
        assert len(final) == 1
        assert reports[-1].final
        assert len(progress) == 4  # SELECT at t=5, 10, 15, 20
        assert final[0].total_actions == 20

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_the_run(self):
        def broken(snapshots, summary) -> None:
            raise ValueError("display gone")

        result = await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0))], report_sinks=[broken],
        ).run()
        assert result.outcome is RunOutcome.EXHAUSTED

    @pytest.mark.asyncio
    async def test_phase_hook_sees_full_lifecycle(self):
        transitions: list[tuple[Phase, Phase]] = []
        await _make_scheduler(
            [_make_activity("a", CountingWork(step=50.0))],
            on_phase_change=lambda old, new: transitions.append((old, new)),
        ).run()
        assert transitions == [
            (Phase.INIT, Phase.AWAIT_SESSION),
            (Phase.AWAIT_SESSION, Phase.SELECT),
            (Phase.SELECT, Phase.EXECUTE),
            (Phase.EXECUTE, Phase.SELECT),
            (Phase.SELECT, Phase.DONE_EXHAUSTED),
            (Phase.DONE_EXHAUSTED, Phase.TERMINATED),
        ]

    @pytest.mark.asyncio
    async def test_milestone_phase(self):
        transitions: list[Phase] = []
        scheduler = _make_scheduler(
            [_make_activity("a", lambda key: WorkResult(metric_after=60.0, milestone_crossed=True))],
            on_phase_change=lambda old, new: transitions.append(new),
        )
        await scheduler.run()
        assert Phase.MILESTONE in transitions
        assert scheduler.state.milestones == 1

    @pytest.mark.asyncio
    async def test_status_is_a_copy(self):
        scheduler = _make_scheduler([_make_activity("a", CountingWork(step=50.0))])
        before = scheduler.status()
        assert before.running is False
        assert before.summary.phase is Phase.INIT
        await scheduler.run()
        after = scheduler.status()
        assert after.summary.phase is Phase.TERMINATED
        assert after.snapshots[0].finished
        assert isinstance(after.snapshots, tuple)

    @pytest.mark.asyncio
    async def test_status_during_setup_has_no_snapshots(self):
        holder: dict[str, ActivityScheduler] = {}
        seen: list[tuple] = []

        def probe(key: str) -> float:
            seen.append(holder["scheduler"].status().snapshots)
            return 0.0

        scheduler = _make_scheduler([
            _make_activity("a", CountingWork(step=50.0), metric_probe=probe),
            _make_activity("b", CountingWork(step=50.0), metric_probe=probe),
        ])
        holder["scheduler"] = scheduler
        await scheduler.setup()
        assert seen == [(), ()]
        assert len(scheduler.status().snapshots) == 2


# ─────────────────────────────────────────────────────────────────────────────
# from_settings
# ─────────────────────────────────────────────────────────────────────────────

class TestFromSettings:
    def _settings(self, **scheduler) -> Settings:
        return Settings(
            scheduler=scheduler,
            activities=[
                {"key": "Mining", "target_metric": 50, "weight": 2},
                {"key": "fishing", "target_metric": 40},
            ],
            persistence={"backend": "none", "profile_id": "alt"},
        )

    def test_builds_scheduler(self):
        scheduler = ActivityScheduler.from_settings(
            self._settings(switch_interval_seconds=30, seed=5),
            {"mining": CountingWork(), "FISHING": CountingWork()},
        )
        assert scheduler.registry.keys() == ["mining", "fishing"]
        assert scheduler.registry.get("mining").weight == 2.0
        assert scheduler.state.switch_interval == 30.0
        assert scheduler.profile_id == "alt"

    def test_missing_work_callable(self):
        with pytest.raises(ConfigurationError, match="No work callable"):
            ActivityScheduler.from_settings(self._settings(), {"mining": CountingWork()})

    def test_unknown_work_callable(self):
        with pytest.raises(ConfigurationError, match="unconfigured"):
            ActivityScheduler.from_settings(
                self._settings(),
                {"mining": CountingWork(), "fishing": CountingWork(), "cooking": CountingWork()},
            )

    @pytest.mark.asyncio
    async def test_seeded_runs_are_reproducible(self):
        async def run_once() -> list[str]:
            clock = FakeClock()
            order: list[str] = []

            def make():
                def work(k: str) -> WorkResult:
                    order.append(k)
                    clock.advance(1.0)
                    return WorkResult(metric_after=0.0)
                return work

            scheduler = ActivityScheduler.from_settings(
                self._settings(seed=42, max_runtime_seconds=30),
                {"mining": make(), "fishing": make()},
                clock=clock,
                sleep=clock.sleep,
            )
            await scheduler.run()
            return order

        assert await run_once() == await run_once()
