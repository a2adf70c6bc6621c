"""
ScenarioRunner: drives one scenario's virtual users on its own clock.

Architecture:
    supervisor (1 task per scenario) ── tick ──> Scheduler target
        ├─ constant / ramping: resize a pool of looping users
        └─ arrival-rate: hand each due arrival to an idle user

    Every user slot is taken from the shared UserCeiling before a user
    starts and is returned when the user stops.

Stop semantics:
    - Ramp-down: the surplus is marked retiring, oldest id first. A user in
      think-time leaves at once; a user mid-iteration finishes it and gets
      ``graceful_ramp_down`` seconds before being cancelled.
      Users also check the target before every iteration, so a drop
      between ticks starts no new iteration.
    - Scenario end or run stop: no new iteration starts. In-flight
      iterations get ``graceful_stop`` seconds, then are cancelled and
      counted in ``truncated_iterations``.
    - Arrival-rate deficits: an arrival that finds no idle user and no
      spawn capacity is dropped and counted in ``dropped_iterations``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set

from loadstage.dispatcher import BehaviorDispatcher
from loadstage.exceptions import ForcedTruncation, SchedulingDeficit
from loadstage.limiter import UserCeiling
from loadstage.metrics.buckets import MetricKind
from loadstage.metrics.builtin import (
    DROPPED_ITERATIONS,
    ITERATION_DURATION,
    ITERATIONS,
    SCHEDULING_DEFICITS,
    TRUNCATED_ITERATIONS,
)
from loadstage.metrics.registry import MetricsRegistry, ScopedRecorder
from loadstage.models import ExecutorKind, ScenarioSpec
from loadstage.probe import IterationContext
from loadstage.scheduler import Scheduler

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class VUState(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    RETIRING = "retiring"
    STOPPED = "stopped"


@dataclass
class VirtualUser:
    """
    One simulated client.

    Attributes:
        id: Sequential within the scenario, never reused.
        behavior: Behavior of the current (or last) iteration.
        state: Lifecycle state.
        iterations: Completed iterations.
    """

    id: int
    behavior: Optional[str] = None
    state: VUState = VUState.SPAWNING
    iterations: int = 0
    in_iteration: bool = False
    truncated: bool = False
    rng: random.Random = field(default_factory=random.Random, repr=False)
    wake: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)


@dataclass
class ScenarioStats:
    """Counters kept by the supervisor for the run summary."""

    spawned: int = 0
    retired: int = 0
    iterations: int = 0
    failed_iterations: int = 0
    truncated_iterations: int = 0
    dropped_iterations: int = 0
    peak_users: int = 0


class ScenarioRunner:
    """
    Runs one scenario from its start offset until its schedule ends or the
    run is stopped.

    Example:
        runner = ScenarioRunner(spec, dispatcher, registry, ceiling, seed=7)
        await runner.run(stop_event)
        print(runner.stats.iterations, runner.deficits)
    """

    def __init__(
        self,
        spec: ScenarioSpec,
        dispatcher: BehaviorDispatcher,
        registry: MetricsRegistry,
        ceiling: UserCeiling,
        *,
        env: Optional[Mapping[str, str]] = None,
        seed: Optional[int] = None,
        tick_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.spec = spec
        self.scheduler = Scheduler.from_spec(spec)
        self._dispatcher = dispatcher
        self._registry = registry
        self._ceiling = ceiling
        self._env = dict(env or {})
        self._seed = seed
        self._tick = tick_interval
        self._clock = clock

        self._recorder = registry.scoped({**spec.tags, "scenario": spec.name})
        self._think_rng = self._rng_for("think")

        self._users: Dict[int, VirtualUser] = {}
        self._idle: Deque[VirtualUser] = deque()
        self._watchdogs: Set[asyncio.Task] = set()
        self._next_id = 1
        self._stopping = False
        self._started_at: Optional[float] = None
        self._data: Any = None
        self._short = False

        self.stats = ScenarioStats()
        self.deficits: List[SchedulingDeficit] = []
        self.truncations: List[ForcedTruncation] = []

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def dispatcher(self) -> BehaviorDispatcher:
        return self._dispatcher

    @property
    def recorder(self) -> ScopedRecorder:
        """Recorder carrying this scenario's static tags and ``scenario`` tag."""
        return self._recorder

    @property
    def started_at(self) -> Optional[float]:
        """Clock reading when the start offset elapsed; None before that."""
        return self._started_at

    @property
    def users(self) -> List[VirtualUser]:
        """Every user spawned so far, by id."""
        return [self._users[vu_id] for vu_id in sorted(self._users)]

    @property
    def active_users(self) -> int:
        """Users counted against the schedule (not retiring or stopped)."""
        return sum(
            1
            for u in self._users.values()
            if u.state in (VUState.SPAWNING, VUState.RUNNING)
        )

    @property
    def allocated_users(self) -> int:
        """Users currently holding a ceiling slot."""
        return sum(1 for u in self._users.values() if u.state is not VUState.STOPPED)

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def _rng_for(self, stream: str) -> random.Random:
        if self._seed is None:
            return random.Random()
        return random.Random(f"{self._seed}/{self.spec.name}/{stream}")

    async def run(self, stop: asyncio.Event, data: Any = None) -> ScenarioStats:
        """
        Wait for the start offset, supervise the schedule, then stop.

        ``data`` is handed to every iteration as ``IterationContext.data``.
        """
        self._data = data
        if self.spec.start_time > 0 and await _wait(stop, self.spec.start_time):
            logger.info("Scenario %s stopped before its start time", self.name)
            return self.stats

        self._started_at = self._clock()
        logger.info(
            "Scenario %s started: executor=%s, duration=%.1fs",
            self.name,
            self.spec.executor.value,
            self.scheduler.total_duration,
        )
        try:
            if self.spec.executor is ExecutorKind.ARRIVAL_RATE:
                await self._supervise_arrivals(stop)
            else:
                await self._supervise_pool(stop)
        finally:
            await self.shutdown()
        logger.info(
            "Scenario %s finished: iterations=%d, failed=%d, truncated=%d, dropped=%d",
            self.name,
            self.stats.iterations,
            self.stats.failed_iterations,
            self.stats.truncated_iterations,
            self.stats.dropped_iterations,
        )
        return self.stats

    # -- constant / ramping -------------------------------------------------

    async def _supervise_pool(self, stop: asyncio.Event) -> None:
        total = self.scheduler.total_duration
        while not stop.is_set():
            elapsed = self.elapsed()
            if elapsed >= total:
                break
            self.resize(self.scheduler.users_at(elapsed))
            # Wake at the next stage boundary so a drop is applied on time.
            boundary = self.scheduler.next_boundary(elapsed)
            wait = min(self._tick, boundary - elapsed, total - elapsed)
            if await _wait(stop, max(0.0, wait)):
                break

    def resize(self, desired: int) -> None:
        """Spawn or retire users until the active count matches ``desired``."""
        active = sorted(
            (
                u
                for u in self._users.values()
                if u.state in (VUState.SPAWNING, VUState.RUNNING)
            ),
            key=lambda u: u.id,
        )
        if desired > len(active):
            needed = desired - len(active)
            granted = self._ceiling.try_acquire(needed)
            for _ in range(granted):
                vu = self._new_user()
                vu.task = asyncio.create_task(
                    self._user_loop(vu), name=f"{self.name}-vu{vu.id}"
                )
            self._note_shortfall(needed, granted, "global_ceiling")
        else:
            self._short = False
            for vu in active[: len(active) - desired]:
                self._retire(vu)

    def _new_user(self) -> VirtualUser:
        vu = VirtualUser(id=self._next_id, rng=self._rng_for(f"vu{self._next_id}"))
        self._next_id += 1
        self._users[vu.id] = vu
        self.stats.spawned += 1
        self.stats.peak_users = max(self.stats.peak_users, self.allocated_users)
        logger.debug("Scenario %s spawned vu %d", self.name, vu.id)
        return vu

    def _retire(self, vu: VirtualUser) -> None:
        vu.state = VUState.RETIRING
        vu.wake.set()
        self.stats.retired += 1
        logger.debug("Scenario %s retiring vu %d", self.name, vu.id)
        if vu.in_iteration and vu.task is not None:
            watchdog = asyncio.create_task(
                self._enforce_grace(vu, self.spec.graceful_ramp_down)
            )
            self._watchdogs.add(watchdog)
            watchdog.add_done_callback(self._watchdogs.discard)

    async def _enforce_grace(self, vu: VirtualUser, grace: float) -> None:
        if vu.task is None:
            return
        await asyncio.wait({vu.task}, timeout=grace)
        self._truncate(vu, grace)

    def _truncate(self, vu: VirtualUser, grace: float) -> None:
        if vu.task is None or vu.task.done() or vu.truncated:
            return
        vu.truncated = True
        if vu.in_iteration:
            truncation = ForcedTruncation(
                f"vu {vu.id} in scenario {self.name} cancelled after {grace:g}s grace",
                scenario=self.name,
                vu_id=vu.id,
                grace_seconds=grace,
            )
            self.truncations.append(truncation)
            self.stats.truncated_iterations += 1
            self._recorder.record(
                TRUNCATED_ITERATIONS,
                MetricKind.COUNTER,
                1,
                {"behavior": vu.behavior or ""},
            )
            logger.warning("Forced truncation: %s", truncation.message)
        vu.task.cancel()

    async def _user_loop(self, vu: VirtualUser) -> None:
        if vu.state is VUState.SPAWNING:
            vu.state = VUState.RUNNING
        try:
            while vu.state is VUState.RUNNING and not self._stopping:
                if self._surplus(vu):
                    self._retire(vu)
                    break
                await self._iterate(vu)
                if vu.state is not VUState.RUNNING or self._stopping:
                    break
                pause = self._think_time()
                if pause > 0:
                    await _wait(vu.wake, pause)
        finally:
            vu.in_iteration = False
            self._release(vu)

    def _surplus(self, vu: VirtualUser) -> bool:
        """
        True if the schedule no longer holds ``vu`` right now.

        Checked before every iteration so a target drop between supervisor
        ticks stops new iterations at once; the oldest ids leave first,
        as in ``resize``.
        """
        if self._started_at is None or self.spec.executor is ExecutorKind.ARRIVAL_RATE:
            return False
        desired = self.scheduler.users_at(self.elapsed())
        active = sorted(
            u.id
            for u in self._users.values()
            if u.state in (VUState.SPAWNING, VUState.RUNNING)
        )
        excess = len(active) - desired
        return excess > 0 and vu.id in active[:excess]

    def _release(self, vu: VirtualUser) -> None:
        if vu.state is VUState.STOPPED:
            return
        vu.state = VUState.STOPPED
        self._ceiling.release(1)
        logger.debug("Scenario %s vu %d stopped", self.name, vu.id)

    def _think_time(self) -> float:
        think = self.spec.think_time
        if think.max_seconds <= 0:
            return 0.0
        if think.max_seconds == think.min_seconds:
            return think.min_seconds
        return self._think_rng.uniform(think.min_seconds, think.max_seconds)

    # -- shared iteration ---------------------------------------------------

    async def _iterate(self, vu: VirtualUser) -> bool:
        behavior = self._dispatcher.select(vu.rng)
        vu.behavior = behavior.name
        recorder = self._recorder.child({"behavior": behavior.name})
        ctx = IterationContext(
            scenario=self.name,
            vu_id=vu.id,
            iteration=vu.iterations,
            behavior=behavior.name,
            env=self._env,
            data=self._data,
            rng=vu.rng,
            recorder=recorder,
        )
        started = self._clock()
        vu.in_iteration = True
        try:
            ok = await self._dispatcher.execute(behavior, ctx)
        finally:
            vu.in_iteration = False
        duration_ms = (self._clock() - started) * 1000

        vu.iterations += 1
        self.stats.iterations += 1
        if not ok:
            self.stats.failed_iterations += 1
        recorder.record(ITERATIONS, MetricKind.COUNTER, 1)
        recorder.record(ITERATION_DURATION, MetricKind.TREND, duration_ms)
        return ok

    # -- arrival-rate -------------------------------------------------------

    async def _supervise_arrivals(self, stop: asyncio.Event) -> None:
        self._preallocate()
        total = self.scheduler.total_duration
        started = 0
        while not stop.is_set():
            elapsed = min(self.elapsed(), total)
            due = int(math.floor(self.scheduler.iterations_due(elapsed) + _EPSILON))
            if due > started:
                self._start_arrivals(due - started)
                started = due
            if elapsed >= total:
                break
            if await _wait(stop, min(self._tick, max(0.0, total - elapsed))):
                break

    def _preallocate(self) -> None:
        wanted = self.spec.pre_allocated_vus
        granted = self._ceiling.try_acquire(wanted)
        for _ in range(granted):
            vu = self._new_user()
            vu.state = VUState.RUNNING
            self._idle.append(vu)
        self._note_shortfall(wanted, granted, "global_ceiling")

    def _start_arrivals(self, count: int) -> None:
        max_vus = self.spec.max_vus or self.spec.pre_allocated_vus
        launched = 0
        reason = "max_vus"
        for _ in range(count):
            if self._idle:
                vu = self._idle.popleft()
            elif self.allocated_users >= max_vus:
                break
            elif self._ceiling.try_acquire(1) == 0:
                reason = "global_ceiling"
                break
            else:
                vu = self._new_user()
                vu.state = VUState.RUNNING
            vu.task = asyncio.create_task(
                self._arrival_iteration(vu), name=f"{self.name}-vu{vu.id}"
            )
            launched += 1

        dropped = count - launched
        if dropped:
            self.stats.dropped_iterations += dropped
            self._recorder.record(DROPPED_ITERATIONS, MetricKind.COUNTER, dropped)
        self._note_shortfall(count, launched, reason)

    async def _arrival_iteration(self, vu: VirtualUser) -> None:
        try:
            await self._iterate(vu)
        finally:
            if not self._stopping and not vu.truncated:
                self._idle.append(vu)

    # -- deficits and shutdown ----------------------------------------------

    def _note_shortfall(self, requested: int, granted: int, reason: str) -> None:
        if granted >= requested:
            self._short = False
            return
        self._recorder.record(SCHEDULING_DEFICITS, MetricKind.COUNTER, 1)
        if self._short:
            return
        # One entry per shortfall episode; the counter tracks every tick.
        self._short = True
        deficit = SchedulingDeficit(
            f"scenario {self.name} wanted {requested}, got {granted} ({reason})",
            scenario=self.name,
            requested=requested,
            granted=granted,
            reason=reason,
        )
        self.deficits.append(deficit)
        logger.warning("Scheduling deficit: %s", deficit.message)

    async def shutdown(self) -> None:
        """Stop every user: no new iterations, ``graceful_stop`` for in-flight ones."""
        self._stopping = True
        live = [u for u in self._users.values() if u.state is not VUState.STOPPED]
        for vu in live:
            vu.state = VUState.RETIRING
            vu.wake.set()

        tasks = {u.task for u in live if u.task is not None and not u.task.done()}
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.spec.graceful_stop)
            for vu in live:
                if vu.task in pending:
                    self._truncate(vu, self.spec.graceful_stop)
            await asyncio.gather(*pending, return_exceptions=True)

        for watchdog in list(self._watchdogs):
            watchdog.cancel()
        await asyncio.gather(*self._watchdogs, return_exceptions=True)

        # Covers idle arrival-rate users and users cancelled before their first step.
        for vu in self._users.values():
            self._release(vu)
        self._idle.clear()


async def _wait(event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True if the event fired first."""
    if event.is_set():
        return True
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(event.wait(), timeout=seconds)
    return event.is_set()
