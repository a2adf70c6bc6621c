"""
LoadTest: validates a RunConfig, runs every scenario concurrently and
returns the final RunReport.

Everything that can be rejected is rejected in the constructor, before any
virtual user starts: scenario schedules, behavior sets, probe references,
custom metric kinds and threshold expressions.

Lifecycle:
    setup (once) -> every scenario concurrently -> teardown (once)

    Setup's return value is shared with every iteration as ``ctx.data`` and
    handed to teardown. A failing setup raises LifecycleError before any
    virtual user starts; a failing teardown is listed in ``report.errors``
    and fails the run.

Usage:
    from loadstage import LoadTest, load_config

    test = LoadTest(load_config("runs/checkout.json"))
    report = await test.run()
    print(report.passed, report.thresholds)

    # or, from sync code
    report = loadstage.run(config)
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from loadstage.config import resolve_probe
from loadstage.dispatcher import Behavior, BehaviorDispatcher, invoke
from loadstage.exceptions import ConfigurationError, LifecycleError
from loadstage.limiter import UserCeiling
from loadstage.metrics.buckets import MetricKind
from loadstage.metrics.builtin import VUS, VUS_MAX, declare_builtin_metrics
from loadstage.metrics.registry import MetricsRegistry
from loadstage.models import RunConfig
from loadstage.probe import LifecycleContext
from loadstage.runner import ScenarioRunner
from loadstage.thresholds import ThresholdEvaluator, ThresholdResult

logger = logging.getLogger(__name__)

BehaviorSet = Union[BehaviorDispatcher, Sequence[Behavior]]


class ScenarioSummary(BaseModel):
    """Per-scenario totals kept by its runner."""

    model_config = ConfigDict(extra="forbid")

    executor: str
    spawned: int = 0
    retired: int = 0
    peak_users: int = 0
    iterations: int = 0
    failed_iterations: int = 0
    truncated_iterations: int = 0
    dropped_iterations: int = 0


class RunReport(BaseModel):
    """
    Final result of a run.

    Attributes:
        passed: True when every threshold passed (or reported no data)
            and teardown did not fail.
        elapsed_seconds: Wall-clock duration of the run.
        metrics: {metric: {"kind": ..., "buckets": {tag filter: stats}}};
            the untagged bucket is keyed by "".
        thresholds: Per-threshold breakdown.
        scenarios: Per-scenario totals.
        deficits: Scheduling deficits observed during the run.
        truncations: Iterations cancelled at stop time.
        aborted: A threshold with abort_on_fail stopped the run early.
        timed_out: The run-level timeout stopped the run.
        errors: Lifecycle errors (currently teardown failures).
    """

    model_config = ConfigDict(extra="forbid")

    passed: bool
    elapsed_seconds: float
    metrics: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    thresholds: List[ThresholdResult] = Field(default_factory=list)
    scenarios: Dict[str, ScenarioSummary] = Field(default_factory=dict)
    deficits: List[Dict[str, Any]] = Field(default_factory=list)
    truncations: List[Dict[str, Any]] = Field(default_factory=list)
    aborted: bool = False
    timed_out: bool = False
    tags: Dict[str, str] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def failed_thresholds(self) -> List[ThresholdResult]:
        return [result for result in self.thresholds if not result.passed]

    def to_log_dict(self) -> Dict[str, Any]:
        """
        Serialize to a dict suitable for JSON logging.

        Returns a stable schema for log parsing:
        {"type": "loadstage.run_report.v1", ...fields...}
        """
        data = self.model_dump(mode="json")
        data["type"] = "loadstage.run_report.v1"
        return data


class LoadTest:
    """
    One run of a RunConfig.

    Args:
        config: Validated run description.
        behavior_sets: Behavior sets supplied in code, by name. These take
            precedence over ``config.behavior_sets``.
        probes: Probe callables by reference string; consulted before
            importing a ``module:attr`` reference from a behavior set.
        setup: Callable run once before any user starts; overrides
            ``config.setup``.
        teardown: Callable run once after every scenario stops; overrides
            ``config.teardown``.
        clock: Monotonic clock (seconds).

    Raises:
        ConfigurationError: If any part of the run cannot be built.
    """

    def __init__(
        self,
        config: RunConfig,
        behavior_sets: Optional[Mapping[str, BehaviorSet]] = None,
        probes: Optional[Mapping[str, Callable[..., Any]]] = None,
        *,
        setup: Optional[Callable[..., Any]] = None,
        teardown: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock

        self.registry = MetricsRegistry(
            global_tags=config.tags, track_tags=config.track_tags, clock=clock
        )
        declare_builtin_metrics(self.registry)
        for name, kind in config.metrics.items():
            self.registry.declare(name, kind)

        self.evaluator = ThresholdEvaluator(config.thresholds)
        self.evaluator.validate(self.registry)

        self.ceiling = UserCeiling(config.max_vus)
        probes = probes or {}
        dispatchers = self._build_dispatchers(behavior_sets or {}, probes)
        self._setup = setup or _resolve_hook(config.setup, probes, "setup")
        self._teardown = teardown or _resolve_hook(config.teardown, probes, "teardown")

        self.runners: List[ScenarioRunner] = []
        for name, spec in config.scenarios.items():
            dispatcher = dispatchers.get(spec.behaviors)
            if dispatcher is None:
                raise ConfigurationError(
                    f"scenario {name!r} references unknown behavior set {spec.behaviors!r}",
                    details={"scenario": name, "behaviors": spec.behaviors},
                )
            self.runners.append(
                ScenarioRunner(
                    spec,
                    dispatcher,
                    self.registry,
                    self.ceiling,
                    env=config.env,
                    seed=config.seed,
                    tick_interval=config.tick_interval,
                    clock=clock,
                )
            )

        self._aborted = False
        self._timed_out = False
        self._errors: List[LifecycleError] = []

    def _build_dispatchers(
        self,
        behavior_sets: Mapping[str, BehaviorSet],
        probes: Mapping[str, Callable[..., Any]],
    ) -> Dict[str, BehaviorDispatcher]:
        dispatchers: Dict[str, BehaviorDispatcher] = {}
        for set_name, refs in self.config.behavior_sets.items():
            if set_name in behavior_sets:
                continue
            behaviors = [
                Behavior(
                    name=ref.name,
                    weight=ref.weight,
                    probe=probes.get(ref.probe) or resolve_probe(ref.probe),
                )
                for ref in refs
            ]
            dispatchers[set_name] = BehaviorDispatcher(behaviors)
        for set_name, value in behavior_sets.items():
            if isinstance(value, BehaviorDispatcher):
                dispatchers[set_name] = value
            else:
                dispatchers[set_name] = BehaviorDispatcher(list(value))
        return dispatchers

    @property
    def aborted(self) -> bool:
        return self._aborted

    async def run(self) -> RunReport:
        """
        Run setup, every scenario to completion (or stop), then teardown,
        and evaluate thresholds.

        Raises:
            LifecycleError: If setup fails; no virtual user has started.
            Exception: The first error raised by a scenario runner, after
                every other scenario has been stopped and shut down.
        """
        try:
            data = await self._run_setup()
        except LifecycleError:
            await self._close_probes()
            raise

        stop = asyncio.Event()
        started = self._clock()
        self.registry.mark_started()
        logger.info(
            "Run started: scenarios=%s, max_vus=%s, seed=%s",
            ",".join(self.config.scenarios),
            self.config.max_vus,
            self.config.seed,
        )

        helpers = [asyncio.create_task(self._monitor(stop))]
        if self.config.timeout is not None:
            helpers.append(asyncio.create_task(self._expire(stop, self.config.timeout)))
        if self.config.threshold_check_interval is not None:
            helpers.append(
                asyncio.create_task(
                    self._checkpoints(stop, self.config.threshold_check_interval)
                )
            )

        try:
            results = await asyncio.gather(
                *(self._run_scenario(runner, stop, data) for runner in self.runners),
                return_exceptions=True,
            )
        finally:
            stop.set()
            for task in helpers:
                task.cancel()
            await asyncio.gather(*helpers, return_exceptions=True)
            await self._run_teardown(data)
            await self._close_probes()

        for result in results:
            if isinstance(result, BaseException):
                raise result

        self._record_users()
        self.registry.mark_stopped()
        return self._report(self._clock() - started)

    async def _run_scenario(
        self, runner: ScenarioRunner, stop: asyncio.Event, data: Any
    ) -> Any:
        try:
            return await runner.run(stop, data)
        except Exception:
            logger.exception("Scenario %s failed, stopping the run", runner.name)
            stop.set()
            raise

    async def _run_setup(self) -> Any:
        if self._setup is None:
            return None
        ctx = LifecycleContext("setup", self.config.env, self.registry.scoped())
        try:
            data = await invoke(self._setup, ctx)
        except Exception as exc:
            logger.error("Setup failed: %s: %s", exc.__class__.__name__, exc)
            raise LifecycleError(
                f"setup failed: {exc.__class__.__name__}: {exc}",
                stage="setup",
            ) from exc
        logger.info("Setup finished")
        return data

    async def _run_teardown(self, data: Any) -> None:
        if self._teardown is None:
            return
        ctx = LifecycleContext("teardown", self.config.env, self.registry.scoped(), data)
        try:
            await invoke(self._teardown, ctx)
        except Exception as exc:
            error = LifecycleError(
                f"teardown failed: {exc.__class__.__name__}: {exc}",
                stage="teardown",
            )
            self._errors.append(error)
            logger.error("Teardown failed: %s: %s", exc.__class__.__name__, exc)
            return
        logger.info("Teardown finished")

    async def _monitor(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self._record_users()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.config.tick_interval)

    def _record_users(self) -> None:
        # Per-scenario samples first so the untagged bucket ends on the run total.
        active = allocated = 0
        for runner in self.runners:
            runner.recorder.record(VUS, MetricKind.GAUGE, runner.active_users)
            runner.recorder.record(VUS_MAX, MetricKind.GAUGE, runner.allocated_users)
            active += runner.active_users
            allocated += runner.allocated_users
        self.registry.record(VUS, MetricKind.GAUGE, active)
        self.registry.record(VUS_MAX, MetricKind.GAUGE, allocated)

    async def _expire(self, stop: asyncio.Event, timeout: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=timeout)
        if not stop.is_set():
            self._timed_out = True
            logger.warning("Run timeout of %.1fs reached, stopping all scenarios", timeout)
            stop.set()

    async def _checkpoints(self, stop: asyncio.Event, interval: float) -> None:
        while not stop.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)
            if stop.is_set():
                return
            report = self.evaluator.evaluate(self.registry)
            if report.should_abort:
                self._aborted = True
                logger.warning(
                    "Aborting run: threshold %s %s failed at checkpoint",
                    report.failures[0].selector,
                    report.failures[0].expression,
                )
                stop.set()

    async def _close_probes(self) -> None:
        seen = set()
        for runner in self.runners:
            for behavior in runner.dispatcher.behaviors:
                probe = behavior.probe
                if id(probe) in seen:
                    continue
                seen.add(id(probe))
                aclose = getattr(probe, "aclose", None)
                if aclose is not None and inspect.iscoroutinefunction(aclose):
                    await aclose()

    def _report(self, elapsed: float) -> RunReport:
        threshold_report = self.evaluator.evaluate(self.registry)
        scenarios = {
            runner.name: ScenarioSummary(
                executor=runner.spec.executor.value,
                spawned=runner.stats.spawned,
                retired=runner.stats.retired,
                peak_users=runner.stats.peak_users,
                iterations=runner.stats.iterations,
                failed_iterations=runner.stats.failed_iterations,
                truncated_iterations=runner.stats.truncated_iterations,
                dropped_iterations=runner.stats.dropped_iterations,
            )
            for runner in self.runners
        }
        report = RunReport(
            passed=threshold_report.passed and not self._errors,
            elapsed_seconds=elapsed,
            metrics=self.registry.snapshot(),
            thresholds=threshold_report.results,
            scenarios=scenarios,
            deficits=[d.to_dict() for r in self.runners for d in r.deficits],
            truncations=[t.to_dict() for r in self.runners for t in r.truncations],
            aborted=self._aborted,
            timed_out=self._timed_out,
            tags=self.registry.global_tags,
            errors=[e.to_dict() for e in self._errors],
        )
        logger.info(
            "Run finished: passed=%s, elapsed=%.1fs, thresholds=%d/%d passed",
            report.passed,
            elapsed,
            sum(1 for r in report.thresholds if r.passed),
            len(report.thresholds),
        )
        return report


def run(
    config: RunConfig,
    behavior_sets: Optional[Mapping[str, BehaviorSet]] = None,
    probes: Optional[Mapping[str, Callable[..., Any]]] = None,
    *,
    setup: Optional[Callable[..., Any]] = None,
    teardown: Optional[Callable[..., Any]] = None,
) -> RunReport:
    """Synchronous wrapper around LoadTest.run()."""
    test = LoadTest(config, behavior_sets, probes, setup=setup, teardown=teardown)
    return asyncio.run(test.run())


def _resolve_hook(
    reference: Optional[str],
    probes: Mapping[str, Callable[..., Any]],
    kind: str,
) -> Optional[Callable[..., Any]]:
    if reference is None:
        return None
    return probes.get(reference) or resolve_probe(reference, kind)
