"""
Weighted behavior selection and execution for one scenario.

Each iteration makes one independent draw: a uniform number in
``[0, total_weight)`` located in the cumulative weights with bisect. Over
many draws the frequency of behavior i converges to ``w_i / sum(w)``;
zero-weight behaviors occupy an empty interval and are never picked.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any, Callable, List, Sequence

from loadstage.exceptions import ConfigurationError, ProbeFailure
from loadstage.metrics.buckets import MetricKind
from loadstage.metrics.builtin import (
    CHECKS,
    FAILED_ITERATIONS,
    PROBE_DURATION,
    PROBE_FAILED,
    PROBES,
)
from loadstage.probe import IterationContext, ProbeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Behavior:
    """A named, weighted unit of work backed by a probe callable."""

    name: str
    weight: float
    probe: Callable[..., Any]


def _is_async_callable(obj: Any) -> bool:
    if inspect.iscoroutinefunction(obj):
        return True
    call = getattr(obj, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


async def invoke(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` without blocking the loop: await coroutines, thread sync code."""
    if _is_async_callable(fn):
        output = await fn(*args)
    else:
        output = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(output):
        output = await output
    return output


class BehaviorDispatcher:
    """
    Picks a behavior per iteration and runs its probe.

    Raises:
        ConfigurationError: Empty behavior list, duplicate names, negative
            weights, or weights summing to zero.
    """

    def __init__(self, behaviors: Sequence[Behavior]) -> None:
        if not behaviors:
            raise ConfigurationError("behavior set must contain at least one behavior")
        names = [b.name for b in behaviors]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(
                f"duplicate behavior names: {', '.join(duplicates)}",
                details={"behaviors": duplicates},
            )
        for behavior in behaviors:
            if behavior.weight < 0:
                raise ConfigurationError(
                    f"behavior {behavior.name!r} has a negative weight",
                    details={"behavior": behavior.name, "weight": behavior.weight},
                )
            if not callable(behavior.probe):
                raise ConfigurationError(
                    f"behavior {behavior.name!r} probe is not callable",
                    details={"behavior": behavior.name},
                )

        self._behaviors = list(behaviors)
        self._cumulative: List[float] = []
        total = 0.0
        for behavior in self._behaviors:
            total += behavior.weight
            self._cumulative.append(total)
        if total <= 0:
            raise ConfigurationError(
                "behavior weights must sum to a positive value",
                details={"behaviors": names},
            )
        self._total = total

    @property
    def behaviors(self) -> List[Behavior]:
        return list(self._behaviors)

    @property
    def total_weight(self) -> float:
        return self._total

    def select(self, rng: random.Random) -> Behavior:
        """One independent weighted draw."""
        point = rng.random() * self._total
        index = bisect_right(self._cumulative, point)
        # rng.random() < 1.0, but float rounding can land exactly on the total.
        if index >= len(self._behaviors):
            index = len(self._behaviors) - 1
            while self._behaviors[index].weight == 0:
                index -= 1
        return self._behaviors[index]

    async def execute(self, behavior: Behavior, ctx: IterationContext) -> bool:
        """
        Run the behavior's probe once and record its samples.

        Probe errors never propagate: ProbeFailure, a failing result or any
        other exception counts one ``failed_iterations`` and returns False.
        Cancellation does propagate.

        Returns:
            True if every returned result was ok.
        """
        recorder = ctx.recorder
        try:
            results = _as_results(await invoke(behavior.probe, ctx))
        except ProbeFailure as exc:
            recorder.record(PROBES, MetricKind.COUNTER, 1)
            recorder.record(PROBE_FAILED, MetricKind.RATE, 1)
            if exc.duration_ms is not None:
                recorder.record(PROBE_DURATION, MetricKind.TREND, exc.duration_ms)
            recorder.record(FAILED_ITERATIONS, MetricKind.COUNTER, 1)
            logger.debug(
                "Probe failure in %s/%s vu=%d: %s",
                ctx.scenario,
                behavior.name,
                ctx.vu_id,
                exc.message,
            )
            return False
        except Exception as exc:
            recorder.record(PROBES, MetricKind.COUNTER, 1)
            recorder.record(PROBE_FAILED, MetricKind.RATE, 1)
            recorder.record(FAILED_ITERATIONS, MetricKind.COUNTER, 1)
            logger.warning(
                "Probe %s raised %s in scenario %s: %s",
                behavior.name,
                exc.__class__.__name__,
                ctx.scenario,
                exc,
            )
            return False

        ok = True
        for result in results:
            tags = result.tags or None
            recorder.record(PROBES, MetricKind.COUNTER, 1, tags)
            recorder.record(PROBE_DURATION, MetricKind.TREND, result.duration_ms, tags)
            recorder.record(PROBE_FAILED, MetricKind.RATE, 0 if result.ok else 1, tags)
            for check, passed in result.checks.items():
                recorder.record(
                    CHECKS, MetricKind.RATE, 1 if passed else 0, {**result.tags, "check": check}
                )
            ok = ok and result.ok
        if not ok:
            recorder.record(FAILED_ITERATIONS, MetricKind.COUNTER, 1)
        return ok


def _as_results(output: Any) -> List[ProbeResult]:
    if output is None:
        return []
    if isinstance(output, ProbeResult):
        return [output]
    if isinstance(output, (list, tuple)) and all(
        isinstance(item, ProbeResult) for item in output
    ):
        return list(output)
    raise TypeError(
        f"probe returned {type(output).__name__}, expected ProbeResult or a sequence of them"
    )
