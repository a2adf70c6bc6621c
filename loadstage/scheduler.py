"""
Stage schedules: turn a scenario's stage list into a target function of time.

Every scenario owns one Scheduler and evaluates it against its own elapsed
time (run clock minus the scenario's start offset), so schedules never
depend on each other.

Usage:
    scheduler = Scheduler.from_spec(spec)
    scheduler.concurrency(12.5)   # interpolated target users
    scheduler.users_at(12.5)      # integer users the runner should hold
    scheduler.iterations_due(3.0) # arrival-rate: iterations owed so far
"""

from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from loadstage.models import ExecutorKind, ScenarioSpec, Stage

# Keeps exact stage boundaries from losing a user to float error.
_EPSILON = 1e-9


@dataclass(frozen=True)
class Waypoint:
    """Target value reached at elapsed time ``at`` (seconds)."""

    at: float
    value: float


def build_waypoints(start_value: float, stages: Sequence[Stage]) -> List[Waypoint]:
    """Cumulative (time, target) pairs starting at (0, start_value)."""
    points = [Waypoint(0.0, max(0.0, start_value))]
    elapsed = 0.0
    for stage in stages:
        elapsed += stage.duration
        points.append(Waypoint(elapsed, max(0.0, stage.target)))
    return points


class Scheduler:
    """
    Piecewise-linear schedule for one scenario.

    Interpolation at any instant only uses the two waypoints bounding it;
    a zero-length stage is an instantaneous step and the later waypoint
    wins at that instant. Outside ``[0, total_duration]`` the target is 0.
    """

    def __init__(
        self,
        executor: ExecutorKind,
        waypoints: Sequence[Waypoint],
        *,
        time_unit: float = 1.0,
    ) -> None:
        if not waypoints:
            raise ValueError("schedule needs at least one waypoint")
        self._executor = executor
        self._points = list(waypoints)
        self._times = [p.at for p in self._points]
        self._time_unit = time_unit

    @classmethod
    def from_spec(cls, spec: ScenarioSpec) -> "Scheduler":
        if spec.executor is ExecutorKind.CONSTANT:
            vus = float(spec.vus or 0)
            duration = float(spec.duration or 0.0)
            points = [Waypoint(0.0, vus), Waypoint(duration, vus)]
            return cls(spec.executor, points)
        if spec.executor is ExecutorKind.ARRIVAL_RATE:
            points = build_waypoints(spec.start_rate, spec.stages)
            return cls(spec.executor, points, time_unit=spec.time_unit)
        return cls(spec.executor, build_waypoints(spec.start_vus, spec.stages))

    @property
    def executor(self) -> ExecutorKind:
        return self._executor

    @property
    def waypoints(self) -> Tuple[Waypoint, ...]:
        return tuple(self._points)

    @property
    def total_duration(self) -> float:
        return self._times[-1]

    def next_boundary(self, t: float) -> float:
        """First waypoint time strictly after t (``total_duration`` at the end)."""
        idx = bisect_right(self._times, t)
        if idx >= len(self._times):
            return self.total_duration
        return self._times[idx]

    def _value(self, t: float) -> float:
        if t < 0 or t > self.total_duration:
            return 0.0
        idx = bisect_right(self._times, t)
        if idx >= len(self._points):
            return self._points[-1].value
        left = self._points[idx - 1]
        if left.at == t:
            return left.value
        right = self._points[idx]
        ratio = (t - left.at) / (right.at - left.at)
        return max(0.0, left.value + ratio * (right.value - left.value))

    def concurrency(self, t: float) -> float:
        """Target concurrency at elapsed time t (constant/ramping executors)."""
        if self._executor is ExecutorKind.ARRIVAL_RATE:
            raise ValueError("arrival-rate schedules expose arrival_rate()")
        return self._value(t)

    def users_at(self, t: float) -> int:
        """Whole users the runner should hold at elapsed time t."""
        return int(math.floor(self.concurrency(t) + _EPSILON))

    def arrival_rate(self, t: float) -> float:
        """Requested iterations per second at elapsed time t."""
        if self._executor is not ExecutorKind.ARRIVAL_RATE:
            raise ValueError("only arrival-rate schedules have an arrival rate")
        return self._value(t) / self._time_unit

    def iterations_due(self, t: float) -> float:
        """
        Iterations that should have started by elapsed time t.

        Exact integral of the arrival rate: each segment contributes the
        area of its trapezoid.
        """
        if self._executor is not ExecutorKind.ARRIVAL_RATE:
            raise ValueError("only arrival-rate schedules have iterations due")
        if t <= 0:
            return 0.0
        t = min(t, self.total_duration)
        total = 0.0
        for left, right in zip(self._points, self._points[1:]):
            if left.at >= t:
                break
            span = right.at - left.at
            if span <= 0:
                continue
            end = min(right.at, t)
            end_value = left.value + (end - left.at) / span * (right.value - left.value)
            total += (left.value + end_value) / 2.0 * (end - left.at)
        return total / self._time_unit
