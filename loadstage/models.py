from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration to seconds.

    Accepts numbers (already seconds) and strings such as "250ms", "30s",
    "2m", "1h" or compound forms like "1m30s". Negative values are rejected.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("-"):
            raise ValueError(f"duration must not be negative: {value!r}")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"invalid duration: {value!r}") from None
    else:
        raise ValueError(f"invalid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {value!r}")
    return seconds


class ExecutorKind(str, Enum):
    """How a scenario turns its stages into load."""

    CONSTANT = "constant"
    RAMPING = "ramping"
    ARRIVAL_RATE = "arrival-rate"


class Stage(BaseModel):
    """
    One waypoint of a scenario's schedule.

    Attributes:
        duration: Seconds spent moving from the previous waypoint to this one.
        target: Concurrency reached at the end of the stage, or iterations per
            time unit for arrival-rate executors.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: float = Field(..., ge=0)
    target: float = Field(..., ge=0)

    @field_validator("duration", mode="before")
    @classmethod
    def _coerce_duration(cls, value: Any) -> float:
        return parse_duration(value)


class ThinkTime(BaseModel):
    """Uniform pause range between two iterations of one virtual user."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    min_seconds: float = Field(default=0.0, ge=0)
    max_seconds: float = Field(default=0.0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _from_shorthand(cls, data: Any) -> Any:
        # "1-3s" / 1.5 / "500ms" shorthands.
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return {"min_seconds": data, "max_seconds": data}
        if isinstance(data, str):
            text = data.strip().lower()
            if "-" in text.lstrip("-"):
                low, high = text.split("-", 1)
                unit = re.sub(r"[\d.]", "", high)
                if not re.sub(r"[\d.]", "", low):
                    low = low + unit
                return {
                    "min_seconds": parse_duration(low),
                    "max_seconds": parse_duration(high),
                }
            seconds = parse_duration(text)
            return {"min_seconds": seconds, "max_seconds": seconds}
        return data

    @field_validator("min_seconds", "max_seconds", mode="before")
    @classmethod
    def _coerce_seconds(cls, value: Any) -> float:
        return parse_duration(value)

    @model_validator(mode="after")
    def _ordered(self) -> "ThinkTime":
        if self.max_seconds < self.min_seconds:
            raise ValueError("think_time max_seconds must be >= min_seconds")
        return self


class ScenarioSpec(BaseModel):
    """
    Declarative description of one independently scheduled scenario.

    Executor-specific fields:
        constant: vus, duration
        ramping: start_vus, stages
        arrival-rate: start_rate, time_unit, pre_allocated_vus, max_vus, stages

    The name is filled in from the mapping key when loaded from a run file.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = ""
    executor: ExecutorKind = ExecutorKind.RAMPING

    vus: Optional[int] = Field(default=None, ge=0)
    duration: Optional[float] = Field(default=None, ge=0)

    start_vus: int = Field(default=0, ge=0)
    stages: List[Stage] = Field(default_factory=list)

    start_rate: float = Field(default=0.0, ge=0)
    time_unit: float = Field(default=1.0, gt=0)
    pre_allocated_vus: int = Field(default=1, ge=0)
    max_vus: Optional[int] = Field(default=None, ge=0)

    start_time: float = Field(default=0.0, ge=0)
    tags: Dict[str, str] = Field(default_factory=dict)
    behaviors: str = "default"
    think_time: ThinkTime = Field(default_factory=ThinkTime)
    graceful_ramp_down: float = Field(default=30.0, ge=0)
    graceful_stop: float = Field(default=30.0, ge=0)

    @field_validator(
        "duration",
        "time_unit",
        "start_time",
        "graceful_ramp_down",
        "graceful_stop",
        mode="before",
    )
    @classmethod
    def _coerce_durations(cls, value: Any) -> Any:
        if value is None:
            return value
        return parse_duration(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _executor_fields(self) -> "ScenarioSpec":
        if self.executor is ExecutorKind.CONSTANT:
            if self.vus is None or self.duration is None:
                raise ValueError("constant executor requires 'vus' and 'duration'")
            if self.stages:
                raise ValueError("constant executor does not take 'stages'")
        else:
            if not self.stages:
                raise ValueError(f"{self.executor.value} executor requires stages")
        if self.executor is ExecutorKind.ARRIVAL_RATE:
            if self.max_vus is None:
                raise ValueError("arrival-rate executor requires 'max_vus'")
            if self.max_vus < self.pre_allocated_vus:
                raise ValueError("max_vus must be >= pre_allocated_vus")
        return self

    @property
    def total_duration(self) -> float:
        """Seconds from the scenario's own start to its last stage boundary."""
        if self.executor is ExecutorKind.CONSTANT:
            return float(self.duration or 0.0)
        return sum(stage.duration for stage in self.stages)


class ThresholdSpec(BaseModel):
    """
    A pass/fail expression bound to a metric selector.

    Attributes:
        selector: Metric name with an optional tag filter, e.g.
            ``probe_duration{scenario:peak_hours}``.
        expression: Comparison such as ``p(95)<1000`` or ``rate<0.05``.
        abort_on_fail: Stop the run early when a checkpoint sees a failure.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    selector: str
    expression: str
    abort_on_fail: bool = False


class BehaviorRef(BaseModel):
    """A weighted behavior whose probe is referenced by import path."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    weight: float = Field(default=1.0, ge=0)
    probe: str


class RunConfig(BaseModel):
    """
    Complete declarative run description.

    Attributes:
        scenarios: Scenario name to spec.
        thresholds: Metric selector to expressions.
        tags: Run-level tags applied to every sample.
        max_vus: Global ceiling on concurrently active virtual users.
        seed: Seed for behavior selection and think-time jitter.
        env: Opaque string variables handed to probes.
        timeout: Run-level timeout; triggers a graceful stop of every scenario.
        tick_interval: Scheduler resolution in seconds.
        threshold_check_interval: Seconds between checkpoint evaluations.
        metrics: Custom metric declarations (name to kind).
        track_tags: Tag keys that get a sub-bucket per observed value.
        behavior_sets: Named behavior sets referenced by scenarios.
        setup: "module:attr" reference to a callable run once before any
            virtual user starts; its return value becomes ``ctx.data``.
        teardown: "module:attr" reference to a callable run once after every
            scenario has stopped, with the setup data.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    scenarios: Dict[str, ScenarioSpec]
    thresholds: List[ThresholdSpec] = Field(default_factory=list)
    tags: Dict[str, str] = Field(default_factory=dict)
    max_vus: Optional[int] = Field(default=None, ge=1)
    seed: Optional[int] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    tick_interval: float = Field(default=0.1, gt=0)
    threshold_check_interval: Optional[float] = Field(default=None, gt=0)
    metrics: Dict[str, str] = Field(default_factory=dict)
    track_tags: List[str] = Field(default_factory=lambda: ["scenario", "behavior"])
    behavior_sets: Dict[str, List[BehaviorRef]] = Field(default_factory=dict)
    setup: Optional[str] = None
    teardown: Optional[str] = None

    @field_validator("timeout", "tick_interval", "threshold_check_interval", mode="before")
    @classmethod
    def _coerce_durations(cls, value: Any) -> Any:
        if value is None:
            return value
        return parse_duration(value)

    @field_validator("scenarios", mode="before")
    @classmethod
    def _name_scenarios(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        named: Dict[str, Any] = {}
        for key, spec in value.items():
            if isinstance(spec, dict):
                spec = {**spec, "name": spec.get("name") or key}
            elif isinstance(spec, ScenarioSpec) and spec.name != key:
                spec = spec.model_copy(update={"name": key})
            named[key] = spec
        return named

    @field_validator("thresholds", mode="before")
    @classmethod
    def _expand_thresholds(cls, value: Any) -> Any:
        # k6-style mapping: {"selector": ["p(95)<500", {"threshold": ..., "abort_on_fail": true}]}
        if not isinstance(value, dict):
            return value
        specs: List[Dict[str, Any]] = []
        for selector, expressions in value.items():
            if isinstance(expressions, (str, dict)):
                expressions = [expressions]
            for item in expressions:
                if isinstance(item, dict):
                    specs.append(
                        {
                            "selector": selector,
                            "expression": item.get("threshold", ""),
                            "abort_on_fail": bool(item.get("abort_on_fail", False)),
                        }
                    )
                else:
                    specs.append({"selector": selector, "expression": item})
        return specs

    @field_validator("tags", "env", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _require_scenarios(self) -> "RunConfig":
        if not self.scenarios:
            raise ValueError("run requires at least one scenario")
        return self
