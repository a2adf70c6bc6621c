"""
Threshold evaluation: pass/fail expressions over aggregated metrics.

Each threshold names a metric (optionally filtered by tag equality) and a
comparison such as ``p(95)<1000``, ``rate<0.05`` or ``count>100``.
Comparisons are applied exactly as written, so ``p(95)<1000`` fails when
the observed p95 is exactly 1000.

Usage:
    evaluator = ThresholdEvaluator(config.thresholds)
    evaluator.validate(registry)      # validates names, declares sub-buckets
    report = evaluator.evaluate(registry)
    for failed in report.failures:
        print(failed.selector, failed.expression, failed.observed)
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from loadstage.exceptions import ConfigurationError
from loadstage.metrics.buckets import MetricKind, percentile_key, supports_stat
from loadstage.metrics.registry import MetricsRegistry, TagSet, format_tags, parse_selector
from loadstage.models import ThresholdSpec

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"^\s*(?P<stat>p\(\s*[\d.]+\s*\)|[a-z]+)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<target>[-+]?(?:\d+\.?\d*|\.\d+)(?:e[-+]?\d+)?)\s*$",
    re.IGNORECASE,
)

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class ParsedThreshold:
    """A threshold split into metric, tag filter, statistic, operator and target."""

    spec: ThresholdSpec
    metric: str
    tags: TagSet
    stat: str
    op: str
    target: float

    def compare(self, observed: float) -> bool:
        return OPERATORS[self.op](observed, self.target)


def parse_expression(expression: str) -> tuple:
    """
    Parse ``stat op number``.

    Returns:
        (stat, op, target) with percentile stats normalized to ``p(N)``.

    Raises:
        ConfigurationError: If the expression is malformed.
    """
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(
            f"invalid threshold expression: {expression!r}",
            details={"expression": expression},
        )
    stat = match.group("stat").lower().replace(" ", "")
    if stat.startswith("p("):
        try:
            stat = percentile_key(float(stat[2:-1]))
        except ValueError:
            raise ConfigurationError(
                f"invalid percentile in threshold: {expression!r}",
                details={"expression": expression},
            ) from None
    return stat, match.group("op"), float(match.group("target"))


def parse_threshold(spec: ThresholdSpec) -> ParsedThreshold:
    metric, tags = parse_selector(spec.selector)
    stat, op, target = parse_expression(spec.expression)
    return ParsedThreshold(
        spec=spec, metric=metric, tags=tags, stat=stat, op=op, target=target
    )


class ThresholdResult(BaseModel):
    """Outcome of one threshold expression."""

    model_config = ConfigDict(extra="forbid")

    selector: str
    expression: str
    metric: str
    tags: str = ""
    stat: str
    target: float
    observed: Optional[float] = None
    passed: bool
    no_data: bool = False
    abort_on_fail: bool = False


class ThresholdReport(BaseModel):
    """Per-threshold breakdown; the run passes only if every entry passes."""

    model_config = ConfigDict(extra="forbid")

    results: List[ThresholdResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> List[ThresholdResult]:
        return [result for result in self.results if not result.passed]

    @property
    def should_abort(self) -> bool:
        return any(r.abort_on_fail and not r.passed for r in self.results)


class ThresholdEvaluator:
    """
    Evaluates every threshold independently against a MetricsRegistry.

    A bucket without samples has no observed value: the threshold is
    reported with ``no_data=True`` and does not fail the run.
    """

    def __init__(self, specs: Sequence[ThresholdSpec]) -> None:
        self._parsed = [parse_threshold(spec) for spec in specs]

    @property
    def thresholds(self) -> List[ParsedThreshold]:
        return list(self._parsed)

    def validate(self, registry: MetricsRegistry) -> None:
        """
        Validate against declared metrics and register tag-filtered buckets.

        Raises:
            ConfigurationError: Unknown metric, or a statistic the metric's
                kind cannot provide (e.g. ``p(95)`` on a counter).
        """
        for parsed in self._parsed:
            kind = registry.kind_of(parsed.metric)
            if kind is None:
                raise ConfigurationError(
                    f"threshold references unknown metric {parsed.metric!r}",
                    details={"selector": parsed.spec.selector},
                )
            if not supports_stat(kind, parsed.stat):
                raise ConfigurationError(
                    f"{parsed.stat!r} is not available for {kind.value} metric "
                    f"{parsed.metric!r}",
                    details={
                        "selector": parsed.spec.selector,
                        "expression": parsed.spec.expression,
                    },
                )
            registry.declare_submetric(parsed.metric, parsed.tags)

    def evaluate(
        self, registry: MetricsRegistry, elapsed: Optional[float] = None
    ) -> ThresholdReport:
        if elapsed is None:
            elapsed = registry.elapsed()
        results = []
        for parsed in self._parsed:
            observed = registry.stat(parsed.metric, parsed.tags, parsed.stat, elapsed)
            if observed is None and registry.kind_of(parsed.metric) is MetricKind.COUNTER:
                # An untouched counter is a real zero, not missing data.
                observed = 0.0
            if observed is None:
                passed, no_data = True, True
            else:
                passed, no_data = parsed.compare(observed), False
            results.append(
                ThresholdResult(
                    selector=parsed.spec.selector,
                    expression=parsed.spec.expression,
                    metric=parsed.metric,
                    tags=format_tags(parsed.tags),
                    stat=parsed.stat,
                    target=parsed.target,
                    observed=observed,
                    passed=passed,
                    no_data=no_data,
                    abort_on_fail=parsed.spec.abort_on_fail,
                )
            )
        report = ThresholdReport(results=results)
        for failed in report.failures:
            logger.warning(
                "Threshold failed: %s %s (observed %s)",
                failed.selector,
                failed.expression,
                failed.observed,
            )
        return report
