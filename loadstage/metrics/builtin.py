"""Metric names every run records on its own."""

from __future__ import annotations

from typing import Dict

from loadstage.metrics.buckets import MetricKind
from loadstage.metrics.registry import MetricsRegistry

VUS = "vus"
VUS_MAX = "vus_max"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
FAILED_ITERATIONS = "failed_iterations"
TRUNCATED_ITERATIONS = "truncated_iterations"
DROPPED_ITERATIONS = "dropped_iterations"
SCHEDULING_DEFICITS = "scheduling_deficits"
PROBES = "probes"
PROBE_DURATION = "probe_duration"
PROBE_FAILED = "probe_failed"
CHECKS = "checks"
GROUP_DURATION = "group_duration"

BUILTIN_METRICS: Dict[str, MetricKind] = {
    VUS: MetricKind.GAUGE,
    VUS_MAX: MetricKind.GAUGE,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    FAILED_ITERATIONS: MetricKind.COUNTER,
    TRUNCATED_ITERATIONS: MetricKind.COUNTER,
    DROPPED_ITERATIONS: MetricKind.COUNTER,
    SCHEDULING_DEFICITS: MetricKind.COUNTER,
    PROBES: MetricKind.COUNTER,
    PROBE_DURATION: MetricKind.TREND,
    PROBE_FAILED: MetricKind.RATE,
    CHECKS: MetricKind.RATE,
    GROUP_DURATION: MetricKind.TREND,
}


def declare_builtin_metrics(registry: MetricsRegistry) -> None:
    for name, kind in BUILTIN_METRICS.items():
        registry.declare(name, kind)
