"""
Tagged metrics for load runs.

Provides:
- MetricsRegistry: record(name, kind, value, tags) from many concurrent writers
- Aggregate buckets: counter/rate/trend/gauge statistics per tag filter
- Built-in metric names recorded by the runners

Usage:
    from loadstage.metrics import MetricsRegistry, MetricKind

    registry = MetricsRegistry(global_tags={"env": "staging"})
    registry.record("probe_duration", MetricKind.TREND, 120.5, {"label": "index"})

    stats = registry.snapshot()
    print(stats["probe_duration"]["buckets"][""]["p(95)"])
"""

from loadstage.metrics.buckets import (
    CounterBucket,
    GaugeBucket,
    MetricKind,
    RateBucket,
    TrendBucket,
    percentile_key,
)
from loadstage.metrics.builtin import BUILTIN_METRICS, declare_builtin_metrics
from loadstage.metrics.registry import (
    MetricsRegistry,
    Sample,
    ScopedRecorder,
    format_tags,
    normalize_tags,
    parse_selector,
)

__all__ = [
    "BUILTIN_METRICS",
    "CounterBucket",
    "GaugeBucket",
    "MetricKind",
    "MetricsRegistry",
    "RateBucket",
    "Sample",
    "ScopedRecorder",
    "TrendBucket",
    "declare_builtin_metrics",
    "format_tags",
    "normalize_tags",
    "parse_selector",
    "percentile_key",
]
