"""
Render a RunReport as a text summary or Prometheus exposition.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from loadstage.engine import RunReport
from loadstage.metrics.buckets import SUMMARY_PERCENTILES, percentile_key

_PROM_NAME = re.compile(r"[^a-zA-Z0-9_]")
_PROM_PREFIX = "loadstage_"


def format_summary(report: RunReport) -> str:
    """
    Format a run report as human-readable text.

    Returns:
        Formatted string suitable for printing.
    """
    lines = []

    lines.append("=" * 60)
    lines.append("RUN SUMMARY")
    lines.append("=" * 60)
    status = "PASSED" if report.passed else "FAILED"
    lines.append(f"Status: {status}")
    lines.append(f"Elapsed: {report.elapsed_seconds:.1f}s")
    if report.aborted:
        lines.append("Stopped early: threshold with abort_on_fail failed")
    if report.timed_out:
        lines.append("Stopped early: run timeout reached")
    lines.append("")

    lines.append("--- Scenarios ---")
    for name, scenario in report.scenarios.items():
        lines.append(
            f"  {name} ({scenario.executor}): iterations={scenario.iterations} "
            f"failed={scenario.failed_iterations} "
            f"truncated={scenario.truncated_iterations} "
            f"dropped={scenario.dropped_iterations} "
            f"peak_users={scenario.peak_users}"
        )

    lines.append("")
    lines.append("--- Metrics ---")
    for name, metric in report.metrics.items():
        buckets = metric["buckets"]
        if not buckets:
            continue
        lines.append(f"  {name} ({metric['kind']})")
        for tags, stats in buckets.items():
            label = tags or "(all)"
            lines.append(f"    {label}: {_fmt_stats(metric['kind'], stats)}")

    if report.thresholds:
        lines.append("")
        lines.append("--- Thresholds ---")
        for result in report.thresholds:
            if result.no_data:
                mark, observed = "-", "no data"
            else:
                mark = "✓" if result.passed else "✗"
                observed = f"observed {_fmt(result.observed, 3)}"
            lines.append(f"  {mark} {result.selector} {result.expression} ({observed})")

    if report.deficits:
        lines.append("")
        lines.append("--- Scheduling Deficits ---")
        for deficit in report.deficits:
            lines.append(f"  {deficit['message']}")

    if report.truncations:
        lines.append("")
        lines.append(f"--- Truncated Iterations: {len(report.truncations)} ---")

    if report.errors:
        lines.append("")
        lines.append("--- Errors ---")
        for error in report.errors:
            lines.append(f"  {error['message']}")

    lines.append("")
    return "\n".join(lines)


def _fmt_stats(kind: str, stats: Dict[str, Any]) -> str:
    if kind == "trend":
        keys = ["avg", "min", "med", "max"] + [
            percentile_key(p) for p in SUMMARY_PERCENTILES if p != 50
        ]
        return " ".join(f"{key}={_fmt(stats.get(key), 2)}" for key in keys)
    if kind == "rate":
        rate = stats.get("rate")
        pct = "N/A" if rate is None else f"{rate:.2%}"
        return f"{pct} ({_fmt(stats.get('passes'), 0)} of {_fmt(stats.get('count'), 0)})"
    if kind == "counter":
        return f"count={_fmt(stats.get('count'), 0)} rate={_fmt(stats.get('rate'), 2)}/s"
    return (
        f"value={_fmt(stats.get('value'), 0)} "
        f"min={_fmt(stats.get('min'), 0)} max={_fmt(stats.get('max'), 0)}"
    )


def _fmt(val: Optional[float], decimals: int = 1) -> str:
    """Format a value, handling None."""
    if val is None:
        return "N/A"
    return f"{val:.{decimals}f}"


def _labels(tags: str, extra: Optional[List[Tuple[str, str]]] = None) -> str:
    pairs: List[Tuple[str, str]] = []
    if tags:
        for part in tags[1:-1].split(","):
            key, _, value = part.partition(":")
            pairs.append((_PROM_NAME.sub("_", key), value))
    pairs.extend(extra or [])
    if not pairs:
        return ""
    body = ",".join(f'{key}="{_escape(value)}"' for key, value in pairs)
    return "{" + body + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _num(val: Optional[float]) -> str:
    return "NaN" if val is None else repr(float(val))


def prometheus_format(report: RunReport) -> str:
    """
    Export a run report in Prometheus text exposition format.

    Counters become ``_total`` counters, rates and gauges become gauges and
    trends become summaries with the standard quantiles.

    Returns:
        String suitable for a textfile collector or push gateway.
    """
    lines = []

    lines.append(f"# HELP {_PROM_PREFIX}run_passed Whether every threshold passed")
    lines.append(f"# TYPE {_PROM_PREFIX}run_passed gauge")
    lines.append(f"{_PROM_PREFIX}run_passed {1 if report.passed else 0}")

    for name, metric in report.metrics.items():
        buckets = metric["buckets"]
        if not buckets:
            continue
        kind = metric["kind"]
        base = _PROM_PREFIX + _PROM_NAME.sub("_", name)
        lines.append("")

        if kind == "counter":
            lines.append(f"# HELP {base}_total Counter {name}")
            lines.append(f"# TYPE {base}_total counter")
            for tags, stats in buckets.items():
                lines.append(f"{base}_total{_labels(tags)} {_num(stats.get('count'))}")
        elif kind == "rate":
            lines.append(f"# HELP {base}_rate Fraction of true samples for {name}")
            lines.append(f"# TYPE {base}_rate gauge")
            for tags, stats in buckets.items():
                lines.append(f"{base}_rate{_labels(tags)} {_num(stats.get('rate'))}")
        elif kind == "trend":
            lines.append(f"# HELP {base} Distribution of {name}")
            lines.append(f"# TYPE {base} summary")
            for tags, stats in buckets.items():
                for p in SUMMARY_PERCENTILES:
                    quantile = [("quantile", f"{p / 100:g}")]
                    value = stats.get(percentile_key(p))
                    lines.append(f"{base}{_labels(tags, quantile)} {_num(value)}")
                count = stats.get("count") or 0.0
                avg = stats.get("avg") or 0.0
                lines.append(f"{base}_sum{_labels(tags)} {_num(avg * count)}")
                lines.append(f"{base}_count{_labels(tags)} {_num(count)}")
        else:
            lines.append(f"# HELP {base} Gauge {name}")
            lines.append(f"# TYPE {base} gauge")
            for tags, stats in buckets.items():
                lines.append(f"{base}{_labels(tags)} {_num(stats.get('value'))}")

    return "\n".join(lines) + "\n"
