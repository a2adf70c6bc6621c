"""
Aggregate buckets: running statistics for one (metric, tag filter) pair.

Buckets are not locked individually; MetricsRegistry serializes every
update and read under its own lock.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Dict, List, Optional, Tuple

# Percentiles always reported in snapshots; thresholds may ask for any p(N).
SUMMARY_PERCENTILES: Tuple[float, ...] = (50, 90, 95, 99)


class MetricKind(str, Enum):
    """Sample kinds accepted by the registry."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


def percentile_key(p: float) -> str:
    """Statistic name for a percentile, e.g. 95 -> "p(95)", 99.9 -> "p(99.9)"."""
    return f"p({p:g})"


class CounterBucket:
    """Monotonic sum. ``rate`` is the sum per second of run time."""

    kind = MetricKind.COUNTER
    stat_names = ("count", "rate")

    def __init__(self) -> None:
        self._sum = 0.0
        self._samples = 0

    def add(self, value: float) -> None:
        self._sum += value
        self._samples += 1

    @property
    def samples(self) -> int:
        return self._samples

    def stat(self, name: str, elapsed: Optional[float] = None) -> Optional[float]:
        if name == "count":
            return self._sum
        if name == "rate":
            if not elapsed or elapsed <= 0:
                return None
            return self._sum / elapsed
        raise KeyError(name)

    def stats(self, elapsed: Optional[float] = None) -> Dict[str, Optional[float]]:
        return {"count": self._sum, "rate": self.stat("rate", elapsed)}


class RateBucket:
    """Fraction of observations that were true (non-zero)."""

    kind = MetricKind.RATE
    stat_names = ("rate", "passes", "fails", "count")

    def __init__(self) -> None:
        self._passes = 0
        self._total = 0

    def add(self, value: float) -> None:
        self._total += 1
        if value:
            self._passes += 1

    @property
    def samples(self) -> int:
        return self._total

    def stat(self, name: str, elapsed: Optional[float] = None) -> Optional[float]:
        if name == "rate":
            return self._passes / self._total if self._total else None
        if name == "passes":
            return float(self._passes)
        if name == "fails":
            return float(self._total - self._passes)
        if name == "count":
            return float(self._total)
        raise KeyError(name)

    def stats(self, elapsed: Optional[float] = None) -> Dict[str, Optional[float]]:
        return {name: self.stat(name) for name in self.stat_names}


class TrendBucket:
    """
    Full distribution of observed values.

    Percentiles use linear interpolation between closest ranks over the
    sorted values. The estimate is monotone in p and depends only on the
    multiset of values, so replaying a sample stream reproduces it exactly.
    """

    kind = MetricKind.TREND
    stat_names = ("count", "avg", "min", "max", "med")

    def __init__(self) -> None:
        self._values: List[float] = []
        self._sorted: Optional[List[float]] = None
        self._sum = 0.0
        self._min = math.inf
        self._max = -math.inf

    def add(self, value: float) -> None:
        self._values.append(value)
        self._sorted = None
        self._sum += value
        if value < self._min:
            self._min = value
        if value > self._max:
            self._max = value

    @property
    def samples(self) -> int:
        return len(self._values)

    def percentile(self, p: float) -> Optional[float]:
        if not self._values:
            return None
        if self._sorted is None:
            self._sorted = sorted(self._values)
        ordered = self._sorted
        p = min(100.0, max(0.0, p))
        rank = p / 100.0 * (len(ordered) - 1)
        lower = int(math.floor(rank))
        upper = int(math.ceil(rank))
        if lower == upper:
            return ordered[lower]
        return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)

    def stat(self, name: str, elapsed: Optional[float] = None) -> Optional[float]:
        if name == "count":
            return float(len(self._values))
        if name.startswith("p(") and name.endswith(")"):
            return self.percentile(float(name[2:-1]))
        if not self._values:
            if name in ("avg", "min", "max", "med"):
                return None
            raise KeyError(name)
        if name == "avg":
            return self._sum / len(self._values)
        if name == "min":
            return self._min
        if name == "max":
            return self._max
        if name == "med":
            return self.percentile(50)
        raise KeyError(name)

    def stats(self, elapsed: Optional[float] = None) -> Dict[str, Optional[float]]:
        data = {name: self.stat(name) for name in self.stat_names}
        for p in SUMMARY_PERCENTILES:
            data[percentile_key(p)] = self.percentile(p)
        return data


class GaugeBucket:
    """Last value wins; min/max kept for the summary."""

    kind = MetricKind.GAUGE
    stat_names = ("value", "min", "max")

    def __init__(self) -> None:
        self._value: Optional[float] = None
        self._min = math.inf
        self._max = -math.inf
        self._samples = 0

    def add(self, value: float) -> None:
        self._value = value
        self._samples += 1
        if value < self._min:
            self._min = value
        if value > self._max:
            self._max = value

    @property
    def samples(self) -> int:
        return self._samples

    def stat(self, name: str, elapsed: Optional[float] = None) -> Optional[float]:
        if name == "value":
            return self._value
        if name == "min":
            return self._min if self._samples else None
        if name == "max":
            return self._max if self._samples else None
        raise KeyError(name)

    def stats(self, elapsed: Optional[float] = None) -> Dict[str, Optional[float]]:
        return {name: self.stat(name) for name in self.stat_names}


_BUCKET_TYPES = {
    MetricKind.COUNTER: CounterBucket,
    MetricKind.RATE: RateBucket,
    MetricKind.TREND: TrendBucket,
    MetricKind.GAUGE: GaugeBucket,
}


def new_bucket(kind: MetricKind):
    return _BUCKET_TYPES[kind]()


def supports_stat(kind: MetricKind, name: str) -> bool:
    """True if a bucket of this kind can compute the named statistic."""
    if kind is MetricKind.TREND and name.startswith("p(") and name.endswith(")"):
        try:
            p = float(name[2:-1])
        except ValueError:
            return False
        return 0.0 <= p <= 100.0
    return name in _BUCKET_TYPES[kind].stat_names
