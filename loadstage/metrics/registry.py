"""
MetricsRegistry: single entry point for tagged samples from every virtual user.

Thread-safe, in-memory. One instance per run, passed by reference to every
component that records or reads metrics.

Each sample updates:
- the metric's untagged bucket,
- every declared sub-bucket whose tag filter is a subset of the sample's tags,
- one bucket per tracked tag key present on the sample (e.g. {scenario:x}).
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from loadstage.exceptions import ConfigurationError
from loadstage.metrics.buckets import MetricKind, new_bucket

logger = logging.getLogger(__name__)

TagSet = Tuple[Tuple[str, str], ...]
BucketKey = Tuple[str, TagSet]

_SELECTOR = re.compile(r"^\s*([A-Za-z_][\w.\-]*)\s*(?:\{(.*)\})?\s*$")


def normalize_tags(tags: Optional[Mapping[str, Any]]) -> TagSet:
    """Canonical ordered tag set: sorted (key, value) string pairs."""
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


def format_tags(tags: TagSet) -> str:
    """Render a tag set the way selectors are written: ``{k:v,k2:v2}``."""
    if not tags:
        return ""
    return "{" + ",".join(f"{k}:{v}" for k, v in tags) + "}"


def parse_selector(selector: str) -> Tuple[str, TagSet]:
    """
    Split ``name{key:value,key2:value2}`` into (name, tag filter).

    Raises:
        ConfigurationError: If the selector is malformed.
    """
    match = _SELECTOR.match(selector)
    if match is None:
        raise ConfigurationError(
            f"invalid metric selector: {selector!r}", details={"selector": selector}
        )
    name, body = match.group(1), match.group(2)
    if body is None or not body.strip():
        return name, ()
    tags: Dict[str, str] = {}
    for part in body.split(","):
        key, sep, value = part.partition(":")
        if not sep or not key.strip():
            raise ConfigurationError(
                f"invalid tag filter in selector: {selector!r}",
                details={"selector": selector},
            )
        tags[key.strip()] = value.strip()
    return name, normalize_tags(tags)


@dataclass(frozen=True)
class Sample:
    """One observation; folded into buckets immediately and not retained."""

    name: str
    kind: MetricKind
    value: float
    tags: TagSet
    timestamp: float


class MetricsRegistry:
    """
    Records counter/rate/trend/gauge samples partitioned by tag sets.

    Tag precedence: run-level ``global_tags``, then scenario tags, then
    call-site tags; later layers win on key collision. Use scoped() to bind
    a scenario's tags once.

    Example:
        registry = MetricsRegistry(global_tags={"env": "staging"})
        registry.declare_submetric("probe_duration", {"label": "index"})
        registry.record("probe_duration", "trend", 182.0, {"label": "index"})
        registry.stat("probe_duration", {"label": "index"}, "p(95)")
    """

    def __init__(
        self,
        *,
        global_tags: Optional[Mapping[str, Any]] = None,
        track_tags: Iterable[str] = ("scenario", "behavior"),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._global_tags = {str(k): str(v) for k, v in (global_tags or {}).items()}
        self._track_tags = tuple(track_tags)
        self._clock = clock
        self._started_at = clock()
        self._stopped_at: Optional[float] = None

        self._kinds: Dict[str, MetricKind] = {}
        self._submetrics: Dict[str, Set[TagSet]] = {}
        self._buckets: Dict[BucketKey, Any] = {}
        self._sample_count = 0

        self._lock = threading.Lock()

    def declare(self, name: str, kind: Union[MetricKind, str]) -> MetricKind:
        """
        Fix a metric's kind before any sample arrives.

        Raises:
            ConfigurationError: If the metric already exists with another kind.
        """
        kind = _coerce_kind(kind)
        with self._lock:
            return self._declare_locked(name, kind)

    def _declare_locked(self, name: str, kind: MetricKind) -> MetricKind:
        existing = self._kinds.get(name)
        if existing is not None and existing is not kind:
            raise ConfigurationError(
                f"metric {name!r} is a {existing.value}, not a {kind.value}",
                details={"metric": name, "kind": existing.value},
            )
        self._kinds[name] = kind
        return kind

    def declare_submetric(
        self, name: str, tags: Union[Mapping[str, Any], TagSet]
    ) -> TagSet:
        """Register a tag filter so its bucket is maintained from now on."""
        tag_set = tags if isinstance(tags, tuple) else normalize_tags(tags)
        with self._lock:
            if tag_set:
                self._submetrics.setdefault(name, set()).add(tag_set)
        logger.debug("Declared submetric %s%s", name, format_tags(tag_set))
        return tag_set

    def is_declared(self, name: str) -> bool:
        with self._lock:
            return name in self._kinds

    def kind_of(self, name: str) -> Optional[MetricKind]:
        with self._lock:
            return self._kinds.get(name)

    @property
    def global_tags(self) -> Dict[str, str]:
        return dict(self._global_tags)

    def scoped(self, tags: Optional[Mapping[str, Any]] = None) -> "ScopedRecorder":
        """Recorder that merges the given (scenario) tags under call-site tags."""
        return ScopedRecorder(self, tags or {})

    def record(
        self,
        name: str,
        kind: Union[MetricKind, str],
        value: float,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> Sample:
        """
        Fold one sample into every matching bucket.

        Args:
            name: Metric name.
            kind: counter, rate, trend or gauge.
            value: Observation. Rate samples count as true when non-zero.
            tags: Call-site tags (merged over the run-level tags).

        Returns:
            The Sample as recorded (with merged, ordered tags).
        """
        kind = _coerce_kind(kind)
        merged = dict(self._global_tags)
        if tags:
            merged.update({str(k): str(v) for k, v in tags.items()})
        tag_set = normalize_tags(merged)
        sample = Sample(
            name=name,
            kind=kind,
            value=float(value),
            tags=tag_set,
            timestamp=time.time(),
        )

        with self._lock:
            self._declare_locked(name, kind)
            for key in self._matching_keys(name, tag_set, merged):
                bucket = self._buckets.get(key)
                if bucket is None:
                    bucket = new_bucket(kind)
                    self._buckets[key] = bucket
                bucket.add(sample.value)
            self._sample_count += 1
        return sample

    def _matching_keys(
        self, name: str, tag_set: TagSet, merged: Mapping[str, str]
    ) -> List[BucketKey]:
        filters: Set[TagSet] = {()}
        sample_pairs = set(tag_set)
        for tag_filter in self._submetrics.get(name, ()):
            if sample_pairs.issuperset(tag_filter):
                filters.add(tag_filter)
        for key in self._track_tags:
            if key in merged:
                filters.add(((key, merged[key]),))
        return [(name, f) for f in sorted(filters)]

    def mark_started(self) -> None:
        """Restart the run clock; called when the first scenario is launched."""
        with self._lock:
            self._started_at = self._clock()
            self._stopped_at = None

    def mark_stopped(self) -> None:
        """Freeze elapsed time used for per-second counter rates."""
        with self._lock:
            if self._stopped_at is None:
                self._stopped_at = self._clock()

    def elapsed(self) -> float:
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return max(0.0, end - self._started_at)

    def stat(
        self,
        name: str,
        tags: Union[Mapping[str, Any], TagSet, None],
        stat: str,
        elapsed: Optional[float] = None,
    ) -> Optional[float]:
        """
        Compute one statistic of one bucket.

        Returns None when the bucket has no samples yet.
        """
        tag_set = tags if isinstance(tags, tuple) else normalize_tags(tags)
        if elapsed is None:
            elapsed = self.elapsed()
        with self._lock:
            bucket = self._buckets.get((name, tag_set))
            if bucket is None or bucket.samples == 0:
                return None
            return bucket.stat(stat, elapsed)

    def bucket_filters(self, name: str) -> List[TagSet]:
        """Tag filters that currently have a bucket for this metric."""
        with self._lock:
            return sorted(f for (n, f) in self._buckets if n == name)

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._sample_count

    def snapshot(self, elapsed: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """
        Consistent copy of every bucket's statistics.

        Returns:
            {metric: {"kind": str, "buckets": {"": {...}, "{k:v}": {...}}}}
            Declared metrics without samples appear with no buckets.
        """
        if elapsed is None:
            elapsed = self.elapsed()
        with self._lock:
            result: Dict[str, Dict[str, Any]] = {
                name: {"kind": kind.value, "buckets": {}}
                for name, kind in sorted(self._kinds.items())
            }
            for (name, tag_set), bucket in sorted(self._buckets.items()):
                result[name]["buckets"][format_tags(tag_set)] = bucket.stats(elapsed)
            return result


class ScopedRecorder:
    """Binds scenario tags so callers only pass call-site tags."""

    def __init__(self, registry: MetricsRegistry, tags: Mapping[str, Any]) -> None:
        self._registry = registry
        self._tags = {str(k): str(v) for k, v in tags.items()}

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    @property
    def tags(self) -> Dict[str, str]:
        return dict(self._tags)

    def child(self, tags: Mapping[str, Any]) -> "ScopedRecorder":
        return ScopedRecorder(self._registry, {**self._tags, **tags})

    def record(
        self,
        name: str,
        kind: Union[MetricKind, str],
        value: float,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> Sample:
        merged = dict(self._tags)
        if tags:
            merged.update(tags)
        return self._registry.record(name, kind, value, merged)


def _coerce_kind(kind: Union[MetricKind, str]) -> MetricKind:
    if isinstance(kind, MetricKind):
        return kind
    try:
        return MetricKind(str(kind).lower())
    except ValueError:
        raise ConfigurationError(
            f"unknown metric kind: {kind!r}", details={"kind": str(kind)}
        ) from None
