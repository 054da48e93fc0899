"""
Metrics aggregation for stampede runs.

This module provides the run-scoped metrics registry that ingests samples
emitted by virtual users, the per-kind aggregation sinks (counter, gauge,
rate, trend), submetrics scoped by tags, and the group/check tree used by
the end-of-test summary.

Example usage:
    registry = MetricsRegistry()
    register_builtin_metrics(registry)
    registry.add_submetric("http_req_duration", TagSet(name="Login"))
    registry.push("http_req_duration", 123.4, TagSet(name="Login"))
    registry.get("http_req_duration").values(duration_seconds=10.0)
"""

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from .histogram import LogHistogram
from .models import (
    EMPTY_TAGS,
    MetricType,
    MetricTypeError,
    Sample,
    TagSet,
    ValueType,
)

logger = logging.getLogger(__name__)

METRIC_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")

# Built-in metric names
VUS = "vus"
VUS_MAX = "vus_max"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATION_ERRORS = "iteration_errors"
DROPPED_ITERATIONS = "dropped_iterations"
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
DATA_SENT = "data_sent"
DATA_RECEIVED = "data_received"
CHECKS = "checks"
GROUP_DURATION = "group_duration"

BUILTIN_METRICS: dict[str, tuple[MetricType, ValueType]] = {
    VUS: (MetricType.GAUGE, ValueType.DEFAULT),
    VUS_MAX: (MetricType.GAUGE, ValueType.DEFAULT),
    ITERATIONS: (MetricType.COUNTER, ValueType.DEFAULT),
    ITERATION_DURATION: (MetricType.TREND, ValueType.TIME),
    ITERATION_ERRORS: (MetricType.COUNTER, ValueType.DEFAULT),
    DROPPED_ITERATIONS: (MetricType.COUNTER, ValueType.DEFAULT),
    HTTP_REQS: (MetricType.COUNTER, ValueType.DEFAULT),
    HTTP_REQ_DURATION: (MetricType.TREND, ValueType.TIME),
    HTTP_REQ_FAILED: (MetricType.RATE, ValueType.DEFAULT),
    DATA_SENT: (MetricType.COUNTER, ValueType.DATA),
    DATA_RECEIVED: (MetricType.COUNTER, ValueType.DATA),
    CHECKS: (MetricType.RATE, ValueType.DEFAULT),
    GROUP_DURATION: (MetricType.TREND, ValueType.TIME),
}


class Sink(ABC):
    """Aggregation state of one metric bucket."""

    @abstractmethod
    def add(self, value: float, timestamp: float) -> None:
        """Fold one observation into the aggregate."""

    @abstractmethod
    def merge(self, other: "Sink") -> None:
        """Fold another sink of the same kind into this one."""

    @abstractmethod
    def values(
        self,
        duration_seconds: float,
        trend_stats: Optional[list[str]] = None,
    ) -> dict[str, float]:
        """Return the aggregate values for summaries."""

    @property
    @abstractmethod
    def empty(self) -> bool:
        """True when nothing was recorded."""


class CounterSink(Sink):
    """Cumulative sum; its rate is the sum per second of run time."""

    def __init__(self) -> None:
        self.count = 0.0
        self.seen = False

    def add(self, value: float, timestamp: float) -> None:
        self.count += value
        self.seen = True

    def merge(self, other: Sink) -> None:
        self.count += other.count
        self.seen = self.seen or other.seen

    def rate(self, duration_seconds: float) -> float:
        if duration_seconds <= 0:
            return 0.0
        return self.count / duration_seconds

    def values(self, duration_seconds, trend_stats=None):
        return {"count": self.count, "rate": self.rate(duration_seconds)}

    @property
    def empty(self) -> bool:
        return not self.seen


class GaugeSink(Sink):
    """Latest value by timestamp, plus the observed range."""

    def __init__(self) -> None:
        self.value = 0.0
        self.last_timestamp = float("-inf")
        self.min = float("inf")
        self.max = float("-inf")
        self.seen = False

    def add(self, value: float, timestamp: float) -> None:
        if timestamp >= self.last_timestamp:
            self.value = value
            self.last_timestamp = timestamp
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.seen = True

    def merge(self, other: Sink) -> None:
        if not other.seen:
            return
        if other.last_timestamp >= self.last_timestamp:
            self.value = other.value
            self.last_timestamp = other.last_timestamp
        self.min = min(self.min, other.min)
        self.max = max(self.max, other.max)
        self.seen = True

    def values(self, duration_seconds, trend_stats=None):
        if not self.seen:
            return {"value": 0.0, "min": 0.0, "max": 0.0}
        return {"value": self.value, "min": self.min, "max": self.max}

    @property
    def empty(self) -> bool:
        return not self.seen


class RateSink(Sink):
    """Fraction of non-zero observations."""

    def __init__(self) -> None:
        self.passes = 0
        self.total = 0

    def add(self, value: float, timestamp: float) -> None:
        self.total += 1
        if value:
            self.passes += 1

    def merge(self, other: Sink) -> None:
        self.passes += other.passes
        self.total += other.total

    @property
    def fails(self) -> int:
        return self.total - self.passes

    @property
    def rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passes / self.total

    def values(self, duration_seconds, trend_stats=None):
        return {"rate": self.rate, "passes": self.passes, "fails": self.fails}

    @property
    def empty(self) -> bool:
        return self.total == 0


DEFAULT_TREND_STATS = ["avg", "min", "med", "max", "p(90)", "p(95)"]


class TrendSink(Sink):
    """Distribution of observations backed by a LogHistogram."""

    def __init__(self, relative_accuracy: float = 0.01) -> None:
        self.histogram = LogHistogram(relative_accuracy)

    def add(self, value: float, timestamp: float) -> None:
        self.histogram.add(value)

    def merge(self, other: Sink) -> None:
        self.histogram.merge(other.histogram)

    def stat(self, name: str) -> Optional[float]:
        """Compute one named statistic (avg, min, med, max, count, p(N))."""
        hist = self.histogram
        if name == "count":
            return float(hist.count)
        if hist.count == 0:
            return None
        if name == "avg":
            return hist.mean
        if name == "min":
            return hist.min
        if name == "max":
            return hist.max
        if name == "med":
            return hist.quantile(0.5)
        match = re.fullmatch(r"p\(\s*([0-9]*\.?[0-9]+)\s*\)", name)
        if match:
            return hist.percentile(float(match.group(1)))
        raise ValueError(f"unknown trend statistic: {name}")

    def values(self, duration_seconds, trend_stats=None):
        result = {}
        for name in trend_stats or DEFAULT_TREND_STATS:
            value = self.stat(name)
            result[name] = value if value is not None else 0.0
        return result

    @property
    def empty(self) -> bool:
        return self.histogram.count == 0


SINK_TYPES: dict[MetricType, type[Sink]] = {
    MetricType.COUNTER: CounterSink,
    MetricType.GAUGE: GaugeSink,
    MetricType.RATE: RateSink,
    MetricType.TREND: TrendSink,
}


@dataclass
class Submetric:
    """A metric's aggregate restricted to samples carrying ``tags``."""

    parent: str
    tags: TagSet
    sink: Sink
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def name(self) -> str:
        return f"{self.parent}{self.tags}"


class Metric:
    """A named metric with a root aggregate and tag-scoped submetrics."""

    def __init__(
        self,
        name: str,
        metric_type: MetricType,
        contains: ValueType = ValueType.DEFAULT,
    ):
        self.name = name
        self.type = metric_type
        self.contains = contains
        self.sink = SINK_TYPES[metric_type]()
        self.submetrics: dict[TagSet, Submetric] = {}
        self.lock = threading.Lock()

    def add_submetric(self, tags: TagSet) -> Submetric:
        if tags not in self.submetrics:
            self.submetrics[tags] = Submetric(
                parent=self.name, tags=tags, sink=SINK_TYPES[self.type]()
            )
        return self.submetrics[tags]

    def ingest(self, value: float, tags: TagSet, timestamp: float) -> None:
        with self.lock:
            self.sink.add(value, timestamp)
        for selector, sub in list(self.submetrics.items()):
            if tags.issuperset(selector):
                with sub.lock:
                    sub.sink.add(value, timestamp)

    def values(
        self,
        duration_seconds: float,
        trend_stats: Optional[list[str]] = None,
    ) -> dict[str, float]:
        with self.lock:
            return self.sink.values(duration_seconds, trend_stats)

    def __repr__(self) -> str:
        return f"Metric({self.name!r}, {self.type.value}, {self.contains.value})"


@dataclass
class CheckTally:
    """Pass/fail counts of one named check inside a group."""

    name: str
    path: str
    passes: int = 0
    fails: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "passes": self.passes,
            "fails": self.fails,
        }


class GroupTree:
    """Nested groups with their checks, keyed by ``::``-joined paths."""

    def __init__(self) -> None:
        self._checks: dict[tuple[str, str], CheckTally] = {}
        self._groups: list[str] = [""]
        self._lock = threading.Lock()

    def add_group(self, path: str) -> None:
        with self._lock:
            if path not in self._groups:
                self._groups.append(path)

    def record_check(self, group_path: str, name: str, passed: bool) -> None:
        with self._lock:
            if group_path not in self._groups:
                self._groups.append(group_path)
            key = (group_path, name)
            tally = self._checks.get(key)
            if tally is None:
                tally = CheckTally(name=name, path=f"{group_path}::{name}")
                self._checks[key] = tally
            if passed:
                tally.passes += 1
            else:
                tally.fails += 1

    def _build(self, path: str) -> dict[str, Any]:
        children = [
            g for g in self._groups
            if g != path and g.startswith(path + "::") and "::" not in g[len(path) + 2:]
        ]
        return {
            "name": path.rsplit("::", 1)[-1] if path else "",
            "path": path,
            "groups": [self._build(child) for child in children],
            "checks": [
                tally.to_dict()
                for (group_path, _), tally in self._checks.items()
                if group_path == path
            ],
        }

    def to_dict(self) -> dict[str, Any]:
        """Render the tree rooted at the unnamed root group."""
        with self._lock:
            return self._build("")

    def totals(self) -> tuple[int, int]:
        """Return (passes, fails) across all checks."""
        with self._lock:
            passes = sum(t.passes for t in self._checks.values())
            fails = sum(t.fails for t in self._checks.values())
        return passes, fails


class MetricsRegistry:
    """
    Run-scoped store of every metric and its aggregates.

    Created at run start and injected into every component that emits
    samples; safe to feed from many virtual users and worker threads.
    """

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._pending_submetrics: dict[str, set[TagSet]] = {}
        self._lock = threading.Lock()
        self.groups = GroupTree()

    def define(
        self,
        name: str,
        metric_type: MetricType,
        contains: ValueType = ValueType.DEFAULT,
    ) -> Metric:
        """Define a metric, or return the existing one with the same type.

        Raises:
            ValueError: If the name is not a valid metric name
            MetricTypeError: If the name is already defined with another type
        """
        if not METRIC_NAME_RE.match(name):
            raise ValueError(f"invalid metric name: {name!r}")
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if existing.type != metric_type:
                    raise MetricTypeError(
                        f"metric '{name}' is already defined as a "
                        f"{existing.type.value}, not a {metric_type.value}"
                    )
                return existing
            metric = Metric(name, metric_type, contains)
            for tags in self._pending_submetrics.pop(name, set()):
                metric.add_submetric(tags)
            self._metrics[name] = metric
            logger.debug("Defined metric %s", metric)
            return metric

    def add_submetric(self, name: str, tags: TagSet) -> None:
        """Aggregate ``name`` separately for samples carrying ``tags``.

        Metrics that are not defined yet get the submetric when they are.
        """
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                self._pending_submetrics.setdefault(name, set()).add(tags)
            else:
                metric.add_submetric(tags)

    def get(self, name: str) -> Optional[Metric]:
        return self._metrics.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._metrics

    def metrics(self) -> list[Metric]:
        """Return all defined metrics sorted by name."""
        with self._lock:
            return sorted(self._metrics.values(), key=lambda m: m.name)

    def ingest(self, sample: Sample) -> None:
        """Fold a sample into its metric.

        Raises:
            KeyError: If the sample's metric is not defined
        """
        metric = self._metrics.get(sample.metric)
        if metric is None:
            raise KeyError(f"metric '{sample.metric}' is not defined")
        metric.ingest(float(sample.value), sample.tags, sample.timestamp)

    def push(
        self,
        name: str,
        value: float,
        tags: TagSet = EMPTY_TAGS,
        timestamp: Optional[float] = None,
    ) -> None:
        """Convenience wrapper building and ingesting a Sample."""
        self.ingest(
            Sample(
                metric=name,
                value=value,
                tags=tags,
                timestamp=time.time() if timestamp is None else timestamp,
            )
        )

    def snapshot(
        self,
        duration_seconds: float,
        trend_stats: Optional[list[str]] = None,
    ) -> dict[str, dict[str, Any]]:
        """Return the current values of every metric and submetric."""
        result: dict[str, dict[str, Any]] = {}
        for metric in self.metrics():
            result[metric.name] = {
                "type": metric.type.value,
                "contains": metric.contains.value,
                "values": metric.values(duration_seconds, trend_stats),
            }
            for sub in list(metric.submetrics.values()):
                with sub.lock:
                    sub_values = sub.sink.values(duration_seconds, trend_stats)
                result[sub.name] = {
                    "type": metric.type.value,
                    "contains": metric.contains.value,
                    "values": sub_values,
                }
        return result


def register_builtin_metrics(registry: MetricsRegistry) -> None:
    """Define every engine-emitted metric on ``registry``."""
    for name, (metric_type, contains) in BUILTIN_METRICS.items():
        registry.define(name, metric_type, contains)


class MetricDefinition:
    """
    A custom metric declared by a script.

    Scripts declare definitions at module level and emit through the
    iteration context, which binds the definition to the run's registry:

        errors = Counter("errors")

        async def default(ctx, data):
            ctx.add(errors, 1)
    """

    metric_type: MetricType = MetricType.COUNTER

    def __init__(self, name: str, is_time: bool = False, is_data: bool = False):
        if not METRIC_NAME_RE.match(name):
            raise ValueError(f"invalid metric name: {name!r}")
        self.name = name
        if is_time:
            self.contains = ValueType.TIME
        elif is_data:
            self.contains = ValueType.DATA
        else:
            self.contains = ValueType.DEFAULT

    def register(self, registry: MetricsRegistry) -> Metric:
        return registry.define(self.name, self.metric_type, self.contains)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class Counter(MetricDefinition):
    metric_type = MetricType.COUNTER


class Gauge(MetricDefinition):
    metric_type = MetricType.GAUGE


class Rate(MetricDefinition):
    metric_type = MetricType.RATE


class Trend(MetricDefinition):
    metric_type = MetricType.TREND
