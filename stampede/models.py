"""
Data models for the stampede load-generation engine.

This module defines the core data structures shared by every component:
tag sets, samples, metric kinds, run results and the engine's exception
hierarchy.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Iterator, Mapping, Optional


class MetricType(Enum):
    """Kinds of aggregated metrics."""

    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


class ValueType(Enum):
    """What the values of a metric represent."""

    DEFAULT = "default"
    TIME = "time"
    DATA = "data"


class ExitCode(IntEnum):
    """Process exit status of a run."""

    OK = 0
    THRESHOLDS_FAILED = 99
    INVALID_CONFIG = 104
    ABORTED_BY_USER = 105
    SETUP_FAILED = 107


class StampedeError(Exception):
    """Base class for engine errors."""


class ConfigValidationError(StampedeError):
    """Raised when options or configuration files are invalid."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ThresholdParseError(ConfigValidationError):
    """Raised when a threshold selector or expression cannot be parsed."""


class ScriptError(StampedeError):
    """Raised when a script cannot be loaded or lacks a required export."""


class SetupError(StampedeError):
    """Raised when the setup hook fails; fatal to the whole run."""


class MetricTypeError(StampedeError):
    """Raised when a metric is redefined with a different type."""


class IterationInterrupted(BaseException):
    """Raised inside a workload when its VU is interrupted.

    Derives from BaseException, like asyncio.CancelledError, so workloads
    catching ``Exception`` do not swallow it.
    """


class TagSet(Mapping[str, str]):
    """Immutable, hashable set of string tags.

    Equality and hashing depend only on the key/value pairs, so a TagSet
    can key aggregation buckets directly.
    """

    __slots__ = ("_items", "_hash")

    def __init__(self, tags: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        merged = dict(tags or {})
        merged.update(kwargs)
        self._items = {str(k): str(v) for k, v in sorted(merged.items())}
        self._hash = hash(frozenset(self._items.items()))

    def __getitem__(self, key: str) -> str:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TagSet):
            return self._items == other._items
        if isinstance(other, Mapping):
            return self._items == {str(k): str(v) for k, v in other.items()}
        return NotImplemented

    def __repr__(self) -> str:
        return f"TagSet({self._items!r})"

    def __str__(self) -> str:
        return "{" + ",".join(f"{k}:{v}" for k, v in self._items.items()) + "}"

    def merge(self, other: Optional[Mapping[str, Any]]) -> "TagSet":
        """Return a new TagSet with ``other`` layered on top of this one."""
        if not other:
            return self
        merged = dict(self._items)
        merged.update({str(k): v for k, v in other.items()})
        return TagSet(merged)

    def issuperset(self, selector: "TagSet") -> bool:
        """Check whether every tag of ``selector`` is present here."""
        items = self._items
        return all(items.get(k) == v for k, v in selector.items())

    def to_dict(self) -> dict[str, str]:
        """Convert to a plain dictionary."""
        return dict(self._items)


EMPTY_TAGS = TagSet()


@dataclass(frozen=True)
class Sample:
    """A single immutable observation.

    Attributes:
        metric: Name of the metric the value belongs to
        value: Observed numeric value
        tags: Tags attached to the observation
        timestamp: Wall-clock time of the observation (epoch seconds)
    """

    metric: str
    value: float
    tags: TagSet = EMPTY_TAGS
    timestamp: float = field(default_factory=time.time)


@dataclass
class ScenarioStats:
    """Execution statistics for one scenario.

    Attributes:
        name: Scenario name
        executor: Executor kind
        started_at: Run-relative offset when the scenario started
        finished_at: Run-relative offset when its last VU stopped
        completed_iterations: Iterations that ran to completion
        failed_iterations: Iterations that raised an error
        interrupted_iterations: Iterations cut short by an interrupt or stop
        dropped_iterations: Arrival-rate starts with no VU available
        max_vus: Number of VUs allocated for the scenario
    """

    name: str
    executor: str
    started_at: float = 0.0
    finished_at: float = 0.0
    completed_iterations: int = 0
    failed_iterations: int = 0
    interrupted_iterations: int = 0
    dropped_iterations: int = 0
    max_vus: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "executor": self.executor,
            "started_at": round(self.started_at, 3),
            "finished_at": round(self.finished_at, 3),
            "completed_iterations": self.completed_iterations,
            "failed_iterations": self.failed_iterations,
            "interrupted_iterations": self.interrupted_iterations,
            "dropped_iterations": self.dropped_iterations,
            "max_vus": self.max_vus,
        }


@dataclass
class ThresholdResult:
    """Outcome of evaluating one threshold expression.

    Attributes:
        selector: Metric selector, e.g. ``http_req_duration{name:Login}``
        expression: Expression source, e.g. ``p(95)<500``
        ok: Whether the bound holds
        observed: Aggregate value the bound was checked against
        no_data: True when the metric had no samples to evaluate
        abort_on_fail: Whether a failure aborts the run
        message: Explanation when evaluation could not be performed
    """

    selector: str
    expression: str
    ok: bool = True
    observed: Optional[float] = None
    no_data: bool = False
    abort_on_fail: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "selector": self.selector,
            "expression": self.expression,
            "ok": self.ok,
            "observed": self.observed,
            "no_data": self.no_data,
            "abort_on_fail": self.abort_on_fail,
            "message": self.message,
        }


@dataclass
class RunResult:
    """
    Result of a complete run.

    Attributes:
        start_time: When the run started
        end_time: When the run ended
        setup_error: Error message if setup failed
        teardown_error: Error message if teardown failed
        abort_reason: Why the run was aborted early, if it was
        aborted_by_user: True when the abort came from an interrupt signal
        scenarios: Per-scenario execution statistics
        thresholds: Every threshold evaluation
        summary: Summary data handed to the summary hook
        artifacts: Files written by the summary export
    """

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    setup_error: Optional[str] = None
    teardown_error: Optional[str] = None
    abort_reason: Optional[str] = None
    aborted_by_user: bool = False
    scenarios: dict[str, ScenarioStats] = field(default_factory=dict)
    thresholds: list[ThresholdResult] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Total run duration in seconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    @property
    def setup_failed(self) -> bool:
        return self.setup_error is not None

    @property
    def thresholds_passed(self) -> bool:
        return all(t.ok for t in self.thresholds)

    @property
    def failed_thresholds(self) -> list[ThresholdResult]:
        return [t for t in self.thresholds if not t.ok]

    @property
    def exit_code(self) -> ExitCode:
        """Exit status reflecting setup, abort and threshold outcomes."""
        if self.setup_failed:
            return ExitCode.SETUP_FAILED
        if not self.thresholds_passed:
            return ExitCode.THRESHOLDS_FAILED
        if self.aborted_by_user:
            return ExitCode.ABORTED_BY_USER
        return ExitCode.OK

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary representation."""
        return {
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "setup_error": self.setup_error,
            "teardown_error": self.teardown_error,
            "abort_reason": self.abort_reason,
            "scenarios": {k: v.to_dict() for k, v in self.scenarios.items()},
            "thresholds": [t.to_dict() for t in self.thresholds],
            "thresholds_passed": self.thresholds_passed,
            "artifacts": self.artifacts,
            "exit_code": int(self.exit_code),
        }
