"""
Threshold parsing and evaluation.

Thresholds are declared in the run options as a mapping from a metric
selector to a list of pass/fail expressions:

    thresholds = {
        "http_req_duration": ["p(95)<500", "avg<200"],
        "http_req_duration{name:Login}": [{"threshold": "p(99)<900", "abortOnFail": True}],
        "checks": ["rate>0.95"],
    }

Every expression is evaluated against the same aggregates the summary
reports; percentiles come from the Trend's histogram.
"""

import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .config import parse_duration
from .metrics import CounterSink, GaugeSink, Metric, MetricsRegistry, RateSink, TrendSink
from .models import EMPTY_TAGS, MetricType, TagSet, ThresholdParseError, ThresholdResult

logger = logging.getLogger(__name__)

_SELECTOR_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(?:\{(.*)\})?\s*$")
_EXPRESSION_RE = re.compile(
    r"^\s*(count|rate|value|avg|min|max|med|p\(\s*[0-9]*\.?[0-9]+\s*\))\s*"
    r"(<=|>=|===|==|!=|<|>)\s*"
    r"(-?[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)\s*$"
)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

ALLOWED_AGGREGATIONS: dict[MetricType, set[str]] = {
    MetricType.COUNTER: {"count", "rate"},
    MetricType.GAUGE: {"value", "min", "max"},
    MetricType.RATE: {"rate"},
    MetricType.TREND: {"avg", "min", "max", "med", "count", "p"},
}


def parse_selector(selector: str) -> tuple[str, TagSet]:
    """
    Split a metric selector into the metric name and its tag filter.

    Args:
        selector: ``metric`` or ``metric{tag:value,other:value}``

    Returns:
        Tuple of (metric name, tag selector)

    Raises:
        ThresholdParseError: If the selector is malformed
    """
    match = _SELECTOR_RE.match(selector)
    if not match:
        raise ThresholdParseError(f"invalid metric selector: {selector!r}")
    name, body = match.group(1), match.group(2)
    if body is None:
        return name, EMPTY_TAGS
    if not body.strip():
        raise ThresholdParseError(f"empty tag filter in selector: {selector!r}")

    tags: dict[str, str] = {}
    for part in body.split(","):
        key, sep, value = part.partition(":")
        key = key.strip()
        if not sep or not key:
            raise ThresholdParseError(
                f"invalid tag filter {part!r} in selector {selector!r}, expected key:value"
            )
        tags[key] = value.strip()
    return name, TagSet(tags)


@dataclass(frozen=True)
class ThresholdExpression:
    """A parsed ``aggregation op bound`` expression."""

    source: str
    aggregation: str
    op: str
    bound: float
    percentile: Optional[float] = None

    @classmethod
    def parse(cls, source: str) -> "ThresholdExpression":
        """Parse an expression such as ``p(95)<500`` or ``rate<=0.01``.

        Raises:
            ThresholdParseError: If the expression is malformed
        """
        match = _EXPRESSION_RE.match(source)
        if not match:
            raise ThresholdParseError(f"invalid threshold expression: {source!r}")
        aggregation, op, bound = match.groups()
        aggregation = aggregation.replace(" ", "")
        percentile = None
        if aggregation.startswith("p("):
            percentile = float(aggregation[2:-1])
            if not 0 <= percentile <= 100:
                raise ThresholdParseError(f"percentile out of range in {source!r}")
        return cls(
            source=source.strip(),
            aggregation=aggregation,
            op=op,
            bound=float(bound),
            percentile=percentile,
        )

    @property
    def kind(self) -> str:
        return "p" if self.percentile is not None else self.aggregation

    def holds(self, observed: float) -> bool:
        return OPERATORS[self.op](observed, self.bound)


@dataclass
class Threshold:
    """
    One threshold bound to a metric (optionally tag-scoped).

    Attributes:
        selector: Selector source as declared
        metric: Metric name
        tags: Tag filter; empty for the metric's root aggregate
        expression: Parsed expression
        abort_on_fail: Whether a failure aborts the run
        delay_abort_eval: Seconds into the run before abort checks apply
    """

    selector: str
    metric: str
    tags: TagSet
    expression: ThresholdExpression
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0
    last_result: Optional[ThresholdResult] = field(default=None, repr=False)

    @classmethod
    def from_entry(cls, selector: str, entry: Any) -> "Threshold":
        """Build a threshold from a string or ``{threshold, abortOnFail, ...}`` entry."""
        metric, tags = parse_selector(selector)
        if isinstance(entry, str):
            return cls(selector, metric, tags, ThresholdExpression.parse(entry))
        if isinstance(entry, Mapping) and "threshold" in entry:
            try:
                delay = parse_duration(entry.get("delayAbortEval", 0))
            except ValueError as e:
                raise ThresholdParseError(f"{selector}: {e}") from e
            return cls(
                selector,
                metric,
                tags,
                ThresholdExpression.parse(entry["threshold"]),
                abort_on_fail=bool(entry.get("abortOnFail", False)),
                delay_abort_eval=delay,
            )
        raise ThresholdParseError(f"invalid threshold entry for {selector}: {entry!r}")


def _observe(sink: Any, expression: ThresholdExpression, elapsed: float) -> Optional[float]:
    kind = expression.kind
    if isinstance(sink, CounterSink):
        return sink.count if kind == "count" else sink.rate(elapsed)
    if isinstance(sink, GaugeSink):
        return {"value": sink.value, "min": sink.min, "max": sink.max}[kind]
    if isinstance(sink, RateSink):
        return sink.rate
    if isinstance(sink, TrendSink):
        if kind == "p":
            return sink.histogram.percentile(expression.percentile)
        return sink.stat(kind)
    raise TypeError(f"unsupported sink {type(sink).__name__}")


class ThresholdEvaluator:
    """
    Evaluates declared thresholds against the run's metrics registry.

    Example usage:
        evaluator = ThresholdEvaluator({"checks": ["rate>0.9"]}, registry)
        evaluator.register_submetrics()
        ...
        results = evaluator.evaluate(elapsed=30.0)
    """

    def __init__(self, declared: Mapping[str, list[Any]], registry: MetricsRegistry):
        """Parse every declared threshold.

        Raises:
            ThresholdParseError: Listing every malformed selector or expression
        """
        self.registry = registry
        self.thresholds: list[Threshold] = []
        errors = []
        for selector, entries in declared.items():
            for entry in entries:
                try:
                    self.thresholds.append(Threshold.from_entry(selector, entry))
                except ThresholdParseError as e:
                    errors.append(str(e))
        if errors:
            raise ThresholdParseError(
                f"{len(errors)} invalid threshold(s)", errors=errors
            )

    def register_submetrics(self) -> None:
        """Ask the registry to aggregate every tag-scoped selector separately."""
        for threshold in self.thresholds:
            if threshold.tags:
                self.registry.add_submetric(threshold.metric, threshold.tags)

    def validate_metrics(self) -> list[str]:
        """Check thresholds against the metrics defined so far.

        Metrics a workload defines on first use are not known yet and are
        skipped; they fail at evaluation time if they never appear.

        Returns:
            Error messages for unsupported aggregations
        """
        errors = []
        for threshold in self.thresholds:
            metric = self.registry.get(threshold.metric)
            if metric is None:
                logger.debug("Threshold metric %s is not defined yet", threshold.metric)
                continue
            if threshold.expression.kind not in ALLOWED_AGGREGATIONS[metric.type]:
                errors.append(
                    f"{threshold.selector}: '{threshold.expression.aggregation}' is not "
                    f"supported on {metric.type.value} metrics"
                )
        return errors

    def _evaluate_one(self, threshold: Threshold, elapsed: float) -> ThresholdResult:
        result = ThresholdResult(
            selector=threshold.selector,
            expression=threshold.expression.source,
            abort_on_fail=threshold.abort_on_fail,
        )
        metric: Optional[Metric] = self.registry.get(threshold.metric)
        if metric is None:
            result.ok = False
            result.message = f"metric '{threshold.metric}' is not defined"
            return result
        if threshold.expression.kind not in ALLOWED_AGGREGATIONS[metric.type]:
            result.ok = False
            result.message = (
                f"'{threshold.expression.aggregation}' is not supported on "
                f"{metric.type.value} metrics"
            )
            return result

        if threshold.tags:
            sub = metric.submetrics.get(threshold.tags)
            if sub is None:
                result.ok = False
                result.message = f"no submetric registered for {threshold.selector}"
                return result
            lock, sink = sub.lock, sub.sink
        else:
            lock, sink = metric.lock, metric.sink

        with lock:
            if sink.empty:
                result.no_data = True
                result.message = "no data"
                return result
            observed = _observe(sink, threshold.expression, elapsed)

        result.observed = observed
        result.ok = threshold.expression.holds(observed)
        return result

    def evaluate(self, elapsed: float) -> list[ThresholdResult]:
        """
        Evaluate every threshold.

        Args:
            elapsed: Run time in seconds, used for Counter rates

        Returns:
            One result per threshold, in declaration order
        """
        results = []
        for threshold in self.thresholds:
            result = self._evaluate_one(threshold, elapsed)
            threshold.last_result = result
            if not result.ok:
                logger.debug(
                    "Threshold %s %s failed (observed=%s)",
                    threshold.selector,
                    threshold.expression.source,
                    result.observed,
                )
            results.append(result)
        return results

    def failing_aborts(self, elapsed: float) -> list[ThresholdResult]:
        """Return failing abort-on-fail thresholds whose delay has passed."""
        failing = []
        for threshold in self.thresholds:
            if not threshold.abort_on_fail or elapsed < threshold.delay_abort_eval:
                continue
            result = self._evaluate_one(threshold, elapsed)
            threshold.last_result = result
            if not result.ok:
                failing.append(result)
        return failing

    def by_selector(self, results: list[ThresholdResult]) -> dict[str, dict[str, dict[str, bool]]]:
        """Group results as ``{selector: {expression: {"ok": bool}}}``."""
        grouped: dict[str, dict[str, dict[str, bool]]] = {}
        for result in results:
            grouped.setdefault(result.selector, {})[result.expression] = {"ok": result.ok}
        return grouped
