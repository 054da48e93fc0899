"""
Streaming quantile histogram used by Trend metrics.

Values are counted in logarithmically sized buckets, so memory grows with
the logarithm of the observed value range instead of with the number of
samples. Any quantile estimate is within ``relative_accuracy`` of the exact
lower-rank statistic ``sorted(values)[floor(q * (n - 1))]``.
"""

import math
from typing import Any, Iterator, Optional


class LogHistogram:
    """
    Mergeable histogram with relative-error quantile estimates.

    A positive value ``v`` falls in bucket ``ceil(log(v) / log(gamma))`` with
    ``gamma = (1 + a) / (1 - a)``; every value in a bucket lies within a
    relative distance ``a`` of the bucket's representative value. Negative
    values use a mirrored store and zeros are counted separately. Exact
    count, sum, min and max are tracked alongside.

    Example usage:
        hist = LogHistogram()
        for latency in (12.5, 40.1, 38.0):
            hist.add(latency)
        hist.quantile(0.95)
    """

    def __init__(self, relative_accuracy: float = 0.01):
        """Initialize an empty histogram.

        Args:
            relative_accuracy: Maximum relative error of quantile estimates,
                strictly between 0 and 1
        """
        if not 0 < relative_accuracy < 1:
            raise ValueError("relative_accuracy must be between 0 and 1")
        self.relative_accuracy = relative_accuracy
        self._gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._log_gamma = math.log(self._gamma)
        self._positive: dict[int, int] = {}
        self._negative: dict[int, int] = {}
        self.zero_count = 0
        self.count = 0
        self.sum = 0.0
        self.min = math.inf
        self.max = -math.inf

    def _key(self, magnitude: float) -> int:
        return math.ceil(math.log(magnitude) / self._log_gamma)

    def _representative(self, key: int) -> float:
        return 2 * self._gamma ** key / (self._gamma + 1)

    def add(self, value: float, count: int = 1) -> None:
        """Record ``value`` ``count`` times."""
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"cannot record non-finite value {value!r}")
        if count <= 0:
            return
        if value > 0:
            key = self._key(value)
            self._positive[key] = self._positive.get(key, 0) + count
        elif value < 0:
            key = self._key(-value)
            self._negative[key] = self._negative.get(key, 0) + count
        else:
            self.zero_count += count
        self.count += count
        self.sum += value * count
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def merge(self, other: "LogHistogram") -> None:
        """Fold another histogram with the same accuracy into this one."""
        if other.relative_accuracy != self.relative_accuracy:
            raise ValueError("cannot merge histograms with different accuracy")
        for key, n in other._positive.items():
            self._positive[key] = self._positive.get(key, 0) + n
        for key, n in other._negative.items():
            self._negative[key] = self._negative.get(key, 0) + n
        self.zero_count += other.zero_count
        self.count += other.count
        self.sum += other.sum
        self.min = min(self.min, other.min)
        self.max = max(self.max, other.max)

    def _ordered_buckets(self) -> Iterator[tuple[float, int]]:
        # Most negative first: a larger key in the negative store is a larger magnitude.
        for key in sorted(self._negative, reverse=True):
            yield -self._representative(key), self._negative[key]
        if self.zero_count:
            yield 0.0, self.zero_count
        for key in sorted(self._positive):
            yield self._representative(key), self._positive[key]

    def quantile(self, q: float) -> Optional[float]:
        """Estimate the ``q`` quantile (0 <= q <= 1).

        Returns:
            The estimate, or None when the histogram is empty
        """
        if not 0 <= q <= 1:
            raise ValueError(f"quantile must be within [0, 1], got {q}")
        if self.count == 0:
            return None
        if q == 0:
            return self.min
        if q == 1:
            return self.max

        rank = math.floor(q * (self.count - 1))
        seen = 0
        estimate = self.max
        for value, n in self._ordered_buckets():
            seen += n
            if seen > rank:
                estimate = value
                break
        return min(max(estimate, self.min), self.max)

    def percentile(self, p: float) -> Optional[float]:
        """Estimate the ``p``-th percentile (0 <= p <= 100)."""
        return self.quantile(p / 100.0)

    @property
    def mean(self) -> Optional[float]:
        if self.count == 0:
            return None
        return self.sum / self.count

    @property
    def bucket_count(self) -> int:
        """Number of occupied buckets (the memory footprint)."""
        return len(self._positive) + len(self._negative) + (1 if self.zero_count else 0)

    def to_dict(self) -> dict[str, Any]:
        """Convert summary statistics to a dictionary."""
        return {
            "count": self.count,
            "sum": self.sum,
            "min": self.min if self.count else None,
            "max": self.max if self.count else None,
            "avg": self.mean,
            "buckets": self.bucket_count,
        }
