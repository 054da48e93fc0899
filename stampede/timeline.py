"""
Run timing shared by the scheduler and the executors.

This module owns the run's single global clock and the time arithmetic
every executor relies on: piecewise-linear stage interpolation and the
start times of arrival-rate iterations. ``ExecutionEnvironment`` carries
the clock and the abort signal to every executor.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from .config import ScenarioConfig, Stage
from .metrics import MetricsRegistry


class RunClock:
    """Monotonic clock shared by every scenario of a run."""

    def __init__(self, now: Callable[[], float] = time.monotonic):
        self._now = now
        self._started: Optional[float] = None

    def start(self) -> None:
        self._started = self._now()

    @property
    def started(self) -> bool:
        return self._started is not None

    @property
    def elapsed(self) -> float:
        """Seconds since ``start()``; 0 before the clock starts."""
        if self._started is None:
            return 0.0
        return self._now() - self._started


def interpolate_target(start: float, stages: Sequence[Stage], elapsed: float) -> float:
    """
    Compute the interpolated target of a ramping profile.

    Stage ``i`` moves linearly from the previous target (``start`` for the
    first stage) to ``stages[i].target`` over ``stages[i].duration``.
    Zero-length stages jump straight to their target.

    Args:
        start: Target at elapsed time 0
        stages: Ordered stages
        elapsed: Seconds since the profile started

    Returns:
        Target at ``elapsed``; the last target once the profile has ended
    """
    if elapsed < 0 or not stages:
        return float(start)

    previous = float(start)
    offset = 0.0
    for stage in stages:
        if elapsed < offset + stage.duration:
            progress = (elapsed - offset) / stage.duration
            return previous + (stage.target - previous) * progress
        offset += stage.duration
        previous = float(stage.target)
    return previous


class ArrivalSchedule:
    """
    Start times of iterations for a ramping arrival rate.

    Rates are expressed per ``time_unit`` seconds. Iteration ``k`` starts
    at the instant where the integral of the interpolated rate reaches
    ``k``, for every ``k`` below the total area under the rate curve.

    Example usage:
        schedule = ArrivalSchedule(0, [Stage(10, 50)], time_unit=1.0)
        list(schedule.start_times())[:3]
    """

    def __init__(self, start_rate: float, stages: Sequence[Stage], time_unit: float = 1.0):
        if time_unit <= 0:
            raise ValueError("time_unit must be positive")
        self.start_rate = start_rate
        self.stages = list(stages)
        self.time_unit = time_unit

    def _segments(self) -> Iterator[tuple[float, float, float, float]]:
        """Yield (offset, duration, rate at start, rate at end) per second."""
        previous = self.start_rate / self.time_unit
        offset = 0.0
        for stage in self.stages:
            target = stage.target / self.time_unit
            if stage.duration > 0:
                yield offset, stage.duration, previous, target
            offset += stage.duration
            previous = target

    @property
    def duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def total_iterations(self) -> int:
        """Number of iterations the schedule starts."""
        area = sum((r0 + r1) / 2 * d for _, d, r0, r1 in self._segments())
        return max(0, math.ceil(area - 1e-9))

    def start_times(self) -> Iterator[float]:
        """Yield the offset of every iteration start, in ascending order."""
        k = 0
        cumulative = 0.0
        for offset, duration, r0, r1 in self._segments():
            slope = (r1 - r0) / duration
            area = (r0 + r1) / 2 * duration
            end = cumulative + area
            while k < end - 1e-9:
                need = k - cumulative
                # Solve r0*t + slope*t^2/2 = need for t in [0, duration].
                root = math.sqrt(max(0.0, r0 * r0 + 2 * slope * need))
                denominator = r0 + root
                tau = 0.0 if denominator <= 0 else 2 * need / denominator
                yield offset + min(max(tau, 0.0), duration)
                k += 1
            cumulative = end


@dataclass
class ExecutionEnvironment:
    """
    Shared state executors need from the run.

    Attributes:
        clock: Global run clock
        registry: Run-scoped metrics registry
        vu_factory: Creates a virtual user for a scenario
        abort_event: Set when the run is aborted
        tick_interval: Scheduling granularity in seconds
        hard_stop_timeout: Seconds between interrupting and cancelling a VU
        active_vus: VUs currently looping or running an iteration
        allocated_vus: VUs allocated across every scenario
    """

    clock: RunClock
    registry: MetricsRegistry
    vu_factory: Callable[[ScenarioConfig], Any]
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    tick_interval: float = 1.0
    hard_stop_timeout: float = 5.0
    active_vus: int = 0
    allocated_vus: int = 0

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    async def wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless the run aborts first.

        Returns:
            True if the run was aborted
        """
        if self.aborted:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.aborted
        try:
            await asyncio.wait_for(self.abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_until(self, offset: float) -> bool:
        """Sleep until the run clock reaches ``offset``; True if aborted."""
        remaining = offset - self.clock.elapsed
        if remaining <= 0:
            return self.aborted
        return await self.wait(remaining)

    async def wait_for_tasks(self, tasks: Iterable[asyncio.Task], deadline: float) -> None:
        """Wait until every task is done, the clock passes ``deadline`` or the run aborts."""
        pending = {t for t in tasks if not t.done()}
        if not pending:
            return
        abort_waiter = asyncio.ensure_future(self.abort_event.wait())
        try:
            while pending and not self.aborted:
                remaining = deadline - self.clock.elapsed
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait(
                    pending | {abort_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done
        finally:
            abort_waiter.cancel()
