"""
Executors driving virtual users for each scenario kind.

- ``constant-vus``: a fixed number of VUs loop for the scenario duration.
- ``ramping-vus``: the number of looping VUs follows the interpolated
  stage targets, re-evaluated every tick.
- ``ramping-arrival-rate``: iterations start at the interpolated rate,
  each on an idle VU from a bounded pool; starts with no VU available are
  dropped and counted.

Stopping follows the same escalation everywhere: retire (no new
iterations), wait the grace period, interrupt at the next suspension point,
wait ``hard_stop_timeout``, then cancel the task.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

from .config import ExecutorKind, ScenarioConfig
from .metrics import DROPPED_ITERATIONS
from .models import ScenarioStats, TagSet
from .timeline import ArrivalSchedule, ExecutionEnvironment, interpolate_target
from .vu import IterationOutcome, VirtualUser

logger = logging.getLogger(__name__)


class Executor(ABC):
    """Base class for scenario executors."""

    kind: ExecutorKind

    def __init__(self, scenario: ScenarioConfig, env: ExecutionEnvironment, stats: ScenarioStats):
        self.scenario = scenario
        self.env = env
        self.stats = stats
        self.vus: list[VirtualUser] = []

    def allocate(self) -> VirtualUser:
        """Create a new VU for this scenario."""
        vu = self.env.vu_factory(self.scenario)
        self.vus.append(vu)
        self.env.allocated_vus += 1
        self.stats.max_vus = len(self.vus)
        return vu

    def record(self, outcome: IterationOutcome) -> None:
        if outcome == IterationOutcome.COMPLETED:
            self.stats.completed_iterations += 1
        elif outcome == IterationOutcome.FAILED:
            self.stats.failed_iterations += 1
        else:
            self.stats.interrupted_iterations += 1

    async def iterate(self, vu: VirtualUser) -> IterationOutcome:
        """Run one iteration, counting it as interrupted if the task is cancelled."""
        try:
            outcome = await vu.run_iteration()
        except asyncio.CancelledError:
            self.stats.interrupted_iterations += 1
            raise
        self.record(outcome)
        return outcome

    async def loop(self, vu: VirtualUser, budget: Optional[int] = None) -> None:
        """Run iterations until the VU retires, is interrupted or exhausts ``budget``."""
        self.env.active_vus += 1
        done = 0
        try:
            while not vu.retiring and not self.env.aborted:
                outcome = await self.iterate(vu)
                if outcome == IterationOutcome.INTERRUPTED:
                    break
                done += 1
                if budget is not None and done >= budget:
                    break
                await asyncio.sleep(0)
        finally:
            self.env.active_vus -= 1

    async def stop(self, tasks: dict[asyncio.Task, VirtualUser], grace: float) -> None:
        """
        Stop looping VUs.

        Args:
            tasks: Running tasks and the VU each one drives
            grace: Seconds in-flight iterations may take to finish
        """
        for vu in tasks.values():
            vu.retiring = True
        pending = {t for t in tasks if not t.done()}
        if not pending:
            return
        if grace > 0 and not self.env.aborted:
            _, pending = await asyncio.wait(pending, timeout=grace)
        if not pending:
            return

        logger.debug(
            "Interrupting %d VU(s) of scenario %s", len(pending), self.scenario.name
        )
        for task in pending:
            tasks[task].interrupt()
        _, pending = await asyncio.wait(pending, timeout=self.env.hard_stop_timeout)
        if pending:
            logger.warning(
                "Cancelling %d VU(s) of scenario %s after hard stop timeout",
                len(pending),
                self.scenario.name,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    @abstractmethod
    async def run(self) -> None:
        """Drive the scenario until it ends and its VUs have stopped."""

    async def close(self) -> None:
        for vu in self.vus:
            await vu.close()


class ConstantVUsExecutor(Executor):
    """A fixed number of VUs loop for the whole duration."""

    kind = ExecutorKind.CONSTANT_VUS

    async def run(self) -> None:
        scenario = self.scenario
        deadline = self.env.clock.elapsed + scenario.duration
        vus = [self.allocate() for _ in range(scenario.vus)]
        tasks = {
            asyncio.create_task(self.loop(vu, scenario.iterations), name=f"vu-{vu.id}"): vu
            for vu in vus
        }
        await self.env.wait_for_tasks(tasks, deadline)
        await self.stop(tasks, scenario.graceful_stop)


class RampingVUsExecutor(Executor):
    """The number of looping VUs follows the stage targets."""

    kind = ExecutorKind.RAMPING_VUS

    def __init__(self, scenario, env, stats):
        super().__init__(scenario, env, stats)
        self._tasks: dict[asyncio.Task, VirtualUser] = {}
        self._running: dict[int, asyncio.Task] = {}
        self._guards: dict[int, asyncio.Task] = {}

    def _start(self, vu: VirtualUser) -> None:
        vu.reset()
        task = asyncio.create_task(self.loop(vu), name=f"vu-{vu.id}")
        self._tasks[task] = vu
        self._running[vu.id] = task

    async def _ramp_down_guard(self, vu: VirtualUser, task: asyncio.Task) -> None:
        """Interrupt a retired VU after gracefulRampDown, cancel it after hardStopTimeout."""
        await asyncio.wait({task}, timeout=self.scenario.graceful_ramp_down)
        if task.done() or not vu.retiring:
            return
        vu.interrupt()
        await asyncio.wait({task}, timeout=self.env.hard_stop_timeout)
        if not task.done() and vu.retiring:
            logger.warning("Cancelling VU %d of scenario %s during ramp-down", vu.id, self.scenario.name)
            task.cancel()

    def scale(self, pool: list[VirtualUser], target: int) -> None:
        """Converge the number of looping VUs to ``target``."""
        for index, vu in enumerate(pool):
            task = self._running.get(vu.id)
            alive = task is not None and not task.done()
            if index < target:
                if alive and vu.retiring and not vu.interrupted:
                    vu.retiring = False
                    guard = self._guards.pop(vu.id, None)
                    if guard is not None:
                        guard.cancel()
                elif not alive:
                    self._start(vu)
            elif alive and not vu.retiring:
                vu.retiring = True
                self._guards[vu.id] = asyncio.create_task(self._ramp_down_guard(vu, task))

    async def run(self) -> None:
        scenario = self.scenario
        clock = self.env.clock
        started = clock.elapsed
        total = scenario.total_duration
        pool = [self.allocate() for _ in range(scenario.max_concurrency)]

        while True:
            elapsed = clock.elapsed - started
            current = interpolate_target(scenario.start_vus, scenario.stages, elapsed)
            self.scale(pool, int(math.floor(current + 1e-9)))
            remaining = total - elapsed
            if remaining <= 0:
                break
            if await self.env.wait(min(self.env.tick_interval, remaining)):
                break

        await self.stop(self._tasks, scenario.graceful_stop)
        guards = [g for g in self._guards.values() if not g.done()]
        for guard in guards:
            guard.cancel()
        await asyncio.gather(*guards, return_exceptions=True)


class RampingArrivalRateExecutor(Executor):
    """Iterations start at the interpolated rate on a bounded VU pool."""

    kind = ExecutorKind.RAMPING_ARRIVAL_RATE

    def __init__(self, scenario, env, stats):
        super().__init__(scenario, env, stats)
        self._idle: deque[VirtualUser] = deque()
        self._inflight: dict[asyncio.Task, VirtualUser] = {}
        self._drop_warned = False

    def _acquire(self) -> Optional[VirtualUser]:
        if self._idle:
            return self._idle.popleft()
        if len(self.vus) < self.scenario.max_vus:
            logger.debug("Allocating VU %d/%d for %s", len(self.vus) + 1, self.scenario.max_vus, self.scenario.name)
            return self.allocate()
        return None

    def _drop(self) -> None:
        self.stats.dropped_iterations += 1
        self.env.registry.push(DROPPED_ITERATIONS, 1, TagSet(scenario=self.scenario.name))
        if not self._drop_warned:
            self._drop_warned = True
            logger.warning(
                "Insufficient VUs in scenario %s (maxVUs=%d): dropping iterations",
                self.scenario.name,
                self.scenario.max_vus,
            )

    async def _run_one(self, vu: VirtualUser) -> None:
        self.env.active_vus += 1
        try:
            outcome = await self.iterate(vu)
        finally:
            self.env.active_vus -= 1
        if outcome != IterationOutcome.INTERRUPTED:
            self._idle.append(vu)

    async def run(self) -> None:
        scenario = self.scenario
        clock = self.env.clock
        started = clock.elapsed
        for _ in range(scenario.pre_allocated_vus):
            self._idle.append(self.allocate())

        schedule = ArrivalSchedule(scenario.start_rate, scenario.stages, scenario.time_unit)
        aborted = False
        for offset in schedule.start_times():
            if await self.env.wait_until(started + offset):
                aborted = True
                break
            vu = self._acquire()
            if vu is None:
                self._drop()
                continue
            vu.reset()
            task = asyncio.create_task(self._run_one(vu), name=f"vu-{vu.id}")
            self._inflight[task] = vu
            task.add_done_callback(lambda t: self._inflight.pop(t, None))

        if not aborted:
            await self.env.wait_until(started + schedule.duration)
        await self.stop(dict(self._inflight), scenario.graceful_stop)


EXECUTORS: dict[ExecutorKind, type[Executor]] = {
    ExecutorKind.CONSTANT_VUS: ConstantVUsExecutor,
    ExecutorKind.RAMPING_VUS: RampingVUsExecutor,
    ExecutorKind.RAMPING_ARRIVAL_RATE: RampingArrivalRateExecutor,
}


def create_executor(
    scenario: ScenarioConfig,
    env: ExecutionEnvironment,
    stats: ScenarioStats,
) -> Executor:
    """Build the executor matching ``scenario.executor``."""
    return EXECUTORS[scenario.executor](scenario, env, stats)
