"""
Scenario scheduling for stampede runs.

``ScenarioScheduler`` starts each scenario at its offset on the run clock
and runs overlapping scenarios concurrently, each driven by the executor
matching its kind.
"""

import asyncio
import logging
from typing import Any, Mapping

from .config import ScenarioConfig, format_duration
from .executors import create_executor
from .models import ScenarioStats
from .timeline import ExecutionEnvironment

logger = logging.getLogger(__name__)


def plan_scenarios(scenarios: Mapping[str, ScenarioConfig]) -> list[dict[str, Any]]:
    """Describe each scenario's scheduled window, ordered by start time."""
    rows = []
    for scenario in sorted(scenarios.values(), key=lambda s: (s.start_time, s.name)):
        rows.append({
            "name": scenario.name,
            "executor": scenario.executor.value,
            "exec": scenario.exec,
            "start": format_duration(scenario.start_time),
            "end": format_duration(scenario.start_time + scenario.total_duration),
            "graceful_stop": format_duration(scenario.graceful_stop),
            "max_vus": scenario.max_concurrency,
        })
    return rows


class ScenarioScheduler:
    """
    Starts every scenario at its offset on the global clock.

    Scenarios whose windows overlap run concurrently; each is driven by
    the executor matching its kind.
    """

    def __init__(self, scenarios: dict[str, ScenarioConfig], env: ExecutionEnvironment):
        self.scenarios = scenarios
        self.env = env

    @property
    def total_duration(self) -> float:
        """Latest scheduled end including graceful stops."""
        if not self.scenarios:
            return 0.0
        return max(
            s.start_time + s.total_duration + s.graceful_stop
            for s in self.scenarios.values()
        )

    def plan(self) -> list[dict[str, Any]]:
        """Describe each scenario's scheduled window, ordered by start time."""
        return plan_scenarios(self.scenarios)

    async def _run_scenario(self, scenario: ScenarioConfig) -> ScenarioStats:
        stats = ScenarioStats(name=scenario.name, executor=scenario.executor.value)
        if await self.env.wait_until(scenario.start_time):
            logger.info("Scenario %s skipped: run aborted before it started", scenario.name)
            return stats

        stats.started_at = self.env.clock.elapsed
        logger.info(
            "Starting scenario %s (%s, %s)",
            scenario.name,
            scenario.executor.value,
            format_duration(scenario.total_duration),
        )
        executor = create_executor(scenario, self.env, stats)
        try:
            await executor.run()
        finally:
            await executor.close()
            stats.finished_at = self.env.clock.elapsed
        logger.info(
            "Scenario %s finished: %d complete, %d failed, %d interrupted, %d dropped",
            scenario.name,
            stats.completed_iterations,
            stats.failed_iterations,
            stats.interrupted_iterations,
            stats.dropped_iterations,
        )
        return stats

    async def run(self) -> dict[str, ScenarioStats]:
        """Run every scenario to completion.

        Returns:
            Statistics keyed by scenario name
        """
        if not self.env.clock.started:
            self.env.clock.start()
        tasks = [
            asyncio.create_task(self._run_scenario(scenario), name=f"scenario-{name}")
            for name, scenario in self.scenarios.items()
        ]
        results = await asyncio.gather(*tasks)
        return {stats.name: stats for stats in results}
