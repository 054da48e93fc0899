"""
Run orchestration for stampede.

``TestRun`` bookends the scenarios with the lifecycle hooks: setup runs
once before any scenario, teardown once after the last VU stops, then the
thresholds are evaluated and the summary is exported. Only a setup failure
ends a run early; everything below the run level is counted and logged.
"""

import asyncio
import concurrent.futures
import copy
import functools
import inspect
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TextIO

import httpx

from .config import EngineOptions, format_duration
from .metrics import VUS, VUS_MAX, MetricsRegistry, register_builtin_metrics
from .models import ConfigValidationError, RunResult, SetupError
from .reporter import build_summary, text_summary, to_json, write_artifacts
from .scheduler import ScenarioScheduler
from .timeline import ExecutionEnvironment, RunClock
from .script import Script
from .thresholds import ThresholdEvaluator
from .vu import LifecycleContext, VirtualUser

logger = logging.getLogger(__name__)


class TestRun:
    """
    A single execution of a script.

    Attributes:
        script: The loaded script
        options: Validated run options
        registry: Run-scoped metrics registry shared by every component
        clock: Global run clock
        setup_data: Value returned by the setup hook

    Example usage:
        run = TestRun(load_script("smoke.py"))
        result = asyncio.run(run.run())
        sys.exit(result.exit_code)
    """

    __test__ = False

    def __init__(
        self,
        script: Script,
        options: Optional[EngineOptions] = None,
        output_dir: Path | str = ".",
        summary_export: Optional[Path | str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ):
        """
        Initialize the run.

        Args:
            script: Script providing workloads and hooks
            options: Run options; parsed from ``script.options`` if omitted
            output_dir: Base directory for summary artifacts
            summary_export: Extra path receiving the summary data as JSON
            transport: httpx transport shared by every HTTP client
            stdout: Stream for the ``stdout`` summary artifact
            stderr: Stream for the ``stderr`` summary artifact
        """
        self.script = script
        self.options = options or EngineOptions.from_dict(script.options)
        self.output_dir = Path(output_dir)
        self.summary_export = Path(summary_export) if summary_export else None
        self.transport = transport
        self.stdout = stdout
        self.stderr = stderr
        self.registry = MetricsRegistry()
        self.clock = RunClock()
        self.evaluator: Optional[ThresholdEvaluator] = None
        self.setup_data: Any = None
        self.abort_reason: Optional[str] = None
        self.aborted_by_user = False
        self._abort_event: Optional[asyncio.Event] = None
        self._next_vu_id = 0
        self._prepared = False

    def prepare(self) -> None:
        """
        Define metrics and thresholds and check the script against its scenarios.

        Raises:
            ConfigValidationError: If thresholds or scenario workloads are invalid
        """
        if self._prepared:
            return
        register_builtin_metrics(self.registry)
        for definition in self.script.metrics:
            definition.register(self.registry)

        self.evaluator = ThresholdEvaluator(self.options.thresholds, self.registry)
        self.evaluator.register_submetrics()

        errors = self.evaluator.validate_metrics()
        errors.extend(self.script.validate(self.options.scenarios.values()))
        for trend_stat in self.options.summary_trend_stats:
            if trend_stat not in ("avg", "min", "med", "max", "count") and not trend_stat.startswith("p("):
                errors.append(f"summaryTrendStats: unknown statistic '{trend_stat}'")
        if errors:
            raise ConfigValidationError(
                f"Run validation failed with {len(errors)} error(s)", errors=errors
            )
        self._prepared = True

    def _vu_factory(self, scenario) -> VirtualUser:
        self._next_vu_id += 1
        return VirtualUser(
            self._next_vu_id,
            scenario,
            self.script.resolve_exec(scenario.exec),
            self.registry,
            data=self.setup_data,
            http_options=self.options.http,
            global_tags=self.options.tags,
            transport=self.transport,
        )

    def abort(self, reason: str, by_user: bool = False) -> None:
        """Stop every scenario early; teardown and the summary still run."""
        if self.abort_reason is not None:
            return
        self.abort_reason = reason
        self.aborted_by_user = by_user
        logger.warning("Aborting run: %s", reason)
        if self._abort_event is not None:
            self._abort_event.set()

    async def _call_hook(
        self,
        stage: str,
        hook: Callable[..., Any],
        timeout: float,
        *args: Any,
    ) -> Any:
        ctx = LifecycleContext(
            stage,
            self.registry,
            http_options=self.options.http,
            global_tags=self.options.tags,
            transport=self.transport,
        )
        if inspect.iscoroutinefunction(hook):
            try:
                return await asyncio.wait_for(hook(ctx, *args), timeout=timeout)
            finally:
                await ctx.close()

        # Private pool, abandoned on timeout without being joined.
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"stampede-{stage}"
        )
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(pool, functools.partial(hook, ctx, *args)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s hook is still running after %s; abandoning its thread",
                stage,
                format_duration(timeout),
            )
            raise
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            await ctx.close()

    async def _run_setup(self) -> Any:
        if self.script.setup is None:
            return None
        logger.info("Running setup")
        try:
            data = await self._call_hook("setup", self.script.setup, self.options.setup_timeout)
        except asyncio.TimeoutError:
            raise SetupError(
                f"setup exceeded setupTimeout of {format_duration(self.options.setup_timeout)}"
            ) from None
        except Exception as e:
            raise SetupError(f"setup failed: {type(e).__name__}: {e}") from e
        try:
            copy.deepcopy(data)
        except Exception as e:
            raise SetupError(f"setup returned data that cannot be copied: {e}") from e
        return data

    async def _run_teardown(self) -> Optional[str]:
        if self.script.teardown is None:
            return None
        logger.info("Running teardown")
        try:
            await self._call_hook(
                "teardown",
                self.script.teardown,
                self.options.teardown_timeout,
                copy.deepcopy(self.setup_data),
            )
        except asyncio.TimeoutError:
            message = (
                f"teardown exceeded teardownTimeout of "
                f"{format_duration(self.options.teardown_timeout)}"
            )
            logger.error(message)
            return message
        except Exception as e:
            logger.error("Teardown failed: %s: %s", type(e).__name__, e)
            return f"{type(e).__name__}: {e}"
        return None

    async def _sample_vus(self, env: ExecutionEnvironment) -> None:
        while True:
            self.registry.push(VUS, env.active_vus)
            self.registry.push(VUS_MAX, env.allocated_vus)
            await asyncio.sleep(self.options.tick_interval)

    async def _watch_thresholds(self) -> None:
        if not any(t.abort_on_fail for t in self.evaluator.thresholds):
            return
        while not self._abort_event.is_set():
            await asyncio.sleep(self.options.threshold_eval_interval)
            failing = self.evaluator.failing_aborts(self.clock.elapsed)
            if failing:
                first = failing[0]
                self.abort(
                    f"threshold {first.selector} '{first.expression}' crossed "
                    f"(observed {first.observed})"
                )

    async def _export_summary(self, summary: Mapping[str, Any]) -> list[str]:
        if self.summary_export is not None:
            self.summary_export.parent.mkdir(parents=True, exist_ok=True)
            self.summary_export.write_text(to_json(summary), encoding="utf-8")
            logger.info("Summary exported to %s", self.summary_export)

        hook = self.script.handle_summary
        if hook is not None:
            try:
                artifacts = hook(summary)
                if inspect.isawaitable(artifacts):
                    artifacts = await artifacts
                if not isinstance(artifacts, Mapping):
                    raise TypeError(
                        f"handle_summary must return a mapping, got {type(artifacts).__name__}"
                    )
                return write_artifacts(artifacts, self.output_dir, self.stdout, self.stderr)
            except Exception as e:
                logger.error(
                    "handle_summary failed (%s: %s); writing the default summary",
                    type(e).__name__,
                    e,
                )
        return write_artifacts(
            {"stdout": text_summary(summary)}, self.output_dir, self.stdout, self.stderr
        )

    async def run(self) -> RunResult:
        """
        Execute the run: setup, scenarios, teardown, thresholds, summary.

        Returns:
            RunResult; ``exit_code`` reflects setup, abort and threshold outcomes

        Raises:
            ConfigValidationError: If the run cannot be prepared
        """
        self.prepare()
        result = RunResult(start_time=datetime.now())
        self._abort_event = asyncio.Event()
        if self.abort_reason is not None:
            self._abort_event.set()

        try:
            self.setup_data = await self._run_setup()
        except SetupError as e:
            logger.error("%s", e)
            result.setup_error = str(e)
            result.end_time = datetime.now()
            return result

        # Scenario offsets, abort delays and counter rates are measured
        # from here, after setup.
        self.clock.start()

        env = ExecutionEnvironment(
            clock=self.clock,
            registry=self.registry,
            vu_factory=self._vu_factory,
            abort_event=self._abort_event,
            tick_interval=self.options.tick_interval,
            hard_stop_timeout=self.options.hard_stop_timeout,
        )
        scheduler = ScenarioScheduler(self.options.scenarios, env)
        monitors = [
            asyncio.create_task(self._sample_vus(env), name="vu-sampler"),
            asyncio.create_task(self._watch_thresholds(), name="threshold-monitor"),
        ]
        try:
            result.scenarios = await scheduler.run()
        finally:
            for monitor in monitors:
                monitor.cancel()
            await asyncio.gather(*monitors, return_exceptions=True)
        self.registry.push(VUS, env.active_vus)
        self.registry.push(VUS_MAX, env.allocated_vus)

        result.teardown_error = await self._run_teardown()

        elapsed = self.clock.elapsed
        result.thresholds = self.evaluator.evaluate(elapsed)
        for failed in result.failed_thresholds:
            logger.error(
                "Threshold %s '%s' failed%s",
                failed.selector,
                failed.expression,
                f" (observed {failed.observed:g})" if failed.observed is not None else f": {failed.message}",
            )

        result.abort_reason = self.abort_reason
        result.aborted_by_user = self.aborted_by_user
        result.summary = build_summary(
            self.registry,
            elapsed,
            thresholds=result.thresholds,
            scenarios=result.scenarios,
            trend_stats=self.options.summary_trend_stats,
        )
        result.artifacts = await self._export_summary(result.summary)
        result.end_time = datetime.now()
        return result


def run_script(script: Script, options: Optional[EngineOptions] = None, **kwargs: Any) -> RunResult:
    """Run a script to completion on a new event loop."""
    return asyncio.run(TestRun(script, options, **kwargs).run())
