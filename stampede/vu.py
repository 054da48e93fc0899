"""
Virtual users and the contexts handed to workload code.

A ``VirtualUser`` runs one workload iteration at a time. Workloads receive
a ``VUContext`` exposing the setup data, per-VU scratch state, the HTTP
client, checks, groups, think time and custom metric emission:

    async def default(ctx, data):
        async with ctx.group("Auth"):
            res = await ctx.http.post(f"{data['base']}/login", json=CREDS)
            ctx.check(res, {"logged in": lambda r: r.status == 200})
        await ctx.sleep(1)
"""

import asyncio
import copy
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Union

import httpx

from .config import HttpOptions, ScenarioConfig
from .http import HttpClient
from .metrics import (
    CHECKS,
    GROUP_DURATION,
    ITERATION_DURATION,
    ITERATION_ERRORS,
    ITERATIONS,
    MetricDefinition,
    MetricsRegistry,
)
from .models import EMPTY_TAGS, IterationInterrupted, MetricType, TagSet, ValueType

logger = logging.getLogger(__name__)

Workload = Callable[..., Awaitable[Any]]


class IterationOutcome(Enum):
    """How an iteration ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class Actor:
    """
    Execution state shared by a context and the HTTP client it uses.

    Holds the base tags, the current group path and the interrupt flag
    that every suspension point observes.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        tags: TagSet,
        http_options: Optional[HttpOptions] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        group_path: str = "",
    ):
        self.registry = registry
        self.tags = tags
        self.http_options = http_options or HttpOptions()
        self.group_path = group_path
        self._transport = transport
        self._interrupt = asyncio.Event()
        self._http: Optional[HttpClient] = None

    @property
    def interrupted(self) -> bool:
        return self._interrupt.is_set()

    def interrupt(self) -> None:
        """Stop the current iteration at its next suspension point."""
        self._interrupt.set()

    def current_tags(self) -> TagSet:
        return self.tags.merge({"group": self.group_path})

    async def wait_interrupt(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if interrupted meanwhile."""
        if self.interrupted:
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.interrupted
        try:
            await asyncio.wait_for(self._interrupt.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    @property
    def http(self) -> HttpClient:
        if self._http is None:
            self._http = HttpClient(
                self.http_options,
                self.registry,
                tags=self.current_tags,
                interrupt=self._interrupt,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        """Release the HTTP client (and with it every pooled connection)."""
        if self._http is not None:
            await self._http.close()
            self._http = None


class VirtualUser(Actor):
    """
    One simulated client executing a scenario's workload in a loop.

    Attributes:
        id: Run-unique VU number, starting at 1
        scenario: Scenario the VU belongs to
        data: This VU's own copy of the setup data
        scratch: Per-VU state kept across iterations (tokens, ids)
        iterations: Iterations started so far
        retiring: Set when the executor wants the VU to stop looping
    """

    def __init__(
        self,
        vu_id: int,
        scenario: ScenarioConfig,
        workload: Workload,
        registry: MetricsRegistry,
        data: Any = None,
        http_options: Optional[HttpOptions] = None,
        global_tags: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        tags = TagSet(global_tags).merge(scenario.tags).merge({"scenario": scenario.name})
        super().__init__(registry, tags, http_options, transport)
        self.id = vu_id
        self.scenario = scenario
        self.workload = workload
        self.data = copy.deepcopy(data)
        self.scratch: dict[str, Any] = {}
        self.iterations = 0
        self.retiring = False

    def reset(self) -> None:
        """Clear interrupt and retirement before the VU loops again."""
        self._interrupt.clear()
        self.retiring = False

    async def run_iteration(self) -> IterationOutcome:
        """
        Run the workload once.

        Errors raised by the workload are logged and counted as
        ``iteration_errors``; they never propagate. An interrupted
        iteration emits no iteration samples.

        Returns:
            How the iteration ended
        """
        ctx = VUContext(self, self.iterations)
        self.iterations += 1
        self.group_path = ""
        outcome = IterationOutcome.COMPLETED
        started = time.monotonic()
        try:
            await self.workload(ctx, self.data)
        except IterationInterrupted:
            return IterationOutcome.INTERRUPTED
        except Exception as e:
            outcome = IterationOutcome.FAILED
            logger.warning(
                "VU %d (%s) iteration %d failed: %s: %s",
                self.id,
                self.scenario.name,
                ctx.iteration,
                type(e).__name__,
                e,
            )
            logger.debug("Iteration traceback", exc_info=True)
            self.registry.push(ITERATION_ERRORS, 1, self.tags.merge({"error": type(e).__name__}))
        finally:
            self.group_path = ""

        duration_ms = (time.monotonic() - started) * 1000
        self.registry.push(ITERATIONS, 1, self.tags)
        self.registry.push(ITERATION_DURATION, duration_ms, self.tags)
        return outcome

    def __repr__(self) -> str:
        return f"VirtualUser({self.id}, scenario={self.scenario.name!r})"


class BaseContext:
    """Capabilities shared by workload and lifecycle contexts."""

    def __init__(self, actor: Actor):
        self._actor = actor

    @property
    def registry(self) -> MetricsRegistry:
        return self._actor.registry

    @property
    def http(self) -> HttpClient:
        """Per-VU HTTP client; connections and cookies persist across iterations."""
        return self._actor.http

    @property
    def tags(self) -> TagSet:
        """Tags attached to samples emitted right now."""
        return self._actor.current_tags()

    @property
    def group_path(self) -> str:
        return self._actor.group_path

    def check(
        self,
        value: Any,
        checks: Mapping[str, Union[Callable[[Any], Any], bool]],
        tags: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """
        Record named assertions about ``value``.

        Each entry emits one ``checks`` sample. A predicate that raises
        counts as a failed check. Failures never abort the iteration.

        Args:
            value: Object handed to every predicate (usually a Response)
            checks: Mapping of check name to predicate or precomputed bool
            tags: Extra tags for the emitted samples

        Returns:
            True if every check passed
        """
        all_passed = True
        group_path = self._actor.group_path
        for name, predicate in checks.items():
            try:
                passed = bool(predicate(value)) if callable(predicate) else bool(predicate)
            except Exception as e:
                logger.warning("Check '%s' raised %s: %s", name, type(e).__name__, e)
                passed = False
            sample_tags = self.tags.merge({"check": name}).merge(tags)
            self.registry.push(CHECKS, 1 if passed else 0, sample_tags)
            self.registry.groups.record_check(group_path, name, passed)
            all_passed = all_passed and passed
        return all_passed

    @asynccontextmanager
    async def group(self, name: str) -> AsyncIterator[str]:
        """Run a block inside a named group.

        Samples emitted inside carry the ``group`` tag with the nested
        path (``::outer::inner``); a completed group emits ``group_duration``.
        """
        if not name or "::" in name:
            raise ValueError(f"invalid group name: {name!r}")
        actor = self._actor
        parent = actor.group_path
        path = f"{parent}::{name}"
        self.registry.groups.add_group(path)
        actor.group_path = path
        started = time.monotonic()
        try:
            yield path
        finally:
            actor.group_path = parent
        duration_ms = (time.monotonic() - started) * 1000
        self.registry.push(GROUP_DURATION, duration_ms, actor.tags.merge({"group": path}))

    async def sleep(self, seconds: float) -> None:
        """Think time: suspend only this VU.

        Raises:
            IterationInterrupted: If the VU is interrupted while sleeping
        """
        if await self._actor.wait_interrupt(seconds):
            raise IterationInterrupted()

    def add(
        self,
        metric: Union[MetricDefinition, str],
        value: float,
        tags: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Emit a sample to a custom or built-in metric.

        Args:
            metric: A metric definition or the name of a defined metric
            value: Sample value (booleans count as 1/0 for Rate metrics)
            tags: Extra tags for the sample

        Raises:
            KeyError: If ``metric`` is a name that was never defined
        """
        if isinstance(metric, MetricDefinition):
            metric.register(self.registry)
            name = metric.name
        else:
            name = metric
        self.registry.push(name, float(value), self.tags.merge(tags))

    def _emit(self, name, metric_type, value, tags, contains=ValueType.DEFAULT):
        self.registry.define(name, metric_type, contains)
        self.registry.push(name, float(value), self.tags.merge(tags))

    def counter(self, name: str, value: float = 1, tags: Optional[Mapping[str, str]] = None) -> None:
        self._emit(name, MetricType.COUNTER, value, tags)

    def gauge(self, name: str, value: float, tags: Optional[Mapping[str, str]] = None) -> None:
        self._emit(name, MetricType.GAUGE, value, tags)

    def rate(self, name: str, passed: bool, tags: Optional[Mapping[str, str]] = None) -> None:
        self._emit(name, MetricType.RATE, 1 if passed else 0, tags)

    def trend(
        self,
        name: str,
        value: float,
        tags: Optional[Mapping[str, str]] = None,
        is_time: bool = False,
    ) -> None:
        contains = ValueType.TIME if is_time else ValueType.DEFAULT
        self._emit(name, MetricType.TREND, value, tags, contains)


class VUContext(BaseContext):
    """Context passed to a workload for a single iteration."""

    def __init__(self, vu: VirtualUser, iteration: int):
        super().__init__(vu)
        self.iteration = iteration

    @property
    def vu_id(self) -> int:
        return self._actor.id

    @property
    def scenario(self) -> str:
        return self._actor.scenario.name

    @property
    def data(self) -> Any:
        return self._actor.data

    @property
    def scratch(self) -> dict[str, Any]:
        return self._actor.scratch


class LifecycleContext(BaseContext):
    """Context for the setup and teardown hooks; there is no VU."""

    def __init__(
        self,
        stage: str,
        registry: MetricsRegistry,
        http_options: Optional[HttpOptions] = None,
        global_tags: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        actor = Actor(
            registry,
            TagSet(global_tags) if global_tags else EMPTY_TAGS,
            http_options,
            transport,
            group_path=f"::{stage}",
        )
        super().__init__(actor)
        self.stage = stage
        registry.groups.add_group(actor.group_path)

    async def close(self) -> None:
        await self._actor.close()
