"""
Tests for virtual users and the workload context.
"""

import asyncio

import pytest

from .config import ExecutorKind, ScenarioConfig
from .metrics import (
    CHECKS,
    GROUP_DURATION,
    ITERATION_ERRORS,
    ITERATIONS,
    Counter,
    Trend,
)
from .models import MetricType, TagSet, ValueType
from .vu import IterationOutcome, LifecycleContext, VirtualUser, VUContext

SCENARIO = ScenarioConfig(
    "browse", ExecutorKind.CONSTANT_VUS, vus=1, duration=1, tags={"team": "web"}
)


async def noop(ctx, data):
    pass


def make_vu(registry, workload=noop, data=None, vu_id=1) -> VirtualUser:
    return VirtualUser(vu_id, SCENARIO, workload, registry, data=data, global_tags={"env": "test"})


class TestChecks:
    """Tests for ctx.check."""

    def test_records_every_named_check(self, registry):
        ctx = VUContext(make_vu(registry), 0)
        passed = ctx.check(5, {
            "positive": lambda v: v > 0,
            "big": lambda v: v > 10,
            "raises": lambda v: 1 / 0,
            "precomputed": True,
        })

        assert passed is False
        sink = registry.get(CHECKS).sink
        assert (sink.passes, sink.fails) == (2, 2)
        assert registry.groups.totals() == (2, 2)

    def test_check_samples_carry_vu_tags(self, registry):
        registry.add_submetric(CHECKS, TagSet(check="positive", scenario="browse", team="web", env="test"))
        ctx = VUContext(make_vu(registry), 0)
        assert ctx.check(1, {"positive": lambda v: v > 0})

        sub = registry.get(CHECKS).submetrics[
            TagSet(check="positive", scenario="browse", team="web", env="test")
        ]
        assert sub.sink.passes == 1


class TestGroups:
    """Tests for ctx.group."""

    @pytest.mark.asyncio
    async def test_nested_group_paths(self, registry):
        ctx = VUContext(make_vu(registry), 0)
        async with ctx.group("Auth") as outer:
            assert outer == "::Auth"
            assert ctx.tags["group"] == "::Auth"
            async with ctx.group("Login") as inner:
                assert inner == "::Auth::Login"
                ctx.check(None, {"logged in": True})
        assert ctx.group_path == ""
        assert ctx.tags["group"] == ""

        assert registry.get(GROUP_DURATION).sink.histogram.count == 2
        tree = registry.groups.to_dict()
        login = tree["groups"][0]["groups"][0]
        assert login["checks"][0]["path"] == "::Auth::Login::logged in"

    @pytest.mark.asyncio
    async def test_failed_group_restores_path_without_duration(self, registry):
        ctx = VUContext(make_vu(registry), 0)
        with pytest.raises(RuntimeError):
            async with ctx.group("Checkout"):
                raise RuntimeError("payment declined")
        assert ctx.group_path == ""
        assert registry.get(GROUP_DURATION).sink.empty

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "a::b"])
    async def test_invalid_group_names(self, registry, name):
        ctx = VUContext(make_vu(registry), 0)
        with pytest.raises(ValueError):
            async with ctx.group(name):
                pass


class TestIterations:
    """Tests for VirtualUser.run_iteration."""

    @pytest.mark.asyncio
    async def test_completed_iteration_emits_samples(self, registry):
        vu = make_vu(registry)
        assert await vu.run_iteration() == IterationOutcome.COMPLETED
        assert await vu.run_iteration() == IterationOutcome.COMPLETED
        assert vu.iterations == 2
        assert registry.get(ITERATIONS).sink.count == 2
        assert registry.get("iteration_duration").sink.histogram.count == 2

    @pytest.mark.asyncio
    async def test_errors_are_counted_not_raised(self, registry):
        async def broken(ctx, data):
            raise KeyError("token")

        registry.add_submetric(ITERATION_ERRORS, TagSet(error="KeyError"))
        vu = make_vu(registry, broken)
        assert await vu.run_iteration() == IterationOutcome.FAILED

        errors = registry.get(ITERATION_ERRORS)
        assert errors.sink.count == 1
        assert errors.submetrics[TagSet(error="KeyError")].sink.count == 1
        assert registry.get(ITERATIONS).sink.count == 1

    @pytest.mark.asyncio
    async def test_interrupt_ends_sleep(self, registry):
        async def sleepy(ctx, data):
            await ctx.sleep(10)

        vu = make_vu(registry, sleepy)
        task = asyncio.create_task(vu.run_iteration())
        await asyncio.sleep(0.01)
        vu.interrupt()

        assert await asyncio.wait_for(task, timeout=1) == IterationOutcome.INTERRUPTED
        assert registry.get(ITERATIONS).sink.empty

    @pytest.mark.asyncio
    async def test_interrupt_is_not_swallowed_by_except_exception(self, registry):
        async def careless(ctx, data):
            try:
                await ctx.sleep(10)
            except Exception:
                pass

        vu = make_vu(registry, careless)
        vu.interrupt()
        assert await vu.run_iteration() == IterationOutcome.INTERRUPTED

    def test_reset_clears_interrupt(self, registry):
        vu = make_vu(registry)
        vu.interrupt()
        vu.retiring = True
        vu.reset()
        assert not vu.interrupted
        assert not vu.retiring

    @pytest.mark.asyncio
    async def test_group_path_reset_between_iterations(self, registry):
        paths = []

        async def leaky(ctx, data):
            paths.append(ctx.group_path)
            async with ctx.group("Outer"):
                raise ValueError("boom")

        vu = make_vu(registry, leaky)
        await vu.run_iteration()
        await vu.run_iteration()
        assert paths == ["", ""]


class TestSetupData:
    """Tests for per-VU copies of the setup data."""

    @pytest.mark.asyncio
    async def test_mutations_stay_within_one_vu(self, registry):
        data = {"users": ["alice"]}

        async def mutate(ctx, d):
            d["users"].append(f"vu{ctx.vu_id}")
            ctx.scratch["seen"] = ctx.scratch.get("seen", 0) + 1

        first = make_vu(registry, mutate, data, vu_id=1)
        second = make_vu(registry, mutate, data, vu_id=2)
        await first.run_iteration()
        await first.run_iteration()
        await second.run_iteration()

        assert data == {"users": ["alice"]}
        assert first.data["users"] == ["alice", "vu1", "vu1"]
        assert second.data["users"] == ["alice", "vu2"]
        assert first.scratch == {"seen": 2}
        assert second.scratch == {"seen": 1}


class TestCustomMetrics:
    """Tests for custom metric emission from the context."""

    def test_definitions_and_helpers(self, registry):
        ctx = VUContext(make_vu(registry), 0)
        ctx.add(Counter("errors"), 2)
        ctx.add(Trend("login_time", is_time=True), 120)
        ctx.counter("logins")
        ctx.gauge("queue_depth", 7)
        ctx.rate("cache_hit", True)
        ctx.rate("cache_hit", False)
        ctx.trend("payload_size", 512)

        assert registry.get("errors").sink.count == 2
        assert registry.get("login_time").contains == ValueType.TIME
        assert registry.get("logins").type == MetricType.COUNTER
        assert registry.get("queue_depth").sink.value == 7
        assert registry.get("cache_hit").sink.rate == 0.5
        assert registry.get("payload_size").contains == ValueType.DEFAULT

    def test_undefined_name_raises(self, registry):
        ctx = VUContext(make_vu(registry), 0)
        with pytest.raises(KeyError):
            ctx.add("never_defined", 1)

    def test_context_exposes_vu(self, registry):
        vu = make_vu(registry, data={"base": "http://x"}, vu_id=4)
        ctx = VUContext(vu, 3)
        assert ctx.vu_id == 4
        assert ctx.iteration == 3
        assert ctx.scenario == "browse"
        assert ctx.data == {"base": "http://x"}
        assert ctx.tags == {"env": "test", "team": "web", "scenario": "browse", "group": ""}


class TestLifecycleContext:
    """Tests for the setup/teardown context."""

    @pytest.mark.asyncio
    async def test_checks_land_in_stage_group(self, registry):
        ctx = LifecycleContext("setup", registry, global_tags={"env": "test"})
        ctx.check(None, {"seeded": True})
        await ctx.close()

        tree = registry.groups.to_dict()
        setup = tree["groups"][0]
        assert setup["path"] == "::setup"
        assert setup["checks"][0]["passes"] == 1
        assert ctx.tags["group"] == "::setup"
