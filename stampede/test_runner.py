"""
Tests for run orchestration: lifecycle hooks, thresholds, aborts and
summary export.
"""

import asyncio
import io
import json
import threading
import time

import pytest

from .config import EngineOptions
from .models import ConfigValidationError, ExitCode
from .runner import TestRun, run_script
from .script import Script

FAST = {"tickInterval": "50ms", "hardStopTimeout": "200ms", "thresholdEvalInterval": "50ms"}


def make_run(script: Script, options: dict, tmp_path, **kwargs) -> tuple[TestRun, io.StringIO]:
    stdout = io.StringIO()
    run = TestRun(
        script,
        EngineOptions.from_dict({**FAST, **options}),
        output_dir=tmp_path,
        stdout=stdout,
        stderr=io.StringIO(),
        **kwargs,
    )
    return run, stdout


class TestLifecycle:
    """Tests for setup, teardown and the run outcome."""

    @pytest.mark.asyncio
    async def test_failing_check_and_teardown(self, tmp_path):
        calls = []

        async def default(ctx, data):
            ctx.check(None, {"always fails": False})

        async def teardown(ctx, data):
            calls.append(("teardown", data))

        script = Script(default=default, setup=lambda ctx: {"token": "abc"}, teardown=teardown)
        run, stdout = make_run(
            script,
            {"vus": 1, "iterations": 1, "thresholds": {"checks": ["rate>0.5"]}},
            tmp_path,
        )
        result = await run.run()

        assert result.exit_code == ExitCode.THRESHOLDS_FAILED
        assert calls == [("teardown", {"token": "abc"})]
        check = result.summary["root_group"]["checks"][0]
        assert (check["name"], check["passes"], check["fails"]) == ("always fails", 0, 1)
        assert result.summary["metrics"]["checks"]["thresholds"] == {"rate>0.5": {"ok": False}}
        assert result.scenarios["default"].completed_iterations == 1
        assert "always fails" in stdout.getvalue()

    @pytest.mark.asyncio
    async def test_setup_failure_is_fatal(self, tmp_path):
        calls = []

        async def default(ctx, data):
            calls.append("iteration")

        async def setup(ctx):
            raise ConnectionError("seed service down")

        async def teardown(ctx, data):
            calls.append("teardown")

        run, stdout = make_run(
            Script(default=default, setup=setup, teardown=teardown), {"vus": 2, "iterations": 1}, tmp_path
        )
        result = await run.run()

        assert result.exit_code == ExitCode.SETUP_FAILED
        assert "seed service down" in result.setup_error
        assert calls == []
        assert result.scenarios == {}
        assert result.artifacts == []
        assert stdout.getvalue() == ""

    @pytest.mark.asyncio
    async def test_setup_timeout(self, tmp_path):
        async def default(ctx, data):
            pass

        async def setup(ctx):
            await asyncio.sleep(5)

        run, _ = make_run(Script(default=default, setup=setup), {"setupTimeout": "50ms"}, tmp_path)
        result = await run.run()
        assert result.exit_code == ExitCode.SETUP_FAILED
        assert "setupTimeout" in result.setup_error

    def test_overrunning_sync_setup_does_not_hold_the_run(self, tmp_path):
        release = threading.Event()

        async def default(ctx, data):
            pass

        def setup(ctx):
            release.wait(5)

        script = Script(default=default, setup=setup)
        options = EngineOptions.from_dict({**FAST, "setupTimeout": "100ms"})
        started = time.monotonic()
        try:
            result = run_script(script, options, output_dir=tmp_path, stdout=io.StringIO())
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert result.exit_code == ExitCode.SETUP_FAILED
        assert "setupTimeout" in result.setup_error
        assert elapsed < 2

    @pytest.mark.asyncio
    async def test_start_offsets_are_measured_after_setup(self, tmp_path):
        loop = asyncio.get_running_loop()
        first_iteration = {}

        async def default(ctx, data):
            first_iteration.setdefault(ctx.scenario, loop.time())

        async def setup(ctx):
            await asyncio.sleep(0.5)

        scenario = {"executor": "constant-vus", "vus": 1, "duration": "1s", "iterations": 1}
        run, _ = make_run(
            Script(default=default, setup=setup),
            {
                "scenarios": {
                    "now": scenario,
                    "later": {**scenario, "startTime": "400ms"},
                },
            },
            tmp_path,
        )
        result = await run.run()

        assert result.exit_code == ExitCode.OK
        assert first_iteration["later"] - first_iteration["now"] >= 0.35
        assert result.scenarios["now"].started_at < 0.2
        assert result.scenarios["later"].started_at >= 0.39

    @pytest.mark.asyncio
    async def test_setup_data_is_isolated(self, tmp_path):
        seen = []

        async def default(ctx, data):
            data["ids"].append(ctx.vu_id)
            seen.append(list(data["ids"]))

        async def teardown(ctx, data):
            seen.append(("teardown", data))

        run, _ = make_run(
            Script(default=default, setup=lambda ctx: {"ids": []}, teardown=teardown),
            {"vus": 2, "iterations": 1},
            tmp_path,
        )
        await run.run()

        assert sorted(seen[:2]) == [[1], [2]]
        assert seen[2] == ("teardown", {"ids": []})

    @pytest.mark.asyncio
    async def test_uncopyable_setup_data_fails(self, tmp_path):
        async def default(ctx, data):
            pass

        run, _ = make_run(
            Script(default=default, setup=lambda ctx: {"rows": (row for row in [])}),
            {},
            tmp_path,
        )
        result = await run.run()
        assert result.exit_code == ExitCode.SETUP_FAILED

    @pytest.mark.asyncio
    async def test_teardown_error_is_not_fatal(self, tmp_path):
        async def default(ctx, data):
            pass

        def teardown(ctx, data):
            raise RuntimeError("cleanup failed")

        run, _ = make_run(Script(default=default, teardown=teardown), {}, tmp_path)
        result = await run.run()

        assert result.exit_code == ExitCode.OK
        assert "cleanup failed" in result.teardown_error
        assert result.artifacts == ["stdout"]

    @pytest.mark.asyncio
    async def test_iteration_errors_do_not_fail_the_run(self, tmp_path):
        async def default(ctx, data):
            raise ValueError("bad payload")

        run, _ = make_run(Script(default=default), {"vus": 2, "iterations": 2}, tmp_path)
        result = await run.run()

        assert result.exit_code == ExitCode.OK
        assert result.scenarios["default"].failed_iterations == 4
        assert result.summary["metrics"]["iteration_errors"]["values"]["count"] == 4


class TestValidation:
    """Tests for run preparation."""

    def test_prepare_collects_errors(self, tmp_path):
        async def default(ctx, data):
            pass

        run, _ = make_run(
            Script(default=default),
            {
                "scenarios": {
                    "a": {"executor": "constant-vus", "duration": "1s", "exec": "missing"},
                },
                "thresholds": {"http_reqs": ["avg<1"]},
            },
            tmp_path,
        )
        with pytest.raises(ConfigValidationError) as exc_info:
            run.prepare()
        assert len(exc_info.value.errors) == 2

    def test_options_default_to_script_options(self):
        async def default(ctx, data):
            pass

        run = TestRun(Script(default=default, options={"vus": 3, "duration": "5s"}))
        assert run.options.scenarios["default"].vus == 3


class TestAbort:
    """Tests for early stops."""

    @pytest.mark.asyncio
    async def test_abort_on_fail_threshold(self, tmp_path):
        async def default(ctx, data):
            ctx.check(None, {"healthy": False})
            await ctx.sleep(0.01)

        run, _ = make_run(
            Script(default=default),
            {
                "vus": 2,
                "duration": "30s",
                "thresholds": {"checks": [{"threshold": "rate>0.9", "abortOnFail": True}]},
            },
            tmp_path,
        )
        started = time.monotonic()
        result = await asyncio.wait_for(run.run(), timeout=10)

        assert time.monotonic() - started < 5
        assert result.abort_reason is not None
        assert "checks" in result.abort_reason
        assert not result.aborted_by_user
        assert result.exit_code == ExitCode.THRESHOLDS_FAILED

    @pytest.mark.asyncio
    async def test_user_abort_runs_teardown_and_summary(self, tmp_path):
        calls = []

        async def default(ctx, data):
            await ctx.sleep(0.01)

        async def teardown(ctx, data):
            calls.append("teardown")

        run, stdout = make_run(
            Script(default=default, teardown=teardown), {"vus": 1, "duration": "30s"}, tmp_path
        )
        asyncio.get_running_loop().call_later(0.1, run.abort, "received signal 2", True)
        result = await asyncio.wait_for(run.run(), timeout=10)

        assert result.exit_code == ExitCode.ABORTED_BY_USER
        assert calls == ["teardown"]
        assert "run duration" in stdout.getvalue()


class TestSummaryExport:
    """Tests for handle_summary and artifacts."""

    @pytest.mark.asyncio
    async def test_handle_summary_artifacts(self, tmp_path):
        async def default(ctx, data):
            pass

        def handle_summary(data):
            return {
                "stdout": "custom report\n",
                "reports/summary.json": json.dumps({"iterations": data["metrics"]["iterations"]}),
            }

        run, stdout = make_run(Script(default=default, handle_summary=handle_summary), {}, tmp_path)
        result = await run.run()

        assert result.artifacts == ["stdout", "reports/summary.json"]
        assert stdout.getvalue() == "custom report\n"
        written = json.loads((tmp_path / "reports" / "summary.json").read_text())
        assert written["iterations"]["values"]["count"] == 1

    @pytest.mark.asyncio
    async def test_failing_hook_falls_back_to_text_summary(self, tmp_path):
        async def default(ctx, data):
            pass

        async def handle_summary(data):
            raise KeyError("nope")

        run, stdout = make_run(Script(default=default, handle_summary=handle_summary), {}, tmp_path)
        result = await run.run()

        assert result.artifacts == ["stdout"]
        assert "iterations" in stdout.getvalue()

    @pytest.mark.asyncio
    async def test_invalid_artifact_content_writes_nothing(self, tmp_path):
        async def default(ctx, data):
            pass

        def handle_summary(data):
            return {"report.txt": "ok", "broken.bin": 42}

        run, stdout = make_run(Script(default=default, handle_summary=handle_summary), {}, tmp_path)
        result = await run.run()

        assert not (tmp_path / "report.txt").exists()
        assert result.artifacts == ["stdout"]
        assert "run duration" in stdout.getvalue()

    @pytest.mark.asyncio
    async def test_summary_export(self, tmp_path):
        async def default(ctx, data):
            pass

        export = tmp_path / "out" / "summary.json"
        run, _ = make_run(Script(default=default), {}, tmp_path, summary_export=export)
        await run.run()

        data = json.loads(export.read_text())
        assert data["metrics"]["iterations"]["values"]["count"] == 1
        assert data["state"]["testRunDurationMs"] > 0
