"""
Tests for script loading and workload resolution.
"""

import textwrap

import pytest

from .config import ExecutorKind, ScenarioConfig
from .metrics import Counter, Trend
from .models import ScriptError
from .script import Script, load_script

SCRIPT = '''
from stampede import Counter, Trend

options = {"vus": 2, "duration": "10s"}

errors = Counter("errors")
login_time = Trend("login_time", is_time=True)


def setup(ctx):
    return {"token": "abc"}


async def teardown(ctx, data):
    pass


def handle_summary(data):
    return {"stdout": "done"}


async def default(ctx, data):
    pass


async def browse(ctx, data):
    pass


async def _helper(ctx):
    pass


def sync_helper():
    pass
'''


def write_script(tmp_path, source: str, name: str = "script.py"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(source))
    return path


class TestLoadScript:
    """Tests for importing a script file."""

    def test_collects_exports_hooks_and_metrics(self, tmp_path):
        script = load_script(write_script(tmp_path, SCRIPT, "full_script.py"))

        assert sorted(script.exports) == ["browse", "default"]
        assert script.default is script.exports["default"]
        assert script.setup(None) == {"token": "abc"}
        assert script.teardown is not None
        assert script.handle_summary({}) == {"stdout": "done"}
        assert script.options == {"vus": 2, "duration": "10s"}
        assert sorted(m.name for m in script.metrics) == ["errors", "login_time"]
        assert isinstance(script.metrics[0], (Counter, Trend))
        assert script.path == (tmp_path / "full_script.py").resolve()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ScriptError, match="not found"):
            load_script(tmp_path / "nope.py")

    def test_import_error_is_wrapped(self, tmp_path):
        path = write_script(tmp_path, "import definitely_not_a_module\n", "broken_import.py")
        with pytest.raises(ScriptError, match="ModuleNotFoundError"):
            load_script(path)

    def test_options_must_be_a_dict(self, tmp_path):
        path = write_script(tmp_path, "options = [1, 2]\n", "bad_options.py")
        with pytest.raises(ScriptError, match="'options' must be a dict"):
            load_script(path)

    def test_hooks_must_be_callable(self, tmp_path):
        path = write_script(tmp_path, "setup = 5\n", "bad_hook.py")
        with pytest.raises(ScriptError, match="'setup' must be callable"):
            load_script(path)

    def test_script_without_options(self, tmp_path):
        path = write_script(tmp_path, "async def default(ctx, data):\n    pass\n", "bare.py")
        script = load_script(path)
        assert script.options == {}
        assert script.setup is None


class TestResolveExec:
    """Tests for matching scenarios to workloads."""

    def test_resolves_named_workload(self):
        async def checkout(ctx, data):
            pass

        script = Script(exports={"checkout": checkout})
        assert script.resolve_exec("checkout") is checkout

    def test_default_is_exported(self):
        async def default(ctx, data):
            pass

        assert Script(default=default).resolve_exec("default") is default

    def test_missing_workload(self):
        with pytest.raises(ScriptError, match="'checkout'"):
            Script().resolve_exec("checkout")

    def test_sync_workload_rejected(self):
        script = Script(exports={"sync": lambda ctx, data: None})
        with pytest.raises(ScriptError, match="async"):
            script.resolve_exec("sync")

    def test_validate_reports_each_scenario(self):
        async def default(ctx, data):
            pass

        scenarios = [
            ScenarioConfig("ok", ExecutorKind.CONSTANT_VUS),
            ScenarioConfig("bad", ExecutorKind.CONSTANT_VUS, exec="missing"),
        ]
        errors = Script(default=default).validate(scenarios)
        assert len(errors) == 1
        assert errors[0].startswith("scenarios.bad:")
