"""
Tests for the command-line interface.
"""

import json

import pytest
from click.testing import CliRunner

from .cli import cli
from .metrics import HTTP_REQS, MetricsRegistry, register_builtin_metrics
from .models import ExitCode, ThresholdResult
from .reporter import build_summary
from .version import __version__

TINY_SCRIPT = '''
options = {"thresholds": {"iterations": ["count>0"]}}


async def default(ctx, data):
    ctx.check(None, {"ran": True})
'''


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def script_path(tmp_path):
    path = tmp_path / "tiny.py"
    path.write_text(TINY_SCRIPT)
    return path


@pytest.fixture
def summary_file(tmp_path):
    registry = MetricsRegistry()
    register_builtin_metrics(registry)
    registry.push(HTTP_REQS, 12)
    data = build_summary(
        registry, 3.0, thresholds=[ThresholdResult("http_reqs", "count<10", ok=False)]
    )
    path = tmp_path / "summary.json"
    path.write_text(json.dumps(data))
    return path


class TestRunCommand:
    """Tests for `stampede run`."""

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_runs_script_with_overrides(self, runner, script_path, tmp_path):
        result = runner.invoke(
            cli,
            ["run", str(script_path), "--vus", "1", "--iterations", "1", "-o", str(tmp_path)],
        )
        assert result.exit_code == ExitCode.OK, result.output
        assert "Run Summary" in result.output
        assert "ran" in result.output

    def test_summary_export(self, runner, script_path, tmp_path):
        export = tmp_path / "out" / "summary.json"
        result = runner.invoke(
            cli,
            ["run", str(script_path), "--iterations", "2", "--summary-export", str(export)],
        )
        assert result.exit_code == ExitCode.OK, result.output
        data = json.loads(export.read_text())
        assert data["metrics"]["iterations"]["values"]["count"] == 2

    def test_invalid_options_exit_code(self, runner, tmp_path):
        path = tmp_path / "invalid.py"
        path.write_text('options = {"scenarios": {"x": {"executor": "per-vu-iterations"}}}\n')
        result = runner.invoke(cli, ["run", str(path)])
        assert result.exit_code == ExitCode.INVALID_CONFIG
        assert "Invalid configuration" in result.output

    def test_bad_tag_rejected(self, runner, script_path):
        result = runner.invoke(cli, ["run", str(script_path), "--tag", "novalue"])
        assert result.exit_code == 2
        assert "key=value" in result.output

    def test_missing_script(self, runner, tmp_path):
        result = runner.invoke(cli, ["run", str(tmp_path / "missing.py")])
        assert result.exit_code == 2


class TestValidateCommand:
    """Tests for `stampede validate`."""

    def test_shows_plan(self, runner, script_path):
        result = runner.invoke(cli, ["validate", str(script_path)])
        assert result.exit_code == 0, result.output
        assert "Scenario Plan" in result.output
        assert "default" in result.output
        assert "Options are valid" in result.output

    def test_unresolvable_exec(self, runner, tmp_path):
        path = tmp_path / "no_exec.py"
        path.write_text(
            'options = {"scenarios": {"browse": '
            '{"executor": "constant-vus", "duration": "1s", "exec": "browse"}}}\n'
        )
        result = runner.invoke(cli, ["validate", str(path)])
        assert result.exit_code == ExitCode.INVALID_CONFIG
        assert "browse" in result.output


class TestReportCommand:
    """Tests for `stampede report`."""

    def test_text(self, runner, summary_file):
        result = runner.invoke(cli, ["report", "--input", str(summary_file)])
        assert result.exit_code == 0, result.output
        assert "http_reqs" in result.output
        assert "thresholds FAILED" in result.output

    def test_markdown_to_file(self, runner, summary_file, tmp_path):
        output = tmp_path / "reports" / "summary.md"
        result = runner.invoke(
            cli,
            ["report", "--input", str(summary_file), "--format", "markdown", "--output", str(output)],
        )
        assert result.exit_code == 0, result.output
        content = output.read_text()
        assert content.startswith("# Load Test Summary")
        assert "`http_reqs`: `count<10`" in content

    def test_json(self, runner, summary_file):
        result = runner.invoke(cli, ["report", "--input", str(summary_file), "-f", "json"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["metrics"]["http_reqs"]["values"]["count"] == 12

    def test_invalid_json(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        result = runner.invoke(cli, ["report", "--input", str(path)])
        assert result.exit_code == 1
