#!/usr/bin/env python3
"""
Command-Line Interface for stampede.

Usage:
    # Run a script with its own options
    stampede run scripts/smoke.py

    # Override the execution profile
    stampede run scripts/smoke.py --vus 20 --duration 1m
    stampede run scripts/smoke.py --stage 30s:10 --stage 1m:10 --stage 30s:0

    # Merge a YAML configuration and tag every sample
    stampede -c config/staging.yaml run scripts/smoke.py --tag env=staging

    # Check options and print the scenario plan without running
    stampede validate scripts/smoke.py

    # Render an exported summary
    stampede report --input results/summary.json --format markdown
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import format_duration, load_options
from .models import ConfigValidationError, ExitCode, RunResult, ScriptError
from .reporter import text_summary, to_json, to_markdown
from .runner import TestRun
from .scheduler import plan_scenarios
from .script import load_script
from .version import __version__

# Set up logging with rich handler
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
)
logger = logging.getLogger(__name__)
console = Console()

VALID_REPORT_FORMATS = ["text", "markdown", "json"]


class CLIContext:
    """Context object for CLI commands."""

    def __init__(self):
        self.verbose = False
        self.config_path: Optional[Path] = None


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def parse_tags(ctx, param, value):
    """Parse repeated ``key=value`` tag options."""
    tags = {}
    for item in value or ():
        key, sep, tag_value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Invalid tag '{item}'. Expected key=value")
        tags[key] = tag_value
    return tags


def _print_config_errors(error: ConfigValidationError) -> None:
    console.print(f"[bold red]Invalid configuration:[/bold red] {error}")
    for message in error.errors:
        console.print(f"  - {message}", style="red")


def _prepare_run(
    ctx: CLIContext,
    script_path: Path,
    **overrides,
) -> TestRun:
    script = load_script(script_path)
    options = load_options(script.options, ctx.config_path, **overrides)
    return TestRun(script, options)


@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output"
)
@click.option(
    "-c", "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to a YAML or JSON options file"
)
@click.version_option(version=__version__, prog_name="stampede")
@pass_context
def cli(ctx: CLIContext, verbose: bool, config: Optional[Path]):
    """
    stampede load-generation engine.

    Run load-test scripts, validate their options and render summaries.
    """
    ctx.verbose = verbose
    ctx.config_path = config

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose mode enabled")


async def _execute(test_run: TestRun) -> RunResult:
    """Run with SIGINT/SIGTERM mapped to a graceful abort."""
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM) if sys.platform != "win32" else ()

    def handle_shutdown(signum: int) -> None:
        logger.info("Received shutdown signal %d, stopping scenarios...", signum)
        test_run.abort(f"received signal {signum}", by_user=True)

    for signum in signals:
        loop.add_signal_handler(signum, handle_shutdown, signum)
    try:
        return await test_run.run()
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--vus", "-u", type=click.IntRange(min=0), default=None, help="Number of virtual users")
@click.option("--duration", "-d", type=str, default=None, help="Test duration (e.g., 30s, 5m)")
@click.option(
    "--stage", "-s", "stages",
    multiple=True,
    help="Ramping stage as duration:target (can be specified multiple times)"
)
@click.option("--iterations", "-i", type=click.IntRange(min=1), default=None, help="Iterations per VU")
@click.option(
    "--tag", "tags",
    multiple=True,
    callback=parse_tags,
    help="Tag added to every sample, as key=value (can be specified multiple times)"
)
@click.option(
    "--out-dir", "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Base directory for summary artifacts"
)
@click.option(
    "--summary-export",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the summary data as JSON to this file"
)
@pass_context
def run(
    ctx: CLIContext,
    script: Path,
    vus: Optional[int],
    duration: Optional[str],
    stages: tuple,
    iterations: Optional[int],
    tags: dict,
    out_dir: Path,
    summary_export: Optional[Path],
):
    """
    Run a load-test script.

    Examples:

        stampede run scripts/smoke.py

        stampede run scripts/smoke.py --vus 10 --duration 30s
    """
    try:
        test_run = _prepare_run(
            ctx,
            script,
            vus=vus,
            duration=duration,
            iterations=iterations,
            stages=list(stages) or None,
            tags=tags or None,
        )
        test_run.output_dir = out_dir
        test_run.summary_export = summary_export

        console.print(f"\n[bold blue]stampede[/bold blue] {__version__}")
        console.print(f"Script: [cyan]{script}[/cyan]")
        for row in plan_scenarios(test_run.options.scenarios):
            console.print(
                f"  [cyan]{row['name']}[/cyan]: {row['executor']} up to {row['max_vus']} VUs, "
                f"{row['start']} → {row['end']} (gracefulStop {row['graceful_stop']})"
            )

        result = asyncio.run(_execute(test_run))
        _display_results_summary(result)
        sys.exit(int(result.exit_code))

    except ConfigValidationError as e:
        _print_config_errors(e)
        sys.exit(int(ExitCode.INVALID_CONFIG))
    except (ScriptError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}", style="red")
        if ctx.verbose:
            console.print_exception()
        sys.exit(int(ExitCode.INVALID_CONFIG))


def _display_results_summary(result: RunResult) -> None:
    """Display the run outcome in a formatted table."""
    console.print("\n")

    table = Table(title="Run Summary", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    status = "passed" if result.exit_code == ExitCode.OK else result.exit_code.name.lower()
    status_style = "green" if result.exit_code == ExitCode.OK else "red"
    table.add_row("Status", f"[{status_style}]{status.upper()}[/{status_style}]")
    table.add_row("Duration", f"{result.duration_seconds:.2f}s")
    if result.setup_error:
        table.add_row("Setup Error", f"[red]{result.setup_error}[/red]")
    if result.teardown_error:
        table.add_row("Teardown Error", f"[yellow]{result.teardown_error}[/yellow]")
    if result.abort_reason:
        table.add_row("Aborted", f"[yellow]{result.abort_reason}[/yellow]")
    for name, stats in result.scenarios.items():
        table.add_row(
            f"Scenario {name}",
            f"{stats.completed_iterations} complete / {stats.failed_iterations} failed / "
            f"{stats.dropped_iterations} dropped",
        )
    passed = sum(1 for t in result.thresholds if t.ok)
    table.add_row("Thresholds", f"{passed}/{len(result.thresholds)} passed")
    table.add_row("Exit Code", str(int(result.exit_code)))
    console.print(table)

    for failed in result.failed_thresholds:
        console.print(f"  [red]✗[/red] {failed.selector}: {failed.expression}")
    if result.artifacts:
        console.print(f"\nArtifacts: {', '.join(result.artifacts)}")


@cli.command()
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@pass_context
def validate(ctx: CLIContext, script: Path):
    """
    Validate a script's options and show its scenario plan.
    """
    try:
        test_run = _prepare_run(ctx, script)
        test_run.prepare()
    except ConfigValidationError as e:
        _print_config_errors(e)
        sys.exit(int(ExitCode.INVALID_CONFIG))
    except (ScriptError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}", style="red")
        sys.exit(int(ExitCode.INVALID_CONFIG))

    table = Table(title="Scenario Plan", show_header=True, header_style="bold magenta")
    for column in ("Scenario", "Executor", "Exec", "Start", "End", "Graceful Stop", "Max VUs"):
        table.add_column(column, style="cyan" if column == "Scenario" else None)
    for row in plan_scenarios(test_run.options.scenarios):
        table.add_row(
            row["name"],
            row["executor"],
            row["exec"],
            row["start"],
            row["end"],
            row["graceful_stop"],
            str(row["max_vus"]),
        )
    console.print(table)

    if test_run.evaluator.thresholds:
        thresholds = Table(title="Thresholds", show_header=True, header_style="bold magenta")
        thresholds.add_column("Selector", style="cyan")
        thresholds.add_column("Expression")
        thresholds.add_column("Abort on fail", justify="center")
        for threshold in test_run.evaluator.thresholds:
            thresholds.add_row(
                threshold.selector,
                threshold.expression.source,
                "yes" if threshold.abort_on_fail else "",
            )
        console.print(thresholds)

    console.print(
        f"[green]✓[/green] Options are valid "
        f"(total duration {format_duration(test_run.options.total_duration)})"
    )


@cli.command()
@click.option(
    "--input", "-i", "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Summary JSON written with --summary-export"
)
@click.option(
    "--format", "-f", "output_format",
    type=click.Choice(VALID_REPORT_FORMATS, case_sensitive=False),
    default="text",
    help="Report format"
)
@click.option(
    "--output", "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the report to this file instead of stdout"
)
def report(input_path: Path, output_format: str, output: Optional[Path]):
    """
    Render an exported summary as text, Markdown or JSON.
    """
    try:
        data = json.loads(input_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Error:[/bold red] {input_path} is not valid JSON: {e}")
        sys.exit(1)

    renderers = {"text": text_summary, "markdown": to_markdown, "json": to_json}
    content = renderers[output_format.lower()](data)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(content, encoding="utf-8")
        console.print(f"Report saved to [cyan]{output}[/cyan]")
    else:
        click.echo(content)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
