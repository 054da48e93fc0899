"""
End-of-test summary generation.

This module builds the summary data handed to a script's
``handle_summary`` hook, renders it as text, JSON or Markdown, and writes
the artifacts the hook returns.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

from .metrics import MetricsRegistry
from .models import ScenarioStats, ThresholdResult
from .thresholds import parse_selector

logger = logging.getLogger(__name__)

PASS_MARK = "✓"
FAIL_MARK = "✗"


def _threshold_key(selector: str) -> str:
    """Normalize a selector to the summary's metric key."""
    name, tags = parse_selector(selector)
    return f"{name}{tags}" if tags else name


def build_summary(
    registry: MetricsRegistry,
    duration_seconds: float,
    thresholds: Optional[list[ThresholdResult]] = None,
    scenarios: Optional[Mapping[str, ScenarioStats]] = None,
    trend_stats: Optional[list[str]] = None,
    options: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """
    Build the summary data for a finished run.

    Args:
        registry: Run-scoped metrics registry
        duration_seconds: Wall time of the run
        thresholds: Final threshold results
        scenarios: Per-scenario statistics
        trend_stats: Statistics reported for Trend metrics
        options: Options echoed into the summary

    Returns:
        Summary dictionary (root_group, metrics, state, options, ...)
    """
    thresholds = thresholds or []
    metrics = registry.snapshot(duration_seconds, trend_stats)
    for result in thresholds:
        key = _threshold_key(result.selector)
        entry = metrics.setdefault(key, {"type": None, "contains": None, "values": {}})
        entry.setdefault("thresholds", {})[result.expression] = {"ok": result.ok}

    return {
        "root_group": registry.groups.to_dict(),
        "metrics": metrics,
        "state": {
            "testRunDurationMs": round(duration_seconds * 1000, 3),
            "isStdOutTTY": sys.stdout.isatty(),
        },
        "options": {
            "summaryTrendStats": list(trend_stats or []),
            **dict(options or {}),
        },
        "scenarios": {name: s.to_dict() for name, s in (scenarios or {}).items()},
        "thresholds_passed": all(r.ok for r in thresholds),
    }


def format_duration_ms(ms: float) -> str:
    if ms >= 60_000:
        minutes, seconds = divmod(ms / 1000, 60)
        return f"{int(minutes)}m{seconds:.2f}s"
    if ms >= 1000:
        return f"{ms / 1000:.2f}s"
    if ms >= 1:
        return f"{ms:.2f}ms"
    return f"{ms * 1000:.2f}µs"


def format_bytes(size: float) -> str:
    for unit in ("B", "kB", "MB", "GB"):
        if abs(size) < 1000:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1000
    return f"{size:.1f} TB"


def _format_value(value: Optional[float], contains: Optional[str]) -> str:
    if value is None:
        return "-"
    if contains == "time":
        return format_duration_ms(value)
    if contains == "data":
        return format_bytes(value)
    return f"{value:g}" if float(value).is_integer() else f"{value:.4g}"


def format_metric_values(entry: Mapping[str, Any]) -> str:
    """Render one metric's values on a single line."""
    values = entry.get("values") or {}
    contains = entry.get("contains")
    metric_type = entry.get("type")
    if metric_type == "counter":
        rate = values.get("rate", 0.0)
        if contains == "data":
            return f"{format_bytes(values.get('count', 0))} {format_bytes(rate)}/s"
        return f"{_format_value(values.get('count', 0), contains)} {rate:.2f}/s"
    if metric_type == "rate":
        return (
            f"{values.get('rate', 0.0) * 100:.2f}% "
            f"{PASS_MARK} {values.get('passes', 0)} {FAIL_MARK} {values.get('fails', 0)}"
        )
    if metric_type == "gauge":
        return (
            f"{_format_value(values.get('value'), contains)} "
            f"min={_format_value(values.get('min'), contains)} "
            f"max={_format_value(values.get('max'), contains)}"
        )
    return " ".join(f"{stat}={_format_value(v, contains)}" for stat, v in values.items())


def _group_lines(group: Mapping[str, Any], indent: str, depth: int) -> list[str]:
    lines = []
    pad = indent * (depth + 1)
    if group.get("name"):
        lines.append(f"{pad}█ {group['name']}")
        lines.append("")
        pad += indent * 2
    for check in group.get("checks", []):
        passes, fails = check["passes"], check["fails"]
        if fails == 0:
            lines.append(f"{pad}{PASS_MARK} {check['name']}")
        else:
            total = passes + fails
            lines.append(f"{pad}{FAIL_MARK} {check['name']}")
            lines.append(
                f"{pad} ↳ {passes * 100 // total}% - {PASS_MARK} {passes} / {FAIL_MARK} {fails}"
            )
    if group.get("checks"):
        lines.append("")
    for child in group.get("groups", []):
        lines.extend(_group_lines(child, indent, depth + 1 if group.get("name") else depth))
    return lines


def text_summary(data: Mapping[str, Any], indent: str = " ") -> str:
    """
    Render summary data as a human-readable report.

    Args:
        data: Summary data from ``build_summary``
        indent: Indentation unit

    Returns:
        Multi-line text report
    """
    lines = _group_lines(data.get("root_group", {}), indent, 0)
    metrics = data.get("metrics", {})
    width = max((len(name) for name in metrics), default=0) + 3
    for name in sorted(metrics):
        entry = metrics[name]
        marks = entry.get("thresholds")
        if marks:
            mark = PASS_MARK if all(v["ok"] for v in marks.values()) else FAIL_MARK
        else:
            mark = " "
        label = f"{name}".ljust(width, ".")
        lines.append(f"{indent * 2}{mark} {label}: {format_metric_values(entry)}")

    lines.append("")
    scenarios = data.get("scenarios") or {}
    for name, stats in scenarios.items():
        lines.append(
            f"{indent * 2}{name}: {stats['completed_iterations']} complete, "
            f"{stats['failed_iterations']} failed, {stats['interrupted_iterations']} interrupted, "
            f"{stats['dropped_iterations']} dropped, max {stats['max_vus']} VUs"
        )
    duration_ms = data.get("state", {}).get("testRunDurationMs", 0)
    verdict = "passed" if data.get("thresholds_passed", True) else "FAILED"
    lines.append(f"{indent * 2}run duration {format_duration_ms(duration_ms)}, thresholds {verdict}")
    return "\n".join(lines) + "\n"


def to_json(data: Mapping[str, Any], indent: int = 2) -> str:
    """Serialize summary data as JSON."""
    return json.dumps(data, indent=indent, default=str)


def to_markdown(data: Mapping[str, Any]) -> str:
    """Render summary data as a Markdown report."""
    passed = data.get("thresholds_passed", True)
    duration_ms = data.get("state", {}).get("testRunDurationMs", 0)
    lines = [
        "# Load Test Summary",
        "",
        f"- **Status**: {'✅ PASSED' if passed else '❌ FAILED'}",
        f"- **Duration**: {format_duration_ms(duration_ms)}",
        "",
    ]

    metrics = data.get("metrics", {})
    failures = [
        f"`{name}`: `{expression}`"
        for name, entry in sorted(metrics.items())
        for expression, result in (entry.get("thresholds") or {}).items()
        if not result["ok"]
    ]
    if failures:
        lines.extend(["## Failed Thresholds", ""])
        lines.extend(f"- {failure}" for failure in failures)
        lines.append("")

    lines.extend([
        "## Metrics",
        "",
        "| Metric | Type | Values |",
        "|--------|------|--------|",
    ])
    for name in sorted(metrics):
        entry = metrics[name]
        lines.append(f"| {name} | {entry.get('type') or '-'} | {format_metric_values(entry)} |")
    lines.append("")

    scenarios = data.get("scenarios") or {}
    if scenarios:
        lines.extend([
            "## Scenarios",
            "",
            "| Scenario | Executor | Complete | Failed | Interrupted | Dropped | Max VUs |",
            "|----------|----------|----------|--------|-------------|---------|---------|",
        ])
        for name, s in scenarios.items():
            lines.append(
                f"| {name} | {s['executor']} | {s['completed_iterations']} | "
                f"{s['failed_iterations']} | {s['interrupted_iterations']} | "
                f"{s['dropped_iterations']} | {s['max_vus']} |"
            )
        lines.append("")

    return "\n".join(lines)


def write_artifacts(
    artifacts: Mapping[str, Any],
    output_dir: Path | str = ".",
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> list[str]:
    """
    Write the artifacts returned by a summary hook.

    ``stdout`` and ``stderr`` keys go to the matching stream; any other key
    is a file path relative to ``output_dir``.

    Args:
        artifacts: Mapping of artifact name to ``str`` or ``bytes`` content
        output_dir: Base directory for file artifacts
        stdout: Stream used for the ``stdout`` key
        stderr: Stream used for the ``stderr`` key

    Returns:
        Names of the written artifacts

    Raises:
        TypeError: If any content is neither str nor bytes
    """
    for name, content in artifacts.items():
        if not isinstance(content, (str, bytes)):
            raise TypeError(
                f"artifact '{name}' must be str or bytes, got {type(content).__name__}"
            )

    output_dir = Path(output_dir)
    written = []
    for name, content in artifacts.items():
        if name in ("stdout", "stderr"):
            stream = (stdout or sys.stdout) if name == "stdout" else (stderr or sys.stderr)
            stream.write(content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content)
            stream.flush()
        else:
            path = output_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
            logger.info("Wrote summary artifact %s", path)
        written.append(name)
    return written
