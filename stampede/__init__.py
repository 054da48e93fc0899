"""
stampede: a load-generation engine for declarative load-test scripts.

This package provides:
- ScenarioScheduler and executors: constant-vus, ramping-vus and
  ramping-arrival-rate scenarios on one global clock
- VirtualUser and VUContext: the workload loop, checks, groups and think time
- MetricsRegistry: Counter, Gauge, Rate and Trend aggregation per tag set
- ThresholdEvaluator: pass/fail expressions over aggregated metrics
- TestRun: setup, scenarios, teardown and summary export
"""

from .config import (
    EngineOptions,
    ExecutorKind,
    HttpOptions,
    ScenarioConfig,
    Stage,
    load_options,
    parse_duration,
)
from .http import HttpClient, Response
from .metrics import (
    Counter,
    Gauge,
    MetricsRegistry,
    Rate,
    Trend,
)
from .models import (
    ConfigValidationError,
    ExitCode,
    IterationInterrupted,
    RunResult,
    Sample,
    ScriptError,
    SetupError,
    TagSet,
)
from .reporter import text_summary, to_json, to_markdown
from .runner import TestRun, run_script
from .scheduler import ScenarioScheduler
from .timeline import ArrivalSchedule, interpolate_target
from .script import Script, load_script
from .thresholds import ThresholdEvaluator
from .version import __version__
from .vu import VirtualUser, VUContext

__all__ = [
    "__version__",
    # Configuration
    "EngineOptions",
    "ExecutorKind",
    "HttpOptions",
    "ScenarioConfig",
    "Stage",
    "load_options",
    "parse_duration",
    # Metrics
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Rate",
    "Trend",
    # Models
    "ConfigValidationError",
    "ExitCode",
    "IterationInterrupted",
    "RunResult",
    "Sample",
    "ScriptError",
    "SetupError",
    "TagSet",
    # Execution
    "ArrivalSchedule",
    "ScenarioScheduler",
    "interpolate_target",
    "VirtualUser",
    "VUContext",
    "HttpClient",
    "Response",
    "ThresholdEvaluator",
    "TestRun",
    "run_script",
    "Script",
    "load_script",
    # Reporting
    "text_summary",
    "to_json",
    "to_markdown",
]
