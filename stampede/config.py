"""
Configuration management for stampede runs.

This module handles parsing, validating and merging run options from a
script's ``options`` mapping, YAML/JSON configuration files, environment
variables and command-line arguments.

Precedence (highest first): CLI arguments, environment variables,
configuration file, script options.
"""

import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from jsonschema import Draft7Validator

from .models import ConfigValidationError
from .version import __version__

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = f"stampede/{__version__}"

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(ms|us|s|m|h|d)")
_DURATION_UNITS = {
    "us": 0.000001,
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

DURATION_PATTERN = r"^(([0-9]+(\.[0-9]+)?(us|ms|s|m|h|d))+|[0-9]+(\.[0-9]+)?)$"


def parse_duration(value: Any) -> float:
    """Parse a duration to seconds.

    Args:
        value: Duration string (e.g. "500ms", "30s", "2m30s", "1h") or a
            number of seconds

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the value is not a valid, non-negative duration
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0 or math.isnan(value) or math.isinf(value):
            raise ValueError(f"invalid duration: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return parse_duration(float(text))
    except ValueError:
        pass

    position = 0
    total = 0.0
    for match in _DURATION_TOKEN.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds as a compact duration string (e.g. "1m30s")."""
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs:g}s")
    return "".join(parts)


class ExecutorKind(Enum):
    """Supported scenario executors."""

    CONSTANT_VUS = "constant-vus"
    RAMPING_VUS = "ramping-vus"
    RAMPING_ARRIVAL_RATE = "ramping-arrival-rate"


_COMMON_SCENARIO_KEYS = {"executor", "startTime", "gracefulStop", "tags", "exec"}

EXECUTOR_KEYS: dict[ExecutorKind, set[str]] = {
    ExecutorKind.CONSTANT_VUS: _COMMON_SCENARIO_KEYS | {"vus", "duration", "iterations"},
    ExecutorKind.RAMPING_VUS: _COMMON_SCENARIO_KEYS | {"startVUs", "stages", "gracefulRampDown"},
    ExecutorKind.RAMPING_ARRIVAL_RATE: _COMMON_SCENARIO_KEYS | {
        "startRate", "timeUnit", "preAllocatedVUs", "maxVUs", "stages",
    },
}

EXECUTOR_REQUIRED_KEYS: dict[ExecutorKind, set[str]] = {
    ExecutorKind.CONSTANT_VUS: {"duration"},
    ExecutorKind.RAMPING_VUS: {"stages"},
    ExecutorKind.RAMPING_ARRIVAL_RATE: {"stages", "preAllocatedVUs"},
}


_DURATION_SCHEMA = {
    "anyOf": [
        {"type": "string", "pattern": DURATION_PATTERN},
        {"type": "number", "minimum": 0},
    ]
}

_STAGES_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "duration": _DURATION_SCHEMA,
            "target": {"type": "integer", "minimum": 0},
        },
        "required": ["duration", "target"],
        "additionalProperties": False,
    },
}

_TAGS_SCHEMA = {
    "type": "object",
    "additionalProperties": {"type": ["string", "number", "boolean"]},
}

_THRESHOLD_ENTRY_SCHEMA = {
    "anyOf": [
        {"type": "string", "minLength": 1},
        {
            "type": "object",
            "properties": {
                "threshold": {"type": "string", "minLength": 1},
                "abortOnFail": {"type": "boolean"},
                "delayAbortEval": _DURATION_SCHEMA,
            },
            "required": ["threshold"],
            "additionalProperties": False,
        },
    ]
}

# JSON Schema for run options
OPTIONS_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "scenarios": {
            "type": "object",
            "propertyNames": {"pattern": "^[0-9A-Za-z_-]+$"},
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "executor": {
                        "type": "string",
                        "enum": [kind.value for kind in ExecutorKind],
                    },
                    "vus": {"type": "integer", "minimum": 0},
                    "duration": _DURATION_SCHEMA,
                    "iterations": {"type": "integer", "minimum": 1},
                    "startVUs": {"type": "integer", "minimum": 0},
                    "stages": _STAGES_SCHEMA,
                    "startRate": {"type": "number", "minimum": 0},
                    "timeUnit": _DURATION_SCHEMA,
                    "preAllocatedVUs": {"type": "integer", "minimum": 0},
                    "maxVUs": {"type": "integer", "minimum": 0},
                    "startTime": _DURATION_SCHEMA,
                    "gracefulStop": _DURATION_SCHEMA,
                    "gracefulRampDown": _DURATION_SCHEMA,
                    "tags": _TAGS_SCHEMA,
                    "exec": {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"},
                },
                "required": ["executor"],
            },
        },
        "stages": _STAGES_SCHEMA,
        "vus": {"type": "integer", "minimum": 0},
        "duration": _DURATION_SCHEMA,
        "iterations": {"type": "integer", "minimum": 1},
        "thresholds": {
            "type": "object",
            "additionalProperties": {
                "anyOf": [
                    {"type": "array", "items": _THRESHOLD_ENTRY_SCHEMA},
                    {"type": "string", "minLength": 1},
                ]
            },
        },
        "noConnectionReuse": {"type": "boolean"},
        "userAgent": {"type": "string"},
        "batch": {"type": "integer", "minimum": 0},
        "batchPerHost": {"type": "integer", "minimum": 0},
        "httpTimeout": _DURATION_SCHEMA,
        "insecureSkipTLSVerify": {"type": "boolean"},
        "tags": _TAGS_SCHEMA,
        "summaryTrendStats": {
            "type": "array",
            "items": {
                "type": "string",
                "pattern": r"^(avg|min|med|max|count|p\([0-9]*\.?[0-9]+\))$",
            },
        },
        "setupTimeout": _DURATION_SCHEMA,
        "teardownTimeout": _DURATION_SCHEMA,
        "tickInterval": _DURATION_SCHEMA,
        "hardStopTimeout": _DURATION_SCHEMA,
        "thresholdEvalInterval": _DURATION_SCHEMA,
    },
}

KNOWN_OPTION_KEYS = set(OPTIONS_SCHEMA["properties"])


def validate_options(data: Mapping[str, Any]) -> list[str]:
    """
    Validate run options against the schema and executor rules.

    Args:
        data: Options dictionary to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = Draft7Validator(OPTIONS_SCHEMA)
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    if errors:
        return errors

    for name, scenario in (data.get("scenarios") or {}).items():
        kind = ExecutorKind(scenario["executor"])
        unknown = set(scenario) - EXECUTOR_KEYS[kind]
        for key in sorted(unknown):
            errors.append(
                f"scenarios.{name}: '{key}' is not a valid option for the {kind.value} executor"
            )
        missing = EXECUTOR_REQUIRED_KEYS[kind] - set(scenario)
        for key in sorted(missing):
            errors.append(f"scenarios.{name}: '{key}' is required for the {kind.value} executor")

        if kind in (ExecutorKind.RAMPING_VUS, ExecutorKind.RAMPING_ARRIVAL_RATE):
            if "stages" in scenario and not scenario["stages"]:
                errors.append(f"scenarios.{name}: at least one stage is required")
        if kind == ExecutorKind.CONSTANT_VUS and "duration" in scenario:
            if parse_duration(scenario["duration"]) <= 0:
                errors.append(f"scenarios.{name}: duration must be greater than zero")
        if kind == ExecutorKind.RAMPING_ARRIVAL_RATE:
            if "timeUnit" in scenario and parse_duration(scenario["timeUnit"]) <= 0:
                errors.append(f"scenarios.{name}: timeUnit must be greater than zero")
            pre = scenario.get("preAllocatedVUs", 0)
            max_vus = scenario.get("maxVUs", pre)
            if max_vus < pre:
                errors.append(
                    f"scenarios.{name}: maxVUs ({max_vus}) must not be lower "
                    f"than preAllocatedVUs ({pre})"
                )
    return errors


def expand_env_vars(value: Any) -> Any:
    """
    Expand ``${VAR_NAME}`` references in strings, recursively.

    Args:
        value: String, list or mapping potentially containing references

    Returns:
        The value with environment variables expanded (unset ones become "")
    """
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    if not isinstance(value, str):
        return value

    def replace_env(match):
        return os.environ.get(match.group(1), "")

    return re.sub(r"\$\{([^}]+)\}", replace_env, value)


@dataclass(frozen=True)
class Stage:
    """
    One segment of a ramping profile.

    Attributes:
        duration: Length of the stage in seconds
        target: Concurrency (or rate) reached at the end of the stage
    """

    duration: float
    target: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Stage":
        return cls(duration=parse_duration(data["duration"]), target=int(data["target"]))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {"duration": format_duration(self.duration), "target": self.target}


@dataclass(frozen=True)
class ScenarioConfig:
    """
    An independently scheduled population of virtual users.

    Attributes:
        name: Unique scenario name
        executor: How VUs or iterations are scheduled
        exec: Name of the script function each iteration runs
        start_time: Offset from run start, in seconds
        graceful_stop: Grace for in-flight iterations at scenario end
        tags: Tags attached to every sample produced by the scenario
        vus: Constant VU count (constant-vus)
        duration: Scenario length in seconds (constant-vus)
        iterations: Per-VU iteration budget, if any (constant-vus)
        start_vus: Initial VU count (ramping-vus)
        stages: Ramping profile (ramping-vus, ramping-arrival-rate)
        graceful_ramp_down: Grace for VUs retired during ramp-down
        start_rate: Initial iterations per time unit (arrival-rate)
        time_unit: Seconds per rate unit (arrival-rate)
        pre_allocated_vus: VUs created up front (arrival-rate)
        max_vus: Upper bound of VUs (arrival-rate)
    """

    name: str
    executor: ExecutorKind
    exec: str = "default"
    start_time: float = 0.0
    graceful_stop: float = 30.0
    tags: dict[str, str] = field(default_factory=dict)
    vus: int = 1
    duration: float = 0.0
    iterations: Optional[int] = None
    start_vus: int = 1
    stages: tuple[Stage, ...] = ()
    graceful_ramp_down: float = 30.0
    start_rate: float = 0.0
    time_unit: float = 1.0
    pre_allocated_vus: int = 0
    max_vus: int = 0

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "ScenarioConfig":
        """Build a scenario from its (validated) options entry."""
        kind = ExecutorKind(data["executor"])
        pre_allocated = int(data.get("preAllocatedVUs", 0))
        return cls(
            name=name,
            executor=kind,
            exec=data.get("exec", "default"),
            start_time=parse_duration(data.get("startTime", 0)),
            graceful_stop=parse_duration(data.get("gracefulStop", "30s")),
            tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
            vus=int(data.get("vus", 1)),
            duration=parse_duration(data.get("duration", 0)),
            iterations=data.get("iterations"),
            start_vus=int(data.get("startVUs", 1)),
            stages=tuple(Stage.from_dict(s) for s in data.get("stages", [])),
            graceful_ramp_down=parse_duration(data.get("gracefulRampDown", "30s")),
            start_rate=float(data.get("startRate", 0)),
            time_unit=parse_duration(data.get("timeUnit", "1s")),
            pre_allocated_vus=pre_allocated,
            max_vus=int(data.get("maxVUs", pre_allocated)),
        )

    @property
    def total_duration(self) -> float:
        """Scheduled length, excluding graceful stop."""
        if self.executor == ExecutorKind.CONSTANT_VUS:
            return self.duration
        return sum(stage.duration for stage in self.stages)

    @property
    def max_concurrency(self) -> int:
        """Largest number of VUs the scenario may allocate."""
        if self.executor == ExecutorKind.CONSTANT_VUS:
            return self.vus
        if self.executor == ExecutorKind.RAMPING_VUS:
            return max([self.start_vus] + [s.target for s in self.stages])
        return self.max_vus

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        data: dict[str, Any] = {
            "executor": self.executor.value,
            "exec": self.exec,
            "startTime": format_duration(self.start_time),
            "gracefulStop": format_duration(self.graceful_stop),
            "tags": dict(self.tags),
        }
        if self.executor == ExecutorKind.CONSTANT_VUS:
            data.update(vus=self.vus, duration=format_duration(self.duration))
            if self.iterations is not None:
                data["iterations"] = self.iterations
        elif self.executor == ExecutorKind.RAMPING_VUS:
            data.update(
                startVUs=self.start_vus,
                stages=[s.to_dict() for s in self.stages],
                gracefulRampDown=format_duration(self.graceful_ramp_down),
            )
        else:
            data.update(
                startRate=self.start_rate,
                timeUnit=format_duration(self.time_unit),
                preAllocatedVUs=self.pre_allocated_vus,
                maxVUs=self.max_vus,
                stages=[s.to_dict() for s in self.stages],
            )
        return data


@dataclass
class HttpOptions:
    """HTTP client behaviour shared by every VU."""

    no_connection_reuse: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    batch: int = 20
    batch_per_host: int = 6
    timeout: float = 60.0
    insecure_skip_tls_verify: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "noConnectionReuse": self.no_connection_reuse,
            "userAgent": self.user_agent,
            "batch": self.batch,
            "batchPerHost": self.batch_per_host,
            "httpTimeout": format_duration(self.timeout),
            "insecureSkipTLSVerify": self.insecure_skip_tls_verify,
        }


def _shorthand_scenario(data: Mapping[str, Any]) -> dict[str, Any]:
    """Build the implicit ``default`` scenario from top-level shorthand."""
    if data.get("stages"):
        return {
            "executor": ExecutorKind.RAMPING_VUS.value,
            "startVUs": data.get("vus", 1),
            "stages": data["stages"],
        }
    scenario: dict[str, Any] = {
        "executor": ExecutorKind.CONSTANT_VUS.value,
        "vus": data.get("vus", 1),
    }
    if "duration" in data:
        scenario["duration"] = data["duration"]
        if "iterations" in data:
            scenario["iterations"] = data["iterations"]
    else:
        scenario["duration"] = "10m"
        scenario["iterations"] = data.get("iterations", 1)
    return scenario


def normalize_options(data: Mapping[str, Any]) -> dict[str, Any]:
    """Replace top-level shorthand (stages/vus/duration/iterations) with scenarios."""
    normalized = dict(data)
    shorthand = {k: normalized.pop(k) for k in ("stages", "vus", "duration", "iterations") if k in normalized}
    if not normalized.get("scenarios"):
        normalized["scenarios"] = {"default": _shorthand_scenario(shorthand)}
    elif shorthand:
        logger.warning(
            "Ignoring top-level %s because scenarios are defined",
            ", ".join(sorted(shorthand)),
        )
    return normalized


@dataclass
class EngineOptions:
    """
    Complete, validated options for a run.

    Attributes:
        scenarios: Scenario definitions keyed by name
        thresholds: Raw threshold declarations keyed by metric selector
        http: HTTP client options
        tags: Tags attached to every sample
        summary_trend_stats: Trend statistics shown in summaries
        setup_timeout: Maximum seconds the setup hook may run
        teardown_timeout: Maximum seconds the teardown hook may run
        tick_interval: Scheduler granularity in seconds
        hard_stop_timeout: Seconds between interrupting a VU and cancelling it
        threshold_eval_interval: Seconds between mid-run threshold evaluations
    """

    scenarios: dict[str, ScenarioConfig] = field(default_factory=dict)
    thresholds: dict[str, list[Any]] = field(default_factory=dict)
    http: HttpOptions = field(default_factory=HttpOptions)
    tags: dict[str, str] = field(default_factory=dict)
    summary_trend_stats: list[str] = field(
        default_factory=lambda: ["avg", "min", "med", "max", "p(90)", "p(95)"]
    )
    setup_timeout: float = 60.0
    teardown_timeout: float = 60.0
    tick_interval: float = 1.0
    hard_stop_timeout: float = 5.0
    threshold_eval_interval: float = 2.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], validate: bool = True) -> "EngineOptions":
        """
        Create options from a dictionary.

        Args:
            data: Options mapping (script ``options`` merged with overrides)
            validate: Whether to validate before building

        Returns:
            EngineOptions instance

        Raises:
            ConfigValidationError: If validation fails
        """
        normalized = normalize_options(data)
        for key in sorted(set(normalized) - KNOWN_OPTION_KEYS):
            logger.warning("Unknown option '%s' is ignored", key)

        if validate:
            errors = validate_options(normalized)
            if errors:
                raise ConfigValidationError(
                    f"Options validation failed with {len(errors)} error(s)",
                    errors=errors,
                )

        thresholds = {
            selector: entries if isinstance(entries, list) else [entries]
            for selector, entries in (normalized.get("thresholds") or {}).items()
        }
        http = HttpOptions(
            no_connection_reuse=normalized.get("noConnectionReuse", False),
            user_agent=normalized.get("userAgent", DEFAULT_USER_AGENT),
            batch=normalized.get("batch", 20),
            batch_per_host=normalized.get("batchPerHost", 6),
            timeout=parse_duration(normalized.get("httpTimeout", "60s")),
            insecure_skip_tls_verify=normalized.get("insecureSkipTLSVerify", False),
        )
        defaults = cls()
        return cls(
            scenarios={
                name: ScenarioConfig.from_dict(name, scenario)
                for name, scenario in normalized["scenarios"].items()
            },
            thresholds=thresholds,
            http=http,
            tags={str(k): str(v) for k, v in (normalized.get("tags") or {}).items()},
            summary_trend_stats=list(
                normalized.get("summaryTrendStats", defaults.summary_trend_stats)
            ),
            setup_timeout=parse_duration(normalized.get("setupTimeout", "60s")),
            teardown_timeout=parse_duration(normalized.get("teardownTimeout", "60s")),
            tick_interval=parse_duration(normalized.get("tickInterval", "1s")) or 1.0,
            hard_stop_timeout=parse_duration(normalized.get("hardStopTimeout", "5s")),
            threshold_eval_interval=parse_duration(
                normalized.get("thresholdEvalInterval", "2s")
            ) or 2.0,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "scenarios": {name: s.to_dict() for name, s in self.scenarios.items()},
            "thresholds": self.thresholds,
            **self.http.to_dict(),
            "tags": self.tags,
            "summaryTrendStats": self.summary_trend_stats,
            "setupTimeout": format_duration(self.setup_timeout),
            "teardownTimeout": format_duration(self.teardown_timeout),
            "tickInterval": format_duration(self.tick_interval),
            "hardStopTimeout": format_duration(self.hard_stop_timeout),
            "thresholdEvalInterval": format_duration(self.threshold_eval_interval),
        }

    @property
    def total_duration(self) -> float:
        """Latest scheduled scenario end, excluding graceful stops."""
        if not self.scenarios:
            return 0.0
        return max(s.start_time + s.total_duration for s in self.scenarios.values())


def load_config_file(path: Path | str) -> dict[str, Any]:
    """
    Load options from a YAML or JSON file.

    Args:
        path: Path to the configuration file

    Returns:
        Options dictionary with environment variables expanded

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigValidationError: If the file does not hold a mapping
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(f"Configuration file {path} must contain a mapping")
    return expand_env_vars(data)


def parse_stage_spec(spec: str) -> dict[str, Any]:
    """Parse a ``duration:target`` stage string (e.g. "30s:10")."""
    duration, sep, target = spec.partition(":")
    if not sep:
        raise ValueError(f"invalid stage '{spec}', expected duration:target")
    parse_duration(duration)
    return {"duration": duration.strip(), "target": int(target)}


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect STAMPEDE_* overrides from the environment."""
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    if environ.get("STAMPEDE_VUS"):
        overrides["vus"] = int(environ["STAMPEDE_VUS"])
    if environ.get("STAMPEDE_DURATION"):
        overrides["duration"] = environ["STAMPEDE_DURATION"]
    if environ.get("STAMPEDE_ITERATIONS"):
        overrides["iterations"] = int(environ["STAMPEDE_ITERATIONS"])
    if environ.get("STAMPEDE_STAGES"):
        overrides["stages"] = [
            parse_stage_spec(s) for s in environ["STAMPEDE_STAGES"].split(",") if s.strip()
        ]
    return overrides


def apply_overrides(data: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """
    Layer overrides on top of options.

    Execution shorthand (vus, duration, iterations, stages) replaces any
    configured scenarios, so a quick ``--vus 10 --duration 30s`` always wins.
    Stages and a duration exclude each other.
    """
    merged = dict(data)
    execution = {k: v for k, v in overrides.items() if k in ("vus", "duration", "iterations", "stages") and v}
    rest = {k: v for k, v in overrides.items() if k not in execution and v is not None}
    for key in ("vus", "duration", "iterations", "stages"):
        rest.pop(key, None)
    if execution:
        merged.pop("scenarios", None)
        if "stages" in execution:
            merged.pop("duration", None)
            merged.pop("iterations", None)
        if "duration" in execution:
            merged.pop("stages", None)
        merged.update(execution)
    if "tags" in rest:
        merged["tags"] = {**(merged.get("tags") or {}), **rest.pop("tags")}
    merged.update(rest)
    return merged


def load_options(
    script_options: Optional[Mapping[str, Any]] = None,
    config_path: Optional[Path | str] = None,
    vus: Optional[int] = None,
    duration: Optional[str] = None,
    iterations: Optional[int] = None,
    stages: Optional[list[str]] = None,
    tags: Optional[dict[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    validate: bool = True,
) -> EngineOptions:
    """
    Load and merge options from every source.

    This is the main entry point for building run options.

    Args:
        script_options: The script's ``options`` mapping
        config_path: Path to a YAML/JSON configuration file (optional)
        vus: VU count override
        duration: Duration override
        iterations: Iteration count override
        stages: Stage overrides as ``duration:target`` strings
        tags: Extra global tags
        environ: Environment to read STAMPEDE_* overrides from
        validate: Whether to validate the merged options

    Returns:
        EngineOptions with merged values
    """
    data: dict[str, Any] = dict(script_options or {})
    if config_path:
        file_data = load_config_file(config_path)
        data = _merge_file_options(data, file_data)

    data = apply_overrides(data, env_overrides(environ))
    data = apply_overrides(
        data,
        {
            "vus": vus,
            "duration": duration,
            "iterations": iterations,
            "stages": [parse_stage_spec(s) for s in stages] if stages else None,
            "tags": tags or None,
        },
    )
    return EngineOptions.from_dict(data, validate=validate)


def _merge_file_options(data: dict[str, Any], file_data: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    for key, value in file_data.items():
        if key in ("scenarios", "thresholds", "tags") and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    if "scenarios" in file_data:
        for key in ("vus", "duration", "iterations", "stages"):
            merged.pop(key, None)
    return merged
