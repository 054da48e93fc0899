"""
Loading of load-test scripts.

A script is a Python module exporting:

- ``options``: run options (scenarios, thresholds, HTTP options, ...)
- ``default`` (or any name referenced by a scenario's ``exec``): an
  ``async def fn(ctx, data)`` workload
- optional ``setup(ctx)``, ``teardown(ctx, data)`` and
  ``handle_summary(data)`` hooks, sync or async
- module-level ``Counter``/``Gauge``/``Rate``/``Trend`` definitions
"""

import importlib.util
import inspect
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Iterable, Optional

from .config import ScenarioConfig
from .metrics import MetricDefinition
from .models import ScriptError

logger = logging.getLogger(__name__)

HOOK_NAMES = ("setup", "teardown", "handle_summary")


@dataclass
class Script:
    """
    A loaded script.

    Attributes:
        default: The default workload, if exported
        setup: Setup hook, run once before any scenario
        teardown: Teardown hook, run once after every scenario
        handle_summary: Summary hook returning ``{artifact: content}``
        options: The script's run options
        exports: Every exported coroutine function by name
        metrics: Custom metric definitions declared at module level
        path: Where the script was loaded from
    """

    default: Optional[Callable[..., Any]] = None
    setup: Optional[Callable[..., Any]] = None
    teardown: Optional[Callable[..., Any]] = None
    handle_summary: Optional[Callable[..., Any]] = None
    options: dict[str, Any] = field(default_factory=dict)
    exports: dict[str, Callable[..., Any]] = field(default_factory=dict)
    metrics: list[MetricDefinition] = field(default_factory=list)
    path: Optional[Path] = None

    def __post_init__(self):
        if self.default is not None:
            self.exports.setdefault("default", self.default)

    @classmethod
    def from_module(cls, module: ModuleType, path: Optional[Path] = None) -> "Script":
        """Collect exports, hooks and metric definitions from a module."""
        namespace = vars(module)
        options = namespace.get("options", {})
        if not isinstance(options, dict):
            raise ScriptError(f"'options' must be a dict, got {type(options).__name__}")

        hooks = {}
        for name in HOOK_NAMES:
            hook = namespace.get(name)
            if hook is not None and not callable(hook):
                raise ScriptError(f"'{name}' must be callable")
            hooks[name] = hook

        exports = {
            name: value
            for name, value in namespace.items()
            if not name.startswith("_")
            and name not in HOOK_NAMES
            and inspect.iscoroutinefunction(value)
            and getattr(value, "__module__", None) == module.__name__
        }
        metrics = [v for v in namespace.values() if isinstance(v, MetricDefinition)]
        return cls(
            default=exports.get("default"),
            options=options,
            exports=exports,
            metrics=metrics,
            path=path,
            **hooks,
        )

    def resolve_exec(self, name: str) -> Callable[..., Any]:
        """
        Look up the workload a scenario runs.

        Raises:
            ScriptError: If the script exports no such coroutine function
        """
        workload = self.exports.get(name)
        if workload is None:
            raise ScriptError(f"script does not export an async function named '{name}'")
        if not inspect.iscoroutinefunction(workload):
            raise ScriptError(f"workload '{name}' must be an async function")
        return workload

    def validate(self, scenarios: Iterable[ScenarioConfig]) -> list[str]:
        """Return an error for every scenario whose ``exec`` cannot be resolved."""
        errors = []
        for scenario in scenarios:
            try:
                self.resolve_exec(scenario.exec)
            except ScriptError as e:
                errors.append(f"scenarios.{scenario.name}: {e}")
        return errors


def load_script(path: Path | str) -> Script:
    """
    Import a script file.

    Args:
        path: Path to a ``.py`` script

    Returns:
        The loaded Script

    Raises:
        ScriptError: If the file is missing or fails to import
    """
    path = Path(path).resolve()
    if not path.is_file():
        raise ScriptError(f"script not found: {path}")

    module_name = f"stampede_script_{path.stem.replace('-', '_')}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ScriptError(f"cannot load script: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise ScriptError(f"failed to import {path.name}: {type(e).__name__}: {e}") from e

    script = Script.from_module(module, path)
    logger.debug(
        "Loaded script %s (exports: %s)", path.name, ", ".join(sorted(script.exports)) or "none"
    )
    return script
