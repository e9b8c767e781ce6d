"""Reading reports and plans, validating plans and running them."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from darnit.command_executor import CommandExecutor
from darnit.executor import PlanExecutor
from darnit.models import ExecutionOptions, RemediationPlan, RemediationStep, Report
from darnit.resolver import ActionConfig, OutputAction, Resolver

__all__ = [
    "PlanError",
    "CommandAction",
    "parse_report_file",
    "load_plan_file",
    "execute_plan",
    "create_action_resolver",
    "load_default_parameters",
    "prompt_for_missing_parameters",
    "validate_plan",
    "save_plan_to_file",
    "detect_cycles",
]


class PlanError(ValueError):
    """Raised for unreadable, invalid or unsavable reports and plans."""


def _is_json(path: Path) -> bool:
    return path.suffix.lower() == ".json"


def _read_structured(file_path: str | os.PathLike) -> Any:
    path = Path(file_path)
    text = path.read_text(encoding="utf-8")
    return json.loads(text) if _is_json(path) else yaml.safe_load(text)


def _write_structured(file_path: str | os.PathLike, data: Any) -> None:
    path = Path(file_path)
    if _is_json(path):
        text = json.dumps(data, indent=2) + "\n"
    else:
        text = yaml.safe_dump(data, sort_keys=False)
    path.write_text(text, encoding="utf-8")


_READ_ERRORS = (OSError, ValueError, yaml.YAMLError)


def parse_report_file(file_path: str | os.PathLike) -> Report:
    """Read a YAML or JSON report; a top-level ``findings`` mapping is unwrapped."""
    try:
        data = _read_structured(file_path)
    except _READ_ERRORS as exc:
        raise PlanError(f"error parsing report file: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise PlanError("error parsing report file: top level is not a mapping")
    findings = data.get("findings")
    if isinstance(findings, Mapping):
        return Report(findings=dict(findings))
    return Report(findings=dict(data))


def load_plan_file(file_path: str | os.PathLike) -> RemediationPlan:
    """Read a remediation plan from a YAML or JSON file."""
    try:
        data = _read_structured(file_path)
        return RemediationPlan.from_dict(data or {})
    except _READ_ERRORS as exc:
        raise PlanError(f"error parsing plan file: {exc}") from exc


class CommandAction(OutputAction):
    """An action that runs the command named in its definition."""

    def __init__(self, config: ActionConfig, working_dir: str = ""):
        self.config = config
        self.working_dir = working_dir
        self.description = config.description

    def execute_with_output(self, params: Mapping[str, Any] | None) -> dict[str, Any]:
        """Run the command and return its trimmed standard output."""
        merged = {**(self.config.defaults or {}), **(params or {})}
        executor = CommandExecutor(self.config.command, self.config.args or [])
        executor.with_verbose(bool(merged.get("verbose")))
        if self.working_dir:
            executor.with_working_dir(self.working_dir)
        executor.process_parameters(merged)
        result = executor.execute()
        return {
            "output": result.output.decode(errors="replace").strip(),
            "exit_status": result.exit_status,
        }

    def execute(self, params: Mapping[str, Any] | None) -> None:
        """Run the command, discarding its output."""
        self.execute_with_output(params)


class _CommandActionFactory:
    def __init__(self, working_dir: str):
        self.working_dir = working_dir

    def create(self, config: ActionConfig) -> CommandAction:
        if not config.command:
            raise ValueError(
                f"action '{config.name}' of type '{config.type}' has no command to run"
            )
        return CommandAction(config, self.working_dir)


def _default_library_path() -> str:
    base = os.environ.get("DARN_HOME") or str(Path.home())
    return str(Path(base) / ".darn" / "library")


def create_action_resolver(
    working_dir: str | None = None,
    library_path: str | None = None,
    actions_dir: str = ".darn/actions",
    use_local: bool = True,
    use_global: bool = True,
    global_first: bool = False,
) -> tuple[_CommandActionFactory, Resolver]:
    """Build the action factory and the resolver that finds action definitions."""
    working_dir = working_dir or os.getcwd()
    library_path = library_path or _default_library_path()
    factory = _CommandActionFactory(working_dir)
    resolver = Resolver(
        factory, working_dir, use_local, use_global, global_first, actions_dir, library_path
    )
    return factory, resolver


def execute_plan(plan: RemediationPlan, options: ExecutionOptions) -> None:
    """Run a plan with actions looked up from the options' working directory."""
    factory, resolver = create_action_resolver(options.working_dir)
    PlanExecutor(factory, resolver, options).execute_plan(plan)


def _parameter_file_candidates() -> list[Path]:
    home = Path.home() / ".darn"
    return [
        Path("params.yaml"),
        Path("params.json"),
        Path(".darn/params.yaml"),
        Path(".darn/params.json"),
        home / "params.yaml",
        home / "params.json",
    ]


def load_default_parameters(config_path: str | os.PathLike | None = None) -> dict[str, Any]:
    """Read ``default_parameters`` from a file, searching standard places if none is given."""
    if not config_path:
        config_path = next((p for p in _parameter_file_candidates() if p.exists()), None)
        if config_path is None:
            return {}
    try:
        data = _read_structured(config_path)
    except _READ_ERRORS as exc:
        raise PlanError(f"error parsing parameters file: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise PlanError("error parsing parameters file: top level is not a mapping")
    defaults = data.get("default_parameters")
    if defaults is None:
        return {}
    if not isinstance(defaults, Mapping):
        raise PlanError("error parsing parameters file: default_parameters is not a mapping")
    return dict(defaults)


def prompt_for_missing_parameters(data: dict[str, Any], required_params: Iterable[str]) -> None:
    """Ask on the terminal for every required parameter missing from ``data``."""
    for param in required_params:
        if param in data:
            continue
        try:
            line = input(f"Required parameter '{param}' is missing. Please enter a value: ")
        except EOFError as exc:
            raise PlanError("error reading input: EOF") from exc
        words = line.split()
        if not words:
            raise PlanError("error reading input: unexpected newline")
        if len(words) > 1:
            raise PlanError("error reading input: expected newline")
        data[param] = words[0]


def validate_plan(plan: RemediationPlan) -> None:
    """Check that a plan has steps with unique IDs, actions and valid, acyclic dependencies."""
    if not plan.steps:
        raise PlanError("plan contains no steps")

    seen: set[str] = set()
    for step in plan.steps:
        if not step.id:
            raise PlanError("step has empty ID")
        if step.id in seen:
            raise PlanError(f"duplicate step ID: {step.id}")
        seen.add(step.id)

    for step in plan.steps:
        if not step.action_name:
            raise PlanError(f"step '{step.id}' has empty action name")

    for step in plan.steps:
        for dep in step.depends_on:
            if dep not in seen:
                raise PlanError(f"step '{step.id}' depends on non-existent step '{dep}'")

    detect_cycles(plan.steps)


def save_plan_to_file(plan: RemediationPlan, file_path: str | os.PathLike) -> None:
    """Validate a plan and write it as JSON or YAML depending on the file extension."""
    try:
        validate_plan(plan)
    except PlanError as exc:
        raise PlanError(f"invalid plan: {exc}") from exc
    try:
        _write_structured(file_path, plan.to_dict())
    except (OSError, yaml.YAMLError, TypeError) as exc:
        raise PlanError(f"error writing plan to file: {exc}") from exc


def detect_cycles(steps: Iterable[RemediationStep]) -> None:
    """Raise ``PlanError`` describing the first circular dependency found."""
    steps = list(steps)
    graph = {step.id: step for step in steps}

    def find_cycle(node: str, visited: set[str], path: set[str]) -> str:
        if node in path:
            return node
        if node in visited:
            return ""
        visited.add(node)
        path.add(node)
        step = graph.get(node)
        if step is not None:
            for dep in step.depends_on:
                cycle = find_cycle(dep, visited, path)
                if cycle:
                    return f"{node} -> {cycle}"
        path.discard(node)
        return ""

    for step in steps:
        cycle = find_cycle(step.id, set(), set())
        if cycle:
            raise PlanError(f"circular dependency detected: {cycle}")