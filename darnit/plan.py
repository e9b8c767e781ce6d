"""Generation of remediation plans from report findings and mapping rules."""

from __future__ import annotations

import copy
import os
import re
import sys
from collections.abc import Mapping, MutableSet
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from darnit.command_executor import TemplateError, render_template
from darnit.condition import CELEvaluator, ExpressionError
from darnit.darnit import (
    PlanError,
    create_action_resolver,
    detect_cycles,
    load_default_parameters,
    prompt_for_missing_parameters,
)
from darnit.inference import infer_parameters_from_repo
from darnit.models import GenerateOptions, RemediationPlan, RemediationStep, Report
from darnit.resolver import Resolver, ResolverError

__all__ = [
    "MappingError",
    "MappingRule",
    "MappingConfig",
    "load_mapping_config",
    "process_mapping_rule",
    "evaluate_rule_match",
    "generate_remediation_plan",
]


class MappingError(ValueError):
    """Raised when mapping rules cannot be loaded or turned into a plan."""


_PARAM_RE = re.compile(r"\{\{\.([^}]+)\}\}")
_WHOLE_REF_RE = re.compile(r"\{\{\s*\.([A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)\s*\}\}")


def _text(value: Any, what: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise MappingError(f"{what} must be a string, got {type(value).__name__}")


def _text_list(value: Any, what: str) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise MappingError(f"{what} must be a list, got {type(value).__name__}")
    return [_text(item, what) for item in value]


@dataclass
class MappingRule:
    """A rule mapping findings to an action, to sub-steps or to another mapping file."""

    id: str = ""
    condition: str = ""
    mapping_ref: str = ""
    action: str = ""
    reason: str = ""
    labels: dict[str, list[str]] = field(default_factory=dict)
    parameters: dict[str, Any] | None = None
    depends_on: list[str] | None = None
    depends_on_expr: str = ""
    once: bool = False
    steps: list["MappingRule"] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MappingRule":
        """Build a rule from its YAML form."""
        if not isinstance(data, Mapping):
            raise MappingError(f"mapping rule must be a mapping, got {type(data).__name__}")
        labels_raw = data.get("labels")
        if labels_raw is not None and not isinstance(labels_raw, Mapping):
            raise MappingError("labels must be a mapping")
        parameters = data.get("parameters")
        if parameters is not None and not isinstance(parameters, Mapping):
            raise MappingError("parameters must be a mapping")
        steps = data.get("steps")
        if steps is not None and not isinstance(steps, list):
            raise MappingError("steps must be a list")
        once = data.get("once", False)
        if not isinstance(once, bool):
            raise MappingError("once must be a boolean")
        return cls(
            id=_text(data.get("id"), "id"),
            condition=_text(data.get("condition"), "condition"),
            mapping_ref=_text(data.get("mapping_ref"), "mapping_ref"),
            action=_text(data.get("action"), "action"),
            reason=_text(data.get("reason"), "reason"),
            labels={
                str(key): _text_list(values, "labels") or []
                for key, values in (labels_raw or {}).items()
            },
            parameters=None if parameters is None else {str(k): v for k, v in parameters.items()},
            depends_on=_text_list(data.get("depends_on"), "depends_on"),
            depends_on_expr=_text(data.get("depends_on_expr"), "depends_on_expr"),
            once=once,
            steps=[cls.from_dict(step) for step in steps or []],
        )


@dataclass
class MappingConfig:
    """All mapping rules of one mapping file."""

    mappings: list[MappingRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "MappingConfig":
        """Build a configuration from its YAML form."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise MappingError("mapping file top level is not a mapping")
        rules = data.get("mappings")
        if rules is None:
            return cls()
        if not isinstance(rules, list):
            raise MappingError("mappings must be a list")
        return cls(mappings=[MappingRule.from_dict(rule) for rule in rules])


def load_mapping_config(file_path: str | os.PathLike) -> MappingConfig:
    """Read mapping rules from a YAML file."""
    try:
        text = Path(file_path).read_text(encoding="utf-8")
    except OSError as exc:
        raise MappingError(f"error reading mapping file: {exc}") from exc
    try:
        data = yaml.safe_load(text)
        return MappingConfig.from_dict(data)
    except (yaml.YAMLError, MappingError) as exc:
        raise MappingError(f"error parsing mapping file: {exc}") from exc


def _required_parameters(config: MappingConfig) -> list[str]:
    required: dict[str, None] = {}
    for rule in config.mappings:
        for value in (rule.parameters or {}).values():
            texts = [value] if isinstance(value, str) else value if isinstance(value, list) else []
            for text in texts:
                if isinstance(text, str):
                    for name in _PARAM_RE.findall(text):
                        required.setdefault(name, None)
    return list(required)


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    value: Any = data
    for key in path.split("."):
        if not isinstance(value, Mapping) or key not in value:
            raise TemplateError(f'map has no entry for key "{key}"')
        value = value[key]
    return value


def _render_value(value: Any, data: Mapping[str, Any], expected_type: str | None) -> Any:
    if isinstance(value, str):
        whole = _WHOLE_REF_RE.fullmatch(value)
        if whole and expected_type != "string":
            return copy.deepcopy(_lookup(data, whole.group(1)))
        return render_template(value, data)
    if isinstance(value, list):
        return [_render_value(item, data, None) for item in value]
    if isinstance(value, Mapping):
        return {key: _render_value(item, data, None) for key, item in value.items()}
    return value


def _process_parameters(
    params: Mapping[str, Any] | None,
    data: Mapping[str, Any],
    schema: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Render parameter templates against ``data``, keeping the types of whole references."""
    properties = (schema or {}).get("properties")
    if not isinstance(properties, Mapping):
        properties = {}
    processed: dict[str, Any] = {}
    missing: list[str] = []
    for name, value in (params or {}).items():
        spec = properties.get(name)
        expected = spec.get("type") if isinstance(spec, Mapping) else None
        try:
            processed[name] = _render_value(value, data, expected)
        except TemplateError:
            missing.append(name)
    if missing:
        raise MappingError(f"missing values for some parameters: {', '.join(missing)}")
    return processed


def evaluate_rule_match(rule: MappingRule, data: Mapping[str, Any], options: GenerateOptions) -> bool:
    """Tell whether the rule's condition holds; a rule without a condition always matches."""
    if rule.condition:
        return CELEvaluator().evaluate_expression(rule.condition, dict(data))
    return True


def _prefixed(parent_id: str, child_id: str) -> str:
    return f"{parent_id}-{child_id}"


def _process_reference(
    rule: MappingRule,
    plan: RemediationPlan,
    combined_data: dict[str, Any],
    resolver: Resolver,
    added_steps: MutableSet[str],
    options: GenerateOptions,
    history: list[str],
) -> None:
    if options.verbose_logging:
        print(f"Processing mapping reference: {rule.mapping_ref}")
    mapping_path = rule.mapping_ref
    if not os.path.isabs(mapping_path) and options.mappings_dir:
        mapping_path = os.path.join(options.mappings_dir, mapping_path)
    try:
        referenced = load_mapping_config(mapping_path)
    except MappingError as exc:
        raise MappingError(f"error loading referenced mapping {rule.mapping_ref}: {exc}") from exc

    new_history = [*history, rule.mapping_ref]
    parent_params = rule.parameters or {}

    for mapping in referenced.mappings:
        if mapping.steps:
            for position, step in enumerate(mapping.steps):
                child = replace(step, parameters=dict(step.parameters or {}))
                if rule.id and child.id:
                    child.id = _prefixed(rule.id, child.id)
                child.parameters.update(parent_params)
                if child.depends_on:
                    child.depends_on = [
                        _prefixed(rule.id, dep) if rule.id else dep for dep in child.depends_on
                    ]
                elif position > 0 and rule.id:
                    previous = mapping.steps[position - 1].id
                    if previous:
                        child.depends_on = [_prefixed(rule.id, previous)]
                process_mapping_rule(
                    child, plan, combined_data, resolver, added_steps, options, new_history
                )
            continue

        if mapping.action:
            action_rule = replace(mapping, parameters=dict(mapping.parameters or {}))
            if rule.id and action_rule.id:
                action_rule.id = _prefixed(rule.id, action_rule.id)
            action_rule.parameters.update(parent_params)
            process_mapping_rule(
                action_rule, plan, combined_data, resolver, added_steps, options, new_history
            )


def process_mapping_rule(
    rule: MappingRule,
    plan: RemediationPlan,
    combined_data: dict[str, Any],
    resolver: Resolver,
    added_steps: MutableSet[str],
    options: GenerateOptions,
    mapping_ref_history: list[str] | None = None,
) -> None:
    """Add the steps a matching rule stands for to ``plan``."""
    history = list(mapping_ref_history or [])

    if rule.mapping_ref and rule.mapping_ref in history:
        chain = " -> ".join(history)
        raise MappingError(f"circular mapping reference detected: {chain} -> {rule.mapping_ref}")

    try:
        matches = evaluate_rule_match(rule, combined_data, options)
    except ExpressionError as exc:
        raise MappingError(f"error evaluating rule {rule.id}: {exc}") from exc
    if not matches:
        return

    if rule.mapping_ref:
        _process_reference(rule, plan, combined_data, resolver, added_steps, options, history)
        return

    if rule.steps:
        for sub_step in rule.steps:
            process_mapping_rule(
                sub_step, plan, combined_data, resolver, added_steps, options, history
            )
        return

    if not rule.action:
        raise MappingError(f"rule '{rule.id}' has no action, steps, or mapping reference")

    if rule.once and rule.action in added_steps:
        if options.verbose_logging:
            print(f"Skipping duplicate action '{rule.action}' (once: true)")
        return

    try:
        action_config = resolver.get_action_config(rule.action)
    except ResolverError as exc:
        raise MappingError(f"error getting action config for rule {rule.id}: {exc}") from exc

    try:
        params = _process_parameters(rule.parameters, combined_data, action_config.schema)
    except MappingError as exc:
        raise MappingError(f"error processing parameters for rule {rule.id}: {exc}") from exc

    depends_on = None if rule.depends_on is None else list(rule.depends_on)
    if rule.depends_on_expr:
        try:
            dynamic = CELEvaluator().evaluate_string_array_expression(
                rule.depends_on_expr, combined_data
            )
        except ExpressionError as exc:
            raise MappingError(
                f"error evaluating depends_on_expr for rule {rule.id}: {exc}"
            ) from exc
        if depends_on is None:
            depends_on = list(dynamic)
        else:
            depends_on.extend(dep for dep in dynamic if dep not in depends_on)
        if options.verbose_logging:
            print(f"Evaluated dynamic dependencies for rule {rule.id}: [{' '.join(dynamic)}]")

    plan.steps.append(
        RemediationStep(
            id=rule.id,
            action_name=rule.action,
            params=params,
            reason=rule.reason,
            depends_on=depends_on or [],
        )
    )
    added_steps.add(rule.action)


def _sort_steps_by_dependencies(plan: RemediationPlan) -> None:
    detect_cycles(plan.steps)
    by_id = {step.id: step for step in plan.steps}
    for step in plan.steps:
        for dep in step.depends_on:
            if dep not in by_id:
                raise MappingError(f"step '{step.id}' depends on non-existent step '{dep}'")

    ordered: list[RemediationStep] = []
    visited: set[str] = set()

    def visit(step: RemediationStep) -> None:
        if step.id in visited:
            return
        visited.add(step.id)
        for dep in step.depends_on:
            visit(by_id[dep])
        ordered.append(step)

    for step in plan.steps:
        visit(step)
    plan.steps = ordered


def _merge(target: dict[str, Any], source: Mapping[str, Any], label: str, verbose: bool) -> None:
    for key, value in source.items():
        target[key] = value
        if verbose:
            print(f"  {label} parameter: {key} = {value}")


def generate_remediation_plan(
    report: Report,
    mapping_file_path: str | os.PathLike,
    options: GenerateOptions,
) -> RemediationPlan:
    """Build a plan from a report, a mapping file and the configured parameter sources."""
    try:
        mapping_config = load_mapping_config(mapping_file_path)
    except MappingError as exc:
        raise MappingError(f"error loading mapping configuration: {exc}") from exc

    _, resolver = create_action_resolver(options.repo_path or None)
    verbose = options.verbose_logging
    combined: dict[str, Any] = {}

    if not options.skip_defaults:
        if verbose:
            print("Loading default parameters...")
        try:
            defaults = load_default_parameters(options.defaults_path)
        except PlanError as exc:
            print(f"Warning: Error loading default parameters: {exc}", file=sys.stderr)
        else:
            _merge(combined, defaults, "Default", verbose)

    if not options.skip_repo_inference:
        if verbose:
            print(f"Inferring parameters from repository: {options.repo_path}")
        try:
            inferred = infer_parameters_from_repo(options.repo_path)
        except OSError as exc:
            print(f"Warning: Error inferring parameters from repository: {exc}", file=sys.stderr)
        else:
            _merge(combined, inferred, "Inferred", verbose)

    if verbose:
        print("Adding parameters from report...")
    _merge(combined, report.findings, "Report", verbose)

    if verbose and options.extra_params:
        print("Adding explicitly provided parameters...")
    _merge(combined, options.extra_params or {}, "Explicit", verbose)

    if not options.non_interactive:
        required = _required_parameters(mapping_config)
        if verbose:
            print(f"Required parameters: {', '.join(required)}")
        try:
            prompt_for_missing_parameters(combined, required)
        except PlanError as exc:
            raise MappingError(f"error prompting for parameters: {exc}") from exc

    project_name = combined.get("project_name")
    repository = combined.get("project_repo")
    plan = RemediationPlan(
        project_name=project_name if isinstance(project_name, str) and project_name else "Unknown Project",
        repository=repository if isinstance(repository, str) and repository else "Unknown Repository",
        steps=[],
    )

    added_steps: set[str] = set()
    for rule in mapping_config.mappings:
        process_mapping_rule(rule, plan, combined, resolver, added_steps, options, [])

    try:
        _sort_steps_by_dependencies(plan)
    except (PlanError, MappingError) as exc:
        raise MappingError(f"error sorting steps by dependencies: {exc}") from exc

    if verbose:
        print(f"Generated remediation plan with {len(plan.steps)} steps")
    return plan