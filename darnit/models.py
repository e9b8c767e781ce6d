"""Data types shared by plan generation and plan execution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "RemediationStep",
    "RemediationPlan",
    "ExecutionOptions",
    "Report",
    "GenerateOptions",
]


def _mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{what} must be a mapping, got {type(value).__name__}")
    return dict(value)


def _string_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"{what} must be a list, got {type(value).__name__}")
    return [str(item) for item in value]


def _string(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{what} must be a string, got {type(value).__name__}")
    return value


@dataclass
class RemediationStep:
    """One action to run as part of a remediation plan."""

    id: str = ""
    action_name: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    depends_on: list[str] = field(default_factory=list)
    output_refs: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] | None = None
    status: str = ""
    error: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RemediationStep":
        """Build a step from its serialized form."""
        if not isinstance(data, Mapping):
            raise ValueError(f"step must be a mapping, got {type(data).__name__}")
        outputs = data.get("outputs")
        return cls(
            id=_string(data.get("id"), "id"),
            action_name=_string(data.get("action"), "action"),
            params=_mapping(data.get("params"), "params"),
            reason=_string(data.get("reason"), "reason"),
            depends_on=_string_list(data.get("depends_on"), "depends_on"),
            output_refs={
                str(k): str(v) for k, v in _mapping(data.get("output_refs"), "output_refs").items()
            },
            outputs=None if outputs is None else _mapping(outputs, "outputs"),
            status=_string(data.get("status"), "status"),
            error=_string(data.get("error"), "error"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the step, leaving out empty optional fields."""
        result: dict[str, Any] = {
            "id": self.id,
            "action": self.action_name,
            "params": dict(self.params),
            "reason": self.reason,
        }
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        if self.output_refs:
            result["output_refs"] = dict(self.output_refs)
        if self.outputs is not None:
            result["outputs"] = dict(self.outputs)
        if self.status:
            result["status"] = self.status
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class RemediationPlan:
    """An ordered list of remediation steps for one project."""

    project_name: str = ""
    repository: str = ""
    steps: list[RemediationStep] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RemediationPlan":
        """Build a plan from its serialized form."""
        if not isinstance(data, Mapping):
            raise ValueError(f"plan must be a mapping, got {type(data).__name__}")
        steps = data.get("steps") or []
        if not isinstance(steps, (list, tuple)):
            raise ValueError(f"steps must be a list, got {type(steps).__name__}")
        return cls(
            project_name=_string(data.get("project_name"), "project_name"),
            repository=_string(data.get("repository"), "repository"),
            steps=[RemediationStep.from_dict(step) for step in steps],
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the plan."""
        return {
            "project_name": self.project_name,
            "repository": self.repository,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass
class ExecutionOptions:
    """Settings that control how a plan is executed."""

    working_dir: str = ""
    dry_run: bool = False
    verbose_logging: bool = False
    continue_on_error: bool = False


@dataclass
class Report:
    """Findings read from a report, accessible by their top-level keys."""

    findings: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerateOptions:
    """Settings that control plan generation."""

    defaults_path: str = ""
    repo_path: str = ""
    mappings_dir: str = ""
    extra_params: dict[str, Any] = field(default_factory=dict)
    skip_defaults: bool = False
    skip_repo_inference: bool = False
    non_interactive: bool = False
    verbose_logging: bool = False