"""Locating and loading action definitions from the configured directories."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

__all__ = [
    "ActionConfig",
    "Action",
    "OutputAction",
    "ResolverError",
    "Resolver",
    "load_action_config",
]


class ResolverError(LookupError):
    """Raised when an action or template cannot be found or loaded."""


@dataclass
class ActionConfig:
    """Definition of an action as read from its YAML file."""

    name: str = ""
    type: str = ""
    description: str = ""
    template_path: str = ""
    target_path: str = ""
    create_dirs: bool = False
    command: str = ""
    args: list[str] | None = None
    schema: dict[str, Any] | None = None
    defaults: dict[str, Any] | None = None
    outputs: Any = None
    labels: dict[str, list[str]] = field(default_factory=dict)


class Action(ABC):
    """Something that can be executed with a set of parameters."""

    description: str = ""

    @abstractmethod
    def execute(self, params: dict[str, Any]) -> None:
        """Run the action."""


class OutputAction(Action):
    """An action that also returns named outputs."""

    @abstractmethod
    def execute_with_output(self, params: dict[str, Any]) -> dict[str, Any] | None:
        """Run the action and return its outputs."""

    def execute(self, params: dict[str, Any]) -> None:
        self.execute_with_output(params)


class _Factory(Protocol):
    def create(self, config: ActionConfig) -> Action: ...


def _key(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


def _sanitize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {_key(k): _sanitize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize(item) for item in value]
    return value


def _join(*parts: str) -> str:
    joined = os.path.join(*(str(p) for p in parts if p))
    return os.path.normpath(joined) if joined else ""


def load_action_config(path: str | os.PathLike) -> ActionConfig:
    """Read an action definition from a YAML file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ResolverError(f"error reading action file: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ResolverError(f"error parsing action file: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ResolverError("error parsing action file: top level is not a mapping")
    data: dict[str, Any] = _sanitize(raw)

    def text_of(key: str) -> str:
        value = data.get(key)
        return value if isinstance(value, str) else ""

    def mapping_of(key: str) -> dict[str, Any] | None:
        value = data.get(key)
        return value if isinstance(value, dict) else None

    args = data.get("args")
    labels_raw = data.get("labels")
    labels: dict[str, list[str]] = {}
    if isinstance(labels_raw, dict):
        labels = {
            key: [item for item in values if isinstance(item, str)]
            for key, values in labels_raw.items()
            if isinstance(values, list)
        }

    config = ActionConfig(
        name=text_of("name"),
        type=text_of("type"),
        description=text_of("description"),
        template_path=text_of("template_path"),
        target_path=text_of("target_path"),
        create_dirs=data.get("create_dirs") is True,
        command=text_of("command"),
        args=[item for item in args if isinstance(item, str)] if isinstance(args, list) else None,
        schema=mapping_of("schema"),
        defaults=mapping_of("defaults"),
        outputs=data.get("outputs"),
        labels=labels,
    )
    if not config.name:
        config.name = Path(path).stem
    return config


def _ordered(local: str, global_: str, use_local: bool, use_global: bool, global_first: bool) -> list[str]:
    if use_local and use_global:
        return [global_, local] if global_first else [local, global_]
    if use_local:
        return [local]
    if use_global:
        return [global_]
    return []


class Resolver:
    """Finds action definitions in local and global directories, in order of precedence."""

    def __init__(
        self,
        factory: _Factory,
        project_dir: str,
        use_local: bool,
        use_global: bool,
        global_first: bool,
        local_actions_dir: str,
        library_path: str,
    ):
        self.factory = factory
        self.action_paths = _ordered(
            _join(project_dir, local_actions_dir),
            _join(library_path, "actions"),
            use_local,
            use_global,
            global_first,
        )

    def _find(self, name: str, build):
        last_error: Exception | None = None
        for directory in self.action_paths:
            candidate = Path(directory) / f"{name}.yaml"
            if not candidate.exists():
                last_error = FileNotFoundError(f"stat {candidate}: no such file or directory")
                continue
            try:
                return build(load_action_config(candidate)), None
            except Exception as exc:  # noqa: BLE001 - any failure moves on to the next location
                last_error = exc
        return None, last_error

    def resolve_action(self, name: str) -> Action:
        """Load the named action and create it through the factory."""
        action, error = self._find(name, self.factory.create)
        if action is not None:
            return action
        if error is not None:
            raise ResolverError(f"could not resolve action '{name}': {error}") from error
        raise ResolverError(f"action '{name}' not found in any configured location")

    def get_action_config(self, name: str) -> ActionConfig:
        """Load the named action's definition without creating it."""
        config, error = self._find(name, lambda c: c)
        if config is not None:
            return config
        if error is not None:
            raise ResolverError(f"could not find action configuration '{name}': {error}") from error
        raise ResolverError(f"action configuration '{name}' not found in any configured location")

    def list_available_actions(self) -> dict[str, ActionConfig]:
        """Return every loadable action, the first location winning on name clashes."""
        actions: dict[str, ActionConfig] = {}
        for directory in self.action_paths:
            base = Path(directory)
            if not base.is_dir():
                continue
            try:
                entries = sorted(base.iterdir(), key=lambda p: p.name)
            except OSError:
                continue
            for entry in entries:
                if entry.is_dir() or entry.suffix != ".yaml":
                    continue
                try:
                    config = load_action_config(entry)
                except ResolverError:
                    continue
                if not config.name:
                    config.name = entry.stem
                actions.setdefault(config.name, config)
        return actions

    def resolve_template_path(
        self,
        template_path: str,
        project_dir: str,
        use_local: bool,
        use_global: bool,
        global_first: bool,
        local_templates_dir: str,
        library_path: str,
    ) -> str:
        """Return the first existing location of a template."""
        candidates = _ordered(
            _join(project_dir, local_templates_dir, template_path),
            _join(library_path, "templates", template_path),
            use_local,
            use_global,
            global_first,
        )
        for candidate in candidates:
            if os.path.exists(candidate):
                return candidate
        raise ResolverError(f"template '{template_path}' not found in any configured location")

    def filter_actions_by_labels(
        self,
        actions: Mapping[str, ActionConfig],
        label_selectors: Mapping[str, list[str]] | None,
    ) -> dict[str, ActionConfig]:
        """Keep actions whose labels match every selector key (any value, case-insensitive)."""
        if not label_selectors:
            return dict(actions)
        return {
            name: config
            for name, config in actions.items()
            if _matches(config.labels, label_selectors)
        }


def _matches(labels: Mapping[str, list[str]], selectors: Mapping[str, list[str]]) -> bool:
    for key, wanted in selectors.items():
        if key not in labels:
            return False
        have = {value.casefold() for value in labels[key]}
        if not any(value.casefold() in have for value in wanted):
            return False
    return True