"""Running external commands whose command line is built from templates."""

from __future__ import annotations

import os
import re
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

__all__ = ["TemplateError", "CommandResult", "CommandExecutor", "render_template"]


class TemplateError(ValueError):
    """Raised when a template refers to something that cannot be rendered."""


_ACTION_RE = re.compile(r"\{\{-?\s*(.*?)\s*-?\}\}", re.DOTALL)
_PATH_RE = re.compile(r"^\.([A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)$")


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<no value>"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format(v) for v in value) + "]"
    if isinstance(value, Mapping):
        return "map[" + " ".join(f"{k}:{_format(value[k])}" for k in sorted(value, key=str)) + "]"
    return str(value)


def render_template(text: str, params: Mapping[str, Any]) -> str:
    """Substitute ``{{.name}}`` and ``{{.a.b}}`` references with values from ``params``."""

    def substitute(match: re.Match) -> str:
        action = match.group(1)
        if action == ".":
            return _format(dict(params))
        path = _PATH_RE.match(action)
        if not path:
            raise TemplateError(f"unsupported template action: {action!r}")
        value: Any = params
        for key in path.group(1).split("."):
            if not isinstance(value, Mapping) or key not in value:
                raise TemplateError(f'map has no entry for key "{key}"')
            value = value[key]
        return _format(value)

    return _ACTION_RE.sub(substitute, text)


@dataclass
class CommandResult:
    """Captured standard output and exit status of a finished command."""

    output: bytes
    exit_status: int = 0


def _env_dict(env: Sequence[str]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in env:
        key, sep, value = item.partition("=")
        if sep:
            result[key] = value
    return result


class CommandExecutor:
    """Builds and runs a single external command."""

    def __init__(self, command: str, args: Sequence[str] | None = None):
        self.command = command
        self.args = list(args or [])
        self.working_dir = ""
        self.environment: list[str] = []
        self.verbose = False

    def with_working_dir(self, directory: str) -> "CommandExecutor":
        self.working_dir = directory
        return self

    def with_environment(self, env: Sequence[str]) -> "CommandExecutor":
        self.environment = list(env)
        return self

    def with_verbose(self, verbose: bool) -> "CommandExecutor":
        self.verbose = verbose
        return self

    def process_parameters(self, params: Mapping[str, Any]) -> None:
        """Render the command, arguments and environment against ``params``."""
        try:
            self.command = render_template(self.command, params)
        except TemplateError as exc:
            raise TemplateError(f"error processing command: {exc}") from exc

        rendered = []
        for arg in self.args:
            try:
                rendered.append(render_template(arg, params))
            except TemplateError as exc:
                raise TemplateError(f"error processing argument: {exc}") from exc
        self.args = rendered

        working_dir = params.get("working_dir")
        if isinstance(working_dir, str) and working_dir:
            self.working_dir = working_dir

        env = params.get("environment")
        if isinstance(env, list):
            variables = [f"{k}={v}" for k, v in os.environ.items()]
            for item in env:
                if isinstance(item, str):
                    try:
                        variables.append(render_template(item, params))
                    except TemplateError as exc:
                        raise TemplateError(f"error processing environment variable: {exc}") from exc
            self.environment = variables

    def execute(self) -> CommandResult:
        """Run the command.

        Raises ``OSError`` when the command cannot be started and
        ``subprocess.CalledProcessError`` when it exits with a non-zero status.
        """
        print(f"Executing: {self.command} {' '.join(self.args)}")
        completed = subprocess.run(
            [self.command, *self.args],
            cwd=self.working_dir or None,
            env=_env_dict(self.environment) if self.environment else None,
            capture_output=True,
            check=False,
        )
        if self.verbose:
            sys.stdout.write(completed.stdout.decode(errors="replace"))
            sys.stderr.write(completed.stderr.decode(errors="replace"))
        if completed.returncode != 0:
            raise subprocess.CalledProcessError(
                completed.returncode,
                [self.command, *self.args],
                output=completed.stdout,
                stderr=completed.stderr,
            )
        return CommandResult(output=completed.stdout, exit_status=0)