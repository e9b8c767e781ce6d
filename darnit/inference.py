"""Inference of plan parameters from a local Git repository."""

from __future__ import annotations

import json
import os
import subprocess
from pathlib import Path
from typing import Any

__all__ = ["infer_parameters_from_repo"]


def infer_parameters_from_repo(repo_path: str | os.PathLike | None) -> dict[str, Any]:
    """Collect the remote URL, organization, repository and project name of a repository."""
    params: dict[str, Any] = {}
    base = Path(repo_path) if repo_path else Path.cwd()
    if repo_path and not base.is_dir():
        raise FileNotFoundError(f"error changing to repo directory: {repo_path}")

    try:
        completed = subprocess.run(
            ["git", "config", "--get", "remote.origin.url"],
            cwd=base,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        completed = None

    if completed is not None and completed.returncode == 0:
        remote_url = completed.stdout.strip()
        params["project_repo"] = remote_url
        parts = remote_url.split("/")
        if len(parts) >= 2:
            params["organization"] = parts[-2]
            name = parts[-1]
            params["repo_name"] = name[: -len(".git")] if name.endswith(".git") else name

    package_json = base / "package.json"
    if package_json.is_file():
        try:
            package = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            package = None
        if isinstance(package, dict):
            name = package.get("name")
            if isinstance(name, str) and name:
                params["project_name"] = name

    return params