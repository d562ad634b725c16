"""Project file management.

Projects are stored as ``<name>.gdsproj.json``; YAML files (``.yaml`` /
``.yml``) are accepted on load. A relative ``root`` in the file is resolved
against the directory containing the project file.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import ValidationError

from .config import BuildRecord, ProjectConfig

PROJECT_SUFFIX = ".gdsproj.json"


class ProjectLoadError(ValueError):
    """Raised when a project file is unreadable or invalid."""


def load_project(path: Path) -> ProjectConfig:
    payload = _load_project_payload(path)
    try:
        project = ProjectConfig.model_validate(payload)
    except ValidationError as exc:
        raise ProjectLoadError(f"invalid project file {path}: {exc}") from exc
    if "root" not in payload:
        project.root = path.parent.resolve()
    elif not project.root.is_absolute():
        project.root = (path.parent / project.root).resolve()
    return project


def _load_project_payload(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProjectLoadError(f"failed to load project: {exc}") from exc
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ProjectLoadError(f"failed to parse project {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProjectLoadError("project file must contain a mapping")
    return payload


class ProjectManager:
    """Owns the current project and its persistence."""

    def __init__(self) -> None:
        self.current_project: ProjectConfig | None = None

    def create_new_project(self, name: str, root: Path) -> ProjectConfig:
        self.current_project = ProjectConfig(name=name, root=root)
        return self.current_project

    def load_project(self, path: Path) -> ProjectConfig:
        self.current_project = load_project(path)
        return self.current_project

    def save_project(self) -> Path | None:
        project = self.current_project
        if project is None:
            return None
        project.last_modified = datetime.now()
        save_path = project.root / f"{project.name}{PROJECT_SUFFIX}"
        save_path.parent.mkdir(parents=True, exist_ok=True)
        save_path.write_text(project.model_dump_json(indent=2) + "\n", encoding="utf-8")
        return save_path

    def add_rtl_file(self, file_path: str | Path) -> bool:
        """Append an RTL source; returns False for duplicates or no project."""
        project = self.current_project
        if project is None:
            return False
        path = str(Path(file_path).resolve())
        if path in project.rtl_files:
            return False
        project.rtl_files.append(path)
        return True

    def remove_rtl_file(self, file_path: str | Path) -> bool:
        project = self.current_project
        if project is None:
            return False
        path = str(Path(file_path).resolve())
        if path not in project.rtl_files:
            return False
        project.rtl_files.remove(path)
        return True

    def set_pdk(self, pdk: str) -> None:
        if self.current_project is not None:
            self.current_project.pdk = pdk

    def record_build(self, stage: str, *, success: bool, metrics: dict[str, Any] | None = None) -> None:
        if self.current_project is not None:
            self.current_project.build_history.append(
                BuildRecord(stage=stage, success=success, metrics=dict(metrics or {}))
            )


__all__ = [
    "PROJECT_SUFFIX",
    "ProjectLoadError",
    "ProjectManager",
    "load_project",
]
