from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .client import SkillkitError
from .config import USER_PROJECTS_FILENAME, config_dir
from .models import UserProject

logger = logging.getLogger(__name__)


class ProjectError(SkillkitError):
    code = "PROJECT_ERROR"


def _project_from_dict(obj: Any) -> UserProject | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    path = obj.get("path")
    if not isinstance(name, str) or not name or not isinstance(path, str) or not path:
        return None
    return UserProject(name=name, path=path)


def validate_user_project(name: str, path: str, existing: list[UserProject], current_name: str | None = None) -> None:
    if not name:
        raise ProjectError("Project name is required", code="INVALID_INPUT")
    if not path:
        raise ProjectError("Project path is required", code="INVALID_INPUT")
    others = [p for p in existing if p.name != current_name]
    if any(p.name.lower() == name.lower() for p in others):
        raise ProjectError(f"Project name {name!r} already exists", code="PROJECT_CONFLICT")
    if any(p.path.lower() == path.lower() for p in others):
        raise ProjectError(f"Project path {path!r} already exists", code="PROJECT_CONFLICT")


class UserProjectRegistry:
    """Named project directories that project-scope installs can target."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (config_dir() / USER_PROJECTS_FILENAME)

    def list_projects(self) -> list[UserProject]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ProjectError(f"Failed to parse {self.path}: {e}", code="PROJECTS_PARSE_FAILED") from e
        if not isinstance(raw, list):
            return []
        return [p for p in (_project_from_dict(o) for o in raw) if p is not None]

    def _save(self, projects: list[UserProject]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps([asdict(p) for p in projects], indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def get(self, name: str) -> UserProject:
        for project in self.list_projects():
            if project.name == name.strip():
                return project
        raise ProjectError(f"Project {name!r} not found", code="PROJECT_NOT_FOUND")

    def add_project(self, name: str, path: str) -> UserProject:
        name, path = name.strip(), path.strip()
        projects = self.list_projects()
        validate_user_project(name, path, projects)
        project = UserProject(name=name, path=path)
        projects.append(project)
        self._save(projects)
        logger.info("Added project %s (%s)", name, path)
        return project

    def update_project(self, original_name: str, name: str, path: str) -> UserProject:
        original_name, name, path = original_name.strip(), name.strip(), path.strip()
        projects = self.list_projects()
        index = next((i for i, p in enumerate(projects) if p.name == original_name), None)
        if index is None:
            raise ProjectError(f"Project {original_name!r} not found", code="PROJECT_NOT_FOUND")
        validate_user_project(name, path, projects, original_name)
        projects[index] = UserProject(name=name, path=path)
        self._save(projects)
        return projects[index]

    def remove_project(self, name: str) -> None:
        name = name.strip()
        projects = self.list_projects()
        kept = [p for p in projects if p.name != name]
        if len(kept) == len(projects):
            raise ProjectError(f"Project {name!r} not found", code="PROJECT_NOT_FOUND")
        self._save(kept)
        logger.info("Removed project %s", name)
