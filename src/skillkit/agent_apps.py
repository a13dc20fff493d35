from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .client import AgentAppError
from .config import USER_AGENT_APPS_FILENAME, config_dir
from .models import AgentInfo, InstallScope

logger = logging.getLogger(__name__)

BUILTIN_AGENT_APPS: tuple[AgentInfo, ...] = (
    AgentInfo("claude-code", "Claude Code", ".claude/skills", "~/.claude/skills"),
    AgentInfo("codex", "Codex", ".codex/skills", "~/.codex/skills"),
    AgentInfo("cursor", "Cursor", ".cursor/skills", "~/.cursor/skills"),
    AgentInfo("cline", "Cline", ".cline/skills", "~/.cline/skills"),
    AgentInfo("opencode", "OpenCode", ".opencode/skills", "~/.config/opencode/skills"),
    AgentInfo("openhands", "OpenHands", ".openhands/skills", "~/.openhands/skills"),
    AgentInfo("github-copilot", "GitHub Copilot", ".github/skills", "~/.copilot/skills"),
    AgentInfo("continue", "Continue", ".continue/skills", "~/.continue/skills"),
    AgentInfo("gemini-cli", "Gemini CLI", ".gemini/skills", "~/.gemini/skills"),
    AgentInfo("goose", "Goose", ".goose/skills", "~/.config/goose/skills"),
    AgentInfo("windsurf", "Windsurf", ".windsurf/skills", "~/.codeium/windsurf/skills"),
    AgentInfo("roo", "Roo Code", ".roo/skills", "~/.roo/skills"),
    AgentInfo("kiro-cli", "Kiro CLI", ".kiro/skills", "~/.kiro/skills"),
    AgentInfo("qwen-code", "Qwen Code", ".qwen/skills", "~/.qwen/skills"),
    AgentInfo("amp", "AMP", ".agents/skills", "~/.config/agents/skills"),
    AgentInfo("antigravity", "Antigravity", ".agent/skills", "~/.gemini/antigravity/skills"),
    AgentInfo("command-code", "Command Code", ".commandcode/skills", "~/.commandcode/skills"),
    AgentInfo("crush", "Crush", ".crush/skills", "~/.config/crush/skills"),
    AgentInfo("trae", "Trae", ".trae/skills", "~/.trae/skills"),
    AgentInfo("trae-cn", "Trae CN", ".trae-cn/skills", "~/.trae-cn/skills"),
    AgentInfo("vscode", "VSCode", ".github/skills", "~/.vscode/skills"),
)


def generate_id_from_display_name(display_name: str) -> str:
    lowered = display_name.strip().lower().replace(" ", "-")
    return re.sub(r"[^a-z0-9-]", "", lowered)


def _agent_from_dict(obj: Any) -> AgentInfo | None:
    if not isinstance(obj, dict):
        return None
    app_id = obj.get("id")
    display_name = obj.get("display_name")
    if not isinstance(app_id, str) or not app_id or not isinstance(display_name, str):
        return None
    project_path = obj.get("project_path")
    global_path = obj.get("global_path")
    return AgentInfo(
        id=app_id,
        display_name=display_name,
        project_path=project_path if isinstance(project_path, str) and project_path else None,
        global_path=global_path if isinstance(global_path, str) and global_path else None,
        is_user_custom=True,
    )


class AgentAppRegistry:
    """
    Built-in agent applications merged with user-defined ones.

    A user app replaces any built-in app with the same id or the same global path. An app
    is "local" when its global skills directory exists on this machine.
    """

    def __init__(self, *, home: Path | None = None, user_apps_path: Path | None = None) -> None:
        self.home = (home or Path.home()).expanduser()
        self.user_apps_path = user_apps_path or (config_dir() / USER_AGENT_APPS_FILENAME)
        self._local_cache: list[AgentInfo] | None = None

    def reset(self) -> None:
        self._local_cache = None

    def expand(self, path: str) -> Path:
        if path == "~":
            return self.home
        if path.startswith("~/"):
            return self.home / path[2:]
        return Path(path)

    def load_user_apps(self) -> list[AgentInfo]:
        if not self.user_apps_path.exists():
            return []
        try:
            raw = json.loads(self.user_apps_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable %s: %s", self.user_apps_path, e)
            return []
        if not isinstance(raw, list):
            return []
        return [a for a in (_agent_from_dict(o) for o in raw) if a is not None]

    def _save_user_apps(self, apps: list[AgentInfo]) -> None:
        self.user_apps_path.parent.mkdir(parents=True, exist_ok=True)
        payload = [{k: v for k, v in asdict(a).items() if k != "is_user_custom"} for a in apps]
        tmp = self.user_apps_path.with_suffix(self.user_apps_path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(self.user_apps_path)
        self.reset()

    def all_apps(self) -> list[AgentInfo]:
        result = list(BUILTIN_AGENT_APPS)
        for user_app in self.load_user_apps():
            result = [
                a
                for a in result
                if a.id != user_app.id and (user_app.global_path is None or a.global_path != user_app.global_path)
            ]
            result.append(user_app)
        return result

    def local_apps(self) -> list[AgentInfo]:
        if self._local_cache is None:
            self._local_cache = [a for a in self.all_apps() if a.global_path and self.expand(a.global_path).exists()]
            logger.debug("Local agent apps: %s", [a.id for a in self._local_cache])
        return list(self._local_cache)

    def get(self, app_id: str) -> AgentInfo:
        for app in self.all_apps():
            if app.id == app_id:
                return app
        raise AgentAppError(f"Unknown agent app: {app_id}", code="AGENT_APP_NOT_FOUND")

    def skills_dir(self, app_id: str, scope: InstallScope, project_path: Path | None = None) -> Path:
        app = self.get(app_id)
        if scope == InstallScope.GLOBAL:
            if not app.global_path:
                raise AgentAppError(f"{app.display_name} does not support global installs", code="SCOPE_UNSUPPORTED")
            return self.expand(app.global_path)
        if not app.project_path:
            raise AgentAppError(f"{app.display_name} does not support project installs", code="SCOPE_UNSUPPORTED")
        if project_path is None:
            raise AgentAppError("A project path is required for project installs", code="PROJECT_PATH_REQUIRED")
        return project_path / app.project_path

    def _validate(self, display_name: str, global_path: str, project_path: str, current_id: str | None) -> None:
        if not display_name:
            raise AgentAppError("Display name is required", code="INVALID_INPUT")
        if not global_path:
            raise AgentAppError("Global path is required", code="INVALID_INPUT")
        if not project_path:
            raise AgentAppError("Project path is required", code="INVALID_INPUT")
        others = [a for a in self.local_apps() if a.id != current_id]
        if any(a.display_name.lower() == display_name.lower() for a in others):
            raise AgentAppError(f"Display name {display_name!r} already exists", code="AGENT_APP_CONFLICT")
        if any(a.global_path == global_path for a in others):
            raise AgentAppError(f"Global path {global_path!r} already exists", code="AGENT_APP_CONFLICT")
        if any(a.project_path == project_path for a in others):
            raise AgentAppError(f"Project path {project_path!r} already exists", code="AGENT_APP_CONFLICT")
        if not self.expand(global_path).exists():
            raise AgentAppError(f"Global path folder does not exist: {global_path}", code="PATH_NOT_FOUND")

    def add_user_app(self, display_name: str, global_path: str, project_path: str) -> AgentInfo:
        display_name, global_path, project_path = display_name.strip(), global_path.strip(), project_path.strip()
        self._validate(display_name, global_path, project_path, None)
        app_id = generate_id_from_display_name(display_name)
        if not app_id:
            raise AgentAppError(f"Cannot derive an id from {display_name!r}", code="INVALID_INPUT")
        app = AgentInfo(app_id, display_name, project_path, global_path, is_user_custom=True)
        apps = [a for a in self.load_user_apps() if a.id != app_id]
        apps.append(app)
        self._save_user_apps(apps)
        logger.info("Added user agent app %s", app_id)
        return app

    def update_user_app(self, app_id: str, display_name: str, global_path: str, project_path: str) -> AgentInfo:
        if not self.get(app_id).is_user_custom:
            raise AgentAppError("Cannot update built-in agent apps", code="AGENT_APP_BUILTIN")
        display_name, global_path, project_path = display_name.strip(), global_path.strip(), project_path.strip()
        self._validate(display_name, global_path, project_path, app_id)
        updated = AgentInfo(app_id, display_name, project_path, global_path, is_user_custom=True)
        apps = [updated if a.id == app_id else a for a in self.load_user_apps()]
        self._save_user_apps(apps)
        return updated

    def remove_user_app(self, app_id: str) -> None:
        if not self.get(app_id).is_user_custom:
            raise AgentAppError("Cannot remove built-in agent apps", code="AGENT_APP_BUILTIN")
        self._save_user_apps([a for a in self.load_user_apps() if a.id != app_id])
        logger.info("Removed user agent app %s", app_id)
