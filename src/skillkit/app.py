from __future__ import annotations

import asyncio
import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from .agent_apps import AgentAppRegistry
from .backup import write_skills_backup
from .client import RegistryClient, SkillkitError, as_skillkit_error
from .config import Config, agents_home, lock_file_path
from .detect import SkillDetector
from .github import GitHubClient
from .installer import InstallOrchestrator
from .lock import LockLedger, lock_file_from_dict
from .models import (
    AgentInfo,
    BackupResult,
    InstallGithubRequest,
    InstallMethod,
    InstallNativeRequest,
    InstallResult,
    InstallScope,
    InstallUnknownRequest,
    LocalSkill,
    LocalSourceType,
    LockEntryInput,
    ManageSkillAgentAppsRequest,
    RemoteSkill,
    SkillLockFile,
    UpdateCheck,
    UserProject,
)
from .projects import UserProjectRegistry
from .reconcile import LedgerStalenessBackend, ReconciliationEngine, UpdateMonitor
from .scanner import SkillScanner

logger = logging.getLogger(__name__)

_ENUM_FIELDS = {"method": InstallMethod, "scope": InstallScope, "source_type": LocalSourceType}


def build_request(cls: type, value: Any) -> Any:
    """Accept either a request dataclass or a plain dict payload for it."""
    if isinstance(value, cls):
        return value
    if not isinstance(value, dict):
        raise SkillkitError(f"Expected {cls.__name__} payload", code="INVALID_INPUT")
    allowed = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for k, v in value.items():
        if k not in allowed:
            continue
        if k in _ENUM_FIELDS and v is not None:
            v = _ENUM_FIELDS[k](v)
        elif k == "agent_apps":
            v = tuple(v)
        kwargs[k] = v
    return cls(**kwargs)


def _lock_entry_input(value: Any) -> LockEntryInput:
    if isinstance(value, LockEntryInput):
        return value
    if not isinstance(value, dict):
        raise SkillkitError("Expected a lock entry payload", code="INVALID_INPUT")
    return LockEntryInput(
        source=str(value["source"]),
        source_type=str(value.get("sourceType", value.get("source_type", "github"))),
        source_url=str(value.get("sourceUrl", value.get("source_url", ""))),
        skill_path=value.get("skillPath", value.get("skill_path")),
        skill_folder_hash=value.get("skillFolderHash", value.get("skill_folder_hash")),
    )


class SkillkitApp:
    """
    Wires every component together and exposes the command surface.

    Each instance owns its own state (update monitor, agent cache, scratch dirs); `reset()`
    returns it to a fresh state.
    """

    def __init__(
        self,
        cfg: Config | None = None,
        *,
        home: Path | None = None,
        registry: RegistryClient | None = None,
        github: GitHubClient | None = None,
        agents: AgentAppRegistry | None = None,
        projects: UserProjectRegistry | None = None,
    ) -> None:
        self.config = cfg or Config()
        self.agents = agents or AgentAppRegistry(home=home)
        self.projects = projects or UserProjectRegistry()
        self.ledger = LockLedger(lock_file_path(self.config, home=self.agents.home))
        self.registry = registry or RegistryClient(
            base_url=self.config.registry_url,
            api_key=self.config.api_key,
            timeout_s=self.config.timeout_s,
        )
        self.github = github or GitHubClient()
        self.scanner = SkillScanner(
            agents=self.agents,
            ledger=self.ledger,
            canonical_root=agents_home(self.config, home=self.agents.home) / "skills",
        )
        self.staleness = LedgerStalenessBackend(self.ledger)
        self.engine = ReconciliationEngine(registry=self.registry, backend=self.staleness)
        self.monitor = UpdateMonitor(engine=self.engine, local_snapshot=self.scanner.list_skills)
        self.detector = SkillDetector(github=self.github)
        self.orchestrator = InstallOrchestrator(ledger=self.ledger, scanner=self.scanner, agents=self.agents)

        self._commands: dict[str, Callable[..., Awaitable[Any]]] = {
            "read_skill_lock": self.read_skill_lock,
            "write_skill_lock": self.write_skill_lock,
            "add_skill_to_lock": self.add_skill_to_lock,
            "remove_skill_from_lock": self.remove_skill_from_lock,
            "get_skill_from_lock": self.get_skill_from_lock,
            "get_all_locked_skills": self.get_all_locked_skills,
            "list_skills": self.list_skills,
            "delete_skill": self.delete_skill,
            "fetch_remote_skills": self.registry.fetch_remote_skills,
            "fetch_skills_by_names": self.registry.fetch_skills_by_names,
            "record_skill_install": self.registry.record_skill_install,
            "check_skills_updates": self.check_skills_updates,
            "check_skill_update": self.staleness.check_skill_update,
            "check_for_skill_updates": self.monitor.check_for_skill_updates,
            "check_updates_from_remote_list": self.monitor.check_updates_from_remote_list,
            "detect_github_manual": self.detector.detect_github_manual,
            "detect_github_auto": self.detector.detect_github_auto,
            "detect_zip": self.detector.detect_zip,
            "detect_folder": self.detector.detect_folder,
            "install_from_native": self.install_from_native,
            "install_from_github": self.install_from_github,
            "install_from_unknown": self.install_from_unknown,
            "install_remote_skill": self.install_remote_skill,
            "check_skill_version": self.check_skill_version,
            "manage_skill_agent_apps": self.manage_skill_agent_apps,
            "list_agent_apps": self.list_agent_apps,
            "list_user_projects": self.list_user_projects,
            "add_user_project": self.add_user_project,
            "update_user_project": self.update_user_project,
            "remove_user_project": self.remove_user_project,
            "backup_skills": self.backup_skills,
        }

    @property
    def default_method(self) -> InstallMethod:
        return InstallMethod(self.config.sync_mode)

    def commands(self) -> list[str]:
        return sorted(self._commands)

    def reset(self) -> None:
        self.monitor.reset()
        self.agents.reset()
        self.detector.cleanup()

    async def aclose(self) -> None:
        self.detector.cleanup()
        await self.registry.aclose()
        await self.github.aclose()

    async def __aenter__(self) -> "SkillkitApp":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def invoke(self, command: str, **payload: Any) -> Any:
        handler = self._commands.get(command)
        if handler is None:
            raise SkillkitError(f"Unknown command: {command}", code="UNKNOWN_COMMAND")
        try:
            return await handler(**payload)
        except SkillkitError:
            raise
        except Exception as e:  # noqa: BLE001 - normalize into the structured error shape
            raise as_skillkit_error(e) from e

    # lock ledger

    async def read_skill_lock(self) -> SkillLockFile:
        return await self.ledger.read()

    async def write_skill_lock(self, lock: SkillLockFile | dict[str, Any]) -> None:
        if not isinstance(lock, SkillLockFile):
            lock = lock_file_from_dict(lock)
        await self.ledger.write(lock)
        self.monitor.invalidate()

    async def add_skill_to_lock(self, name: str, entry: LockEntryInput | dict[str, Any]) -> None:
        await self.ledger.upsert(name, _lock_entry_input(entry))
        self.monitor.invalidate()

    async def remove_skill_from_lock(self, name: str) -> bool:
        removed = await self.ledger.remove(name)
        if removed:
            self.monitor.invalidate()
        return removed

    async def get_skill_from_lock(self, name: str):
        return await self.ledger.get(name)

    async def get_all_locked_skills(self):
        return await self.ledger.get_all()

    # local state

    async def list_skills(self, scope: InstallScope | str = InstallScope.GLOBAL, project_path: str | None = None) -> list[LocalSkill]:
        return await self.scanner.list_skills(
            scope=InstallScope(scope), project_path=Path(project_path) if project_path else None
        )

    async def list_agent_apps(self, local_only: bool = False) -> list[AgentInfo]:
        return self.agents.local_apps() if local_only else self.agents.all_apps()

    # updates

    async def check_skills_updates(self, checks: Sequence[UpdateCheck | dict[str, Any]]) -> list[str]:
        items = [c if isinstance(c, UpdateCheck) else UpdateCheck(**c) for c in checks]
        return await self.staleness.check_skills_updates(items)

    # installs

    def _mutated(self, name: str, scope: InstallScope, result: InstallResult) -> None:
        # The published list only covers global installs.
        if result.success and scope == InstallScope.GLOBAL:
            self.monitor.mark_current(name)
        else:
            self.monitor.invalidate()

    async def install_from_native(self, request: InstallNativeRequest | dict[str, Any]) -> InstallResult:
        req = build_request(InstallNativeRequest, request)
        result = await self.orchestrator.install_from_native(req)
        self._mutated(req.name, req.scope, result)
        return result

    async def install_from_github(self, request: InstallGithubRequest | dict[str, Any]) -> InstallResult:
        req = build_request(InstallGithubRequest, request)
        result = await self.orchestrator.install_from_github(req)
        self._mutated(req.name, req.scope, result)
        return result

    async def install_from_unknown(self, request: InstallUnknownRequest | dict[str, Any]) -> InstallResult:
        req = build_request(InstallUnknownRequest, request)
        result = await self.orchestrator.install_from_unknown(req)
        self._mutated(req.name, req.scope, result)
        return result

    async def install_remote_skill(
        self,
        skill: RemoteSkill,
        agent_apps: Sequence[str],
        method: InstallMethod | str | None = None,
        scope: InstallScope | str = InstallScope.GLOBAL,
        project_path: str | None = None,
    ) -> InstallResult:
        """Install a registry skill from its GitHub source and report the install to the registry."""
        if not skill.url:
            raise SkillkitError(f"{skill.name} has no source URL in the registry", code="INVALID_SOURCE")
        skill_path = skill.path or "SKILL.md"
        detected = (await self.detector.detect_github_auto(skill.url, skill_path))[0]
        try:
            result = await self.install_from_github(
                InstallGithubRequest(
                    name=skill.name,
                    tmp_path=detected.tmp_path,
                    skill_path=detected.skill_path,
                    source_url=skill.url,
                    agent_apps=tuple(agent_apps),
                    method=InstallMethod(method) if method else self.default_method,
                    skill_folder_hash=skill.skill_path_sha or detected.skill_folder_hash,
                    scope=InstallScope(scope),
                    project_path=project_path,
                )
            )
        finally:
            self.detector.release(detected.tmp_path)

        if result.success:
            try:
                await self.registry.record_skill_install(skill.skill_id)
            except SkillkitError as e:
                logger.warning("Could not record install of %s: %s", skill.name, e)
        return result

    async def check_skill_version(
        self,
        name: str,
        candidate_paths: Sequence[str] | None = None,
        scope: InstallScope | str = InstallScope.GLOBAL,
        project_path: str | None = None,
    ):
        return await self.orchestrator.check_skill_version(
            name,
            candidate_paths,
            scope=InstallScope(scope),
            project_path=Path(project_path) if project_path else None,
        )

    async def manage_skill_agent_apps(self, request: ManageSkillAgentAppsRequest | dict[str, Any]) -> InstallResult:
        req = build_request(ManageSkillAgentAppsRequest, request)
        result = await self.orchestrator.manage_skill_agent_apps(req)
        self.monitor.invalidate()
        return result

    async def delete_skill(
        self, name: str, scope: InstallScope | str = InstallScope.GLOBAL, project_path: str | None = None
    ) -> InstallResult:
        result = await self.orchestrator.delete_skill(
            name, scope=InstallScope(scope), project_path=Path(project_path) if project_path else None
        )
        self._mutated(name, InstallScope(scope), result)
        return result

    # user projects

    async def list_user_projects(self) -> list[UserProject]:
        return await asyncio.to_thread(self.projects.list_projects)

    async def add_user_project(self, name: str, path: str) -> UserProject:
        return await asyncio.to_thread(self.projects.add_project, name, path)

    async def update_user_project(self, original_name: str, name: str, path: str) -> UserProject:
        return await asyncio.to_thread(self.projects.update_project, original_name, name, path)

    async def remove_user_project(self, name: str) -> None:
        await asyncio.to_thread(self.projects.remove_project, name)

    def project_path_for(self, value: str | None) -> str | None:
        """Resolve a registered project name to its path; anything else is taken as a path."""
        if not value:
            return None
        for project in self.projects.list_projects():
            if project.name == value:
                return project.path
        return value

    # backups

    async def backup_skills(self, backup_folder: str | None = None) -> BackupResult:
        folder = backup_folder or self.config.backup_folder
        if not folder:
            raise SkillkitError(
                "No backup folder configured",
                code="INVALID_INPUT",
                hint="Pass a folder or run `skillkit config set --backup-folder PATH`.",
            )
        result = await asyncio.to_thread(write_skills_backup, self.scanner.canonical_root, Path(folder).expanduser())
        if result.success:
            self.config = replace(self.config, backup_folder=folder, last_backup_time=result.backup_time)
        return result
