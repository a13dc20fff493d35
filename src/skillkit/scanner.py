from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .agent_apps import AgentAppRegistry
from .linker import managed_method, managed_target
from .lock import LockLedger, ledger_for_scope
from .models import InstallMethod, InstallScope, InstalledAgentApp, LocalSkill, SkillLockEntry
from .reconcile import classify_provenance
from .skill_folder import is_skill_dir, sanitize_name, try_read_skill_frontmatter

logger = logging.getLogger(__name__)


@dataclass
class _Scanned:
    name: str
    root_folder: Path
    description: str | None
    agents: dict[str, InstalledAgentApp] = field(default_factory=dict)


class SkillScanner:
    """
    Read-only view of what is installed on disk.

    Managed skills live in the canonical skills folder and are bound into agent folders by
    symlink or marked copy. Skill folders found in agent folders without such a binding are
    reported as unmanaged (source type "unknown").
    """

    def __init__(self, *, agents: AgentAppRegistry, ledger: LockLedger, canonical_root: Path) -> None:
        self.agents = agents
        self.ledger = ledger
        self.canonical_root = canonical_root

    def canonical_root_for(self, scope: InstallScope, project_path: Path | None = None) -> Path:
        if scope == InstallScope.PROJECT:
            if project_path is None:
                raise ValueError("project_path is required for project scope")
            return project_path / ".agents" / "skills"
        return self.canonical_root

    def canonical_path(self, name: str, scope: InstallScope, project_path: Path | None = None) -> Path:
        return self.canonical_root_for(scope, project_path) / sanitize_name(name)

    def agent_dirs(self, scope: InstallScope, project_path: Path | None = None) -> list[tuple[str, Path]]:
        dirs: list[tuple[str, Path]] = []
        seen: set[Path] = set()
        canonical_root = self.canonical_root_for(scope, project_path)
        for app in self.agents.all_apps():
            if scope == InstallScope.GLOBAL and not app.global_path:
                continue
            if scope == InstallScope.PROJECT and not app.project_path:
                continue
            d = self.agents.skills_dir(app.id, scope, project_path)
            if not d.is_dir() or d in seen or d == canonical_root:
                continue
            seen.add(d)
            dirs.append((app.id, d))
        return dirs

    def installed_agent_apps(
        self, name: str, scope: InstallScope, project_path: Path | None = None
    ) -> list[InstalledAgentApp]:
        canonical = self.canonical_path(name, scope, project_path)
        folder = sanitize_name(name)
        found: list[InstalledAgentApp] = []
        for app_id, d in self.agent_dirs(scope, project_path):
            link_path = d / folder
            method = managed_method(link_path, canonical)
            if method is not None:
                found.append(InstalledAgentApp(id=app_id, skill_folder=str(link_path), method=method))
        return sorted(found, key=lambda a: a.id)

    def unmanaged_copies(self, name: str, scope: InstallScope, project_path: Path | None = None) -> list[Path]:
        canonical_root = self.canonical_root_for(scope, project_path)
        folder = sanitize_name(name)
        out: list[Path] = []
        for _, d in self.agent_dirs(scope, project_path):
            p = d / folder
            if is_skill_dir(p) and managed_target(p, canonical_root) is None:
                out.append(p)
        return out

    def _scan(self, scope: InstallScope, project_path: Path | None) -> tuple[list[_Scanned], list[_Scanned]]:
        canonical_root = self.canonical_root_for(scope, project_path)
        managed: dict[Path, _Scanned] = {}
        if canonical_root.is_dir():
            for p in sorted(canonical_root.iterdir()):
                if not is_skill_dir(p):
                    continue
                fm = try_read_skill_frontmatter(p)
                managed[p.resolve()] = _Scanned(name=fm.name or p.name, root_folder=p, description=fm.description)

        unmanaged: dict[str, _Scanned] = {}
        for app_id, d in self.agent_dirs(scope, project_path):
            for p in sorted(d.iterdir()):
                if not is_skill_dir(p):
                    continue
                target = managed_target(p, canonical_root)
                owner = managed.get(target.resolve()) if target is not None else None
                if owner is not None:
                    method = InstallMethod.SYMLINK if p.is_symlink() else InstallMethod.COPY
                    owner.agents[app_id] = InstalledAgentApp(id=app_id, skill_folder=str(p), method=method)
                    continue

                fm = try_read_skill_frontmatter(p)
                name = fm.name or p.name
                item = unmanaged.setdefault(name, _Scanned(name=name, root_folder=p, description=fm.description))
                method = InstallMethod.SYMLINK if p.is_symlink() else InstallMethod.COPY
                item.agents.setdefault(app_id, InstalledAgentApp(id=app_id, skill_folder=str(p), method=method))

        managed_names = {s.name for s in managed.values()}
        return list(managed.values()), [s for s in unmanaged.values() if s.name not in managed_names]

    async def list_skills(
        self, *, scope: InstallScope = InstallScope.GLOBAL, project_path: Path | None = None
    ) -> list[LocalSkill]:
        entries = await ledger_for_scope(self.ledger, scope, project_path).get_all()
        managed, unmanaged = await asyncio.to_thread(self._scan, scope, project_path)

        skills: list[LocalSkill] = []
        for item in managed + unmanaged:
            entry: SkillLockEntry | None = entries.get(item.name)
            skills.append(
                LocalSkill(
                    name=item.name,
                    installed_agent_apps=tuple(item.agents[k] for k in sorted(item.agents)),
                    source_type=classify_provenance(entry),
                    source=entry.source if entry else None,
                    root_folder=str(item.root_folder),
                    description=item.description,
                    scope=scope,
                )
            )
        skills.sort(key=lambda s: s.name)
        logger.debug("Scanned %d local skills (%s)", len(skills), scope.value)
        return skills

    async def get_skill(
        self, name: str, *, scope: InstallScope = InstallScope.GLOBAL, project_path: Path | None = None
    ) -> LocalSkill | None:
        for skill in await self.list_skills(scope=scope, project_path=project_path):
            if skill.name == name:
                return skill
        return None
