from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from .agent_apps import AgentAppRegistry
from .client import SkillkitError
from .github import parse_github_url
from .linker import SkillLinker
from .lock import LockLedger, ledger_for_scope
from .models import (
    InstallGithubRequest,
    InstallMethod,
    InstallNativeRequest,
    InstallResult,
    InstallScope,
    InstallUnknownRequest,
    LockEntryInput,
    LocalSourceType,
    ManageSkillAgentAppsRequest,
    SourceCheckResult,
    SourceVersionGroup,
)
from .scanner import SkillScanner
from .skill_folder import compute_skill_folder_hash, copy_skill_tree, is_skill_dir, remove_path, sanitize_name

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def result(self, message: str) -> InstallResult:
        return InstallResult(
            success=not self.failed,
            stdout="\n".join(self.stdout),
            stderr="\n".join(self.stderr),
            message=message,
        )


def _same_folder(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return False


def replace_canonical(source: Path, canonical: Path) -> None:
    """Copy `source` over `canonical`, restoring the previous contents if the swap fails."""
    if _same_folder(source, canonical):
        return
    canonical.parent.mkdir(parents=True, exist_ok=True)
    staging = canonical.with_name(canonical.name + ".skillkit-staging")
    backup = canonical.with_name(canonical.name + ".skillkit-backup")
    if staging.exists():
        shutil.rmtree(staging, ignore_errors=True)
    copy_skill_tree(source, staging)

    had_existing = canonical.exists() or canonical.is_symlink()
    if backup.exists():
        shutil.rmtree(backup, ignore_errors=True)
    if had_existing:
        canonical.rename(backup)

    try:
        staging.rename(canonical)
    except Exception:
        if canonical.exists():
            shutil.rmtree(canonical, ignore_errors=True)
        if had_existing and backup.exists():
            backup.rename(canonical)
        raise
    finally:
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)


class InstallOrchestrator:
    """
    Applies install, manage and delete operations to the filesystem and the ledger.

    Per-agent failures are collected into the InstallResult instead of raised. Ledger write
    failures propagate.
    """

    def __init__(
        self,
        *,
        ledger: LockLedger,
        scanner: SkillScanner,
        agents: AgentAppRegistry,
        linker: SkillLinker | None = None,
    ) -> None:
        self.ledger = ledger
        self.scanner = scanner
        self.agents = agents
        self.linker = linker or SkillLinker()

    def ledger_for(self, scope: InstallScope, project_path: Path | None = None) -> LockLedger:
        return ledger_for_scope(self.ledger, scope, project_path)

    def _link_agents(
        self,
        outcome: _Outcome,
        *,
        name: str,
        canonical: Path,
        agent_ids: Iterable[str],
        method: InstallMethod,
        scope: InstallScope,
        project_path: Path | None,
    ) -> None:
        folder = sanitize_name(name)
        for agent_id in agent_ids:
            try:
                link_path = self.agents.skills_dir(agent_id, scope, project_path) / folder
                self.linker.link(canonical, link_path, method)
            except (SkillkitError, OSError) as e:
                outcome.failed.append(agent_id)
                outcome.stderr.append(f"{agent_id}: {e}")
                logger.warning("Installing %s into %s failed: %s", name, agent_id, e)
                continue
            outcome.succeeded.append(agent_id)
            outcome.stdout.append(f"{agent_id}: {method.value} {link_path}")

    def _install_sync(
        self,
        *,
        name: str,
        source: Path,
        agent_ids: Sequence[str],
        method: InstallMethod,
        scope: InstallScope,
        project_path: Path | None,
    ) -> tuple[_Outcome, Path]:
        if not is_skill_dir(source):
            raise SkillkitError(f"Not a skill folder (missing SKILL.md): {source}", code="SKILL_NOT_FOUND")
        canonical = self.scanner.canonical_path(name, scope, project_path)
        replace_canonical(source, canonical)
        outcome = _Outcome(stdout=[f"canonical: {canonical}"])
        self._link_agents(
            outcome,
            name=name,
            canonical=canonical,
            agent_ids=agent_ids,
            method=method,
            scope=scope,
            project_path=project_path,
        )
        self.agents.reset()
        return outcome, canonical

    async def _install(
        self,
        *,
        name: str,
        source: Path,
        agent_ids: Sequence[str],
        method: InstallMethod,
        scope: InstallScope,
        project_path: Path | None,
        entry: LockEntryInput | None,
    ) -> InstallResult:
        outcome, canonical = await asyncio.to_thread(
            self._install_sync,
            name=name,
            source=source,
            agent_ids=list(dict.fromkeys(agent_ids)),
            method=method,
            scope=scope,
            project_path=project_path,
        )
        if outcome.succeeded or not agent_ids:
            if entry is None:
                folder_hash = await asyncio.to_thread(compute_skill_folder_hash, canonical)
                entry = LockEntryInput(source=name, source_type="local", source_url=str(source), skill_folder_hash=folder_hash)
            await self.ledger_for(scope, project_path).upsert(name, entry)

        if outcome.failed:
            message = f"Installed {name} for {len(outcome.succeeded)} of {len(outcome.succeeded) + len(outcome.failed)} agent apps"
        else:
            message = f"Installed {name}"
        logger.info(message)
        return outcome.result(message)

    async def install_from_native(self, req: InstallNativeRequest) -> InstallResult:
        source = Path(req.tmp_path)
        folder_hash = await asyncio.to_thread(compute_skill_folder_hash, source)
        entry = LockEntryInput(
            source=req.name,
            source_type="native",
            source_url=req.tmp_path,
            skill_path=req.skill_path,
            skill_folder_hash=folder_hash,
        )
        return await asyncio.shield(
            self._install(
                name=req.name,
                source=source,
                agent_ids=req.agent_apps,
                method=req.method,
                scope=req.scope,
                project_path=Path(req.project_path) if req.project_path else None,
                entry=entry,
            )
        )

    async def install_from_github(self, req: InstallGithubRequest) -> InstallResult:
        owner, repo = parse_github_url(req.source_url)
        entry = LockEntryInput(
            source=f"{owner}/{repo}",
            source_type="github",
            source_url=req.source_url,
            skill_path=req.skill_path,
            skill_folder_hash=req.skill_folder_hash,
        )
        return await asyncio.shield(
            self._install(
                name=req.name,
                source=Path(req.tmp_path),
                agent_ids=req.agent_apps,
                method=req.method,
                scope=req.scope,
                project_path=Path(req.project_path) if req.project_path else None,
                entry=entry,
            )
        )

    async def _resolve_unknown_source(
        self, name: str, source_path: str | None, scope: InstallScope, project_path: Path | None
    ) -> Path:
        if source_path:
            return Path(source_path).expanduser()
        check = await self.check_skill_version(name, scope=scope, project_path=project_path)
        if check.requires_selection:
            raise SkillkitError(
                f"Found {len(check.version_groups)} different versions of {name}",
                code="VERSION_SELECTION_REQUIRED",
                hint="Pick one of the candidate folders and pass it as the source path.",
            )
        if check.source_path is None:
            raise SkillkitError(f"No copy of {name} found on disk", code="SKILL_NOT_FOUND")
        return Path(check.source_path)

    async def install_from_unknown(self, req: InstallUnknownRequest) -> InstallResult:
        project_path = Path(req.project_path) if req.project_path else None
        source = await self._resolve_unknown_source(req.name, req.source_path, req.scope, project_path)
        return await asyncio.shield(
            self._install(
                name=req.name,
                source=source,
                agent_ids=req.agent_apps,
                method=req.method,
                scope=req.scope,
                project_path=project_path,
                entry=None,
            )
        )

    async def check_skill_version(
        self,
        name: str,
        candidate_paths: Sequence[str | Path] | None = None,
        *,
        scope: InstallScope = InstallScope.GLOBAL,
        project_path: Path | None = None,
    ) -> SourceCheckResult:
        if candidate_paths is None:
            canonical = self.scanner.canonical_path(name, scope, project_path)
            paths = [canonical] if is_skill_dir(canonical) else []
            paths += await asyncio.to_thread(self.scanner.unmanaged_copies, name, scope, project_path)
        else:
            paths = [Path(p).expanduser() for p in candidate_paths]

        groups: dict[str, list[str]] = {}
        for p in paths:
            try:
                version = await asyncio.to_thread(compute_skill_folder_hash, p)
            except SkillkitError as e:
                logger.warning("Skipping candidate %s: %s", p, e)
                continue
            groups.setdefault(version, []).append(str(p))

        version_groups = tuple(
            SourceVersionGroup(version=v, source_path=members[0], paths=tuple(members)) for v, members in groups.items()
        )
        return SourceCheckResult(
            version_groups=version_groups,
            requires_selection=len(version_groups) > 1,
            source_path=version_groups[0].source_path if len(version_groups) == 1 else None,
        )

    async def manage_skill_agent_apps(self, req: ManageSkillAgentAppsRequest) -> InstallResult:
        return await asyncio.shield(self._manage(req))

    async def _manage(self, req: ManageSkillAgentAppsRequest) -> InstallResult:
        project_path = Path(req.project_path) if req.project_path else None
        canonical = self.scanner.canonical_path(req.name, req.scope, project_path)
        adopted = False
        if not is_skill_dir(canonical):
            if req.source_type != LocalSourceType.UNKNOWN and not req.source_path:
                raise SkillkitError(f"{req.name} is not installed", code="SKILL_NOT_FOUND")
            source = await self._resolve_unknown_source(req.name, req.source_path, req.scope, project_path)
            await asyncio.to_thread(replace_canonical, source, canonical)
            adopted = True

        current = {
            a.id: a
            for a in await asyncio.to_thread(self.scanner.installed_agent_apps, req.name, req.scope, project_path)
        }
        desired = set(req.agent_apps)
        to_remove = sorted(set(current) - desired)
        to_add = sorted(desired - set(current))
        to_relink = sorted(a for a in desired & set(current) if current[a].method != req.method)

        outcome = _Outcome()

        def _apply() -> None:
            for agent_id in to_remove:
                try:
                    self.linker.unlink(Path(current[agent_id].skill_folder), canonical)
                except (SkillkitError, OSError) as e:
                    outcome.failed.append(agent_id)
                    outcome.stderr.append(f"{agent_id}: {e}")
                    continue
                outcome.succeeded.append(agent_id)
                outcome.stdout.append(f"{agent_id}: removed")
            self._link_agents(
                outcome,
                name=req.name,
                canonical=canonical,
                agent_ids=to_add + to_relink,
                method=req.method,
                scope=req.scope,
                project_path=project_path,
            )
            self.agents.reset()

        await asyncio.to_thread(_apply)

        if outcome.succeeded or adopted:
            ledger = self.ledger_for(req.scope, project_path)
            if await ledger.touch(req.name) is None and adopted:
                folder_hash = await asyncio.to_thread(compute_skill_folder_hash, canonical)
                await ledger.upsert(
                    req.name,
                    LockEntryInput(
                        source=req.name,
                        source_type="local",
                        source_url=req.source_path or str(canonical),
                        skill_folder_hash=folder_hash,
                    ),
                )

        if not (to_remove or to_add or to_relink):
            message = f"{req.name}: agent apps already up to date"
        else:
            message = f"{req.name}: {len(to_add)} added, {len(to_remove)} removed, {len(to_relink)} relinked"
        logger.info(message)
        return outcome.result(message)

    async def delete_skill(
        self, name: str, *, scope: InstallScope = InstallScope.GLOBAL, project_path: Path | None = None
    ) -> InstallResult:
        return await asyncio.shield(self._delete(name, scope, project_path))

    async def _delete(self, name: str, scope: InstallScope, project_path: Path | None) -> InstallResult:
        ledger = self.ledger_for(scope, project_path)
        canonical = self.scanner.canonical_path(name, scope, project_path)
        installs = await asyncio.to_thread(self.scanner.installed_agent_apps, name, scope, project_path)

        if not installs and not (canonical.exists() or canonical.is_symlink()):
            await ledger.remove(name)
            return InstallResult(success=True, message=f"{name} is not installed")

        outcome = _Outcome()

        def _apply() -> None:
            for app in installs:
                try:
                    self.linker.unlink(Path(app.skill_folder), canonical)
                except (SkillkitError, OSError) as e:
                    outcome.failed.append(app.id)
                    outcome.stderr.append(f"{app.id}: {e}")
                    continue
                outcome.succeeded.append(app.id)
                outcome.stdout.append(f"{app.id}: removed")
            if not outcome.failed:
                remove_path(canonical)
                outcome.stdout.append(f"canonical: removed {canonical}")

        await asyncio.to_thread(_apply)
        if outcome.failed:
            return outcome.result(f"Could not remove {name} from every agent app")

        await ledger.remove(name)
        logger.info("Deleted %s", name)
        return outcome.result(f"Deleted {name}")
