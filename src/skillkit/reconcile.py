from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Protocol, Sequence

from .client import SkillkitError
from .dedup import GenerationCounter, UpdateDedupCoordinator
from .lock import LockLedger
from .models import LocalSkill, LocalSourceType, RemoteSkill, SkillLockEntry, UpdateCheck

logger = logging.getLogger(__name__)


class RemoteRegistry(Protocol):
    async def fetch_skills_by_names(self, names: Iterable[str]) -> list[RemoteSkill]:
        ...


class StalenessBackend(Protocol):
    async def check_skills_updates(self, checks: Sequence[UpdateCheck]) -> list[str]:
        ...


def classify_provenance(entry: SkillLockEntry | None) -> LocalSourceType:
    if entry is None:
        return LocalSourceType.UNKNOWN
    if entry.source_type == "github":
        return LocalSourceType.GITHUB
    return LocalSourceType.NATIVE


def _sources_match(entry_source: str, check_source: str) -> bool:
    if not entry_source or not check_source:
        return False
    return entry_source.strip().lower() == check_source.strip().lower()


def is_stale(entry: SkillLockEntry | None, check: UpdateCheck) -> bool:
    # Only GitHub installs record a git tree SHA comparable to the registry fingerprint.
    if entry is None or entry.source_type != "github":
        return False
    if not entry.skill_folder_hash or not check.remote_sha:
        return False
    if not _sources_match(entry.source, check.source):
        return False
    return entry.skill_folder_hash != check.remote_sha


class LedgerStalenessBackend:
    """Decides staleness by comparing the ledger's recorded folder hash with the remote one."""

    def __init__(self, ledger: LockLedger) -> None:
        self.ledger = ledger

    async def check_skills_updates(self, checks: Sequence[UpdateCheck]) -> list[str]:
        if not checks:
            return []
        entries = await self.ledger.get_all()
        return [c.name for c in checks if is_stale(entries.get(c.name), c)]

    async def check_skill_update(self, name: str, remote_sha: str) -> bool:
        try:
            entry = await self.ledger.get(name)
        except SkillkitError as e:
            logger.warning("Update check for %s failed: %s", name, e)
            return False
        source = entry.source if entry else ""
        return is_stale(entry, UpdateCheck(name=name, source=source, remote_sha=remote_sha))


class ReconciliationEngine:
    """
    Joins local installs, registry records and the ledger into a list of stale skills.

    Advisory only: backend or transport failures are logged and yield an empty result.
    """

    def __init__(self, *, registry: RemoteRegistry, backend: StalenessBackend) -> None:
        self.registry = registry
        self.backend = backend

    async def find_updates(self, local_skills: Sequence[LocalSkill]) -> list[RemoteSkill]:
        if not local_skills:
            return []
        names = [s.name for s in local_skills]
        try:
            remote = await self.registry.fetch_skills_by_names(names)
        except (SkillkitError, OSError) as e:
            logger.warning("Update check failed while fetching registry records: %s", e)
            return []
        return await self._stale_against(local_skills, remote)

    async def annotate_remote_page(
        self, local_skills: Sequence[LocalSkill], page: Sequence[RemoteSkill]
    ) -> list[RemoteSkill]:
        if not local_skills or not page:
            return []
        local_names = {s.name for s in local_skills}
        return await self._stale_against(local_skills, [r for r in page if r.name in local_names])

    async def _stale_against(self, local_skills: Sequence[LocalSkill], remote: Sequence[RemoteSkill]) -> list[RemoteSkill]:
        by_name: dict[str, RemoteSkill] = {}
        for r in remote:
            by_name.setdefault(r.name, r)

        checks = [
            UpdateCheck(name=s.name, source=by_name[s.name].source, remote_sha=by_name[s.name].skill_path_sha or "")
            for s in local_skills
            if s.name in by_name and by_name[s.name].skill_path_sha
        ]
        if not checks:
            return []

        try:
            stale = set(await self.backend.check_skills_updates(checks))
        except (SkillkitError, OSError) as e:
            logger.warning("Update check failed while comparing fingerprints: %s", e)
            return []

        # Names the backend reports that have no registry record are dropped.
        return [by_name[c.name] for c in checks if c.name in stale]


class UpdateMonitor:
    """
    Owns the published list of skills with updates available.

    Full checks go through a single-flight lane. Every publish is tagged with a generation
    token; a result from a superseded check is discarded.
    """

    def __init__(
        self,
        *,
        engine: ReconciliationEngine,
        local_snapshot: Callable[[], Awaitable[list[LocalSkill]]],
        coordinator: UpdateDedupCoordinator[list[RemoteSkill]] | None = None,
    ) -> None:
        self.engine = engine
        self.local_snapshot = local_snapshot
        self.coordinator = coordinator or UpdateDedupCoordinator()
        self.generation = GenerationCounter()
        self._skills_with_update: list[RemoteSkill] = []

    @property
    def skills_with_update(self) -> list[RemoteSkill]:
        return list(self._skills_with_update)

    def reset(self) -> None:
        self.coordinator.reset()
        self.generation = GenerationCounter()
        self._skills_with_update = []

    def invalidate(self) -> None:
        """Mark any check still in flight as superseded (local state changed under it)."""
        self.generation.next()

    def mark_current(self, name: str) -> None:
        """Invalidate and drop `name` from the published list after it was reinstalled or removed."""
        self.invalidate()
        self._skills_with_update = [s for s in self._skills_with_update if s.name != name]

    def _publish(self, token: int, result: list[RemoteSkill]) -> bool:
        if not self.generation.is_current(token):
            logger.debug("Discarding superseded update result (generation %d)", token)
            return False
        self._skills_with_update = list(result)
        return True

    async def _check_all(self) -> list[RemoteSkill]:
        token = self.generation.next()
        try:
            local = await self.local_snapshot()
        except (SkillkitError, OSError) as e:
            logger.warning("Update check skipped, could not scan local skills: %s", e)
            local = []
        result = await self.engine.find_updates(local)
        self._publish(token, result)
        return result

    async def check_for_skill_updates(self) -> list[RemoteSkill]:
        return await self.coordinator.run(self._check_all)

    async def check_updates_from_remote_list(self, page: Sequence[RemoteSkill]) -> list[RemoteSkill]:
        token = self.generation.next()
        try:
            local = await self.local_snapshot()
        except (SkillkitError, OSError) as e:
            logger.warning("Page annotation skipped, could not scan local skills: %s", e)
            return []
        local_names = {s.name for s in local}
        if not any(r.name in local_names and r.skill_path_sha for r in page):
            # Nothing on this page can be checked; keep the last published list.
            return []
        result = await self.engine.annotate_remote_page(local, page)
        self._publish(token, result)
        return result
