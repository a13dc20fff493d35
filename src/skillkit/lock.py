from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .client import LockfileError
from .models import InstallScope, LockEntryInput, SkillLockEntry, SkillLockFile, SourceGroup

logger = logging.getLogger(__name__)

CURRENT_LOCK_VERSION = 3
PROJECT_LOCK_FILENAME = "skills-lock.json"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime | None:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _migrate_v1_to_v2(raw: dict[str, Any]) -> dict[str, Any]:
    # v1 only tracked GitHub installs and had no sourceType/sourceUrl.
    skills = raw.get("skills")
    if isinstance(skills, dict):
        for entry in skills.values():
            if isinstance(entry, dict):
                entry.setdefault("sourceType", "github")
                entry.setdefault("sourceUrl", "")
    raw["version"] = 2
    return raw


def _migrate_v2_to_v3(raw: dict[str, Any]) -> dict[str, Any]:
    raw.setdefault("dismissed", {})
    raw.setdefault("lastSelectedAgents", [])
    raw["version"] = 3
    return raw


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
    2: _migrate_v2_to_v3,
}


def migrate_lock_document(raw: dict[str, Any]) -> dict[str, Any]:
    version = raw.get("version", CURRENT_LOCK_VERSION)
    if isinstance(version, bool) or not isinstance(version, int):
        raise LockfileError(f"Lock file has an invalid version: {version!r}", code="LOCK_PARSE_FAILED")
    if version > CURRENT_LOCK_VERSION:
        raise LockfileError(
            f"Lock file version {version} is newer than supported version {CURRENT_LOCK_VERSION}",
            code="LOCK_VERSION_UNSUPPORTED",
            hint="Upgrade skillkit to read this lock file.",
        )
    while version < CURRENT_LOCK_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise LockfileError(f"No migration path from lock version {version}", code="LOCK_VERSION_UNSUPPORTED")
        logger.info("Migrating lock file from version %d", version)
        raw = step(raw)
        version = raw["version"]
    return raw


def entry_from_dict(obj: Any) -> SkillLockEntry | None:
    if not isinstance(obj, dict):
        return None
    source = obj.get("source")
    if not isinstance(source, str) or not source:
        return None

    def _opt(key: str) -> str | None:
        v = obj.get(key)
        return v if isinstance(v, str) and v else None

    installed_at = _opt("installedAt") or ""
    return SkillLockEntry(
        source=source,
        source_type=str(obj.get("sourceType") or "github"),
        source_url=str(obj.get("sourceUrl") or ""),
        skill_path=_opt("skillPath"),
        skill_folder_hash=_opt("skillFolderHash"),
        installed_at=installed_at,
        updated_at=_opt("updatedAt") or installed_at,
    )


def entry_to_dict(entry: SkillLockEntry) -> dict[str, Any]:
    d: dict[str, Any] = {
        "source": entry.source,
        "sourceType": entry.source_type,
        "sourceUrl": entry.source_url,
        "installedAt": entry.installed_at,
        "updatedAt": entry.updated_at,
    }
    if entry.skill_path is not None:
        d["skillPath"] = entry.skill_path
    if entry.skill_folder_hash is not None:
        d["skillFolderHash"] = entry.skill_folder_hash
    return d


def lock_file_from_dict(raw: Any) -> SkillLockFile:
    if not isinstance(raw, dict):
        raise LockfileError("Lock file must contain a JSON object", code="LOCK_PARSE_FAILED")
    raw = migrate_lock_document(dict(raw))

    skills: dict[str, SkillLockEntry] = {}
    raw_skills = raw.get("skills")
    if isinstance(raw_skills, dict):
        for name, obj in raw_skills.items():
            entry = entry_from_dict(obj)
            if entry is None:
                logger.warning("Dropping unreadable lock entry for %r", name)
                continue
            skills[str(name)] = entry

    dismissed = raw.get("dismissed")
    agents = raw.get("lastSelectedAgents")
    return SkillLockFile(
        version=CURRENT_LOCK_VERSION,
        skills=skills,
        dismissed=dict(dismissed) if isinstance(dismissed, dict) else {},
        last_selected_agents=[a for a in agents if isinstance(a, str)] if isinstance(agents, list) else [],
    )


def lock_file_to_dict(lock: SkillLockFile) -> dict[str, Any]:
    return {
        "version": lock.version,
        "skills": {name: entry_to_dict(lock.skills[name]) for name in sorted(lock.skills)},
        "dismissed": lock.dismissed,
        "lastSelectedAgents": list(lock.last_selected_agents),
    }


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


class LockLedger:
    """
    Persisted provenance ledger (the skill lock file).

    All file I/O runs in a worker thread. Every mutation is a read-modify-write of the file
    followed by an atomic rename, so readers never see a partially written document.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = Path(path).expanduser()
        self._clock = clock

    def _read_sync(self) -> SkillLockFile:
        if not self.path.exists():
            return SkillLockFile(version=CURRENT_LOCK_VERSION)
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise LockfileError(f"Failed to parse lock file {self.path}: {e}", code="LOCK_PARSE_FAILED") from e
        except OSError as e:
            raise LockfileError(f"Failed to read lock file {self.path}: {e}", code="LOCK_READ_FAILED") from e
        return lock_file_from_dict(raw)

    def _write_sync(self, lock: SkillLockFile) -> None:
        try:
            _write_json_atomic(self.path, lock_file_to_dict(lock))
        except OSError as e:
            raise LockfileError(f"Failed to write lock file {self.path}: {e}", code="LOCK_WRITE_FAILED") from e

    async def read(self) -> SkillLockFile:
        return await asyncio.to_thread(self._read_sync)

    async def write(self, lock: SkillLockFile) -> None:
        await asyncio.to_thread(self._write_sync, lock)

    async def upsert(self, name: str, entry: LockEntryInput) -> SkillLockEntry:
        lock = await self.read()
        now = format_timestamp(self._clock())
        existing = lock.skills.get(name)
        installed_at = existing.installed_at if existing and existing.installed_at else now

        updated_at = now
        installed_dt = parse_timestamp(installed_at)
        now_dt = parse_timestamp(now)
        if installed_dt is not None and now_dt is not None and now_dt < installed_dt:
            updated_at = installed_at

        stored = SkillLockEntry(
            source=entry.source,
            source_type=entry.source_type,
            source_url=entry.source_url,
            skill_path=entry.skill_path,
            skill_folder_hash=entry.skill_folder_hash,
            installed_at=installed_at,
            updated_at=updated_at,
        )
        lock.skills[name] = stored
        lock.version = CURRENT_LOCK_VERSION
        await self.write(lock)
        logger.info("Recorded %s in lock file (%s: %s)", name, entry.source_type, entry.source)
        return stored

    async def touch(self, name: str) -> SkillLockEntry | None:
        lock = await self.read()
        existing = lock.skills.get(name)
        if existing is None:
            return None
        return await self.upsert(
            name,
            LockEntryInput(
                source=existing.source,
                source_type=existing.source_type,
                source_url=existing.source_url,
                skill_path=existing.skill_path,
                skill_folder_hash=existing.skill_folder_hash,
            ),
        )

    async def remove(self, name: str) -> bool:
        lock = await self.read()
        if name not in lock.skills:
            return False
        del lock.skills[name]
        await self.write(lock)
        logger.info("Removed %s from lock file", name)
        return True

    async def get(self, name: str) -> SkillLockEntry | None:
        lock = await self.read()
        return lock.skills.get(name)

    async def get_all(self) -> dict[str, SkillLockEntry]:
        lock = await self.read()
        return dict(lock.skills)

    async def group_by_source(self) -> dict[str, SourceGroup]:
        skills = await self.get_all()
        names: dict[str, set[str]] = {}
        samples: dict[str, SkillLockEntry] = {}
        for name in sorted(skills):
            entry = skills[name]
            names.setdefault(entry.source, set()).add(name)
            samples.setdefault(entry.source, entry)
        return {source: SourceGroup(names=frozenset(names[source]), sample_entry=samples[source]) for source in names}

    async def set_last_selected_agents(self, agent_ids: list[str]) -> None:
        lock = await self.read()
        await self.write(replace(lock, last_selected_agents=list(agent_ids)))

    def for_project(self, project_path: Path) -> "LockLedger":
        """Ledger kept inside a project, separate from the global one."""
        return LockLedger(Path(project_path).expanduser() / PROJECT_LOCK_FILENAME, clock=self._clock)


def ledger_for_scope(ledger: LockLedger, scope: InstallScope, project_path: Path | None = None) -> LockLedger:
    if scope == InstallScope.PROJECT:
        if project_path is None:
            raise ValueError("project_path is required for project scope")
        return ledger.for_project(project_path)
    return ledger
