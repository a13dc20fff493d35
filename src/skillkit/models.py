from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class InstallMethod(str, Enum):
    SYMLINK = "symlink"
    COPY = "copy"


class InstallScope(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"


class LocalSourceType(str, Enum):
    GITHUB = "github"
    NATIVE = "native"
    UNKNOWN = "unknown"


# Values written to SkillLockEntry.source_type. Unknown values read from disk are kept verbatim.
LOCK_SOURCE_TYPES = ("github", "mintlify", "huggingface", "local", "native")


@dataclass(frozen=True)
class SkillLockEntry:
    source: str
    source_type: str
    source_url: str
    installed_at: str
    updated_at: str
    skill_path: str | None = None
    skill_folder_hash: str | None = None


@dataclass(frozen=True)
class LockEntryInput:
    """A ledger entry without timestamps; the ledger assigns those on upsert."""

    source: str
    source_type: str
    source_url: str
    skill_path: str | None = None
    skill_folder_hash: str | None = None


@dataclass
class SkillLockFile:
    version: int
    skills: dict[str, SkillLockEntry] = field(default_factory=dict)
    dismissed: dict[str, Any] = field(default_factory=dict)
    last_selected_agents: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SourceGroup:
    names: frozenset[str]
    sample_entry: SkillLockEntry


@dataclass(frozen=True)
class InstalledAgentApp:
    id: str
    skill_folder: str
    method: InstallMethod


@dataclass(frozen=True)
class LocalSkill:
    name: str
    installed_agent_apps: tuple[InstalledAgentApp, ...] = ()
    source_type: LocalSourceType = LocalSourceType.UNKNOWN
    source: str | None = None
    root_folder: str | None = None
    description: str | None = None
    scope: InstallScope = InstallScope.GLOBAL

    def agent_ids(self) -> set[str]:
        return {a.id for a in self.installed_agent_apps}


@dataclass(frozen=True)
class RemoteSkill:
    id: str
    skill_id: str
    name: str
    source: str
    star_count: int = 0
    heat_score: float = 0
    install_count: int = 0
    description: str | None = None
    url: str | None = None
    path: str | None = None
    skill_path_sha: str | None = None
    branch: str | None = None


@dataclass(frozen=True)
class RemoteSkillsPage:
    skills: tuple[RemoteSkill, ...]
    total: int
    has_more: bool


@dataclass(frozen=True)
class UpdateCheck:
    name: str
    source: str
    remote_sha: str


@dataclass(frozen=True)
class AgentInfo:
    id: str
    display_name: str
    project_path: str | None = None
    global_path: str | None = None
    is_user_custom: bool = False


@dataclass(frozen=True)
class InstallResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    message: str = ""


@dataclass(frozen=True)
class DetectedSkill:
    name: str
    tmp_path: str
    skill_path: str
    description: str | None = None
    source_url: str | None = None
    skill_folder_hash: str | None = None


@dataclass(frozen=True)
class SourceVersionGroup:
    version: str
    source_path: str
    paths: tuple[str, ...]


@dataclass(frozen=True)
class SourceCheckResult:
    version_groups: tuple[SourceVersionGroup, ...]
    requires_selection: bool
    source_path: str | None = None


@dataclass(frozen=True)
class InstallNativeRequest:
    name: str
    tmp_path: str
    skill_path: str
    agent_apps: tuple[str, ...]
    method: InstallMethod = InstallMethod.SYMLINK
    scope: InstallScope = InstallScope.GLOBAL
    project_path: str | None = None


@dataclass(frozen=True)
class InstallGithubRequest:
    name: str
    tmp_path: str
    skill_path: str
    source_url: str
    agent_apps: tuple[str, ...]
    method: InstallMethod = InstallMethod.SYMLINK
    skill_folder_hash: str | None = None
    scope: InstallScope = InstallScope.GLOBAL
    project_path: str | None = None


@dataclass(frozen=True)
class InstallUnknownRequest:
    name: str
    agent_apps: tuple[str, ...]
    method: InstallMethod = InstallMethod.SYMLINK
    source_path: str | None = None
    scope: InstallScope = InstallScope.GLOBAL
    project_path: str | None = None


@dataclass(frozen=True)
class ManageSkillAgentAppsRequest:
    name: str
    agent_apps: tuple[str, ...]
    method: InstallMethod = InstallMethod.SYMLINK
    source_type: LocalSourceType = LocalSourceType.UNKNOWN
    source_path: str | None = None
    scope: InstallScope = InstallScope.GLOBAL
    project_path: str | None = None


@dataclass(frozen=True)
class UserProject:
    name: str
    path: str


@dataclass(frozen=True)
class BackupResult:
    success: bool
    message: str
    backup_path: str | None = None
    backup_time: str | None = None
