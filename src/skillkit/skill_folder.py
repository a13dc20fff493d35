from __future__ import annotations

import hashlib
import io
import os
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path

import yaml

from .client import SkillkitError

SKILL_FILENAME = "SKILL.md"
COPY_MARKER_FILENAME = ".skillkit-link"
MAX_NAME_LENGTH = 255

# Path parts skipped when fingerprinting a skill folder.
HASH_EXCLUDE_NAMES = {".git", "node_modules"}

# Directory names skipped when searching a source tree for skills.
DISCOVERY_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    ".venv",
    "venv",
    "node_modules",
    "dist",
    "build",
    "target",
}


@dataclass(frozen=True)
class SkillFrontmatter:
    name: str | None = None
    description: str | None = None


def sanitize_name(name: str) -> str:
    out = []
    for ch in name:
        if (ch.isascii() and ch.isalnum()) or ch in "._-":
            out.append(ch.lower())
        else:
            out.append("-")
    trimmed = "".join(out).strip("-.")
    if not trimmed:
        return "unnamed-skill"
    return trimmed[:MAX_NAME_LENGTH]


def read_skill_frontmatter(skill_md: Path) -> SkillFrontmatter:
    """
    Parse the YAML block delimited by `---` lines at the top of SKILL.md.

    Raises SkillkitError when the file has no (closed) frontmatter or the YAML is invalid.
    """
    lines = skill_md.read_text(encoding="utf-8").splitlines()
    if not lines or lines[0].strip() != "---":
        raise SkillkitError(f"SKILL.md frontmatter not found: {skill_md}", code="FRONTMATTER_MISSING")

    body: list[str] = []
    for line in lines[1:]:
        if line.strip() == "---":
            break
        body.append(line)
    else:
        raise SkillkitError(f"SKILL.md frontmatter not closed: {skill_md}", code="FRONTMATTER_INVALID")

    try:
        data = yaml.safe_load("\n".join(body))
    except yaml.YAMLError as e:
        raise SkillkitError(f"Failed to parse SKILL.md frontmatter: {e}", code="FRONTMATTER_INVALID") from e
    if not isinstance(data, dict):
        return SkillFrontmatter()

    def _text(key: str) -> str | None:
        v = data.get(key)
        if not isinstance(v, str):
            return None
        return v.strip() or None

    return SkillFrontmatter(name=_text("name"), description=_text("description"))


def try_read_skill_frontmatter(skill_dir: Path) -> SkillFrontmatter:
    try:
        return read_skill_frontmatter(skill_dir / SKILL_FILENAME)
    except (OSError, UnicodeDecodeError, SkillkitError):
        return SkillFrontmatter()


def is_skill_dir(path: Path) -> bool:
    return path.is_dir() and (path / SKILL_FILENAME).is_file()


def compute_skill_folder_hash(skill_dir: Path) -> str:
    """
    Content fingerprint of a skill folder.

    sha256 over (relative posix path, bytes) of every file, sorted by path. VCS metadata,
    node_modules and the copy marker are ignored so a managed copy hashes like its source.
    """
    if not skill_dir.is_dir():
        raise SkillkitError(f"Skill directory does not exist: {skill_dir}", code="SKILL_NOT_FOUND")

    files: list[tuple[str, Path]] = []
    for dirpath, dirnames, filenames in os.walk(skill_dir):
        dirnames[:] = sorted(d for d in dirnames if d not in HASH_EXCLUDE_NAMES)
        for fn in filenames:
            if fn in HASH_EXCLUDE_NAMES or fn == COPY_MARKER_FILENAME:
                continue
            p = Path(dirpath) / fn
            rel = p.relative_to(skill_dir).as_posix()
            files.append((rel, p))

    files.sort(key=lambda item: item[0])
    hasher = hashlib.sha256()
    for rel, p in files:
        hasher.update(rel.encode("utf-8"))
        hasher.update(p.read_bytes())
    return hasher.hexdigest()


def find_skill_dirs(root: Path) -> list[Path]:
    if not root.is_dir():
        raise SkillkitError(f"Directory does not exist: {root}", code="SOURCE_NOT_FOUND")

    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in DISCOVERY_EXCLUDE_NAMES)
        if SKILL_FILENAME in filenames:
            found.append(Path(dirpath))
    return sorted(found)


def copy_skill_tree(src: Path, dest: Path) -> None:
    if dest.exists() or dest.is_symlink():
        remove_path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, symlinks=False, ignore=shutil.ignore_patterns(".git", COPY_MARKER_FILENAME))


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def safe_extract_zip(zip_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    try:
        zf = zipfile.ZipFile(io.BytesIO(zip_bytes), "r")
    except zipfile.BadZipFile as e:
        raise SkillkitError(f"Not a valid zip archive: {e}", code="ARCHIVE_INVALID") from e

    with zf:
        base = dest.resolve()
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith("/"):
                raise SkillkitError(f"Archive contains an absolute path entry: {name!r}", code="ARCHIVE_INVALID")
            target = (dest / name).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise SkillkitError(f"Archive contains an invalid path entry: {name!r}", code="ARCHIVE_INVALID")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def strip_single_root(unpacked: Path) -> Path:
    # GitHub archives wrap everything in "<repo>-<branch>/".
    children = [p for p in unpacked.iterdir() if p.name != "__MACOSX"]
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return unpacked
