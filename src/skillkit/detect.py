from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path

from .client import SkillkitError
from .github import GitHubClient, parse_github_url, skill_folder_of
from .models import DetectedSkill
from .skill_folder import SKILL_FILENAME, find_skill_dirs, safe_extract_zip, strip_single_root, try_read_skill_frontmatter

logger = logging.getLogger(__name__)


def _detected(skill_dir: Path, source_root: Path, *, source_url: str | None = None) -> DetectedSkill:
    fm = try_read_skill_frontmatter(skill_dir)
    rel = (skill_dir / SKILL_FILENAME).relative_to(source_root).as_posix()
    return DetectedSkill(
        name=fm.name or skill_dir.name,
        tmp_path=str(skill_dir),
        skill_path=rel,
        description=fm.description,
        source_url=source_url,
    )


def _detect_in(root: Path, *, source_url: str | None = None) -> list[DetectedSkill]:
    skills = [_detected(d, root, source_url=source_url) for d in find_skill_dirs(root)]
    if not skills:
        raise SkillkitError(f"No {SKILL_FILENAME} found under {root}", code="NO_SKILLS_FOUND")
    return skills


class SkillDetector:
    """
    Finds skills in a local folder, a zip archive or a GitHub repository.

    Archives and repositories are unpacked into scratch directories owned by the detector;
    call `cleanup()` once the detected skills have been installed, or `release(tmp_path)` to
    drop only the directory holding one detected skill.
    """

    def __init__(self, *, github: GitHubClient, work_root: Path | None = None) -> None:
        self.github = github
        self.work_root = work_root
        self._scratch: list[Path] = []

    def _scratch_dir(self) -> Path:
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)
        d = Path(tempfile.mkdtemp(prefix="skillkit-", dir=self.work_root))
        self._scratch.append(d)
        return d

    def cleanup(self) -> None:
        while self._scratch:
            shutil.rmtree(self._scratch.pop(), ignore_errors=True)

    def release(self, path: str | Path) -> None:
        p = Path(path)
        for d in [d for d in self._scratch if d == p or d in p.parents]:
            self._scratch.remove(d)
            shutil.rmtree(d, ignore_errors=True)

    async def detect_folder(self, folder_path: str | Path) -> list[DetectedSkill]:
        root = Path(folder_path).expanduser().resolve()
        return await asyncio.to_thread(_detect_in, root)

    async def detect_zip(self, zip_path: str | Path) -> list[DetectedSkill]:
        path = Path(zip_path).expanduser()
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise SkillkitError(f"Cannot read zip archive {path}: {e}", code="SOURCE_NOT_FOUND") from e
        unpack = self._scratch_dir() / "unpacked"
        await asyncio.to_thread(safe_extract_zip, data, unpack)
        return await asyncio.to_thread(_detect_in, strip_single_root(unpack))

    async def detect_github_manual(self, url: str) -> list[DetectedSkill]:
        owner, repo = parse_github_url(url)
        root, _ = await self.github.download_repo(owner, repo, self._scratch_dir())
        source_url = f"https://github.com/{owner}/{repo}"
        return await asyncio.to_thread(_detect_in, root, source_url=source_url)

    async def detect_github_auto(self, url: str, skill_path: str) -> list[DetectedSkill]:
        owner, repo = parse_github_url(url)
        folder = skill_folder_of(skill_path)
        scratch = self._scratch_dir()
        try:
            root, branch = await self.github.download_repo(owner, repo, scratch)
        except BaseException:
            self.release(scratch)
            raise
        skill_dir = root / folder if folder else root
        if not (skill_dir / SKILL_FILENAME).is_file():
            self.release(scratch)
            raise SkillkitError(f"{skill_path} not found in {owner}/{repo}", code="SKILL_NOT_FOUND")

        source_url = f"https://github.com/{owner}/{repo}"
        try:
            folder_hash: str | None = await self.github.get_skill_folder_hash(
                source_url, skill_path, branch=branch
            )
        except SkillkitError as e:
            logger.warning("Could not fetch folder hash for %s in %s/%s: %s", skill_path, owner, repo, e)
            folder_hash = None

        detected = _detected(skill_dir, root, source_url=source_url)
        return [
            DetectedSkill(
                name=detected.name,
                tmp_path=detected.tmp_path,
                skill_path=detected.skill_path,
                description=detected.description,
                source_url=source_url,
                skill_folder_hash=folder_hash,
            )
        ]
