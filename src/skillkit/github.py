from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

import httpx

from .client import SkillkitError, SkillkitHTTPError
from .skill_folder import SKILL_FILENAME, safe_extract_zip, strip_single_root

logger = logging.getLogger(__name__)

GITHUB_URL = "https://github.com"
GITHUB_API_URL = "https://api.github.com"
DEFAULT_BRANCHES = ("main", "master")
DOWNLOAD_TIMEOUT_S = 60.0
USER_AGENT = "skillkit"


def parse_github_url(url: str) -> tuple[str, str]:
    """Accepts `https://github.com/owner/repo[.git][/...]` or `owner/repo`."""
    value = url.strip()
    if "github.com" in value:
        _, _, path = value.partition("github.com/")
        segments = [s for s in path.split("/") if s]
        if len(segments) < 2:
            raise SkillkitError(f"Invalid GitHub URL: {url}", code="INVALID_SOURCE")
        repo = segments[1][: -len(".git")] if segments[1].endswith(".git") else segments[1]
        return segments[0], repo

    parts = value.split("/")
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise SkillkitError(
        f"Unsupported URL format: {url}",
        code="INVALID_SOURCE",
        hint="Use https://github.com/owner/repo or owner/repo",
    )


def skill_folder_of(skill_path: str) -> str:
    """Folder (relative to the repo root) that holds the given SKILL.md path; "" for the root."""
    normalized = skill_path.strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if normalized == SKILL_FILENAME:
        return ""
    suffix = "/" + SKILL_FILENAME
    if normalized.endswith(suffix):
        return normalized[: -len(suffix)]
    raise SkillkitError(f"Invalid skill_path: {skill_path}", code="INVALID_SOURCE")


class GitHubClient:
    def __init__(
        self,
        *,
        timeout_s: float = DOWNLOAD_TIMEOUT_S,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, headers=headers, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _get(self, url: str) -> httpx.Response:
        try:
            resp = await self._http.get(url)
        except httpx.HTTPError as e:
            raise SkillkitError(f"Request to {url} failed: {e}", code="NETWORK_ERROR") from e
        if resp.status_code >= 400:
            raise SkillkitHTTPError(resp.status_code, resp.text)
        return resp

    async def download_repo(
        self, owner: str, repo: str, dest: Path, *, branches: tuple[str, ...] = DEFAULT_BRANCHES
    ) -> tuple[Path, str]:
        """
        Download a repository snapshot and unpack it under `dest`.

        Tries each branch in order. Returns the repository root inside `dest` and the branch
        that was downloaded.
        """
        last_error: SkillkitError | None = None
        for branch in branches:
            url = f"{GITHUB_URL}/{owner}/{repo}/archive/refs/heads/{branch}.zip"
            try:
                resp = await self._get(url)
            except SkillkitError as e:
                logger.debug("Archive for %s/%s@%s unavailable: %s", owner, repo, branch, e)
                last_error = e
                continue

            unpack = dest / "unpacked"
            if unpack.exists():
                await asyncio.to_thread(shutil.rmtree, unpack)
            await asyncio.to_thread(safe_extract_zip, resp.content, unpack)
            logger.info("Downloaded %s/%s (%s)", owner, repo, branch)
            return strip_single_root(unpack), branch

        raise SkillkitError(
            f"Failed to download repository {owner}/{repo}: {last_error}",
            code="DOWNLOAD_FAILED",
            hint="Check that the repository exists and is public.",
        )

    async def get_skill_folder_hash(self, source_url: str, skill_path: str, *, branch: str = "main") -> str:
        """Git tree SHA of the folder holding `skill_path`, as used by the registry's skill_path_sha."""
        owner, repo = parse_github_url(source_url)
        folder = skill_folder_of(skill_path)
        resp = await self._get(f"{GITHUB_API_URL}/repos/{owner}/{repo}/git/trees/{branch}?recursive=1")
        data: Any = resp.json()
        if not isinstance(data, dict) or not isinstance(data.get("sha"), str):
            raise SkillkitError("Unexpected GitHub tree response", code="INVALID_RESPONSE")
        if not folder:
            return data["sha"]
        for item in data.get("tree") or []:
            if isinstance(item, dict) and item.get("type") == "tree" and item.get("path") == folder:
                sha = item.get("sha")
                if isinstance(sha, str):
                    return sha
        raise SkillkitError(f"Skill folder not found in GitHub tree: {folder}", code="SKILL_NOT_FOUND")
