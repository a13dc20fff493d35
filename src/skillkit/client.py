from __future__ import annotations

import json
import logging
from typing import Any, Iterable
from urllib.parse import quote

import httpx

from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .models import RemoteSkill, RemoteSkillsPage

logger = logging.getLogger(__name__)

DEFAULT_SORT_BY = "heat_score"
DEFAULT_SORT_ORDER = "desc"


class SkillkitError(RuntimeError):
    """
    Root of every error raised by skillkit.

    Carries the structured `{code, message, hint}` shape that command callers receive.
    """

    code = "SKILLKIT_ERROR"

    def __init__(self, message: str, *, code: str | None = None, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.hint = hint

    def to_dict(self) -> dict[str, str]:
        d = {"code": self.code, "message": self.message}
        if self.hint:
            d["hint"] = self.hint
        return d


class SkillkitHTTPError(SkillkitError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}", code=f"HTTP_{status_code}")
        self.status_code = status_code
        self.body = body


class LockfileError(SkillkitError):
    code = "LOCK_ERROR"


class AgentAppError(SkillkitError):
    code = "AGENT_APP_ERROR"


def as_skillkit_error(exc: BaseException) -> SkillkitError:
    if isinstance(exc, SkillkitError):
        return exc
    if isinstance(exc, httpx.HTTPError):
        return SkillkitError(f"Network request failed: {exc}", code="NETWORK_ERROR")
    if isinstance(exc, OSError):
        return SkillkitError(f"Filesystem operation failed: {exc}", code="IO_ERROR")
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return SkillkitError(f"Invalid input: {exc}", code="INVALID_INPUT")
    return SkillkitError(str(exc) or type(exc).__name__, code="IPC_ERROR")


def _str_or_none(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _as_number(v: Any, default: float = 0) -> float:
    if isinstance(v, bool):
        return default
    if isinstance(v, (int, float)):
        return v
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def parse_remote_skill(obj: Any) -> RemoteSkill | None:
    if not isinstance(obj, dict):
        return None
    name = _str_or_none(obj.get("name"))
    raw_id = obj.get("id")
    if name is None or raw_id is None:
        return None
    skill_id = str(raw_id)
    return RemoteSkill(
        id=skill_id,
        skill_id=skill_id,
        name=name,
        source=str(obj.get("source") or ""),
        star_count=int(_as_number(obj.get("star_count"))),
        heat_score=_as_number(obj.get("heat_score")),
        install_count=int(_as_number(obj.get("install_count"))),
        description=_str_or_none(obj.get("description")),
        url=_str_or_none(obj.get("url")),
        path=_str_or_none(obj.get("path")),
        skill_path_sha=_str_or_none(obj.get("skill_path_sha")),
        branch=_str_or_none(obj.get("branch")),
    )


def _extract_items(obj: Any) -> list[Any]:
    if isinstance(obj, list):
        return obj
    if isinstance(obj, dict):
        for key in ("skills", "items", "data"):
            value = obj.get(key)
            if isinstance(value, list):
                return value
    return []


class RegistryClient:
    """
    Async client for the remote skills registry.

    Every transport failure is raised as SkillkitError; non-2xx responses as SkillkitHTTPError.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_REGISTRY_URL,
        api_key: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._http = httpx.AsyncClient(timeout=timeout_s, follow_redirects=True, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> httpx.Response:
        if not path.startswith("/"):
            path = "/" + path
        url = f"{self.base_url}{path}"

        headers: dict[str, str] = {}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            resp = await self._http.request(method.upper(), url, params=params, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            raise SkillkitError(
                f"Request failed: {e}",
                code="NETWORK_ERROR",
                hint="Check your network connection or the configured registry_url.",
            ) from e

        if resp.status_code >= 400:
            raise SkillkitHTTPError(resp.status_code, resp.text)
        return resp

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self.request(method="GET", path=path, params=params)
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise SkillkitError(f"Invalid JSON from {path}: {e}", code="INVALID_RESPONSE") from e

    async def fetch_remote_skills(
        self,
        *,
        skip: int | None = None,
        limit: int | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> RemoteSkillsPage:
        params: dict[str, Any] = {}
        if skip is not None:
            params["skip"] = skip
        if limit is not None:
            params["limit"] = limit
        if search is not None and search.strip():
            params["search"] = search.strip()
        params["sort_by"] = sort_by or DEFAULT_SORT_BY
        params["sort_order"] = sort_order or DEFAULT_SORT_ORDER

        data = await self._get_json("/api/skills", params)
        if not isinstance(data, dict):
            raise SkillkitError("Unexpected response shape from /api/skills", code="INVALID_RESPONSE")

        skills = tuple(s for s in (parse_remote_skill(o) for o in _extract_items(data)) if s is not None)
        total = int(_as_number(data.get("total")))
        page = int(_as_number(data.get("page")))
        page_size = int(_as_number(data.get("page_size"), default=len(skills)))
        count = len(skills)
        has_more = count > 0 and page * page_size + count < total
        logger.debug("Fetched %d remote skills (total=%d, has_more=%s)", count, total, has_more)
        return RemoteSkillsPage(skills=skills, total=total, has_more=has_more)

    async def fetch_skills_by_names(self, names: Iterable[str]) -> list[RemoteSkill]:
        wanted = [n for n in names if n]
        if not wanted:
            return []
        logger.debug("Fetching %d skills by name", len(wanted))
        data = await self._get_json("/api/skills/by-names", {"names": ",".join(wanted)})
        return [s for s in (parse_remote_skill(o) for o in _extract_items(data)) if s is not None]

    async def record_skill_install(self, skill_id: str) -> None:
        await self.request(method="POST", path=f"/api/skills/{quote(str(skill_id), safe='')}/install")
