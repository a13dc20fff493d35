from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
import textwrap
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from ._version import __version__
from .app import SkillkitApp
from .client import SkillkitError, SkillkitHTTPError
from .config import SYNC_MODES, Config, apply_env_overrides, config_path, load_config, lock_file_path, redact_token, save_config
from .lock import lock_file_to_dict
from .models import (
    DetectedSkill,
    InstallGithubRequest,
    InstallMethod,
    InstallNativeRequest,
    InstallResult,
    InstallScope,
    InstallUnknownRequest,
    LocalSourceType,
    ManageSkillAgentAppsRequest,
)


def _jsonable(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: _jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        items = [_jsonable(v) for v in obj]
        return sorted(items) if isinstance(obj, (set, frozenset)) else items
    if isinstance(obj, Path):
        return str(obj)
    return obj


def _print_json(obj: Any) -> None:
    print(json.dumps(_jsonable(obj), indent=2, sort_keys=True))


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env_overrides(base)
    overrides: dict[str, Any] = {}
    if getattr(args, "registry_url", None):
        overrides["registry_url"] = args.registry_url
    if getattr(args, "api_key", None):
        overrides["api_key"] = args.api_key
    if getattr(args, "timeout_s", None):
        overrides["timeout_s"] = float(args.timeout_s)
    if not overrides:
        return cfg
    return dataclasses.replace(cfg, **overrides)


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillkit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install, reconcile and update agent skills.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLKIT_CONFIG_PATH, SKILLKIT_REGISTRY_URL, SKILLKIT_API_KEY, SKILLKIT_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--registry-url", help="Skills registry base URL (overrides config/env)")
    p.add_argument("--api-key", help="Registry API key (overrides config/env)")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Log progress (-vv for debug output)")
    p.add_argument("--version", action="version", version=f"skillkit {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (API key redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--api-key")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--sync-mode", choices=SYNC_MODES, help="Default install method")
    cfg_set.add_argument("--lock-path", help="Override the lock file location")
    cfg_set.add_argument("--agents-home", help="Override the ~/.agents directory")
    cfg_set.add_argument("--backup-folder", help="Default folder for `skillkit backup`")

    # lock ledger
    lock = sub.add_parser("lock", help="Inspect the skill lock file")
    lock_sub = lock.add_subparsers(dest="subcmd", required=True)
    lock_show = lock_sub.add_parser("show", help="Print the whole lock file")
    lock_show.add_argument("--json", action="store_true", help="Output JSON")
    lock_get = lock_sub.add_parser("get", help="Print one lock entry")
    lock_get.add_argument("name")
    lock_rm = lock_sub.add_parser("remove", help="Drop one lock entry (files are left alone)")
    lock_rm.add_argument("name")
    lock_sources = lock_sub.add_parser("sources", help="Group locked skills by source")
    lock_sources.add_argument("--json", action="store_true", help="Output JSON")

    # agent apps
    agents = sub.add_parser("agents", help="Agent applications")
    agents_sub = agents.add_subparsers(dest="subcmd", required=True)
    agents_list = agents_sub.add_parser("list", help="List agent apps")
    agents_list.add_argument("--local", action="store_true", help="Only apps installed on this machine")
    agents_list.add_argument("--json", action="store_true", help="Output JSON")
    agents_add = agents_sub.add_parser("add", help="Register a custom agent app")
    agents_add.add_argument("display_name")
    agents_add.add_argument("--global-path", required=True, help="Global skills folder, e.g. ~/.myagent/skills")
    agents_add.add_argument("--project-path", required=True, help="Project-relative skills folder, e.g. .myagent/skills")
    agents_rm = agents_sub.add_parser("remove", help="Remove a custom agent app")
    agents_rm.add_argument("id")

    # user projects
    projects = sub.add_parser("projects", help="Named project directories for --scope project")
    projects_sub = projects.add_subparsers(dest="subcmd", required=True)
    projects_list = projects_sub.add_parser("list", help="List registered projects")
    projects_list.add_argument("--json", action="store_true", help="Output JSON")
    projects_add = projects_sub.add_parser("add", help="Register a project")
    projects_add.add_argument("name")
    projects_add.add_argument("path")
    projects_update = projects_sub.add_parser("update", help="Rename or move a registered project")
    projects_update.add_argument("name")
    projects_update.add_argument("--new-name", help="New project name")
    projects_update.add_argument("--path", help="New project path")
    projects_rm = projects_sub.add_parser("remove", help="Forget a registered project (files are left alone)")
    projects_rm.add_argument("name")

    def _add_scope(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--scope", choices=[s.value for s in InstallScope], default=InstallScope.GLOBAL.value)
        parser.add_argument("--project", help="Project directory or registered project name (for --scope project)")

    # local skills
    lst = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    _add_scope(lst)
    lst.add_argument("--json", action="store_true", help="Output JSON")

    # registry
    search = sub.add_parser("search", help="Search the skills registry")
    search.add_argument("query", nargs="?")
    search.add_argument("--skip", type=int, default=0)
    search.add_argument("--limit", type=int, default=20)
    search.add_argument("--sort-by", default="heat_score")
    search.add_argument("--sort-order", choices=["asc", "desc"], default="desc")
    search.add_argument("--json", action="store_true", help="Output JSON")

    updates = sub.add_parser("updates", help="List installed skills with a newer registry version")
    updates.add_argument("--json", action="store_true", help="Output JSON")

    # detection / install
    detect = sub.add_parser("detect", help="List skills found in a folder, zip or GitHub repository")
    detect.add_argument("source", help="Folder path, .zip path, GitHub URL or owner/repo")
    detect.add_argument("--skill-path", help="Path of SKILL.md inside a GitHub repository")
    detect.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["i"], help="Install a skill into agent apps")
    install.add_argument("source", help="Folder path, .zip path, GitHub URL or owner/repo")
    install.add_argument("--agent", action="append", dest="agents", required=True, help="Target agent app id (repeatable)")
    install.add_argument("--skill", help="Skill name when the source holds several skills")
    install.add_argument("--skill-path", help="Path of SKILL.md inside a GitHub repository")
    install.add_argument("--method", choices=SYNC_MODES, help="symlink or copy (default: config sync_mode)")
    _add_scope(install)
    install.add_argument("--json", action="store_true", help="Output JSON")

    adopt = sub.add_parser("adopt", help="Bring an unmanaged skill folder under management")
    adopt.add_argument("name")
    adopt.add_argument("--agent", action="append", dest="agents", required=True, help="Target agent app id (repeatable)")
    adopt.add_argument("--source", help="Folder to adopt when several different copies exist")
    adopt.add_argument("--method", choices=SYNC_MODES)
    _add_scope(adopt)
    adopt.add_argument("--json", action="store_true", help="Output JSON")

    manage = sub.add_parser("manage", help="Set exactly which agent apps a skill is installed into")
    manage.add_argument("name")
    manage.add_argument("--agent", action="append", dest="agents", default=[], help="Desired agent app id (repeatable)")
    manage.add_argument("--method", choices=SYNC_MODES)
    _add_scope(manage)
    manage.add_argument("--json", action="store_true", help="Output JSON")

    delete = sub.add_parser("delete", aliases=["rm"], help="Uninstall a skill from every agent app")
    delete.add_argument("name")
    _add_scope(delete)
    delete.add_argument("--json", action="store_true", help="Output JSON")

    check = sub.add_parser("check-version", help="Compare the on-disk copies of a skill")
    check.add_argument("name")
    check.add_argument("paths", nargs="*", help="Candidate folders (default: discovered copies)")
    _add_scope(check)
    check.add_argument("--json", action="store_true", help="Output JSON")

    backup = sub.add_parser("backup", help="Zip the global skills folder into a backup folder")
    backup.add_argument("--folder", help="Backup folder (default: config backup_folder)")
    backup.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _run(args: argparse.Namespace, fn: Callable[[SkillkitApp], Awaitable[Any]]) -> Any:
    cfg = _merge_cfg(load_config(), args)

    async def _go() -> Any:
        async with SkillkitApp(cfg) as app:
            return await fn(app)

    return asyncio.run(_go())


def _print_install_result(result: InstallResult, *, as_json: bool) -> int:
    if as_json:
        _print_json(result)
    else:
        print(result.message)
        if result.stdout:
            print(result.stdout)
        if result.stderr:
            print(result.stderr, file=sys.stderr)
    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = dataclasses.asdict(cfg)
        d["api_key"] = redact_token(cfg.api_key)
        d["lock_file"] = str(lock_file_path(cfg))
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        changes: dict[str, Any] = {}
        for field in ("registry_url", "api_key", "timeout_s", "sync_mode", "lock_path", "agents_home", "backup_folder"):
            value = getattr(args, field)
            if value is not None:
                changes[field] = value
        path = save_config(dataclasses.replace(cfg, **changes))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_lock(args: argparse.Namespace) -> int:
    if args.subcmd == "show":
        lock = _run(args, lambda app: app.read_skill_lock())
        if args.json:
            print(json.dumps(lock_file_to_dict(lock), indent=2, sort_keys=True))
            return 0
        rows = [["NAME", "SOURCE", "TYPE", "UPDATED"]]
        for name in sorted(lock.skills):
            e = lock.skills[name]
            rows.append([name, e.source, e.source_type, e.updated_at])
        _print_table(rows)
        return 0

    if args.subcmd == "get":
        entry = _run(args, lambda app: app.get_skill_from_lock(args.name))
        if entry is None:
            print(f"{args.name}: not in lock file", file=sys.stderr)
            return 1
        _print_json(entry)
        return 0

    if args.subcmd == "remove":
        removed = _run(args, lambda app: app.remove_skill_from_lock(args.name))
        print(f"removed: {args.name}" if removed else f"{args.name}: not in lock file")
        return 0

    if args.subcmd == "sources":
        groups = _run(args, lambda app: app.ledger.group_by_source())
        if args.json:
            _print_json({src: sorted(g.names) for src, g in groups.items()})
            return 0
        rows = [["SOURCE", "TYPE", "SKILLS"]]
        for src in sorted(groups):
            g = groups[src]
            rows.append([src, g.sample_entry.source_type, ", ".join(sorted(g.names))])
        _print_table(rows)
        return 0

    raise AssertionError("unreachable")


def cmd_agents(args: argparse.Namespace) -> int:
    if args.subcmd == "list":
        apps = _run(args, lambda app: app.list_agent_apps(local_only=args.local))
        if args.json:
            _print_json(apps)
            return 0
        rows = [["ID", "NAME", "GLOBAL", "PROJECT", "CUSTOM"]]
        for a in apps:
            rows.append([a.id, a.display_name, a.global_path or "", a.project_path or "", "yes" if a.is_user_custom else ""])
        _print_table(rows)
        return 0

    if args.subcmd == "add":
        created = _run(
            args, lambda app: _sync(lambda: app.agents.add_user_app(args.display_name, args.global_path, args.project_path))
        )
        print(f"added: {created.id}")
        return 0

    if args.subcmd == "remove":
        _run(args, lambda app: _sync(lambda: app.agents.remove_user_app(args.id)))
        print(f"removed: {args.id}")
        return 0

    raise AssertionError("unreachable")


async def _sync(fn: Callable[[], Any]) -> Any:
    return fn()


def cmd_list(args: argparse.Namespace) -> int:
    skills = _run(
        args, lambda app: app.list_skills(scope=args.scope, project_path=app.project_path_for(args.project))
    )
    if args.json:
        _print_json(skills)
        return 0
    rows = [["NAME", "SOURCE", "TYPE", "AGENTS"]]
    for s in skills:
        agents = ", ".join(f"{a.id}({a.method.value})" for a in s.installed_agent_apps)
        rows.append([s.name, s.source or "", s.source_type.value, agents])
    _print_table(rows)
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    async def _go(app: SkillkitApp):
        page = await app.registry.fetch_remote_skills(
            skip=args.skip, limit=args.limit, search=args.query, sort_by=args.sort_by, sort_order=args.sort_order
        )
        stale = await app.monitor.check_updates_from_remote_list(page.skills)
        return page, {s.name for s in stale}

    page, stale_names = _run(args, _go)
    if args.json:
        _print_json({"skills": page.skills, "total": page.total, "has_more": page.has_more, "updates": sorted(stale_names)})
        return 0
    rows = [["NAME", "SOURCE", "STARS", "INSTALLS", ""]]
    for s in page.skills:
        rows.append([s.name, s.source, str(s.star_count), str(s.install_count), "update" if s.name in stale_names else ""])
    _print_table(rows)
    print(f"total: {page.total}" + (" (more available)" if page.has_more else ""))
    return 0


def cmd_updates(args: argparse.Namespace) -> int:
    stale = _run(args, lambda app: app.monitor.check_for_skill_updates())
    if args.json:
        _print_json(stale)
        return 0
    if not stale:
        print("All skills are up to date.")
        return 0
    rows = [["NAME", "SOURCE", "REMOTE SHA"]]
    for s in stale:
        rows.append([s.name, s.source, s.skill_path_sha or ""])
    _print_table(rows)
    return 0


def _source_kind(source: str) -> str:
    path = Path(source).expanduser()
    if path.is_dir():
        return "folder"
    if path.is_file() and path.suffix.lower() == ".zip":
        return "zip"
    return "github"


async def _detect(app: SkillkitApp, source: str, skill_path: str | None) -> tuple[str, list[DetectedSkill]]:
    kind = _source_kind(source)
    if kind == "folder":
        return kind, await app.detector.detect_folder(source)
    if kind == "zip":
        return kind, await app.detector.detect_zip(source)
    if skill_path:
        return kind, await app.detector.detect_github_auto(source, skill_path)
    return kind, await app.detector.detect_github_manual(source)


def cmd_detect(args: argparse.Namespace) -> int:
    async def _go(app: SkillkitApp):
        try:
            return (await _detect(app, args.source, args.skill_path))[1]
        finally:
            app.detector.cleanup()

    detected = _run(args, _go)
    if args.json:
        _print_json([dataclasses.replace(d, tmp_path="") for d in detected])
        return 0
    rows = [["NAME", "SKILL PATH", "DESCRIPTION"]]
    for d in detected:
        rows.append([d.name, d.skill_path, (d.description or "")[:60]])
    _print_table(rows)
    return 0


def _pick(detected: list[DetectedSkill], name: str | None) -> DetectedSkill:
    if name:
        for d in detected:
            if d.name == name:
                return d
        raise SkillkitError(f"Skill {name!r} not found in source", hint="Run `skillkit detect` to list skills.")
    if len(detected) > 1:
        raise SkillkitError(
            "Source contains several skills: " + ", ".join(d.name for d in detected),
            code="SELECTION_REQUIRED",
            hint="Pick one with --skill NAME.",
        )
    return detected[0]


def cmd_install(args: argparse.Namespace) -> int:
    async def _go(app: SkillkitApp) -> InstallResult:
        method = args.method or app.config.sync_mode
        try:
            kind, detected = await _detect(app, args.source, args.skill_path)
            chosen = _pick(detected, args.skill)
            if kind == "github":
                return await app.install_from_github(
                    InstallGithubRequest(
                        name=chosen.name,
                        tmp_path=chosen.tmp_path,
                        skill_path=chosen.skill_path,
                        source_url=chosen.source_url or args.source,
                        agent_apps=tuple(args.agents),
                        method=InstallMethod(method),
                        skill_folder_hash=chosen.skill_folder_hash,
                        scope=InstallScope(args.scope),
                        project_path=app.project_path_for(args.project),
                    )
                )
            return await app.install_from_native(
                InstallNativeRequest(
                    name=chosen.name,
                    tmp_path=chosen.tmp_path,
                    skill_path=chosen.skill_path,
                    agent_apps=tuple(args.agents),
                    method=InstallMethod(method),
                    scope=InstallScope(args.scope),
                    project_path=app.project_path_for(args.project),
                )
            )
        finally:
            app.detector.cleanup()

    return _print_install_result(_run(args, _go), as_json=args.json)


def cmd_adopt(args: argparse.Namespace) -> int:
    def _go(app: SkillkitApp):
        return app.install_from_unknown(
            InstallUnknownRequest(
                name=args.name,
                agent_apps=tuple(args.agents),
                method=InstallMethod(args.method or app.config.sync_mode),
                source_path=args.source,
                scope=InstallScope(args.scope),
                project_path=app.project_path_for(args.project),
            )
        )

    return _print_install_result(_run(args, _go), as_json=args.json)


def cmd_manage(args: argparse.Namespace) -> int:
    async def _go(app: SkillkitApp) -> InstallResult:
        project = app.project_path_for(args.project)
        skill = await app.scanner.get_skill(
            args.name, scope=InstallScope(args.scope), project_path=Path(project) if project else None
        )
        source_type = skill.source_type if skill else LocalSourceType.UNKNOWN
        return await app.manage_skill_agent_apps(
            ManageSkillAgentAppsRequest(
                name=args.name,
                agent_apps=tuple(args.agents),
                method=InstallMethod(args.method or app.config.sync_mode),
                source_type=source_type,
                scope=InstallScope(args.scope),
                project_path=project,
            )
        )

    return _print_install_result(_run(args, _go), as_json=args.json)


def cmd_delete(args: argparse.Namespace) -> int:
    result = _run(
        args, lambda app: app.delete_skill(args.name, scope=args.scope, project_path=app.project_path_for(args.project))
    )
    return _print_install_result(result, as_json=args.json)


def cmd_check_version(args: argparse.Namespace) -> int:
    result = _run(
        args,
        lambda app: app.check_skill_version(
            args.name, candidate_paths=args.paths or None, scope=args.scope, project_path=app.project_path_for(args.project)
        ),
    )
    if args.json:
        _print_json(result)
        return 0
    if not result.version_groups:
        print(f"No copies of {args.name} found.")
        return 1
    for g in result.version_groups:
        print(f"{g.version[:12]}  {len(g.paths)} copies")
        for path in g.paths:
            print(f"  {path}")
    if result.requires_selection:
        print("Copies differ: pass one of the folders above to `skillkit adopt --source`.")
    return 0


def cmd_projects(args: argparse.Namespace) -> int:
    if args.subcmd == "list":
        projects = _run(args, lambda app: app.list_user_projects())
        if args.json:
            _print_json(projects)
            return 0
        rows = [["NAME", "PATH"]]
        for p in projects:
            rows.append([p.name, p.path])
        _print_table(rows)
        return 0

    if args.subcmd == "add":
        created = _run(args, lambda app: app.add_user_project(args.name, args.path))
        print(f"added: {created.name}")
        return 0

    if args.subcmd == "update":

        async def _update(app: SkillkitApp):
            current = await asyncio.to_thread(app.projects.get, args.name)
            return await app.update_user_project(current.name, args.new_name or current.name, args.path or current.path)

        updated = _run(args, _update)
        print(f"updated: {updated.name} ({updated.path})")
        return 0

    if args.subcmd == "remove":
        _run(args, lambda app: app.remove_user_project(args.name))
        print(f"removed: {args.name}")
        return 0

    raise AssertionError("unreachable")


def cmd_backup(args: argparse.Namespace) -> int:
    async def _go(app: SkillkitApp):
        return await app.backup_skills(args.folder), app.config

    result, cfg = _run(args, _go)
    if result.success:
        # Only the backup fields are saved.
        saved = load_config()
        save_config(dataclasses.replace(saved, backup_folder=cfg.backup_folder, last_backup_time=cfg.last_backup_time))
    if args.json:
        _print_json(result)
    elif result.success:
        print(f"Backed up to {result.backup_path}")
    else:
        print(result.message, file=sys.stderr)
    return 0 if result.success else 1


def _format_http_error(e: SkillkitHTTPError) -> str:
    detail: Any = e.body
    try:
        data = json.loads(e.body)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("message") or data.get("error") or e.body
    return f"HTTP {e.status_code}: {detail}"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "lock":
            return cmd_lock(args)
        if args.cmd == "agents":
            return cmd_agents(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "search":
            return cmd_search(args)
        if args.cmd == "updates":
            return cmd_updates(args)
        if args.cmd == "detect":
            return cmd_detect(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "adopt":
            return cmd_adopt(args)
        if args.cmd == "manage":
            return cmd_manage(args)
        if args.cmd in ("delete", "rm"):
            return cmd_delete(args)
        if args.cmd == "check-version":
            return cmd_check_version(args)
        if args.cmd == "projects":
            return cmd_projects(args)
        if args.cmd == "backup":
            return cmd_backup(args)
        raise AssertionError("unreachable")
    except SkillkitHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except SkillkitError as e:
        print(f"error: {e}", file=sys.stderr)
        if e.hint:
            print(f"hint: {e.hint}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
