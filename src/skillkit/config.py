from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_REGISTRY_URL = "https://you-skills-console.vercel.app"
DEFAULT_TIMEOUT_S = 10.0
DEFAULT_SYNC_MODE = "symlink"
SYNC_MODES = ("symlink", "copy")

APP_NAME = "skillkit"
LOCK_FILENAME = ".skill-lock.json"
USER_AGENT_APPS_FILENAME = "user_agent_apps.json"
USER_PROJECTS_FILENAME = "user_projects.json"


@dataclass(frozen=True)
class Config:
    registry_url: str = DEFAULT_REGISTRY_URL
    api_key: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    sync_mode: str = DEFAULT_SYNC_MODE  # default install method: "symlink" or "copy"
    lock_path: str | None = None
    agents_home: str | None = None  # root of ~/.agents (skills/ and the lock file live here)
    backup_folder: str | None = None
    last_backup_time: str | None = None


def config_dir() -> Path:
    return user_config_path(APP_NAME)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLKIT_CONFIG_PATH"):
        return Path(env).expanduser()
    return config_dir() / "config.json"


def agents_home(cfg: Config | None = None, *, home: Path | None = None) -> Path:
    if cfg is not None and cfg.agents_home:
        return Path(cfg.agents_home).expanduser()
    return (home or Path.home()) / ".agents"


def lock_file_path(cfg: Config | None = None, *, home: Path | None = None) -> Path:
    if cfg is not None and cfg.lock_path:
        return Path(cfg.lock_path).expanduser()
    return agents_home(cfg, home=home) / LOCK_FILENAME


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    cfg = Config(**filtered)  # type: ignore[arg-type]
    if cfg.sync_mode not in SYNC_MODES:
        cfg = Config(**{**filtered, "sync_mode": DEFAULT_SYNC_MODE})  # type: ignore[arg-type]
    return cfg


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold an API key).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def apply_env_overrides(cfg: Config) -> Config:
    registry_url = os.getenv("SKILLKIT_REGISTRY_URL") or cfg.registry_url
    api_key = os.getenv("SKILLKIT_API_KEY") or cfg.api_key
    timeout_s: Any = os.getenv("SKILLKIT_TIMEOUT_S") or cfg.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = cfg.timeout_s
    return Config(**{**asdict(cfg), "registry_url": registry_url, "api_key": api_key, "timeout_s": timeout_s_f})


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
