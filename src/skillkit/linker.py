from __future__ import annotations

import logging
import os
from pathlib import Path

from .client import SkillkitError
from .models import InstallMethod
from .skill_folder import COPY_MARKER_FILENAME, copy_skill_tree, remove_path

logger = logging.getLogger(__name__)


def _resolved_link_target(link_path: Path) -> Path:
    target = Path(os.readlink(link_path))
    if not target.is_absolute():
        target = link_path.parent / target
    return Path(os.path.normpath(target))


def _same_path(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return os.path.normpath(a) == os.path.normpath(b)


def read_copy_marker(path: Path) -> Path | None:
    marker = path / COPY_MARKER_FILENAME
    try:
        text = marker.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return Path(text) if text else None


def write_copy_marker(path: Path, canonical: Path) -> None:
    (path / COPY_MARKER_FILENAME).write_text(str(canonical), encoding="utf-8")


def managed_method(link_path: Path, canonical: Path) -> InstallMethod | None:
    """Return how `link_path` is bound to `canonical`, or None when it is not a managed entry."""
    if link_path.is_symlink():
        if _same_path(_resolved_link_target(link_path), canonical):
            return InstallMethod.SYMLINK
        return None
    if link_path.is_dir():
        marker = read_copy_marker(link_path)
        if marker is not None and _same_path(marker, canonical):
            return InstallMethod.COPY
    return None


def managed_target(link_path: Path, canonical_root: Path) -> Path | None:
    """Canonical folder under `canonical_root` that `link_path` points to (symlink or copy marker)."""
    if link_path.is_symlink():
        target = _resolved_link_target(link_path)
    elif link_path.is_dir():
        marker = read_copy_marker(link_path)
        if marker is None:
            return None
        target = marker
    else:
        return None
    try:
        target.resolve().relative_to(canonical_root.resolve())
    except (OSError, ValueError):
        return None
    return target


class SkillLinker:
    """
    Binds agent skill entries to a canonical skill folder.

    Symlink entries point at the canonical folder; copy entries are full copies carrying a
    marker file with the canonical path.
    """

    def link(self, canonical: Path, link_path: Path, method: InstallMethod) -> None:
        if not canonical.is_dir():
            raise SkillkitError(f"Canonical skill folder is missing: {canonical}", code="SKILL_NOT_FOUND")
        if method == InstallMethod.COPY:
            copy_skill_tree(canonical, link_path)
            write_copy_marker(link_path, canonical)
            logger.debug("Copied %s -> %s", canonical, link_path)
            return
        self._ensure_symlink(canonical, link_path)

    def _ensure_symlink(self, canonical: Path, link_path: Path) -> None:
        if link_path.is_symlink():
            if _same_path(_resolved_link_target(link_path), canonical):
                return
            remove_path(link_path)
        elif link_path.exists():
            remove_path(link_path)
        link_path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(canonical, link_path, target_is_directory=True)
        logger.debug("Linked %s -> %s", link_path, canonical)

    def unlink(self, link_path: Path, canonical: Path) -> bool:
        """
        Remove a managed entry. Returns False when nothing was there.

        Refuses to delete an entry that is not bound to `canonical`.
        """
        if not link_path.exists() and not link_path.is_symlink():
            return False
        if managed_method(link_path, canonical) is None:
            raise SkillkitError(
                f"Refusing to remove {link_path}: it is not managed from {canonical}",
                code="NOT_MANAGED",
                hint="Remove the folder manually or adopt it with `skillkit adopt`.",
            )
        remove_path(link_path)
        logger.debug("Unlinked %s", link_path)
        return True
