from __future__ import annotations

import logging
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Callable

from .client import SkillkitError
from .models import BackupResult

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "skills_backup_"


def write_skills_backup(skills_root: Path, backup_folder: Path, *, clock: Callable[[], datetime] = datetime.now) -> BackupResult:
    """
    Zip the whole skills folder into `backup_folder/skills_backup_<YYYYmmddHHMMSS>.zip`.

    A missing skills folder is reported as an unsuccessful result, not an error.
    """
    if not skills_root.is_dir():
        return BackupResult(success=False, message=f"Skills folder does not exist: {skills_root}")

    now = clock()
    target = backup_folder / f"{BACKUP_PREFIX}{now.strftime('%Y%m%d%H%M%S')}.zip"
    try:
        backup_folder.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".zip.tmp")
        with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for p in sorted(skills_root.rglob("*")):
                rel = p.relative_to(skills_root).as_posix()
                if p.is_dir():
                    zf.writestr(rel + "/", b"")
                elif p.is_file():
                    zf.write(p, rel)
        tmp.replace(target)
    except OSError as e:
        raise SkillkitError(f"Backup to {backup_folder} failed: {e}", code="BACKUP_FAILED") from e

    logger.info("Backed up %s to %s", skills_root, target)
    return BackupResult(
        success=True,
        message="Backup complete",
        backup_path=str(target),
        backup_time=now.strftime("%Y-%m-%d %H:%M:%S"),
    )
