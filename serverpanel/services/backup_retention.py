# serverpanel/services/backup_retention.py
"""
Backup retention.

Game servers write their own backups into BACKUP_DIR/<id>-back. This keeps the
newest BACKUP_KEEP_COUNT entries (by modification time) in each of those
directories and deletes the rest, recursing into directory-type backups.
Blocking filesystem work; the coordinator runs it in a worker thread.
"""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

BACKUP_KEEP_COUNT = int(os.getenv("BACKUP_KEEP_COUNT", "10"))
BACKUP_DIR_SUFFIX = "-back"


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def prune_backup_dir(directory: Path, keep: int = BACKUP_KEEP_COUNT) -> int:
    """Delete all but the ``keep`` newest entries of one backup directory."""
    entries = sorted(directory.iterdir(), key=_mtime, reverse=True)
    deleted = 0
    for entry in entries[max(keep, 0):]:
        try:
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            deleted += 1
            logger.debug(f"Deleted old backup {entry}")
        except OSError as e:
            logger.warning(f"Failed to delete old backup {entry}: {e}")
    return deleted


def cleanup_old_backups(backup_root: Path, keep: int = BACKUP_KEEP_COUNT) -> int:
    """Apply retention to every per-server backup directory; returns entries deleted."""
    if not backup_root.is_dir():
        return 0

    total = 0
    for directory in sorted(backup_root.iterdir()):
        if not directory.is_dir() or not directory.name.endswith(BACKUP_DIR_SUFFIX):
            continue
        try:
            total += prune_backup_dir(directory, keep)
        except OSError as e:
            logger.warning(f"Failed to apply backup retention in {directory}: {e}")

    if total:
        logger.info(f"Backup retention removed {total} old backup(s)")
    return total
