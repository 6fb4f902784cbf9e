"""
Atomic file operations for lxc-gpu-passthrough.

Container configuration documents are replaced with write-to-temp-then-rename
so a reader never sees a half-written file, and every mutation is preceded by
a timestamped copy of the previous version.
"""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

DEFAULT_MODE = 0o640


def _existing_mode(path: Path) -> Optional[int]:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return None


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(str(directory), os.O_RDONLY | os.O_DIRECTORY)
    except (OSError, AttributeError):
        return
    try:
        os.fsync(fd)
    except OSError:
        # pmxcfs refuses fsync on directories
        pass
    finally:
        os.close(fd)


def atomic_write_text(path: Union[str, Path], content: str, mode: Optional[int] = None) -> None:
    """
    Replace a text file atomically.

    The content goes to a hidden temp file next to the target, is synced,
    then renamed over the target; on any failure the temp file is removed
    and the target is left as it was.

    Args:
        path: Destination file path
        content: Text content to write
        mode: File permissions (default: keep the target's current mode,
            0o640 for a new file)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        mode = _existing_mode(path) or DEFAULT_MODE

    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except Exception:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise

    _fsync_dir(path.parent)


def timestamped_backup(
    path: Union[str, Path],
    backup_dir: Union[str, Path],
    stem: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Path:
    """
    Copy a file into a backup directory under a timestamped name.

    The name is ``<stem>.<YYYYmmdd-HHMMSS>.bak``; if a backup with that name
    already exists a numeric suffix is added so earlier backups are never
    overwritten.

    Args:
        path: File to back up (must exist)
        backup_dir: Directory receiving the copy
        stem: Name prefix (default: the file name)
        now: Timestamp to use (default: current time)

    Returns:
        Path to the backup file

    Raises:
        OSError: If the source is missing or the copy fails
    """
    path = Path(path)
    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)

    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    base = f"{stem or path.name}.{stamp}"

    backup_path = backup_dir / f"{base}.bak"
    counter = 1
    while backup_path.exists():
        backup_path = backup_dir / f"{base}.{counter}.bak"
        counter += 1

    shutil.copy2(path, backup_path)
    return backup_path
