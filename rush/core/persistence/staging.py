"""
Staging area inside the install directory.

Extracted binaries are first written to ``.rush-tmp-<pid>-<random>``
files next to their final location, so the final move is a same-volume
``os.replace``. The pid in the name lets a later run tell leftovers of a
killed process apart from files another live process is still staging.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from rush.core.persistence.lock import pid_alive

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".rush-tmp-"
BACKUP_PREFIX = f"{STAGING_PREFIX}bak-"


def staging_file(directory: Path) -> Path:
    """Create an empty staging file owned by this process."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(dir=directory, prefix=f"{STAGING_PREFIX}{os.getpid()}-")
    os.close(fd)
    return Path(name)


def backup_file(directory: Path) -> Path:
    """Reserve a name for moving an existing binary aside during commit."""
    fd, name = tempfile.mkstemp(dir=directory, prefix=f"{BACKUP_PREFIX}{os.getpid()}-")
    os.close(fd)
    return Path(name)


def owner_pid(path: Path) -> int | None:
    """Pid encoded in a staging file name, or None for legacy names."""
    name = path.name
    if name.startswith(BACKUP_PREFIX):
        rest = name[len(BACKUP_PREFIX) :]
    elif name.startswith(STAGING_PREFIX):
        rest = name[len(STAGING_PREFIX) :]
    else:
        return None
    head = rest.split("-", 1)[0]
    return int(head) if head.isdigit() else None


def is_orphan(path: Path) -> bool:
    """A staging file whose owning process is gone (or unknown)."""
    if not path.name.startswith(STAGING_PREFIX):
        return False
    pid = owner_pid(path)
    if pid is None:
        return True
    if pid == os.getpid():
        return False
    return not pid_alive(pid)


def sweep_orphans(directory: Path, *, everything: bool = False) -> list[str]:
    """Delete orphaned staging files in ``directory``.

    Args:
        everything: Also delete files owned by live processes.

    Returns:
        Names of the deleted files.
    """
    if not directory.is_dir():
        return []
    removed: list[str] = []
    for entry in sorted(directory.iterdir()):
        if not entry.name.startswith(STAGING_PREFIX) or not entry.is_file():
            continue
        if everything or is_orphan(entry):
            entry.unlink(missing_ok=True)
            removed.append(entry.name)
    if removed:
        logger.info("Removed %d leftover staging file(s) from %s", len(removed), directory)
    return removed


# ── Work directory ──────────────────────────────────────────────


def work_prefix(kind: str) -> str:
    """Name prefix for scratch entries under ``<data_dir>/tmp``."""
    return f"{kind}-{os.getpid()}-"


def sweep_work_dir(directory: Path, *, everything: bool = False) -> list[str]:
    """Delete scratch entries left behind by dead processes.

    Entries are named ``<kind>-<pid>-<random>``; names without a pid are
    treated as abandoned.
    """
    if not directory.is_dir():
        return []
    removed: list[str] = []
    for entry in sorted(directory.iterdir()):
        parts = entry.name.split("-")
        pid = int(parts[1]) if len(parts) > 2 and parts[1].isdigit() else None
        if not everything and pid is not None and (pid == os.getpid() or pid_alive(pid)):
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry, ignore_errors=True)
        else:
            entry.unlink(missing_ok=True)
        removed.append(entry.name)
    if removed:
        logger.info("Removed %d stale work entries from %s", len(removed), directory)
    return removed
