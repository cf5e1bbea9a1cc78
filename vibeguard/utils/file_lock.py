"""File locking utilities for the JSON record store."""
from __future__ import annotations

import fcntl
import json
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator

log = logging.getLogger("vibeguard.file_lock")


@contextmanager
def exclusive_file_lock(path: Path) -> Generator[None, None, None]:
    """Context manager for exclusive advisory locking of ``path``.

    The lock lives in a sibling ``.lock`` file so the data file itself can be
    replaced by an atomic rename while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(lock_path, "w") as lock_file:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def _read_unlocked(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError:
        backup_path = path.with_suffix(path.suffix + ".bak")
        if not backup_path.exists():
            raise
        log.warning("Corrupted JSON at %s, restoring from %s", path, backup_path)
        shutil.copy(backup_path, path)
        with open(path, "r") as f:
            return json.load(f)


def _write_unlocked(path: Path, data: Any, indent: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        shutil.copy(path, path.with_suffix(path.suffix + ".bak"))
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=indent)
    tmp_path.rename(path)


def safe_read_json(path: Path, default: Any = None) -> Any:
    """Read JSON under the lock, restoring from ``.bak`` if the file is corrupt.

    Returns ``default`` when the file does not exist. Raises
    ``json.JSONDecodeError`` when the file and its backup are both unreadable.
    """
    with exclusive_file_lock(path):
        return _read_unlocked(path, default)


def safe_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON under the lock with a ``.bak`` copy and tmp+rename."""
    with exclusive_file_lock(path):
        _write_unlocked(path, data, indent)


def safe_update_json(
    path: Path,
    update_fn: Callable[[Any], Any],
    default: Any = None,
    indent: int = 2,
) -> Any:
    """Atomically read-modify-write JSON.

    Args:
        path: Path to JSON file
        update_fn: Takes the current content (or ``default``) and returns the new content
        default: Content assumed when the file does not exist
        indent: JSON indent level

    Returns:
        The written content
    """
    with exclusive_file_lock(path):
        current = _read_unlocked(path, default)
        updated = update_fn(current)
        _write_unlocked(path, updated, indent)
        return updated
