"""Working directory ownership lock.

Only one pipeline may mutate a working directory at a time. Inside one
process this is a registry guarded by a threading lock; across processes a
``.<name>.buildmedia.lock`` file created with ``O_EXCL`` next to the
directory marks the owner. The lock sits beside the directory, outside the
packaged tree.

Usage:
    from buildmedia.storage.workdir_lock import working_directory_lock

    with working_directory_lock(work_dir, owner="extract"):
        extract_iso(...)
"""

from __future__ import annotations

import os
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from buildmedia.logging import LoggerFactory
from buildmedia.storage.exceptions import UnexpectedIOError, WorkingDirectoryBusyError


log = LoggerFactory.for_pipeline()

LOCK_FILE_SUFFIX = ".buildmedia.lock"
_PID_FIELD = re.compile(r"\bpid=(\d+)")

# Lock for thread-safe access to the in-process registry
_lock = threading.Lock()

# Resolved working directory -> owner description
_owners: dict[str, str] = {}


def _key(path: Path) -> str:
    return os.path.normcase(os.path.abspath(path))


def lock_file_path(work_dir: Path) -> Path:
    resolved = Path(os.path.abspath(work_dir))
    return resolved.parent / f".{resolved.name}{LOCK_FILE_SUFFIX}"


def _read_owner(lock_path: Path) -> str:
    try:
        return lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def _owner_pid(owner: str) -> int | None:
    match = _PID_FIELD.search(owner)
    return int(match.group(1)) if match else None


def _pid_running(pid: int) -> bool:
    # os.kill terminates the target on Windows, so liveness is only checked on POSIX
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def is_stale(owner: str) -> bool:
    """True when the lock file names a local process that no longer exists."""
    pid = _owner_pid(owner)
    return pid is not None and pid != os.getpid() and not _pid_running(pid)


def _create_lock_file(work_dir: Path, lock_path: Path, owner: str) -> None:
    for attempt in (1, 2):
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = _read_owner(lock_path)
            if attempt == 1 and is_stale(holder):
                log.warning(f"Replacing stale lock file {lock_path} ({holder})")
                lock_path.unlink(missing_ok=True)
                continue
            raise WorkingDirectoryBusyError(str(work_dir), holder, str(lock_path))
        except OSError as error:
            raise UnexpectedIOError(f"Unable to lock {work_dir}: {error}") from error
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{owner} pid={os.getpid()}\n")
        return


@contextmanager
def working_directory_lock(work_dir: Path, owner: str = "pipeline") -> Generator[None, None, None]:
    """Hold exclusive ownership of ``work_dir`` for the duration of the block.

    A lock file whose recorded process is gone is taken over.

    Raises:
        WorkingDirectoryBusyError: another pipeline, in this process or
            another one, already owns the directory.
    """
    key = _key(work_dir)
    with _lock:
        if key in _owners:
            raise WorkingDirectoryBusyError(str(work_dir), _owners[key])
        _owners[key] = owner

    lock_path = lock_file_path(work_dir)
    created = False
    try:
        _create_lock_file(work_dir, lock_path, owner)
        created = True
        log.debug(f"Working directory {work_dir} locked by {owner}")
        yield
    finally:
        if created:
            try:
                lock_path.unlink()
            except OSError as error:
                log.warning(f"Unable to remove lock file {lock_path}: {error}")
        with _lock:
            _owners.pop(key, None)
        if created:
            log.debug(f"Working directory {work_dir} released by {owner}")


def is_locked(work_dir: Path) -> bool:
    """True when any pipeline currently owns ``work_dir``."""
    with _lock:
        if _key(work_dir) in _owners:
            return True
    return lock_file_path(work_dir).exists()


def break_stale_lock(work_dir: Path) -> bool:
    """Remove a lock file left behind by a crashed process."""
    lock_path = lock_file_path(work_dir)
    with _lock:
        if _key(work_dir) in _owners:
            return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        return False
    log.warning(f"Removed stale lock file {lock_path}")
    return True
