"""
Lock management for storypipe.

Two kinds of lock, both flock based:

- story_lock: short critical sections around read-modify-write of a story's
  files (markers, tasks, snapshot). Re-entrant within a thread, exclusive
  across threads and processes.
- run_lock: held for the whole duration of a pipeline run so two processes
  cannot drive the same story at once.

Lock files are never deleted. Deleting one while another process waits on it
lets two processes hold "exclusive" locks on different inodes.
"""

import fcntl
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


POLL_SECONDS = 0.05


class _StoryLock:
    """Process-local half of a story lock. Guards the flock fd and depth."""

    def __init__(self):
        self.rlock = threading.RLock()
        self.depth = 0
        self.fd = None


_registry: dict[tuple[str, str], _StoryLock] = {}
_registry_guard = threading.Lock()


def _local_lock(root: Path, story_id: str) -> _StoryLock:
    key = (str(Path(root).resolve()), story_id)
    with _registry_guard:
        lock = _registry.get(key)
        if lock is None:
            lock = _StoryLock()
            _registry[key] = lock
        return lock


def _flock(lock_file: Path, deadline: float, lock_name: str):
    """Open lock_file and take an exclusive flock, polling until deadline."""
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    fd = open(lock_file, 'a+')
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return fd
        except BlockingIOError:
            if time.monotonic() > deadline:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name}")
            time.sleep(POLL_SECONDS)


def _release(fd) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        fd.close()


def story_lock_path(root: Path, story_id: str) -> Path:
    return Path(root) / "locks" / "stories" / f"{story_id}.lock"


def run_lock_path(root: Path, story_id: str) -> Path:
    return Path(root) / "locks" / "runs" / f"{story_id}.lock"


@contextmanager
def story_lock(root: Path, story_id: str, timeout: float = 60):
    """
    Acquire the per-story lock, yield, release on exit.

    Nested use in the same thread only takes the file lock once.
    """
    local = _local_lock(root, story_id)
    deadline = time.monotonic() + timeout

    if not local.rlock.acquire(timeout=timeout):
        raise LockTimeout(f"Could not acquire lock for {story_id} within {timeout}s")
    try:
        if local.depth == 0:
            local.fd = _flock(story_lock_path(root, story_id), deadline, f"lock for {story_id} within {timeout}s")
        local.depth += 1
        try:
            yield
        finally:
            local.depth -= 1
            if local.depth == 0:
                fd, local.fd = local.fd, None
                _release(fd)
    finally:
        local.rlock.release()


@contextmanager
def run_lock(root: Path, story_id: str):
    """
    Hold the run lock for a story without waiting.

    Raises:
        LockTimeout: if another process is already running this story
    """
    lock_file = run_lock_path(root, story_id)
    fd = _flock(lock_file, time.monotonic(), f"run lock for {story_id} (pipeline already running)")
    try:
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        _release(fd)


def is_run_locked(root: Path, story_id: str) -> bool:
    """True if some process currently holds the run lock for story_id."""
    lock_file = run_lock_path(root, story_id)
    if not lock_file.exists():
        return False
    try:
        with open(lock_file, 'r') as fd:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
    except OSError:
        return False
