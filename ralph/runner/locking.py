"""
Single-writer lock for a project.

Two pipelines running against the same ledger and workspace would
interleave worker attempts, so a run holds an flock on .ralph.lock in
the project root for its whole duration.
"""

import atexit
import fcntl
import os
import signal
import sys
import time
from contextlib import contextmanager
from pathlib import Path

LOCK_FILE_NAME = ".ralph.lock"


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


def lock_holder(project_root: Path) -> str:
    """PID written by the current (or last) lock holder, or ''."""
    try:
        return (project_root / LOCK_FILE_NAME).read_text().strip()
    except OSError:
        return ""


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a+')
    start = time.time()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.time() - start >= timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(min(1.0, max(timeout, 0.05)))

    def cleanup():
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
        except (OSError, ValueError):
            pass

    atexit.register(cleanup)
    original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))

    try:
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        atexit.unregister(cleanup)
        signal.signal(signal.SIGTERM, original_sigterm)
        cleanup()


@contextmanager
def pipeline_lock(project_root: Path, timeout: float = 0):
    """
    Acquire the project lock, yield, release on exit.

    With timeout=0 a held lock fails immediately.
    """
    lock_file = Path(project_root) / LOCK_FILE_NAME
    with _acquire_lock(lock_file, timeout, f"pipeline lock {lock_file}"):
        yield
