"""
Workspace change fingerprint for stall detection.

A fingerprint hashes what the worker can visibly change: git status,
the unstaged diff stat, and the most recently modified files under the
watched directories. Two equal fingerprints mean no observable progress.
"""

import hashlib
import logging
import os
import time
from pathlib import Path

from ralph.git.status import get_diff_stat, get_status_short

logger = logging.getLogger(__name__)

MAX_RECENT_FILES = 20
_SKIP_DIRS = {".git", "node_modules", "dist", "build", "__pycache__", ".venv"}


class WorkspaceFingerprint:
    """Samples a fingerprint of the workspace.

    Only files modified after reset() take part, so files touched long
    before the attempt started don't mask a stall.
    """

    def __init__(self, root: Path, watch_paths: list[str]):
        self.root = Path(root)
        self.watch_paths = watch_paths
        self.since = time.time()

    def reset(self) -> None:
        self.since = time.time()

    def recent_files(self) -> list[tuple[str, int]]:
        """(relative path, mtime_ns) of files changed since reset, newest first."""
        found = []
        for rel in self.watch_paths:
            base = self.root / rel
            if not base.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(base):
                dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS]
                for name in filenames:
                    path = Path(dirpath) / name
                    try:
                        mtime_ns = path.stat().st_mtime_ns
                    except OSError:
                        continue
                    if mtime_ns / 1e9 > self.since:
                        found.append((str(path.relative_to(self.root)), mtime_ns))
        found.sort(key=lambda item: item[1], reverse=True)
        return found[:MAX_RECENT_FILES]

    def sample(self) -> str:
        digest = hashlib.md5()
        digest.update(get_status_short(self.root).encode())
        digest.update(get_diff_stat(self.root).encode())
        for rel, mtime_ns in self.recent_files():
            digest.update(f"{rel}:{mtime_ns}\n".encode())
        return digest.hexdigest()
