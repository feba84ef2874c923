"""Append-only activity log shared with the worker (activity.md)."""

import logging
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

ACTIVITY_HEADER = """# Project Build - Activity Log

## Current Status
**Last Updated:** Not started
**Tasks Completed:** 0
**Current Task:** None

---

## Session Log

<!-- Agent will append dated entries here -->
"""


def ensure_activity_log(path: Path) -> None:
    """Create the activity log with its header if it does not exist."""
    if not path.exists():
        logger.info(f"Creating activity log {path}")
        path.write_text(ACTIVITY_HEADER)


def append_activity(path: Path, title: str, body: str = "") -> None:
    """Append a dated entry."""
    ensure_activity_log(path)
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    entry = f"\n### {stamp} - {title}\n"
    if body:
        entry += f"{body.rstrip()}\n"
    with open(path, "a") as f:
        f.write(entry)
