"""
Progress report writer.

Regenerates ralph-progress.md from the ledger, the story files and the
run timeline. The report is rewritten whole on every phase change so it
always reflects the latest state, even after a crash.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .ledger import LedgerError, StatusLedger, epic_num_from_key, is_epic_key, is_story_key
from .manifest import task_summary
from .timeline import Timeline

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 60}m {seconds % 60}s"


def render_sprint_tables(
    ledger: StatusLedger,
    story_file_for: Callable[[str], Path],
    active_key: Optional[str] = None,
) -> str:
    """Per-epic markdown tables of story status and task progress."""
    epics: dict[int, dict] = {}
    for entry in ledger.entries():
        if is_epic_key(entry.key):
            num = int(entry.key.split("-", 1)[1])
            epics.setdefault(num, {"status": entry.status, "stories": []})["status"] = entry.status
        elif is_story_key(entry.key):
            num = epic_num_from_key(entry.key)
            epic = epics.setdefault(num, {"status": "unknown", "stories": []})

            task_info = "--"
            story_file = story_file_for(entry.key)
            if story_file.exists():
                passed, total = task_summary(story_file)
                if total > 0:
                    task_info = f"{passed}/{total} passed"

            epic["stories"].append((entry.key, entry.status, task_info))

    out = []
    for num in sorted(epics):
        epic = epics[num]
        if not epic["stories"]:
            continue
        out.append(f"### Epic {num} ({epic['status']})\n")
        out.append("| Story | Status | Tasks |")
        out.append("|-------|--------|-------|")
        for key, status, task_info in epic["stories"]:
            b = "**" if key == active_key else ""
            out.append(f"| {b}{key}{b} | {b}{status}{b} | {b}{task_info}{b} |")
        out.append("")
    return "\n".join(out)


class ProgressReport:
    """Writes the live progress report for a pipeline run."""

    def __init__(
        self,
        path: Path,
        ledger: StatusLedger,
        story_file_for: Callable[[str], Path],
        timeline: Timeline,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.path = path
        self.ledger = ledger
        self.story_file_for = story_file_for
        self.timeline = timeline
        self._clock = clock
        self.run_start = clock()

    def reset_clock(self) -> None:
        self.run_start = self._clock()

    def render(self, story_key: Optional[str], phase: Optional[str]) -> str:
        now = self._clock()
        runtime = format_duration((now - self.run_start).total_seconds())

        try:
            body = render_sprint_tables(self.ledger, self.story_file_for, story_key)
        except LedgerError as e:
            logger.warning(f"Progress report without sprint tables: {e}")
            body = "(Sprint status unavailable)"

        return (
            "# Ralph Progress Report\n"
            f"**Updated:** {now.strftime('%Y-%m-%d %H:%M:%S')} | **Runtime:** {runtime}\n\n"
            "## Current Activity\n"
            f"**Story:** {story_key or 'none'} | **Phase:** {phase or 'Idle'}\n\n"
            "## Sprint Progress\n\n"
            f"{body}\n\n"
            "## Timeline\n"
            f"{self.timeline.to_markdown()}\n"
        )

    def update(self, story_key: Optional[str], phase: Optional[str]) -> None:
        try:
            self.path.write_text(self.render(story_key, phase))
        except OSError as e:
            logger.warning(f"Failed to write progress report {self.path}: {e}")
