"""
Story context and log directory management.
"""

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from ralph.lib.validate import validate_before_write

logger = logging.getLogger(__name__)

LEARNINGS_FILE = "failure-learnings.md"
RESULT_FILE = "result.json"


@dataclass
class StoryContext:
    """Context for processing one story."""
    story_key: str
    story_file: Path
    log_dir: Path
    start_time: datetime = field(default_factory=datetime.now)
    stages: dict = field(default_factory=dict)
    attempts: int = 0
    tasks_completed: int = 0
    tasks_total: int = 0

    @classmethod
    def create(cls, log_root: Path, story_key: str, story_file: Path) -> 'StoryContext':
        """Create a context with a fresh log directory <log_root>/<key>-<timestamp>."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        log_dir = log_root / f"{story_key}-{timestamp}"
        log_dir.mkdir(parents=True, exist_ok=True)
        return cls(story_key=story_key, story_file=story_file, log_dir=log_dir)

    @property
    def learnings_file(self) -> Path:
        return self.log_dir / LEARNINGS_FILE

    def log(self, message: str):
        """Append to run log."""
        timestamp = datetime.now().isoformat()
        with open(self.log_dir / "run.log", "a") as f:
            f.write(f"[{timestamp}] {message}\n")

    def log_command(self, command: str, exit_code: int, duration: float):
        """Log a command execution to commands.log."""
        timestamp = datetime.now().isoformat()
        with open(self.log_dir / "commands.log", "a") as f:
            f.write(f"[{timestamp}] exit={exit_code} duration={duration:.2f}s\n")
            f.write(f"  $ {command}\n\n")

    def record_stage(self, stage: str, status: str, duration: float, notes: str = ""):
        """Record stage result."""
        self.stages[stage] = {
            "status": status,
            "duration_seconds": duration,
            "notes": notes,
        }

    def write_result(self, status: str, reason: Optional[str] = None, message: Optional[str] = None):
        """Write result.json."""
        end_time = datetime.now()
        result = {
            "version": 1,
            "story": self.story_key,
            "status": status,
            "tasks": {
                "completed": self.tasks_completed,
                "total": self.tasks_total,
                "attempts": self.attempts,
            },
            "timestamps": {
                "started": self.start_time.isoformat(),
                "ended": end_time.isoformat(),
                "duration_seconds": (end_time - self.start_time).total_seconds(),
            },
            "stages": self.stages,
        }
        if reason:
            result["escalation"] = {"reason": reason, "message": message or ""}

        path = self.log_dir / RESULT_FILE
        validate_before_write(result, "story_result", path)
        path.write_text(json.dumps(result, indent=2))

    def cleanup(self) -> None:
        """Trim the log directory of a finished story.

        Failure learnings (with result.json) are kept when there are any;
        otherwise the whole directory goes.
        """
        if not self.log_dir.exists():
            return
        learnings = self.learnings_file
        if learnings.exists() and learnings.stat().st_size > 0:
            for path in self.log_dir.iterdir():
                if path.name in (LEARNINGS_FILE, RESULT_FILE):
                    continue
                if path.is_dir():
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    path.unlink(missing_ok=True)
            logger.info(f"Failure learnings saved to: {learnings}")
        else:
            shutil.rmtree(self.log_dir, ignore_errors=True)

    def remove_task_logs(self, task_id: str) -> None:
        """Delete the verbose per-attempt logs of a task that passed."""
        for path in self.log_dir.glob(f"{task_id}-*"):
            if path.suffix in (".log", ".md") and path.name != LEARNINGS_FILE:
                path.unlink(missing_ok=True)
        logger.debug(f"Cleaned up verbose logs for {task_id}")
