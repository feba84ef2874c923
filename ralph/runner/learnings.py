"""
Failure learning extraction.

After an attempt that did not complete its task, the worker is asked to
condense the attempt's transcript into a few bullet points. The result
is injected into the next attempt's objective and appended to
failure-learnings.md in the story's log directory. Summarization is best
effort: any failure degrades to a raw tail of the transcript.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from ralph.lib.prompts import render_prompt
from ralph.runner.context import LEARNINGS_FILE
from ralph.runner.supervisor import Attempt

logger = logging.getLogger(__name__)

ANALYSIS_TAIL_LINES = 200
FALLBACK_TAIL_LINES = 20
NO_LOG_MESSAGE = "No iteration log available for analysis."
FALLBACK_HEADER = "(Auto-analysis failed. Raw log tail:)"


def tail_lines(text: str, count: int) -> str:
    lines = text.rstrip("\n").splitlines()
    return "\n".join(lines[-count:])


class FailureLearningExtractor:
    """Turns failed attempts into corrective notes for the next attempt."""

    def __init__(self, worker, timeout: float, log_dir: Path, prompts_dir: Optional[Path] = None):
        self.worker = worker
        self.timeout = timeout
        self.log_dir = log_dir
        self.prompts_dir = prompts_dir

    @property
    def learnings_file(self) -> Path:
        return self.log_dir / LEARNINGS_FILE

    def _transcript(self, attempt: Attempt) -> str:
        if attempt.transcript:
            return attempt.transcript
        try:
            return attempt.log_file.read_text(errors="replace")
        except OSError:
            return ""

    def _summarize(self, attempt: Attempt, transcript: str) -> str:
        prompt = render_prompt(
            "learnings",
            self.prompts_dir,
            task_id=attempt.task_id,
            attempt=attempt.number,
            outcome=attempt.outcome.value,
            tail_lines=ANALYSIS_TAIL_LINES,
            log_tail=tail_lines(transcript, ANALYSIS_TAIL_LINES),
        )
        result = self.worker.attempt(prompt, stage="learnings", timeout=self.timeout)
        if result.timed_out or result.exit_code != 0:
            logger.warning(
                f"Failure analysis for {attempt.task_id} attempt {attempt.number} "
                f"unavailable (exit {result.exit_code}, timed out: {result.timed_out})"
            )
            return ""
        return result.transcript.strip()

    def extract(self, attempt: Attempt) -> str:
        """Return learnings for a failed attempt. Never raises."""
        transcript = self._transcript(attempt)
        if not transcript.strip():
            return NO_LOG_MESSAGE

        logger.info(f"Extracting failure learnings from attempt {attempt.number} of {attempt.task_id}")
        try:
            learnings = self._summarize(attempt, transcript)
        except Exception as e:
            logger.warning(f"Failure analysis for {attempt.task_id} raised: {e}")
            learnings = ""

        if not learnings:
            learnings = f"{FALLBACK_HEADER}\n{tail_lines(transcript, FALLBACK_TAIL_LINES)}"

        self._record(attempt, learnings)
        return learnings

    def _record(self, attempt: Attempt, learnings: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with open(self.learnings_file, "a") as f:
                f.write(f"\n### {attempt.task_id} attempt {attempt.number} - {stamp}\n")
                f.write(f"{learnings}\n")
        except OSError as e:
            logger.warning(f"Could not append to {self.learnings_file}: {e}")
