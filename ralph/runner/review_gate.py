"""
Adversarial review gate.

Each iteration runs the worker's review stage on a fresh context and
reads one tri-state signal from its output:

    CR-PASS     no High/Medium findings remain      -> pass (story done)
    CR-FIXED    findings were found and fixed       -> review again
    CR-BLOCKED  findings that cannot be auto-fixed  -> blocked (story review)

A fix is never graded by the context that applied it, so "fixed" can only
lead to another review iteration or, once the iteration budget is spent,
to "exhausted". There is no fixed -> pass transition.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from transitions import Machine

from ralph.lib.prompts import render_prompt
from ralph.lib.timeline import Timeline
from ralph.runner.budget import WallClockBudget

logger = logging.getLogger(__name__)

_SIGNAL_PATTERN = re.compile(r'<cr-signal>\s*(CR-[A-Z]+)\s*</cr-signal>')


class ReviewSignal(Enum):
    PASS = "CR-PASS"
    FIXED = "CR-FIXED"
    BLOCKED = "CR-BLOCKED"


def parse_signal(output: str) -> Optional[ReviewSignal]:
    """The last recognised <cr-signal> in output, or None."""
    for raw in reversed(_SIGNAL_PATTERN.findall(output or "")):
        for signal in ReviewSignal:
            if signal.value == raw:
                return signal
    return None


STATES = ["reviewing", "fixed", "pass", "blocked", "exhausted"]

TRANSITIONS = [
    {"trigger": "signal_pass", "source": "reviewing", "dest": "pass"},
    {"trigger": "signal_fixed", "source": "reviewing", "dest": "fixed"},
    {"trigger": "signal_blocked", "source": "reviewing", "dest": "blocked"},
    {"trigger": "rereview", "source": "fixed", "dest": "reviewing"},
    {"trigger": "exhaust", "source": "fixed", "dest": "exhausted"},
]

TERMINAL_STATES = {"pass", "blocked", "exhausted"}


class ReviewCycle:
    """State of one story's review loop."""

    def __init__(self, story_key: str, max_iterations: int):
        self.story_key = story_key
        self.max_iterations = max_iterations
        self.iteration = 0
        self.signals: list[Optional[ReviewSignal]] = []
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="reviewing",
            auto_transitions=False,
        )

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def record(self, signal: Optional[ReviewSignal]) -> None:
        """Apply one iteration's signal. Missing or unknown signals count as blocked."""
        self.signals.append(signal)
        if signal == ReviewSignal.PASS:
            self.signal_pass()
        elif signal == ReviewSignal.FIXED:
            self.signal_fixed()
            if self.iteration < self.max_iterations:
                self.rereview()
            else:
                self.exhaust()
        else:
            self.signal_blocked()


@dataclass
class ReviewOutcome:
    state: str
    iterations: int

    @property
    def passed(self) -> bool:
        return self.state == "pass"


class ReviewGate:
    """Runs review iterations until pass, blocked or the budget is spent."""

    def __init__(
        self,
        worker,
        max_iterations: int,
        timeout: float,
        backoff: float = 2,
        prompts_dir: Optional[Path] = None,
        timeline: Optional[Timeline] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.worker = worker
        self.max_iterations = max_iterations
        self.timeout = timeout
        self.backoff = backoff
        self.prompts_dir = prompts_dir
        self.timeline = timeline
        self.sleep = sleep

    def _event(self, event_type: str, summary: str, **details) -> None:
        if self.timeline is not None:
            self.timeline.add(event_type, summary, **details)

    def _prompt(self, story_key: str, story_file: Path, iteration: int) -> str:
        return render_prompt(
            "review",
            self.prompts_dir,
            story_file_path=story_file,
            story_key=story_key,
            cr_iteration=iteration,
            max_cr_iterations=self.max_iterations,
            date=date.today().isoformat(),
        )

    def run(
        self,
        story_key: str,
        story_file: Path,
        log_dir: Path,
        budget: Optional[WallClockBudget] = None,
    ) -> ReviewOutcome:
        """Review until a terminal state.

        Raises:
            Escalation: If the wall-clock budget runs out between iterations
        """
        cycle = ReviewCycle(story_key, self.max_iterations)
        self._event("review_started", f"Story {story_key}: review started")

        while not cycle.finished:
            if budget is not None:
                budget.check()
            cycle.iteration += 1
            logger.info(f"Review iteration {cycle.iteration} of {self.max_iterations} for {story_key}")

            timeout = self.timeout
            if budget is not None:
                timeout = min(timeout, max(budget.remaining(), 1))

            result = self.worker.attempt(
                self._prompt(story_key, story_file, cycle.iteration),
                stage="review",
                timeout=timeout,
                log_file=log_dir / f"review-{cycle.iteration}.log",
            )
            signal = None if result.timed_out else parse_signal(result.transcript)
            if signal is None:
                logger.warning(
                    f"Review iteration {cycle.iteration} emitted no recognised signal, treating as blocked"
                )

            cycle.record(signal)
            label = signal.value if signal else "no signal"
            self._event("review_signal", f"Story {story_key}: review {cycle.iteration} -> {label}")

            if cycle.state == "reviewing":
                logger.info("Issues were fixed, re-running review to verify")
                self.sleep(self.backoff)

        logger.info(f"Review of {story_key} finished: {cycle.state} after {cycle.iteration} iteration(s)")
        return ReviewOutcome(state=cycle.state, iterations=cycle.iteration)
