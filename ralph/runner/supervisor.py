"""
Execution supervisor: one bounded worker attempt against one task.

The worker runs as its own process while a watchdog thread samples the
workspace fingerprint every poll interval. The attempt ends when the
worker exits, when the wall-clock budget for the attempt is spent
(timeout), or when the workspace has not changed for the stall budget
after the grace period (stalled). A terminated attempt is never trusted,
whatever the transcript says.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from ralph.lib.constants import COMPLETION_MARKER

logger = logging.getLogger(__name__)

TEST_TASK_PATTERN = re.compile(r'test|integration|unit', re.IGNORECASE)


class AttemptOutcome(Enum):
    PASSED = "passed"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    FAILED = "failed"


@dataclass
class Attempt:
    """Record of one supervised worker invocation."""
    task_id: str
    number: int
    started: datetime
    outcome: AttemptOutcome
    duration: float
    transcript: str
    log_file: Path
    exit_code: Optional[int] = None

    @property
    def declared_complete(self) -> bool:
        return self.outcome == AttemptOutcome.PASSED


@dataclass
class SupervisorLimits:
    iteration_timeout: float = 480
    stall_timeout: float = 180
    stall_grace: float = 60
    poll_interval: float = 5
    progress_interval: float = 30
    kill_grace: float = 10


class Fingerprint(Protocol):
    def reset(self) -> None: ...

    def sample(self) -> str: ...


def stall_timeout_for(title: str, default: float, test_timeout: float) -> float:
    """Test-writing tasks read a lot before writing anything; give them longer."""
    if TEST_TASK_PATTERN.search(title):
        return max(default, test_timeout)
    return default


class _Watchdog:
    """Polls a running worker and terminates it on timeout or stall."""

    def __init__(self, process, limits: SupervisorLimits, iteration_timeout: float,
                 stall_timeout: float, fingerprint: Fingerprint, clock: Callable[[], float]):
        self.process = process
        self.limits = limits
        self.iteration_timeout = iteration_timeout
        self.stall_timeout = stall_timeout
        self.fingerprint = fingerprint
        self.clock = clock
        self.stop = threading.Event()
        self.verdict: Optional[AttemptOutcome] = None

    def run(self) -> None:
        start = self.clock()
        last_change = start
        last_progress = start
        last_fp = self.fingerprint.sample()

        while not self.stop.wait(self.limits.poll_interval):
            if self.process.poll() is not None:
                return

            now = self.clock()
            elapsed = now - start

            if elapsed >= self.iteration_timeout:
                logger.warning(f"Iteration timeout ({self.iteration_timeout:.0f}s), terminating worker")
                self.verdict = AttemptOutcome.TIMEOUT
                self.process.terminate(self.limits.kill_grace)
                return

            current = self.fingerprint.sample()
            if current != last_fp:
                last_fp = current
                last_change = now

            idle = now - last_change
            if elapsed > self.limits.stall_grace and idle >= self.stall_timeout:
                logger.warning(f"Stall detected, no workspace changes for {idle:.0f}s, terminating worker")
                self.verdict = AttemptOutcome.STALLED
                self.process.terminate(self.limits.kill_grace)
                return

            if now - last_progress >= self.limits.progress_interval:
                last_progress = now
                lines = self.process.read_transcript().count("\n")
                logger.info(
                    f"[{elapsed:.0f}s] output: {lines} lines | "
                    f"idle: {idle:.0f}s/{self.stall_timeout:.0f}s"
                )


class ExecutionSupervisor:
    """Runs exactly one bounded attempt of the worker."""

    def __init__(
        self,
        worker,
        limits: SupervisorLimits,
        fingerprint: Fingerprint,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.worker = worker
        self.limits = limits
        self.fingerprint = fingerprint
        self.clock = clock

    def run(
        self,
        objective: str,
        context_refs: Sequence[Path],
        task_id: str,
        number: int,
        log_file: Path,
        stall_timeout: Optional[float] = None,
        iteration_timeout: Optional[float] = None,
    ) -> Attempt:
        """Run one attempt and classify its outcome.

        Args:
            stall_timeout: Override of the idle budget (test tasks)
            iteration_timeout: Override of the attempt budget, used to keep an
                attempt inside the remaining story budget
        """
        started = datetime.now()
        start = self.clock()
        iteration_timeout = self.limits.iteration_timeout if iteration_timeout is None else iteration_timeout
        stall_timeout = self.limits.stall_timeout if stall_timeout is None else stall_timeout

        logger.info(
            f"Attempt {number} for {task_id}: timeout {iteration_timeout:.0f}s, "
            f"stall {stall_timeout:.0f}s"
        )

        self.fingerprint.reset()
        try:
            process = self.worker.spawn(objective, context_refs, log_file)
        except OSError as e:
            logger.error(f"Failed to start worker: {e}")
            log_file.write_text(f"Failed to start worker: {e}\n")
            return Attempt(
                task_id=task_id, number=number, started=started, outcome=AttemptOutcome.FAILED,
                duration=self.clock() - start, transcript=str(e), log_file=log_file,
            )

        watchdog = _Watchdog(process, self.limits, iteration_timeout, stall_timeout,
                             self.fingerprint, self.clock)
        thread = threading.Thread(target=watchdog.run, name=f"watchdog-{task_id}", daemon=True)
        thread.start()

        try:
            exit_code = process.wait()
        except BaseException:
            process.terminate(self.limits.kill_grace)
            raise
        finally:
            watchdog.stop.set()
            thread.join()
            process.close()

        transcript = process.read_transcript()
        if watchdog.verdict is not None:
            outcome = watchdog.verdict
        elif COMPLETION_MARKER in transcript:
            outcome = AttemptOutcome.PASSED
        else:
            outcome = AttemptOutcome.FAILED

        duration = self.clock() - start
        logger.info(f"Attempt {number} for {task_id}: {outcome.value} after {duration:.0f}s (exit {exit_code})")

        return Attempt(
            task_id=task_id,
            number=number,
            started=started,
            outcome=outcome,
            duration=duration,
            transcript=transcript,
            log_file=log_file,
            exit_code=exit_code,
        )
