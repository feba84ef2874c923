"""
Command gates: task auto-verification, story validation and epic checks.

All three reduce to "run shell commands in the workspace, stop at the
first non-zero exit". Output goes to the story's run log; only the exit
status decides.
"""

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from ralph.lib.ledger import LedgerKeyError, StatusLedger, epic_num_from_key
from ralph.lib.manifest import validation_commands
from ralph.lib.timeline import Timeline
from ralph.runner.context import StoryContext
from ralph.workflow.state_machine import Lifecycle, transition

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 50


@dataclass
class CommandResult:
    command: str
    exit_code: int
    output: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = OUTPUT_TAIL_LINES) -> str:
        return "\n".join(self.output.rstrip().splitlines()[-lines:])


def run_command(command: str, cwd: Path, timeout: Optional[float] = None) -> CommandResult:
    """Run a shell command with stderr folded into stdout. Never raises."""
    start = time.time()
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
        exit_code, output = result.returncode, result.stdout or ""
    except subprocess.TimeoutExpired as e:
        partial = e.stdout or ""
        if isinstance(partial, bytes):
            partial = partial.decode(errors="replace")
        exit_code, output = -1, f"{partial}\n[timed out after {timeout}s]"
    except OSError as e:
        exit_code, output = -1, str(e)
    return CommandResult(command=command, exit_code=exit_code, output=output, duration=time.time() - start)


class CommandRunner:
    """Runs gate commands in the workspace and logs them to the story context."""

    def __init__(self, cwd: Path, timeout: Optional[float], ctx: Optional[StoryContext] = None, budget=None):
        self.cwd = cwd
        self.timeout = timeout
        self.ctx = ctx
        self.budget = budget

    def _timeout(self) -> Optional[float]:
        """The command timeout, never past the end of the story budget."""
        if self.budget is None:
            return self.timeout
        cap = max(self.budget.remaining(), 1)
        return cap if self.timeout is None else min(self.timeout, cap)

    def run(self, command: str) -> CommandResult:
        logger.info(f"Running: {command}")
        result = run_command(command, self.cwd, self._timeout())
        if self.ctx is not None:
            self.ctx.log_command(command, result.exit_code, result.duration)
            if not result.ok:
                self.ctx.log(f"Command failed (exit {result.exit_code}): {command}\n{result.tail()}")
        if result.ok:
            logger.debug(f"Passed ({result.duration:.1f}s): {command}")
        else:
            logger.warning(f"Failed (exit {result.exit_code}): {command}")
        return result


def run_in_order(commands: Sequence[str], runner: CommandRunner) -> Optional[CommandResult]:
    """Run commands in order. Returns the first failing result, or None if all passed."""
    for command in commands:
        result = runner.run(command)
        if not result.ok:
            return result
    return None


def auto_verify(commands: Sequence[str], runner: CommandRunner) -> bool:
    """True if there is at least one check command and every one exits 0."""
    if not commands:
        return False
    return run_in_order(commands, runner) is None


@dataclass
class GateResult:
    passed: bool
    failed: Optional[CommandResult] = None
    skipped: bool = False

    @property
    def message(self) -> str:
        if self.passed:
            return "skipped" if self.skipped else "passed"
        return f"'{self.failed.command}' exited {self.failed.exit_code}"


class ValidationGate:
    """Whole-project build, then tests, then story-declared validation commands."""

    def __init__(self, build_cmd: str, test_cmd: str, skip: bool = False):
        self.build_cmd = build_cmd
        self.test_cmd = test_cmd
        self.skip = skip

    def commands_for(self, story_file: Path) -> list[str]:
        commands = [c for c in (self.build_cmd, self.test_cmd) if c]
        return commands + validation_commands(story_file)

    def run(self, story_file: Path, runner: CommandRunner) -> GateResult:
        if self.skip:
            logger.info("Skipping story validation")
            return GateResult(passed=True, skipped=True)
        failed = run_in_order(self.commands_for(story_file), runner)
        return GateResult(passed=failed is None, failed=failed)


class EpicCheck(Enum):
    NOT_READY = "not_ready"
    ALREADY_DONE = "already_done"
    IN_REVIEW = "in_review"
    PROMOTED = "promoted"
    FAILED = "failed"
    SKIPPED = "skipped"


class EpicCompletionChecker:
    """Promotes an epic to done once all of its stories are done and it validates.

    A failed epic validation marks the epic review. It is reported, never
    raised: the pipeline carries on with the next story either way.
    """

    def __init__(
        self,
        ledger: StatusLedger,
        gate: ValidationGate,
        validation_script_for: Callable[[int], Path],
        timeline: Optional[Timeline] = None,
    ):
        self.ledger = ledger
        self.gate = gate
        self.validation_script_for = validation_script_for
        self.timeline = timeline

    def _event(self, event_type: str, summary: str) -> None:
        if self.timeline is not None:
            self.timeline.add(event_type, summary)

    def _set_epic(self, epic_num: int, state: Lifecycle, reason: str) -> None:
        try:
            transition(self.ledger, f"epic-{epic_num}", state, reason=reason, kind="epic")
        except LedgerKeyError:
            logger.warning(f"Ledger has no epic-{epic_num} entry, epic status not recorded")

    def check(self, story_key: str, runner: CommandRunner) -> EpicCheck:
        if self.gate.skip:
            return EpicCheck.SKIPPED

        epic_num = epic_num_from_key(story_key)
        if epic_num is None:
            return EpicCheck.NOT_READY

        epic = self.ledger.epic_stories(epic_num)
        if not epic.all_done:
            remaining = sum(1 for s in epic.stories if s.status != Lifecycle.DONE.value)
            logger.info(f"Epic {epic_num} not yet complete ({remaining} stories remaining)")
            self._event("epic_pending", f"Epic {epic_num}: not all stories done yet")
            return EpicCheck.NOT_READY

        if epic.epic_status == Lifecycle.DONE.value:
            logger.info(f"Epic {epic_num} already marked done")
            return EpicCheck.ALREADY_DONE
        if epic.epic_status == Lifecycle.REVIEW.value:
            logger.warning(f"Epic {epic_num} is in review, leaving it for a human")
            return EpicCheck.IN_REVIEW

        logger.info(f"All stories in epic {epic_num} are done, running epic validation")
        self._event("epic_validating", f"Epic {epic_num}: all stories done, validating")

        commands = [c for c in (self.gate.build_cmd, self.gate.test_cmd) if c]
        script = self.validation_script_for(epic_num)
        if script.is_file():
            commands.append(f"bash {shlex.quote(str(script))}")

        failed = run_in_order(commands, runner)
        if failed is not None:
            logger.error(f"Epic {epic_num} validation failed: {failed.command} (exit {failed.exit_code})")
            self._event("epic_failed", f"Epic {epic_num}: validation FAILED ({failed.command})")
            self._set_epic(epic_num, Lifecycle.REVIEW, "epic validation failed")
            return EpicCheck.FAILED

        self._set_epic(epic_num, Lifecycle.DONE, "epic validation passed")
        self._event("epic_done", f"Epic {epic_num}: DONE")
        return EpicCheck.PROMOTED
