"""
Task loop: drive one story's tasks to completion, strictly in order.

    selecting-task -> attempting -> {advancing | escalating}

For the current task the loop runs up to max_retries supervised
attempts. After every attempt the manifest is re-read: whatever the
worker claimed, the task counts as done only when the manifest says so,
or when all of its check commands pass (the loop then flips "passes"
itself). Between attempts the failure learnings of the last attempt are
injected into the objective.

The story is escalated when a task runs out of attempts, when the same
task keeps being declared complete without the manifest or workspace
changing (stuck), when too many distinct tasks have failed, or when the
story's wall-clock budget runs out.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ralph.lib.constants import COMPLETION_MARKER
from ralph.lib.manifest import MalformedManifest, NextTask, Task, extract_next_task, mark_task_passed
from ralph.lib.prompts import build_section, render_prompt
from ralph.lib.timeline import Timeline
from ralph.runner.budget import WallClockBudget
from ralph.runner.context import StoryContext
from ralph.runner.gates import CommandRunner, auto_verify
from ralph.runner.learnings import FailureLearningExtractor
from ralph.runner.stages import Escalation, EscalationReason
from ralph.runner.supervisor import Attempt, ExecutionSupervisor, stall_timeout_for

logger = logging.getLogger(__name__)


@dataclass
class TaskLoopResult:
    completed: int
    total: int
    attempts: int
    task_failures: int


class TaskLoop:
    """Runs the tasks of one story through the execution supervisor."""

    def __init__(
        self,
        ctx: StoryContext,
        config,
        supervisor: ExecutionSupervisor,
        learnings: FailureLearningExtractor,
        runner: CommandRunner,
        budget: WallClockBudget,
        timeline: Optional[Timeline] = None,
        fingerprint=None,
        on_phase: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ctx = ctx
        self.config = config
        self.supervisor = supervisor
        self.learnings = learnings
        self.runner = runner
        self.budget = budget
        self.timeline = timeline
        self.fingerprint = fingerprint
        self.on_phase = on_phase
        self.sleep = sleep

        self.attempts = 0
        self.task_failures = 0
        self._failed_tasks: set[str] = set()

    @property
    def story_key(self) -> str:
        return self.ctx.story_key

    @property
    def story_file(self) -> Path:
        return self.ctx.story_file

    def _event(self, event_type: str, summary: str, **details) -> None:
        if self.timeline is not None:
            self.timeline.add(event_type, summary, **details)

    def _phase(self, phase: str) -> None:
        if self.on_phase is not None:
            self.on_phase(phase)

    def _extract(self) -> NextTask:
        try:
            next_task = extract_next_task(self.story_file)
        except MalformedManifest as e:
            raise Escalation(EscalationReason.MALFORMED_MANIFEST, str(e)) from None
        self.ctx.tasks_completed = next_task.completed
        self.ctx.tasks_total = next_task.total
        return next_task

    def run(self) -> TaskLoopResult:
        """Run tasks until the manifest reports done.

        Raises:
            Escalation: The story must go to review
        """
        while True:
            self.budget.check()
            next_task = self._extract()

            if next_task.done:
                logger.info(f"All {next_task.total} tasks of {self.story_key} complete")
                self._event("tasks_complete", f"Story {self.story_key}: all tasks complete")
                self._phase("All tasks complete")
                return TaskLoopResult(
                    completed=next_task.completed,
                    total=next_task.total,
                    attempts=self.attempts,
                    task_failures=self.task_failures,
                )

            self._run_task(next_task)

    def objective(self, task: Task, next_task: NextTask, learnings: str = "") -> str:
        """Render the worker objective for one attempt at task."""
        prompts_dir = getattr(self.config, "prompts_dir", None)
        failure_section = ""
        if learnings:
            failure_section = render_prompt("failure_context", prompts_dir, learnings=learnings)

        if task.steps:
            steps = "\n".join(f"{i}. {step}" for i, step in enumerate(task.steps, 1))
        else:
            steps = "(No steps listed, follow the story file.)"

        checks = "\n".join(task.check_commands)
        checks_section = build_section(
            f"```bash\n{checks}\n```" if checks else None,
            "Task-specific checks (all must exit 0):",
        )

        return render_prompt(
            "task",
            prompts_dir,
            task_id=task.id,
            completed=next_task.completed,
            total=next_task.total,
            story_key=self.story_key,
            task_title=task.title,
            failure_section=failure_section,
            steps=steps,
            build_cmd=self.config.build_cmd,
            test_cmd=self.config.test_cmd,
            checks_section=checks_section,
            activity_log=self.config.activity_log,
            completion_marker=COMPLETION_MARKER,
        )

    def _signature(self, task_id: str) -> str:
        """What the workspace and manifest look like right after a declared completion."""
        digest = hashlib.md5(task_id.encode())
        try:
            digest.update(self.story_file.read_bytes())
        except OSError:
            pass
        if self.fingerprint is not None:
            digest.update(self.fingerprint.sample().encode())
        return digest.hexdigest()

    def _task_passed(self, task: Task, how: str) -> None:
        self.ctx.remove_task_logs(task.id)
        if how == "verified":
            logger.info(f"{task.id} auto-verified and marked passing")
            self._event("task_verified", f"Task {self.story_key}/{task.id} auto-verified")
            self._phase(f"Task {task.id} auto-verified")
        else:
            logger.info(f"{task.id} passed")
            self._event("task_passed", f"Task {self.story_key}/{task.id} passed")
            self._phase(f"Task {task.id} passed")

    def _advanced(self, task: Task) -> bool:
        after = self._extract()
        return after.done or after.task.id != task.id

    def _auto_verify(self, task: Task) -> bool:
        if not task.check_commands:
            logger.info(f"No checkCommands for {task.id}, cannot auto-verify")
            return False
        logger.info(f"Auto-verifying {task.id} via checkCommands")
        if not auto_verify(task.check_commands, self.runner):
            return False
        try:
            mark_task_passed(self.story_file, task.id)
        except MalformedManifest as e:
            raise Escalation(EscalationReason.MALFORMED_MANIFEST, str(e)) from None
        return True

    def _record_failure(self, task: Task) -> None:
        if task.id in self._failed_tasks:
            return
        self._failed_tasks.add(task.id)
        self.task_failures += 1
        logger.info(f"Task failures for {self.story_key}: {self.task_failures}/{self.config.max_task_failures}")

    def _attempt(self, task: Task, next_task: NextTask, number: int, learnings: str) -> Attempt:
        objective = self.objective(task, next_task, learnings)
        (self.ctx.log_dir / f"{task.id}-attempt-{number}-prompt.md").write_text(objective)

        self.attempts += 1
        self.ctx.attempts += 1
        self.ctx.log(f"{task.id} attempt {number}/{self.config.max_retries}")
        return self.supervisor.run(
            objective,
            [self.story_file, self.config.activity_log],
            task.id,
            number,
            self.ctx.log_dir / f"{task.id}-attempt-{number}.log",
            stall_timeout=stall_timeout_for(task.title, self.config.stall_timeout, self.config.test_stall_timeout),
            iteration_timeout=min(self.config.iteration_timeout, max(self.budget.remaining(), 1)),
        )

    def _run_task(self, next_task: NextTask) -> None:
        task = next_task.task
        logger.info(f"Task: {task.id} ({next_task.completed}/{next_task.total}) {task.title}")
        self._event("task_started", f"Task {self.story_key}/{task.id} started", task_id=task.id)
        self._phase(f"Task {task.id} ({next_task.completed}/{next_task.total})")

        learnings = ""
        last_signature = None
        max_retries = self.config.max_retries

        for number in range(1, max_retries + 1):
            self.budget.check()
            attempt = self._attempt(task, next_task, number, learnings)

            if self._advanced(task):
                self._task_passed(task, "passed")
                return
            if self._auto_verify(task):
                self._task_passed(task, "verified")
                return

            self._record_failure(task)
            logger.warning(f"{task.id} still not passing after attempt {number} ({attempt.outcome.value})")
            self._event(
                "attempt_failed",
                f"Task {self.story_key}/{task.id} failed attempt {number} ({attempt.outcome.value})",
                task_id=task.id, attempt=number, outcome=attempt.outcome.value,
            )

            if attempt.declared_complete:
                signature = self._signature(task.id)
                if signature == last_signature:
                    message = (
                        f"{task.id} declared complete twice with no change to the manifest "
                        f"or workspace"
                    )
                    logger.error(f"Stuck loop detected: {message}")
                    self._event("stuck", f"Stuck loop detected on {task.id}")
                    raise Escalation(EscalationReason.STUCK, message)
                last_signature = signature
            else:
                last_signature = None

            if self.task_failures >= self.config.max_task_failures:
                message = f"Too many task failures ({self.task_failures})"
                logger.error(message)
                raise Escalation(EscalationReason.FAILURE_CAP, message)

            self.budget.check()
            learnings = self.learnings.extract(attempt)
            if number < max_retries:
                self.sleep(self.config.retry_backoff)

        message = f"{task.id} failed after {max_retries} attempts (task failures: {self.task_failures})"
        logger.error(message)
        self._event("task_failed", f"Task {self.story_key}/{task.id} FAILED after {max_retries} attempts")
        raise Escalation(EscalationReason.TASK_FAILED, message)
