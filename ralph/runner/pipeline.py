"""
Chain controller: the top-level story pipeline.

Per story:

    discover -> (generate) -> ready-for-dev -> in-progress
      -> tasks -> validation -> review -> done -> epic check

Every failure of a story ends in an Escalation: the story goes to review
with a durable note in the activity log, and the pipeline stops, since
later stories may depend on the one that failed. Epic validation
failures are the exception; they are recorded but never stop the chain.
"""

import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ralph.git import count_changed_files
from ralph.lib.activity import append_activity, ensure_activity_log
from ralph.lib.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_ESCALATED,
    EXIT_MISSING_ARTIFACT,
    EXIT_OK,
)
from ralph.lib.ledger import LedgerError, StatusLedger
from ralph.lib.progress import ProgressReport, format_duration
from ralph.lib.timeline import Timeline, TimelineEvent, format_event_oneline
from ralph.notifications import notify_escalated, notify_pipeline_complete, notify_story_done
from ralph.runner.budget import WallClockBudget
from ralph.runner.context import StoryContext
from ralph.runner.discovery import DiscoveredStory, Discovery, MissingArtifact, StoryGenerator
from ralph.runner.fingerprint import WorkspaceFingerprint
from ralph.runner.gates import CommandRunner, EpicCheck, EpicCompletionChecker, ValidationGate
from ralph.runner.learnings import FailureLearningExtractor
from ralph.runner.review_gate import ReviewGate
from ralph.runner.stages import Escalation, EscalationReason, StageError, StageResult, run_stage
from ralph.runner.supervisor import ExecutionSupervisor, SupervisorLimits
from ralph.runner.task_loop import TaskLoop
from ralph.workflow.state_machine import InvalidTransition, Lifecycle, transition

logger = logging.getLogger(__name__)


@dataclass
class StoryOutcome:
    story_key: str
    status: str
    reason: Optional[EscalationReason] = None
    message: str = ""

    @property
    def done(self) -> bool:
        return self.status == Lifecycle.DONE.value


def echo_event(event: TimelineEvent) -> None:
    print(format_event_oneline(event, use_color=sys.stdout.isatty()), flush=True)


class ChainController:
    """Runs stories one after another until the backlog is empty or one escalates."""

    def __init__(
        self,
        config,
        ledger: StatusLedger,
        worker,
        supervisor: Optional[ExecutionSupervisor] = None,
        timeline: Optional[Timeline] = None,
        explicit_story: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.ledger = ledger
        self.worker = worker
        self.explicit_story = explicit_story
        self.sleep = sleep
        self.clock = clock

        self.timeline = timeline if timeline is not None else Timeline(listener=echo_event)
        self.progress = ProgressReport(config.progress_report, ledger, config.story_file, self.timeline)
        self.budget = WallClockBudget(config.wall_clock_timeout, clock)
        self.fingerprint = WorkspaceFingerprint(config.project_root, config.watch_paths)
        self.supervisor = supervisor or ExecutionSupervisor(
            worker,
            SupervisorLimits(
                iteration_timeout=config.iteration_timeout,
                stall_timeout=config.stall_timeout,
                stall_grace=config.stall_grace,
                poll_interval=config.poll_interval,
            ),
            self.fingerprint,
        )
        self.discovery = Discovery(
            ledger, config, StoryGenerator(worker, ledger, config, self.timeline),
        )
        self.validation_gate = ValidationGate(config.build_cmd, config.test_cmd, skip=config.skip_validation)
        self.review_gate = ReviewGate(
            worker,
            config.max_cr_iterations,
            timeout=config.iteration_timeout,
            backoff=config.retry_backoff,
            prompts_dir=config.prompts_dir,
            timeline=self.timeline,
            sleep=sleep,
        )
        self.epic_checker = EpicCompletionChecker(
            ledger, self.validation_gate, config.epic_validation_script, self.timeline,
        )

        self.outcomes: list[StoryOutcome] = []

    @property
    def stories_completed(self) -> int:
        return sum(1 for o in self.outcomes if o.done)

    # === Run ===

    def run(self, process_story: Optional[Callable[[DiscoveredStory], StoryOutcome]] = None) -> int:
        """Run the pipeline. Returns a CLI exit code."""
        process = process_story or self.process_story
        started = self.clock()

        if not self.ledger.exists():
            logger.error(f"Ledger not found: {self.ledger.path}")
            return EXIT_CONFIG_ERROR

        ensure_activity_log(self.config.activity_log)
        self.progress.update(None, "Starting")

        try:
            if self.explicit_story:
                code = self._run_explicit(process)
            else:
                code = self._run_chain(process)
        except MissingArtifact as e:
            logger.error(f"{e}. Stopping.")
            code = EXIT_MISSING_ARTIFACT
        except LedgerError as e:
            logger.error(f"Ledger error: {e}")
            code = EXIT_CONFIG_ERROR

        runtime = format_duration(self.clock() - started)
        completed = self.stories_completed
        self.timeline.add("pipeline_done", f"Pipeline complete ({completed} stories)")
        self.progress.update(None, f"Pipeline Complete ({completed} stories)")
        print(f"\nStories completed: {completed}")
        print(f"Total runtime:     {runtime}")
        notify_pipeline_complete(completed, runtime)
        return code

    def _run_explicit(self, process) -> int:
        story = self.discovery.explicit(self.explicit_story)
        if story.status == Lifecycle.DONE.value:
            logger.info(f"Story {story.key} is already done")
            return EXIT_OK
        if story.status == Lifecycle.REVIEW.value:
            logger.warning(f"Story {story.key} is in review and needs a human")
            return EXIT_ESCALATED
        outcome = process(story)
        return EXIT_OK if outcome.done else EXIT_ESCALATED

    def _run_chain(self, process) -> int:
        while True:
            story = self.discovery.next_unit()
            if story is None:
                return EXIT_OK

            outcome = process(story)
            if not outcome.done:
                return EXIT_ESCALATED

            if not self.config.chain_mode:
                logger.info("Single-story mode, stopping after story completion")
                return EXIT_OK

            logger.info("Story complete, chaining to next")
            self.sleep(self.config.chain_pause)

    # === One story ===

    def process_story(self, story: DiscoveredStory) -> StoryOutcome:
        """Drive one story to done or review."""
        self.budget.reset()
        ctx = StoryContext.create(self.config.log_root, story.key, story.story_file)
        runner = CommandRunner(self.config.project_root, self.config.command_timeout, ctx, self.budget)

        logger.info(f"Story: {story.key} (file {story.story_file}, logs {ctx.log_dir})")
        self.timeline.add("story_started", f"Story {story.key} started")
        self.progress.update(story.key, "Task Execution")

        try:
            run_stage(ctx, "tasks", lambda c: self._stage_tasks(c, story, runner))
            run_stage(ctx, "validation", lambda c: self._stage_validation(c, story, runner))
            run_stage(ctx, "review", lambda c: self._stage_review(c, story))
        except Escalation as e:
            return self._escalate(ctx, story, e)
        except StageError as e:
            return self._escalate(ctx, story, Escalation(EscalationReason.INTERNAL_ERROR, e.message, e.stage))

        try:
            run_stage(ctx, "epic", lambda c: self._stage_epic(c, story))
        except StageError as e:
            logger.warning(f"Epic check for {story.key} failed: {e}")

        ctx.write_result(Lifecycle.DONE.value)
        ctx.cleanup()
        notify_story_done(story.key)
        outcome = StoryOutcome(story.key, Lifecycle.DONE.value)
        self.outcomes.append(outcome)
        return outcome

    def _start(self, story: DiscoveredStory) -> None:
        status = self.ledger.get(story.key)
        if status == Lifecycle.IN_PROGRESS.value:
            logger.info(f"Resuming {story.key} (already in-progress)")
            return
        transition(self.ledger, story.key, Lifecycle.IN_PROGRESS, reason="pipeline start",
                   story_file=story.story_file)

    def _stage_tasks(self, ctx: StoryContext, story: DiscoveredStory, runner: CommandRunner):
        if not story.story_file.exists():
            raise Escalation(EscalationReason.MISSING_ARTIFACT, f"Story file not found: {story.story_file}")
        self._start(story)
        learnings = FailureLearningExtractor(
            self.worker, self.config.learnings_timeout, ctx.log_dir, self.config.prompts_dir,
        )
        loop = TaskLoop(
            ctx,
            self.config,
            self.supervisor,
            learnings,
            runner,
            self.budget,
            timeline=self.timeline,
            fingerprint=self.fingerprint,
            on_phase=lambda phase: self.progress.update(story.key, phase),
            sleep=self.sleep,
        )
        result = loop.run()
        ctx.log(f"Tasks complete: {result.completed}/{result.total} in {result.attempts} attempts")

    def _stage_validation(self, ctx: StoryContext, story: DiscoveredStory, runner: CommandRunner):
        self.budget.check()
        if self.validation_gate.skip:
            logger.info("Skipping story validation")
            return StageResult.SKIPPED

        self.timeline.add("validation_started", f"Story {story.key}: validation started")
        self.progress.update(story.key, "Story Validation")
        result = self.validation_gate.run(story.story_file, runner)
        if not result.passed:
            self.budget.check()
            self.timeline.add("validation_failed", f"Story {story.key}: validation FAILED")
            raise Escalation(EscalationReason.VALIDATION_FAILED, f"Story validation failed: {result.message}")

        self.timeline.add("validation_passed", f"Story {story.key}: validation passed")
        self.progress.update(story.key, "Story Validation Passed")

    def _stage_review(self, ctx: StoryContext, story: DiscoveredStory):
        self.budget.check()
        self.progress.update(story.key, "Code Review")
        outcome = self.review_gate.run(story.key, story.story_file, ctx.log_dir, self.budget)

        if outcome.state == "blocked":
            self.timeline.add("review_failed", f"Story {story.key}: review BLOCKED")
            raise Escalation(
                EscalationReason.REVIEW_BLOCKED,
                f"Review blocked on iteration {outcome.iterations}, human intervention needed",
            )
        if not outcome.passed:
            self.timeline.add("review_failed", f"Story {story.key}: review iterations exhausted")
            raise Escalation(
                EscalationReason.REVIEW_EXHAUSTED,
                f"Review still fixing issues after {outcome.iterations} iterations",
            )

        transition(self.ledger, story.key, Lifecycle.DONE, reason="review passed", story_file=story.story_file)
        logger.info(f"Story {story.key} review passed after {outcome.iterations} iteration(s)")
        self.timeline.add("review_passed", f"Story {story.key}: review passed, marked done")
        self.progress.update(story.key, "Review Passed, Story Done")

    def _stage_epic(self, ctx: StoryContext, story: DiscoveredStory):
        # the story is already done, so its budget no longer applies
        runner = CommandRunner(self.config.project_root, self.config.command_timeout, ctx)
        result = self.epic_checker.check(story.key, runner)
        ctx.log(f"Epic check: {result.value}")
        if result == EpicCheck.SKIPPED:
            return StageResult.SKIPPED

    def _escalate(self, ctx: StoryContext, story: DiscoveredStory, escalation: Escalation) -> StoryOutcome:
        reason = escalation.reason
        logger.error(f"Story {story.key} escalated to review ({reason.value}): {escalation.message}")

        try:
            transition(self.ledger, story.key, Lifecycle.REVIEW, reason=reason.value, story_file=story.story_file)
        except (InvalidTransition, LedgerError) as e:
            logger.error(f"Could not mark {story.key} review: {e}")

        changed = count_changed_files(self.config.project_root)
        append_activity(
            self.config.activity_log,
            f"{story.key} escalated to review ({reason.value})",
            f"- Stage: {escalation.stage or 'unknown'}\n"
            f"- Reason: {escalation.message}\n"
            f"- Uncommitted files: {changed}\n"
            f"- Logs: {ctx.log_dir}",
        )

        if reason == EscalationReason.WALL_CLOCK:
            self.timeline.add("wall_clock", f"Story {story.key}: wall-clock budget exhausted")
        self.timeline.add("escalated", f"Story {story.key}: escalated to review ({reason.value})")
        self.progress.update(story.key, f"Escalated: {reason.value}")

        ctx.write_result(Lifecycle.REVIEW.value, reason.value, escalation.message)
        notify_escalated(story.key, reason.value, escalation.message)

        outcome = StoryOutcome(story.key, Lifecycle.REVIEW.value, reason, escalation.message)
        self.outcomes.append(outcome)
        return outcome
