"""
Stage execution framework for the story pipeline.

Every phase of a story (tasks, validation, review, epic check) runs as a
stage. A stage either returns normally, returns StageResult.SKIPPED, or
raises Escalation when the story has to go to review.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ralph.runner.context import StoryContext


class StageResult(Enum):
    PASSED = "passed"
    SKIPPED = "skipped"


class EscalationReason(Enum):
    """Why a story was sent to review. Recorded in the activity log and result.json."""
    TASK_FAILED = "task_failed"
    STUCK = "stuck"
    FAILURE_CAP = "failure_cap"
    MALFORMED_MANIFEST = "malformed_manifest"
    MISSING_ARTIFACT = "missing_artifact"
    VALIDATION_FAILED = "validation_failed"
    REVIEW_BLOCKED = "review_blocked"
    REVIEW_EXHAUSTED = "review_exhausted"
    WALL_CLOCK = "wall_clock"
    INTERNAL_ERROR = "internal_error"


@dataclass
class StageError(Exception):
    """A stage failed unexpectedly."""
    stage: str
    message: str

    def __str__(self):
        return f"[{self.stage}] {self.message}"


@dataclass
class Escalation(Exception):
    """The current story must be escalated to review."""
    reason: EscalationReason
    message: str
    stage: Optional[str] = None

    def __str__(self):
        return f"{self.reason.value}: {self.message}"


def run_stage(ctx: StoryContext, stage_name: str, stage_fn: Callable[[StoryContext], Optional[StageResult]]) -> StageResult:
    """
    Run a single stage with timing and error handling.

    Returns StageResult and updates ctx.stages. Escalation propagates
    unchanged; any other exception becomes StageError.
    """
    ctx.log(f"Starting stage: {stage_name}")
    start = time.time()

    try:
        result = stage_fn(ctx)
        duration = time.time() - start
        if result == StageResult.SKIPPED:
            ctx.record_stage(stage_name, "skipped", duration)
            ctx.log(f"Stage {stage_name} skipped")
            return StageResult.SKIPPED
        ctx.record_stage(stage_name, "passed", duration)
        ctx.log(f"Stage {stage_name} passed ({duration:.2f}s)")
        return StageResult.PASSED

    except Escalation as e:
        duration = time.time() - start
        if e.stage is None:
            e.stage = stage_name
        ctx.record_stage(stage_name, "escalated", duration, str(e))
        ctx.log(f"Stage {stage_name} escalated: {e}")
        raise

    except StageError as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, e.message)
        ctx.log(f"Stage {stage_name} failed: {e.message}")
        raise

    except Exception as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, str(e))
        ctx.log(f"Stage {stage_name} error: {e}")
        raise StageError(stage_name, str(e)) from e
