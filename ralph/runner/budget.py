"""Wall-clock budget for one story."""

import time
from typing import Callable

from ralph.runner.stages import Escalation, EscalationReason


class WallClockBudget:
    """Hard ceiling on elapsed time, restarted for every story."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.started = clock()

    def reset(self) -> None:
        self.started = self._clock()

    def elapsed(self) -> float:
        return self._clock() - self.started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    def exceeded(self) -> bool:
        return self.elapsed() >= self.seconds

    def check(self) -> None:
        """Raise Escalation(WALL_CLOCK) once the budget is spent."""
        if self.exceeded():
            raise Escalation(
                EscalationReason.WALL_CLOCK,
                f"Wall-clock timeout reached ({int(self.elapsed())}s >= {int(self.seconds)}s)",
            )
