"""
Timeline of pipeline events.

The chain controller records discrete events (task started, review
signal, epic promoted, ...) here. The same events feed the console
output and the Timeline section of the progress report.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional


@dataclass
class TimelineEvent:
    """A single event in the pipeline timeline."""
    timestamp: datetime
    event_type: str
    summary: str
    details: dict = field(default_factory=dict)

    def __lt__(self, other):
        """Sort by timestamp (oldest first)."""
        return self.timestamp < other.timestamp


# ANSI color codes
COLORS = {
    "reset": "\033[0m",
    "dim": "\033[2m",
    "bold": "\033[1m",
    "green": "\033[32m",
    "red": "\033[31m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "cyan": "\033[36m",
}

EVENT_COLORS = {
    "story_started": "blue",
    "task_started": "cyan",
    "task_passed": "green",
    "task_verified": "green",
    "attempt_failed": "yellow",
    "task_failed": "red",
    "stuck": "red",
    "tasks_complete": "green",
    "validation_started": "cyan",
    "validation_passed": "green",
    "validation_failed": "red",
    "review_started": "cyan",
    "review_signal": "yellow",
    "review_passed": "green",
    "review_failed": "red",
    "epic_pending": "dim",
    "epic_validating": "cyan",
    "epic_done": "green",
    "epic_failed": "red",
    "generation_started": "cyan",
    "generated": "green",
    "generation_failed": "red",
    "escalated": "red",
    "wall_clock": "red",
    "pipeline_done": "blue",
}

EVENT_SYMBOLS = {
    "story_started": ">",
    "task_started": "+",
    "task_passed": "*",
    "task_verified": "*",
    "attempt_failed": "x",
    "task_failed": "X",
    "stuck": "!",
    "tasks_complete": "*",
    "validation_started": "+",
    "validation_passed": "*",
    "validation_failed": "X",
    "review_started": "+",
    "review_signal": "?",
    "review_passed": "*",
    "review_failed": "X",
    "epic_pending": "-",
    "epic_validating": "+",
    "epic_done": "E",
    "epic_failed": "!",
    "generation_started": "+",
    "generated": "*",
    "generation_failed": "X",
    "escalated": "!",
    "wall_clock": "!",
    "pipeline_done": "#",
}


def format_event_oneline(event: TimelineEvent, use_color: bool = True) -> str:
    """Format event as a single console line: "HH:MM:SS * summary"."""
    time_str = event.timestamp.strftime("%H:%M:%S")
    symbol = EVENT_SYMBOLS.get(event.event_type, "*")

    if not use_color:
        return f"{time_str} {symbol} {event.summary}"

    color = COLORS.get(EVENT_COLORS.get(event.event_type, "reset"), "")
    reset = COLORS["reset"]
    dim = COLORS["dim"]
    return f"{dim}{time_str}{reset} {color}{symbol} {event.summary}{reset}"


class Timeline:
    """Append-only, in-memory event log for one pipeline run."""

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        listener: Optional[Callable[[TimelineEvent], None]] = None,
    ):
        self.events: list[TimelineEvent] = []
        self._clock = clock
        self._listener = listener

    def add(self, event_type: str, summary: str, **details) -> TimelineEvent:
        event = TimelineEvent(
            timestamp=self._clock(),
            event_type=event_type,
            summary=summary,
            details=details,
        )
        self.events.append(event)
        if self._listener:
            self._listener(event)
        return event

    def of_type(self, event_type: str) -> list[TimelineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def to_markdown(self, limit: Optional[int] = None) -> str:
        """Markdown bullet list, newest first."""
        if not self.events:
            return "No events yet."
        newest_first = sorted(self.events, reverse=True)
        if limit:
            newest_first = newest_first[:limit]
        return "\n".join(
            f"- {e.timestamp.strftime('%H:%M:%S')} - {e.summary}" for e in newest_first
        )
