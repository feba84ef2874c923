"""Story and epic lifecycle state machines using the transitions library.

Every ledger key gets its own machine, loaded from the ledger and
persisting back to it after each transition:

    backlog -> ready-for-dev -> in-progress -> {done | review}

review is a dead end for the pipeline; only a human moves a key out of
it. Epics skip ready-for-dev and may be promoted straight from backlog,
since their stories can finish before anything marks the epic started.

Usage:
    from ralph.workflow.fsm import LifecycleFSM

    fsm = LifecycleFSM(ledger, "1-2-password-reset", story_file=path)
    fsm.start()     # ready-for-dev -> in-progress
    fsm.complete()  # in-progress -> done
"""

import logging
import re
from pathlib import Path
from typing import Optional

from transitions import Machine

from ralph.lib.ledger import LedgerKeyError, StatusLedger, read_verbatim, write_verbatim

logger = logging.getLogger(__name__)

UNKNOWN_STATE = "unknown"

STATES = [
    "backlog",
    "ready-for-dev",
    "in-progress",
    "done",
    "review",
    UNKNOWN_STATE,  # anything else found in the ledger; no way out
]

STORY_TRANSITIONS = [
    {"trigger": "prepare", "source": "backlog", "dest": "ready-for-dev"},
    {"trigger": "start", "source": "ready-for-dev", "dest": "in-progress"},
    {"trigger": "complete", "source": "in-progress", "dest": "done"},
    {"trigger": "escalate", "source": "in-progress", "dest": "review"},
]

EPIC_TRANSITIONS = [
    {"trigger": "start", "source": "backlog", "dest": "in-progress"},
    {"trigger": "complete", "source": ["backlog", "in-progress"], "dest": "done"},
    {"trigger": "escalate", "source": ["backlog", "in-progress"], "dest": "review"},
]

TRANSITIONS = {
    "story": STORY_TRANSITIONS,
    "epic": EPIC_TRANSITIONS,
}

_STATUS_LINE = re.compile(r'^Status:[^\r\n]*', re.MULTILINE)


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            lookup.setdefault((source, t["dest"]), t["trigger"])
    return lookup


TRIGGER_FOR = {kind: _build_trigger_lookup(ts) for kind, ts in TRANSITIONS.items()}


def mirror_story_status(story_file: Path, status: str) -> bool:
    """Rewrite the first 'Status:' line of a story file. Returns True if changed."""
    try:
        content = read_verbatim(story_file)
    except OSError:
        return False
    updated, count = _STATUS_LINE.subn(f"Status: {status}", content, count=1)
    if count == 0 or updated == content:
        return False
    write_verbatim(story_file, updated)
    return True


class LifecycleFSM:
    """State machine for one story or epic key.

    Wraps the transitions library with ledger-specific logic:
    - Loads initial state from the ledger
    - Persists state changes to the ledger (and the story file's Status line)
    - Logs all transitions
    """

    def __init__(
        self,
        ledger: StatusLedger,
        key: str,
        kind: str = "story",
        story_file: Optional[Path] = None,
    ):
        """Initialize FSM for a ledger key.

        Args:
            ledger: The status ledger holding the key
            key: Story or epic key
            kind: "story" or "epic"
            story_file: Story artifact whose Status line mirrors the ledger

        Raises:
            LedgerError: If the ledger cannot be read
            LedgerKeyError: If key is not in the ledger
        """
        if kind not in TRANSITIONS:
            raise ValueError(f"Unknown lifecycle kind: {kind}")

        self.ledger = ledger
        self.key = key
        self.kind = kind
        self.story_file = story_file

        initial = ledger.get(key)
        if initial is None:
            raise LedgerKeyError(key, ledger.path)
        self.raw_state = initial
        if initial not in STATES:
            logger.warning(f"[FSM] {key}: Unknown state '{initial}', no transitions allowed")
            initial = UNKNOWN_STATE

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS[kind],
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        """Persist the new state and log the transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.key}: {from_state} -> {to_state} ({trigger})")

        self.ledger.update(self.key, to_state)
        self.raw_state = to_state
        if self.story_file is not None and mirror_story_status(self.story_file, to_state):
            logger.debug(f"[FSM] {self.key}: Status line updated in {self.story_file.name}")
