"""Destination-based lifecycle transitions.

Thin wrapper around the FSM in fsm.py. Callers say where a key should
go; this module finds the trigger that gets it there and refuses
anything the lifecycle does not allow.

Usage:
    from ralph.workflow.state_machine import Lifecycle, transition

    transition(ledger, "1-2-password-reset", Lifecycle.REVIEW, reason="stuck")
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from transitions import MachineError

from ralph.lib.ledger import StatusLedger
from ralph.workflow.fsm import TRIGGER_FOR, LifecycleFSM

logger = logging.getLogger(__name__)


class Lifecycle(Enum):
    """Lifecycle values as written to the ledger."""
    BACKLOG = "backlog"
    READY = "ready-for-dev"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    REVIEW = "review"


class InvalidTransition(Exception):
    """Raised when attempting a transition the lifecycle does not allow."""

    def __init__(self, from_state: str, to_state: Lifecycle, key: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.key = key
        super().__init__(
            f"Invalid transition: {from_state} -> {to_state.value}"
            + (f" ({key})" if key else "")
        )


def parse_state(status_str: str | None) -> Lifecycle | None:
    """Parse a ledger value into Lifecycle. Returns None if unknown."""
    if status_str is None:
        return None
    for state in Lifecycle:
        if state.value == status_str:
            return state
    return None


def transition(
    ledger: StatusLedger,
    key: str,
    to_state: Lifecycle,
    reason: str = "",
    kind: str = "story",
    story_file: Optional[Path] = None,
) -> bool:
    """Move a ledger key to a new lifecycle state with validation.

    Args:
        ledger: The status ledger
        key: Story or epic key
        to_state: Target state
        reason: Optional reason for the transition (for logging)
        kind: "story" or "epic"
        story_file: Story artifact whose Status line is kept in sync

    Returns:
        True if the state changed, False if key was already in to_state

    Raises:
        InvalidTransition: If the transition is not allowed
        LedgerKeyError: If key is not in the ledger
    """
    reason_str = f" ({reason})" if reason else ""
    fsm = LifecycleFSM(ledger, key, kind=kind, story_file=story_file)
    current_state = fsm.raw_state

    if current_state == to_state.value:
        logger.debug(f"[STATE] {key}: already in {to_state.value}, no-op")
        return False

    trigger = TRIGGER_FOR[kind].get((fsm.state, to_state.value))
    if trigger is None:
        raise InvalidTransition(current_state, to_state, key)

    try:
        logger.info(f"[STATE] {key}: {current_state} -> {to_state.value}{reason_str}")
        getattr(fsm, trigger)()
    except MachineError as e:
        raise InvalidTransition(current_state, to_state, key) from e
    return True

