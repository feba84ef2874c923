"""Shared constants for the pipeline."""

import re

# Ledger key shapes
STORY_KEY_PATTERN = re.compile(r'^\d+-\d+-')
EPIC_KEY_PATTERN = re.compile(r'^epic-(\d+)$')

# Lifecycle values as written to the ledger
STATUS_BACKLOG = "backlog"
STATUS_READY = "ready-for-dev"
STATUS_IN_PROGRESS = "in-progress"
STATUS_DONE = "done"
STATUS_REVIEW = "review"

# Worker output markers
COMPLETION_MARKER = "<promise>COMPLETE</promise>"

# CLI exit codes
EXIT_OK = 0
EXIT_ESCALATED = 1
EXIT_CONFIG_ERROR = 2
EXIT_MISSING_ARTIFACT = 3
EXIT_LOCKED = 4
