"""
Sprint status ledger.

The ledger is a flat, line-oriented file (sprint-status.yaml) mapping
story and epic keys to lifecycle states:

    development_status:
      epic-1: in-progress
      1-1-user-login: done
      1-2-password-reset: ready-for-dev
      epic-1-retrospective: optional

It is deliberately not parsed as YAML: updates rewrite exactly one line
in place so comments, ordering and formatting survive untouched.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .constants import EPIC_KEY_PATTERN, STATUS_DONE, STORY_KEY_PATTERN

logger = logging.getLogger(__name__)

LINE_PATTERN = re.compile(r'^(\s*)([\w-]+):\s*(.+)$')

METADATA_KEYS = frozenset({
    "generated",
    "project",
    "project_key",
    "tracking_system",
    "story_location",
    "development_status",
})


class LedgerError(Exception):
    """Ledger file is missing or unreadable."""
    pass


class LedgerKeyError(LedgerError):
    """Key is not present in the ledger."""

    def __init__(self, key: str, path: Path):
        self.key = key
        self.path = path
        super().__init__(f"Key '{key}' not found in {path}")


@dataclass(frozen=True)
class LedgerEntry:
    key: str
    status: str
    lineno: int


@dataclass
class EpicStories:
    """All stories of one epic, as reported by the ledger."""
    epic_num: int
    epic_status: str
    stories: list[LedgerEntry]

    @property
    def all_done(self) -> bool:
        return bool(self.stories) and all(s.status == STATUS_DONE for s in self.stories)


def is_story_key(key: str) -> bool:
    """Story keys look like "2-3-hybrid-intent-router"."""
    return bool(STORY_KEY_PATTERN.match(key)) and "retrospective" not in key


def is_epic_key(key: str) -> bool:
    return bool(EPIC_KEY_PATTERN.match(key))


def epic_num_from_key(key: str) -> Optional[int]:
    match = re.match(r'^(\d+)-', key)
    return int(match.group(1)) if match else None


def story_num_from_key(key: str) -> Optional[int]:
    match = re.match(r'^\d+-(\d+)-', key)
    return int(match.group(1)) if match else None


def read_verbatim(path: Path) -> str:
    """Read a text file without translating its line endings."""
    with open(path, newline="") as f:
        return f.read()


def write_verbatim(path: Path, content: str) -> None:
    with open(path, "w", newline="") as f:
        f.write(content)


def _parse_line(line: str) -> Optional[tuple[str, str, str]]:
    """Return (indent, key, value) for a ledger line, or None if it carries no entry."""
    stripped = line.strip()
    if not stripped or stripped.startswith('#'):
        return None
    match = LINE_PATTERN.match(line.rstrip('\r'))
    if not match:
        return None
    indent, key, value = match.groups()
    return indent, key, value.strip()


class StatusLedger:
    """Single accessor for the status ledger file.

    Every read goes back to disk so that edits made by the worker (or a
    human) between phases are always observed.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def _read(self) -> str:
        try:
            return read_verbatim(self.path)
        except FileNotFoundError:
            raise LedgerError(f"Ledger not found: {self.path}") from None
        except OSError as e:
            raise LedgerError(f"Cannot read ledger {self.path}: {e}") from None

    def entries(self) -> list[LedgerEntry]:
        """All key/status entries in file order, metadata keys excluded."""
        result = []
        for lineno, line in enumerate(self._read().split('\n'), 1):
            parsed = _parse_line(line)
            if parsed is None:
                continue
            _, key, value = parsed
            if key in METADATA_KEYS:
                continue
            result.append(LedgerEntry(key=key, status=value, lineno=lineno))
        return result

    def get(self, key: str) -> Optional[str]:
        for entry in self.entries():
            if entry.key == key:
                return entry.status
        return None

    def stories(self) -> list[LedgerEntry]:
        return [e for e in self.entries() if is_story_key(e.key)]

    def epics(self) -> list[LedgerEntry]:
        return [e for e in self.entries() if is_epic_key(e.key)]

    def epic_stories(self, epic_num: int) -> EpicStories:
        entries = self.entries()
        prefix = f"{epic_num}-"
        stories = [e for e in entries if is_story_key(e.key) and e.key.startswith(prefix)]
        epic_status = next((e.status for e in entries if e.key == f"epic-{epic_num}"), "unknown")
        return EpicStories(epic_num=epic_num, epic_status=epic_status, stories=stories)

    def update(self, key: str, status: str) -> bool:
        """Rewrite the line for key in place.

        Indentation and every other line are preserved byte for byte. Only
        the first matching line is touched.

        Returns:
            True if the file changed, False if key was already at status

        Raises:
            LedgerKeyError: If key is not in the ledger
        """
        lines = self._read().split('\n')

        for i, line in enumerate(lines):
            parsed = _parse_line(line)
            if parsed is None or parsed[1] != key:
                continue
            indent, _, current = parsed
            if current == status:
                logger.debug(f"Ledger {key} already {status}")
                return False
            eol = '\r' if line.endswith('\r') else ''
            lines[i] = f"{indent}{key}: {status}{eol}"
            write_verbatim(self.path, '\n'.join(lines))
            logger.info(f"Ledger {key}: {current} -> {status}")
            return True

        raise LedgerKeyError(key, self.path)
