"""
Task manifest parsing for story files.

A story file embeds its ordered task list as a JSON array:

    ## Ralph Tasks JSON

    ```json
    [
      {"id": "T1", "title": "...", "steps": [...], "checkCommands": [...], "passes": false}
    ]
    ```

Tasks are consumed strictly in list order. The pipeline only ever flips a
task's "passes" from false to true, and does so by rewriting that single
token so the rest of the block keeps its formatting.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .ledger import read_verbatim, write_verbatim
from .validate import ValidationError, validate

logger = logging.getLogger(__name__)

MANIFEST_HEADING = "## Ralph Tasks JSON"
VALIDATION_HEADING = "## Story Validation"

_MANIFEST_PATTERN = re.compile(
    re.escape(MANIFEST_HEADING) + r'.*?```json\r?\n(.*?)\r?\n```',
    re.DOTALL,
)
_VALIDATION_PATTERN = re.compile(
    re.escape(VALIDATION_HEADING) + r'.*?```bash\r?\n(.*?)\r?\n```',
    re.DOTALL,
)
_BOOL_VALUE = re.compile(r'\s*:\s*(true|false)\b')


class MalformedManifest(Exception):
    """The task list cannot be located, parsed or validated."""

    def __init__(self, story_file: Path, message: str):
        self.story_file = story_file
        super().__init__(f"{Path(story_file).name}: {message}")


@dataclass
class Task:
    """One entry of the task manifest."""
    id: str
    title: str
    passes: bool
    acceptance_criteria: list = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    check_commands: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'Task':
        return cls(
            id=data["id"],
            title=data["title"],
            passes=data["passes"],
            acceptance_criteria=list(data.get("acceptanceCriteria", [])),
            steps=list(data.get("steps", [])),
            check_commands=list(data.get("checkCommands", [])),
        )


@dataclass
class NextTask:
    """Result of extracting the next task from a manifest."""
    task: Optional[Task]
    completed: int
    total: int

    @property
    def done(self) -> bool:
        return self.task is None

    def to_dict(self) -> dict:
        if self.task is None:
            return {"done": True, "totalTasks": self.total}
        return {
            "done": False,
            "taskId": self.task.id,
            "title": self.task.title,
            "steps": self.task.steps,
            "acceptanceCriteria": self.task.acceptance_criteria,
            "checkCommands": self.task.check_commands,
            "completedCount": self.completed,
            "totalTasks": self.total,
        }


def _read(story_file: Path) -> str:
    try:
        return read_verbatim(Path(story_file))
    except OSError as e:
        raise MalformedManifest(story_file, f"cannot read story file: {e}") from None


def _locate(story_file: Path, content: str) -> re.Match:
    match = _MANIFEST_PATTERN.search(content)
    if not match:
        raise MalformedManifest(story_file, f"no '{MANIFEST_HEADING}' json block found")
    return match


def _parse(story_file: Path, block: str) -> list[Task]:
    try:
        data = json.loads(block)
    except json.JSONDecodeError as e:
        raise MalformedManifest(story_file, f"invalid JSON: {e}") from None

    try:
        validate(data, "task_manifest")
    except ValidationError as e:
        raise MalformedManifest(story_file, str(e)) from None

    tasks = [Task.from_dict(item) for item in data]
    seen = set()
    for task in tasks:
        if task.id in seen:
            raise MalformedManifest(story_file, f"duplicate task id '{task.id}'")
        seen.add(task.id)
    return tasks


def load_tasks(story_file: Path) -> list[Task]:
    """Parse and validate the task manifest of a story file.

    Raises:
        MalformedManifest: If the block is missing, unparseable or invalid
    """
    content = _read(story_file)
    return _parse(story_file, _locate(story_file, content).group(1))


def extract_next_task(story_file: Path) -> NextTask:
    """Return the first task with passes == false, or a done result."""
    tasks = load_tasks(story_file)
    completed = sum(1 for t in tasks if t.passes)
    for task in tasks:
        if not task.passes:
            return NextTask(task=task, completed=completed, total=len(tasks))
    return NextTask(task=None, completed=completed, total=len(tasks))


def task_summary(story_file: Path) -> tuple[int, int]:
    """Return (passed, total) for reporting; (0, 0) if the manifest is unusable."""
    try:
        tasks = load_tasks(story_file)
    except MalformedManifest:
        return 0, 0
    return sum(1 for t in tasks if t.passes), len(tasks)


def _object_spans(text: str) -> list[tuple[int, int]]:
    """Spans of the objects that are direct elements of the top-level array."""
    spans = []
    depth = 0
    in_string = False
    escape = False
    start = None
    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '[{':
            depth += 1
            if depth == 2 and ch == '{':
                start = i
        elif ch in ']}':
            if depth == 2 and ch == '}' and start is not None:
                spans.append((start, i + 1))
                start = None
            depth -= 1
    return spans


def _member_value_span(obj_text: str, name: str) -> Optional[tuple[int, int]]:
    """Span of the boolean value of a direct member of a JSON object."""
    depth = 0
    i = 0
    while i < len(obj_text):
        ch = obj_text[i]
        if ch == '"':
            end = i + 1
            while end < len(obj_text) and obj_text[end] != '"':
                end += 2 if obj_text[end] == '\\' else 1
            token = obj_text[i + 1:end]
            if depth == 1 and token == name:
                value = _BOOL_VALUE.match(obj_text, end + 1)
                if value:
                    return value.start(1), value.end(1)
            i = end + 1
            continue
        if ch in '[{':
            depth += 1
        elif ch in ']}':
            depth -= 1
        i += 1
    return None


def mark_task_passed(story_file: Path, task_id: str) -> bool:
    """Flip passes to true for task_id, touching nothing else in the file.

    Returns:
        True if the file changed, False if the task already passed

    Raises:
        MalformedManifest: If the manifest is invalid or has no such task
    """
    content = _read(story_file)
    match = _locate(story_file, content)
    block = match.group(1)
    _parse(story_file, block)

    for start, end in _object_spans(block):
        obj_text = block[start:end]
        if json.loads(obj_text).get("id") != task_id:
            continue
        span = _member_value_span(obj_text, "passes")
        if span is None:
            raise MalformedManifest(story_file, f"task '{task_id}' has no passes field")
        if obj_text[span[0]:span[1]] == "true":
            return False
        offset = match.start(1) + start
        new_content = content[:offset + span[0]] + "true" + content[offset + span[1]:]
        write_verbatim(Path(story_file), new_content)
        logger.info(f"Marked {task_id} passes=true in {Path(story_file).name}")
        return True

    raise MalformedManifest(story_file, f"task '{task_id}' not found")


def validation_commands(story_file: Path) -> list[str]:
    """Commands from the ```bash block under '## Story Validation'.

    Blank lines and # comments are dropped. Returns [] when absent.
    """
    try:
        content = Path(story_file).read_text()
    except OSError:
        return []
    match = _VALIDATION_PATTERN.search(content)
    if not match:
        return []
    return [
        line.strip() for line in match.group(1).splitlines()
        if line.strip() and not line.strip().startswith('#')
    ]
