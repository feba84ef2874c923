"""
Next-unit discovery and story generation.

Work is picked from the ledger in priority order:

1. a story already in-progress (resume interrupted work)
2. a story ready-for-dev
3. a story in backlog; if it has no story file yet, the create_story
   worker stage writes one first

A story past backlog without a story file is a missing artifact, never
regenerated.

Ledger order decides within a bucket.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ralph.lib.ledger import LedgerKeyError, StatusLedger, epic_num_from_key, story_num_from_key
from ralph.lib.prompts import render_prompt
from ralph.lib.timeline import Timeline
from ralph.workflow.state_machine import Lifecycle, transition

logger = logging.getLogger(__name__)

PRIORITY = [Lifecycle.IN_PROGRESS, Lifecycle.READY, Lifecycle.BACKLOG]


class MissingArtifact(Exception):
    """A story has no story file and none could be generated."""

    def __init__(self, story_key: str, path: Path, message: str = ""):
        self.story_key = story_key
        self.path = path
        super().__init__(message or f"Story file for {story_key} not found: {path}")


@dataclass
class DiscoveredStory:
    key: str
    status: str
    epic_num: Optional[int]
    story_num: Optional[int]
    story_file: Path
    needs_generation: bool = False

    def to_dict(self) -> dict:
        return {
            "done": False,
            "storyKey": self.key,
            "status": self.status,
            "epicNum": self.epic_num,
            "storyNum": self.story_num,
            "filePath": str(self.story_file),
            "needsCS": self.needs_generation,
        }


class StoryGenerator:
    """Has the worker write the story file for a backlog key."""

    def __init__(self, worker, ledger: StatusLedger, config, timeline: Optional[Timeline] = None):
        self.worker = worker
        self.ledger = ledger
        self.config = config
        self.timeline = timeline

    def _event(self, event_type: str, summary: str) -> None:
        if self.timeline is not None:
            self.timeline.add(event_type, summary)

    def generate(self, story: DiscoveredStory) -> bool:
        """Run the create_story stage. True if the story file exists afterwards."""
        logger.info(f"Creating story: {story.key} (epic {story.epic_num}, story {story.story_num})")
        self._event("generation_started", f"Story generation started for {story.key}")

        prompt = render_prompt(
            "create_story",
            self.config.prompts_dir,
            story_key=story.key,
            epic_num=story.epic_num,
            story_num=story.story_num,
            story_file_path=story.story_file,
            ledger_path=self.ledger.path,
        )
        self.config.log_root.mkdir(parents=True, exist_ok=True)
        result = self.worker.attempt(
            prompt,
            stage="create_story",
            timeout=self.config.iteration_timeout,
            log_file=self.config.log_root / f"create-story-{story.key}.log",
        )

        if not story.story_file.exists():
            logger.error(
                f"Story generation failed, no file at {story.story_file} "
                f"(exit {result.exit_code}, timed out: {result.timed_out})"
            )
            self._event("generation_failed", f"Story generation FAILED for {story.key}")
            return False

        logger.info(f"Story file created: {story.story_file}")
        if self.ledger.get(story.key) == Lifecycle.BACKLOG.value:
            transition(self.ledger, story.key, Lifecycle.READY, reason="story generated",
                       story_file=story.story_file)
        self._event("generated", f"Story generated for {story.key}")
        return True


def needs_generation(status: str, story_file: Path) -> bool:
    """Only a backlog story may have its missing story file written by the worker."""
    return status == Lifecycle.BACKLOG.value and not story_file.exists()


class Discovery:
    """Finds the next story to work on."""

    def __init__(self, ledger: StatusLedger, config, generator: Optional[StoryGenerator] = None):
        self.ledger = ledger
        self.config = config
        self.generator = generator

    def _story(self, key: str, status: str) -> DiscoveredStory:
        story_file = self.config.story_file(key)
        return DiscoveredStory(
            key=key,
            status=status,
            epic_num=epic_num_from_key(key),
            story_num=story_num_from_key(key),
            story_file=story_file,
            needs_generation=needs_generation(status, story_file),
        )

    def find(self) -> Optional[DiscoveredStory]:
        """Highest-priority story, without side effects. None when the backlog is exhausted."""
        stories = self.ledger.stories()
        for state in PRIORITY:
            for entry in stories:
                if entry.status == state.value:
                    return self._story(entry.key, entry.status)
        return None

    def _prepare(self, story: DiscoveredStory) -> DiscoveredStory:
        """Make a discovered story startable: generate it, or move backlog to ready."""
        if not story.needs_generation and not story.story_file.exists():
            raise MissingArtifact(story.key, story.story_file)
        if story.needs_generation:
            if self.config.skip_generation or self.generator is None:
                raise MissingArtifact(
                    story.key, story.story_file,
                    f"Story {story.key} needs a story file and generation is disabled",
                )
            if not self.generator.generate(story):
                raise MissingArtifact(story.key, story.story_file, f"Could not generate story {story.key}")
            return self._story(story.key, self.ledger.get(story.key) or story.status)

        if story.status == Lifecycle.BACKLOG.value:
            transition(self.ledger, story.key, Lifecycle.READY, reason="story file present",
                       story_file=story.story_file)
            story.status = Lifecycle.READY.value
        return story

    def next_unit(self) -> Optional[DiscoveredStory]:
        """Next story ready to run, generating its story file when needed.

        Raises:
            MissingArtifact: A story file is missing and cannot be generated
        """
        story = self.find()
        if story is None:
            logger.info("All stories complete, no more work to do")
            return None
        logger.info(f"Discovered: {story.key} ({story.status})")
        return self._prepare(story)

    def explicit(self, ref: str) -> DiscoveredStory:
        """Resolve a story given as a story file path or a ledger key.

        Raises:
            MissingArtifact: The story file does not exist and cannot be generated
            LedgerKeyError: The key is not in the ledger
        """
        path = Path(ref)
        if path.suffix == ".md" or path.exists():
            key = path.stem
            story_file = path if path.is_absolute() else self.config.project_root / path
        else:
            key = ref
            story_file = self.config.story_file(key)

        status = self.ledger.get(key)
        if status is None:
            raise LedgerKeyError(key, self.ledger.path)

        story = DiscoveredStory(
            key=key,
            status=status,
            epic_num=epic_num_from_key(key),
            story_num=story_num_from_key(key),
            story_file=story_file,
            needs_generation=needs_generation(status, story_file),
        )
        if status in (Lifecycle.DONE.value, Lifecycle.REVIEW.value):
            return story
        return self._prepare(story)
