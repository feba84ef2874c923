"""Prefect task wrappers for pipeline units.

Wraps per-story processing with a @task decorator so each story shows up
as its own task run when a Prefect server is connected. The business
logic stays in ChainController.process_story.
"""

from typing import TYPE_CHECKING

from prefect import task
from prefect.cache_policies import NO_CACHE

if TYPE_CHECKING:
    from ralph.runner.discovery import DiscoveredStory
    from ralph.runner.pipeline import ChainController, StoryOutcome


@task(
    retries=0,
    name="story",
    description="Run one story through tasks, validation, review and the epic check",
    cache_policy=NO_CACHE,
)
def task_process_story(controller: "ChainController", story: "DiscoveredStory") -> "StoryOutcome":
    """Process one story.

    Never retried: a failed story is escalated to review, and running it
    again would repeat worker spend on the same failure.
    """
    return controller.process_story(story)
