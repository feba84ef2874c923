"""Workflow engine for pipeline runs.

Wraps the chain controller with a Prefect @flow for observability. The
controller itself is plain Python; `ralph run --no-prefect` calls it
directly.
"""

import logging
from functools import partial

from prefect import flow

from ralph.runner.pipeline import ChainController
from ralph.workflow.tasks import task_process_story

logger = logging.getLogger(__name__)


@flow(name="ralph_pipeline", validate_parameters=False)
def run_pipeline(controller: ChainController) -> int:
    """Run the story pipeline. Returns the CLI exit code."""
    logger.info(
        f"Pipeline starting (chain mode: {controller.config.chain_mode}, "
        f"explicit story: {controller.explicit_story or 'none'})"
    )
    return controller.run(process_story=partial(task_process_story, controller))


def run(controller: ChainController, use_prefect: bool = True) -> int:
    if not use_prefect:
        return controller.run()
    return run_pipeline(controller)
