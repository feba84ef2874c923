"""
Configuration loaders for the pipeline.

Settings resolve in layers: built-in defaults, then ralph.env in the
project root, then the process environment. CLI flags are applied on top
by the caller via dataclasses.replace().
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from . import envparse

logger = logging.getLogger(__name__)

ENV_FILE_NAME = "ralph.env"
LEDGER_FILE_NAME = "sprint-status.yaml"
DEFAULT_STORY_DIR = "_bmad-output/implementation-artifacts"

# Directories never searched when locating the ledger
_SKIP_DIRS = {".git", "node_modules", ".venv", "ralph-logs"}


class ConfigError(Exception):
    """Configuration is invalid."""
    pass


@dataclass
class PipelineConfig:
    """Resolved settings for one pipeline run."""
    project_root: Path
    ledger_path: Path
    story_dir: Path
    log_root: Path
    progress_report: Path
    activity_log: Path

    # Execution supervisor
    iteration_timeout: int = 480
    stall_timeout: int = 180
    test_stall_timeout: int = 300
    stall_grace: int = 60
    poll_interval: float = 5
    watch_paths: list[str] = field(default_factory=lambda: ["src", "packages", "services", "infra"])

    # Task loop
    max_retries: int = 3
    max_task_failures: int = 5
    retry_backoff: float = 2
    learnings_timeout: int = 30

    # Gates
    build_cmd: str = "npm run build"
    test_cmd: str = "npx vitest run --reporter=verbose"
    command_timeout: int = 900
    max_cr_iterations: int = 3

    # Chain controller
    wall_clock_timeout: int = 3600
    chain_mode: bool = True
    skip_validation: bool = False
    skip_generation: bool = False
    chain_pause: float = 3

    # Prompt templates shadowing the packaged ones
    prompts_dir: Optional[Path] = None

    def story_file(self, story_key: str) -> Path:
        """Path of the artifact backing a story key."""
        return self.story_dir / f"{story_key}.md"

    def epic_validation_script(self, epic_num: int) -> Path:
        return self.story_dir / f"epic-{epic_num}-validation.sh"


def find_ledger(project_root: Path, max_depth: int = 3) -> Optional[Path]:
    """Find the first sprint-status.yaml within max_depth levels of project_root."""
    frontier = [project_root]
    for _ in range(max_depth):
        next_frontier = []
        for directory in frontier:
            candidate = directory / LEDGER_FILE_NAME
            if candidate.is_file():
                return candidate
            try:
                children = sorted(p for p in directory.iterdir() if p.is_dir())
            except OSError:
                continue
            next_frontier.extend(c for c in children if c.name not in _SKIP_DIRS)
        frontier = next_frontier
    return None


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from None
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{raw}'") from None
    if not math.isfinite(value) or value < 0:
        raise ConfigError(f"{key} must be a non-negative number, got {raw}")
    return value

def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return envparse.parse_bool(raw)
    except ValueError:
        raise ConfigError(f"{key} must be true or false, got '{raw}'") from None


def load_config(project_root: Path, environ: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """Load PipelineConfig for a project.

    Args:
        project_root: Directory the pipeline runs in (the worker's workspace)
        environ: Environment mapping, defaults to os.environ

    Raises:
        ConfigError: If ralph.env is malformed or a value has the wrong type
    """
    project_root = Path(project_root).resolve()
    try:
        env = dict(envparse.load_env_optional(project_root / ENV_FILE_NAME))
    except ValueError as e:
        raise ConfigError(str(e)) from None

    env.update(os.environ if environ is None else environ)

    story_dir = project_root / env.get("RALPH_STORY_DIR", DEFAULT_STORY_DIR)

    if env.get("RALPH_LEDGER"):
        ledger_path = project_root / env["RALPH_LEDGER"]
    else:
        ledger_path = find_ledger(project_root) or story_dir / LEDGER_FILE_NAME

    watch_paths = env.get("RALPH_WATCH_PATHS")
    defaults = PipelineConfig(
        project_root=project_root,
        ledger_path=ledger_path,
        story_dir=story_dir,
        log_root=project_root / env.get("RALPH_LOG_DIR", "ralph-logs"),
        progress_report=project_root / env.get("RALPH_PROGRESS_REPORT", "ralph-progress.md"),
        activity_log=project_root / env.get("RALPH_ACTIVITY_LOG", "activity.md"),
    )

    config = PipelineConfig(
        project_root=defaults.project_root,
        ledger_path=defaults.ledger_path,
        story_dir=defaults.story_dir,
        log_root=defaults.log_root,
        progress_report=defaults.progress_report,
        activity_log=defaults.activity_log,
        iteration_timeout=_get_int(env, "RALPH_ITERATION_TIMEOUT", defaults.iteration_timeout),
        stall_timeout=_get_int(env, "RALPH_STALL_TIMEOUT", defaults.stall_timeout),
        test_stall_timeout=_get_int(env, "RALPH_TEST_STALL_TIMEOUT", defaults.test_stall_timeout),
        stall_grace=_get_int(env, "RALPH_STALL_GRACE", defaults.stall_grace),
        poll_interval=_get_float(env, "RALPH_POLL_INTERVAL", defaults.poll_interval),
        watch_paths=watch_paths.split() if watch_paths else defaults.watch_paths,
        max_retries=_get_int(env, "RALPH_MAX_RETRIES", defaults.max_retries),
        max_task_failures=_get_int(env, "RALPH_MAX_TASK_FAILURES", defaults.max_task_failures),
        retry_backoff=_get_float(env, "RALPH_RETRY_BACKOFF", defaults.retry_backoff),
        learnings_timeout=_get_int(env, "RALPH_LEARNINGS_TIMEOUT", defaults.learnings_timeout),
        build_cmd=env.get("RALPH_BUILD_CMD", defaults.build_cmd),
        test_cmd=env.get("RALPH_TEST_CMD", defaults.test_cmd),
        command_timeout=_get_int(env, "RALPH_COMMAND_TIMEOUT", defaults.command_timeout),
        max_cr_iterations=_get_int(env, "CR_MAX_ITERATIONS", defaults.max_cr_iterations),
        wall_clock_timeout=_get_int(env, "RALPH_WALL_CLOCK_TIMEOUT", defaults.wall_clock_timeout),
        chain_mode=_get_bool(env, "RALPH_CHAIN_MODE", defaults.chain_mode),
        skip_validation=_get_bool(env, "RALPH_SKIP_VALIDATION", defaults.skip_validation),
        skip_generation=_get_bool(env, "RALPH_SKIP_CS", defaults.skip_generation),
        prompts_dir=project_root / env["RALPH_PROMPTS_DIR"] if env.get("RALPH_PROMPTS_DIR") else None,
    )

    if config.max_retries < 1:
        raise ConfigError("RALPH_MAX_RETRIES must be at least 1")
    if config.max_cr_iterations < 1:
        raise ConfigError("CR_MAX_ITERATIONS must be at least 1")

    logger.debug(f"Loaded config for {project_root} (ledger: {ledger_path})")
    return config
