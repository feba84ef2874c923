"""
Worker command configuration.

Loads agents.yaml from the project root to determine which CLI command
the worker runs for each stage. Without the file, every stage uses the
Claude CLI in print mode.

STAGE COMMAND TEMPLATES
=======================

Each stage maps to a CLI command template. Templates support variable
substitution using {variable_name} syntax:

- {prompt}: The objective text. If present in the template it is passed as
  a CLI argument. If absent, the objective is passed via stdin.
- {workspace}: The project root the worker operates in.

Example agents.yaml:

    stages:
      implement: codex exec --dangerously-bypass-approvals-and-sandbox -C {workspace} {prompt}
      learnings: claude -p --model haiku
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "agents.yaml"

_CLAUDE_PRINT = "claude -p --output-format text --dangerously-skip-permissions"

DEFAULT_STAGE_COMMANDS = {
    "implement": _CLAUDE_PRINT,
    # One task attempt, supervised for timeout and stalls.

    "review": _CLAUDE_PRINT,
    # Adversarial code review; must emit a <cr-signal>.

    "learnings": "claude -p --output-format text",
    # Condenses a failed attempt's transcript. Read-only, no permissions.

    "create_story": _CLAUDE_PRINT,
    # Writes a story file for a backlog key.
}

_PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"


@dataclass
class AgentsConfig:
    """Worker configuration from agents.yaml."""
    stages: dict[str, str] = field(default_factory=lambda: DEFAULT_STAGE_COMMANDS.copy())


def load_agents_config(project_dir: Optional[Path]) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If project_dir is None or the file doesn't exist, returns defaults.
    Unknown stage names in the file are ignored with a warning.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = Path(project_dir) / CONFIG_FILE_NAME
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    stages = DEFAULT_STAGE_COMMANDS.copy()
    if isinstance(data, dict) and isinstance(data.get("stages"), dict):
        for name, command in data["stages"].items():
            if name not in DEFAULT_STAGE_COMMANDS:
                logger.warning(f"{config_path}: ignoring unknown stage '{name}'")
                continue
            stages[name] = str(command)
    return AgentsConfig(stages=stages)


@dataclass
class StageCommand:
    """Result of building a stage command."""
    cmd: list[str]  # Command ready for subprocess
    prompt_via_stdin: bool  # True if prompt should be passed via stdin

    def get_stdin_input(self, prompt: str) -> str | None:
        """Return prompt if it should be passed via stdin, else None."""
        return prompt if self.prompt_via_stdin else None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """Build command list for a stage with variable substitution.

    Raises:
        ValueError: If stage is unknown

    Example:
        >>> config = AgentsConfig(stages={"implement": "codex exec -C {workspace} {prompt}"})
        >>> get_stage_command(config, "implement", {"workspace": "/w", "prompt": "do it"}).cmd
        ['codex', 'exec', '-C', '/w', 'do it']
    """
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")

    cmd_template = config.stages[stage]
    prompt_via_stdin = "{prompt}" not in cmd_template

    # Keep the prompt out of shlex: it may contain quotes and newlines
    prompt_value = None
    if context and "prompt" in context:
        prompt_value = context["prompt"]
        cmd_template = cmd_template.replace("{prompt}", _PROMPT_PLACEHOLDER)

    if context:
        for key, value in context.items():
            if key != "prompt":
                cmd_template = cmd_template.replace(f"{{{key}}}", shlex.quote(str(value)))

    remaining_vars = re.findall(r'\{(\w+)\}', cmd_template)
    if remaining_vars:
        logger.error(
            f"Stage '{stage}' has unsubstituted variables: {remaining_vars}. "
            f"Template: {cmd_template}"
        )

    cmd = shlex.split(cmd_template)

    if prompt_value is not None:
        cmd = [prompt_value if arg == _PROMPT_PLACEHOLDER else arg for arg in cmd]

    return StageCommand(cmd=cmd, prompt_via_stdin=prompt_via_stdin)


def get_stage_binary(config: AgentsConfig, stage: str) -> str:
    """Get the binary name for a stage (first element of command)."""
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")
    parts = shlex.split(config.stages[stage])
    return parts[0] if parts else ""


@dataclass
class BinaryCheckResult:
    """Result of checking stage binaries."""
    ok: bool
    missing_binary: str | None = None
    stages_affected: list[str] = field(default_factory=list)
    error_message: str | None = None


def validate_stage_binaries(config: AgentsConfig, stages: list[str]) -> BinaryCheckResult:
    """Validate that binaries for the given stages are on PATH.

    Returns:
        BinaryCheckResult with ok=True if all binaries available,
        or ok=False with details about what's missing and how to fix it.
    """
    binary_to_stages: dict[str, list[str]] = {}
    for stage in stages:
        if stage not in config.stages:
            continue
        binary_to_stages.setdefault(get_stage_binary(config, stage), []).append(stage)

    for binary, affected_stages in binary_to_stages.items():
        if shutil.which(binary) is None:
            error_lines = [
                f"Required tool '{binary}' is not installed.",
                "",
                f"Stages that need it: {', '.join(affected_stages)}",
                "",
                "To fix this, either:",
                f"  1. Install {binary}",
                f"  2. Create {CONFIG_FILE_NAME} in the project root to use a different tool:",
                "",
                "     stages:",
            ]
            for stage in affected_stages:
                error_lines.append(f"       {stage}: <command> {{prompt}}")

            return BinaryCheckResult(
                ok=False,
                missing_binary=binary,
                stages_affected=affected_stages,
                error_message="\n".join(error_lines),
            )

    return BinaryCheckResult(ok=True)
