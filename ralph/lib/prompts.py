"""
Prompt loader.

Loads prompt templates from the packaged prompts/ directory and
interpolates variables. A project may shadow any template by placing a
file with the same name in its own prompts directory (RALPH_PROMPTS_DIR).

Templates use Python str.format() syntax: {variable_name}
Use {{ and }} for literal braces in worker output (e.g., JSON examples).

HTML comments (<!-- ... -->) are stripped before rendering - use them for
documentation that shouldn't be sent to the worker.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

__all__ = ["PromptError", "load_prompt", "render_prompt", "build_section", "clear_cache", "PROMPTS_DIR"]

_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


class PromptError(Exception):
    """Raised when prompt loading or rendering fails."""
    pass


@lru_cache(maxsize=32)
def load_prompt(name: str, override_dir: Optional[Path] = None) -> str:
    """
    Load a prompt template by name (cached).

    Args:
        name: Prompt name without extension (e.g., 'task', 'review')
        override_dir: Directory searched before the packaged templates

    Returns:
        Prompt template content (HTML comments stripped)

    Raises:
        PromptError: If the template exists in neither location
    """
    candidates = [PROMPTS_DIR / f"{name}.md"]
    if override_dir is not None:
        candidates.insert(0, Path(override_dir) / f"{name}.md")

    for prompt_path in candidates:
        if prompt_path.exists():
            logger.debug(f"Loading prompt template: {prompt_path}")
            content = _HTML_COMMENT_PATTERN.sub('', prompt_path.read_text())
            return content.lstrip()

    raise PromptError(
        f"Prompt template '{name}' not found. "
        f"Looked in: {', '.join(str(p) for p in candidates)}"
    )


def render_prompt(name: str, override_dir: Optional[Path] = None, **kwargs) -> str:
    """
    Load and render a prompt template with variables.

    Raises:
        PromptError: If template not found or required variable missing

    Example:
        render_prompt('review', story_key='1-2-login', cr_iteration=1, ...)
    """
    template = load_prompt(name, override_dir)

    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. "
            f"Provided: {list(kwargs.keys())}"
        ) from e


def build_section(
    content: str | None,
    header: str,
    empty_msg: str | None = None
) -> str:
    """
    Build a markdown section if content exists.

    Returns:
        Formatted section string. Empty string if content is None AND empty_msg is None.
    """
    if content:
        return f"{header}\n\n{content}\n"
    elif empty_msg is not None:
        return f"{header}\n\n{empty_msg}\n"
    else:
        return ""


def clear_cache():
    """Clear the prompt cache (useful for testing or hot-reload)."""
    load_prompt.cache_clear()
