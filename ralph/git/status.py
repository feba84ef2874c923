"""Git status queries used for workspace change detection."""

from pathlib import Path

from ralph.git.runner import run_git


def get_status_short(worktree: Path) -> str:
    """`git status --short`, empty on failure (e.g., not a repo)."""
    result = run_git(["status", "--short"], worktree)
    return result.stdout if result.success else ""


def get_diff_stat(worktree: Path) -> str:
    """Stat of unstaged changes, empty on failure."""
    result = run_git(["diff", "--stat"], worktree)
    return result.stdout.strip() if result.success else ""


def count_changed_files(worktree: Path) -> int:
    return len([line for line in get_status_short(worktree).splitlines() if line.strip()])
