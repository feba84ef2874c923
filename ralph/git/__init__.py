"""Git operations for the pipeline.

Only read-only queries live here: the worker owns every commit.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
- Functions returning parsed values (str, int): Return empty/zero on failure.
"""

from ralph.git.runner import GitResult, run_git
from ralph.git.status import count_changed_files, get_diff_stat, get_status_short

__all__ = [
    "GitResult",
    "run_git",
    "count_changed_files",
    "get_diff_stat",
    "get_status_short",
]
