"""
Safe .env file parser.

Parses the optional ralph.env overrides file without shell execution.
Values that look like shell injection are rejected; commands that need
pipes or chaining belong in a script referenced from the env file.
"""

import re
from pathlib import Path

FORBIDDEN_PATTERNS = [
    r'`',           # backticks
    r'\$\(',        # command substitution
    r'\$\{',        # variable expansion
    r';',           # command chaining
    r'&&',          # AND chaining
    r'\|\|',        # OR chaining
    r'\|',          # pipe
]

KEY_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')

TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")


def load_env(filepath: str | Path) -> dict[str, str]:
    """
    Parse env file safely, return dict.

    A leading "export " on a line is accepted and ignored.

    Raises:
        FileNotFoundError: if file doesn't exist
        ValueError: if syntax invalid or forbidden pattern found
    """
    result = {}
    path = Path(filepath)

    if not path.exists():
        raise FileNotFoundError(f"Env file not found: {filepath}")

    for lineno, line in enumerate(path.read_text().splitlines(), 1):
        line = line.strip()

        if not line or line.startswith('#'):
            continue

        if line.startswith('export '):
            line = line[len('export '):].lstrip()

        if '=' not in line:
            raise ValueError(f"{path.name}:{lineno}: Invalid syntax (no '=')")

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if not KEY_PATTERN.match(key):
            raise ValueError(f"{path.name}:{lineno}: Invalid key '{key}'")

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        for pattern in FORBIDDEN_PATTERNS:
            if re.search(pattern, value):
                raise ValueError(f"{path.name}:{lineno}: Forbidden pattern in value of {key}")

        result[key] = value

    return result


def load_env_optional(filepath: str | Path) -> dict[str, str]:
    """Like load_env, but a missing file yields an empty dict."""
    if not Path(filepath).exists():
        return {}
    return load_env(filepath)


def parse_bool(value: str) -> bool:
    """Parse a boolean env value. Raises ValueError for anything unrecognised."""
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean: '{value}'")
