"""
Glob-style exclusion of variable names.

Patterns use ``*`` for any run of characters and ``?`` for a single
character, and always match the whole key. Keys starting with a built-in
prefix are excluded from every sync target regardless of configuration.
"""

import re
from functools import lru_cache
from typing import Dict, Iterable, List, Set, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .inference import EnvVar


# dotenvx bookkeeping keys (public keys, key ids) never leave the file
BUILTIN_EXCLUDE_PREFIXES: Tuple[str, ...] = ("DOTENV_",)


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """
    Compile a glob pattern to an anchored regular expression.

    Every regex metacharacter is escaped except the two glob wildcards.
    """
    parts = []
    for char in pattern:
        if char == '*':
            parts.append('.*')
        elif char == '?':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    return re.compile(''.join(parts), re.DOTALL)


def matches(key: str, patterns: Iterable[str]) -> bool:
    """Return True if ``key`` matches any of ``patterns``."""
    return any(glob_to_regex(pattern).fullmatch(key) for pattern in patterns)


def builtin_patterns() -> List[str]:
    return [f"{prefix}*" for prefix in BUILTIN_EXCLUDE_PREFIXES]


def should_exclude(key: str, patterns: Iterable[str] = ()) -> bool:
    """
    Check whether a key is kept out of sync targets.

    Args:
        key: Variable name
        patterns: User-configured exclude globs for the target

    Returns:
        True if the key matches a configured pattern or a built-in prefix
    """
    return matches(key, [*builtin_patterns(), *patterns])


def filter_record(record: Dict[str, str], patterns: Iterable[str] = ()) -> Dict[str, str]:
    patterns = list(patterns)
    return {key: value for key, value in record.items() if not should_exclude(key, patterns)}


def filter_keys(keys: Iterable[str], patterns: Iterable[str] = ()) -> Set[str]:
    patterns = list(patterns)
    return {key for key in keys if not should_exclude(key, patterns)}


def filter_env_vars(env_vars: List["EnvVar"], pattern: str | None = None) -> List["EnvVar"]:
    """Keep only variables whose key matches ``pattern`` (all when empty)."""
    if not pattern:
        return env_vars
    regex = glob_to_regex(pattern)
    return [var for var in env_vars if regex.fullmatch(var.key)]
