"""
Discovery of ``process.env`` references in application source.

Finds variables read through ``process.env`` that are not declared in the
env file, with ``path:line:column`` locations for each use.
"""

import bisect
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set, Tuple

DEFAULT_SUFFIXES = (".ts", ".tsx")
DEFAULT_MAX_FILE_SIZE = 2_000_000
DEFAULT_PRUNE_DIRS = {
    "node_modules",
    ".git",
    "dist",
    "build",
    "out",
    ".next",
    ".turbo",
    "coverage",
    "storybook-static",
    "vendor",
    "tmp",
}

_DOT_REF = re.compile(r"process\.env(?:\?\.|\.)([A-Za-z0-9_]+)")
_BRACKET_REF = re.compile(r"process\.env(?:\?\.)?\[\s*(['\"])([A-Za-z0-9_]+)\1\s*\]")


@dataclass
class UsageIssue:
    """A variable read from process.env but missing from the env file."""
    key: str
    locations: List[str] = field(default_factory=list)


def extract_process_env_refs(text: str) -> List[Tuple[str, int]]:
    """
    Find every process.env read in ``text``.

    Returns:
        List of (key, offset) tuples ordered by offset
    """
    refs = [(m.group(1), m.start()) for m in _DOT_REF.finditer(text)]
    refs += [(m.group(2), m.start()) for m in _BRACKET_REF.finditer(text)]
    return sorted(refs, key=lambda ref: ref[1])


def _line_starts(text: str) -> List[int]:
    starts = [0]
    for index, char in enumerate(text):
        if char == '\n':
            starts.append(index + 1)
    return starts


def line_column(line_starts: List[int], offset: int) -> Tuple[int, int]:
    """1-based line and column of ``offset``."""
    line = bisect.bisect_right(line_starts, offset) - 1
    return line + 1, offset - line_starts[line] + 1


def find_process_env_usage(
    files: Iterable[Tuple[str, str]],
    env_keys: Set[str],
) -> List[UsageIssue]:
    """
    Report process.env keys that are not declared.

    Args:
        files: (relative path, file content) pairs
        env_keys: Keys declared in the env file

    Returns:
        One UsageIssue per undeclared key, sorted by key
    """
    missing: dict[str, UsageIssue] = {}

    for rel_path, text in files:
        refs = extract_process_env_refs(text)
        if not refs:
            continue

        starts = _line_starts(text)
        for key, offset in refs:
            if key in env_keys:
                continue
            line, column = line_column(starts, offset)
            issue = missing.setdefault(key, UsageIssue(key))
            issue.locations.append(f"{rel_path}:{line}:{column}")

    return [missing[key] for key in sorted(missing)]


def iter_source_files(
    project_root: str = ".",
    suffixes: Iterable[str] = DEFAULT_SUFFIXES,
    exclude_dirs: Optional[Set[str]] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
) -> Iterator[Tuple[str, str]]:
    """
    Walk the project and yield (relative path, content) of source files.

    Directories in ``exclude_dirs`` and hidden directories are pruned;
    files larger than ``max_file_size`` bytes are skipped.
    """
    root = Path(project_root)
    suffixes = tuple(suffixes)
    excluded = DEFAULT_PRUNE_DIRS if exclude_dirs is None else exclude_dirs

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if d not in excluded and not d.startswith('.')
        )

        for filename in sorted(filenames):
            if not filename.endswith(suffixes):
                continue

            path = Path(dirpath) / filename
            try:
                if path.stat().st_size > max_file_size:
                    continue
                text = path.read_text(errors="replace")
            except OSError:
                continue

            yield path.relative_to(root).as_posix(), text
