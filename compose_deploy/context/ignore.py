"""Ignore-file classification and filtering for build contexts.

A `.dockerignore` file at the root of the source directory applies to the
whole tree; `.gitignore` files apply to the directory that holds them.
Patterns use the usual glob syntax (`*`, `?`, `**`) with `!` negation, and
the last matching pattern wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from compose_deploy.types import IgnoreFileType

logger = logging.getLogger(__name__)

# Always applied before user patterns
DEFAULT_IGNORE_PATTERNS = ["**/.git"]


def _translate(pattern: str) -> re.Pattern[str]:
    """Translate a glob pattern to a regex matching POSIX relative paths."""
    regex = ""
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            regex += "(?:.*/)?"
            i += 3
        elif pattern.startswith("**", i):
            regex += ".*"
            i += 2
        elif pattern[i] == "*":
            regex += "[^/]*"
            i += 1
        elif pattern[i] == "?":
            regex += "[^/]"
            i += 1
        else:
            regex += re.escape(pattern[i])
            i += 1
    return re.compile(f"^{regex}$")


@dataclass
class IgnorePattern:
    """A single compiled ignore pattern.

    Attributes:
        pattern: Original pattern text (without the negation prefix).
        base: POSIX directory the pattern is relative to ('' for the root).
        negated: Whether the pattern re-includes matching paths.
    """

    pattern: str
    base: str = ""
    negated: bool = False

    def __post_init__(self) -> None:
        body = self.pattern.strip().rstrip("/")
        if body.startswith("/"):
            body = body.lstrip("/")
        self._regex = _translate(body)

    def matches(self, rel_path: str) -> bool:
        """Check whether a path, or one of its parent directories, matches."""
        if self.base:
            if not rel_path.startswith(self.base + "/"):
                return False
            rel_path = rel_path[len(self.base) + 1 :]

        parts = PurePosixPath(rel_path).parts
        return any(
            self._regex.match("/".join(parts[: i + 1])) for i in range(len(parts))
        )


def parse_ignore_lines(
    content: str, base: str = "", anchored: bool = True
) -> list[IgnorePattern]:
    """Parse the lines of an ignore file into patterns.

    Args:
        content: Ignore file content.
        base: POSIX directory the patterns are relative to.
        anchored: If False, patterns without a slash match at any depth
            (gitignore semantics).

    Returns:
        List of IgnorePattern in file order.
    """
    patterns: list[IgnorePattern] = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        negated = line.startswith("!")
        if negated:
            line = line[1:]

        if not anchored and "/" not in line.rstrip("/"):
            line = f"**/{line}"

        patterns.append(IgnorePattern(pattern=line, base=base, negated=negated))
    return patterns


class FileIgnorer:
    """Filter predicate over the files of a source directory."""

    def __init__(self, base_dir: Path, nogitignore: bool = False) -> None:
        self.base_dir = base_dir
        self.nogitignore = nogitignore
        self._patterns: list[IgnorePattern] = [
            IgnorePattern(pattern=p) for p in DEFAULT_IGNORE_PATTERNS
        ]

    def get_ignore_file_type(self, rel_path: str) -> IgnoreFileType | None:
        """Classify a path relative to the base directory.

        Args:
            rel_path: Path relative to the base directory.

        Returns:
            The ignore file type, or None if the file is not an ignore file.
        """
        posix = PurePosixPath(Path(rel_path).as_posix())
        if str(posix) == ".dockerignore":
            return IgnoreFileType.DOCKER_IGNORE
        if posix.name == ".gitignore" and not self.nogitignore:
            return IgnoreFileType.GIT_IGNORE
        return None

    def add_ignore_file(self, path: Path, file_type: IgnoreFileType) -> None:
        """Load patterns from an ignore file.

        Args:
            path: Absolute path of the ignore file.
            file_type: Classification returned by get_ignore_file_type().
        """
        content = path.read_text(encoding="utf-8", errors="replace")
        if file_type is IgnoreFileType.DOCKER_IGNORE:
            self._patterns.extend(parse_ignore_lines(content))
        else:
            rel_dir = path.parent.relative_to(self.base_dir).as_posix()
            base = "" if rel_dir == "." else rel_dir
            self._patterns.extend(parse_ignore_lines(content, base, anchored=False))
        logger.debug("Loaded %s patterns from %s", file_type.value, path)

    def filter(self, path: Path) -> bool:
        """Return True if the file should be kept in the archive."""
        rel_path = path.relative_to(self.base_dir).as_posix()
        ignored = False
        for pattern in self._patterns:
            if pattern.matches(rel_path):
                ignored = not pattern.negated
        return not ignored


__all__ = [
    "DEFAULT_IGNORE_PATTERNS",
    "FileIgnorer",
    "IgnorePattern",
    "parse_ignore_lines",
]
