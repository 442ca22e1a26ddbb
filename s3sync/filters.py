"""File name filtering.

Patterns are regular expressions searched in the file name only, never in
the directory part of the path. An empty pattern accepts every file.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

MATCH_ALL = ".*"


def compile_pattern(pattern: str | None) -> re.Pattern[str]:
    """Compile *pattern*, treating ``None`` or blank as match-everything.

    Raises ``re.error`` for an invalid expression.
    """
    if pattern is None or not pattern.strip():
        pattern = MATCH_ALL
    return re.compile(pattern)


def matches(filename: str, pattern: str | re.Pattern[str] | None = None) -> bool:
    """Return whether *filename* is relevant under *pattern*."""
    if not isinstance(pattern, re.Pattern):
        pattern = compile_pattern(pattern)
    return pattern.search(os.path.basename(filename)) is not None


class PathFilter:
    """Compiled, reusable form of :func:`matches`."""

    def __init__(self, pattern: str | None = None):
        self._regex = compile_pattern(pattern)

    @property
    def pattern(self) -> str:
        return self._regex.pattern

    def accepts(self, path: Path | str) -> bool:
        name = os.path.basename(str(path))
        if not name:
            return False
        if self._regex.search(name) is None:
            logger.debug("Ignoring %s (does not match %r)", name, self._regex.pattern)
            return False
        return True
