"""
Repository path globs compiled once into anchored regular expressions.

Pattern rules:
- a trailing ``/`` marks a directory prefix (``dist/`` matches everything beneath ``dist``)
- a pattern without wildcards matches the exact path or anything beneath it
- ``*`` matches within one segment, ``?`` matches one non-separator character
- ``**`` matches across segments, including zero segments when followed by ``/``
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from worktree_orchestrator.domain.models import normalize_repo_path

if TYPE_CHECKING:
    from collections.abc import Iterable

_WILDCARD_CHARS: Final[frozenset[str]] = frozenset("*?")


@dataclass(frozen=True, slots=True)
class PathMatcher:
    """One compiled pattern."""

    pattern: str
    regex: re.Pattern[str]

    @classmethod
    def compile(cls, pattern: str) -> PathMatcher:
        return _compile_cached(pattern)

    def matches(self, path: str) -> bool:
        return self.regex.fullmatch(normalize_repo_path(path).lstrip("/")) is not None


@dataclass(frozen=True, slots=True)
class PatternSet:
    """Ordered collection of matchers sharing one ``matches`` query."""

    matchers: tuple[PathMatcher, ...] = ()

    @classmethod
    def of(cls, patterns: Iterable[str]) -> PatternSet:
        return cls(tuple(PathMatcher.compile(pattern) for pattern in patterns))

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(matcher.pattern for matcher in self.matchers)

    def matches(self, path: str) -> bool:
        return self.first_match(path) is not None

    def first_match(self, path: str) -> str | None:
        for matcher in self.matchers:
            if matcher.matches(path):
                return matcher.pattern
        return None

    def __bool__(self) -> bool:
        return bool(self.matchers)

    def __len__(self) -> int:
        return len(self.matchers)


@functools.lru_cache(maxsize=1024)
def _compile_cached(pattern: str) -> PathMatcher:
    if not isinstance(pattern, str):
        raise TypeError(f"pattern must be a string, got {type(pattern).__name__}")
    normalized = normalize_repo_path(pattern).lstrip("/")
    if not normalized:
        raise ValueError("pattern must not be empty")

    if normalized.endswith("/"):
        body = normalized.rstrip("/")
        expression = f"{_translate(body)}/.*"
    elif _WILDCARD_CHARS.isdisjoint(normalized):
        expression = f"{re.escape(normalized)}(?:/.*)?"
    else:
        expression = _translate(normalized)

    return PathMatcher(pattern=pattern, regex=re.compile(expression, re.DOTALL))


def _translate(glob: str) -> str:
    parts: list[str] = []
    index = 0
    length = len(glob)
    while index < length:
        char = glob[index]
        if glob.startswith("**", index):
            index += 2
            if index < length and glob[index] == "/":
                parts.append("(?:.*/)?")
                index += 1
            else:
                parts.append(".*")
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        index += 1
    return "".join(parts)


__all__ = ["PathMatcher", "PatternSet"]
