"""
Cache Key Patterns

Glob is the canonical dialect for pattern clears because Redis SCAN MATCH
speaks it natively. The in-process tier gets the same glob translated to an
anchored regex, so both tiers delete the same key set.

Glob syntax (Redis flavour):
- *        any run of characters, including ':'
- ?        exactly one character
- [abc]    one of; [^abc] none of; [a-z] ranges
- \\x      literal x

Callers that really need a regex use CachePattern.regex(). Redis can't
match regexes, so the remote tier scans every key and filters client side.
"""

import re
from dataclasses import dataclass, field
from typing import Pattern, Union

from magickit.cache.errors import InvalidPatternError


GLOB = "glob"
REGEX = "regex"


def glob_to_regex(glob: str) -> str:
    """Translate a Redis-style glob into an anchored regex source string."""
    parts = []
    i = 0
    n = len(glob)

    while i < n:
        char = glob[i]

        if char == "\\" and i + 1 < n:
            parts.append(re.escape(glob[i + 1]))
            i += 2
            continue

        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[":
            end = _find_class_end(glob, i + 1)
            if end == -1:
                # Unclosed bracket is literal
                parts.append(re.escape(char))
            else:
                parts.append(_translate_class(glob[i + 1:end]))
                i = end
        else:
            parts.append(re.escape(char))
        i += 1

    return "^(?:" + "".join(parts) + r")\Z"


def _find_class_end(glob: str, start: int) -> int:
    i = start
    if i < len(glob) and glob[i] == "^":
        i += 1
    # A ']' right after '[' or '[^' is a literal member
    if i < len(glob) and glob[i] == "]":
        i += 1
    while i < len(glob):
        if glob[i] == "\\":
            i += 2
            continue
        if glob[i] == "]":
            return i
        i += 1
    return -1


def _translate_class(body: str) -> str:
    negate = body.startswith("^")
    if negate:
        body = body[1:]

    members = []
    i = 0
    while i < len(body):
        char = body[i]
        if char == "\\" and i + 1 < len(body):
            members.append(re.escape(body[i + 1]))
            i += 2
            continue
        if char == "-" and members and i + 1 < len(body):
            members.append("-")
        else:
            members.append(r"\-" if char == "-" else re.escape(char))
        i += 1

    return "[" + ("^" if negate else "") + "".join(members) + "]"


@dataclass(frozen=True)
class CachePattern:
    """
    A key pattern in an explicit dialect.

    Plain strings passed to the cache service are globs; use
    CachePattern.regex() for regular expressions.
    """
    expression: str
    dialect: str = GLOB
    _compiled: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.dialect not in (GLOB, REGEX):
            raise InvalidPatternError(f"Unknown pattern dialect: {self.dialect}")

        source = glob_to_regex(self.expression) if self.dialect == GLOB else self.expression
        try:
            compiled = re.compile(source, re.DOTALL)
        except re.error as e:
            raise InvalidPatternError(f"Invalid {self.dialect} pattern {self.expression!r}: {e}") from e
        object.__setattr__(self, "_compiled", compiled)

    @classmethod
    def glob(cls, expression: str) -> "CachePattern":
        return cls(expression, GLOB)

    @classmethod
    def regex(cls, expression: str) -> "CachePattern":
        return cls(expression, REGEX)

    @property
    def compiled(self) -> Pattern:
        """Regex used against in-process keys (search semantics)."""
        return self._compiled

    @property
    def is_glob(self) -> bool:
        return self.dialect == GLOB

    def matches(self, key: str) -> bool:
        return self._compiled.search(key) is not None

    def __str__(self) -> str:
        return self.expression


PatternLike = Union[str, CachePattern]


def coerce_pattern(pattern: PatternLike) -> CachePattern:
    """Strings are globs."""
    if isinstance(pattern, CachePattern):
        return pattern
    return CachePattern.glob(pattern)
