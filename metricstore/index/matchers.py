"""
Label Matchers

Provides:
- Equality / inequality matchers
- Anchored regex matchers
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Pattern

from ..errors import ParseError


class MatchType(Enum):
    """Label matcher operators"""
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"


@dataclass(frozen=True)
class LabelMatcher:
    """Matches a single label value"""

    name: str
    type: MatchType
    value: str
    _pattern: Optional[Pattern] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.type in (MatchType.REGEX, MatchType.NOT_REGEX):
            try:
                pattern = re.compile(f"^(?:{self.value})$")
            except re.error as e:
                raise ParseError(f"invalid regex {self.value!r} for label {self.name!r}: {e}")
            object.__setattr__(self, "_pattern", pattern)

    def matches(self, value: str) -> bool:
        """Check a label value (empty string means label absent)"""
        if self.type == MatchType.EQUAL:
            return value == self.value
        if self.type == MatchType.NOT_EQUAL:
            return value != self.value
        if self.type == MatchType.REGEX:
            return self._pattern.match(value) is not None
        return self._pattern.match(value) is None

    @property
    def matches_empty(self) -> bool:
        return self.matches("")

    def __str__(self) -> str:
        return f'{self.name}{self.type.value}"{self.value}"'


def equal(name: str, value: str) -> LabelMatcher:
    return LabelMatcher(name, MatchType.EQUAL, value)


def regex(name: str, value: str) -> LabelMatcher:
    return LabelMatcher(name, MatchType.REGEX, value)
