"""Label matchers used to select series."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional, Pattern
import re

from prommock.errors import InvalidMatcherError
from prommock.series import METRIC_NAME_LABEL


class MatchType(Enum):
    """Matcher operators, keyed by their query-language spelling."""
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"

    @property
    def is_regex(self) -> bool:
        return self in (MatchType.REGEX, MatchType.NOT_REGEX)

    @property
    def is_negative(self) -> bool:
        return self in (MatchType.NOT_EQUAL, MatchType.NOT_REGEX)


@dataclass(frozen=True)
class Matcher:
    """Predicate over a single label.

    A missing label reads as the empty string, so ``job!="api"`` matches a
    series that has no ``job`` label at all. Regex patterns are compiled once
    on construction and matched against the whole value.
    """
    type: MatchType
    name: str
    value: str
    _regex: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.type.is_regex:
            try:
                compiled = re.compile(self.value)
            except re.error as exc:
                raise InvalidMatcherError(
                    f"invalid regular expression in matcher for {self.name!r}: {exc}",
                    fragment=self.value,
                ) from exc
            object.__setattr__(self, "_regex", compiled)

    @classmethod
    def equal(cls, name: str, value: str) -> "Matcher":
        return cls(MatchType.EQUAL, name, value)

    @classmethod
    def not_equal(cls, name: str, value: str) -> "Matcher":
        return cls(MatchType.NOT_EQUAL, name, value)

    @classmethod
    def regex(cls, name: str, pattern: str) -> "Matcher":
        return cls(MatchType.REGEX, name, pattern)

    @classmethod
    def not_regex(cls, name: str, pattern: str) -> "Matcher":
        return cls(MatchType.NOT_REGEX, name, pattern)

    @classmethod
    def metric_name(cls, name: str) -> "Matcher":
        return cls(MatchType.EQUAL, METRIC_NAME_LABEL, name)

    def matches_value(self, actual: str) -> bool:
        if self.type is MatchType.EQUAL:
            return actual == self.value
        if self.type is MatchType.NOT_EQUAL:
            return actual != self.value
        hit = self._regex.fullmatch(actual) is not None
        return hit if self.type is MatchType.REGEX else not hit

    def matches(self, labels: Mapping) -> bool:
        """Evaluate against a LabelSet (or any name -> value mapping)."""
        return self.matches_value(labels.get(self.name, ""))

    def matches_empty(self) -> bool:
        """Whether a series without this label would match."""
        return self.matches_value("")

    def __str__(self) -> str:
        escaped = self.value.replace("\\", "\\\\").replace('"', '\\"')
        return f'{self.name}{self.type.value}"{escaped}"'


def matches_all(matchers: Iterable[Matcher], labels: Mapping) -> bool:
    """Conjunction of all matchers; an empty matcher list matches everything."""
    for matcher in matchers:
        if not matcher.matches(labels):
            return False
    return True
