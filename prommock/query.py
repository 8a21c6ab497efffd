"""Selector parser and query engine for a bounded subset of PromQL.

Supported forms::

    metric_name
    metric_name{label="v", other!="x", job=~"api.*", env!~"dev|test"}
    {__name__="metric_name", job="api"}
    metric_name{job="api"}[5m]
    metric_name offset 5m
    metric_name @ 1700000000
    42.5

Operators, aggregations and functions are not supported; route those
queries to a fixture instead.
"""
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union
import math
import re
import time

from prommock.errors import InvalidMatcherError, InvalidParameterError, QuerySyntaxError
from prommock.matchers import Matcher, MatchType
from prommock.series import METRIC_NAME_LABEL, LabelSet, Sample
from prommock.storage import Storage
from prommock.timeutil import parse_duration, seconds_to_ms

DEFAULT_LOOKBACK_MS = 5 * 60 * 1000
DEFAULT_MAX_POINTS = 11000

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_DURATION = re.compile(r"(?:\d+(?:ms|s|m|h|d|w|y))+")
_NUMBER = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_NUMBER_LITERAL = re.compile(r"^\s*(?:[-+]?(?:inf|nan)|[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*$", re.IGNORECASE)
_OFFSET = re.compile(r"offset\b")
_OPERATORS = ("=~", "!~", "!=", "=")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


@dataclass(frozen=True)
class Selector:
    """Parsed vector selector."""
    metric_name: Optional[str]
    matchers: Tuple[Matcher, ...] = ()
    range_ms: Optional[int] = None
    offset_ms: int = 0
    at_ms: Optional[int] = None

    @property
    def is_range(self) -> bool:
        return self.range_ms is not None

    @property
    def all_matchers(self) -> List[Matcher]:
        """Label matchers plus the implicit ``__name__`` matcher."""
        found = list(self.matchers)
        if self.metric_name is not None:
            found.insert(0, Matcher.metric_name(self.metric_name))
        return found


@dataclass(frozen=True)
class NumberLiteral:
    value: float


@dataclass(frozen=True)
class Vector:
    """One sample per series, evaluated at ``timestamp``."""
    timestamp: int
    samples: Tuple[Tuple[LabelSet, Sample], ...]
    result_type = "vector"

    def to_data(self) -> dict:
        return {
            "resultType": self.result_type,
            "result": [
                {"metric": labels.to_dict(), "value": format_point(self.timestamp, sample.value)}
                for labels, sample in self.samples
            ],
        }


@dataclass(frozen=True)
class Matrix:
    """Ordered samples per series."""
    series: Tuple[Tuple[LabelSet, Tuple[Sample, ...]], ...]
    window: Optional[Tuple[int, int]] = None
    result_type = "matrix"

    def to_data(self) -> dict:
        return {
            "resultType": self.result_type,
            "result": [
                {
                    "metric": labels.to_dict(),
                    "values": [format_point(s.timestamp, s.value) for s in samples],
                }
                for labels, samples in self.series
            ],
        }


@dataclass(frozen=True)
class Scalar:
    timestamp: int
    value: float
    result_type = "scalar"

    def to_data(self) -> dict:
        return {"resultType": self.result_type, "result": format_point(self.timestamp, self.value)}


@dataclass(frozen=True)
class Empty:
    """No series matched. Not an error."""
    result_type: str = "vector"
    window: Optional[Tuple[int, int]] = None

    def to_data(self) -> dict:
        return {"resultType": self.result_type, "result": []}


QueryResult = Union[Vector, Matrix, Scalar, Empty]


def format_value(value: float) -> str:
    """Format a sample value the way the Prometheus API does."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def format_point(timestamp_ms: int, value: float) -> list:
    return [timestamp_ms / 1000.0, format_value(value)]


class _Parser:
    """Hand-written recursive descent parser over the query string."""

    def __init__(self, query: str):
        self.query = query
        self.pos = 0

    def error(self, message: str, position: Optional[int] = None, fragment: Optional[str] = None):
        position = self.pos if position is None else position
        if fragment is None:
            fragment = self.query[position:position + 16]
        return QuerySyntaxError(message, self.query, position, fragment)

    def skip_ws(self):
        while self.pos < len(self.query) and self.query[self.pos].isspace():
            self.pos += 1

    def peek(self, text: str) -> bool:
        return self.query.startswith(text, self.pos)

    def at_end(self) -> bool:
        return self.pos >= len(self.query)

    def take(self, pattern) -> Optional[str]:
        match = pattern.match(self.query, self.pos)
        if not match:
            return None
        self.pos = match.end()
        return match.group(0)

    def parse(self) -> Selector:
        self.skip_ws()
        if self.at_end():
            raise self.error("empty query")

        metric_name = self.take(_METRIC_NAME)
        matchers: List[Matcher] = []
        self.skip_ws()

        if self.peek("{"):
            matchers = self.parse_matchers()
        elif metric_name is None:
            raise self.error("expected metric name or '{'")

        if metric_name is not None and any(m.name == METRIC_NAME_LABEL for m in matchers):
            raise self.error("metric name must not be set twice", fragment=metric_name)

        self.skip_ws()
        range_ms = None
        if self.peek("["):
            range_ms = self.parse_range()

        offset_ms, at_ms = self.parse_modifiers()

        self.skip_ws()
        if not self.at_end():
            if self.peek("}"):
                raise self.error("unbalanced '}'")
            raise self.error("unexpected input after selector")

        selector = Selector(metric_name, tuple(matchers), range_ms, offset_ms, at_ms)
        if all(m.matches_empty() for m in selector.all_matchers):
            raise self.error(
                "vector selector must contain at least one non-empty matcher",
                position=0,
                fragment=self.query.strip(),
            )
        return selector

    def parse_matchers(self) -> List[Matcher]:
        open_pos = self.pos
        self.pos += 1
        matchers: List[Matcher] = []
        while True:
            self.skip_ws()
            if self.at_end():
                raise self.error("unbalanced '{': missing '}'", position=open_pos,
                                 fragment=self.query[open_pos:])
            if self.peek("}"):
                self.pos += 1
                return matchers
            matchers.append(self.parse_matcher())
            self.skip_ws()
            if self.peek(","):
                self.pos += 1
            elif not self.peek("}"):
                if self.at_end():
                    raise self.error("unbalanced '{': missing '}'", position=open_pos,
                                     fragment=self.query[open_pos:])
                raise self.error("expected ',' or '}' after label matcher")

    def parse_matcher(self) -> Matcher:
        start = self.pos
        name = self.take(_LABEL_NAME)
        if name is None:
            raise self.error("expected label name")
        self.skip_ws()
        op_pos = self.pos
        op = next((o for o in _OPERATORS if self.peek(o)), None)
        if op is None or self.peek("=="):
            raise self.error("unknown label matching operator", position=op_pos,
                             fragment=self.query[op_pos:op_pos + 2])
        self.pos += len(op)
        self.skip_ws()
        value = self.parse_string()
        try:
            return Matcher(MatchType(op), name, value)
        except InvalidMatcherError as exc:
            raise InvalidMatcherError(
                exc.message, self.query, start, self.query[start:self.pos]
            ) from exc

    def parse_string(self) -> str:
        quote_pos = self.pos
        if self.at_end() or self.query[self.pos] not in "\"'":
            raise self.error("expected quoted label value")
        quote = self.query[self.pos]
        self.pos += 1
        out = []
        while not self.at_end():
            ch = self.query[self.pos]
            if ch == "\\":
                if self.pos + 1 >= len(self.query):
                    break
                nxt = self.query[self.pos + 1]
                out.append(_ESCAPES.get(nxt, "\\" + nxt))
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return "".join(out)
            out.append(ch)
            self.pos += 1
        raise self.error("unterminated quoted string", position=quote_pos,
                         fragment=self.query[quote_pos:])

    def parse_range(self) -> int:
        open_pos = self.pos
        self.pos += 1
        self.skip_ws()
        duration_pos = self.pos
        duration = self.take(_DURATION)
        self.skip_ws()
        if duration is None or not self.peek("]"):
            close = self.query.find("]", open_pos)
            end = close if close != -1 else len(self.query)
            if close == -1 and duration is not None:
                raise self.error("unbalanced '[': missing ']'", position=open_pos,
                                 fragment=self.query[open_pos:])
            raise self.error("unparsable range duration", position=duration_pos,
                             fragment=self.query[duration_pos:end])
        self.pos += 1
        range_ms = parse_duration(duration)
        if range_ms <= 0:
            raise self.error("range duration must be positive", position=duration_pos, fragment=duration)
        return range_ms

    def parse_modifiers(self) -> Tuple[int, Optional[int]]:
        offset_ms = None
        at_ms = None
        while True:
            self.skip_ws()
            word_pos = self.pos
            if self.take(_OFFSET):
                if offset_ms is not None:
                    raise self.error("offset may only be set once", position=word_pos)
                self.skip_ws()
                sign = -1 if self.peek("-") else 1
                if self.peek("-") or self.peek("+"):
                    self.pos += 1
                duration_pos = self.pos
                duration = self.take(_DURATION)
                if duration is None:
                    raise self.error("unparsable offset duration", position=duration_pos)
                offset_ms = sign * parse_duration(duration)
            elif self.peek("@"):
                if at_ms is not None:
                    raise self.error("@ may only be set once", position=word_pos)
                self.pos += 1
                self.skip_ws()
                number_pos = self.pos
                number = self.take(_NUMBER)
                if number is None:
                    raise self.error("expected unix timestamp after '@'", position=number_pos)
                try:
                    at_ms = seconds_to_ms(float(number))
                except ValueError:
                    raise self.error("invalid unix timestamp after '@'", position=number_pos) from None
            else:
                return offset_ms or 0, at_ms


def parse(query: str) -> Union[Selector, NumberLiteral]:
    """Parse a query into a Selector (or a NumberLiteral for scalar queries).

    Raises:
        QuerySyntaxError: Malformed query
        InvalidMatcherError: Matcher with an invalid regular expression
    """
    if _NUMBER_LITERAL.match(query):
        return NumberLiteral(float(query.strip()))
    return _Parser(query).parse()


def parse_selector(query: str) -> Selector:
    """Parse a query that must be a vector selector (e.g. series ``match[]``)."""
    parsed = parse(query)
    if not isinstance(parsed, Selector):
        raise QuerySyntaxError("expected a series selector", query, 0, query.strip())
    return parsed


class QueryEngine:
    """Evaluates selectors against a Storage.

    Args:
        storage: Storage backend to read from
        clock: Returns "now" in milliseconds; defaults to the wall clock
        lookback_ms: Instant queries ignore samples older than this
        max_points: Upper bound on points a range query may request
    """

    def __init__(
        self,
        storage: Storage,
        clock: Optional[Callable[[], int]] = None,
        lookback_ms: int = DEFAULT_LOOKBACK_MS,
        max_points: int = DEFAULT_MAX_POINTS,
    ):
        self.storage = storage
        self.clock = clock
        self.lookback_ms = lookback_ms
        self.max_points = max_points

    parse = staticmethod(parse)

    def _now(self) -> int:
        if self.clock is not None:
            return self.clock()
        return time.time_ns() // 1_000_000

    def evaluate(self, selector: Union[Selector, NumberLiteral], at: Optional[int] = None) -> QueryResult:
        """Evaluate a parsed query at an instant (ms); defaults to the clock."""
        instant = at if at is not None else self._now()

        if isinstance(selector, NumberLiteral):
            return Scalar(instant, selector.value)

        pinned = selector.at_ms if selector.at_ms is not None else instant
        ref = pinned - selector.offset_ms

        if selector.is_range:
            window = (ref - selector.range_ms, ref)
            found = self.storage.select(selector.all_matchers, time_range=window)
            if not found:
                return Empty("matrix", window)
            return Matrix(tuple((labels, tuple(samples)) for labels, samples in found), window)

        found = self.storage.select(selector.all_matchers, at=ref, lookback=self.lookback_ms)
        if not found:
            return Empty("vector")
        return Vector(instant, tuple((labels, samples[-1]) for labels, samples in found))

    def instant_query(self, query: str, at: Optional[int] = None) -> QueryResult:
        return self.evaluate(parse(query), at)

    def range_query(self, query: str, start: int, end: int, step: int) -> QueryResult:
        """Evaluate over [start, end] (ms).

        Selectors return the raw stored samples inside the window rather than
        resampling at ``step``; scalar literals produce one point per step.
        """
        if end < start:
            raise InvalidParameterError("end", end, "end timestamp must not be before start time")
        if step <= 0:
            raise InvalidParameterError("step", step, "zero or negative query resolution step widths are not accepted")
        if (end - start) // step + 1 > self.max_points:
            raise InvalidParameterError(
                "step", step,
                f"exceeded maximum resolution of {self.max_points} points per timeseries",
            )

        parsed = parse(query)
        if isinstance(parsed, NumberLiteral):
            points = tuple(Sample(t, parsed.value) for t in range(start, end + 1, step))
            return Matrix(((LabelSet(), points),), (start, end))

        if parsed.is_range:
            position = query.find("[")
            raise QuerySyntaxError(
                "invalid expression type \"range vector\" for range query, must be Scalar or instant Vector",
                query, max(position, 0), query[max(position, 0):],
            )

        width = end - start
        window_end = parsed.at_ms if parsed.at_ms is not None else end
        window = (window_end - width - parsed.offset_ms, window_end - parsed.offset_ms)
        found = self.storage.select(parsed.all_matchers, time_range=window)
        if not found:
            return Empty("matrix", window)
        return Matrix(tuple((labels, tuple(samples)) for labels, samples in found), window)
