"""Error taxonomy shared by the core and the HTTP layer."""
from typing import Optional


class PromMockError(Exception):
    """Base class for all errors raised by prom-mock."""


class DecodeError(PromMockError):
    """Remote-write body could not be decoded."""

    def __init__(self, message: str, entry_index: Optional[int] = None):
        self.entry_index = entry_index
        if entry_index is not None:
            message = f"timeseries[{entry_index}]: {message}"
        super().__init__(message)


class DecompressionError(DecodeError):
    """Corrupt or truncated compressed frame."""


class DeserializationError(DecodeError):
    """Decompressed bytes are not a valid write request."""


class IngestError(PromMockError):
    """A sample was rejected at the storage boundary."""

    def __init__(self, message: str, labels=None, sample=None):
        self.labels = labels
        self.sample = sample
        super().__init__(message)


class QueryParseError(PromMockError):
    """Malformed query string.

    ``position`` and ``fragment`` locate the problem inside ``query``.
    """

    error_type = "bad_data"

    def __init__(self, message: str, query: str = "", position: int = 0, fragment: str = ""):
        self.message = message
        self.query = query
        self.position = position
        self.fragment = fragment
        super().__init__(self._render())

    def _render(self) -> str:
        if self.fragment:
            return f"{self.message} at position {self.position}: {self.fragment!r}"
        return f"{self.message} at position {self.position}"


class QuerySyntaxError(QueryParseError):
    """Bad syntax: unbalanced braces, unknown operator, bad duration."""


class InvalidMatcherError(QueryParseError):
    """Syntactically valid matcher that cannot be built (e.g. bad regex)."""


class InvalidParameterError(PromMockError):
    """A request parameter (time, step, match[]) could not be parsed."""

    error_type = "bad_data"

    def __init__(self, name: str, value, reason: str = ""):
        self.name = name
        self.value = value
        detail = f": {reason}" if reason else ""
        super().__init__(f"invalid parameter {name!r} = {value!r}{detail}")


class FixtureLoadError(PromMockError):
    """Fixture document failed to parse or validate."""

    def __init__(self, message: str, route_index: Optional[int] = None):
        self.route_index = route_index
        if route_index is not None:
            message = f"routes[{route_index}]: {message}"
        super().__init__(message)


class InjectedError(PromMockError):
    """Deliberate failure produced by the mock policy."""

    status_code = 503
    error_type = "unavailable"

    def __init__(self, message: str = "service unavailable"):
        super().__init__(message)
