"""Core facade wiring storage, query engine, fixtures and mock policy together.

The HTTP layer talks to a ``Backend`` only; everything below it is
transport-agnostic and never logs.
"""
from typing import Dict, Iterable, List, Optional, Union

from prommock.config import ServerConfig
from prommock.decoder import ENCODING_SNAPPY, decode
from prommock.errors import InvalidParameterError
from prommock.fixtures import FixtureBook, QueryParams, ResolvedResponse
from prommock.policy import MockPolicy
from prommock.query import QueryEngine, QueryResult, parse_selector
from prommock.series import LabelSet
from prommock.storage import MemoryStorage, Storage
from prommock.timeutil import parse_step, resolve_time, seconds_to_ms

TimeParam = Union[int, float, str, None]


class Backend:
    """Entry points consumed by the transport layer.

    Args:
        storage: Time series store; a fresh MemoryStorage by default
        fixtures: Canned responses checked before dynamic handling
        policy: Clock, latency and error injection
        lookback_ms: Instant query staleness window
        max_points: Range query resolution guard
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        fixtures: Optional[FixtureBook] = None,
        policy: Optional[MockPolicy] = None,
        lookback_ms: Optional[int] = None,
        max_points: Optional[int] = None,
    ):
        self.storage = storage if storage is not None else MemoryStorage()
        self.fixtures = fixtures if fixtures is not None else FixtureBook()
        self.policy = policy if policy is not None else MockPolicy()

        engine_kwargs = {}
        if lookback_ms is not None:
            engine_kwargs["lookback_ms"] = lookback_ms
        if max_points is not None:
            engine_kwargs["max_points"] = max_points
        self.engine = QueryEngine(self.storage, clock=self.policy.now_ms, **engine_kwargs)

    @classmethod
    def from_config(cls, config: ServerConfig, storage: Optional[Storage] = None) -> "Backend":
        """Assemble a backend from validated configuration."""
        fixtures = FixtureBook.load_from_path(config.fixtures) if config.fixtures else FixtureBook()
        return cls(
            storage=storage,
            fixtures=fixtures,
            policy=MockPolicy.from_settings(config.mock),
            lookback_ms=config.query.lookback_ms,
            max_points=config.query.max_points,
        )

    def now_ms(self) -> int:
        return self.policy.now_ms()

    def match_fixture(
        self, method: str, path: str, query_params: Optional[QueryParams] = None
    ) -> Optional[ResolvedResponse]:
        return self.fixtures.match_request(method, path, query_params, now_ms=self.now_ms())

    def handle_write(self, body: bytes, encoding: Optional[str] = ENCODING_SNAPPY) -> int:
        """Decode a remote-write body and ingest it atomically.

        Returns:
            Number of samples ingested

        Raises:
            DecodeError: Body could not be decoded; nothing was ingested
            IngestError: A sample was rejected; nothing was ingested
        """
        return self.storage.ingest_many(decode(body, encoding))

    def handle_instant_query(self, query: str, time: TimeParam = None) -> QueryResult:
        at = self._resolve_time("time", time) if time not in (None, "") else None
        return self.engine.instant_query(query, at)

    def handle_range_query(self, query: str, start: TimeParam, end: TimeParam, step: TimeParam) -> QueryResult:
        start_ms = self._resolve_time("start", start)
        end_ms = self._resolve_time("end", end)
        step_ms = self._resolve_step(step)
        return self.engine.range_query(query, start_ms, end_ms, step_ms)

    def handle_labels(self) -> List[str]:
        return sorted(self.storage.label_names())

    def handle_label_values(self, name: str) -> List[str]:
        return sorted(self.storage.label_values(name))

    def handle_series(self, match: Optional[Iterable[str]] = None) -> List[LabelSet]:
        """Series matching any of the ``match[]`` selectors (all series if none)."""
        selectors = [parse_selector(m) for m in (match or [])]
        if not selectors:
            return self.storage.series([])

        found: Dict[str, LabelSet] = {}
        for selector in selectors:
            for labels in self.storage.series(selector.all_matchers):
                found.setdefault(labels.fingerprint(), labels)
        return sorted(found.values(), key=lambda labels: labels.pairs)

    def _resolve_time(self, name: str, value: TimeParam) -> int:
        if value is None or value == "":
            raise InvalidParameterError(name, value, "parameter is required")
        try:
            return resolve_time(value, self.now_ms())
        except ValueError as e:
            raise InvalidParameterError(name, value, str(e)) from e

    def _resolve_step(self, value: TimeParam) -> int:
        if value is None or value == "":
            raise InvalidParameterError("step", value, "parameter is required")
        try:
            if isinstance(value, str):
                return parse_step(value)
            if isinstance(value, bool):
                raise ValueError(f"invalid step: {value!r}")
            return seconds_to_ms(float(value), "step")
        except ValueError as e:
            raise InvalidParameterError("step", value, str(e)) from e
