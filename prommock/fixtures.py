"""Declarative fixture routes that short-circuit dynamic query evaluation.

A fixture document looks like::

    version: 1
    defaults:
      status: 200
      latency: 0ms
    routes:
      - method: GET
        path: /api/v1/query
        params:
          query: up
        response:
          body: {"status": "success", "data": {"resultType": "vector", "result": []}}
      - path: /api/v1/query_range
        params: {query: 'rate(http_requests_total[5m])', start: now-15m, end: now, step: 60s}
        response:
          latency: 250ms
          data: {"resultType": "matrix", "result": []}

Routes are tried in file order and the first match wins. ``body`` is returned
verbatim; ``data`` (with optional ``warnings``, ``errorType`` and ``error``)
is wrapped in the Prometheus response envelope. The ``match``/``respond``
spelling is accepted as an alias of ``params``/``response``.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import os

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from prommock.errors import FixtureLoadError
from prommock.policy import SOURCE_FIXTURE, Response
from prommock.timeutil import duration_to_ms, parse_step, resolve_time

SUPPORTED_VERSIONS = (1,)
ENVELOPE_STATUSES = ("success", "error")
TIME_PARAMS = ("time", "start", "end")
STEP_PARAMS = ("step",)

QueryParams = Mapping[str, Union[str, Sequence[str]]]


def _split_status(data):
    """Move a Prometheus "success"/"error" status out of the HTTP status slot."""
    if isinstance(data, dict) and isinstance(data.get("status"), str):
        status = data["status"].strip()
        if status.lower() in ENVELOPE_STATUSES:
            data = dict(data)
            data.pop("status")
            data.setdefault("envelope_status", status.lower())
        elif status.isdigit():
            data = dict(data, status=int(status))
    return data


class FixtureDefaults(BaseModel):
    """Values applied when a route omits them."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    status: int = 200
    latency_ms: Optional[int] = Field(default=None, alias="latency")
    envelope_status: str = "success"

    @model_validator(mode="before")
    @classmethod
    def split_status(cls, data):
        return _split_status(data)

    @field_validator("latency_ms", mode="before")
    @classmethod
    def parse_latency(cls, v):
        return duration_to_ms(v)


class FixtureResponse(BaseModel):
    """Response template of a route."""
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    status: Optional[int] = None
    latency_ms: Optional[int] = Field(default=None, alias="latency")
    body: Any = None
    data: Any = None
    warnings: Optional[List[str]] = None
    error_type: Optional[str] = Field(default=None, alias="errorType")
    error: Optional[str] = None
    envelope_status: Optional[str] = None
    content_type: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def split_status(cls, data):
        return _split_status(data)

    @field_validator("latency_ms", mode="before")
    @classmethod
    def parse_latency(cls, v):
        return duration_to_ms(v)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v is not None and not 100 <= v <= 599:
            raise ValueError(f"HTTP status must be between 100 and 599, got {v}")
        return v

    @model_validator(mode="after")
    def validate_payload(self):
        if self.body is not None and self.data is not None:
            raise ValueError("response may define either 'body' or 'data', not both")
        return self


class FixtureRoute(BaseModel):
    """(method, path, query-parameter constraints) -> response template."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    method: str = "GET"
    path: str
    params: Dict[str, str] = Field(default_factory=dict)
    response: FixtureResponse = Field(default_factory=FixtureResponse)

    @model_validator(mode="before")
    @classmethod
    def accept_match_respond(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "match" in data:
            match = dict(data.pop("match") or {})
            if "path" in match:
                data.setdefault("path", match.pop("path"))
            if "method" in match:
                data.setdefault("method", match.pop("method"))
            params = dict(data.get("params") or {})
            params.update(match)
            data["params"] = params
        if "respond" in data:
            data.setdefault("response", data.pop("respond"))
        return data

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v):
        v = v.strip().upper()
        if not v:
            raise ValueError("method must not be empty")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError(f"path must start with '/', got {v!r}")
        return v

    @field_validator("params", mode="before")
    @classmethod
    def stringify_params(cls, v):
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): _scalar_to_str(val) for k, val in v.items()}
        return v


def _scalar_to_str(value):
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    return value


class FixtureDocument(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = 1
    defaults: FixtureDefaults = Field(default_factory=FixtureDefaults)
    routes: List[FixtureRoute] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v):
        if v not in SUPPORTED_VERSIONS:
            raise ValueError(f"unsupported fixture version {v}, expected one of {SUPPORTED_VERSIONS}")
        return v

    @field_validator("defaults", mode="before")
    @classmethod
    def default_defaults(cls, v):
        return {} if v is None else v

    @field_validator("routes", mode="before")
    @classmethod
    def default_routes(cls, v):
        return [] if v is None else v


@dataclass(frozen=True)
class ResolvedResponse:
    """A matched route merged with the document defaults."""
    status: int
    body: Any
    content_type: str
    latency_ms: Optional[int]
    route_index: int
    headers: Dict[str, str] = field(default_factory=dict)

    def to_response(self) -> Response:
        return Response(
            status=self.status,
            body=self.body,
            content_type=self.content_type,
            headers=dict(self.headers),
            source=SOURCE_FIXTURE,
        )


class FixtureBook:
    """Ordered, immutable set of fixture routes."""

    def __init__(self, document: Optional[FixtureDocument] = None):
        self._document = document or FixtureDocument()

    @classmethod
    def load(cls, source: Union[bytes, str]) -> "FixtureBook":
        """Parse a YAML (or JSON) fixture document.

        Raises:
            FixtureLoadError: Naming the offending route index when the
                problem is inside a route
        """
        try:
            raw = yaml.safe_load(source)
        except yaml.YAMLError as e:
            raise FixtureLoadError(f"invalid YAML: {e}") from e

        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise FixtureLoadError(f"fixture document must be a mapping, got {type(raw).__name__}")

        try:
            return cls(FixtureDocument.model_validate(raw))
        except ValidationError as e:
            raise _to_load_error(e) from e

    @classmethod
    def load_from_path(cls, path: str) -> "FixtureBook":
        if not os.path.exists(path):
            raise FileNotFoundError(f"Fixture file not found: {path}")
        with open(path, "rb") as f:
            return cls.load(f.read())

    @property
    def version(self) -> int:
        return self._document.version

    @property
    def defaults(self) -> FixtureDefaults:
        return self._document.defaults

    @property
    def routes(self) -> List[FixtureRoute]:
        return list(self._document.routes)

    def __len__(self) -> int:
        return len(self._document.routes)

    def match_request(
        self,
        method: str,
        path: str,
        query_params: Optional[QueryParams] = None,
        now_ms: Optional[int] = None,
    ) -> Optional[ResolvedResponse]:
        """First route (in file order) matching the request, or None.

        Args:
            method: HTTP method
            path: Request path, compared exactly
            query_params: Incoming parameters; values may be strings or lists
            now_ms: Reference instant for relative time parameters (``now-15m``)
        """
        method = method.upper()
        query_params = query_params or {}
        for index, route in enumerate(self._document.routes):
            if route.method != method or route.path != path:
                continue
            if all(
                _param_matches(name, expected, query_params.get(name), now_ms)
                for name, expected in route.params.items()
            ):
                return self._resolve(index, route)
        return None

    def _resolve(self, index: int, route: FixtureRoute) -> ResolvedResponse:
        defaults = self._document.defaults
        resp = route.response
        status = resp.status if resp.status is not None else defaults.status
        latency_ms = resp.latency_ms if resp.latency_ms is not None else defaults.latency_ms

        if resp.body is None and _uses_envelope(resp):
            status_text = resp.envelope_status
            if status_text is None:
                status_text = "error" if resp.error_type or resp.error else defaults.envelope_status
            body: Any = {"status": status_text}
            if resp.data is not None:
                body["data"] = resp.data
            if resp.warnings:
                body["warnings"] = list(resp.warnings)
            if resp.error_type is not None:
                body["errorType"] = resp.error_type
            if resp.error is not None:
                body["error"] = resp.error
        else:
            body = resp.body

        if resp.content_type:
            content_type = resp.content_type
        elif isinstance(body, str):
            content_type = "text/plain; charset=utf-8"
        else:
            content_type = "application/json"

        return ResolvedResponse(
            status=status,
            body=body,
            content_type=content_type,
            latency_ms=latency_ms,
            route_index=index,
            headers=dict(resp.headers),
        )


def _uses_envelope(resp: FixtureResponse) -> bool:
    return any(
        value is not None
        for value in (resp.data, resp.envelope_status, resp.error_type, resp.error, resp.warnings)
    )


def _param_matches(name: str, expected: str, got, now_ms: Optional[int]) -> bool:
    if got is None:
        return False
    candidates = [got] if isinstance(got, str) else list(got)
    return any(_values_equal(name, expected, str(value), now_ms) for value in candidates)


def _values_equal(name: str, expected: str, got: str, now_ms: Optional[int]) -> bool:
    if expected == got:
        return True
    try:
        if name in TIME_PARAMS:
            return resolve_time(expected, now_ms) == resolve_time(got, now_ms)
        if name in STEP_PARAMS:
            return parse_step(expected) == parse_step(got)
    except ValueError:
        return False
    return False


def _to_load_error(error: ValidationError) -> FixtureLoadError:
    first = error.errors()[0]
    loc = first.get("loc", ())
    route_index = None
    if len(loc) >= 2 and loc[0] == "routes" and isinstance(loc[1], int):
        route_index = loc[1]
        where = ".".join(str(part) for part in loc[2:])
    else:
        where = ".".join(str(part) for part in loc)
    message = first.get("msg", "invalid value")
    if where:
        message = f"{where}: {message}"
    return FixtureLoadError(message, route_index=route_index)
