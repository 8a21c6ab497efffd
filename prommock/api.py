"""Prometheus-compatible HTTP API using FastAPI."""
from typing import Callable, Dict, List, Optional
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import Response as HTTPResponse

from prommock.backend import Backend
from prommock.errors import (
    DecodeError,
    IngestError,
    InvalidMatcherError,
    InvalidParameterError,
    PromMockError,
    QueryParseError,
)
from prommock.metrics import SelfMetrics
from prommock.policy import SOURCE_INJECTED, Response, error_envelope

logger = logging.getLogger(__name__)

Params = Dict[str, List[str]]


def success(data, warnings: Optional[List[str]] = None) -> Response:
    payload = {"status": "success", "data": data}
    if warnings:
        payload["warnings"] = warnings
    return Response.json(payload)


def error_response(exc: PromMockError) -> Response:
    """Map a core error onto the HTTP status and body Prometheus would send."""
    if isinstance(exc, (DecodeError, IngestError)):
        return Response.text(str(exc), status=400)
    if isinstance(exc, InvalidMatcherError):
        return Response.json(error_envelope(exc.error_type, str(exc)), status=422)
    if isinstance(exc, (QueryParseError, InvalidParameterError)):
        return Response.json(error_envelope(exc.error_type, str(exc)), status=400)
    return Response.json(error_envelope("internal", str(exc)), status=500)


def _first(params: Params, name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


class PromMockAPI:
    """FastAPI application serving the emulated Prometheus API."""

    def __init__(self, backend: Backend, metrics: Optional[SelfMetrics] = None):
        """
        Initialize the API.

        Args:
            backend: Core facade answering dynamic requests
            metrics: Self-monitoring metrics; a private registry by default
        """
        self.backend = backend
        self.metrics = metrics or SelfMetrics()
        self.app = FastAPI(title="prom-mock")

        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/healthz")
        async def healthz(request: Request):
            """Health check endpoint."""
            return await self._serve(request, "healthz", lambda params: Response.json(
                {"status": "healthy", "timestamp": self.backend.now_ms() / 1000.0}
            ))

        @self.app.get("/-/healthy")
        async def healthy(request: Request):
            return await self._serve(request, "healthy", lambda params: Response.text("Prometheus is Healthy.\n"))

        @self.app.get("/-/ready")
        async def ready(request: Request):
            return await self._serve(request, "ready", lambda params: Response.text("Prometheus is Ready.\n"))

        @self.app.api_route("/api/v1/query", methods=["GET", "POST"])
        async def query(request: Request):
            """Instant query."""
            return await self._serve(request, "query", self._instant_query)

        @self.app.api_route("/api/v1/query_range", methods=["GET", "POST"])
        async def query_range(request: Request):
            """Range query."""
            return await self._serve(request, "query_range", self._range_query)

        @self.app.api_route("/api/v1/labels", methods=["GET", "POST"])
        async def labels(request: Request):
            return await self._serve(request, "labels", lambda params: success(self.backend.handle_labels()))

        @self.app.get("/api/v1/label/{name}/values")
        async def label_values(name: str, request: Request):
            return await self._serve(
                request, "label_values", lambda params: success(self.backend.handle_label_values(name))
            )

        @self.app.api_route("/api/v1/series", methods=["GET", "POST"])
        async def series(request: Request):
            return await self._serve(request, "series", self._series)

        @self.app.post("/api/v1/write")
        async def write(request: Request):
            """Remote write receiver."""
            body = await request.body()
            encoding = request.headers.get("content-encoding")
            return await self._serve(request, "write", lambda params: self._write(body, encoding), form=False)

        @self.app.get("/metrics")
        async def metrics():
            """Self-monitoring metrics."""
            self.metrics.active_series.set(len(self.backend.storage))
            return HTTPResponse(content=self.metrics.render(), media_type=self.metrics.content_type)

    async def _params(self, request: Request, form: bool) -> Params:
        params: Params = {}
        for key, value in request.query_params.multi_items():
            params.setdefault(key, []).append(value)
        content_type = request.headers.get("content-type", "")
        if form and request.method == "POST" and content_type.startswith("application/x-www-form-urlencoded"):
            for key, value in (await request.form()).multi_items():
                params.setdefault(key, []).append(str(value))
        return params

    async def _serve(
        self,
        request: Request,
        handler: str,
        dynamic: Callable[[Params], Response],
        form: bool = True,
    ) -> HTTPResponse:
        """Answer from a fixture or the dynamic handler, wrapped in the mock policy."""
        started = time.perf_counter()
        params = await self._params(request, form)
        path = request.url.path

        fixture = self.backend.match_fixture(request.method, path, params)
        if fixture is not None:
            logger.debug(f"Fixture route {fixture.route_index} matched {request.method} {path}")
            self.metrics.fixture_hits_total.labels(route=str(fixture.route_index)).inc()
            result = await self.backend.policy.apply(fixture.to_response, latency_ms=fixture.latency_ms)
        else:
            result = await self.backend.policy.apply(lambda: self._dynamic(handler, dynamic, params))

        if result.source == SOURCE_INJECTED:
            logger.debug(f"Injected error for {request.method} {path}")
            self.metrics.injected_errors_total.labels(handler=handler).inc()

        self.metrics.requests_total.labels(handler=handler, source=result.source, code=str(result.status)).inc()
        self.metrics.request_duration_seconds.labels(handler=handler).observe(time.perf_counter() - started)
        return HTTPResponse(
            content=result.render(),
            status_code=result.status,
            media_type=result.content_type,
            headers=result.headers or None,
        )

    def _dynamic(self, handler: str, dynamic: Callable[[Params], Response], params: Params) -> Response:
        try:
            return dynamic(params)
        except PromMockError as e:
            logger.warning(f"Request to {handler} failed: {e}")
            return error_response(e)

    def _instant_query(self, params: Params) -> Response:
        query = _first(params, "query")
        if not query:
            raise InvalidParameterError("query", query, "parameter is required")
        result = self.backend.handle_instant_query(query, _first(params, "time"))
        return success(result.to_data())

    def _range_query(self, params: Params) -> Response:
        query = _first(params, "query")
        if not query:
            raise InvalidParameterError("query", query, "parameter is required")
        result = self.backend.handle_range_query(
            query, _first(params, "start"), _first(params, "end"), _first(params, "step")
        )
        return success(result.to_data())

    def _series(self, params: Params) -> Response:
        found = self.backend.handle_series(params.get("match[]", []))
        return success([labels.to_dict() for labels in found])

    def _write(self, body: bytes, encoding: Optional[str]) -> Response:
        try:
            count = self.backend.handle_write(body, encoding)
        except (DecodeError, IngestError) as e:
            self.metrics.write_errors_total.labels(reason=type(e).__name__).inc()
            raise
        self.metrics.samples_ingested_total.inc(count)
        logger.debug(f"Ingested {count} samples")
        return Response(status=204, body=None)

    def run(self, host: str = "127.0.0.1", port: int = 19090):
        """Run the API server."""
        import uvicorn
        uvicorn.run(self.app, host=host, port=port, log_level="info")


def create_app(backend: Optional[Backend] = None, metrics: Optional[SelfMetrics] = None) -> FastAPI:
    """Build the FastAPI application, e.g. for ``TestClient`` or an ASGI server."""
    return PromMockAPI(backend or Backend(), metrics).app
