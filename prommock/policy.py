"""Mock policy: clock control, artificial latency and error injection."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union
import asyncio
import inspect
import json
import threading
import time

import numpy as np

from prommock.errors import InjectedError
from prommock.timeutil import ms_to_datetime

SOURCE_DYNAMIC = "dynamic"
SOURCE_FIXTURE = "fixture"
SOURCE_INJECTED = "injected"


@dataclass(frozen=True)
class Response:
    """Transport-neutral response produced by the core."""
    status: int
    body: Any
    content_type: str = "application/json"
    headers: Dict[str, str] = field(default_factory=dict)
    source: str = SOURCE_DYNAMIC

    @classmethod
    def json(cls, payload: Any, status: int = 200, source: str = SOURCE_DYNAMIC) -> "Response":
        return cls(status=status, body=payload, source=source)

    @classmethod
    def text(cls, text: str, status: int = 200, source: str = SOURCE_DYNAMIC) -> "Response":
        return cls(status=status, body=text, content_type="text/plain; charset=utf-8", source=source)

    def render(self) -> bytes:
        """Serialize the body to bytes."""
        if self.body is None:
            return b""
        if isinstance(self.body, bytes):
            return self.body
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body, separators=(",", ":")).encode("utf-8")


def error_envelope(error_type: str, message: str) -> Dict[str, str]:
    return {"status": "error", "errorType": error_type, "error": message}


def unavailable_response(error: Optional[InjectedError] = None) -> Response:
    """The fixed response substituted when an error is injected."""
    error = error or InjectedError()
    return Response.json(
        error_envelope(error.error_type, str(error)),
        status=error.status_code,
        source=SOURCE_INJECTED,
    )


ResponseSource = Union[Awaitable[Response], Callable[[], Union[Response, Awaitable[Response]]]]


class MockPolicy:
    """Applies configured latency and error injection to every response.

    Also owns the clock: when a fixed instant is configured every "now" in
    the process resolves to it, which keeps relative time parameters and
    instant-query defaults reproducible.
    """

    def __init__(
        self,
        latency_ms: int = 0,
        error_rate: float = 0.0,
        fixed_now_ms: Optional[int] = None,
        seed: Optional[int] = None,
    ):
        if not 0.0 <= error_rate <= 1.0:
            raise ValueError(f"Error rate must be between 0.0 and 1.0, got: {error_rate}")
        if latency_ms < 0:
            raise ValueError(f"Latency must not be negative, got: {latency_ms}ms")
        self.latency_ms = latency_ms
        self.error_rate = error_rate
        self.fixed_now_ms = fixed_now_ms
        self._rng = np.random.default_rng(seed)
        self._rng_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "MockPolicy":
        """Build from a ``MockSettings`` config model."""
        return cls(
            latency_ms=settings.latency_ms,
            error_rate=settings.error_rate,
            fixed_now_ms=settings.fixed_now_ms,
            seed=settings.seed,
        )

    def now_ms(self) -> int:
        if self.fixed_now_ms is not None:
            return self.fixed_now_ms
        return time.time_ns() // 1_000_000

    def now(self) -> datetime:
        return ms_to_datetime(self.now_ms())

    def should_fail(self) -> bool:
        if self.error_rate <= 0.0:
            return False
        if self.error_rate >= 1.0:
            return True
        with self._rng_lock:
            return float(self._rng.random()) < self.error_rate

    def check(self):
        """Raise InjectedError with the configured probability."""
        if self.should_fail():
            raise InjectedError()

    async def delay(self, latency_ms: Optional[int] = None):
        latency_ms = self.latency_ms if latency_ms is None else latency_ms
        if latency_ms > 0:
            await asyncio.sleep(latency_ms / 1000.0)

    async def apply(self, base: ResponseSource, latency_ms: Optional[int] = None) -> Response:
        """Deliver ``base`` after latency, or replace it with the unavailable response.

        Args:
            base: A coroutine/awaitable or a zero-argument callable producing the response
            latency_ms: Per-response latency override (e.g. from a fixture route)
        """
        started = False
        try:
            await self.delay(latency_ms)
            self.check()
            started = True
            return await _resolve(base)
        except InjectedError as exc:
            return unavailable_response(exc)
        finally:
            if not started:
                _discard(base)


async def _resolve(base: ResponseSource) -> Response:
    if inspect.isawaitable(base):
        return await base
    result = base()
    if inspect.isawaitable(result):
        result = await result
    return result


def _discard(base: ResponseSource):
    if inspect.iscoroutine(base):
        base.close()
