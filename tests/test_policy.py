"""Tests for latency, error injection and the fixed clock."""
import asyncio
import time

import pytest

from prommock.config import MockSettings
from prommock.policy import (
    SOURCE_DYNAMIC,
    SOURCE_INJECTED,
    MockPolicy,
    Response,
    unavailable_response,
)


def test_error_rate_one_always_fails():
    """Every response is replaced and the base never runs."""
    policy = MockPolicy(error_rate=1.0)
    calls = []

    def base():
        calls.append(1)
        return Response.json({"status": "success"})

    for _ in range(20):
        response = asyncio.run(policy.apply(base))
        assert response.status == 503
        assert response.source == SOURCE_INJECTED
        assert response.body == {"status": "error", "errorType": "unavailable", "error": "service unavailable"}
    assert calls == []


def test_error_rate_zero_never_fails():
    """The base response passes through untouched."""
    policy = MockPolicy(error_rate=0.0)
    expected = Response.json({"status": "success"})
    for _ in range(20):
        assert asyncio.run(policy.apply(lambda: expected)) is expected


def test_apply_accepts_coroutines():
    """Awaitables and async callables are resolved."""
    policy = MockPolicy()

    async def produce():
        return Response.text("ok")

    assert asyncio.run(policy.apply(produce())).body == "ok"
    assert asyncio.run(policy.apply(produce)).body == "ok"


def test_injected_coroutine_is_closed():
    """A discarded coroutine is closed rather than left pending."""
    policy = MockPolicy(error_rate=1.0)
    ran = []

    async def produce():
        ran.append(1)
        return Response.text("ok")

    coro = produce()
    response = asyncio.run(policy.apply(coro))
    assert response.status == 503
    assert ran == []
    assert coro.cr_frame is None


def test_latency_is_applied():
    """Configured latency delays the response."""
    policy = MockPolicy(latency_ms=50)
    started = time.perf_counter()
    asyncio.run(policy.apply(lambda: Response.text("ok")))
    assert time.perf_counter() - started >= 0.045


def test_latency_override():
    """A per-response latency replaces the configured one."""
    policy = MockPolicy(latency_ms=10_000)
    started = time.perf_counter()
    asyncio.run(policy.apply(lambda: Response.text("ok"), latency_ms=0))
    assert time.perf_counter() - started < 1.0


def test_seeded_injection_is_reproducible():
    """The same seed produces the same failure sequence."""
    first = MockPolicy(error_rate=0.5, seed=7)
    second = MockPolicy(error_rate=0.5, seed=7)
    outcomes = [first.should_fail() for _ in range(50)]

    assert outcomes == [second.should_fail() for _ in range(50)]
    assert True in outcomes and False in outcomes


def test_fixed_clock():
    """A fixed instant is returned no matter when now() is called."""
    policy = MockPolicy(fixed_now_ms=1_704_067_200_000)
    first = policy.now_ms()
    time.sleep(0.01)
    assert policy.now_ms() == first == 1_704_067_200_000
    assert policy.now().isoformat() == "2024-01-01T00:00:00+00:00"


def test_wall_clock_by_default():
    """Without a fixed instant the wall clock is used."""
    before = int(time.time() * 1000)
    now = MockPolicy().now_ms()
    assert before - 1000 <= now <= int(time.time() * 1000) + 1000


@pytest.mark.parametrize("kwargs", [
    {"error_rate": 1.5},
    {"error_rate": -0.1},
    {"latency_ms": -1},
])
def test_invalid_policy(kwargs):
    """Out of range settings are rejected."""
    with pytest.raises(ValueError):
        MockPolicy(**kwargs)


def test_from_settings():
    """A policy can be built from configuration."""
    settings = MockSettings(latency="250ms", error_rate=0.25, fixed_now="2024-01-01T00:00:00Z", seed=1)
    policy = MockPolicy.from_settings(settings)
    assert policy.latency_ms == 250
    assert policy.error_rate == 0.25
    assert policy.now_ms() == 1_704_067_200_000


def test_response_render():
    """Bodies serialize to compact JSON or raw text."""
    assert Response.json({"a": [1, "2"]}).render() == b'{"a":[1,"2"]}'
    assert Response.text("hi").render() == b"hi"
    assert Response(status=204, body=None).render() == b""
    assert Response.json({}).source == SOURCE_DYNAMIC
    assert unavailable_response().status == 503
