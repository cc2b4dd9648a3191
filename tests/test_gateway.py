from __future__ import annotations

import asyncio

import pytest

from data.gateway import FetchError, FetchGateway, RateLimiter


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_gateway_retries_transient_errors_then_succeeds() -> None:
    calls = {"n": 0}

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    gateway = FetchGateway(RateLimiter(max_calls=100), retries=3, backoff_s=0.0)
    assert asyncio.run(gateway.call("flaky", flaky)) == "ok"
    assert calls["n"] == 3


def test_gateway_exhausts_retry_budget_with_exponential_backoff() -> None:
    calls = {"n": 0}
    delays: list[float] = []

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    def always_down() -> None:
        calls["n"] += 1
        raise TimeoutError("upstream timeout")

    gateway = FetchGateway(RateLimiter(max_calls=100), retries=3, backoff_s=1.0, sleep=record_sleep)
    with pytest.raises(FetchError) as info:
        asyncio.run(gateway.call("quote:AAPL", always_down))

    assert calls["n"] == 4
    assert delays == [1.0, 2.0, 4.0]
    assert info.value.attempts == 4
    assert isinstance(info.value.cause, TimeoutError)
    assert info.value.__cause__ is info.value.cause
    assert "quote:AAPL" in str(info.value)


def test_gateway_without_retries_raises_after_one_attempt() -> None:
    calls = {"n": 0}

    def down(symbol: str) -> str:
        calls["n"] += 1
        raise ConnectionError(f"{symbol} down")

    gateway = FetchGateway(RateLimiter(max_calls=1000), retries=0, backoff_s=0.0)
    with pytest.raises(FetchError) as info:
        asyncio.run(gateway.call("chain:XYZ", down, "XYZ"))

    assert calls["n"] == 1
    assert info.value.attempts == 1
    assert isinstance(info.value.__cause__, ConnectionError)

def test_gateway_awaits_coroutine_providers() -> None:
    async def fetch(symbol: str) -> str:
        await asyncio.sleep(0)
        return symbol.lower()

    gateway = FetchGateway(RateLimiter(max_calls=100), retries=0)
    assert asyncio.run(gateway.call("chain", fetch, "SPY")) == "spy"


def test_limiter_caps_in_flight_calls() -> None:
    limiter = RateLimiter(max_concurrent=2, max_calls=100, period_s=1.0)
    gateway = FetchGateway(limiter, retries=0)

    async def slow(i: int) -> int:
        await asyncio.sleep(0.01)
        return i

    async def scenario() -> list[int]:
        return await asyncio.gather(*(gateway.call(f"c{i}", slow, i) for i in range(6)))

    assert asyncio.run(scenario()) == list(range(6))
    assert limiter.peak_in_flight == 2
    assert limiter.in_flight == 0


def test_limiter_paces_call_starts_per_window() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(max_concurrent=10, max_calls=2, period_s=1.0, clock=clock, sleep=clock.sleep)
    starts: list[float] = []

    async def scenario() -> None:
        for _ in range(5):
            async with limiter:
                starts.append(clock())

    asyncio.run(scenario())
    assert starts == [0.0, 0.0, 1.0, 1.0, 2.0]


def test_limiter_rejects_bad_configuration() -> None:
    with pytest.raises(ValueError):
        RateLimiter(max_concurrent=0)
