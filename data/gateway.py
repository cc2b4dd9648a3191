from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised once a remote call has used up its retry budget."""

    def __init__(self, label: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"{label} failed after {attempts} attempts: {cause}")
        self.label = label
        self.attempts = attempts
        self.cause = cause


class RateLimiter:
    """Caps in-flight calls and paces call starts over a sliding window.

    One instance is shared by every stage of a run; acquire/release are safe
    under concurrent tasks on a single event loop.
    """

    def __init__(
        self,
        max_concurrent: int = 2,
        max_calls: int = 2,
        period_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1 or max_calls < 1 or period_s <= 0:
            raise ValueError("limiter needs max_concurrent>=1, max_calls>=1, period_s>0")
        self.max_concurrent = max_concurrent
        self.max_calls = max_calls
        self.period_s = period_s
        self._clock = clock
        self._sleep = sleep
        self._slots = asyncio.Semaphore(max_concurrent)
        self._window_lock = asyncio.Lock()
        self._starts: deque[float] = deque()
        self.in_flight = 0
        self.peak_in_flight = 0

    async def acquire(self) -> None:
        await self._slots.acquire()
        try:
            await self._wait_for_window()
        except BaseException:
            self._slots.release()
            raise
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

    def release(self) -> None:
        self.in_flight -= 1
        self._slots.release()

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.release()

    async def _wait_for_window(self) -> None:
        async with self._window_lock:
            while True:
                now = self._clock()
                while self._starts and now - self._starts[0] >= self.period_s:
                    self._starts.popleft()
                if len(self._starts) < self.max_calls:
                    self._starts.append(now)
                    return
                await self._sleep(max(0.0, self.period_s - (now - self._starts[0])))


class FetchGateway:
    """Runs provider calls through the shared limiter with retry and backoff."""

    def __init__(
        self,
        limiter: Optional[RateLimiter] = None,
        retries: int = 3,
        backoff_s: float = 1.0,
        max_backoff_s: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.limiter = limiter or RateLimiter()
        self.retries = max(0, int(retries))
        self.backoff_s = backoff_s
        self.max_backoff_s = max_backoff_s
        self._sleep = sleep

    async def call(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        attempts = self.retries + 1
        attempt = 1
        while True:
            try:
                async with self.limiter:
                    return await _invoke(fn, *args, **kwargs)
            except Exception as exc:
                if attempt >= attempts:
                    raise FetchError(label, attempts, exc) from exc
                delay = min(self.max_backoff_s, self.backoff_s * (2 ** (attempt - 1)))
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs.",
                    label,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1


async def _invoke(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)
    result = await asyncio.to_thread(fn, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
