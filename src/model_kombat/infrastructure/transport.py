"""Rate-limited HTTP transport shared by every upstream call."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

import httpx

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class _ReleasingStream(httpx.AsyncByteStream):
    """Response body that hands its concurrency slot back once closed."""

    def __init__(self, stream: httpx.AsyncByteStream, release: Callable[[], None]) -> None:
        self._stream = stream
        self._release = release

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._stream:
            yield chunk

    async def aclose(self) -> None:
        try:
            await self._stream.aclose()
        finally:
            self._release()


class RateLimitedTransport(httpx.AsyncBaseTransport):
    """httpx transport enforcing concurrency, spacing and a replenishing quota.

    Requests are admitted strictly in submission order. An admitted request
    holds one of ``max_concurrent`` slots until its response body is closed,
    consumes one permit from the reservoir, and never starts sooner than
    ``min_time`` seconds after the previous start. The reservoir is reset to
    ``reservoir_refresh_amount`` every ``reservoir_refresh_interval`` seconds.
    Failures from the wrapped transport propagate untouched.
    """

    def __init__(
        self,
        inner: Optional[httpx.AsyncBaseTransport] = None,
        *,
        max_concurrent: int = 5,
        min_time: float = 0.1,
        reservoir: Optional[int] = 50,
        reservoir_refresh_amount: Optional[int] = None,
        reservoir_refresh_interval: float = 60.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        if min_time < 0:
            raise ValueError("min_time must be non-negative")
        if reservoir is not None and reservoir <= 0:
            raise ValueError("reservoir must be positive or None")
        if reservoir_refresh_interval <= 0:
            raise ValueError("reservoir_refresh_interval must be positive")

        self._inner = inner or httpx.AsyncHTTPTransport(http2=True)
        self._max_concurrent = max_concurrent
        self._min_time = min_time
        self._reservoir_size = reservoir
        self._refresh_amount = reservoir_refresh_amount if reservoir_refresh_amount is not None else reservoir
        self._refresh_interval = reservoir_refresh_interval
        self._clock: Clock = clock or time.monotonic
        self._sleep: Sleeper = sleep or asyncio.sleep

        self._admission = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_concurrent)
        self._reservoir = reservoir
        self._refreshed_at: Optional[float] = None
        self._last_start: Optional[float] = None
        self._running = 0
        self._queued = 0
        self._started = 0

    # ------------------------------------------------------------------ #
    # Admission control

    async def acquire(self) -> Callable[[], None]:
        """Wait for admission and return the callable that frees the slot."""
        self._queued += 1
        try:
            async with self._admission:
                await self._slots.acquire()
                try:
                    await self._wait_for_reservoir()
                    await self._wait_for_spacing()
                except BaseException:
                    self._slots.release()
                    raise
                if self._reservoir is not None:
                    self._reservoir -= 1
                self._last_start = self._clock()
                self._running += 1
                self._started += 1
        finally:
            self._queued -= 1
        return self._make_release()

    def _make_release(self) -> Callable[[], None]:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._running -= 1
            self._slots.release()

        return release

    def _refill(self) -> None:
        now = self._clock()
        if self._refreshed_at is None:
            self._refreshed_at = now
            return
        elapsed = now - self._refreshed_at
        if elapsed >= self._refresh_interval:
            periods = int(elapsed // self._refresh_interval)
            self._refreshed_at += periods * self._refresh_interval
            self._reservoir = self._refresh_amount

    async def _wait_for_reservoir(self) -> None:
        if self._reservoir_size is None:
            return
        while True:
            self._refill()
            if self._reservoir is not None and self._reservoir > 0:
                return
            assert self._refreshed_at is not None
            wait = self._refreshed_at + self._refresh_interval - self._clock()
            LOGGER.debug("Reservoir exhausted; waiting %.3fs for refill", max(wait, 0.0))
            await self._sleep(max(wait, 0.0))

    async def _wait_for_spacing(self) -> None:
        if self._last_start is None or self._min_time <= 0:
            return
        wait = self._last_start + self._min_time - self._clock()
        if wait > 0:
            await self._sleep(wait)

    # ------------------------------------------------------------------ #
    # httpx transport API

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        release = await self.acquire()
        LOGGER.debug("Admitted %s %s (running=%d queued=%d)", request.method, request.url, self._running, self._queued)
        try:
            response = await self._inner.handle_async_request(request)
        except BaseException:
            release()
            raise

        if not isinstance(response.stream, httpx.AsyncByteStream):
            release()
            return response

        return httpx.Response(
            status_code=response.status_code,
            headers=response.headers,
            stream=_ReleasingStream(response.stream, release),
            extensions=response.extensions,
        )

    async def aclose(self) -> None:
        await self._inner.aclose()

    def stats(self) -> Dict[str, Optional[int]]:
        """Snapshot of limiter counters."""
        return {
            "running": self._running,
            "queued": self._queued,
            "started": self._started,
            "reservoir": self._reservoir,
            "max_concurrent": self._max_concurrent,
        }


__all__ = ["RateLimitedTransport"]
