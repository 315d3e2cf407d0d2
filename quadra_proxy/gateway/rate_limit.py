from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from quadra_proxy.errors import TooManyRequests


@dataclass(slots=True)
class RateLimitConfig:
    enabled: bool = True
    window_ms: int = 60_000
    max_requests: int = 100
    max_tracked_addresses: int = 10_000


@dataclass(slots=True)
class _Window:
    started_at: float
    count: int = 0


@dataclass(slots=True)
class RateLimitDecision:
    limit: int
    remaining: int
    reset_seconds: float

    def headers(self) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
            "RateLimit-Reset": str(max(0, int(round(self.reset_seconds)))),
        }


class IngressRateLimiter:
    """Fixed-window request budget per client address."""

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def window_seconds(self) -> float:
        return max(1, self._config.window_ms) / 1000.0

    async def acquire(self, client_address: str) -> RateLimitDecision | None:
        """Count one request; raise ``TooManyRequests`` when over budget.

        Returns ``None`` when the limiter is disabled, in which case nothing
        is counted at all.
        """

        if not self._config.enabled:
            return None

        lock = self._locks.setdefault(client_address, asyncio.Lock())
        async with lock:
            now = self._clock()
            window = self._windows.get(client_address)
            if window is None or now - window.started_at >= self.window_seconds:
                window = _Window(started_at=now)
                self._windows[client_address] = window
                if len(self._windows) > self._config.max_tracked_addresses:
                    self.prune()
            reset_seconds = window.started_at + self.window_seconds - now

            if window.count >= self._config.max_requests:
                raise TooManyRequests(retry_after_seconds=reset_seconds)

            window.count += 1
            return RateLimitDecision(
                limit=self._config.max_requests,
                remaining=self._config.max_requests - window.count,
                reset_seconds=reset_seconds,
            )

    def prune(self) -> int:
        now = self._clock()
        expired = [
            address
            for address, window in self._windows.items()
            if now - window.started_at >= self.window_seconds
        ]
        for address in expired:
            self._windows.pop(address, None)
            lock = self._locks.get(address)
            if lock is not None and not lock.locked():
                self._locks.pop(address, None)
        return len(expired)

    def snapshot(self, client_address: str) -> dict[str, int | float]:
        window = self._windows.get(client_address)
        if window is None:
            return {"count": 0, "started_at": 0.0}
        return {"count": window.count, "started_at": round(window.started_at, 3)}
