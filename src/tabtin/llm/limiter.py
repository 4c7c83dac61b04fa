"""Per-tenant limiter for outbound model calls: concurrency slots plus a rolling rate window."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(slots=True)
class LimiterStats:
    """Point-in-time limiter state for monitoring."""

    in_flight: int
    requests_in_window: int
    max_concurrency: int
    requests_per_minute: int


class RateLimiter:
    """Blocks callers until both a concurrency slot and a rate token are available.

    `requests_per_minute=0` disables the rate window; concurrency is always enforced.
    Limits can be changed at runtime with `reconfigure`; in-flight calls are never dropped.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 1,
        requests_per_minute: int = 0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0.")
        if requests_per_minute < 0:
            raise ValueError("requests_per_minute must be >= 0.")
        self._max_concurrency = max_concurrency
        self._requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._window_seconds = window_seconds
        self._condition = threading.Condition()
        self._in_flight = 0
        self._timestamps: deque[float] = deque()

    def execute(self, fn: Callable[[], T]) -> T:
        """Run `fn` once a slot and a token are free; the slot is released even on error."""

        self._acquire()
        try:
            return fn()
        finally:
            self._release()

    def reconfigure(self, *, max_concurrency: int, requests_per_minute: int) -> None:
        """Apply new limits and wake every waiter so they re-check."""

        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0.")
        if requests_per_minute < 0:
            raise ValueError("requests_per_minute must be >= 0.")
        with self._condition:
            changed = (
                max_concurrency != self._max_concurrency
                or requests_per_minute != self._requests_per_minute
            )
            self._max_concurrency = max_concurrency
            self._requests_per_minute = requests_per_minute
            self._condition.notify_all()
        if changed:
            logger.info(
                "Limiter reconfigured: max_concurrency=%s requests_per_minute=%s",
                max_concurrency,
                requests_per_minute,
            )

    def stats(self) -> LimiterStats:
        with self._condition:
            self._prune(self._clock())
            return LimiterStats(
                in_flight=self._in_flight,
                requests_in_window=len(self._timestamps),
                max_concurrency=self._max_concurrency,
                requests_per_minute=self._requests_per_minute,
            )

    def _acquire(self) -> None:
        while True:
            with self._condition:
                if self._in_flight >= self._max_concurrency:
                    self._condition.wait()
                    continue
                now = self._clock()
                self._prune(now)
                if self._requests_per_minute <= 0 or len(self._timestamps) < (
                    self._requests_per_minute
                ):
                    self._timestamps.append(now)
                    self._in_flight += 1
                    return
                wait = self._timestamps[0] + self._window_seconds - now
            logger.debug("Rate window full; waiting %.2fs", wait)
            self._sleep(max(wait, 0.0))

    def _release(self) -> None:
        with self._condition:
            self._in_flight -= 1
            self._condition.notify_all()

    def _prune(self, now: float) -> None:
        while self._timestamps and self._timestamps[0] <= now - self._window_seconds:
            self._timestamps.popleft()
