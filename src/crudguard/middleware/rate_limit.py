"""
Sliding-window rate limiting.

Each identity key maps to the timestamps of its admitted requests inside
the trailing window. A background sweeper reclaims keys that have gone
quiet; it never changes an admission decision.
"""

import math
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from loguru import logger


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one admission attempt.

    Attributes:
        key: Identity key that was metered
        allowed: Whether the request was admitted
        limit: Configured limit
        remaining: Slots left in the current window, in [0, limit]
        reset_at: Epoch seconds at which the oldest admission expires
        now: Epoch seconds at which the decision was made
    """
    key: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    now: float

    @property
    def retry_after(self) -> int:
        """Whole seconds until a slot frees, never negative."""
        return max(0, math.ceil(self.reset_at - self.now))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """
    Fixed count of requests per sliding window, per identity key.

    The key -> timestamps map is the only shared state; every read and
    write of it happens under one lock, and an admission (prune, count,
    append) is a single critical section.
    """

    def __init__(
        self,
        limit: int,
        window: timedelta,
        name: str = "default",
        clock: Callable[[], float] = time.time,
        sweep_interval: Optional[timedelta] = None,
    ):
        """
        Initialize limiter.

        Args:
            limit: Maximum admissions per window (positive)
            window: Trailing window length (positive)
            name: Label used in logs
            clock: Wall-clock source in epoch seconds
            sweep_interval: Eviction period (default: the window)
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window <= timedelta(0):
            raise ValueError("window must be positive")

        self.limit = limit
        self.window = window
        self.name = name
        self._window_seconds = window.total_seconds()
        self._sweep_seconds = (sweep_interval or window).total_seconds()
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def is_allowed(self, key: str) -> bool:
        """
        Admit a request for key if it is under the limit.

        A timestamp exactly ``window`` old is outside the window.
        """
        return self.meter(key).allowed

    def meter(self, key: str) -> RateLimitDecision:
        """
        Attempt admission and report the resulting header values.

        Args:
            key: Identity key

        Returns:
            RateLimitDecision computed in the same critical section
        """
        with self._lock:
            now = self._clock()
            valid = self._prune(self._requests.get(key, ()), now)

            allowed = len(valid) < self.limit
            if allowed:
                valid.append(now)
            if valid:
                self._requests[key] = valid
            else:
                self._requests.pop(key, None)

            decision = RateLimitDecision(
                key=key,
                allowed=allowed,
                limit=self.limit,
                remaining=max(0, self.limit - len(valid)),
                reset_at=self._reset_from(valid, now),
                now=now,
            )

        if not allowed:
            logger.bind(limiter=self.name, key=key).warning("Rate limit exceeded")
        return decision

    def remaining(self, key: str) -> int:
        """Slots left for key right now; does not record a request."""
        with self._lock:
            now = self._clock()
            count = len(self._prune(self._requests.get(key, ()), now))
        return max(0, self.limit - count)

    def reset_at(self, key: str) -> float:
        """Epoch seconds when the oldest surviving admission expires, or now if none."""
        with self._lock:
            now = self._clock()
            return self._reset_from(self._prune(self._requests.get(key, ()), now), now)

    def sweep(self) -> int:
        """
        Drop expired timestamps and forget empty keys.

        Returns:
            Number of keys removed
        """
        removed = 0
        with self._lock:
            now = self._clock()
            for key in list(self._requests):
                valid = self._prune(self._requests[key], now)
                if valid:
                    self._requests[key] = valid
                else:
                    del self._requests[key]
                    removed += 1

        if removed:
            logger.debug(f"Rate limiter '{self.name}' evicted {removed} idle keys")
        return removed

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._requests)

    def start(self) -> None:
        """Start the background sweeper thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name=f"ratelimit-sweeper-{self.name}", daemon=True
        )
        self._sweeper.start()
        logger.debug(f"Rate limiter '{self.name}' sweeper started "
                     f"({self.limit}/{self._window_seconds:g}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the sweeper and wait for it to exit."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_seconds):
            self.sweep()

    def _prune(self, timestamps, now: float) -> List[float]:
        cutoff = now - self._window_seconds
        return [ts for ts in timestamps if ts > cutoff]

    def _reset_from(self, valid: List[float], now: float) -> float:
        if not valid:
            return now
        return min(valid) + self._window_seconds


@dataclass
class RateLimiters:
    """
    The limiter set a deployment uses: general API, authentication
    endpoints, and strict (sensitive) routes.
    """
    general: RateLimiter
    auth: RateLimiter
    strict: RateLimiter

    @classmethod
    def create(
        cls,
        general_limit: int = 100,
        auth_limit: int = 5,
        strict_limit: int = 10,
        window: timedelta = timedelta(minutes=1),
        sweep_interval: Optional[timedelta] = None,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiters":
        def build(name: str, limit: int) -> RateLimiter:
            return RateLimiter(limit, window, name=name, clock=clock, sweep_interval=sweep_interval)

        return cls(
            general=build("general", general_limit),
            auth=build("auth", auth_limit),
            strict=build("strict", strict_limit),
        )

    def all(self) -> List[RateLimiter]:
        return [self.general, self.auth, self.strict]

    def start(self) -> None:
        for limiter in self.all():
            limiter.start()

    def stop(self) -> None:
        for limiter in self.all():
            limiter.stop(timeout=1.0)
