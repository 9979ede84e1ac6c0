"""Sliding-window Rate Limiter — per-key call counting.

Guarantees at most N calls in any trailing window of W milliseconds for a
key (usually a provider name). This is a sliding-window counter, not a token
bucket: bursts right at a window boundary are refused slightly more often
than strictly necessary.

Counters are process-local and live as long as the limiter instance.
The limiter never queues: a refused caller must poll or skip.
Thread-safe via threading.Lock (one lock per key).
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from analyzer_llm.gateway.errors import RateLimitDeniedError
from analyzer_llm.gateway.types import DEFAULT_RATE_LIMITS, RateLimitConfig

logger = logging.getLogger(__name__)

# Extra wait past the oldest entry's expiry before polling again
_WAIT_BUFFER_MS = 100.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _key_name(key: str | Enum) -> str:
    """Provider enums and plain strings address the same window."""
    return key.value if isinstance(key, Enum) else str(key)


@dataclass
class _KeyWindow:
    """Call timestamps (ms) for a single key, oldest first."""

    config: RateLimitConfig
    timestamps: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def _prune(self, now: float) -> None:
        """Drop timestamps older than now - window."""
        cutoff = now - self.config.window_ms
        while self.timestamps and self.timestamps[0] < cutoff:
            self.timestamps.popleft()

    def try_record(self, now: float) -> bool:
        with self.lock:
            self._prune(now)
            if len(self.timestamps) >= self.config.max_requests:
                return False
            self.timestamps.append(now)
            return True

    def count(self, now: float) -> int:
        with self.lock:
            self._prune(now)
            return len(self.timestamps)

    def wait_ms(self, now: float) -> float:
        """How long until a call would be permitted (0 if now)."""
        with self.lock:
            self._prune(now)
            if len(self.timestamps) < self.config.max_requests:
                return 0.0
            if not self.timestamps:
                # max_requests == 0: the key is closed, poll at window pace
                return self.config.window_ms
            return max(self.timestamps[0] + self.config.window_ms - now, 0.0) + _WAIT_BUFFER_MS


class SlidingWindowRateLimiter:
    """Per-key sliding-window rate limiter.

    Usage:
        limiter = SlidingWindowRateLimiter()

        if limiter.can_proceed("openai"):
            response = await provider.send_request(request)
        else:
            ...  # skip, or poll later

    Each instance owns its own windows, so tests and independent callers
    can use isolated limiters.
    """

    def __init__(
        self,
        configs: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        """
        Args:
            configs: Mapping of key → limit. Defaults to the per-vendor limits.
            clock: Returns the current time in milliseconds.
        """
        configs = DEFAULT_RATE_LIMITS if configs is None else configs
        self._clock = clock or _monotonic_ms
        self._windows: dict[str, _KeyWindow] = {
            _key_name(key): _KeyWindow(config=config) for key, config in configs.items()
        }
        self._registry_lock = threading.Lock()

    def _get_window(self, key: str) -> _KeyWindow:
        """Get or create the window for a key."""
        key = _key_name(key)
        window = self._windows.get(key)
        if window is None:
            with self._registry_lock:
                window = self._windows.get(key)
                if window is None:
                    window = _KeyWindow(config=RateLimitConfig())
                    self._windows[key] = window
        return window

    def configure(self, key: str, config: RateLimitConfig) -> None:
        """Set or replace the limit for a key, keeping its recorded calls."""
        window = self._get_window(key)
        with window.lock:
            window.config = config

    def can_proceed(self, key: str) -> bool:
        """Record a call for *key* if the window has room.

        Returns False, without recording anything, when the window is full.
        """
        allowed = self._get_window(key).try_record(self._clock())
        if not allowed:
            logger.debug("Rate limit reached for %s", _key_name(key))
        return allowed

    def check(self, key: str) -> None:
        """Like can_proceed, but raises RateLimitDeniedError on refusal."""
        if not self.can_proceed(key):
            raise RateLimitDeniedError(_key_name(key))

    def get_request_count(self, key: str) -> int:
        """Calls recorded for *key* within the current window."""
        return self._get_window(key).count(self._clock())

    async def wait_until_available(self, key: str, timeout: float | None = None) -> bool:
        """Sleep until a call for *key* would be permitted.

        Does not record a call; follow with can_proceed(). Returns False if
        *timeout* (seconds) elapses first.
        """
        window = self._get_window(key)
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            wait = window.wait_ms(self._clock())
            if wait <= 0:
                return True

            sleep_time = wait / 1000.0
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                sleep_time = min(sleep_time, remaining)

            logger.info("Rate limit reached for %s. Waiting %.0fms", _key_name(key), sleep_time * 1000)
            await asyncio.sleep(sleep_time)

    def get_stats(self, key: str) -> dict:
        """Current window usage for a key."""
        window = self._get_window(key)
        return {
            "key": _key_name(key),
            "current_requests": window.count(self._clock()),
            "max_requests": window.config.max_requests,
            "window_ms": window.config.window_ms,
        }

    def get_all_stats(self) -> list[dict]:
        """Stats for all known keys."""
        return [self.get_stats(key) for key in list(self._windows)]
