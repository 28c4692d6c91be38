"""
Per-tool, per-caller rate limiting for the dispatcher.

Sliding window: each key keeps the timestamps of its accepted calls
inside the window.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from sandbox_engine.exceptions import RateLimitExceeded
from sandbox_engine.logger import logger
from sandbox_engine.tool.base import RateLimitState


def rate_limit_key(tool_id: str, caller: Optional[str]) -> str:
    return f"{tool_id}:{caller or 'anonymous'}"


class RateLimiter:
    """
    Sliding window rate limiter keyed by tool and caller.

    Tracks accepted calls per key in a window of ``window_seconds``.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the limiter.

        Args:
            window_seconds: Window size in seconds
            clock: Monotonic time source
        """
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, calls: Deque[float], now: float) -> None:
        while calls and now - calls[0] >= self.window_seconds:
            calls.popleft()

    def try_acquire(self, key: str, max_calls: int) -> RateLimitState:
        """
        Record a call for ``key`` if the window has room.

        Args:
            key: Rate limit key, see ``rate_limit_key``
            max_calls: Calls allowed per window

        Returns:
            Remaining budget after this call

        Raises:
            RateLimitExceeded: If the window is full
        """
        with self._lock:
            now = self._clock()
            calls = self._calls.setdefault(key, deque())
            self._prune(calls, now)

            if len(calls) >= max_calls:
                retry_after = self.window_seconds - (now - calls[0])
                logger.warning(f"Rate limit exceeded for {key}: {len(calls)}/{max_calls}")
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {key}: {max_calls} calls per "
                    f"{self.window_seconds:g}s, retry in {retry_after:.1f}s",
                    retry_after=retry_after,
                )

            calls.append(now)
            return RateLimitState(
                limit=max_calls,
                remaining=max_calls - len(calls),
                reset_in=self.window_seconds - (now - calls[0]),
            )

    def usage(self, key: str) -> int:
        with self._lock:
            calls = self._calls.get(key)
            if not calls:
                return 0
            self._prune(calls, self._clock())
            return len(calls)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._calls.clear()
            else:
                self._calls.pop(key, None)
