"""Sliding-window rate limiter for autonomous actions.

Prevents automated action storms: each action type may run at most
`max_actions` times within a trailing window.
"""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from loguru import logger


class RateLimiter:
    """Per action-type sliding window throttle."""

    def __init__(
        self,
        max_actions: int = 3,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_actions = max_actions
        self.window_seconds = window_seconds
        self._clock = clock
        self._history: dict[str, list[float]] = {}
        self._lock = Lock()

    def _prune(self, action_type: str, now: float) -> list[float]:
        """Drop entries outside the window. Caller must hold the lock."""
        recent = [ts for ts in self._history.get(action_type, []) if now - ts < self.window_seconds]
        if recent:
            self._history[action_type] = recent
        else:
            self._history.pop(action_type, None)
        return recent

    def is_rate_limited(self, action_type: str) -> bool:
        """Check whether another action of this type would exceed the limit."""
        with self._lock:
            recent = self._prune(action_type, self._clock())
            limited = len(recent) >= self.max_actions

        if limited:
            logger.warning(
                f"Rate limit reached for '{action_type}': "
                f"{len(recent)} actions in the last {self.window_seconds:.0f}s"
            )
        return limited

    def record_action(self, action_type: str) -> None:
        """Record one invocation of an action type."""
        with self._lock:
            self._history.setdefault(action_type, []).append(self._clock())

    def retry_after(self, action_type: str) -> float:
        """Seconds until the oldest recorded action leaves the window."""
        with self._lock:
            now = self._clock()
            recent = self._prune(action_type, now)
            if len(recent) < self.max_actions:
                return 0.0
            return max(0.0, self.window_seconds - (now - recent[0]))

    def get_usage(self) -> dict[str, int]:
        """Current in-window counts per action type."""
        with self._lock:
            now = self._clock()
            return {t: len(self._prune(t, now)) for t in list(self._history)}

    def reset(self, action_type: str | None = None) -> None:
        with self._lock:
            if action_type is None:
                self._history.clear()
            else:
                self._history.pop(action_type, None)
