"""
Process-local sliding-window rate limiter.

Two windows are tracked: one per identity and one shared by every
identity. Exceeding either blocks further submissions for a fixed period.
State is not persisted; a restart forgets every window.
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

GLOBAL_KEY = "__global__"


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after: float = 0.0
    scope: Optional[str] = None
    recorded_at: Optional[float] = None
    previous_submission: Optional[float] = None


@dataclass
class _Window:
    hits: deque = field(default_factory=deque)
    blocked_until: float = 0.0
    last_submission: Optional[float] = None


class RateLimiter:
    def __init__(
        self,
        max_per_window: int = 3,
        window_seconds: float = 60.0,
        block_seconds: float = 300.0,
        min_interval_seconds: float = 2.0,
        global_max_per_window: int = 120,
        global_block_seconds: float = 60.0,
        cleanup_interval: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.min_interval_seconds = min_interval_seconds
        self.global_max_per_window = global_max_per_window
        self.global_block_seconds = global_block_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._last_cleanup = clock()

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "RateLimiter":
        return cls(
            max_per_window=settings.RATE_LIMIT_MAX_PER_WINDOW,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            block_seconds=settings.RATE_LIMIT_BLOCK_SECONDS,
            min_interval_seconds=settings.MIN_SUBMISSION_INTERVAL_SECONDS,
            global_max_per_window=settings.GLOBAL_RATE_LIMIT_MAX_PER_WINDOW,
            global_block_seconds=settings.GLOBAL_RATE_LIMIT_BLOCK_SECONDS,
            cleanup_interval=settings.RATE_LIMIT_CLEANUP_SECONDS,
            clock=clock,
        )

    def _window(self, key: str, now: float) -> _Window:
        window = self._windows.setdefault(key, _Window())
        self._evict(window, now)
        return window

    def _evict(self, window: _Window, now: float) -> None:
        horizon = now - self.window_seconds
        while window.hits and window.hits[0] <= horizon:
            window.hits.popleft()

    def _is_stale(self, window: _Window, now: float) -> bool:
        self._evict(window, now)
        if window.hits or window.blocked_until > now:
            return False
        return window.last_submission is None or now - window.last_submission >= self.min_interval_seconds

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop windows that no longer constrain anyone. Returns how many went."""
        now = self._clock() if now is None else now
        stale = [key for key, window in self._windows.items() if self._is_stale(window, now)]
        for key in stale:
            del self._windows[key]
        self._last_cleanup = now
        if stale:
            logger.info("Rate limiter cleanup removed %s idle windows", len(stale))
        return len(stale)

    def check(self, key: str, record: bool = True) -> RateLimitDecision:
        """Decide whether ``key`` may submit now.

        With ``record=False`` the attempt is evaluated but leaves no trace,
        which is what a dry-run validation wants.
        """
        now = self._clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            self.cleanup(now)
        user = self._window(key, now)
        shared = self._window(GLOBAL_KEY, now)

        if user.blocked_until > now:
            remaining = math.ceil(user.blocked_until - now)
            return RateLimitDecision(
                allowed=False,
                reason=f"You are temporarily blocked. Try again in {remaining} seconds.",
                retry_after=user.blocked_until - now,
                scope="identity",
            )

        if shared.blocked_until > now:
            return RateLimitDecision(
                allowed=False,
                reason="The service is temporarily overloaded. Try again in a few minutes.",
                retry_after=shared.blocked_until - now,
                scope="global",
            )

        if len(user.hits) >= self.max_per_window:
            if record:
                user.blocked_until = now + self.block_seconds
                logger.warning("Rate limit exceeded for %s, blocked for %ss", key[:10], self.block_seconds)
            return RateLimitDecision(
                allowed=False,
                reason=f"Too many ratings submitted. Wait {math.ceil(self.block_seconds)} seconds.",
                retry_after=self.block_seconds,
                scope="identity",
            )

        if len(shared.hits) >= self.global_max_per_window:
            if record:
                shared.blocked_until = now + self.global_block_seconds
                logger.warning("Global rate limit exceeded, blocking for %ss", self.global_block_seconds)
            return RateLimitDecision(
                allowed=False,
                reason="The service is temporarily overloaded. Try again in a few minutes.",
                retry_after=self.global_block_seconds,
                scope="global",
            )

        if user.last_submission is not None:
            elapsed = now - user.last_submission
            if elapsed < self.min_interval_seconds:
                return RateLimitDecision(
                    allowed=False,
                    reason="Submitting too fast. Please wait a moment.",
                    retry_after=self.min_interval_seconds - elapsed,
                    scope="interval",
                )

        if not record:
            return RateLimitDecision(allowed=True)

        previous = user.last_submission
        user.hits.append(now)
        user.last_submission = now
        shared.hits.append(now)
        return RateLimitDecision(allowed=True, recorded_at=now, previous_submission=previous)

    def refund(self, key: str, decision: RateLimitDecision) -> None:
        """Undo an allowed, recorded attempt whose write never happened."""
        if not decision.allowed or decision.recorded_at is None:
            return
        for window_key in (key, GLOBAL_KEY):
            window = self._windows.get(window_key)
            if window and decision.recorded_at in window.hits:
                window.hits.remove(decision.recorded_at)
        user = self._windows.get(key)
        if user is not None and user.last_submission == decision.recorded_at:
            user.last_submission = decision.previous_submission

    def _peek(self, key: str, now: float) -> tuple[_Window, int]:
        window = self._windows.get(key) or _Window()
        horizon = now - self.window_seconds
        return window, sum(1 for hit in window.hits if hit > horizon)

    def status(self, key: str) -> dict[str, Any]:
        now = self._clock()
        user, user_count = self._peek(key, now)
        shared, shared_count = self._peek(GLOBAL_KEY, now)
        return {
            "user": {
                "count": user_count,
                "blocked": user.blocked_until > now,
                "blocked_until": user.blocked_until or None,
                "last_submission": user.last_submission,
            },
            "global": {
                "count": shared_count,
                "blocked": shared.blocked_until > now,
                "blocked_until": shared.blocked_until or None,
            },
            "timestamp": now,
        }

    @property
    def size(self) -> int:
        return len(self._windows)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._windows.clear()
            logger.info("All rate limits cleared")
        else:
            self._windows.pop(key, None)
            logger.info("Rate limits cleared for %s", key[:10])
