"""
Rate limiting module for SnagLink.

Provides fixed window rate limiting per (key, action), persisted in the
store so every worker shares the same counters.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from .db import Store
from .util import now_epoch

logger = logging.getLogger(__name__)


class RateLimitAction(str, Enum):
    TOKEN_LOOKUP = "token_lookup"
    PIN_ATTEMPT = "pin_attempt"
    API_CALL = "api_call"


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None


class RateLimiter:
    """
    Fixed window rate limiter.

    A window opens at the first request for a (key, action) pair and
    lasts the action's window length. Bursts of up to twice the limit
    are possible across a window boundary.
    """

    def __init__(self, store: Store, limits: Dict[str, Tuple[int, int]],
                 clock: Callable[[], int] = now_epoch):
        """
        Initialize rate limiter.

        Args:
            store: Backing store providing atomic counters
            limits: action -> (max requests, window seconds)
            clock: Source of the current epoch second
        """
        missing = [a.value for a in RateLimitAction if a.value not in limits]
        if missing:
            raise ValueError(f"no rate limit configured for {missing}")
        self._store = store
        self._limits = dict(limits)
        self._clock = clock

    def limit_for(self, action: RateLimitAction) -> Tuple[int, int]:
        return self._limits[action.value]

    def check(self, key: str, action: RateLimitAction) -> RateLimitResult:
        """
        Count a request and report whether it is admitted.

        Args:
            key: Identifier for rate limiting (caller IP, owner id)
            action: Which budget the request draws from

        Returns:
            RateLimitResult with allowed status and header metadata
        """
        limit, window = self._limits[action.value]
        now = self._clock()
        update = self._store.increment_if_below(key, action.value, limit, window, now)

        if not update.allowed:
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=update.window_end,
                retry_after=max(0, update.window_end - now),
            )

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - update.count),
            reset_at=update.window_end,
        )

    def sweep(self) -> int:
        """
        Remove counters whose window has ended.

        Returns:
            Number of counters removed
        """
        removed = self._store.delete_expired_rate_limits(self._clock())
        if removed:
            logger.info("rate limit sweep removed %d counters", removed)
        return removed


class RateLimitSweeper:
    """Daemon thread calling RateLimiter.sweep() at a fixed interval."""

    def __init__(self, limiter: RateLimiter, interval_seconds: int):
        self._limiter = limiter
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._interval <= 0 or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="rate-limit-sweeper", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._limiter.sweep()
            except Exception:
                logger.exception("rate limit sweep failed")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
