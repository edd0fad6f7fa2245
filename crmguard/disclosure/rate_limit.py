"""RevealRateCounter — authoritative per-user rolling reveal quota.

Backed by the ``limits`` library (the storage layer slowapi itself uses):
a moving-window strategy over async storage. ``acquire()`` checks and
increments in one step, so concurrent reveals for the same user can never
both take the last slot.

The counter is owned by the server boundary. Clients only ever see the
outcome of a reveal call; they never cache or enforce the quota themselves.

Storage:
  async+memory://          — single process (default)
  async+redis://host:6379  — shared across workers
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Optional

from limits import RateLimitItemPerSecond
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from crmguard.constants import MAX_REVEALS_PER_WINDOW, REVEAL_WINDOW_SECONDS
from crmguard.utils.logger import get_logger

logger = get_logger(__name__)

_NAMESPACE = "reveal"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float
    """Epoch seconds at which the oldest counted reveal leaves the window."""

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.reset_at - time.time()))


class RevealRateCounter:
    """At most ``max_reveals`` successful acquisitions per user per rolling window."""

    def __init__(
        self,
        max_reveals: int = MAX_REVEALS_PER_WINDOW,
        window_seconds: int = REVEAL_WINDOW_SECONDS,
        storage_uri: str = "async+memory://",
    ) -> None:
        self.max_reveals = max_reveals
        self.window_seconds = window_seconds
        self._item = RateLimitItemPerSecond(max_reveals, window_seconds)
        self._storage = storage_from_string(storage_uri)
        self._limiter = MovingWindowRateLimiter(self._storage)

    async def acquire(self, user_id: str) -> RateDecision:
        """Count one reveal for ``user_id`` if the window has room."""
        allowed = await self._limiter.hit(self._item, _NAMESPACE, user_id)
        stats = await self._limiter.get_window_stats(self._item, _NAMESPACE, user_id)
        decision = RateDecision(allowed=allowed, remaining=stats.remaining, reset_at=stats.reset_time)
        if not allowed:
            logger.warning(
                "reveal_quota_exhausted",
                user_id=user_id,
                limit=self.max_reveals,
                retry_after_s=decision.retry_after_seconds,
            )
        return decision

    async def peek(self, user_id: str) -> RateDecision:
        """Current quota without consuming a slot."""
        stats = await self._limiter.get_window_stats(self._item, _NAMESPACE, user_id)
        return RateDecision(
            allowed=stats.remaining > 0,
            remaining=stats.remaining,
            reset_at=stats.reset_time,
        )

    async def reset(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            await self._storage.reset()
        else:
            await self._limiter.clear(self._item, _NAMESPACE, user_id)
