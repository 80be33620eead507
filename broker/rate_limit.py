from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_epoch_s: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch_s),
        }


class FixedWindowRateLimiter:
    """Per-client request counter; all counters reset together when the window rolls over."""

    def __init__(
        self,
        *,
        max_requests: int = 60,
        window_s: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._counts: dict[str, int] = {}
        self._reset_at = self._clock() + window_s

    def hit(self, client_id: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            if now >= self._reset_at:
                self._counts.clear()
                self._reset_at = now + self.window_s
            count = self._counts.get(client_id, 0)
            reset_epoch_s = math.ceil(self._reset_at)
            if count >= self.max_requests:
                logger.warning(
                    "Rate limit exceeded for client: %s (%d/%d)",
                    client_id,
                    count,
                    self.max_requests,
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_epoch_s=reset_epoch_s,
                )
            self._counts[client_id] = count + 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - (count + 1),
                reset_epoch_s=reset_epoch_s,
            )

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._reset_at = self._clock() + self.window_s
