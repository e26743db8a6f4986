"""
Sliding-window rate limiter keyed by client id.
"""

import time
from collections import defaultdict, deque
from typing import Callable

from ..exceptions import RateLimitError


class RateLimiter:
    """Allow at most ``limit`` calls per client in any ``window`` seconds."""

    def __init__(
        self,
        limit: int,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._calls: dict[str, deque[float]] = defaultdict(deque)

    def check(self, client_id: str) -> None:
        """Record a call, or reject it if the client is over its quota.

        Raises:
            RateLimitError: With ``retry_after`` set to the seconds until the
                oldest call in the window expires.
        """
        now = self._clock()
        calls = self._calls[client_id]
        while calls and now - calls[0] >= self.window:
            calls.popleft()
        if len(calls) >= self.limit:
            retry_after = round(self.window - (now - calls[0]), 3)
            raise RateLimitError(
                f"Rate limit of {self.limit} actions per {self.window:g}s exceeded",
                retry_after=retry_after,
                details={"clientId": client_id, "limit": self.limit},
            )
        calls.append(now)
