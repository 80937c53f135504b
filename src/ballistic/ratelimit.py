"""
Named sliding-window rate limits.

Each limit (``api``, ``mcp``, ``connections``) allows a number of hits per window
for a key, usually the user id. Thread-safe; state lives in process memory.
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from .errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Limit:
    name: str
    max_hits: int
    window_seconds: int


class RateLimiter:
    """
    Sliding-window limiter keyed by (limit name, caller key).

    Features:
    - Independent budgets per named limit and per caller
    - Retry-After computed from the oldest hit still in the window
    - Injectable clock for tests
    """

    def __init__(self, limits: Dict[str, Tuple[int, int]], clock: Optional[Callable[[], float]] = None):
        self.limits = {
            name: Limit(name, max_hits, window)
            for name, (max_hits, window) in limits.items()
        }
        self._clock = clock or time.monotonic
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = threading.RLock()

    def hit(self, limit_name: str, key: str) -> None:
        """
        Record a hit, raising if the budget is exhausted.

        Raises:
            RateLimited: with retry_after in whole seconds
            KeyError: for an unknown limit name
        """
        limit = self.limits[limit_name]
        now = self._clock()

        with self._lock:
            window = self._hits.setdefault((limit_name, key), deque())
            while window and window[0] <= now - limit.window_seconds:
                window.popleft()

            if len(window) >= limit.max_hits:
                retry_after = max(1, math.ceil(window[0] + limit.window_seconds - now))
                logger.warning(f"Rate limit '{limit_name}' exceeded for {key}")
                raise RateLimited(limit_name, retry_after)

            window.append(now)

    def remaining(self, limit_name: str, key: str) -> int:
        limit = self.limits[limit_name]
        now = self._clock()
        with self._lock:
            window = self._hits.get((limit_name, key), deque())
            active = sum(1 for ts in window if ts > now - limit.window_seconds)
        return max(0, limit.max_hits - active)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
