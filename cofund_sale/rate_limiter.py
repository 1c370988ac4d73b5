"""
Request Rate Limiting

This module limits how often one caller may submit buy requests to the sale
service. Each key (a contributor address) gets a fixed number of requests per
sliding 60-second window.

Rate Limiting Algorithm:
- Tracks request count and first request timestamp per key
- Resets the counter once the window has expired
- Evicts expired entries when the cache grows past its size limit

Usage:
- The MCP server checks every buy_tokens call and raises
  RateLimitExceededError when the limit is exceeded
"""
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from cofund_sale.config import RATE_LIMIT_PER_MINUTE
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60
MAX_TRACKED_KEYS = 1000


class RateLimiter:
    def __init__(
        self,
        limit: int = RATE_LIMIT_PER_MINUTE,
        window: int = WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        # {key: (count, first_request_timestamp_in_window)}, oldest first
        self.cache: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()

    def check(self, key: str) -> bool:
        """
        Records a request for `key`.

        Returns:
            True if the request is allowed, False if the limit is exceeded.
        """
        now = int(self._clock() if self._clock is not None else time.time())

        if len(self.cache) > MAX_TRACKED_KEYS:
            self.cleanup(now - self.window)

        entry = self.cache.get(key)
        if entry is None or now - entry[1] >= self.window:
            self.cache[key] = (1, now)
            self.cache.move_to_end(key)
            logger.debug(f"Rate limit window started for {key}")
            return True

        count, started = entry
        if count >= self.limit:
            logger.warning(f"Rate limit exceeded for {key}. Count: {count}, Limit: {self.limit}")
            return False

        self.cache[key] = (count + 1, started)
        self.cache.move_to_end(key)
        logger.debug(f"Rate limit check passed for {key}. Count: {count + 1}")
        return True

    def cleanup(self, cutoff_time: int) -> None:
        """Removes entries whose window started before `cutoff_time`."""
        expired = [key for key, (_, started) in self.cache.items() if started < cutoff_time]
        for key in expired:
            del self.cache[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} old rate limit entries")

    def reset(self, key: str) -> None:
        self.cache.pop(key, None)
