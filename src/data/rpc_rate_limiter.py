import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from utils.logger import TradingLogger

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


class RateLimitError(Exception):
    """Raised when a call is still rate limited after all retries"""
    pass


def is_rate_limit_error(error: BaseException) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


@dataclass
class _CacheEntry:
    value: Any
    timestamp: float


class RPCRateLimiter:
    """Wraps RPC and HTTP calls with a request budget, a result cache and 429 backoff.

    Backoff is exponential from ``base_delay`` with up to ``max_jitter``
    seconds of jitter, capped at ``max_delay``. Errors that are not rate
    limits propagate on the first attempt.
    """

    def __init__(self,
                 max_per_second: int = 20,
                 cache_seconds: float = 2.0,
                 max_retries: int = 3,
                 base_delay: float = 2.0,
                 max_delay: float = 30.0,
                 max_jitter: float = 1.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 logger: Optional[TradingLogger] = None):
        self.max_per_second = max_per_second
        self.cache_seconds = cache_seconds
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_jitter = max_jitter
        self.sleep = sleep
        self.clock = clock
        self.logger = logger or TradingLogger("rpc_rate_limiter")

        self.cache: Dict[str, _CacheEntry] = {}
        self.recent_requests: Deque[float] = deque()
        self.backoff_attempts = 0
        self.stats = {'requests': 0, 'cache_hits': 0, 'throttled': 0}
        self._slot_lock = asyncio.Lock()

    def backoff_delay(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** max(attempt - 1, 0))
        return min(delay + random.uniform(0, self.max_jitter), self.max_delay)

    async def _wait_for_slot(self):
        async with self._slot_lock:
            now = self.clock()
            while self.recent_requests and now - self.recent_requests[0] >= 1.0:
                self.recent_requests.popleft()
            if len(self.recent_requests) >= self.max_per_second:
                await self.sleep(max(1.0 - (now - self.recent_requests[0]), 0.0))
                self.recent_requests.popleft()
            self.recent_requests.append(self.clock())

    async def request(self, operation: Callable[[], Awaitable[T]], cache_key: Optional[str] = None) -> T:
        if cache_key:
            entry = self.cache.get(cache_key)
            if entry and self.clock() - entry.timestamp < self.cache_seconds:
                self.stats['cache_hits'] += 1
                return entry.value

        attempt = 0
        while True:
            await self._wait_for_slot()
            try:
                result = await operation()
            except Exception as e:
                if not is_rate_limit_error(e):
                    raise
                attempt += 1
                self.stats['throttled'] += 1
                self.backoff_attempts += 1
                if attempt > self.max_retries:
                    raise RateLimitError(f"Rate limited after {self.max_retries} retries: {str(e)}") from e
                delay = self.backoff_delay(attempt)
                self.logger.warning(f"Rate limited (attempt {attempt}/{self.max_retries}), backing off {delay:.1f}s")
                await self.sleep(delay)
                continue

            self.stats['requests'] += 1
            self.backoff_attempts = 0
            if cache_key and result is not None:
                self.cache[cache_key] = _CacheEntry(result, self.clock())
            return result

    def prune_cache(self):
        now = self.clock()
        for key in [k for k, v in self.cache.items() if now - v.timestamp >= self.cache_seconds]:
            del self.cache[key]
