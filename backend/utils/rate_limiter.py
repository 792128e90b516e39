import asyncio
import time
from typing import Dict, Optional
from dataclasses import dataclass, field

from utils.logger import get_logger

logger = get_logger("indexer.rate_limiter")


@dataclass
class RateLimitConfig:
    """Rate limit configuration for an API endpoint"""

    requests_per_window: float
    window_seconds: float = 10.0
    burst_limit: Optional[int] = None  # Max burst if different from rate


@dataclass
class TokenBucket:
    """Token bucket for rate limiting"""

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float = field(default_factory=time.monotonic)

    def refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: int = 1) -> float:
        """Seconds until ``tokens`` are available (0 if available now)."""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        needed = tokens - self.tokens
        return needed / self.refill_rate


class RateLimiter:
    """Per-endpoint token-bucket limiter shared by all outbound clients.

    The swap feed bucket is sized from ``SWAP_FEED_REQUESTS_PER_SECOND`` so
    that parallel per-token fetches share one budget.
    """

    LIMITS = {
        # Zerion developer tier: 10 rps
        "zerion": RateLimitConfig(requests_per_window=100, window_seconds=10),
        # Zapper public API: conservative 5 rps
        "zapper": RateLimitConfig(requests_per_window=50, window_seconds=10),
    }

    def __init__(self, swap_feed_rps: Optional[float] = None):
        self._limits: Dict[str, RateLimitConfig] = dict(self.LIMITS)
        if swap_feed_rps and swap_feed_rps > 0:
            self._limits["swap_feed"] = RateLimitConfig(
                requests_per_window=swap_feed_rps,
                window_seconds=1.0,
                burst_limit=max(1, int(swap_feed_rps)),
            )
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_bucket(self, endpoint: str) -> TokenBucket:
        if endpoint not in self._buckets:
            config = self._limits.get(endpoint, RateLimitConfig(1000, 10))
            capacity = config.burst_limit or config.requests_per_window
            refill_rate = config.requests_per_window / config.window_seconds
            self._buckets[endpoint] = TokenBucket(
                capacity=capacity, tokens=capacity, refill_rate=refill_rate
            )
        return self._buckets[endpoint]

    def _get_lock(self, endpoint: str) -> asyncio.Lock:
        if endpoint not in self._locks:
            self._locks[endpoint] = asyncio.Lock()
        return self._locks[endpoint]

    async def acquire(self, endpoint: str, tokens: int = 1) -> float:
        """
        Acquire rate limit permission. Returns wait time (0 if immediate).
        Blocks until permission is granted.
        """
        lock = self._get_lock(endpoint)
        async with lock:
            bucket = self._get_bucket(endpoint)
            wait_time = bucket.wait_time(tokens)

            if wait_time > 0:
                logger.debug(
                    "Rate limit wait", endpoint=endpoint, wait_seconds=wait_time
                )
                await asyncio.sleep(wait_time)
                bucket.refill()

            bucket.consume(tokens)
            return wait_time

    def get_status(self) -> Dict[str, dict]:
        """Current bucket levels, for the status surface."""
        status = {}
        for endpoint, bucket in self._buckets.items():
            bucket.refill()
            config = self._limits.get(endpoint)
            status[endpoint] = {
                "available_tokens": round(bucket.tokens, 3),
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
                "limit": f"{config.requests_per_window}/{config.window_seconds}s"
                if config
                else "default",
            }
        return status


def _build_rate_limiter() -> RateLimiter:
    from config import settings

    return RateLimiter(swap_feed_rps=settings.SWAP_FEED_REQUESTS_PER_SECOND)


# Global rate limiter instance
rate_limiter = _build_rate_limiter()
