import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from utils.logger import get_logger

logger = get_logger("rate_limiter")


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

    def wait_time(self, tokens: int = 1) -> float:
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


class RateLimiter:
    """Per-key token buckets, one lock per key so unrelated keys never contend.

    Keys are provider ids (``jupiter``, ``raydium``) or ``helius``.
    """

    def __init__(self, default_rate: float = 2.0, burst: Optional[float] = None):
        self.default_rate = max(0.01, float(default_rate))
        self.burst = burst
        self._rates: Dict[str, float] = {}
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def configure(self, key: str, requests_per_second: float):
        self._rates[key] = max(0.01, float(requests_per_second))
        self._buckets.pop(key, None)

    def _get_bucket(self, key: str) -> TokenBucket:
        if key not in self._buckets:
            rate = self._rates.get(key, self.default_rate)
            capacity = self.burst or max(1.0, rate)
            self._buckets[key] = TokenBucket(capacity=capacity, tokens=capacity, refill_rate=rate)
        return self._buckets[key]

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def acquire(self, key: str, tokens: int = 1) -> float:
        """Block until ``tokens`` are available for ``key``; returns the time waited."""
        async with self._get_lock(key):
            bucket = self._get_bucket(key)
            wait_time = bucket.wait_time(tokens)
            if wait_time > 0:
                logger.debug("Rate limit wait", key=key, wait_seconds=round(wait_time, 3))
                await asyncio.sleep(wait_time)
                bucket.refill()
            bucket.tokens = max(0.0, bucket.tokens - tokens)
            return wait_time

    def get_status(self) -> Dict[str, dict]:
        status = {}
        for key, bucket in self._buckets.items():
            bucket.refill()
            status[key] = {
                "available_tokens": round(bucket.tokens, 3),
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
            }
        return status
