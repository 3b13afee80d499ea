"""
Token-bucket rate limiter.

- In-memory, keyed by user_id+category or ip+category.
- Disabled unless enabled via env/settings.
"""

import time
from dataclasses import dataclass
from typing import Dict, Callable


@dataclass
class RateLimitConfig:
    enabled: bool = False
    per_minute_default: int = 120
    burst_default: int = 30


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.time_fn = time_fn
        self.last_refill = self.time_fn()

    def allow(self, cost: float = 1.0) -> bool:
        now = self.time_fn()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, time_fn: Callable[[], float] = time.monotonic):
        self.config = config
        self.time_fn = time_fn
        self.buckets: Dict[str, TokenBucket] = {}

    def allow(self, key: str, *, per_minute: int, burst: int) -> bool:
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(capacity=burst, refill_rate_per_sec=per_minute / 60.0, time_fn=self.time_fn)
            self.buckets[key] = bucket
        return bucket.allow()


def build_rate_limit_config(settings_obj) -> RateLimitConfig:
    return RateLimitConfig(
        enabled=bool(settings_obj.RATE_LIMIT_ENABLED),
        per_minute_default=max(1, int(settings_obj.RATE_LIMIT_PER_MINUTE_DEFAULT)),
        burst_default=max(1, int(settings_obj.RATE_LIMIT_BURST_DEFAULT)),
    )
