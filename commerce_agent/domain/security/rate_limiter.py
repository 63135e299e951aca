from typing import Callable, NamedTuple, Optional
from collections import OrderedDict
import threading
import time

from commerce_agent.domain.models.conversation_state import Mode


class RateDecision(NamedTuple):
    allowed: bool
    remaining: float
    retry_after_seconds: Optional[float]


class TokenBucketRateLimiter:
    """Token bucket per session/client key; business accounts get a larger bucket"""

    def __init__(
        self,
        capacity: float = 20,
        refill_per_second: float = 0.5,
        b2b_capacity: float = 60,
        max_keys: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.b2b_capacity = b2b_capacity
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: "OrderedDict[str, list]" = OrderedDict()
        self._lock = threading.Lock()

    def capacity_for(self, mode: Optional[Mode]) -> float:
        return self.b2b_capacity if mode == Mode.B2B else self.capacity

    def consume(self, key: str, mode: Optional[Mode] = None, cost: float = 1.0) -> RateDecision:
        capacity = self.capacity_for(mode)
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = [capacity, now]
                self._buckets[key] = bucket
                while len(self._buckets) > self.max_keys:
                    self._buckets.popitem(last=False)
            else:
                self._buckets.move_to_end(key)

            tokens, last = bucket
            tokens = min(capacity, tokens + (now - last) * self.refill_per_second)
            if tokens >= cost:
                tokens -= cost
                bucket[0], bucket[1] = tokens, now
                return RateDecision(True, tokens, None)

            bucket[0], bucket[1] = tokens, now
            return RateDecision(False, tokens, round((cost - tokens) / self.refill_per_second, 3))

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)
