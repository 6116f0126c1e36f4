from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Tuple


@dataclass(frozen=True, slots=True)
class ThrottleDecision:
    allowed: bool
    retry_after_seconds: int = 0


class UnlockThrottle:
    """Token bucket limiting passphrase attempts per client.

    Argon2id already makes each guess slow; this caps how many guesses a
    local client can queue. Memory-only, per process.
    """

    def __init__(self, *, per_minute: int = 10, burst: int = 5, max_key_len: int = 128):
        self._rate = max(1, int(per_minute)) / 60.0
        self._capacity = float(max(1, int(burst)))
        self._max_key_len = max_key_len
        # identity -> (tokens, last refill)
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = Lock()

    def check(self, identity: str) -> ThrottleDecision:
        identity = (identity or "anonymous")[: self._max_key_len]
        now = time.monotonic()
        with self._lock:
            tokens, last = self._buckets.get(identity, (self._capacity, now))
            tokens = min(self._capacity, tokens + max(0.0, now - last) * self._rate)
            if tokens >= 1.0:
                self._buckets[identity] = (tokens - 1.0, now)
                return ThrottleDecision(allowed=True)
            self._buckets[identity] = (tokens, now)
            wait = int(max(1.0, (1.0 - tokens) / self._rate))
            return ThrottleDecision(allowed=False, retry_after_seconds=wait)
