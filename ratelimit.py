"""
ratelimit.py — Per-client sliding-window rate limiting for the webhook.

Redis path:  sorted set  ratelimit:webhook:{client_key}
             members are timestamps; ZREMRANGEBYSCORE prunes the window.
Fallback:    in-memory dict per-worker (resets on restart).

The webhook never answers with a failure status, so a limited request is
still acknowledged by the route; it is simply not processed.
"""

import logging
import threading
import time
from typing import Callable

from redis_client import get_redis

logger = logging.getLogger(__name__)


class RateLimiter:

    def __init__(self, max_requests: int = 100, window_seconds: int = 900,
                 redis_getter: Callable = get_redis, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window       = window_seconds
        self._get_redis   = redis_getter
        self._clock       = clock
        self._requests: dict[str, list[float]] = {}   # client_key -> [timestamp, ...] (fallback)
        self._lock        = threading.Lock()
        self._last_prune  = clock()

    @classmethod
    def from_settings(cls, settings) -> 'RateLimiter':
        return cls(settings.rate_limit_max, settings.rate_limit_window)

    def check(self, client_key: str) -> tuple[bool, int]:
        """
        Return (allowed, retry_after_seconds) and record the request if allowed.

        retry_after_seconds is the time until the oldest request in the
        window expires, i.e. when a slot opens up.
        """
        now = self._clock()
        r = self._get_redis()

        if r is not None:
            try:
                rkey = f'ratelimit:webhook:{client_key}'
                pipe = r.pipeline()
                pipe.zremrangebyscore(rkey, '-inf', now - self.window)
                pipe.zrange(rkey, 0, -1, withscores=True)
                pipe.expire(rkey, self.window)
                _, entries, _ = pipe.execute()

                if len(entries) >= self.max_requests:
                    oldest_score = min(score for _, score in entries)
                    return False, int(self.window - (now - oldest_score)) + 1

                r.zadd(rkey, {str(now): now})
                r.expire(rkey, self.window)
                return True, 0
            except Exception as exc:
                logger.warning('Redis rate-limit error: %s — falling back', exc)

        with self._lock:
            self._prune(now)
            recent = [t for t in self._requests.get(client_key, ()) if now - t < self.window]

            if len(recent) >= self.max_requests:
                self._requests[client_key] = recent
                return False, int(self.window - (now - min(recent))) + 1

            recent.append(now)
            self._requests[client_key] = recent
            return True, 0

    def _prune(self, now: float) -> None:
        """Drop clients with nothing left in their window; runs at most once per window."""
        if now - self._last_prune < self.window:
            return
        self._last_prune = now
        stale = [k for k, stamps in self._requests.items() if not stamps or now - stamps[-1] >= self.window]
        for k in stale:
            del self._requests[k]
