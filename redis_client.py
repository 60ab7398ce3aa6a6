"""
redis_client.py — Shared Redis connection for the trip planner.

Provides a single lazily-initialised Redis client used by ratelimit.py so the
webhook rate limit holds across workers.

Graceful degradation
--------------------
If REDIS_URL is not set, or if the Redis server is unreachable, get_redis()
returns None and the rate limiter keeps its window in process memory.  The
itinerary cache never uses Redis: it is volatile by design and lives in
cache.py.
"""

import logging
import os
from urllib.parse import urlparse, urlunparse

import redis

logger = logging.getLogger(__name__)

_redis_client = None          # module-level singleton
_redis_checked = False        # only attempt connection once per process


def get_redis():
    """Return a connected Redis client, or None if Redis is unavailable."""
    global _redis_client, _redis_checked

    if _redis_checked:
        return _redis_client

    _redis_checked = True
    url = os.getenv('REDIS_URL', '').strip()

    if not url:
        logger.info('REDIS_URL not set — rate limiting is per-worker (in-memory)')
        return None

    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=3,
        )
        client.ping()
        logger.info('Redis connected: %s', redact_url(url))
        _redis_client = client
    except (redis.RedisError, ValueError) as exc:
        logger.warning('Redis unavailable (%s) — rate limiting falls back to per-worker memory', exc)
        _redis_client = None

    return _redis_client


def reset_redis() -> None:
    """Forget the cached connection (next get_redis() reconnects)."""
    global _redis_client, _redis_checked
    if _redis_client is not None:
        try:
            _redis_client.close()
        except redis.RedisError:
            pass
    _redis_client = None
    _redis_checked = False


def redact_url(url: str) -> str:
    """Return the Redis URL with the password replaced by ***."""
    p = urlparse(url)
    if p.password:
        netloc = f'{p.username or ""}:***@{p.hostname}' + (f':{p.port}' if p.port else '')
        return urlunparse(p._replace(netloc=netloc))
    return url
