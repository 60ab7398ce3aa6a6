"""
cache.py — In-memory itinerary cache keyed by request fingerprint.

  compute_fingerprint(request)   → 'route:<md5 of normalised fields>'
  RouteCache.get / set / delete / clear / stats
  RouteCache.start_sweeper()     periodic removal of expired entries

Expiry
------
Every entry carries an absolute expiry (created_at + ttl_seconds).  A
background sweep removes expired entries every check_period seconds, and
get() treats an expired-but-not-yet-swept entry as a miss, so nothing is
ever served past its expiry.

The cache is volatile (process memory only).  When disabled, every call is a
no-op or a miss and the pipeline behaves the same, just slower.

There is no single-flight protection: two concurrent requests with the same
fingerprint both miss and both generate.  The second set() replaces the
first entry wholesale.
"""

import asyncio
import hashlib
import json
import logging
import time
from typing import Callable

from schemas import CacheEntry, GenerationMetadata, TripRequest

logger = logging.getLogger(__name__)

KEY_PREFIX = 'route:'


def _norm(value, lower: bool = False) -> str:
    if value is None:
        return ''
    s = str(value).strip()
    return s.lower() if lower else s


def fingerprint_fields(request: TripRequest) -> dict:
    """The normalised subset of request fields that identifies an itinerary."""
    return {
        'destination':  _norm(getattr(request, 'destination', None), lower=True),
        'start_date':   _norm(getattr(request, 'start_date', None)),
        'end_date':     _norm(getattr(request, 'end_date', None)),
        'budget':       _norm(getattr(request, 'budget', None)),
        'interests':    _norm(getattr(request, 'interests', None), lower=True),
        'people_count': _norm(getattr(request, 'people_count', None)),
    }


def compute_fingerprint(request: TripRequest) -> str:
    """Deterministic cache key; pure and never raises for a TripRequest."""
    raw = json.dumps(fingerprint_fields(request), sort_keys=True, ensure_ascii=False)
    return KEY_PREFIX + hashlib.md5(raw.encode('utf-8')).hexdigest()


class RouteCache:
    """TTL-bounded fingerprint → CacheEntry store."""

    def __init__(
        self,
        enabled: bool = True,
        ttl_seconds: int = 3600,
        check_period: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.enabled      = enabled
        self.ttl_seconds  = ttl_seconds
        self.check_period = check_period
        self._clock       = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits        = 0
        self._misses      = 0
        self._sweeper: asyncio.Task | None = None

        if enabled:
            logger.info('Cache initialised (ttl=%ds, check_period=%ds)', ttl_seconds, check_period)
        else:
            logger.info('Cache disabled — every lookup is a miss')

    @classmethod
    def from_settings(cls, settings) -> 'RouteCache':
        return cls(
            enabled      = settings.cache_enabled,
            ttl_seconds  = settings.cache_ttl,
            check_period = settings.cache_check_period,
        )

    # ── Lookup / store ────────────────────────────────────────────────────────

    def get(self, fingerprint: str) -> CacheEntry | None:
        if not self.enabled:
            return None

        entry = self._entries.get(fingerprint)
        if entry is None:
            self._misses += 1
            logger.debug('Cache miss: %s', fingerprint)
            return None

        if entry.is_expired(self._clock()):
            # Lazy expiry: the sweeper has not reached this entry yet
            self._entries.pop(fingerprint, None)
            self._misses += 1
            logger.debug('Cache expired on read: %s', fingerprint)
            return None

        self._hits += 1
        logger.info('Cache hit: %s (%s, %d chars)', fingerprint,
                    entry.source_request_echo.get('destination'), len(entry.generated_document))
        return entry

    def set(
        self,
        fingerprint: str,
        document: str,
        metadata: GenerationMetadata | None = None,
        request_echo: dict | None = None,
    ) -> bool:
        """Insert or replace the entry for fingerprint.  False only on an internal error."""
        if not self.enabled:
            return False
        try:
            entry = CacheEntry(
                fingerprint         = fingerprint,
                generated_document  = document,
                source_request_echo = dict(request_echo or {}),
                generation_metadata = metadata or GenerationMetadata(),
                created_at          = self._clock(),
                ttl_seconds         = self.ttl_seconds,
            )
        except Exception as exc:
            logger.error('Cache SET error for %s: %s', fingerprint, exc)
            return False

        self._entries[fingerprint] = entry
        logger.info('Cache set: %s (%d chars, expires in %ds)',
                    fingerprint, len(document), self.ttl_seconds)
        return True

    def delete(self, fingerprint: str) -> bool:
        if not self.enabled:
            return False
        deleted = self._entries.pop(fingerprint, None) is not None
        if deleted:
            logger.info('Cache deleted: %s', fingerprint)
        return deleted

    def clear(self) -> bool:
        if not self.enabled:
            return False
        count = len(self._entries)
        self._entries.clear()
        logger.info('Cache cleared (%d entr%s)', count, 'y' if count == 1 else 'ies')
        return True

    def stats(self) -> dict:
        """Counters plus a rough byte size of keys and documents."""
        approx = sum(
            len(key.encode('utf-8')) + len(entry.generated_document.encode('utf-8'))
            for key, entry in self._entries.items()
        )
        return {
            'enabled':          self.enabled,
            'count':            len(self._entries),
            'hit_count':        self._hits,
            'miss_count':       self._misses,
            'approx_size_bytes': approx,
        }

    # ── Expiry sweep ──────────────────────────────────────────────────────────

    def evict_expired(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        now     = self._clock()
        expired = [k for k, v in self._entries.items() if v.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.info('Evicted %d expired cache entr%s', len(expired), 'y' if len(expired) == 1 else 'ies')
        return len(expired)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.check_period)
            try:
                self.evict_expired()
            except Exception as exc:
                logger.error('Cache sweep failed: %s', exc, exc_info=True)

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if not self.enabled or (self._sweeper is not None and not self._sweeper.done()):
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(), name='cache-sweeper')

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
