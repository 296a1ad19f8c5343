"""
Quote Cache

Short-lived cache of aggregator quotes keyed by a content fingerprint.

Purpose:
- Avoids repeated aggregator calls while a customer edits a cart
- Cache key: SHA-256 of destination CEP + normalized packages + environment
- TTL: 5 minutes (QUOTE_CACHE_TTL_SECONDS)
- Max size: 1000 entries in-process (LRU eviction)

Two backends share the same async interface:
- InMemoryQuoteCache: per-process OrderedDict, expiry checked lazily on read
  and by the periodic sweep (see shipping_quotes.jobs.cache_sweep)
- RedisQuoteCache: SETEX with a JSON payload, Redis expires entries natively

Usage:
    from shipping_quotes.core.quote_cache import make_fingerprint, get_quote_cache

    cache = await get_quote_cache()
    fingerprint = make_fingerprint("01310100", packages, "production")
    cached = await cache.get(fingerprint)
    if cached is None:
        ...
        await cache.put(fingerprint, options, applied_rules)
"""
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from shipping_quotes.core.config import settings

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "shipping:quote:"


@dataclass
class CachedQuote:
    """Options and rule audit stored for one fingerprint."""
    options: List[Dict[str, Any]]
    applied_rules: List[Dict[str, Any]]
    expires_at: float
    # Result fields not derivable from the audit (resolved state, default padding)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _canonical(value: Dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def make_fingerprint(
    destination_postal_code: str,
    packages: Iterable[Dict[str, Any]],
    environment: str,
) -> str:
    """
    Build the cache key for a quote request.

    Packages are sorted by their canonical JSON form before hashing, so the
    same set of packages in a different order yields the same fingerprint.
    Caller-side identifiers ("id") are not part of the identity.
    """
    normalized = sorted(
        _canonical({k: v for k, v in package.items() if k != "id"})
        for package in packages
    )
    payload = _canonical({
        "destination": destination_postal_code,
        "environment": environment,
        "packages": normalized,
    })
    return hashlib.sha256(payload.encode()).hexdigest()


class QuoteCache(ABC):
    """Async cache interface used by the quote orchestrator."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, fingerprint: str) -> Optional[CachedQuote]:
        pass

    @abstractmethod
    async def put(
        self,
        fingerprint: str,
        options: List[Dict[str, Any]],
        applied_rules: List[Dict[str, Any]],
        ttl_seconds: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass

    @abstractmethod
    async def invalidate(self, fingerprint: str) -> bool:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass


class InMemoryQuoteCache(QuoteCache):
    """
    LRU cache with TTL for aggregator quotes.

    Safe for single-threaded async usage (standard in asyncio): no awaits happen
    between reading and mutating the dict, so no lock is needed.

    Attributes:
        ttl_seconds: Default time-to-live for entries (default: 300)
        max_size: Maximum entries before LRU eviction (default: 1000)
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(ttl_seconds)
        self.max_size = max_size
        self._clock = clock
        self._cache: "OrderedDict[str, CachedQuote]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    async def get(self, fingerprint: str) -> Optional[CachedQuote]:
        entry = self._cache.get(fingerprint)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() >= entry.expires_at:
            self._cache.pop(fingerprint, None)
            self._expired += 1
            self._misses += 1
            logger.debug(f"[QUOTE_CACHE] Expired: {fingerprint[:12]}")
            return None

        self._cache.move_to_end(fingerprint)
        self._hits += 1
        logger.debug(f"[QUOTE_CACHE] Hit: {fingerprint[:12]} ({len(entry.options)} options)")
        return entry

    async def put(
        self,
        fingerprint: str,
        options: List[Dict[str, Any]],
        applied_rules: List[Dict[str, Any]],
        ttl_seconds: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds

        # Last writer wins for the same fingerprint
        self._cache.pop(fingerprint, None)

        while len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
            self._evictions += 1
            logger.debug("[QUOTE_CACHE] Evicted oldest entry (capacity)")

        self._cache[fingerprint] = CachedQuote(
            options=options,
            applied_rules=applied_rules,
            expires_at=self._clock() + ttl,
            metadata=dict(metadata or {}),
        )
        logger.debug(f"[QUOTE_CACHE] Stored: {fingerprint[:12]} ({len(options)} options, ttl={ttl}s)")

    async def invalidate(self, fingerprint: str) -> bool:
        if self._cache.pop(fingerprint, None) is not None:
            logger.debug(f"[QUOTE_CACHE] Invalidated: {fingerprint[:12]}")
            return True
        return False

    async def clear(self) -> None:
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"[QUOTE_CACHE] Cleared {count} entries")

    async def sweep(self) -> int:
        now = self._clock()
        removed = 0
        # Iterate a snapshot so concurrent puts never break the loop
        for fingerprint, entry in list(self._cache.items()):
            if now >= entry.expires_at:
                # Re-check identity: a newer put may have replaced the entry
                if self._cache.get(fingerprint) is entry:
                    del self._cache[fingerprint]
                    removed += 1
        self._expired += removed
        if removed:
            logger.debug(f"[QUOTE_CACHE] Swept {removed} expired entries")
        return removed

    async def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "memory",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "size": len(self._cache),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "evictions": self._evictions,
            "expired": self._expired,
        }


class RedisQuoteCache(QuoteCache):
    """Quote cache shared across instances. Entries expire natively via SETEX."""

    def __init__(self, client, ttl_seconds: int = 300, key_prefix: str = CACHE_KEY_PREFIX):
        super().__init__(ttl_seconds)
        self._client = client
        self._prefix = key_prefix
        self._hits = 0
        self._misses = 0

    def _key(self, fingerprint: str) -> str:
        return f"{self._prefix}{fingerprint}"

    async def get(self, fingerprint: str) -> Optional[CachedQuote]:
        data = await self._client.get(self._key(fingerprint))
        if not data:
            self._misses += 1
            return None

        payload = json.loads(data)
        self._hits += 1
        return CachedQuote(
            options=payload.get("options", []),
            applied_rules=payload.get("applied_rules", []),
            expires_at=payload.get("expires_at", 0.0),
            metadata=payload.get("metadata") or {},
        )

    async def put(
        self,
        fingerprint: str,
        options: List[Dict[str, Any]],
        applied_rules: List[Dict[str, Any]],
        ttl_seconds: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload = {
            "options": options,
            "applied_rules": applied_rules,
            "expires_at": time.time() + ttl,
            "metadata": metadata or {},
        }
        await self._client.setex(self._key(fingerprint), ttl, json.dumps(payload, default=str))

    async def invalidate(self, fingerprint: str) -> bool:
        return await self._client.delete(self._key(fingerprint)) > 0

    async def clear(self) -> None:
        count = 0
        async for key in self._client.scan_iter(match=f"{self._prefix}*"):
            await self._client.delete(key)
            count += 1
        logger.info(f"[QUOTE_CACHE] Cleared {count} Redis entries")

    async def sweep(self) -> int:
        # Redis drops expired keys itself
        return 0

    async def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "redis",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "ttl_seconds": self.ttl_seconds,
        }


_quote_cache: Optional[QuoteCache] = None


async def get_quote_cache() -> QuoteCache:
    """
    Process-wide quote cache, chosen by QUOTE_CACHE_BACKEND.

    Falls back to the in-memory backend when Redis is configured but unreachable.
    """
    global _quote_cache

    if _quote_cache is None:
        if settings.QUOTE_CACHE_BACKEND == "redis":
            from shipping_quotes.core.redis_client import get_redis

            client = await get_redis()
            if client is not None:
                _quote_cache = RedisQuoteCache(client, ttl_seconds=settings.QUOTE_CACHE_TTL_SECONDS)

        if _quote_cache is None:
            _quote_cache = InMemoryQuoteCache(
                ttl_seconds=settings.QUOTE_CACHE_TTL_SECONDS,
                max_size=settings.QUOTE_CACHE_MAX_ENTRIES,
            )
        logger.info(f"Quote cache backend: {type(_quote_cache).__name__}")

    return _quote_cache


def reset_quote_cache() -> None:
    """Drop the process-wide cache instance (used by tests and on shutdown)."""
    global _quote_cache
    _quote_cache = None
