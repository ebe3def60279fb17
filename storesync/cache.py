"""
In-memory expiring cache for storefront data.

Provides:
- TTL-based expiration with lazy eviction on read plus a periodic sweep
- Deterministic, option-order-independent key generation
- Prefix (namespace) and substring invalidation
- Hit / miss / set statistics

Usage:
    from storesync.cache import ExpiringCache

    cache = ExpiringCache()
    key = cache.generate_key("orders", "2024-01-01", "2024-01-31")
    cache.set(key, result, ttl_seconds=300)
    result = cache.get(key)

    # Drop every cached order window
    cache.clear_namespace("orders")
"""
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from storesync.observability import get_logger

logger = get_logger(__name__)

NAMESPACE = "storefront"
ALL = "all"

DateLike = Union[date, str, None]


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its lifetime (epoch seconds)."""

    key: str
    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class CacheStats:
    """Cache statistics for monitoring. Counters only ever grow."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "hit_rate_percent": round(self.hit_rate, 1),
        }


def _date_token(value: DateLike) -> str:
    if value is None or value == "":
        return ALL
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat()


class ExpiringCache:
    """
    Thread-safe key/value cache with per-entry TTL.

    Expired entries are logically absent as soon as the clock passes their
    expiry, even before `sweep()` physically removes them.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._lock = threading.RLock()

    @staticmethod
    def generate_key(
        entity_type: str,
        start_date: DateLike = None,
        end_date: DateLike = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Build a cache key.

        Format: `storefront:<entity>:<start|all>:<end|all>[:k=v...]` with
        options sorted by name, so `{"a": 1, "b": 2}` and `{"b": 2, "a": 1}`
        produce the same key.
        """
        parts = [NAMESPACE, entity_type, _date_token(start_date), _date_token(end_date)]
        if options:
            parts.extend(f"{k}={v}" for k, v in sorted(options.items()))
        return ":".join(parts)

    @staticmethod
    def namespace_prefix(entity_type: Optional[str] = None) -> str:
        if entity_type is None:
            return f"{NAMESPACE}:"
        return f"{NAMESPACE}:{entity_type}:"

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if missing/expired
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats.misses += 1
                self._stats.evictions += 1
                return None

            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """
        Store a value, replacing any previous entry for the key.

        Raises:
            ValueError: if ttl_seconds is not positive
        """
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + ttl_seconds,
            )
            self._stats.sets += 1
        logger.debug(f"Cache SET {key}", extra={"ttl_seconds": ttl_seconds})

    def has(self, key: str) -> bool:
        """Check for a live entry without touching hit/miss counters."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats.evictions += 1
                return False
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared all entries")

    def clear_pattern(self, pattern: str) -> int:
        """
        Remove every key containing `pattern` as a substring.

        Returns:
            Number of keys removed
        """
        with self._lock:
            matching = [key for key in self._entries if pattern in key]
            for key in matching:
                del self._entries[key]
        logger.info(f"Cache cleared {len(matching)} entries matching '{pattern}'")
        return len(matching)

    def clear_namespace(self, entity_type: Optional[str] = None) -> int:
        """
        Remove every key of one entity type (or the whole storefront namespace).

        Prefix-based, so clearing "orders" never touches "top_orders".

        Returns:
            Number of keys removed
        """
        prefix = self.namespace_prefix(entity_type)
        with self._lock:
            matching = [key for key in self._entries if key.startswith(prefix)]
            for key in matching:
                del self._entries[key]
        logger.info(f"Cache cleared {len(matching)} entries under '{prefix}'")
        return len(matching)

    def sweep(self) -> int:
        """
        Purge all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats.evictions += len(expired)

        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def get_stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            return {
                "entries": len(self._entries),
                **self._stats.to_dict(),
            }

    def get_keys(self) -> List[str]:
        """All stored keys, including expired ones not yet swept (for debugging)."""
        with self._lock:
            return list(self._entries.keys())

    def get_info(self, key: str) -> Optional[dict]:
        """Lifetime details for one key, or None if it is not stored."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            return {
                "key": key,
                "created_at": _iso(entry.created_at),
                "expires_at": _iso(entry.expires_at),
                "ttl_remaining": max(0, round(entry.expires_at - now)),
                "is_expired": entry.is_expired(now),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
