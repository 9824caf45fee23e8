"""
In-process caching with TTL expiry and tag-based invalidation.
"""
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float
    tags: FrozenSet[str] = field(default_factory=frozenset)


@dataclass
class _InFlight:
    future: Future
    tags: FrozenSet[str]
    stale: bool = False


class TaggedCache:
    """
    Memoization layer keyed by string with per-entry TTL and tags.

    An entry is logically gone once its expiry passes: ``get`` treats it as a
    miss and drops it, and a background sweep reclaims whatever nobody reads.
    The entry map and the tag index only change together under ``_lock``.

    Usage:
        cache = TaggedCache(default_ttl=300)
        cache.start()
        value = cache.wrap("workload:7", lambda: compute(7), ttl=60, tags=["worker:7", "fleet"])
        cache.invalidate_by_tags(["worker:7"])
        cache.shutdown()
    """

    def __init__(
        self,
        default_ttl: int = 300,
        sweep_interval: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, Set[str]] = {}
        self._in_flight: Dict[str, _InFlight] = {}
        self._hits = 0
        self._misses = 0
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the periodic sweep of expired entries."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop_event.clear()
            self._sweeper = threading.Thread(target=self._sweep_loop, name="tagged-cache-sweeper", daemon=True)
            self._sweeper.start()
        logger.info("Cache sweeper started (every %ss)", self.sweep_interval)

    def shutdown(self) -> None:
        """Stop the sweeper thread and wait for it to exit."""
        self._stop_event.set()
        sweeper = self._sweeper
        if sweeper is not None:
            sweeper.join(timeout=max(1.0, float(self.sweep_interval)))
        self._sweeper = None
        logger.info("Cache sweeper stopped")

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Cache sweep failed")

    # ==================== Core operations ====================

    def _lookup(self, key: str) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return False, None
            if self._clock() > entry.expires_at:
                self._remove(key)
                self._misses += 1
                return False, None
            self._hits += 1
            return True, entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache, or ``default`` if absent or expired."""
        hit, value = self._lookup(key)
        if hit:
            logger.debug("Cache hit: %s", key, extra={"cache_key": key})
            return value
        return default

    def set(self, key: str, value: Any, ttl: Optional[float] = None, tags: Iterable[str] = ()) -> None:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (stored as-is, no serialization)
            ttl: Time to live in seconds (default: ``default_ttl``)
            tags: Labels for bulk invalidation
        """
        ttl = self.default_ttl if ttl is None else ttl
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl, tags=frozenset(tags))
        with self._lock:
            self._remove(key)
            self._entries[key] = entry
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(key)

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.stale = True
            return self._remove(key)

    def _remove(self, key: str) -> bool:
        # Caller holds _lock
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return True

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every entry carrying any of ``tags``.

        Computations in flight for matching keys still answer their callers
        but their result is not stored.

        Returns:
            Number of entries removed
        """
        tags = set(tags)
        with self._lock:
            keys: Set[str] = set()
            for tag in tags:
                keys.update(self._tag_index.get(tag, ()))
            for key in keys:
                self._remove(key)
            for in_flight in self._in_flight.values():
                if in_flight.tags & tags:
                    in_flight.stale = True
        logger.info(
            "Invalidated %d cache entries for tags: %s",
            len(keys),
            ", ".join(sorted(tags)),
            extra={"tags": sorted(tags)},
        )
        return len(keys)

    def flush(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()
            for in_flight in self._in_flight.values():
                in_flight.stale = True
        logger.warning("All cache cleared!")

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug("Cleaned up %d expired cache entries", len(expired))
        return len(expired)

    def wrap(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """
        Return the cached value for ``key`` or compute, store and return it.

        Concurrent misses on the same key share one call to ``compute``; every
        waiter gets the same value, or the same exception. Failures are never
        cached.
        """
        hit, value = self._lookup(key)
        if hit:
            logger.debug("Cache hit: %s", key, extra={"cache_key": key})
            return value

        tags = frozenset(tags)
        with self._lock:
            # Another caller may have stored the value since the lookup
            entry = self._entries.get(key)
            if entry is not None and self._clock() <= entry.expires_at:
                return entry.value
            in_flight = self._in_flight.get(key)
            leader = in_flight is None
            if leader:
                in_flight = _InFlight(future=Future(), tags=tags)
                self._in_flight[key] = in_flight

        if not leader:
            logger.debug("Cache miss joined in-flight computation: %s", key, extra={"cache_key": key})
            return in_flight.future.result()

        logger.debug("Cache miss: %s", key, extra={"cache_key": key})
        started = time.perf_counter()
        try:
            result = compute()
        except BaseException as exc:
            with self._lock:
                self._in_flight.pop(key, None)
            in_flight.future.set_exception(exc)
            raise

        with self._lock:
            self._in_flight.pop(key, None)
            if not in_flight.stale:
                self.set(key, result, ttl=ttl, tags=tags)
        in_flight.future.set_result(result)
        logger.debug(
            "Cache populated: %s",
            key,
            extra={"cache_key": key, "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
        return result

    # ==================== Introspection ====================

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "status": "running" if self._sweeper is not None and self._sweeper.is_alive() else "stopped",
                "hits": self._hits,
                "misses": self._misses,
                "total_requests": total,
                "hit_rate": round(self._hits / max(total, 1) * 100, 2),
                "entries": len(self._entries),
                "tags": len(self._tag_index),
            }

    def tags_for(self, key: str) -> FrozenSet[str]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.tags if entry is not None else frozenset()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING


# Cache key / tag builders
def workload_cache_key(worker_id: str) -> str:
    """Build cache key for a worker's workload snapshot."""
    return f"workload:{worker_id}"


def worker_tag(worker_id: str) -> str:
    """Build invalidation tag for everything derived from one worker."""
    return f"worker:{worker_id}"


FLEET_TAG = "fleet"
WORKLOAD_SUMMARY_KEY = "workload:summary"
