"""
Bounded LRU Store Module

This module implements the in-memory store behind every cache namespace: a
key to entry map bounded by entry count and by estimated bytes, with per-entry
TTL, adaptive TTL extension for hot entries, and priority-aware LRU eviction.
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

from .base import CachePriority, CacheStats, PriorityLike
from .entry import CacheEntry
from .persistence import DurableStore

logger = logging.getLogger(__name__)

V = TypeVar('V')

# Spacing between priority tiers in the eviction score. Access order stamps
# stay far below this, so a lower tier always loses to a higher one.
PRIORITY_WEIGHT = 10 ** 12


class BoundedLRUStore(Generic[V]):
    """
    Capacity- and byte-bounded cache store for one namespace.

    Features:
    - Per-entry TTL; expired entries read as misses and are removed
    - Adaptive TTL: entries read more than ``adaptive_threshold`` times get
      their TTL extended on each further read
    - Eviction by lowest ``priority * PRIORITY_WEIGHT + access_order``, i.e.
      lowest priority first and least recently used within a priority
    - Optional write-through persistence of selected entries to a
      ``DurableStore``; persistence failures are logged, never raised

    Only ``ValueError`` for an empty key or a non-positive TTL escapes from
    this class.
    """

    def __init__(
        self,
        namespace: str,
        max_entries: int = 100,
        max_bytes: Optional[int] = None,
        default_ttl: float = 10 * 60,
        adaptive_threshold: int = 3,
        adaptive_extension_ratio: float = 0.5,
        max_adaptive_extension: float = 30 * 60,
        durable_store: Optional[DurableStore] = None,
        clock: Callable[[], float] = time.time,
        load_persisted: bool = True
    ):
        """
        Initialize the store.

        Args:
            namespace: Name of the partition; prefixes durable keys
            max_entries: Maximum number of entries
            max_bytes: Maximum sum of entry size estimates, None for no limit
            default_ttl: TTL in seconds used when ``set`` gets none
            adaptive_threshold: Reads after which TTL extension kicks in
            adaptive_extension_ratio: Fraction of the current TTL added per read
            max_adaptive_extension: Upper bound in seconds of a single extension
            durable_store: Optional persistence for ``persistent=True`` entries
            clock: Time source
            load_persisted: Reload live persisted entries on construction
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")

        self._namespace = namespace
        self._entries: Dict[str, CacheEntry[V]] = OrderedDict()
        self._lock = threading.RLock()
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._default_ttl = default_ttl
        self._adaptive_threshold = adaptive_threshold
        self._adaptive_extension_ratio = adaptive_extension_ratio
        self._max_adaptive_extension = max_adaptive_extension
        self._durable_store = durable_store
        self._clock = clock

        self._total_size = 0
        self._order = 0
        self._persisted_keys = set()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

        if durable_store is not None and load_persisted:
            self.load_from_durable_store()

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    @property
    def total_size(self) -> int:
        return self._total_size

    def get(self, key: str, default: Optional[V] = None) -> Optional[V]:
        """
        Read a value.

        A hit bumps the entry's access count and recency and may extend its
        TTL. An expired entry is removed and reported as a miss.

        Args:
            key: The cache key
            default: Returned on miss

        Returns:
            The cached value or ``default``
        """
        self._validate_key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default

            now = self._clock()
            if entry.is_expired(now):
                self._remove_entry(key)
                self._remove_durable(key)
                self._expirations += 1
                self._misses += 1
                return default

            entry.access(now)
            entry.access_order = self._next_order()
            self._entries.move_to_end(key)

            if entry.access_count > self._adaptive_threshold:
                extension = min(
                    entry.ttl * self._adaptive_extension_ratio,
                    self._max_adaptive_extension
                )
                entry.extend_ttl(extension)

            self._hits += 1
            return entry.value

    def set(
        self,
        key: str,
        value: V,
        ttl: Optional[float] = None,
        priority: PriorityLike = CachePriority.NORMAL,
        persistent: bool = False
    ) -> None:
        """
        Store a value, evicting other entries while over budget.

        Args:
            key: The cache key
            value: The value to cache
            ttl: Time-to-live in seconds, default TTL when None
            priority: Eviction priority
            persistent: Also write a snapshot to the durable store
        """
        self._validate_key(key)
        if ttl is None:
            ttl = self._default_ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        with self._lock:
            entry = CacheEntry(value, ttl=ttl, priority=priority, clock=self._clock)

            if key in self._entries:
                self._remove_entry(key)

            self._make_room(entry.size_estimate)

            entry.access_order = self._next_order()
            self._entries[key] = entry
            self._total_size += entry.size_estimate

            if persistent:
                self._persist(key, entry)
            elif key in self._persisted_keys:
                # The old durable copy would resurrect a replaced value
                self._remove_durable(key)

    def delete(self, key: str) -> bool:
        """
        Delete an entry and its durable copy.

        Returns:
            True if an in-memory entry was removed
        """
        if not key:
            return False
        with self._lock:
            removed = self._remove_entry(key)
            self._remove_durable(key)
            return removed

    def has(self, key: str) -> bool:
        """Check for a live entry without touching access statistics."""
        if not key:
            return False
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove_entry(key)
                self._remove_durable(key)
                self._expirations += 1
                return False
            return True

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[str]:
        """Keys of live entries, least recently used first."""
        with self._lock:
            now = self._clock()
            return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def get_with_meta(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Return a live entry's value and metadata without counting a read.

        Returns:
            Dictionary with value and metadata, or None
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return {
                "value": entry.value,
                "created_at": entry.created_at,
                "ttl": entry.ttl,
                "expires_at": entry.expires_at,
                "priority": entry.priority,
                "access_count": entry.access_count,
                "last_accessed": entry.last_accessed,
                "size_estimate": entry.size_estimate,
            }

    def touch(self, key: str, ttl: Optional[float] = None) -> bool:
        """
        Restart the TTL window of a live entry.

        Returns:
            True if the entry exists and was refreshed
        """
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return False
            entry.created_at = self._clock()
            entry.ttl = float(ttl if ttl is not None else self._default_ttl)
            return True

    def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[V]]:
        """Read several keys; missing ones map to None."""
        return {key: self.get(key) for key in keys}

    def set_many(
        self,
        items: Dict[str, V],
        ttl: Optional[float] = None,
        priority: PriorityLike = CachePriority.NORMAL,
        persistent: bool = False
    ) -> None:
        """Store several values with the same TTL and priority."""
        for key, value in items.items():
            self.set(key, value, ttl=ttl, priority=priority, persistent=persistent)

    def clear(self) -> None:
        """Remove every entry and every durable copy of this namespace."""
        with self._lock:
            self._entries.clear()
            self._total_size = 0
            self._persisted_keys.clear()
            if self._durable_store is None:
                return
            try:
                for durable_key in self._durable_store.list_keys(self._durable_prefix()):
                    self._durable_store.remove(durable_key)
            except Exception as e:
                logger.warning(f"Failed to clear persisted entries for {self._namespace}: {e}")

    def cleanup_expired(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired_keys:
                self._remove_entry(key)
                self._remove_durable(key)
                self._expirations += 1
            if expired_keys:
                logger.debug(f"Removed {len(expired_keys)} expired entries from {self._namespace}")
            return len(expired_keys)

    def load_from_durable_store(self) -> int:
        """
        Reload persisted entries that are still live.

        Expired or unreadable snapshots are removed from the durable store.

        Returns:
            Number of entries loaded
        """
        if self._durable_store is None:
            return 0

        prefix = self._durable_prefix()
        loaded = 0
        with self._lock:
            try:
                durable_keys = self._durable_store.list_keys(prefix)
            except Exception as e:
                logger.warning(f"Failed to list persisted entries for {self._namespace}: {e}")
                return 0

            now = self._clock()
            for durable_key in durable_keys:
                key = durable_key[len(prefix):]
                try:
                    raw = self._durable_store.read(durable_key)
                    if raw is None:
                        continue
                    entry = CacheEntry.from_dict(json.loads(raw), clock=self._clock)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Dropping corrupt persisted entry {durable_key}: {e}")
                    self._safe_remove(durable_key)
                    continue
                except Exception as e:
                    logger.warning(f"Failed to read persisted entry {durable_key}: {e}")
                    continue

                if entry.is_expired(now):
                    self._safe_remove(durable_key)
                    continue

                if key in self._entries:
                    self._remove_entry(key)
                self._make_room(entry.size_estimate)
                entry.access_order = self._next_order()
                self._entries[key] = entry
                self._total_size += entry.size_estimate
                self._persisted_keys.add(key)
                loaded += 1

        if loaded:
            logger.info(f"Loaded {loaded} persisted entries into {self._namespace}")
        return loaded

    def get_stats(self) -> CacheStats:
        """Statistics snapshot; has no side effects."""
        with self._lock:
            total = self._hits + self._misses
            created = [entry.created_at for entry in self._entries.values()]
            return CacheStats(
                namespace=self._namespace,
                total_entries=len(self._entries),
                total_size=self._total_size,
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / total if total > 0 else 0.0,
                miss_rate=self._misses / total if total > 0 else 0.0,
                eviction_count=self._evictions,
                expiration_count=self._expirations,
                oldest_entry=min(created) if created else None,
                newest_entry=max(created) if created else None,
                max_entries=self._max_entries,
                max_bytes=self._max_bytes
            )

    def eviction_candidate(self) -> Optional[str]:
        """Key that would be evicted next, or None when empty."""
        with self._lock:
            return self._select_victim()

    # Internal helpers

    @staticmethod
    def _validate_key(key: str) -> None:
        if not key:
            raise ValueError("Cache key must be a non-empty string")

    def _next_order(self) -> int:
        self._order += 1
        return self._order

    def _durable_prefix(self) -> str:
        return f"{self._namespace}:"

    def _durable_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _over_budget(self, incoming_size: int) -> bool:
        if len(self._entries) >= self._max_entries:
            return True
        if self._max_bytes is not None and self._total_size + incoming_size > self._max_bytes:
            return True
        return False

    def _make_room(self, incoming_size: int) -> None:
        if not self._entries or not self._over_budget(incoming_size):
            return
        self.cleanup_expired()
        while self._entries and self._over_budget(incoming_size):
            victim = self._select_victim()
            self._remove_entry(victim)
            self._remove_durable(victim)
            self._evictions += 1
            logger.debug(f"Evicted {victim} from {self._namespace}")

    def _score(self, item: Tuple[str, CacheEntry]) -> int:
        entry = item[1]
        return entry.priority * PRIORITY_WEIGHT + entry.access_order

    def _select_victim(self) -> Optional[str]:
        if not self._entries:
            return None
        if self._max_bytes is not None:
            # An entry bigger than the whole budget goes first
            oversized = [
                item for item in self._entries.items()
                if item[1].size_estimate > self._max_bytes
            ]
            if oversized:
                return min(oversized, key=self._score)[0]
        return min(self._entries.items(), key=self._score)[0]

    def _remove_entry(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._total_size -= entry.size_estimate
        return True

    def _persist(self, key: str, entry: CacheEntry) -> None:
        if self._durable_store is None:
            logger.debug(f"No durable store for {self._namespace}; {key} kept in memory only")
            return
        try:
            serialized = json.dumps(entry.to_dict(), default=str)
            self._durable_store.write(self._durable_key(key), serialized)
            self._persisted_keys.add(key)
        except Exception as e:
            logger.warning(f"Failed to persist cache entry {self._namespace}:{key}: {e}")

    def _remove_durable(self, key: str) -> None:
        if self._durable_store is None:
            return
        self._persisted_keys.discard(key)
        self._safe_remove(self._durable_key(key))

    def _safe_remove(self, durable_key: str) -> None:
        try:
            self._durable_store.remove(durable_key)
        except Exception as e:
            logger.warning(f"Failed to remove persisted entry {durable_key}: {e}")
