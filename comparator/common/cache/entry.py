"""
Cache Entry Module

This module provides the CacheEntry class, which wraps cached values with the
metadata used for expiry, adaptive TTL extension and eviction decisions.
"""

import json
import time
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from .base import CachePriority, PriorityLike, coerce_priority

V = TypeVar('V')


def estimate_size(value: Any) -> int:
    """
    Estimate the size of a value in bytes.

    Uses the UTF-8 length of its JSON encoding, falling back to the length of
    its string representation for values JSON cannot encode.
    """
    if value is None:
        return 0
    if hasattr(value, 'model_dump'):
        value = value.model_dump(mode='json')
    try:
        return len(json.dumps(value, default=str).encode('utf-8'))
    except (TypeError, ValueError):
        return len(str(value))


class CacheEntry(Generic[V]):
    """
    Represents a cached value with metadata.

    An entry is live while ``now < created_at + ttl``. The TTL can only grow
    after creation; ``extend_ttl`` ignores non-positive extensions.

    Attributes:
        value: The cached value
        created_at: When the entry was created or last refreshed (epoch time)
        ttl: Time-to-live in seconds
        priority: Numeric eviction priority
        access_count: Number of successful reads since creation
        last_accessed: When the entry was last read (epoch time)
        size_estimate: Estimated size of the value in bytes
        access_order: Recency stamp assigned by the owning store
    """

    def __init__(
        self,
        value: V,
        ttl: float,
        priority: PriorityLike = CachePriority.NORMAL,
        clock: Callable[[], float] = time.time,
        size_estimate: Optional[int] = None,
        created_at: Optional[float] = None
    ):
        """
        Initialize a cache entry.

        Args:
            value: The value to cache
            ttl: Time-to-live in seconds
            priority: Eviction priority
            clock: Time source
            size_estimate: Precomputed size, estimated from the value if None
            created_at: Creation time, defaults to now
        """
        self._clock = clock
        self.value = value
        self.created_at = clock() if created_at is None else created_at
        self.ttl = float(ttl)
        self.priority = coerce_priority(priority)
        self.access_count = 0
        self.last_accessed = self.created_at
        self.size_estimate = estimate_size(value) if size_estimate is None else size_estimate
        self.access_order = 0

    @property
    def expires_at(self) -> float:
        """Absolute expiry time."""
        return self.created_at + self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if the entry has expired."""
        if now is None:
            now = self._clock()
        return now >= self.expires_at

    def access(self, now: Optional[float] = None) -> None:
        """Record a read of this entry."""
        self.access_count += 1
        self.last_accessed = self._clock() if now is None else now

    def get_age(self) -> float:
        """Seconds since the entry was created."""
        return self._clock() - self.created_at

    def get_ttl(self) -> float:
        """Remaining TTL in seconds, never negative."""
        return max(0.0, self.expires_at - self._clock())

    def extend_ttl(self, additional_seconds: float) -> None:
        """
        Extend the TTL by the specified number of seconds.

        Args:
            additional_seconds: Seconds to add; values <= 0 are ignored
        """
        if additional_seconds > 0:
            self.ttl += additional_seconds

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot used by the durable side store."""
        value = self.value
        if hasattr(value, 'model_dump'):
            value = value.model_dump(mode='json')
        return {
            "value": value,
            "created_at": self.created_at,
            "ttl": self.ttl,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Callable[[], float] = time.time) -> 'CacheEntry':
        """Rebuild an entry from a ``to_dict`` snapshot."""
        return cls(
            value=data["value"],
            ttl=data["ttl"],
            priority=data.get("priority", CachePriority.NORMAL),
            clock=clock,
            created_at=data["created_at"],
        )

    def __repr__(self) -> str:
        return (
            f"CacheEntry(priority={self.priority}, ttl={self.ttl:.1f}, "
            f"access_count={self.access_count}, size={self.size_estimate})"
        )
