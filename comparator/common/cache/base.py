"""
Base Cache Module

This module defines the core types shared by the cache stores: entry
priorities, the statistics record and the cache error type.
"""

from enum import IntEnum
from typing import Optional, Union

from pydantic import BaseModel


class CachePriority(IntEnum):
    """
    Eviction priority of a cache entry.

    Lower values are evicted first. Plain integers are accepted wherever a
    priority is, so callers can use finer weights than the three named tiers.
    """

    LOW = 0
    NORMAL = 1
    HIGH = 2


PriorityLike = Union[CachePriority, int, str]


def coerce_priority(priority: Optional[PriorityLike]) -> int:
    """
    Normalize a priority given as enum member, name or number.

    Args:
        priority: ``CachePriority``, ``"low"``/``"normal"``/``"high"``, an int,
            or None for the default

    Returns:
        Numeric priority weight
    """
    if priority is None:
        return int(CachePriority.NORMAL)
    if isinstance(priority, str):
        try:
            return int(CachePriority[priority.upper()])
        except KeyError:
            raise ValueError(f"Unknown cache priority: {priority}")
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError(f"Unknown cache priority: {priority!r}")
    return int(priority)


class CacheError(Exception):
    """Base exception for cache-related errors."""
    pass


class CacheStats(BaseModel):
    """
    Point-in-time statistics for one cache namespace.

    Attributes:
        namespace: Name of the store the numbers belong to
        total_entries: Number of entries currently held
        total_size: Sum of entry size estimates in bytes
        hits: Successful reads
        misses: Reads that found nothing or an expired entry
        hit_rate: hits / (hits + misses), 0 when nothing was read
        miss_rate: misses / (hits + misses), 0 when nothing was read
        eviction_count: Entries removed to make room
        expiration_count: Entries removed because their TTL elapsed
        oldest_entry: Creation time of the oldest entry
        newest_entry: Creation time of the newest entry
        max_entries: Entry budget
        max_bytes: Byte budget, None when unbounded
    """
    namespace: str
    total_entries: int = 0
    total_size: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    eviction_count: int = 0
    expiration_count: int = 0
    oldest_entry: Optional[float] = None
    newest_entry: Optional[float] = None
    max_entries: int = 0
    max_bytes: Optional[int] = None
