"""
Conversation Caching System

This package provides the bounded, TTL-based in-memory stores used by the
conversation layer, with priority-aware LRU eviction, adaptive TTL extension
and optional write-through persistence to a durable side store.
"""

from comparator.common.cache.base import (
    CacheError,
    CachePriority,
    CacheStats,
    coerce_priority
)
from comparator.common.cache.entry import CacheEntry, estimate_size
from comparator.common.cache.memory import BoundedLRUStore, PRIORITY_WEIGHT
from comparator.common.cache.persistence import (
    DurableStore,
    MemoryDurableStore,
    FileDurableStore,
    RedisDurableStore,
    create_durable_store
)
from comparator.common.cache.key_builder import KeyBuilder
from comparator.common.cache.namespaces import (
    CacheNamespace,
    NamespacePolicy,
    DEFAULT_POLICIES,
    build_policies
)

__all__ = [
    # Types
    'CacheError',
    'CachePriority',
    'CacheStats',
    'CacheEntry',
    'coerce_priority',
    'estimate_size',

    # Stores
    'BoundedLRUStore',
    'PRIORITY_WEIGHT',

    # Persistence
    'DurableStore',
    'MemoryDurableStore',
    'FileDurableStore',
    'RedisDurableStore',
    'create_durable_store',

    # Keys and namespaces
    'KeyBuilder',
    'CacheNamespace',
    'NamespacePolicy',
    'DEFAULT_POLICIES',
    'build_policies',
]
