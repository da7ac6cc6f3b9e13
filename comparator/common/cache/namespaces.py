"""
Cache Namespaces

Each data category the conversation layer caches lives in its own namespace
backed by its own store, with a fixed TTL and priority policy. Namespaces
never share capacity: filling one cannot evict entries of another.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .base import CachePriority


class CacheNamespace(str, Enum):
    """Data categories held by the conversation cache."""
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    CONVERSATION_LISTS = "conversation_lists"
    FOLDERS = "folders"
    SEARCH = "search"


@dataclass(frozen=True)
class NamespacePolicy:
    """
    TTL, priority and capacity defaults of a namespace.

    Attributes:
        default_ttl: Base TTL in seconds
        max_ttl: Upper bound for dynamically computed TTLs
        priority: Default eviction priority
        max_entries: Entry budget of the namespace's store
        max_bytes: Byte budget of the namespace's store
    """
    default_ttl: float
    max_ttl: float
    priority: CachePriority
    max_entries: int
    max_bytes: Optional[int] = None


DEFAULT_POLICIES: Dict[CacheNamespace, NamespacePolicy] = {
    CacheNamespace.CONVERSATIONS: NamespacePolicy(
        default_ttl=30 * 60, max_ttl=2 * 60 * 60,
        priority=CachePriority.NORMAL, max_entries=50
    ),
    CacheNamespace.MESSAGES: NamespacePolicy(
        default_ttl=15 * 60, max_ttl=15 * 60,
        priority=CachePriority.HIGH, max_entries=200
    ),
    CacheNamespace.CONVERSATION_LISTS: NamespacePolicy(
        default_ttl=5 * 60, max_ttl=5 * 60,
        priority=CachePriority.HIGH, max_entries=20
    ),
    CacheNamespace.FOLDERS: NamespacePolicy(
        default_ttl=60 * 60, max_ttl=60 * 60,
        priority=CachePriority.NORMAL, max_entries=20
    ),
    CacheNamespace.SEARCH: NamespacePolicy(
        default_ttl=10 * 60, max_ttl=10 * 60,
        priority=CachePriority.LOW, max_entries=30
    ),
}


def build_policies(cache_config=None) -> Dict[CacheNamespace, NamespacePolicy]:
    """
    Build the policy table, applying overrides from a ``CacheConfig``.

    Args:
        cache_config: Optional ``CacheConfig``; defaults are used when None

    Returns:
        Mapping from namespace to policy
    """
    if cache_config is None:
        return dict(DEFAULT_POLICIES)

    c = cache_config
    max_bytes = c.max_bytes_per_namespace
    return {
        CacheNamespace.CONVERSATIONS: NamespacePolicy(
            default_ttl=c.conversation_ttl,
            max_ttl=max(c.conversation_max_ttl, c.conversation_ttl),
            priority=CachePriority.NORMAL,
            max_entries=c.conversation_max_entries,
            max_bytes=max_bytes
        ),
        CacheNamespace.MESSAGES: NamespacePolicy(
            default_ttl=c.message_ttl, max_ttl=c.message_ttl,
            priority=CachePriority.HIGH,
            max_entries=c.message_max_entries,
            max_bytes=max_bytes
        ),
        CacheNamespace.CONVERSATION_LISTS: NamespacePolicy(
            default_ttl=c.conversation_list_ttl, max_ttl=c.conversation_list_ttl,
            priority=CachePriority.HIGH,
            max_entries=c.conversation_list_max_entries,
            max_bytes=max_bytes
        ),
        CacheNamespace.FOLDERS: NamespacePolicy(
            default_ttl=c.folder_ttl, max_ttl=c.folder_ttl,
            priority=CachePriority.NORMAL,
            max_entries=c.folder_max_entries,
            max_bytes=max_bytes
        ),
        CacheNamespace.SEARCH: NamespacePolicy(
            default_ttl=c.search_ttl, max_ttl=c.search_ttl,
            priority=CachePriority.LOW,
            max_entries=c.search_max_entries,
            max_bytes=max_bytes
        ),
    }
