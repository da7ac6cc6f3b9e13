"""
Research Comparator core

Conversation cache and resilience layer of the research comparator, which
sends one research topic to several AI providers and keeps the resulting
conversations available offline-first.

The core features:
1. Namespaced, bounded conversation caches with adaptive TTL and priority eviction
2. Optional write-through persistence of cache entries to memory, files or Redis
3. Classification of provider and backend failures into a closed error taxonomy
4. Retries with exponential backoff gated by per-operation circuit breakers
5. Background reconciliation of invalidated cache entries
"""

__version__ = "0.1.0"
