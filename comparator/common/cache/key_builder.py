"""
Key Builder Module

This module provides utilities for creating standardized cache keys for the
conversation namespaces, with stable hashing of filter and query parameters.
"""

import hashlib
import json
from enum import Enum
from typing import Any, Dict, Optional


class KeyBuilder:
    """
    Utility for building standardized cache keys.

    Keys are colon-separated. User ids are always kept verbatim as the first
    segment of list, folder and search keys so that per-user invalidation can
    find them by substring.
    """

    @staticmethod
    def build(*parts: Any) -> str:
        """
        Join key segments with colons.

        Containers are replaced by their short hash; enums contribute their
        value.
        """
        segments = []
        for part in parts:
            if part is None:
                segments.append("null")
            elif isinstance(part, Enum):
                segments.append(str(part.value))
            elif isinstance(part, (dict, list, tuple, set)):
                segments.append(KeyBuilder.hash_value(part))
            else:
                segments.append(str(part))
        return ":".join(segments)

    @staticmethod
    def hash_value(value: Any) -> str:
        """Short stable hash of a JSON-compatible value."""
        if isinstance(value, set):
            value = sorted(value, key=str)
        encoded = json.dumps(value, sort_keys=True, default=str)
        return hashlib.md5(encoded.encode()).hexdigest()[:10]

    @staticmethod
    def hash_filters(filters: Optional[Dict[str, Any]]) -> str:
        """
        Hash a filter dictionary.

        Empty and missing filters hash to ``"all"``; ``None`` values are dropped
        so ``{"folder": None}`` and ``{}`` share a key.
        """
        cleaned = {k: v for k, v in (filters or {}).items() if v is not None}
        if not cleaned:
            return "all"
        return KeyBuilder.hash_value(cleaned)

    @staticmethod
    def conversation_key(conversation_id: str) -> str:
        return str(conversation_id)

    @staticmethod
    def messages_key(conversation_id: str) -> str:
        return str(conversation_id)

    @staticmethod
    def conversation_list_key(user_id: str, filters: Optional[Dict[str, Any]] = None) -> str:
        """Key of one conversation-list page: ``{user_id}:{filter_hash}``."""
        return KeyBuilder.build(user_id, KeyBuilder.hash_filters(filters))

    @staticmethod
    def folder_list_key(user_id: str) -> str:
        return KeyBuilder.build(user_id, "folders")

    @staticmethod
    def search_key(user_id: str, query: str, filters: Optional[Dict[str, Any]] = None) -> str:
        """Key of a search result set; the query is normalized before hashing."""
        normalized = " ".join((query or "").lower().split())
        return KeyBuilder.build(
            user_id,
            KeyBuilder.hash_value(normalized),
            KeyBuilder.hash_filters(filters)
        )

    @staticmethod
    def sync_key(kind: str, entity_id: str) -> str:
        """Key placed on the background sync queue, e.g. ``conversation:abc``."""
        return KeyBuilder.build(kind, entity_id)
