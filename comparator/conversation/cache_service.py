"""
Conversation Cache Service

High-level cache API of the conversation layer. Each data category lives in
its own namespace backed by its own BoundedLRUStore, with TTL and priority
taken from the namespace policy table. Invalidated conversations are handed
to the background sync queue instead of being re-fetched inline.
"""

import asyncio
import bisect
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError as ModelValidationError

from comparator.common.cache import (
    BoundedLRUStore,
    CacheNamespace,
    CachePriority,
    CacheStats,
    DurableStore,
    KeyBuilder,
    NamespacePolicy,
    build_policies
)
from comparator.common.cache.base import PriorityLike
from comparator.common.config import CacheConfig
from comparator.conversation.models import (
    Conversation,
    ConversationListPage,
    Folder,
    Message
)
from comparator.conversation.sync_queue import BackgroundSyncQueue

logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)

# Activity score weights
ACTIVITY_WINDOW_HOURS = 24.0
BUSY_MESSAGE_COUNT = 10
BUSY_BONUS = 0.5
PINNED_BONUS = 0.3
MAX_ACTIVITY_SCORE = 2.0

USER_NAMESPACES = (
    CacheNamespace.CONVERSATION_LISTS,
    CacheNamespace.FOLDERS,
    CacheNamespace.SEARCH,
)


class ConversationCacheService:
    """
    Namespaced cache facade for conversations, messages, lists, folders and
    search results.

    Reads return None on a miss. Values reloaded from the durable store come
    back as plain dictionaries and are re-validated into models here.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        durable_store: Optional[DurableStore] = None,
        sync_queue: Optional[BackgroundSyncQueue] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the service.

        Args:
            config: Cache settings, defaults when None
            durable_store: Side store for persistent entries
            sync_queue: Queue receiving invalidated keys
            clock: Time source shared by every namespace store
        """
        self._config = config or CacheConfig()
        self._clock = clock
        self._durable_store = durable_store
        self._sync_queue = sync_queue or BackgroundSyncQueue()
        self._policies: Dict[CacheNamespace, NamespacePolicy] = build_policies(self._config)
        self._stores: Dict[CacheNamespace, BoundedLRUStore] = {
            namespace: self._create_store(namespace, policy)
            for namespace, policy in self._policies.items()
        }
        self._cleanup_task: Optional[asyncio.Task] = None

    def _create_store(self, namespace: CacheNamespace, policy: NamespacePolicy) -> BoundedLRUStore:
        return BoundedLRUStore(
            namespace=namespace.value,
            max_entries=policy.max_entries,
            max_bytes=policy.max_bytes,
            default_ttl=policy.default_ttl,
            adaptive_threshold=self._config.adaptive_threshold,
            adaptive_extension_ratio=self._config.adaptive_extension_ratio,
            max_adaptive_extension=self._config.max_adaptive_extension,
            durable_store=self._durable_store,
            clock=self._clock
        )

    @property
    def sync_queue(self) -> BackgroundSyncQueue:
        return self._sync_queue

    def store(self, namespace: Union[CacheNamespace, str]) -> BoundedLRUStore:
        """Store backing ``namespace``."""
        return self._stores[CacheNamespace(namespace)]

    def policy(self, namespace: Union[CacheNamespace, str]) -> NamespacePolicy:
        return self._policies[CacheNamespace(namespace)]

    # Conversations

    def calculate_activity_score(self, conversation: Conversation, now: Optional[float] = None) -> float:
        """
        Score how hot a conversation is.

        ``max(0, 1 - hours_since_last_activity / 24)``, plus 0.5 for more than
        10 messages and 0.3 when pinned, capped at 2.0.
        """
        if now is None:
            now = self._clock()
        hours = max(0.0, now - conversation.last_activity_at.timestamp()) / 3600
        score = max(0.0, 1 - hours / ACTIVITY_WINDOW_HOURS)
        if conversation.message_count > BUSY_MESSAGE_COUNT:
            score += BUSY_BONUS
        if conversation.is_pinned:
            score += PINNED_BONUS
        return min(score, MAX_ACTIVITY_SCORE)

    def dynamic_ttl(self, conversation: Conversation) -> float:
        """Conversation TTL: ``min(base * (1 + score), max_ttl)``."""
        policy = self._policies[CacheNamespace.CONVERSATIONS]
        score = self.calculate_activity_score(conversation)
        return min(policy.default_ttl * (1 + score), policy.max_ttl)

    def cache_conversation(
        self,
        conversation: Conversation,
        priority: Optional[PriorityLike] = None,
        persistent: Optional[bool] = None
    ) -> None:
        """
        Cache a conversation with an activity-based TTL.

        Pinned conversations default to HIGH priority and, when configured,
        are persisted to the durable store.
        """
        if priority is None:
            priority = CachePriority.HIGH if conversation.is_pinned else self.policy(CacheNamespace.CONVERSATIONS).priority
        if persistent is None:
            persistent = conversation.is_pinned and self._config.persist_pinned_conversations
        self._stores[CacheNamespace.CONVERSATIONS].set(
            KeyBuilder.conversation_key(conversation.id),
            conversation,
            ttl=self.dynamic_ttl(conversation),
            priority=priority,
            persistent=persistent
        )

    def get_cached_conversation(self, conversation_id: str) -> Optional[Conversation]:
        value = self._stores[CacheNamespace.CONVERSATIONS].get(KeyBuilder.conversation_key(conversation_id))
        return self._as_model(value, Conversation)

    # Messages

    def cache_messages(self, conversation_id: str, messages: List[Message]) -> None:
        """Cache a conversation's messages sorted by id."""
        ordered = sorted(messages, key=lambda message: message.id)
        self._put(CacheNamespace.MESSAGES, KeyBuilder.messages_key(conversation_id), ordered)

    def get_cached_messages(self, conversation_id: str) -> Optional[List[Message]]:
        value = self._stores[CacheNamespace.MESSAGES].get(KeyBuilder.messages_key(conversation_id))
        return self._as_model_list(value, Message)

    def add_optimistic_message(self, conversation_id: str, message: Message) -> bool:
        """
        Insert a message into the cached list keeping ascending id order.

        A message with the same id is replaced in place, which is how a
        server-confirmed copy takes over its optimistic one.

        Returns:
            False when no list is cached for the conversation
        """
        messages = self.get_cached_messages(conversation_id)
        if messages is None:
            return False

        messages = list(messages)
        ids = [existing.id for existing in messages]
        index = bisect.bisect_left(ids, message.id)
        if index < len(messages) and messages[index].id == message.id:
            messages[index] = message
        else:
            messages.insert(index, message)

        self._put(CacheNamespace.MESSAGES, KeyBuilder.messages_key(conversation_id), messages)
        return True

    def update_message_in_cache(
        self,
        conversation_id: str,
        message_id: str,
        updates: Union[Message, Dict[str, Any]]
    ) -> bool:
        """
        Replace or patch one cached message.

        Args:
            conversation_id: Owner of the message list
            message_id: Message to change
            updates: Replacement message or a dict of changed fields

        Returns:
            True if the message was found and the list re-stored
        """
        messages = self.get_cached_messages(conversation_id)
        if messages is None:
            return False

        for index, existing in enumerate(messages):
            if existing.id != message_id:
                continue
            messages = list(messages)
            if isinstance(updates, Message):
                messages[index] = updates
            else:
                messages[index] = existing.model_copy(update=updates)
            self._put(CacheNamespace.MESSAGES, KeyBuilder.messages_key(conversation_id), messages)
            return True
        return False

    def remove_message_from_cache(self, conversation_id: str, message_id: str) -> bool:
        """Remove one message from the cached list; True if it was there."""
        messages = self.get_cached_messages(conversation_id)
        if messages is None:
            return False
        remaining = [message for message in messages if message.id != message_id]
        if len(remaining) == len(messages):
            return False
        self._put(CacheNamespace.MESSAGES, KeyBuilder.messages_key(conversation_id), remaining)
        return True

    # Lists, folders and search

    def cache_conversation_list(
        self,
        user_id: str,
        filters: Optional[Dict[str, Any]],
        page: ConversationListPage
    ) -> None:
        self._put(CacheNamespace.CONVERSATION_LISTS, KeyBuilder.conversation_list_key(user_id, filters), page)

    def get_cached_conversation_list(
        self,
        user_id: str,
        filters: Optional[Dict[str, Any]] = None
    ) -> Optional[ConversationListPage]:
        value = self._stores[CacheNamespace.CONVERSATION_LISTS].get(
            KeyBuilder.conversation_list_key(user_id, filters)
        )
        return self._as_model(value, ConversationListPage)

    def cache_folders(self, user_id: str, folders: List[Folder]) -> None:
        self._put(CacheNamespace.FOLDERS, KeyBuilder.folder_list_key(user_id), list(folders))

    def get_cached_folders(self, user_id: str) -> Optional[List[Folder]]:
        value = self._stores[CacheNamespace.FOLDERS].get(KeyBuilder.folder_list_key(user_id))
        return self._as_model_list(value, Folder)

    def cache_search_results(
        self,
        user_id: str,
        query: str,
        filters: Optional[Dict[str, Any]],
        results: List[Any]
    ) -> None:
        self._put(CacheNamespace.SEARCH, KeyBuilder.search_key(user_id, query, filters), list(results))

    def get_cached_search_results(
        self,
        user_id: str,
        query: str,
        filters: Optional[Dict[str, Any]] = None
    ) -> Optional[List[Any]]:
        return self._stores[CacheNamespace.SEARCH].get(KeyBuilder.search_key(user_id, query, filters))

    # Invalidation

    def invalidate_conversation(self, conversation_id: str) -> None:
        """
        Drop a conversation and its messages and queue it for reconciliation.

        Safe to call repeatedly; the sync queue deduplicates the key.
        """
        self._stores[CacheNamespace.CONVERSATIONS].delete(KeyBuilder.conversation_key(conversation_id))
        self._stores[CacheNamespace.MESSAGES].delete(KeyBuilder.messages_key(conversation_id))
        self.queue_background_sync(KeyBuilder.sync_key("conversation", conversation_id))

    def invalidate_user_caches(self, user_id: str) -> int:
        """
        Drop every list, folder and search entry keyed under ``user_id``.

        User ids are the first key segment, so ``u1`` never matches ``u10``.

        Conversation and message entries are left alone.

        Returns:
            Number of entries removed
        """
        if not user_id:
            return 0
        removed = 0
        for namespace in USER_NAMESPACES:
            store = self._stores[namespace]
            for key in store.keys():
                if key.split(":", 1)[0] == user_id and store.delete(key):
                    removed += 1
        logger.debug(f"Invalidated {removed} cached entries for user {user_id}")
        return removed

    def queue_background_sync(self, key: str) -> None:
        self._sync_queue.queue_background_sync(key)

    # Maintenance

    def get_cache_stats(self) -> Dict[str, CacheStats]:
        """Statistics of every namespace, keyed by namespace name."""
        return {namespace.value: store.get_stats() for namespace, store in self._stores.items()}

    def total_entries(self) -> int:
        return sum(len(store) for store in self._stores.values())

    def cleanup_expired(self) -> int:
        """Remove expired entries from every namespace; returns the count."""
        removed = sum(store.cleanup_expired() for store in self._stores.values())
        if removed:
            logger.info(f"Cache cleanup removed {removed} expired entries")
        return removed

    def clear_all(self) -> None:
        """Empty every namespace and drop pending sync keys."""
        for store in self._stores.values():
            store.clear()
        self._sync_queue.clear()

    def start_cleanup_task(self, interval: Optional[float] = None) -> asyncio.Task:
        """
        Start periodic expiry cleanup on the running event loop.

        Args:
            interval: Seconds between runs, ``cleanup_interval`` by default
        """
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task
        interval = interval or self._config.cleanup_interval

        async def cleanup():
            while True:
                await asyncio.sleep(interval)
                self.cleanup_expired()

        self._cleanup_task = asyncio.get_running_loop().create_task(cleanup())
        return self._cleanup_task

    def stop_cleanup_task(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    # Internal helpers

    def _put(self, namespace: CacheNamespace, key: str, value: Any) -> None:
        policy = self._policies[namespace]
        self._stores[namespace].set(key, value, ttl=policy.default_ttl, priority=policy.priority)

    @staticmethod
    def _as_model(value: Any, model: Type[M]) -> Optional[M]:
        if value is None or isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except ModelValidationError as e:
            logger.warning(f"Discarding cached value that is not a valid {model.__name__}: {e}")
            return None

    @staticmethod
    def _as_model_list(value: Any, model: Type[M]) -> Optional[List[M]]:
        if value is None:
            return None
        try:
            return [item if isinstance(item, model) else model.model_validate(item) for item in value]
        except (ModelValidationError, TypeError) as e:
            logger.warning(f"Discarding cached list that is not a valid {model.__name__} list: {e}")
            return None
