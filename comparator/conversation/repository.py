"""
Conversation Repository

Cache-through access to conversations and messages: reads are served from
the conversation cache when possible and otherwise fetched from the backing
store through the retry controller, then cached. Writes go to the backing
store first and invalidate the cache afterwards.
"""

import logging
from typing import Any, Dict, List, Optional

from comparator.common.error_handling import ErrorCode, ErrorHandler, classify_error
from comparator.conversation.backing_store import BackingStore
from comparator.conversation.cache_service import ConversationCacheService
from comparator.conversation.models import Conversation, Message

logger = logging.getLogger(__name__)

CONVERSATION_KIND = "conversation"
MESSAGES_KIND = "messages"


class ConversationRepository:
    """Conversations and messages backed by a BackingStore and cached."""

    def __init__(
        self,
        cache_service: ConversationCacheService,
        backing_store: BackingStore,
        error_handler: Optional[ErrorHandler] = None
    ):
        self._cache = cache_service
        self._store = backing_store
        self._error_handler = error_handler or ErrorHandler("conversation-store")

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """
        Get a conversation, from the cache if present.

        Returns:
            The conversation, or None if the backing store has no such record

        Raises:
            ClassifiedError: If the backing store fails
        """
        cached = self._cache.get_cached_conversation(conversation_id)
        if cached is not None:
            return cached

        data = await self._fetch(CONVERSATION_KIND, conversation_id)
        if data is None:
            return None
        conversation = Conversation.model_validate(data)
        self._cache.cache_conversation(conversation)
        return conversation

    async def get_messages(self, conversation_id: str) -> List[Message]:
        """Get a conversation's messages in id order, from the cache if present."""
        cached = self._cache.get_cached_messages(conversation_id)
        if cached is not None:
            return cached

        data = await self._fetch(MESSAGES_KIND, conversation_id)
        messages = [Message.model_validate(item) for item in (data or [])]
        self._cache.cache_messages(conversation_id, messages)
        return sorted(messages, key=lambda message: message.id)

    async def update_conversation(self, conversation_id: str, patch: Dict[str, Any]) -> Conversation:
        """
        Apply ``patch`` in the backing store and invalidate cached copies.

        The user's list, folder and search entries are invalidated as well
        since they may show the changed fields.
        """
        key = f"{CONVERSATION_KIND}:{conversation_id}"
        data = await self._error_handler.execute_with_retry(
            lambda: self._store.mutate_entity(key, patch),
            "mutate_entity",
            {"conversation_id": conversation_id}
        )
        conversation = Conversation.model_validate(data)
        self._cache.invalidate_conversation(conversation_id)
        self._cache.invalidate_user_caches(conversation.user_id)
        return conversation

    async def reconcile(self, keys: List[str]) -> None:
        """
        Re-fetch and re-cache invalidated entries.

        Used as the background sync queue's reconcile callable. Records that no
        longer exist are left uncached; other failures propagate so the queue
        logs the batch.
        """
        failures = []
        for key in keys:
            kind, _, entity_id = key.partition(":")
            if kind != CONVERSATION_KIND or not entity_id:
                logger.debug(f"Skipping unsupported sync key {key}")
                continue
            try:
                await self.get_conversation(entity_id)
                await self.get_messages(entity_id)
            except Exception as e:
                error = classify_error(e, {"conversation_id": entity_id})
                if error.code == ErrorCode.NOT_FOUND:
                    continue
                failures.append(error)

        if failures:
            raise failures[0]

    async def _fetch(self, kind: str, entity_id: str) -> Any:
        key = f"{kind}:{entity_id}"
        return await self._error_handler.execute_with_retry(
            lambda: self._store.fetch_entity(key),
            "fetch_entity",
            {"conversation_id": entity_id}
        )
