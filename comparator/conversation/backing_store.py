"""
Collaborator contracts of the conversation layer.

The authoritative record store and the AI provider client live outside this
package. They are reached only through the abstract interfaces below; raw
failures they raise are classified by the retry controller.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from comparator.conversation.models import AIProvider, AIRequest, AIResponse

logger = logging.getLogger(__name__)


class BackingStoreError(Exception):
    """
    Raw failure of a backing store call.

    Carries the store's own error code and HTTP-like status so the
    classifier can map it without parsing the message.
    """

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class BackingStore(ABC):
    """Authoritative store of conversations, messages and folders."""

    @abstractmethod
    async def fetch_entity(self, key: str) -> Any:
        """
        Read the current value behind ``key``.

        Keys have the form ``"{kind}:{id}"``, e.g. ``conversation:abc`` or
        ``messages:abc``. Returns None when no record exists.
        """

    @abstractmethod
    async def mutate_entity(self, key: str, patch: Dict[str, Any]) -> Any:
        """Apply ``patch`` to the value behind ``key`` and return the new value."""


class InMemoryBackingStore(BackingStore):
    """
    Dictionary-backed store for local runs and tests.

    Returns deep copies so callers cannot mutate stored records in place.
    """

    def __init__(self, records: Optional[Dict[str, Any]] = None, latency: float = 0.0):
        self._records: Dict[str, Any] = dict(records or {})
        self._latency = latency
        self.fetch_calls: List[str] = []
        self.mutate_calls: List[str] = []

    def put(self, key: str, value: Any) -> None:
        self._records[key] = copy.deepcopy(value)

    def remove(self, key: str) -> None:
        self._records.pop(key, None)

    async def fetch_entity(self, key: str) -> Any:
        self.fetch_calls.append(key)
        if self._latency:
            await asyncio.sleep(self._latency)
        return copy.deepcopy(self._records.get(key))

    async def mutate_entity(self, key: str, patch: Dict[str, Any]) -> Any:
        self.mutate_calls.append(key)
        if self._latency:
            await asyncio.sleep(self._latency)
        current = self._records.get(key)
        if current is None:
            raise BackingStoreError(f"Record {key} not found", code="PGRST116", status=404)
        if not isinstance(current, dict):
            raise BackingStoreError(f"Record {key} cannot be patched", code="22P02", status=400)
        current.update(patch)
        logger.debug(f"Mutated {key}: {sorted(patch)}")
        return copy.deepcopy(current)


class AIProviderClient(ABC):
    """Transport to the AI providers."""

    @abstractmethod
    async def invoke(self, provider: AIProvider, request: AIRequest) -> AIResponse:
        """Send ``request`` to ``provider`` and return its completion."""
