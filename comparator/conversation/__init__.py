"""
Conversation services of the research comparator.

This package wires the conversation cache, the background sync queue, the
retry controller and its circuit breakers, the repository and the AI provider
gateway into one process-wide ConversationServices instance.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from comparator.common.cache import DurableStore, create_durable_store
from comparator.common.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitState,
    set_circuit_breaker_registry
)
from comparator.common.config import AppConfig, get_config
from comparator.common.error_handling import ErrorHandler
from comparator.common.logger import app_logger, configure_from_settings, get_logger, log_execution_time
from comparator.conversation.ai_provider import AIProviderGateway, TokenCounter
from comparator.conversation.backing_store import (
    AIProviderClient,
    BackingStore,
    BackingStoreError,
    InMemoryBackingStore
)
from comparator.conversation.cache_service import ConversationCacheService
from comparator.conversation.ids import ULIDGenerator, generate_ulid
from comparator.conversation.models import (
    AIProvider,
    AIRequest,
    AIResponse,
    Conversation,
    ConversationListPage,
    Folder,
    Message,
    MessageRole,
    TokenUsage
)
from comparator.conversation.repository import ConversationRepository
from comparator.conversation.sync_queue import BackgroundSyncQueue

logger = get_logger("conversation", parent=app_logger)


@dataclass
class ConversationServices:
    """Process-wide set of conversation services."""
    config: AppConfig
    cache_service: ConversationCacheService
    sync_queue: BackgroundSyncQueue
    circuit_breakers: CircuitBreakerRegistry
    store_error_handler: ErrorHandler
    ai_error_handler: ErrorHandler
    repository: Optional[ConversationRepository] = None
    ai_gateway: Optional[AIProviderGateway] = None


_services: Optional[ConversationServices] = None


def initialize_conversation_services(
    config: Optional[AppConfig] = None,
    backing_store: Optional[BackingStore] = None,
    ai_client: Optional[AIProviderClient] = None,
    durable_store: Optional[DurableStore] = None
) -> ConversationServices:
    """
    Create the conversation services once and return the shared instance.

    Later calls return the existing instance and ignore their arguments;
    call ``reset_conversation_services`` first to rebuild.

    Args:
        config: Application config, the loaded one by default
        backing_store: Authoritative record store; without one no repository
            is created and invalidations are not reconciled
        ai_client: Provider transport; without one no gateway is created
        durable_store: Side store for persistent cache entries, built from
            ``config.cache.persistence`` when None
    """
    global _services
    if _services is not None:
        return _services

    config = config or get_config()
    configure_from_settings(config.logging)

    if durable_store is None:
        durable_store = create_durable_store(
            config.cache.persistence,
            directory=config.cache.persistence_dir,
            redis_config=config.redis
        )

    circuit_breakers = CircuitBreakerRegistry(config.circuit_breaker)
    set_circuit_breaker_registry(circuit_breakers)

    sync_queue = BackgroundSyncQueue(
        batch_size=config.sync_queue.batch_size,
        drain_delay=config.sync_queue.drain_delay
    )
    cache_service = ConversationCacheService(
        config=config.cache,
        durable_store=durable_store,
        sync_queue=sync_queue
    )
    store_error_handler = ErrorHandler("conversation-store", config.retry, circuit_breakers)
    ai_error_handler = ErrorHandler("ai-provider", config.retry, circuit_breakers)

    repository = None
    if backing_store is not None:
        repository = ConversationRepository(cache_service, backing_store, store_error_handler)
        sync_queue.set_reconcile(repository.reconcile)

    ai_gateway = None
    if ai_client is not None:
        ai_gateway = AIProviderGateway(ai_client, ai_error_handler, config.ai)

    _services = ConversationServices(
        config=config,
        cache_service=cache_service,
        sync_queue=sync_queue,
        circuit_breakers=circuit_breakers,
        store_error_handler=store_error_handler,
        ai_error_handler=ai_error_handler,
        repository=repository,
        ai_gateway=ai_gateway
    )
    logger.info(
        f"Conversation services initialized (persistence={config.cache.persistence}, "
        f"repository={'yes' if repository else 'no'}, ai={'yes' if ai_gateway else 'no'})"
    )
    return _services


def get_conversation_services() -> ConversationServices:
    """Return the shared instance, initializing it with defaults if needed."""
    if _services is None:
        return initialize_conversation_services()
    return _services


def reset_conversation_services() -> None:
    """Tear down the shared instance so the next call rebuilds it."""
    global _services
    if _services is not None:
        _services.cache_service.stop_cleanup_task()
        _services.sync_queue.clear()
    _services = None
    set_circuit_breaker_registry(None)


def clear_all() -> None:
    """Empty every cache namespace, pending sync keys and circuit state."""
    if _services is None:
        return
    _services.cache_service.clear_all()
    _services.circuit_breakers.reset()
    _services.store_error_handler.clear_error_stats()
    _services.ai_error_handler.clear_error_stats()


@log_execution_time(logger, operation="check_service_health", slow_threshold=0.5)
def check_service_health() -> Dict[str, Any]:
    """
    Report the health of each service.

    A service is unhealthy while any of its circuits is open.
    """
    services = get_conversation_services()
    states = services.circuit_breakers.get_all_states()

    def circuits_closed(service: str) -> bool:
        return not any(
            key.startswith(f"{service}:") and state["state"] == CircuitState.OPEN.value
            for key, state in states.items()
        )

    try:
        cache_ok = services.cache_service.total_entries() >= 0
    except Exception as e:
        logger.error(f"Cache health check failed: {e}")
        cache_ok = False

    return {
        "conversation": services.repository is not None and circuits_closed("conversation-store"),
        "cache": cache_ok,
        "ai": services.ai_gateway is not None and circuits_closed("ai-provider"),
        "sync_queue": services.sync_queue.get_stats(),
        "circuits": states,
    }


__all__ = [
    'AIProvider',
    'AIProviderClient',
    'AIProviderGateway',
    'AIRequest',
    'AIResponse',
    'BackgroundSyncQueue',
    'BackingStore',
    'BackingStoreError',
    'Conversation',
    'ConversationCacheService',
    'ConversationListPage',
    'ConversationRepository',
    'ConversationServices',
    'Folder',
    'InMemoryBackingStore',
    'Message',
    'MessageRole',
    'TokenCounter',
    'TokenUsage',
    'ULIDGenerator',
    'check_service_health',
    'clear_all',
    'generate_ulid',
    'get_conversation_services',
    'initialize_conversation_services',
    'reset_conversation_services',
]
