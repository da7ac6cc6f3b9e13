"""
Common Components for the comparator core

This package contains the infrastructure shared by the conversation services.

Key components:
1. Configuration - Pydantic settings loaded from defaults, files and environment
2. Logging - Centralized logging configuration
3. Cache Infrastructure - Bounded in-memory stores with durable side stores
4. Error Handling - Error taxonomy, classification and retries
5. Circuit Breakers - Per-operation failure isolation
"""

# Initialize logging
from comparator.common.logger import app_logger

from comparator.common.config import AppConfig, get_config, reload_config

from comparator.common.error_handling import (
    ClassifiedError, ErrorCode, ErrorHandler, ErrorSeverity,
    classify_error, error_response, log_error, retry
)

from comparator.common.circuit_breaker import (
    CircuitBreakerRegistry, CircuitState, get_circuit_breaker_registry
)

__all__ = [
    'app_logger',
    'AppConfig', 'get_config', 'reload_config',
    'ClassifiedError', 'ErrorCode', 'ErrorHandler', 'ErrorSeverity',
    'classify_error', 'error_response', 'log_error', 'retry',
    'CircuitBreakerRegistry', 'CircuitState', 'get_circuit_breaker_registry',
]
