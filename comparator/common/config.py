"""
Centralized Configuration for the comparator core

This module provides a unified configuration system for the cache and
resilience layer. It handles configuration from defaults, an optional YAML or
JSON file and environment variables, with type checking and validation.

Environment overrides use the ``COMPARATOR_<SECTION>__<FIELD>`` form, for
example ``COMPARATOR_CACHE__SEARCH_TTL=120`` or
``COMPARATOR_RETRY__MAX_RETRIES=5``. A ``.env`` file in the working
directory is loaded first.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "COMPARATOR_"
CONFIG_PATH_ENV = "COMPARATOR_CONFIG_PATH"


class CacheConfig(BaseModel):
    """Cache configuration, one TTL/capacity pair per namespace"""
    conversation_ttl: float = 30 * 60
    conversation_max_ttl: float = 2 * 60 * 60
    message_ttl: float = 15 * 60
    conversation_list_ttl: float = 5 * 60
    folder_ttl: float = 60 * 60
    search_ttl: float = 10 * 60

    conversation_max_entries: int = 50
    message_max_entries: int = 200
    conversation_list_max_entries: int = 20
    folder_max_entries: int = 20
    search_max_entries: int = 30

    # Byte budget applied to every namespace separately
    max_bytes_per_namespace: Optional[int] = 20 * 1024 * 1024

    adaptive_threshold: int = 3
    adaptive_extension_ratio: float = 0.5
    max_adaptive_extension: float = 30 * 60

    persistence: str = "none"
    persistence_dir: str = ".comparator_cache"
    persist_pinned_conversations: bool = True
    cleanup_interval: float = 5 * 60

    @field_validator('persistence')
    @classmethod
    def validate_persistence(cls, v):
        """Validate persistence backend name"""
        valid = ['none', 'memory', 'file', 'redis']
        if v.lower() not in valid:
            raise ValueError(f"Invalid persistence backend: {v}. Must be one of {valid}")
        return v.lower()

    @field_validator(
        'conversation_ttl', 'conversation_max_ttl', 'message_ttl',
        'conversation_list_ttl', 'folder_ttl', 'search_ttl'
    )
    @classmethod
    def validate_ttl(cls, v):
        """TTLs must be positive"""
        if v <= 0:
            raise ValueError(f"TTL must be positive, got {v}")
        return v


class RedisConfig(BaseModel):
    """Redis configuration for the durable side store"""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    use_ssl: bool = False
    key_prefix: str = "comparator:"

    @property
    def connection_string(self) -> str:
        """Get the Redis connection string"""
        protocol = "rediss" if self.use_ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"


class RetryConfig(BaseModel):
    """Retry controller configuration"""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    retryable_codes: List[str] = Field(default_factory=lambda: [
        "network-error",
        "timeout",
        "rate-limit",
        "service-unavailable",
        "provider-error",
    ])

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        """Retry count cannot be negative"""
        if v < 0:
            raise ValueError(f"max_retries must be >= 0, got {v}")
        return v

    @field_validator('jitter')
    @classmethod
    def validate_jitter(cls, v):
        """Jitter is a fraction of the delay"""
        if not 0 <= v <= 1:
            raise ValueError(f"Jitter must be between 0 and 1, got {v}")
        return v


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration"""
    failure_threshold: int = 5
    reset_timeout: float = 30.0

    @field_validator('failure_threshold')
    @classmethod
    def validate_threshold(cls, v):
        """At least one failure is needed to open a circuit"""
        if v < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {v}")
        return v


class SyncQueueConfig(BaseModel):
    """Background sync queue configuration"""
    batch_size: int = 10
    drain_delay: float = 1.0


class AIConfig(BaseModel):
    """AI provider configuration"""
    default_provider: str = "claude"
    request_timeout: float = 60.0
    max_tokens: int = 4096
    temperature: float = 0.7
    default_models: Dict[str, str] = Field(default_factory=lambda: {
        "claude": "claude-3-5-sonnet-20241022",
        "openai": "gpt-4o-mini",
        "grok": "grok-beta",
    })


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    use_json: bool = False
    file_path: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class AppConfig(BaseModel):
    """Main configuration"""
    app_name: str = "Research Comparator"
    version: str = "0.1.0"
    cache: CacheConfig = Field(default_factory=CacheConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    sync_queue: SyncQueueConfig = Field(default_factory=SyncQueueConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class ConfigLoader:
    """
    Configuration loader.

    Loads configuration from:
    1. Default values
    2. Config file
    3. Environment variables (highest priority)
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize the config loader.

        Args:
            config_path: Path to config file (YAML or JSON)
            environ: Environment mapping, defaults to ``os.environ``
        """
        load_dotenv()
        self._environ = environ if environ is not None else os.environ
        self.config_path = config_path or self._environ.get(CONFIG_PATH_ENV)
        self._config = None

    def load(self) -> AppConfig:
        """Load configuration from all sources."""
        if self._config is not None:
            return self._config

        data: Dict[str, Any] = {}
        if self.config_path:
            data = self._load_from_file(self.config_path) or {}

        for section, values in self._load_from_env().items():
            if isinstance(values, dict):
                merged = dict(data.get(section) or {})
                merged.update(values)
                data[section] = merged
            else:
                data[section] = values

        self._config = AppConfig(**data)
        return self._config

    def _load_from_env(self) -> Dict[str, Any]:
        """Collect ``COMPARATOR_SECTION__FIELD`` overrides."""
        overrides: Dict[str, Any] = {}
        for name, value in self._environ.items():
            if not name.startswith(ENV_PREFIX) or name == CONFIG_PATH_ENV:
                continue
            path = name[len(ENV_PREFIX):].lower()
            if "__" in path:
                section, field = path.split("__", 1)
                overrides.setdefault(section, {})[field] = value
            else:
                overrides[path] = value
        return overrides

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        try:
            if path.suffix.lower() in ['.yaml', '.yml']:
                with open(path, 'r') as f:
                    return yaml.safe_load(f) or {}
            elif path.suffix.lower() == '.json':
                with open(path, 'r') as f:
                    return json.load(f)
            else:
                logger.warning(f"Unsupported config file format: {path.suffix}")
                return {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file: {e}")
            return {}


config_loader = ConfigLoader()
config = config_loader.load()


def get_config() -> AppConfig:
    """Get the loaded configuration."""
    return config


def reload_config(config_path: Optional[str] = None) -> AppConfig:
    """Reload the configuration, optionally from a different file."""
    global config_loader, config
    config_loader = ConfigLoader(config_path)
    config = config_loader.load()
    return config
