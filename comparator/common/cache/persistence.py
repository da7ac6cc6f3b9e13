"""
Durable Side-Store Module

Key-value persistence used for cache entries stored with ``persistent=True``.
Stores only move serialized strings around; the owning cache store decides
what to write and how to read it back. Writes are write-through with no
read-repair, so a reloaded cache may be stale or partial.
"""

import base64
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import redis
from redis.exceptions import RedisError

from .base import CacheError

logger = logging.getLogger(__name__)


class DurableStore(ABC):
    """Abstract key-value persistence for serialized cache entries."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    def write(self, key: str, serialized: str) -> None:
        """Store ``serialized`` under ``key``, replacing any previous value."""
        pass

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the stored string for ``key`` or None when absent."""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key``; removing an absent key is not an error."""
        pass

    @abstractmethod
    def list_keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with ``prefix``."""
        pass


class MemoryDurableStore(DurableStore):
    """
    Dict-backed store.

    Outlives the cache stores that write into it, which is enough to simulate
    a restart inside one process.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}

    def write(self, key: str, serialized: str) -> None:
        self._data[key] = serialized

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def list_keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class FileDurableStore(DurableStore):
    """
    One file per key inside a directory.

    Keys are url-safe base64 encoded into file names so that namespaced keys
    containing ``:`` or ``/`` map to valid names.
    """

    SUFFIX = ".json"

    def __init__(self, directory: str):
        self._directory = Path(directory)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Cannot create cache directory {directory}: {e}") from e

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, key: str) -> Path:
        encoded = base64.urlsafe_b64encode(key.encode('utf-8')).decode('ascii')
        return self._directory / f"{encoded}{self.SUFFIX}"

    @staticmethod
    def _key_for(file_name: str) -> Optional[str]:
        encoded = file_name[:-len(FileDurableStore.SUFFIX)]
        try:
            return base64.urlsafe_b64decode(encoded.encode('ascii')).decode('utf-8')
        except (ValueError, UnicodeDecodeError):
            return None

    def write(self, key: str, serialized: str) -> None:
        path = self._path_for(key)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(serialized)
            os.replace(tmp_path, path)
        except OSError as e:
            raise CacheError(f"Failed to write {key}: {e}") from e

    def read(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return f.read()
        except OSError as e:
            raise CacheError(f"Failed to read {key}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self._path_for(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CacheError(f"Failed to remove {key}: {e}") from e

    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self._directory.glob(f"*{self.SUFFIX}"):
            key = self._key_for(path.name)
            if key is not None and key.startswith(prefix):
                keys.append(key)
        return keys


class RedisDurableStore(DurableStore):
    """
    Redis-backed store.

    All keys are written under ``key_prefix`` so several deployments can share
    one database. Redis failures surface as ``CacheError``; the cache store
    that owns this object logs and swallows them.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "comparator:"
    ):
        """
        Initialize the Redis store.

        Args:
            redis_client: Optional existing Redis client to use
            host: Redis server hostname
            port: Redis server port
            db: Redis database number
            password: Redis password
            key_prefix: Prefix for all Redis keys
        """
        self._key_prefix = key_prefix
        if redis_client is not None:
            self._redis = redis_client
        else:
            self._redis = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True
            )

    def _build_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def write(self, key: str, serialized: str) -> None:
        try:
            self._redis.set(self._build_key(key), serialized)
        except RedisError as e:
            raise CacheError(f"Redis write failed for {key}: {e}") from e

    def read(self, key: str) -> Optional[str]:
        try:
            value = self._redis.get(self._build_key(key))
        except RedisError as e:
            raise CacheError(f"Redis read failed for {key}: {e}") from e
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        return value

    def remove(self, key: str) -> None:
        try:
            self._redis.delete(self._build_key(key))
        except RedisError as e:
            raise CacheError(f"Redis delete failed for {key}: {e}") from e

    def list_keys(self, prefix: str = "") -> List[str]:
        pattern = f"{self._key_prefix}{prefix}*"
        try:
            raw_keys = list(self._redis.scan_iter(match=pattern))
        except RedisError as e:
            raise CacheError(f"Redis scan failed for {prefix}: {e}") from e
        keys = []
        for raw in raw_keys:
            if isinstance(raw, bytes):
                raw = raw.decode('utf-8')
            keys.append(raw[len(self._key_prefix):])
        return keys


def create_durable_store(backend: str, directory: Optional[str] = None, redis_config=None) -> Optional[DurableStore]:
    """
    Build a durable store from a backend name.

    Args:
        backend: ``none``, ``memory``, ``file`` or ``redis``
        directory: Target directory for the file backend
        redis_config: ``RedisConfig`` for the redis backend

    Returns:
        A store, or None when persistence is disabled
    """
    backend = (backend or "none").lower()
    if backend == "none":
        return None
    if backend == "memory":
        return MemoryDurableStore()
    if backend == "file":
        return FileDurableStore(directory or ".comparator_cache")
    if backend == "redis":
        if redis_config is None:
            return RedisDurableStore()
        client = redis.Redis.from_url(redis_config.connection_string, decode_responses=True)
        return RedisDurableStore(client, key_prefix=redis_config.key_prefix)
    raise ValueError(f"Unsupported persistence backend: {backend}")
