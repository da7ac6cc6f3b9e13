"""
Tests for configuration loading, namespace policies and cache keys.
"""

import json
import unittest

import pytest
import yaml
from pydantic import ValidationError

from comparator.common.cache import (
    CacheNamespace,
    CachePriority,
    DEFAULT_POLICIES,
    KeyBuilder,
    build_policies
)
from comparator.common.config import AppConfig, CacheConfig, ConfigLoader, RetryConfig


class TestKeyBuilder(unittest.TestCase):
    """Test the KeyBuilder class."""

    def test_build(self):
        self.assertEqual(KeyBuilder.build("a", 1, None), "a:1:null")
        self.assertEqual(KeyBuilder.build("conversation", CacheNamespace.MESSAGES), "conversation:messages")
        self.assertEqual(KeyBuilder.build("u1", {"b": 1}), KeyBuilder.build("u1", {"b": 1}))

    def test_hash_filters_is_order_independent(self):
        self.assertEqual(
            KeyBuilder.hash_filters({"folder": "f1", "archived": False}),
            KeyBuilder.hash_filters({"archived": False, "folder": "f1"})
        )
        self.assertEqual(KeyBuilder.hash_filters(None), "all")
        self.assertEqual(KeyBuilder.hash_filters({"folder": None}), "all")

    def test_user_keys_start_with_user_id(self):
        self.assertTrue(KeyBuilder.conversation_list_key("user-1", {"pinned": True}).startswith("user-1:"))
        self.assertEqual(KeyBuilder.conversation_list_key("user-1"), "user-1:all")
        self.assertEqual(KeyBuilder.folder_list_key("user-1"), "user-1:folders")
        self.assertTrue(KeyBuilder.search_key("user-1", "solar").startswith("user-1:"))

    def test_search_key_normalizes_query(self):
        self.assertEqual(
            KeyBuilder.search_key("u1", "  Solar   Panels "),
            KeyBuilder.search_key("u1", "solar panels")
        )
        self.assertNotEqual(
            KeyBuilder.search_key("u1", "solar"),
            KeyBuilder.search_key("u1", "solar", {"folder": "f1"})
        )

    def test_sync_key(self):
        self.assertEqual(KeyBuilder.sync_key("conversation", "c1"), "conversation:c1")


class TestConfigLoader(unittest.TestCase):

    def test_defaults(self):
        config = ConfigLoader(environ={}).load()
        self.assertEqual(config.cache.conversation_ttl, 1800)
        self.assertEqual(config.retry.max_retries, 3)
        self.assertEqual(config.circuit_breaker.failure_threshold, 5)
        self.assertEqual(config.circuit_breaker.reset_timeout, 30.0)
        self.assertEqual(config.sync_queue.batch_size, 10)
        self.assertEqual(config.cache.persistence, "none")

    def test_environment_overrides(self):
        config = ConfigLoader(environ={
            "COMPARATOR_CACHE__SEARCH_TTL": "120",
            "COMPARATOR_RETRY__MAX_RETRIES": "5",
            "COMPARATOR_LOGGING__LEVEL": "debug",
            "UNRELATED": "x",
        }).load()
        self.assertEqual(config.cache.search_ttl, 120)
        self.assertEqual(config.retry.max_retries, 5)
        self.assertEqual(config.logging.level, "DEBUG")

    def test_invalid_values_rejected(self):
        with self.assertRaises(ValidationError):
            CacheConfig(persistence="sqlite")
        with self.assertRaises(ValidationError):
            CacheConfig(search_ttl=0)
        with self.assertRaises(ValidationError):
            RetryConfig(max_retries=-1)
        with self.assertRaises(ValidationError):
            RetryConfig(jitter=1.5)


def test_config_file_then_environment(tmp_path):
    path = tmp_path / "comparator.yaml"
    path.write_text(yaml.safe_dump({
        "cache": {"search_ttl": 90, "persistence": "memory"},
        "retry": {"max_retries": 1},
    }))
    config = ConfigLoader(str(path), environ={"COMPARATOR_RETRY__MAX_RETRIES": "4"}).load()
    assert config.cache.search_ttl == 90
    assert config.cache.persistence == "memory"
    assert config.retry.max_retries == 4


def test_json_config_file(tmp_path):
    path = tmp_path / "comparator.json"
    path.write_text(json.dumps({"circuit_breaker": {"failure_threshold": 2}}))
    config = ConfigLoader(environ={"COMPARATOR_CONFIG_PATH": str(path)}).load()
    assert config.circuit_breaker.failure_threshold == 2


def test_missing_config_file_uses_defaults(tmp_path):
    config = ConfigLoader(str(tmp_path / "absent.yaml"), environ={}).load()
    assert config == AppConfig()


def test_default_policy_table():
    conversations = DEFAULT_POLICIES[CacheNamespace.CONVERSATIONS]
    assert (conversations.default_ttl, conversations.max_ttl) == (1800, 7200)
    assert conversations.priority == CachePriority.NORMAL
    assert DEFAULT_POLICIES[CacheNamespace.MESSAGES].priority == CachePriority.HIGH
    assert DEFAULT_POLICIES[CacheNamespace.CONVERSATION_LISTS].max_entries == 20
    assert DEFAULT_POLICIES[CacheNamespace.FOLDERS].default_ttl == 3600
    assert DEFAULT_POLICIES[CacheNamespace.SEARCH].priority == CachePriority.LOW


@pytest.mark.parametrize("namespace", list(CacheNamespace))
def test_build_policies_matches_defaults(namespace):
    built = build_policies(CacheConfig(max_bytes_per_namespace=None))
    assert built[namespace] == DEFAULT_POLICIES[namespace]


def test_build_policies_applies_overrides():
    built = build_policies(CacheConfig(search_ttl=60, search_max_entries=5, max_bytes_per_namespace=1024))
    assert built[CacheNamespace.SEARCH].default_ttl == 60
    assert built[CacheNamespace.SEARCH].max_entries == 5
    assert built[CacheNamespace.SEARCH].max_bytes == 1024
