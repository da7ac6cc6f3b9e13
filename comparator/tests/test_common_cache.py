import json
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from comparator.common.cache import (
    BoundedLRUStore,
    CacheEntry,
    CacheError,
    CachePriority,
    FileDurableStore,
    MemoryDurableStore,
    RedisDurableStore,
    coerce_priority,
    create_durable_store,
    estimate_size
)
from comparator.common.config import RedisConfig
from comparator.conversation.models import Conversation
from comparator.tests.helpers import FakeClock


class TestCacheEntry(unittest.TestCase):
    """Test the CacheEntry class."""

    def setUp(self):
        self.clock = FakeClock()

    def test_init(self):
        """Test initializing a CacheEntry."""
        entry = CacheEntry({"test": "value"}, ttl=10, clock=self.clock)
        self.assertEqual(entry.value, {"test": "value"})
        self.assertEqual(entry.created_at, self.clock.now)
        self.assertEqual(entry.expires_at, self.clock.now + 10)
        self.assertEqual(entry.access_count, 0)
        self.assertEqual(entry.priority, CachePriority.NORMAL)
        self.assertEqual(entry.size_estimate, len(json.dumps({"test": "value"})))

    def test_is_expired_at_exact_boundary(self):
        entry = CacheEntry("test", ttl=10, clock=self.clock)
        self.clock.advance(9.999)
        self.assertFalse(entry.is_expired())
        self.clock.advance(0.001)
        self.assertTrue(entry.is_expired())

    def test_access(self):
        """Test accessing a CacheEntry updates stats."""
        entry = CacheEntry("test", ttl=10, clock=self.clock)
        self.clock.advance(3)
        entry.access()
        self.assertEqual(entry.access_count, 1)
        self.assertEqual(entry.last_accessed, self.clock.now)
        self.assertEqual(entry.get_age(), 3)
        self.assertEqual(entry.get_ttl(), 7)

    def test_extend_ttl_ignores_non_positive(self):
        entry = CacheEntry("test", ttl=10, clock=self.clock)
        entry.extend_ttl(5)
        entry.extend_ttl(0)
        entry.extend_ttl(-20)
        self.assertEqual(entry.ttl, 15)

    def test_to_dict_dumps_models(self):
        conversation = Conversation(id="c1", user_id="u1", title="Solar panels")
        entry = CacheEntry(conversation, ttl=60, priority="high", clock=self.clock)
        data = entry.to_dict()
        self.assertEqual(data["value"]["title"], "Solar panels")
        self.assertEqual(data["priority"], CachePriority.HIGH)

        restored = CacheEntry.from_dict(json.loads(json.dumps(data)), clock=self.clock)
        self.assertEqual(restored.value["id"], "c1")
        self.assertEqual(restored.ttl, 60)
        self.assertEqual(restored.created_at, entry.created_at)

    def test_estimate_size_falls_back_to_str(self):
        self.assertEqual(estimate_size(None), 0)
        self.assertEqual(estimate_size("abc"), 5)
        self.assertGreater(estimate_size(object()), 0)


class TestPriority(unittest.TestCase):

    def test_coerce_priority(self):
        self.assertEqual(coerce_priority(None), CachePriority.NORMAL)
        self.assertEqual(coerce_priority("low"), CachePriority.LOW)
        self.assertEqual(coerce_priority(CachePriority.HIGH), 2)
        self.assertEqual(coerce_priority(7), 7)
        with self.assertRaises(ValueError):
            coerce_priority("urgent")
        with self.assertRaises(ValueError):
            coerce_priority(True)


class TestBoundedLRUStore(unittest.TestCase):
    """Test the in-memory bounded store."""

    def setUp(self):
        self.clock = FakeClock()
        self.store = BoundedLRUStore("test", max_entries=3, default_ttl=100, clock=self.clock)

    def test_basic_operations(self):
        self.store.set("key1", "value1")
        self.assertEqual(self.store.get("key1"), "value1")
        self.assertIsNone(self.store.get("missing"))
        self.assertEqual(self.store.get("missing", "fallback"), "fallback")
        self.assertTrue(self.store.has("key1"))
        self.assertIn("key1", self.store)

        self.assertTrue(self.store.delete("key1"))
        self.assertFalse(self.store.delete("key1"))
        self.assertIsNone(self.store.get("key1"))

    def test_programmer_errors(self):
        with self.assertRaises(ValueError):
            self.store.set("", "value")
        with self.assertRaises(ValueError):
            self.store.get("")
        with self.assertRaises(ValueError):
            self.store.set("key", "value", ttl=0)
        with self.assertRaises(ValueError):
            self.store.set("key", "value", ttl=-5)

    def test_expiry_counts_miss_and_expiration(self):
        self.store.set("key1", "value1", ttl=10)
        self.clock.advance(10)
        self.assertIsNone(self.store.get("key1"))
        self.assertEqual(len(self.store), 0)

        stats = self.store.get_stats()
        self.assertEqual(stats.misses, 1)
        self.assertEqual(stats.expiration_count, 1)
        self.assertEqual(stats.hits, 0)

    def test_set_replaces_and_resets_window(self):
        self.store.set("key1", "old", ttl=10)
        self.clock.advance(8)
        self.store.set("key1", "new", ttl=10)
        self.clock.advance(8)
        self.assertEqual(self.store.get("key1"), "new")
        self.assertEqual(len(self.store), 1)

    def test_adaptive_ttl_extension(self):
        self.store.set("hot", "value", ttl=100)
        for _ in range(3):
            self.store.get("hot")
        self.assertEqual(self.store.get_with_meta("hot")["ttl"], 100)

        self.store.get("hot")
        self.assertEqual(self.store.get_with_meta("hot")["ttl"], 150)
        self.store.get("hot")
        self.assertEqual(self.store.get_with_meta("hot")["ttl"], 225)

    def test_adaptive_extension_is_capped(self):
        store = BoundedLRUStore("test", default_ttl=7200, clock=self.clock)
        store.set("hot", "value")
        for _ in range(4):
            store.get("hot")
        self.assertEqual(store.get_with_meta("hot")["ttl"], 7200 + 1800)

    def test_adaptive_ttl_never_shrinks(self):
        self.store.set("hot", "value", ttl=100)
        previous = 100
        for _ in range(10):
            self.store.get("hot")
            ttl = self.store.get_with_meta("hot")["ttl"]
            self.assertGreaterEqual(ttl, previous)
            previous = ttl

    def test_lowest_priority_evicted_first(self):
        self.store.set("low", 1, priority=CachePriority.LOW)
        self.store.set("high", 2, priority=CachePriority.HIGH)
        self.store.set("normal", 3, priority=CachePriority.NORMAL)
        self.assertEqual(self.store.eviction_candidate(), "low")

        self.store.set("another", 4, priority=CachePriority.NORMAL)
        self.assertIsNone(self.store.get("low"))
        self.assertEqual(self.store.get("high"), 2)
        self.assertEqual(self.store.get_stats().eviction_count, 1)

    def test_lru_within_priority(self):
        self.store.set("a", 1)
        self.store.set("b", 2)
        self.store.set("c", 3)
        # Reading "a" makes "b" the least recently used
        self.store.get("a")
        self.store.set("d", 4)
        self.assertEqual(self.store.keys(), ["c", "a", "d"])
        self.assertIsNone(self.store.get("b"))

    def test_high_priority_survives_churn(self):
        self.store.set("pinned", "keep", priority="high")
        for i in range(20):
            self.store.set(f"item{i}", i)
        self.assertEqual(self.store.get("pinned"), "keep")
        self.assertEqual(len(self.store), 3)

    def test_expired_entries_go_before_live_ones(self):
        self.store.set("short", 1, ttl=5, priority="high")
        self.store.set("b", 2)
        self.store.set("c", 3)
        self.clock.advance(5)
        self.store.set("d", 4)
        self.assertEqual(sorted(self.store.keys()), ["b", "c", "d"])
        self.assertEqual(self.store.get_stats().eviction_count, 0)

    def test_byte_budget(self):
        store = BoundedLRUStore("bytes", max_entries=10, max_bytes=100, clock=self.clock)
        store.set("a", "x" * 40)
        store.set("b", "x" * 40)
        self.assertEqual(store.total_size, 84)

        store.set("c", "x" * 40)
        self.assertIsNone(store.get("a"))
        self.assertLessEqual(store.total_size, 100)

    def test_oversized_entry_is_first_candidate(self):
        store = BoundedLRUStore("bytes", max_entries=10, max_bytes=100, clock=self.clock)
        store.set("small", "x", priority="low")
        store.set("big", "y" * 200, priority="high")
        self.assertIsNone(store.get("small"))
        self.assertEqual(store.eviction_candidate(), "big")

        store.set("next", "z")
        self.assertIsNone(store.get("big"))
        self.assertEqual(store.get("next"), "z")

    def test_touch(self):
        self.store.set("key1", "value1", ttl=10)
        self.clock.advance(9)
        self.assertTrue(self.store.touch("key1"))
        self.clock.advance(9)
        self.assertEqual(self.store.get("key1"), "value1")
        self.assertFalse(self.store.touch("missing"))

    def test_many(self):
        self.store.set_many({"a": 1, "b": 2})
        self.assertEqual(self.store.get_many(["a", "b", "c"]), {"a": 1, "b": 2, "c": None})

    def test_cleanup_expired(self):
        self.store.set("a", 1, ttl=5)
        self.store.set("b", 2, ttl=50)
        self.clock.advance(10)
        self.assertEqual(self.store.cleanup_expired(), 1)
        self.assertEqual(self.store.keys(), ["b"])

    def test_stats(self):
        self.store.set("a", 1)
        self.store.get("a")
        self.store.get("missing")
        stats = self.store.get_stats()
        self.assertEqual(stats.namespace, "test")
        self.assertEqual(stats.total_entries, 1)
        self.assertEqual(stats.hit_rate, 0.5)
        self.assertEqual(stats.miss_rate, 0.5)
        self.assertEqual(stats.oldest_entry, self.clock.now)
        self.assertEqual(stats.max_entries, 3)

        # Reading stats has no side effects
        self.assertEqual(self.store.get_stats(), stats)

    def test_clear(self):
        self.store.set("a", 1)
        self.store.set("b", 2)
        self.store.clear()
        self.assertEqual(len(self.store), 0)
        self.assertEqual(self.store.total_size, 0)


class TestPersistence(unittest.TestCase):
    """Test write-through persistence of cache entries."""

    def setUp(self):
        self.clock = FakeClock()
        self.durable = MemoryDurableStore()

    def _store(self, **kwargs):
        return BoundedLRUStore("conversations", default_ttl=100, durable_store=self.durable,
                               clock=self.clock, **kwargs)

    def test_reload_after_restart(self):
        store = self._store()
        store.set("c1", {"title": "Heat pumps"}, persistent=True)
        store.set("c2", {"title": "Scratch"})
        self.assertEqual(self.durable.list_keys(), ["conversations:c1"])

        restarted = self._store()
        self.assertEqual(restarted.get("c1"), {"title": "Heat pumps"})
        self.assertIsNone(restarted.get("c2"))

    def test_expired_snapshots_are_dropped_on_reload(self):
        store = self._store()
        store.set("c1", "value", ttl=10, persistent=True)
        self.clock.advance(10)

        restarted = self._store()
        self.assertEqual(len(restarted), 0)
        self.assertEqual(len(self.durable), 0)

    def test_reload_keeps_original_window(self):
        store = self._store()
        store.set("c1", "value", ttl=10, persistent=True)
        self.clock.advance(6)
        restarted = self._store()
        self.clock.advance(4)
        self.assertIsNone(restarted.get("c1"))

    def test_corrupt_snapshot_is_dropped(self):
        self.durable.write("conversations:bad", "{not json")
        store = self._store()
        self.assertEqual(len(store), 0)
        self.assertIsNone(self.durable.read("conversations:bad"))

    def test_delete_and_eviction_remove_durable_copy(self):
        store = self._store(max_entries=1)
        store.set("c1", "one", persistent=True)
        store.set("c2", "two", persistent=True)
        self.assertEqual(self.durable.list_keys(), ["conversations:c2"])

        store.delete("c2")
        self.assertEqual(len(self.durable), 0)

    def test_non_persistent_overwrite_removes_durable_copy(self):
        store = self._store()
        store.set("c1", "old", persistent=True)
        store.set("c1", "new")
        self.assertEqual(len(self.durable), 0)

    def test_clear_only_touches_own_namespace(self):
        self.durable.write("messages:m1", "{}")
        store = self._store()
        store.set("c1", "value", persistent=True)
        store.clear()
        self.assertEqual(self.durable.list_keys(), ["messages:m1"])

    def test_durable_failures_are_swallowed(self):
        failing = MagicMock()
        failing.list_keys.return_value = []
        failing.write.side_effect = CacheError("disk full")
        store = BoundedLRUStore("conversations", durable_store=failing, clock=self.clock)

        store.set("c1", "value", persistent=True)
        self.assertEqual(store.get("c1"), "value")

    def test_load_persisted_disabled(self):
        store = self._store()
        store.set("c1", "value", persistent=True)
        fresh = self._store(load_persisted=False)
        self.assertEqual(len(fresh), 0)
        self.assertEqual(fresh.load_from_durable_store(), 1)


class TestFileDurableStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = FileDurableStore(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_round_trip(self):
        self.store.write("conversations:c/1", '{"a": 1}')
        self.assertEqual(self.store.read("conversations:c/1"), '{"a": 1}')
        self.assertEqual(self.store.list_keys("conversations:"), ["conversations:c/1"])
        self.assertEqual(self.store.list_keys("messages:"), [])

        self.store.remove("conversations:c/1")
        self.store.remove("conversations:c/1")
        self.assertIsNone(self.store.read("conversations:c/1"))

    def test_survives_new_instance(self):
        clock = FakeClock()
        BoundedLRUStore("folders", durable_store=self.store, clock=clock).set(
            "u1:folders", ["Energy"], persistent=True
        )
        reopened = FileDurableStore(self.tmp.name)
        store = BoundedLRUStore("folders", durable_store=reopened, clock=clock)
        self.assertEqual(store.get("u1:folders"), ["Energy"])


class TestRedisDurableStore(unittest.TestCase):
    """Test the Redis durable store against a mocked client."""

    def setUp(self):
        self.redis = MagicMock()
        self.store = RedisDurableStore(redis_client=self.redis, key_prefix="test:")

    def test_write_read_remove(self):
        self.store.write("conversations:c1", "payload")
        self.redis.set.assert_called_once_with("test:conversations:c1", "payload")

        self.redis.get.return_value = b"payload"
        self.assertEqual(self.store.read("conversations:c1"), "payload")
        self.redis.get.assert_called_once_with("test:conversations:c1")

        self.store.remove("conversations:c1")
        self.redis.delete.assert_called_once_with("test:conversations:c1")

    def test_list_keys_strips_prefix(self):
        self.redis.scan_iter.return_value = iter([b"test:conversations:c1", "test:conversations:c2"])
        self.assertEqual(self.store.list_keys("conversations:"), ["conversations:c1", "conversations:c2"])
        self.redis.scan_iter.assert_called_once_with(match="test:conversations:*")

    def test_redis_errors_become_cache_errors(self):
        self.redis.get.side_effect = RedisConnectionError("down")
        with self.assertRaises(CacheError):
            self.store.read("conversations:c1")


@pytest.mark.parametrize("backend,expected", [
    ("none", type(None)),
    ("memory", MemoryDurableStore),
])
def test_create_durable_store(backend, expected):
    assert isinstance(create_durable_store(backend), expected)


def test_create_durable_store_file(tmp_path):
    store = create_durable_store("file", directory=str(tmp_path / "cache"))
    assert isinstance(store, FileDurableStore)
    assert (tmp_path / "cache").is_dir()


def test_create_durable_store_rejects_unknown_backend():
    with pytest.raises(ValueError):
        create_durable_store("sqlite")


def test_create_durable_store_redis_uses_connection_string():
    config = RedisConfig(host="cache.internal", port=6380, db=2, password="s3cret", use_ssl=True, key_prefix="cmp:")
    assert config.connection_string == "rediss://:s3cret@cache.internal:6380/2"

    with patch("redis.Redis.from_url") as from_url:
        store = create_durable_store("redis", redis_config=config)

    from_url.assert_called_once_with("rediss://:s3cret@cache.internal:6380/2", decode_responses=True)
    assert isinstance(store, RedisDurableStore)
    store.write("conversations:c1", "{}")
    from_url.return_value.set.assert_called_once_with("cmp:conversations:c1", "{}")
