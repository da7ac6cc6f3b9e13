"""
Tests for the background sync queue.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from comparator.conversation.sync_queue import BackgroundSyncQueue


@pytest.mark.asyncio
async def test_keys_are_deduplicated():
    reconcile = AsyncMock()
    queue = BackgroundSyncQueue(reconcile, sleep=AsyncMock())

    queue.queue_background_sync("conversation:a")
    queue.queue_background_sync("conversation:b")
    queue.queue_background_sync("conversation:a")

    assert queue.pending_keys() == ["conversation:a", "conversation:b"]
    assert queue.is_draining

    await queue.wait_idle()

    reconcile.assert_awaited_once_with(["conversation:a", "conversation:b"])
    assert queue.pending_keys() == []
    assert not queue.is_draining


@pytest.mark.asyncio
async def test_drains_in_batches_with_delay():
    reconcile = AsyncMock()
    sleep = AsyncMock()
    queue = BackgroundSyncQueue(reconcile, batch_size=2, drain_delay=1.0, sleep=sleep)

    for i in range(5):
        queue.queue_background_sync(f"conversation:{i}")
    await queue.wait_idle()

    assert [c.args[0] for c in reconcile.await_args_list] == [
        ["conversation:0", "conversation:1"],
        ["conversation:2", "conversation:3"],
        ["conversation:4"],
    ]
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 1.0]


@pytest.mark.asyncio
async def test_failed_batch_is_logged_and_dropped():
    reconcile = AsyncMock(side_effect=[RuntimeError("store down"), None])
    queue = BackgroundSyncQueue(reconcile, batch_size=1, sleep=AsyncMock())

    queue.queue_background_sync("conversation:a")
    queue.queue_background_sync("conversation:b")
    await queue.wait_idle()

    assert reconcile.await_count == 2
    assert queue.pending_keys() == []
    stats = queue.get_stats()
    assert stats["batches_failed"] == 1
    assert stats["batches_processed"] == 1


@pytest.mark.asyncio
async def test_key_added_during_drain_is_processed():
    seen = []
    queue = BackgroundSyncQueue(batch_size=10, sleep=AsyncMock())

    async def reconcile(keys):
        seen.append(keys)
        if keys == ["conversation:a"]:
            queue.queue_background_sync("conversation:b")
        await asyncio.sleep(0)

    queue.set_reconcile(reconcile)
    queue.queue_background_sync("conversation:a")
    await queue.wait_idle()

    assert seen == [["conversation:a"], ["conversation:b"]]


def test_without_event_loop_keys_wait_for_explicit_drain():
    reconcile = MagicMock()
    queue = BackgroundSyncQueue(reconcile, sleep=AsyncMock())

    queue.queue_background_sync("conversation:a")
    assert not queue.is_draining
    assert queue.pending_keys() == ["conversation:a"]

    processed = asyncio.run(queue.drain())

    assert processed == 1
    reconcile.assert_called_once_with(["conversation:a"])


def test_clear_and_validation():
    queue = BackgroundSyncQueue()
    queue.queue_background_sync("conversation:a")
    queue.clear()
    assert queue.pending_keys() == []

    with pytest.raises(ValueError):
        queue.queue_background_sync("")
    with pytest.raises(ValueError):
        BackgroundSyncQueue(batch_size=0)


@pytest.mark.asyncio
async def test_clear_does_not_let_cancelled_drain_reset_its_successor():
    release = asyncio.Event()
    seen = []

    async def reconcile(keys):
        seen.append(keys)
        await release.wait()

    queue = BackgroundSyncQueue(reconcile, sleep=AsyncMock())
    queue.queue_background_sync("conversation:a")
    await asyncio.sleep(0)
    first = queue._task

    queue.clear()
    queue.queue_background_sync("conversation:b")
    second = queue._task
    with pytest.raises(asyncio.CancelledError):
        await first

    assert second is not first
    assert queue.is_draining
    queue.queue_background_sync("conversation:c")
    assert queue._task is second

    release.set()
    await queue.wait_idle()
    assert not queue.is_draining
    assert seen == [["conversation:a"], ["conversation:b"], ["conversation:c"]]
