"""
Background Sync Queue

Reconciles cache invalidations with the backing store without blocking the
caller that invalidated. Keys are deduplicated while pending and drained in
bounded batches with a pause between batches. A failed batch is logged and
dropped; retrying is the retry controller's job, not the queue's.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

ReconcileFn = Callable[[List[str]], Union[Awaitable[Any], Any]]


class BackgroundSyncQueue:
    """
    Deduplicated queue of keys awaiting reconciliation.

    ``queue_background_sync`` schedules a drain task on the running event
    loop when none is in progress. Without a running loop the keys stay
    pending until ``drain`` is awaited explicitly.
    """

    def __init__(
        self,
        reconcile: Optional[ReconcileFn] = None,
        batch_size: int = 10,
        drain_delay: float = 1.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        """
        Initialize the queue.

        Args:
            reconcile: Callable receiving a batch of keys, sync or async
            batch_size: Maximum keys per reconciliation call
            drain_delay: Pause in seconds between batches
            sleep: Coroutine used for the pause, ``asyncio.sleep`` by default
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._reconcile = reconcile
        self._batch_size = batch_size
        self._drain_delay = drain_delay
        self._sleep = sleep or asyncio.sleep
        # dict keeps insertion order and gives set-like dedup
        self._pending: Dict[str, None] = {}
        self._draining = False
        self._task: Optional[asyncio.Task] = None
        self._batches_processed = 0
        self._batches_failed = 0

    @property
    def is_draining(self) -> bool:
        return self._draining

    def set_reconcile(self, reconcile: ReconcileFn) -> None:
        """Attach the reconciliation callable after construction."""
        self._reconcile = reconcile

    def pending_keys(self) -> List[str]:
        """Keys waiting for reconciliation, oldest first."""
        return list(self._pending)

    def queue_background_sync(self, key: str) -> None:
        """
        Add ``key`` to the pending set and start a drain if none is running.

        Args:
            key: Key to reconcile, e.g. ``conversation:{id}``
        """
        if not key:
            raise ValueError("Sync key must be a non-empty string")
        self._pending[key] = None

        if self._draining:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; {key} stays pending until drained")
            return
        self._draining = True
        self._task = loop.create_task(self._run_drain())

    async def drain(self) -> int:
        """
        Process every pending key in batches.

        Returns:
            Number of keys taken off the queue
        """
        processed = 0
        while self._pending:
            batch = list(self._pending)[:self._batch_size]
            for key in batch:
                del self._pending[key]
            processed += len(batch)

            await self._process_batch(batch)

            if self._pending:
                await self._sleep(self._drain_delay)
        return processed

    async def wait_idle(self) -> None:
        """Wait for the current drain task, if any, to finish."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    def clear(self) -> None:
        """Drop pending keys and cancel a running drain."""
        self._pending.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._draining = False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending": len(self._pending),
            "draining": self._draining,
            "batches_processed": self._batches_processed,
            "batches_failed": self._batches_failed,
        }

    async def _run_drain(self) -> None:
        try:
            await self.drain()
        finally:
            # A drain cancelled by clear() must not reset the flag of its successor
            if self._task is asyncio.current_task():
                self._draining = False

    async def _process_batch(self, batch: List[str]) -> None:
        if self._reconcile is None:
            logger.debug(f"No reconcile callable; dropping {len(batch)} sync keys")
            return
        try:
            result = self._reconcile(batch)
            if inspect.isawaitable(result):
                await result
            self._batches_processed += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._batches_failed += 1
            logger.error(f"Background sync failed for {len(batch)} keys {batch}: {e}")
