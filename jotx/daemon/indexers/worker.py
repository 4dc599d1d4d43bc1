"""Background consumer that embeds stored entries.

Capture enqueues ids without blocking; a bounded queue connects it to one
or more consumer tasks here. Ids that never make it into the queue (full
queue, daemon restart) are picked up again by a periodic re-scan of
entries that are still pending in storage.
"""

import asyncio
from typing import Dict, List, Optional, Set

from loguru import logger

from ..bus import EventBus
from ..config_store import ConfigStore
from ..error_handling import RetryPolicy
from ..errors import IndexingError, StorageError
from ..models import IndexResult
from ..storage import EntryStore
from .embeddings import EmbeddingProvider
from .vector import VectorIndex


class IndexWorker:
    """Drains the index queue into the vector index."""

    def __init__(
        self,
        store: EntryStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        config_store: ConfigStore,
        event_bus: Optional[EventBus] = None,
        concurrency: int = 1,
    ):
        self.store = store
        self.index = index
        self.embedder = embedder
        self.config_store = config_store
        self.event_bus = event_bus
        self.concurrency = concurrency

        indexing = config_store.snapshot().config.indexing
        self.high_water = indexing.high_water
        self.rescan_interval = indexing.rescan_interval_s
        self.retry_policy = RetryPolicy(
            max_retries=indexing.max_retries,
            base_delay=indexing.base_delay_s,
            max_delay=indexing.max_delay_s,
        )
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=indexing.queue_size)
        self._pending: Set[int] = set()
        self._retry_handles: Dict[int, asyncio.TimerHandle] = {}
        self._attempts: Dict[int, int] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._backpressure = False
        self.stats = {
            "indexed": 0,
            "retried": 0,
            "failed": 0,
            "dropped": 0,
            "rescanned": 0,
        }

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def enqueue(self, entry_id: int) -> bool:
        """
        Queue an entry for embedding without blocking.

        Returns False when the queue is full; the entry stays pending in
        storage and the next re-scan retries it.
        """
        if entry_id in self._pending or entry_id in self._retry_handles:
            return True
        try:
            self._queue.put_nowait(entry_id)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning(f"Index queue full, entry {entry_id} deferred to re-scan")
            return False
        self._pending.add(entry_id)

        depth = self._queue.qsize()
        if depth >= self.high_water and not self._backpressure:
            self._backpressure = True
            logger.warning(f"Index backlog at {depth} (high water {self.high_water}), indexing is lagging")
        elif depth < self.high_water // 2 and self._backpressure:
            self._backpressure = False
            logger.info(f"Index backlog recovered ({depth})")
        return True

    async def index_once(self, entry_id: int) -> IndexResult:
        """
        Embed one entry and add it to the vector index.

        Raises IndexingError or StorageError for retriable failures.
        """
        entry = await asyncio.to_thread(self.store.get, entry_id)
        if entry is None:
            self.index.remove(entry_id)
            return IndexResult.MISSING
        if entry.embedding is not None:
            return await self._add_if_present(entry_id, entry.embedding, IndexResult.ALREADY_INDEXED)

        vector = await asyncio.to_thread(self.embedder.embed, entry.content)
        if vector.shape[0] != (self.index.dim or vector.shape[0]):
            raise IndexingError(f"Embedding dimension {vector.shape[0]} does not match index ({self.index.dim})")

        if not await asyncio.to_thread(self.store.set_embedding, entry_id, vector):
            if not await asyncio.to_thread(self.store.exists, entry_id):
                return IndexResult.MISSING
            return IndexResult.ALREADY_INDEXED

        return await self._add_if_present(entry_id, vector, IndexResult.INDEXED)

    async def _add_if_present(self, entry_id: int, vector, result: IndexResult) -> IndexResult:
        self.index.add(entry_id, vector)
        # Evicted since it was read: eviction may have already run its remove()
        if not await asyncio.to_thread(self.store.exists, entry_id):
            self.index.remove(entry_id)
            return IndexResult.MISSING
        return result

    async def rebuild(self) -> int:
        """Reload the vector index from embeddings persisted in storage."""
        self.index.clear()
        added = await asyncio.to_thread(self.index.add_many, self.store.iter_embeddings())
        logger.info(f"Vector index rebuilt with {added} entries")
        return added

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for i in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._consume(), name=f"index-worker-{i}"))
        if self.rescan_interval > 0:
            self._tasks.append(asyncio.create_task(self._rescan_loop(), name="index-rescan"))
        logger.info(f"Index worker started ({self.concurrency} consumers)")

    async def stop(self) -> None:
        self._running = False
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Index worker stopped")

    async def drain(self) -> None:
        """Wait until the queue is empty and all taken jobs are done."""
        await self._queue.join()

    async def rescan(self) -> int:
        """Queue pending entries that are neither queued nor awaiting retry."""
        free = self._queue.maxsize - self._queue.qsize()
        if free <= 0:
            return 0
        limit = free + len(self._pending) + len(self._retry_handles)
        ids = await asyncio.to_thread(self.store.unembedded_ids, limit)
        queued = 0
        for entry_id in ids:
            if entry_id in self._pending or entry_id in self._retry_handles:
                continue
            if not self.enqueue(entry_id):
                break
            queued += 1
        if queued:
            self.stats["rescanned"] += queued
            logger.info(f"Re-scan queued {queued} unindexed entries")
        return queued

    async def _rescan_loop(self) -> None:
        while self._running:
            try:
                await self.rescan()
            except StorageError as e:
                logger.error(f"Index re-scan failed: {e}")
            await asyncio.sleep(self.rescan_interval)

    async def _consume(self) -> None:
        while True:
            entry_id = await self._queue.get()
            try:
                result = await self.index_once(entry_id)
                self._attempts.pop(entry_id, None)
                if result is IndexResult.INDEXED:
                    self.stats["indexed"] += 1
                    self._publish("index.completed", id=entry_id)
                logger.debug(f"Index job {entry_id}: {result.value}")
            except (IndexingError, StorageError) as e:
                await self._handle_failure(entry_id, e)
            except Exception as e:
                logger.exception(f"Unexpected error indexing entry {entry_id}: {e}")
                await self._handle_failure(entry_id, e)
            finally:
                self._pending.discard(entry_id)
                self._queue.task_done()

    async def _handle_failure(self, entry_id: int, error: Exception) -> None:
        attempts = self._attempts.get(entry_id, 0) + 1
        self._attempts[entry_id] = attempts
        try:
            await asyncio.to_thread(self.store.record_index_attempt, entry_id)
        except StorageError as e:
            logger.error(f"Cannot record index attempt for {entry_id}: {e}")

        if self.retry_policy.should_retry(attempts):
            delay = self.retry_policy.calculate_delay(attempts - 1)
            self.stats["retried"] += 1
            logger.warning(f"Indexing entry {entry_id} failed ({error}); retry {attempts} in {delay:.2f}s")
            loop = asyncio.get_running_loop()
            self._retry_handles[entry_id] = loop.call_later(delay, self._retry, entry_id)
            return

        self._attempts.pop(entry_id, None)
        self.stats["failed"] += 1
        logger.error(f"Giving up on indexing entry {entry_id} after {attempts} attempts: {error}")
        try:
            await asyncio.to_thread(self.store.mark_index_failed, entry_id)
        except StorageError as e:
            logger.error(f"Cannot mark entry {entry_id} as unindexed: {e}")
        self._publish("index.failed", id=entry_id, attempts=attempts, error=str(error))

    def _retry(self, entry_id: int) -> None:
        self._retry_handles.pop(entry_id, None)
        if self._running:
            self.enqueue(entry_id)

    def _publish(self, event_type: str, **data) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, "index_worker", **data)

    def get_stats(self) -> Dict[str, int]:
        return {
            **self.stats,
            "queue_depth": self.queue_depth,
            "awaiting_retry": len(self._retry_handles),
        }
