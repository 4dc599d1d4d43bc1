"""Capture pipeline: toggle check, privacy filter, durable write, eviction, index enqueue.

Callers are shell hooks and the clipboard watcher, so ``capture`` never
raises and never waits longer than the configured budget. Every failure
becomes a ``CaptureOutcome``.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger

from .bus import EventBus
from .config import Settings
from .config_store import ConfigStore
from .indexers import IndexWorker, VectorIndex
from .models import CONTEXT_SOURCES, CaptureOutcome, Entry, SourceType, utcnow
from .storage import EntryStore


def capture_enabled(source_type: SourceType, settings: Settings) -> bool:
    if source_type is SourceType.CLIPBOARD:
        return settings.capture_clipboard
    if source_type is SourceType.SHELL:
        return settings.capture_shell
    if source_type is SourceType.FILE:
        return settings.capture_shell_history_with_files
    return True


def retention_limit(source_type: SourceType, settings: Settings) -> Optional[int]:
    """Per-category cap; notes are never evicted."""
    if source_type is SourceType.CLIPBOARD:
        return settings.clipboard_limit
    if source_type in CONTEXT_SOURCES:
        return settings.shell_limit
    return None


class CapturePipeline:
    """
    Write path for captured activity.

    1. Check the capture toggle (cheapest)
    2. Privacy filter against the current config snapshot
    3. Append to storage, then evict over the retention cap and drop the
       evicted vectors from the index
    4. Enqueue the new id for embedding (non-blocking)

    Step 3 runs in a worker thread under ``capture.timeout_ms``. If the
    budget expires the write may still finish in the background; the entry
    is then indexed by the next re-scan.
    """

    def __init__(
        self,
        store: EntryStore,
        index: VectorIndex,
        worker: IndexWorker,
        config_store: ConfigStore,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.index = index
        self.worker = worker
        self.config_store = config_store
        self.event_bus = event_bus
        self.stats = {status: 0 for status in ("stored", "dropped", "disabled", "failed", "evicted")}

    async def capture(
        self,
        content: str,
        source_type: Union[SourceType, str],
        context: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> CaptureOutcome:
        start = time.perf_counter()
        try:
            outcome = await self._capture(content, source_type, context, timestamp)
        except Exception as e:
            logger.error(f"Capture failed: {e}")
            outcome = self._finish(CaptureOutcome.failed(str(e)))

        self.stats[outcome.status.value] += 1
        elapsed_ms = (time.perf_counter() - start) * 1000
        if elapsed_ms > 100:
            logger.warning(f"Capture took {elapsed_ms:.1f}ms")
        return outcome

    async def _capture(
        self,
        content: str,
        source_type: Union[SourceType, str],
        context: Optional[Dict[str, Any]],
        timestamp: Optional[datetime],
    ) -> CaptureOutcome:
        try:
            source = SourceType(source_type)
        except ValueError:
            return self._finish(CaptureOutcome.failed(f"unknown source type: {source_type}"))

        snapshot = self.config_store.snapshot()
        settings = snapshot.config.settings

        if not capture_enabled(source, settings):
            return self._finish(CaptureOutcome.disabled(f"{source.value} capture is disabled"), source)

        if not isinstance(content, str) or not content.strip():
            return self._finish(CaptureOutcome.dropped("empty"), source)

        rule = snapshot.rules.match(content, source, context)
        if rule is not None:
            return self._finish(CaptureOutcome.dropped(f"privacy rule {rule.category}"), source, rule=rule.to_dict())

        entry = Entry(
            id=None,
            content=content,
            source_type=source,
            timestamp=timestamp or utcnow(),
            context=dict(context) if context and source in CONTEXT_SOURCES else None,
        )
        limit = retention_limit(source, settings)
        budget = snapshot.config.capture.timeout_ms / 1000

        try:
            entry_id, evicted = await asyncio.wait_for(
                asyncio.to_thread(self._persist, entry, limit),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Capture write exceeded {budget * 1000:.0f}ms budget")
            return self._finish(CaptureOutcome.failed("timeout"), source)

        if not self.worker.enqueue(entry_id):
            logger.debug(f"Entry {entry_id} stored, indexing deferred")

        if evicted:
            self.stats["evicted"] += len(evicted)
            self._publish("capture.evicted", source_type=source.value, ids=evicted)
        return self._finish(CaptureOutcome.stored(entry_id, evicted), source)

    def _persist(self, entry: Entry, limit: Optional[int]) -> Tuple[int, List[int]]:
        entry_id = self.store.append(entry)
        evicted: List[int] = []
        if limit is not None:
            evicted = self.store.evict_over_limit(entry.source_type, limit)
            for old_id in evicted:
                self.index.remove(old_id)
        return entry_id, evicted

    def _finish(self, outcome: CaptureOutcome, source: Optional[SourceType] = None, **extra) -> CaptureOutcome:
        data = {
            "id": outcome.entry_id,
            "source_type": source.value if source else None,
            "reason": outcome.reason,
            **extra,
        }
        self._publish(f"capture.{outcome.status.value}", **data)
        logger.debug(f"Capture {outcome.status.value}: {data}")
        return outcome

    def _publish(self, event_type: str, **data) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, "capture_pipeline", **data)
