"""Retrieval engine: literal, semantic and auto search."""

import asyncio
import time
from typing import List, Optional, Sequence, Union

from loguru import logger

from .algorithms import dedupe_by_content, merge_with_baseline
from .bus import EventBus
from .config import Settings
from .config_store import ConfigStore
from .errors import IndexingError, JotxError
from .indexers import EmbeddingProvider, VectorIndex
from .models import (
    MatchKind,
    SearchMode,
    SearchResponse,
    SearchResult,
    SearchStatus,
    SourceType,
)
from .storage import EntryStore


# Literal hits merged into auto results score this far below the threshold
LITERAL_BASELINE_OFFSET = 0.05


def resolve_case_sensitivity(sources: Optional[Sequence[SourceType]], settings: Settings) -> bool:
    """
    Case sensitivity comes from the per-source settings. A search spanning
    several sources is case-sensitive only if every one of them is.
    """
    if not sources:
        sources = (SourceType.CLIPBOARD, SourceType.SHELL)
    flags = []
    for source in sources:
        if source is SourceType.CLIPBOARD:
            flags.append(settings.clipboard_case_sensitive)
        elif source in (SourceType.SHELL, SourceType.FILE):
            flags.append(settings.shell_case_sensitive)
        else:
            flags.append(False)
    return all(flags)


class RetrievalEngine:
    """Serves keyword/fuzzy queries from storage and semantic ones from the vector index."""

    def __init__(
        self,
        store: EntryStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        config_store: ConfigStore,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.index = index
        self.embedder = embedder
        self.config_store = config_store
        self.event_bus = event_bus

    async def search(
        self,
        query: str,
        mode: Union[SearchMode, str] = SearchMode.AUTO,
        sources: Optional[Sequence[Union[SourceType, str]]] = None,
        limit: Optional[int] = None,
        case_sensitive: Optional[bool] = None,
        fuzzy: Optional[bool] = None,
        cwd: Optional[str] = None,
    ) -> SearchResponse:
        """
        Run a search. Never raises: failures come back with status ``failed``
        so callers can tell them apart from an empty result.
        """
        start = time.perf_counter()
        snapshot = self.config_store.snapshot()
        search_config = snapshot.config.search
        limit = limit or search_config.max_results

        try:
            mode = SearchMode(mode)
            source_types = [SourceType(s) for s in sources] if sources else None
        except ValueError as e:
            return SearchResponse(query=query, mode=SearchMode.AUTO, status=SearchStatus.FAILED, error=str(e))

        if case_sensitive is None:
            case_sensitive = resolve_case_sensitivity(source_types, snapshot.config.settings)
        if fuzzy is None:
            fuzzy = search_config.fuzzy_matching

        try:
            if mode is SearchMode.LITERAL:
                results = await self._literal(query, source_types, case_sensitive, fuzzy, limit, cwd)
            elif mode is SearchMode.SEMANTIC:
                results = await self._semantic(query, source_types, limit, search_config.similarity_threshold)
            else:
                results = await self._auto(query, source_types, case_sensitive, limit, cwd, search_config)
        except JotxError as e:
            logger.error(f"Search failed ({mode.value}): {e}")
            response = SearchResponse(query=query, mode=mode, status=SearchStatus.FAILED, error=str(e))
        else:
            status = SearchStatus.OK if results else SearchStatus.EMPTY
            response = SearchResponse(query=query, mode=mode, status=status, results=results)

        response.latency_ms = (time.perf_counter() - start) * 1000
        if self.event_bus is not None:
            self.event_bus.publish(
                "search.completed", "retrieval_engine",
                mode=mode.value, status=response.status.value,
                result_count=len(response.results), latency_ms=response.latency_ms,
            )
        logger.debug(
            f"Search ({mode.value}) returned {len(response.results)} results "
            f"in {response.latency_ms:.1f}ms"
        )
        return response

    async def _literal(
        self,
        query: str,
        sources: Optional[List[SourceType]],
        case_sensitive: bool,
        fuzzy: bool,
        limit: int,
        cwd: Optional[str],
    ) -> List[SearchResult]:
        return await asyncio.to_thread(
            self.store.query_literal, query, sources, case_sensitive, fuzzy, limit, cwd
        )

    async def _semantic(
        self,
        query: str,
        sources: Optional[List[SourceType]],
        limit: int,
        threshold: float,
    ) -> List[SearchResult]:
        if not query.strip():
            return []
        query_vector = await asyncio.to_thread(self.embedder.embed, query)
        # With a source filter, take every match and filter afterwards
        k = None if sources else limit * 2
        hits = self.index.search(query_vector, k=k, min_similarity=threshold)
        if not hits:
            return []

        entries = await asyncio.to_thread(self.store.get_many, [entry_id for entry_id, _ in hits])
        results = []
        for entry_id, score in hits:
            entry = entries.get(entry_id)
            # Evicted after the index lookup
            if entry is None:
                continue
            if sources and entry.source_type not in sources:
                continue
            results.append(SearchResult(entry=entry, score=score, match=MatchKind.SEMANTIC))
        return dedupe_by_content(results)[:limit]

    async def _auto(
        self,
        query: str,
        sources: Optional[List[SourceType]],
        case_sensitive: bool,
        limit: int,
        cwd: Optional[str],
        search_config,
    ) -> List[SearchResult]:
        threshold = search_config.similarity_threshold
        try:
            semantic = await self._semantic(query, sources, limit, threshold)
        except IndexingError as e:
            logger.warning(f"Semantic search unavailable, using literal only: {e}")
            semantic = []

        if len(semantic) >= search_config.min_semantic_results:
            return semantic

        literal = await self._literal(query, sources, case_sensitive, True, limit, cwd)
        # With a threshold below the offset the baseline bottoms out at 0;
        # merge_with_baseline still orders literal hits after semantic ties
        baseline = max(threshold - LITERAL_BASELINE_OFFSET, 0.0)
        return merge_with_baseline(semantic, literal, baseline, limit)
