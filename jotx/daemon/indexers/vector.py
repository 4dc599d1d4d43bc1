"""In-memory cosine-similarity index keyed by entry id.

Vectors are stored L2-normalized in a contiguous numpy matrix so a search
is one matrix-vector product. The index is rebuilt from the embeddings
persisted in the entry store when the daemon starts.
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from loguru import logger

from ..errors import IndexingError


# Scores are rounded so a vector stored and queried back compares equal
# to a threshold written with the same precision.
SCORE_DECIMALS = 6


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 if either vector has zero magnitude."""
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def _normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float64).ravel()
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


class VectorIndex:
    """Thread-safe nearest-neighbour index."""

    def __init__(self, dim: Optional[int] = None, initial_capacity: int = 1024):
        self.dim = dim
        self._lock = threading.RLock()
        self._capacity = initial_capacity
        self._matrix: Optional[np.ndarray] = None
        self._ids = np.zeros(initial_capacity, dtype=np.int64)
        self._positions: Dict[int, int] = {}
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __contains__(self, entry_id: int) -> bool:
        return entry_id in self._positions

    def _ensure_matrix(self, dim: int) -> None:
        if self.dim is None:
            self.dim = dim
        if dim != self.dim:
            raise IndexingError(f"Vector dimension mismatch: expected {self.dim}, got {dim}")
        if self._matrix is None:
            self._matrix = np.zeros((self._capacity, self.dim), dtype=np.float32)

    def _grow(self) -> None:
        self._capacity *= 2
        matrix = np.zeros((self._capacity, self.dim), dtype=np.float32)
        matrix[:self._size] = self._matrix[:self._size]
        ids = np.zeros(self._capacity, dtype=np.int64)
        ids[:self._size] = self._ids[:self._size]
        self._matrix, self._ids = matrix, ids

    def add(self, entry_id: int, vector: np.ndarray) -> None:
        normalized = _normalize(vector)
        with self._lock:
            self._ensure_matrix(normalized.shape[0])
            position = self._positions.get(entry_id)
            if position is None:
                if self._size == self._capacity:
                    self._grow()
                position = self._size
                self._size += 1
                self._positions[entry_id] = position
                self._ids[position] = entry_id
            self._matrix[position] = normalized

    def add_many(self, items: Iterable[Tuple[int, np.ndarray]]) -> int:
        added = 0
        for entry_id, vector in items:
            try:
                self.add(entry_id, vector)
                added += 1
            except IndexingError as e:
                logger.warning(f"Skipping vector for entry {entry_id}: {e}")
        return added

    def remove(self, entry_id: int) -> bool:
        """Remove a vector. Removing an unknown id is a no-op."""
        with self._lock:
            position = self._positions.pop(entry_id, None)
            if position is None:
                return False
            last = self._size - 1
            if position != last:
                moved_id = int(self._ids[last])
                self._matrix[position] = self._matrix[last]
                self._ids[position] = moved_id
                self._positions[moved_id] = position
            self._size -= 1
            return True

    def clear(self) -> None:
        with self._lock:
            self._positions.clear()
            self._size = 0

    def search(self, query_vector: np.ndarray, k: Optional[int], min_similarity: float) -> List[Tuple[int, float]]:
        """
        Return up to ``k`` (id, score) pairs with score >= ``min_similarity``.

        Ordered by descending score; equal scores put the newer (higher) id
        first. ``k=None`` returns every match.
        """
        query = _normalize(query_vector)
        with self._lock:
            if self._size == 0 or not np.any(query):
                return []
            if query.shape[0] != self.dim:
                raise IndexingError(f"Query dimension mismatch: expected {self.dim}, got {query.shape[0]}")
            scores = np.round(self._matrix[:self._size] @ query, SCORE_DECIMALS)
            ids = self._ids[:self._size].copy()

        threshold = round(min_similarity, SCORE_DECIMALS)
        keep = scores >= threshold
        scores, ids = scores[keep], ids[keep]
        order = np.lexsort((-ids, -scores))
        if k is not None:
            order = order[:k]
        return [(int(ids[i]), float(scores[i])) for i in order]
