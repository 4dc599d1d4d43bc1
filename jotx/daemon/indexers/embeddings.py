"""Embedding providers.

The same provider instance embeds entries at index time and queries at
search time, so both live in one vector space.
"""

import hashlib
import math
import threading
from collections import Counter
from typing import Optional

import numpy as np
from loguru import logger
from sentence_transformers import SentenceTransformer

from ..algorithms import tokenize
from ..config import EmbeddingConfig
from ..errors import IndexingError


class EmbeddingProvider:
    """Maps text to a fixed-length float32 vector."""

    name = "base"

    def __init__(self, dim: int, max_chars: int = 512):
        self.dim = dim
        self.max_chars = max_chars

    def _truncate(self, text: str) -> str:
        # Model has a max input length
        if len(text) > self.max_chars:
            return text[:self.max_chars]
        return text

    def embed(self, text: str) -> np.ndarray:
        raise NotImplementedError


class SentenceTransformerEmbedder(EmbeddingProvider):
    """Local sentence-transformers model, loaded on first use."""

    name = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", dim: int = 384, max_chars: int = 512):
        super().__init__(dim, max_chars)
        self.model_name = model_name
        self._model = None
        self._load_lock = threading.Lock()

    def _load(self):
        with self._load_lock:
            if self._model is None:
                try:
                    self._model = SentenceTransformer(self.model_name)
                except Exception as e:
                    raise IndexingError(f"Cannot load embedding model {self.model_name}: {e}") from e
                self.dim = self._model.get_sentence_embedding_dimension()
                logger.info(f"Loaded embedding model {self.model_name} (dim={self.dim})")
        return self._model

    def embed(self, text: str) -> np.ndarray:
        model = self._model or self._load()
        try:
            vector = model.encode(
                self._truncate(text),
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except Exception as e:
            raise IndexingError(f"Embedding failed: {e}") from e
        return np.asarray(vector, dtype=np.float32)


class HashEmbedder(EmbeddingProvider):
    """
    Deterministic bag-of-words hashing embedder.

    No model download; similarity reflects shared tokens only. Used when
    ``embedding.provider`` is ``hash`` and in tests.
    """

    name = "hash"

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        counts = Counter(tokenize(self._truncate(text)))
        for token, count in counts.items():
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "little")
            sign = 1.0 if value & 1 else -1.0
            vector[(value >> 1) % self.dim] += sign * (1.0 + math.log(count))
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector


def create_embedder(config: EmbeddingConfig, provider: Optional[str] = None) -> EmbeddingProvider:
    provider = provider or config.provider
    if provider == "hash":
        return HashEmbedder(dim=config.dim, max_chars=config.max_chars)
    return SentenceTransformerEmbedder(
        model_name=config.model,
        dim=config.dim,
        max_chars=config.max_chars,
    )
