"""Embedding providers, vector index and the background index worker."""

from .embeddings import EmbeddingProvider, HashEmbedder, SentenceTransformerEmbedder, create_embedder
from .vector import VectorIndex, cosine_similarity
from .worker import IndexWorker

__all__ = [
    "EmbeddingProvider",
    "HashEmbedder",
    "IndexWorker",
    "SentenceTransformerEmbedder",
    "VectorIndex",
    "cosine_similarity",
    "create_embedder",
]
