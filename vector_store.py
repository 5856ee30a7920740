"""
Catalog Search Service — Vector Store Layer

Interfaces for the external embedding-search collaborator:
  - similarity_search(query, top_k, threshold) -> [(document_id, score)]
  - add(documents)  (raises on provider errors, including quota exhaustion)

The in-memory implementation embeds with a deterministic hash so the
whole service runs locally without an embedding API.
"""
from __future__ import annotations
import hashlib
import logging
from typing import Optional

import numpy as np

from models import VectorDocument

logger = logging.getLogger(__name__)


# ============================================================
# Embedding Interface
# ============================================================

class EmbeddingProvider:
    """
    Abstract embedding provider. In production, wraps an API call
    to an embedding model service (see llm_client.OpenAIEmbeddingProvider).
    """

    dim: int

    async def embed_query(self, text: str) -> list[float]:
        raise NotImplementedError

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embedding based on token hashes."""

    def __init__(self, dim: int = 256):
        self.dim = dim

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text).tolist()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(t).tolist() for t in texts]

    def _embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        for token in text.lower().split():
            h = hashlib.sha256(token.encode("utf-8")).digest()
            vec[int.from_bytes(h[:4], "big") % self.dim] += 1.0
        norm = np.linalg.norm(vec)
        return vec / norm if norm > 0 else vec


# ============================================================
# Vector Store Interface
# ============================================================

class VectorStore:
    """
    Abstract vector store. In production, backed by pgvector
    (see asyncpg_repository.PgVectorStore).
    """

    async def similarity_search(
        self,
        query: str,
        top_k: int,
        threshold: float,
    ) -> list[tuple[str, float]]:
        """
        Search for similar documents.
        Returns list of (document_id, similarity) sorted by score desc.
        """
        raise NotImplementedError

    async def add(self, documents: list[VectorDocument]) -> None:
        """Store or update document embeddings."""
        raise NotImplementedError


class InMemoryVectorStore(VectorStore):
    """In-memory vector store for testing / local dev."""

    def __init__(self, embedder: Optional[EmbeddingProvider] = None):
        self.embedder = embedder or HashEmbeddingProvider()
        self.vectors: dict[str, np.ndarray] = {}
        self.documents: dict[str, VectorDocument] = {}

    async def similarity_search(
        self,
        query: str,
        top_k: int,
        threshold: float,
    ) -> list[tuple[str, float]]:
        if not self.vectors:
            return []
        query_vec = np.asarray(await self.embedder.embed_query(query), dtype=np.float32)

        results = []
        for doc_id, vec in self.vectors.items():
            sim = self._cosine_sim(query_vec, vec)
            if sim >= threshold:
                results.append((doc_id, sim))

        results.sort(key=lambda x: x[1], reverse=True)
        return results[:top_k]

    async def add(self, documents: list[VectorDocument]) -> None:
        vectors = await self.embedder.embed_batch([d.content for d in documents])
        for doc, vec in zip(documents, vectors):
            self.vectors[doc.id] = np.asarray(vec, dtype=np.float32)
            self.documents[doc.id] = doc

    @staticmethod
    def _cosine_sim(a: np.ndarray, b: np.ndarray) -> float:
        na = float(np.linalg.norm(a))
        nb = float(np.linalg.norm(b))
        return float(np.dot(a, b)) / (na * nb) if na > 0 and nb > 0 else 0.0
