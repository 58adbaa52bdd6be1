"""Embedding service.

Provides query and document embeddings using sentence-transformers.
Lazy-loads the model on first use to avoid startup overhead. Query and
document text get different prefixes, so the same text may embed to
different vectors depending on the mode.
"""

from __future__ import annotations

import asyncio
import struct
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import EmbeddingError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer


class EmbeddingService:
    """Embedder capability backed by sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Encoding runs in a worker thread with a timeout
    - Serialization helpers for SQLite BLOB storage
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize embedding service.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model: SentenceTransformer | None = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode already-prefixed texts into normalized vectors."""
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed_query(self, text: str) -> list[float]:
        return await self._embed(self._config.query_prefix + text)

    async def embed_document(self, text: str) -> list[float]:
        return await self._embed(self._config.document_prefix + text)

    async def _embed(self, text: str) -> list[float]:
        try:
            results = await asyncio.wait_for(
                asyncio.to_thread(self.encode, [text]),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"Embedding timed out after {self._config.timeout_seconds}s"
            ) from e
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e

        if not results or not results[0]:
            raise EmbeddingError("empty embedding response")
        return results[0]

    @staticmethod
    def serialize_embedding(embedding: list[float]) -> bytes:
        """Serialize embedding to bytes for SQLite BLOB storage.

        Args:
            embedding: Embedding vector as list of floats

        Returns:
            Packed bytes (little-endian float32)
        """
        return struct.pack(f"<{len(embedding)}f", *embedding)

    @staticmethod
    def deserialize_embedding(blob: bytes) -> list[float]:
        """Deserialize embedding from SQLite BLOB.

        Args:
            blob: Packed bytes from SQLite

        Returns:
            Embedding vector as list of floats
        """
        count = len(blob) // 4  # float32 = 4 bytes
        return list(struct.unpack(f"<{count}f", blob))


def cosine_similarity(a: list[float] | np.ndarray, b: list[float] | np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for mismatched or zero vectors."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)
