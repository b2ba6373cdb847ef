"""
Embedding Service - dense vectors for chunks, concepts, clusters and lesson queries.

Uses sentence-transformers (all-MiniLM-L6-v2 by default, 384 dimensions). The
model is lazy-loaded on first use; encoding runs in a worker thread so stage
coroutines keep making progress while a batch encodes.

References:
- https://www.sbert.net/docs/pretrained_models.html
"""

from __future__ import annotations

import asyncio

from loguru import logger
from sentence_transformers import SentenceTransformer

from config import get_settings


class EmbeddingService:
    """
    Generate semantic embeddings for pipeline texts.

    Example:
        >>> service = EmbeddingService()
        >>> vectors = await service.embed(["What is inertia?"])
        >>> len(vectors[0])  # 384
    """

    def __init__(self, model_name: str | None = None):
        settings = get_settings()
        self.model_name = model_name or settings.embedding_model
        self.expected_dimension = settings.embedding_dimension
        self.batch_size = settings.embedding_batch_size
        self.show_progress = settings.embedding_show_progress
        self._model: SentenceTransformer | None = None

    @property
    def model(self) -> SentenceTransformer:
        """
        Lazy load the model on first use.

        The model is downloaded from HuggingFace Hub on first run.
        """
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            logger.info(f"Embedding model loaded: {self.model_name} ({self.expected_dimension}-dim)")
        return self._model

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts synchronously, one vector per input in input order."""
        if not texts:
            return []
        logger.debug(f"Encoding {len(texts)} texts (batch_size={self.batch_size})")
        embeddings = self.model.encode(
            texts,
            batch_size=self.batch_size,
            show_progress_bar=self.show_progress,
            convert_to_numpy=True,
        )
        return [emb.astype(float).tolist() for emb in embeddings]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Encode texts off the event loop."""
        return await asyncio.to_thread(self.encode, list(texts))

    def preload_model(self) -> None:
        """Preload the model into memory to avoid latency on the first stage."""
        _ = self.model
        logger.info("Embedding model preloaded")

    def get_model_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "dimension": self.expected_dimension,
            "is_loaded": self._model is not None,
            "batch_size": self.batch_size,
        }
