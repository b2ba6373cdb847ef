"""
Semantic helpers for the content pipeline.

- embedding_service: sentence-transformers encoder (all-MiniLM-L6-v2, 384-dim),
  imported directly by callers so the model stack loads only when needed
- similarity: cosine scoring and top-k selection over stored embeddings
"""

from src.semantic.similarity import (
    cosine_similarity,
    embedding_from_bytes,
    embedding_to_bytes,
    mean_vector,
    top_k_by_cosine,
)

__all__ = [
    "cosine_similarity",
    "embedding_from_bytes",
    "embedding_to_bytes",
    "mean_vector",
    "top_k_by_cosine",
]
