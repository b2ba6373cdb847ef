"""Vector math shared by retrieval, canonical matching and must-cite assignment."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float] | np.ndarray | None, b: Sequence[float] | np.ndarray | None) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty, zero or mismatched vectors."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def top_k_by_cosine(
    query: Sequence[float],
    candidates: Sequence[tuple[object, Sequence[float]]],
    k: int,
) -> list[tuple[object, float]]:
    """Top-k (id, score) pairs, best first; ties keep candidate order."""
    if k <= 0 or not candidates:
        return []
    scored = [(cid, cosine_similarity(query, emb)) for cid, emb in candidates]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:k]


def mean_vector(vectors: Sequence[Sequence[float]]) -> list[float] | None:
    rows = [v for v in vectors if v is not None and len(v) > 0]
    if not rows:
        return None
    return np.mean(np.asarray(rows, dtype=np.float32), axis=0).astype(float).tolist()


def embedding_to_bytes(embedding: Sequence[float] | np.ndarray) -> bytes:
    """Serialize an embedding for BYTEA storage (float32)."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def embedding_from_bytes(data: bytes | None) -> list[float] | None:
    """Deserialize a BYTEA embedding; None when absent or empty."""
    if not data:
        return None
    return np.frombuffer(data, dtype=np.float32).astype(float).tolist()
