"""
Hybrid evidence retrieval over a material set's chunks.

Sources run in order and are merged preserving first-seen order:
vector ANN on the chunks namespace, lexical full-text, then (only when still
short of `final_k`) cosine over locally stored chunk embeddings.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from uuid import UUID

from loguru import logger

from src.semantic.similarity import top_k_by_cosine

from .errors import DependencyMissingError
from .excerpts import excerpt_line
from .ids import merge_uuid_lists, parse_uuid
from .records import ChunkRecord


def parse_vector_chunk_id(value: str) -> UUID | None:
    """`chunk:<uuid>` (or a bare uuid) to UUID."""
    text = str(value or "").strip()
    if ":" in text:
        text = text.rsplit(":", 1)[-1]
    return parse_uuid(text)


@dataclass
class RetrievalPlan:
    material_set_id: UUID
    chunks_namespace: str
    query_text: str
    query_embedding: list[float] | None
    file_ids: list[UUID] = field(default_factory=list)
    semantic_k: int = 14
    lexical_k: int = 8
    final_k: int = 14


class LocalChunkIndex:
    """Chunk embeddings decoded once per run, scored by cosine on demand."""

    def __init__(self, chunks: Iterable[ChunkRecord]):
        self._chunks = list(chunks)
        self._pairs: list[tuple[UUID, list[float]]] | None = None

    def _load(self) -> list[tuple[UUID, list[float]]]:
        if self._pairs is None:
            self._pairs = [(c.id, c.embedding) for c in self._chunks if c.usable and c.embedding]
            logger.debug(f"Local chunk index: {len(self._pairs)}/{len(self._chunks)} chunks with embeddings")
        return self._pairs

    def top_k(self, query_embedding: Sequence[float] | None, k: int, file_ids: Sequence[UUID] = ()) -> list[UUID]:
        pairs = self._load()
        if not pairs:
            raise DependencyMissingError("retrieval", "no local chunk embeddings available")
        if not query_embedding:
            return []
        if file_ids:
            allowed = {c.id for c in self._chunks if c.file_id in set(file_ids)}
            pairs = [p for p in pairs if p[0] in allowed]
        return [cid for cid, _ in top_k_by_cosine(query_embedding, pairs, k)]


async def retrieve_chunk_ids(
    plan: RetrievalPlan,
    vectors,
    uow,
    local: LocalChunkIndex | None = None,
) -> list[UUID]:
    """Vector, then lexical, then local fallback; truncated to final_k."""
    merged: list[UUID] = []

    if vectors is not None and plan.query_embedding and plan.semantic_k > 0:
        flt: dict = {"type": "chunk"}
        if plan.file_ids:
            flt["file_id"] = {"$in": [str(f) for f in plan.file_ids]}
        try:
            raw = await vectors.query_ids(plan.chunks_namespace, plan.query_embedding, plan.semantic_k, flt)
            merged = merge_uuid_lists(merged, [u for u in (parse_vector_chunk_id(r) for r in raw) if u])
        except Exception as exc:
            logger.warning(f"Vector retrieval failed on {plan.chunks_namespace}; falling back to lexical: {exc}")

    if plan.lexical_k > 0 and plan.query_text.strip():
        try:
            with uow.read() as repo:
                lexical = repo.lexical_chunk_ids(
                    plan.material_set_id, plan.query_text, plan.lexical_k, plan.file_ids or None
                )
            merged = merge_uuid_lists(merged, lexical)
        except Exception as exc:
            logger.warning(f"Lexical retrieval failed for set {plan.material_set_id}: {exc}")

    if len(merged) < plan.final_k and local is not None:
        try:
            merged = merge_uuid_lists(merged, local.top_k(plan.query_embedding, plan.final_k, plan.file_ids))
        except DependencyMissingError:
            if not merged:
                raise
            logger.debug("Local fallback unavailable; keeping partial retrieval")

    return merged[: max(0, plan.final_k)]


def merge_with_priority(
    must_cite: Sequence[UUID],
    figure_cite: Sequence[UUID],
    video_cite: Sequence[UUID],
    retrieved: Sequence[UUID],
    final_k: int,
) -> list[UUID]:
    """Must-cite first, then media-cited chunks, then retrieval order."""
    return merge_uuid_lists(must_cite, figure_cite, video_cite, retrieved)[: max(0, final_k)]


def grounding_excerpts(
    chunk_ids: Sequence[UUID],
    chunk_by_id: dict[UUID, ChunkRecord],
    max_lines: int,
    max_chars: int,
    max_total_chars: int = 0,
) -> str:
    """`[chunk_id=...] text` lines for the given ids in order, bounded by line and char caps."""
    lines: list[str] = []
    total = 0
    for cid in chunk_ids:
        if max_lines > 0 and len(lines) >= max_lines:
            break
        chunk = chunk_by_id.get(cid)
        if chunk is None or not chunk.usable or not (chunk.text or "").strip():
            continue
        line = excerpt_line(chunk, max_chars)
        if max_total_chars > 0 and total + len(line) + 1 > max_total_chars:
            break
        lines.append(line)
        total += len(line) + 1
    return "\n".join(lines)
