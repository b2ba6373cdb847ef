"""
Must-cite distribution.

Spreads chunks no doc on the path cites yet across the lessons still to be
written, so the finished path covers its material.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from uuid import UUID

from src.semantic.similarity import cosine_similarity

DEFAULT_PER_NODE = 2
MAX_PER_NODE_CONFIGURED = 8
MAX_PER_NODE = 10


def per_node_cap(configured: int, uncovered: int, nodes: int) -> int:
    """Configured cap clamped to [1, 8], raised to ceil(uncovered / nodes) but never past 10."""
    cap = min(MAX_PER_NODE_CONFIGURED, max(1, configured or DEFAULT_PER_NODE))
    if nodes > 0 and uncovered > 0:
        need = math.ceil(uncovered / nodes)
        if need > cap:
            cap = min(MAX_PER_NODE, need)
    return cap


def uncovered_chunk_ids(allowed: Iterable[UUID], cited: Iterable[UUID | str]) -> list[UUID]:
    cited_set = {str(c) for c in cited}
    return sorted({c for c in allowed if str(c) not in cited_set}, key=str)


def distribute_must_cite(
    chunk_ids: Sequence[UUID],
    chunk_embeddings: dict[UUID, Sequence[float]],
    node_ids: Sequence[UUID],
    node_embeddings: dict[UUID, Sequence[float]],
    configured_per_node: int = DEFAULT_PER_NODE,
) -> dict[UUID, list[UUID]]:
    """
    Assign each chunk to the most similar node with room left.

    Ties go to the less loaded node. Chunks without an embedding, or when no
    node has one, go to the least loaded node. Once a chunk's best node is
    full it falls to the least loaded node with capacity. When every node is
    full the chunk still goes to its best node (least loaded without vectors),
    so no chunk is dropped. Each node's list is sorted by id.
    """
    out: dict[UUID, list[UUID]] = {nid: [] for nid in node_ids}
    if not chunk_ids or not node_ids:
        return out
    cap = per_node_cap(configured_per_node, len(chunk_ids), len(node_ids))

    def least_loaded() -> UUID | None:
        open_nodes = [nid for nid in node_ids if len(out[nid]) < cap]
        if not open_nodes:
            return None
        return min(open_nodes, key=lambda nid: (len(out[nid]), str(nid)))

    for cid in sorted(chunk_ids, key=str):
        target: UUID | None = None
        vec = chunk_embeddings.get(cid)
        if vec:
            best_score = -2.0
            for nid in node_ids:
                nvec = node_embeddings.get(nid)
                if not nvec:
                    continue
                score = cosine_similarity(vec, nvec)
                if target is None or score > best_score or (
                    score == best_score and len(out[nid]) < len(out[target])
                ):
                    target, best_score = nid, score
        best = target
        if target is None or len(out[target]) >= cap:
            target = least_loaded()
        if target is None:
            target = best if best is not None else min(node_ids, key=lambda nid: (len(out[nid]), str(nid)))
        out[target].append(cid)

    for nid in out:
        out[nid].sort(key=str)
    return out
