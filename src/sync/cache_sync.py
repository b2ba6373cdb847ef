"""
Best-effort propagation of committed canonical state to derived caches.

Nothing here raises: the saga log already holds the rollback plan for the
vector store, and the graph store is rebuildable from canonical rows.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

from loguru import logger

from src.pipeline.concurrency import run_bounded
from src.pipeline.ids import chunked
from src.pipeline.records import ConceptRecord, EdgeRecord, NodeRecord
from src.sync.graph_store import GraphBatch, GraphNode, GraphRel
from src.sync.vector_store import VectorItem


@dataclass
class VectorSyncReport:
    batches: int = 0
    upserted: int = 0
    failed_batches: int = 0
    skipped: bool = False


async def sync_vectors(
    vectors,
    namespace: str,
    items: Sequence[VectorItem],
    batch_size: int = 64,
    concurrency: int = 20,
) -> VectorSyncReport:
    """Upsert items in batches with bounded concurrency; failures are logged and counted."""
    report = VectorSyncReport()
    if vectors is None:
        report.skipped = True
        return report
    batches = chunked([i for i in items if i.values], batch_size)
    report.batches = len(batches)

    async def _upsert(batch: list[VectorItem]) -> int:
        try:
            return await vectors.upsert(namespace, batch)
        except Exception as exc:
            logger.warning(f"Vector upsert to {namespace} failed ({len(batch)} items): {exc}")
            report.failed_batches += 1
            return 0

    results = await run_bounded(batches, concurrency, _upsert)
    report.upserted = sum(results)
    if report.batches:
        logger.debug(f"Vector sync {namespace}: {report.upserted} upserted, {report.failed_batches} failed batches")
    return report


async def sync_graph(graph, batch: GraphBatch) -> bool:
    """One-shot graph upsert; returns False when skipped or failed."""
    if graph is None or batch.is_empty():
        return False
    try:
        await graph.upsert(batch)
        return True
    except Exception as exc:
        logger.warning(f"Graph sync failed ({len(batch.nodes)} nodes, {len(batch.rels)} rels): {exc}")
        return False


# ========================================
# Graph batch builders
# ========================================


def concept_graph_batch(path_id: UUID, concepts: Sequence[ConceptRecord], edges: Sequence[EdgeRecord]) -> GraphBatch:
    batch = GraphBatch()
    batch.nodes.append(GraphNode("Path", str(path_id)))
    for c in concepts:
        batch.nodes.append(
            GraphNode(
                "Concept",
                str(c.id),
                {"key": c.key, "name": c.name, "scope": c.scope, "path_id": str(path_id), "depth": c.depth},
            )
        )
        if c.parent_id is not None:
            batch.rels.append(GraphRel("CHILD_OF", "Concept", str(c.id), "Concept", str(c.parent_id)))
    for e in edges:
        batch.rels.append(
            GraphRel(
                e.edge_type.upper(),
                "Concept",
                str(e.from_concept_id),
                "Concept",
                str(e.to_concept_id),
                {"strength": e.strength},
            )
        )
    return batch


def path_nodes_batch(path_id: UUID, nodes: Sequence[NodeRecord]) -> GraphBatch:
    batch = GraphBatch()
    batch.nodes.append(GraphNode("Path", str(path_id)))
    for n in nodes:
        batch.nodes.append(
            GraphNode(
                "PathNode",
                str(n.id),
                {"index": n.index, "title": n.title, "node_kind": str(n.metadata.get("node_kind") or "")},
            )
        )
        if n.parent_node_id is not None:
            batch.rels.append(GraphRel("CHILD_OF", "PathNode", str(n.id), "PathNode", str(n.parent_node_id)))
    return batch
