"""
Concept graph builder.

Turns a material set into a path-scoped concept forest with typed edges:

    excerpts -> inventory prompt -> normalize -> coverage delta passes
             -> edges prompt -> normalize -> embed -> canonical match
             -> locked commit (concepts, parents, evidences, edges, saga)
             -> best-effort vector and graph sync

A path that already has concepts is never regenerated; the builder only
backfills canonical links for legacy rows and refreshes the graph cache.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from config import get_settings
from src.generation import prompts as prompt_lib
from src.sync.cache_sync import concept_graph_batch, sync_graph, sync_vectors
from src.sync.vector_store import GLOBAL_CONCEPTS_NAMESPACE, VectorItem, path_concepts_namespace, vector_id

from .canonical_concepts import (
    CanonicalizeResult,
    canonicalize_path_concepts,
    global_vector_items,
    match_canonical_concepts,
)
from .concept_normalizer import (
    ConceptItem,
    concepts_prompt_json,
    normalize_concepts,
    parse_concept_items,
    parse_coverage,
)
from .coordinator import CanonicalWriter
from .edge_normalizer import EdgeItem, normalize_edges, parse_edge_items
from .embedding import embed_in_batches
from .errors import ContractError
from .excerpts import build_excerpts, stratified_chunks, stratified_excerpts
from .ids import deterministic_uuid, parse_uuid_list
from .path_context import intake_context
from .records import ChunkRecord, ConceptRecord, EdgeRecord, EvidenceRecord, PathRecord, StageInput
from .saga import append_vector_deletes

STAGE = "concept_graph_build"


@dataclass
class ConceptGraphResult:
    path_id: UUID | None = None
    concepts_made: int = 0
    edges_made: int = 0
    skipped: bool = False
    paused: bool = False
    coverage_passes: int = 0
    canonical: dict[str, Any] = field(default_factory=dict)
    vectors_upserted: int = 0
    graph_synced: bool = False


def concept_id(path_id: UUID, key: str) -> UUID:
    return deterministic_uuid("concept", path_id, key)


def concept_embed_doc(c: ConceptItem) -> str:
    """Text embedded for a concept: name, summary, key points; the key when all are empty."""
    parts = [p for p in (c.name.strip(), c.summary.strip(), "\n".join(c.key_points).strip()) if p]
    return "\n".join(parts) if parts else c.key


def _concept_from_record(r: ConceptRecord) -> ConceptItem:
    aliases = r.metadata.get("aliases") if isinstance(r.metadata, dict) else None
    return ConceptItem(key=r.key, name=r.name, summary=r.summary, key_points=r.key_points, aliases=aliases or [])


class ConceptGraphBuilder:
    """Builds (once) the concept graph for a user's path over a material set."""

    def __init__(self, uow, prompts, vectors=None, graph=None, settings=None):
        self.uow = uow
        self.prompts = prompts
        self.vectors = vectors
        self.graph = graph
        self.settings = settings or get_settings()

    async def build(self, inp: StageInput) -> ConceptGraphResult:
        if inp.owner_user_id is None or inp.material_set_id is None or inp.saga_id is None:
            raise ContractError(STAGE, "owner_user_id, material_set_id and saga_id are required")

        with self.uow.transaction() as repo:
            path = repo.get_path(inp.path_id) if inp.path_id else None
            if path is None:
                path = repo.ensure_path(inp.owner_user_id, inp.material_set_id)
            existing = repo.list_concepts("path", path.id)

        result = ConceptGraphResult(path_id=path.id)
        if existing:
            logger.info(f"{STAGE}: path {path.id} already has {len(existing)} concepts; skipping generation")
            result.skipped = True
            await self._refresh_existing(path, existing, result)
            return result

        intake = intake_context(path.metadata)
        if not intake.confirmed:
            logger.info(f"{STAGE}: intake for path {path.id} awaits confirmation; not building concepts")
            result.paused = True
            return result

        with self.uow.read() as repo:
            chunks = repo.list_chunks(inp.material_set_id, intake.file_ids or None)
        usable = [c for c in chunks if c.usable and (c.text or "").strip()]
        if not usable:
            raise ContractError(STAGE, f"no usable chunks for material set {inp.material_set_id}")
        allowed = {str(c.id) for c in usable}

        concepts = await self._inventory(usable, allowed, intake.intent_md, result)
        edges = await self._edges(usable, concepts, allowed, intake.intent_md)

        docs = [concept_embed_doc(c) for c in concepts]
        vectors = await embed_in_batches(
            self.prompts,
            STAGE,
            docs,
            self.settings.concept_graph_embed_batch_size,
            self.settings.concept_graph_embed_concurrency,
        )
        embeddings = {c.key: v for c, v in zip(concepts, vectors)}

        matches, match_report = await match_canonical_concepts(
            concepts, embeddings, self.uow, self.vectors, self.settings.get_canonical_match_config()
        )
        result.canonical = match_report.to_dict()

        records = self._concept_records(path.id, concepts, embeddings)
        by_key = {r.key: r for r in records}
        parents = {
            by_key[c.key].id: by_key[c.parent_key].id for c in concepts if c.parent_key and c.parent_key in by_key
        }
        evidences = [
            EvidenceRecord(
                id=deterministic_uuid("concept_evidence", by_key[c.key].id, chunk_id),
                concept_id=by_key[c.key].id,
                chunk_id=chunk_id,
            )
            for c in concepts
            for chunk_id in parse_uuid_list(c.citations)
        ]
        edge_records = self._edge_records(edges, by_key)
        namespace = path_concepts_namespace(path.id)
        canon = CanonicalizeResult()

        def exists(repo) -> bool:
            return bool(repo.list_concepts("path", path.id))

        def work(repo) -> None:
            nonlocal canon
            repo.insert_concepts(records)
            repo.set_concept_parents(parents)
            repo.insert_evidences(evidences)
            repo.insert_edges(edge_records)
            canon = canonicalize_path_concepts(repo, records, matches)
            append_vector_deletes(repo, inp.saga_id, namespace, [r.vector_id for r in records])

        outcome = CanonicalWriter(self.uow).run(
            STAGE, path.id, work, exists=exists, restore=lambda repo: repo.restore_concepts("path", path.id)
        )
        if outcome.skipped:
            result.skipped = True
            return result

        for r in records:
            r.parent_id = parents.get(r.id)
            r.canonical_concept_id = canon.assignments.get(r.id)
        result.concepts_made = len(records)
        result.edges_made = len(edge_records)
        logger.info(
            f"{STAGE}: path {path.id} committed {len(records)} concepts, {len(edge_records)} edges, "
            f"{len(evidences)} evidences"
        )

        report = await sync_vectors(
            self.vectors,
            namespace,
            self._vector_items(path.id, records),
            self.settings.concept_graph_pinecone_batch_size,
            self.settings.concept_graph_pinecone_concurrency,
        )
        result.vectors_upserted = report.upserted
        if canon.created:
            await sync_vectors(
                self.vectors,
                GLOBAL_CONCEPTS_NAMESPACE,
                global_vector_items(canon.created),
                self.settings.concept_graph_pinecone_batch_size,
                self.settings.concept_graph_pinecone_concurrency,
            )
        if self.settings.graph_sync_enabled:
            result.graph_synced = await sync_graph(self.graph, concept_graph_batch(path.id, records, edge_records))
        return result

    # ========================================
    # Prompt passes
    # ========================================

    async def _inventory(
        self, chunks: list[ChunkRecord], allowed: set[str], intent_md: str, result: ConceptGraphResult
    ) -> list[ConceptItem]:
        s = self.settings
        pack = stratified_excerpts(
            chunks,
            s.concept_graph_excerpts_per_file,
            s.concept_graph_excerpt_max_chars,
            s.concept_graph_excerpt_max_lines,
            s.concept_graph_excerpt_max_total_chars,
        )
        system, user = prompt_lib.concept_inventory(pack.text, intent_md)
        obj = await self.prompts.generate_json(
            system, user, "concept_inventory", prompt_lib.SCHEMAS["concept_inventory"]
        )
        concepts, stats = normalize_concepts(parse_concept_items(obj), allowed, s.concept_graph_max_depth)
        if not concepts:
            raise ContractError(STAGE, "concept inventory returned no usable concepts")
        coverage = parse_coverage(obj)
        logger.info(
            f"{STAGE}: inventory {len(concepts)} concepts (confidence={coverage.confidence:.2f}, "
            f"norm={stats.to_dict()})"
        )

        for n in range(max(0, s.concept_graph_coverage_passes)):
            covered = {cid for c in concepts for cid in c.citations}
            uncovered = [c for c in chunks if str(c.id) not in covered]
            if not uncovered:
                break
            delta = build_excerpts(
                stratified_chunks(uncovered, s.concept_graph_excerpts_per_file),
                s.concept_graph_excerpt_max_chars,
                s.concept_graph_excerpt_max_lines,
                s.concept_graph_excerpt_max_total_chars,
            )
            if not delta.text:
                break
            system, user = prompt_lib.concept_inventory_delta(
                json.dumps(concepts_prompt_json(concepts), ensure_ascii=False), delta.text, intent_md
            )
            obj = await self.prompts.generate_json(
                system, user, "concept_inventory_delta", prompt_lib.SCHEMAS["concept_inventory_delta"]
            )
            added = parse_concept_items(obj)
            result.coverage_passes = n + 1
            if not added:
                break
            before = len(concepts)
            concepts, _ = normalize_concepts(concepts + added, allowed, s.concept_graph_max_depth)
            new_covered = {cid for c in concepts for cid in c.citations}
            logger.debug(
                f"{STAGE}: coverage pass {n + 1}: {len(concepts) - before} new concepts, "
                f"{len(new_covered) - len(covered)} newly covered chunks"
            )
            if len(concepts) == before and new_covered == covered:
                break
        return concepts

    async def _edges(
        self, chunks: list[ChunkRecord], concepts: list[ConceptItem], allowed: set[str], intent_md: str
    ) -> list[EdgeItem]:
        s = self.settings
        pack = stratified_excerpts(
            chunks,
            s.concept_graph_edge_excerpts_per_file,
            s.concept_graph_edge_excerpt_max_chars,
            s.concept_graph_edge_excerpt_max_lines,
            s.concept_graph_edge_excerpt_max_total_chars,
        )
        system, user = prompt_lib.concept_edges(
            json.dumps(concepts_prompt_json(concepts), ensure_ascii=False), pack.text, intent_md
        )
        obj = await self.prompts.generate_json(system, user, "concept_edges", prompt_lib.SCHEMAS["concept_edges"])
        edges, stats = normalize_edges(parse_edge_items(obj), {c.key for c in concepts}, allowed)
        logger.info(f"{STAGE}: {len(edges)} edges (norm={stats.to_dict()})")
        return edges

    # ========================================
    # Records
    # ========================================

    @staticmethod
    def _concept_records(
        path_id: UUID, concepts: list[ConceptItem], embeddings: dict[str, list[float]]
    ) -> list[ConceptRecord]:
        records = []
        for c in concepts:
            cid = concept_id(path_id, c.key)
            records.append(
                ConceptRecord(
                    id=cid,
                    scope="path",
                    scope_id=path_id,
                    key=c.key,
                    name=c.name,
                    summary=c.summary,
                    key_points=list(c.key_points),
                    depth=c.depth,
                    sort_index=c.importance,
                    vector_id=vector_id("concept", cid),
                    embedding=embeddings.get(c.key),
                    metadata={"aliases": list(c.aliases), "importance": c.importance},
                )
            )
        return records

    @staticmethod
    def _edge_records(edges: list[EdgeItem], by_key: dict[str, ConceptRecord]) -> list[EdgeRecord]:
        out = []
        for e in edges:
            src, dst = by_key.get(e.from_key), by_key.get(e.to_key)
            if src is None or dst is None:
                continue
            out.append(
                EdgeRecord(
                    id=deterministic_uuid("concept_edge", src.id, dst.id, e.edge_type),
                    from_concept_id=src.id,
                    to_concept_id=dst.id,
                    edge_type=e.edge_type,
                    strength=e.strength,
                    rationale=e.rationale,
                    chunk_ids=parse_uuid_list(e.citations),
                )
            )
        return out

    @staticmethod
    def _vector_items(path_id: UUID, records: list[ConceptRecord]) -> list[VectorItem]:
        return [
            VectorItem(
                id=r.vector_id,
                values=list(r.embedding),
                metadata={
                    "type": "concept",
                    "scope": "path",
                    "path_id": str(path_id),
                    "concept_id": str(r.id),
                    "key": r.key,
                    "name": r.name,
                },
            )
            for r in records
            if r.embedding
        ]

    # ========================================
    # Existing graphs
    # ========================================

    async def _refresh_existing(self, path: PathRecord, existing: list[ConceptRecord], result) -> None:
        """Backfill canonical links for legacy rows and refresh the graph cache."""
        legacy = [c for c in existing if c.canonical_concept_id is None]
        if legacy:
            embeddings = {c.key: c.embedding for c in legacy if c.embedding}
            matches, report = await match_canonical_concepts(
                [_concept_from_record(c) for c in legacy],
                embeddings,
                self.uow,
                self.vectors,
                self.settings.get_canonical_match_config(),
            )
            result.canonical = report.to_dict()
            with self.uow.transaction() as repo:
                repo.advisory_lock(STAGE, path.id)
                canon = canonicalize_path_concepts(repo, legacy, matches)
            if canon.created:
                await sync_vectors(self.vectors, GLOBAL_CONCEPTS_NAMESPACE, global_vector_items(canon.created))
            logger.info(f"{STAGE}: canonicalized {len(canon.assignments)} legacy concepts on path {path.id}")

        if self.settings.graph_sync_enabled and self.graph is not None:
            with self.uow.read() as repo:
                edges = repo.list_edges([c.id for c in existing])
            result.graph_synced = await sync_graph(self.graph, concept_graph_batch(path.id, existing, edges))
