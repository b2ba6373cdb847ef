"""
Learning repository: every statement the pipeline stages issue.

Methods take and return plain records from `src.pipeline.records`; ORM rows
never leave this module. A repository is bound to one session, and the
`UnitOfWork` decides whether that session commits (`transaction`) or is
discarded (`read`).

Usage:
    uow = UnitOfWork()
    with uow.transaction() as repo:
        repo.advisory_lock("concept_graph_build", path_id)
        repo.insert_concepts(records)
"""

from __future__ import annotations

from collections.abc import Generator, Iterable, Sequence
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from src.db.database import SessionLocal, advisory_xact_lock, session_scope
from src.db.models import (
    Concept,
    ConceptCluster,
    ConceptClusterMember,
    ConceptEdge,
    ConceptEvidence,
    GlobalEntity,
    LearningDocGenerationRun,
    LearningNodeDoc,
    LearningNodeDocVariant,
    MaterialAsset,
    MaterialChunk,
    MaterialChunkClaim,
    MaterialChunkEntity,
    MaterialClaim,
    MaterialClaimConcept,
    MaterialClaimEntity,
    MaterialEntity,
    MaterialFile,
    MaterialSet,
    MaterialSetSummary,
    Path,
    PathNode,
    SagaAction,
    SagaRun,
    UserConceptState,
    UserProfileDoc,
)
from src.pipeline.ids import deterministic_uuid, parse_uuid_list
from src.pipeline.records import (
    AssetRecord,
    ChunkRecord,
    ClaimRecord,
    ClusterMemberRecord,
    ClusterRecord,
    ConceptRecord,
    EdgeRecord,
    EntityRecord,
    EvidenceRecord,
    FileRecord,
    GenerationRunRecord,
    GlobalEntityRecord,
    KnowledgeLink,
    NodeDocRecord,
    NodeDocVariantRecord,
    NodeRecord,
    PathRecord,
    SagaActionRecord,
    UserConceptStateRecord,
)
from src.semantic.similarity import embedding_from_bytes, embedding_to_bytes

_LINK_TABLES = {
    "chunk_entity": (MaterialChunkEntity, "material_chunk_id", "material_entity_id"),
    "chunk_claim": (MaterialChunkClaim, "material_chunk_id", "material_claim_id"),
    "claim_entity": (MaterialClaimEntity, "material_claim_id", "material_entity_id"),
    "claim_concept": (MaterialClaimConcept, "material_claim_id", "concept_id"),
}


def _emb(data: list[float] | None) -> bytes | None:
    return embedding_to_bytes(data) if data else None


# ========================================
# Row -> record mappers
# ========================================


def _chunk(row: MaterialChunk) -> ChunkRecord:
    return ChunkRecord(
        id=row.id,
        file_id=row.material_file_id,
        index=row.index,
        text=row.text or "",
        embedding=embedding_from_bytes(row.embedding),
        page=row.page,
        metadata=dict(row.metadata_ or {}),
    )


def _concept(row: Concept) -> ConceptRecord:
    return ConceptRecord(
        id=row.id,
        scope=row.scope,
        scope_id=row.scope_id,
        key=row.key,
        name=row.name,
        summary=row.summary or "",
        key_points=list(row.key_points or []),
        parent_id=row.parent_id,
        depth=row.depth or 0,
        sort_index=row.sort_index or 0,
        vector_id=row.vector_id or "",
        canonical_concept_id=row.canonical_concept_id,
        embedding=embedding_from_bytes(row.embedding),
        metadata=dict(row.metadata_ or {}),
        deleted_at=row.deleted_at,
    )


def _edge(row: ConceptEdge) -> EdgeRecord:
    evidence = row.evidence or {}
    return EdgeRecord(
        id=row.id,
        from_concept_id=row.from_concept_id,
        to_concept_id=row.to_concept_id,
        edge_type=row.edge_type,
        strength=row.strength if row.strength is not None else 1.0,
        rationale=str(evidence.get("rationale") or ""),
        chunk_ids=parse_uuid_list(evidence.get("chunk_ids")),
        deleted_at=row.deleted_at,
    )


def _path(row: Path) -> PathRecord:
    return PathRecord(
        id=row.id,
        owner_user_id=row.owner_user_id,
        material_set_id=row.material_set_id,
        title=row.title or "",
        description=row.description or "",
        metadata=dict(row.metadata_ or {}),
    )


def _node(row: PathNode) -> NodeRecord:
    return NodeRecord(
        id=row.id,
        path_id=row.path_id,
        index=row.index,
        title=row.title,
        parent_node_id=row.parent_node_id,
        metadata=dict(row.metadata_ or {}),
    )


def _node_doc(row: LearningNodeDoc) -> NodeDocRecord:
    return NodeDocRecord(
        id=row.id,
        user_id=row.user_id,
        path_id=row.path_id,
        path_node_id=row.path_node_id,
        doc_json=dict(row.doc_json or {}),
        doc_text=row.doc_text or "",
        content_hash=row.content_hash,
        sources_hash=row.sources_hash,
        schema_version=row.schema_version or 1,
    )


def _saga_action(row: SagaAction) -> SagaActionRecord:
    return SagaActionRecord(
        id=row.id,
        saga_id=row.saga_id,
        seq=row.seq,
        kind=row.kind,
        payload=dict(row.payload or {}),
        status=row.status,
        error=row.error,
    )


class LearningRepository:
    """Session-bound data access for the content pipeline."""

    def __init__(self, session: Session):
        self.session = session

    # ========================================
    # Locks
    # ========================================

    def advisory_lock(self, stage: str, entity_id: object) -> None:
        advisory_xact_lock(self.session, stage, entity_id)

    # ========================================
    # Paths
    # ========================================

    def get_path(self, path_id: UUID) -> PathRecord | None:
        row = self.session.get(Path, path_id)
        return _path(row) if row else None

    def get_path_for_set(self, owner_user_id: UUID, material_set_id: UUID) -> PathRecord | None:
        row = self.session.scalars(
            select(Path).where(Path.owner_user_id == owner_user_id, Path.material_set_id == material_set_id)
        ).first()
        return _path(row) if row else None

    def ensure_path(self, owner_user_id: UUID, material_set_id: UUID, title: str = "") -> PathRecord:
        """Idempotent bootstrap: one path per (user, material set)."""
        path_id = deterministic_uuid("path", owner_user_id, material_set_id)
        stmt = (
            pg_insert(Path)
            .values(
                id=path_id,
                owner_user_id=owner_user_id,
                material_set_id=material_set_id,
                title=title,
                description="",
                metadata_={},
            )
            .on_conflict_do_nothing(index_elements=["owner_user_id", "material_set_id"])
        )
        self.session.execute(stmt)
        path = self.get_path_for_set(owner_user_id, material_set_id)
        if path is None:
            raise RuntimeError(f"path bootstrap failed for user={owner_user_id} set={material_set_id}")
        return path

    def update_path(
        self,
        path_id: UUID,
        title: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Update path fields; metadata keys are merged into the existing document."""
        row = self.session.get(Path, path_id, with_for_update=True)
        if row is None:
            raise LookupError(f"path {path_id} not found")
        if title is not None:
            row.title = title
        if description is not None:
            row.description = description
        if metadata:
            merged = dict(row.metadata_ or {})
            merged.update(metadata)
            row.metadata_ = merged
        self.session.flush()

    # ========================================
    # Materials
    # ========================================

    def resolve_source_set_id(self, material_set_id: UUID) -> UUID:
        """Derived sets read chunks from their source set."""
        row = self.session.get(MaterialSet, material_set_id)
        if row is not None and row.source_material_set_id is not None:
            return row.source_material_set_id
        return material_set_id

    def list_files(self, material_set_id: UUID) -> list[FileRecord]:
        rows = self.session.scalars(
            select(MaterialFile)
            .where(MaterialFile.material_set_id == material_set_id, MaterialFile.deleted_at.is_(None))
            .order_by(MaterialFile.created_at, MaterialFile.id)
        ).all()
        return [FileRecord(id=r.id, material_set_id=r.material_set_id, name=r.original_name or "") for r in rows]

    def list_chunks(self, material_set_id: UUID, file_ids: Sequence[UUID] | None = None) -> list[ChunkRecord]:
        """Live chunks of a set, ordered by file then chunk index."""
        stmt = (
            select(MaterialChunk)
            .join(MaterialFile, MaterialFile.id == MaterialChunk.material_file_id)
            .where(
                MaterialFile.material_set_id == material_set_id,
                MaterialFile.deleted_at.is_(None),
                MaterialChunk.deleted_at.is_(None),
            )
            .order_by(MaterialFile.created_at, MaterialFile.id, MaterialChunk.index)
        )
        if file_ids:
            stmt = stmt.where(MaterialChunk.material_file_id.in_(list(file_ids)))
        return [_chunk(r) for r in self.session.scalars(stmt).all()]

    def get_chunks(self, chunk_ids: Sequence[UUID]) -> list[ChunkRecord]:
        if not chunk_ids:
            return []
        rows = self.session.scalars(
            select(MaterialChunk).where(MaterialChunk.id.in_(list(chunk_ids)), MaterialChunk.deleted_at.is_(None))
        ).all()
        by_id = {r.id: r for r in rows}
        return [_chunk(by_id[c]) for c in chunk_ids if c in by_id]

    def lexical_chunk_ids(
        self,
        material_set_id: UUID,
        query: str,
        limit: int,
        file_ids: Sequence[UUID] | None = None,
    ) -> list[UUID]:
        """Full-text ranked chunk ids (websearch_to_tsquery over chunk text)."""
        query = (query or "").strip()
        if not query or limit <= 0:
            return []
        file_clause = "AND c.material_file_id = ANY(:file_ids)" if file_ids else ""
        sql = f"""
            SELECT c.id
            FROM material_chunk c
            JOIN material_file f ON f.id = c.material_file_id
            WHERE f.material_set_id = :set_id
              AND f.deleted_at IS NULL
              AND c.deleted_at IS NULL
              AND to_tsvector('english', c.text) @@ websearch_to_tsquery('english', :query)
              {file_clause}
            ORDER BY ts_rank(to_tsvector('english', c.text), websearch_to_tsquery('english', :query)) DESC, c.id
            LIMIT :limit
        """
        params: dict[str, Any] = {"set_id": material_set_id, "query": query, "limit": limit}
        if file_ids:
            params["file_ids"] = list(file_ids)
        return [row[0] for row in self.session.execute(text(sql), params)]

    def list_assets(self, material_set_id: UUID) -> list[AssetRecord]:
        rows = self.session.scalars(
            select(MaterialAsset)
            .where(MaterialAsset.material_set_id == material_set_id, MaterialAsset.deleted_at.is_(None))
            .order_by(MaterialAsset.created_at, MaterialAsset.id)
        ).all()
        return [
            AssetRecord(
                id=r.id,
                kind=r.kind,
                url=r.url,
                caption=r.caption or "",
                chunk_ids=parse_uuid_list(r.chunk_ids),
                metadata=dict(r.metadata_ or {}),
            )
            for r in rows
        ]

    def get_material_set_summary(self, material_set_id: UUID) -> str:
        row = self.session.scalars(
            select(MaterialSetSummary).where(MaterialSetSummary.material_set_id == material_set_id)
        ).first()
        return (row.summary_md or "") if row else ""

    # ========================================
    # Concepts
    # ========================================

    def list_concepts(self, scope: str, scope_id: UUID | None) -> list[ConceptRecord]:
        stmt = select(Concept).where(Concept.scope == scope, Concept.deleted_at.is_(None))
        stmt = stmt.where(Concept.scope_id.is_(None) if scope_id is None else Concept.scope_id == scope_id)
        return [_concept(r) for r in self.session.scalars(stmt.order_by(Concept.key)).all()]

    def get_concepts_by_ids(self, concept_ids: Sequence[UUID]) -> list[ConceptRecord]:
        if not concept_ids:
            return []
        rows = self.session.scalars(select(Concept).where(Concept.id.in_(list(concept_ids)))).all()
        return [_concept(r) for r in rows]

    def get_global_concepts_by_keys(self, keys: Iterable[str]) -> dict[str, ConceptRecord]:
        keys = sorted({k for k in keys if k})
        if not keys:
            return {}
        rows = self.session.scalars(
            select(Concept).where(
                Concept.scope == "global",
                Concept.scope_id.is_(None),
                Concept.key.in_(keys),
                Concept.deleted_at.is_(None),
            )
        ).all()
        return {r.key: _concept(r) for r in rows}

    def insert_concepts(self, records: Sequence[ConceptRecord]) -> int:
        """Plain insert: a concurrent writer surfaces as a unique violation."""
        if not records:
            return 0
        self.session.execute(
            pg_insert(Concept),
            [
                {
                    "id": c.id,
                    "scope": c.scope,
                    "scope_id": c.scope_id,
                    "key": c.key,
                    "name": c.name,
                    "summary": c.summary,
                    "key_points": list(c.key_points),
                    "parent_id": None,
                    "depth": c.depth,
                    "sort_index": c.sort_index,
                    "vector_id": c.vector_id,
                    "canonical_concept_id": c.canonical_concept_id,
                    "embedding": _emb(c.embedding),
                    "metadata_": dict(c.metadata),
                }
                for c in records
            ],
        )
        return len(records)

    def set_concept_parents(self, parents: dict[UUID, UUID | None]) -> None:
        """Second pass after insert so parent rows exist regardless of batch order."""
        for concept_id, parent_id in parents.items():
            self.session.execute(update(Concept).where(Concept.id == concept_id).values(parent_id=parent_id))

    def set_canonical_concept_ids(self, mapping: dict[UUID, UUID]) -> None:
        for concept_id, canonical_id in mapping.items():
            self.session.execute(
                update(Concept).where(Concept.id == concept_id).values(canonical_concept_id=canonical_id)
            )

    def upsert_global_concepts(self, records: Sequence[ConceptRecord]) -> int:
        """Insert global concepts; an existing row keeps its identity and canonical link."""
        for c in records:
            stmt = pg_insert(Concept).values(
                id=c.id,
                scope="global",
                scope_id=None,
                key=c.key,
                name=c.name,
                summary=c.summary,
                key_points=list(c.key_points),
                depth=0,
                sort_index=c.sort_index,
                vector_id=c.vector_id,
                canonical_concept_id=c.canonical_concept_id or c.id,
                embedding=_emb(c.embedding),
                metadata_=dict(c.metadata),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={"summary": stmt.excluded.summary, "updated_at": func.now()},
            )
            self.session.execute(stmt)
        return len(records)

    def insert_evidences(self, records: Sequence[EvidenceRecord]) -> int:
        if not records:
            return 0
        stmt = pg_insert(ConceptEvidence).values(
            [
                {
                    "id": e.id,
                    "concept_id": e.concept_id,
                    "material_chunk_id": e.chunk_id,
                    "kind": e.kind,
                    "weight": e.weight,
                }
                for e in records
            ]
        )
        result = self.session.execute(stmt.on_conflict_do_nothing())
        return result.rowcount or 0

    def insert_edges(self, records: Sequence[EdgeRecord]) -> int:
        if not records:
            return 0
        stmt = pg_insert(ConceptEdge).values(
            [
                {
                    "id": e.id,
                    "from_concept_id": e.from_concept_id,
                    "to_concept_id": e.to_concept_id,
                    "edge_type": e.edge_type,
                    "strength": e.strength,
                    "evidence": {"rationale": e.rationale, "chunk_ids": [str(c) for c in e.chunk_ids]},
                }
                for e in records
            ]
        )
        result = self.session.execute(stmt.on_conflict_do_nothing())
        return result.rowcount or 0

    def list_edges(self, concept_ids: Sequence[UUID]) -> list[EdgeRecord]:
        if not concept_ids:
            return []
        ids = list(concept_ids)
        rows = self.session.scalars(
            select(ConceptEdge)
            .where(
                ConceptEdge.deleted_at.is_(None),
                or_(ConceptEdge.from_concept_id.in_(ids), ConceptEdge.to_concept_id.in_(ids)),
            )
            .order_by(ConceptEdge.from_concept_id, ConceptEdge.to_concept_id, ConceptEdge.edge_type)
        ).all()
        return [_edge(r) for r in rows]

    def restore_concepts(self, scope: str, scope_id: UUID) -> int:
        """Undelete soft-deleted concepts of a scope together with their evidences and edges."""
        ids = list(
            self.session.scalars(
                select(Concept.id).where(
                    Concept.scope == scope, Concept.scope_id == scope_id, Concept.deleted_at.is_not(None)
                )
            ).all()
        )
        if not ids:
            return 0
        self.session.execute(update(Concept).where(Concept.id.in_(ids)).values(deleted_at=None))
        self.session.execute(
            update(ConceptEvidence).where(ConceptEvidence.concept_id.in_(ids)).values(deleted_at=None)
        )
        self.session.execute(
            update(ConceptEdge)
            .where(or_(ConceptEdge.from_concept_id.in_(ids), ConceptEdge.to_concept_id.in_(ids)))
            .values(deleted_at=None)
        )
        logger.info(f"Restored {len(ids)} soft-deleted {scope} concepts for {scope_id}")
        return len(ids)

    # ========================================
    # Concept clusters
    # ========================================

    def list_clusters(self, path_id: UUID) -> list[ClusterRecord]:
        rows = self.session.scalars(
            select(ConceptCluster)
            .where(
                ConceptCluster.scope == "path",
                ConceptCluster.scope_id == path_id,
                ConceptCluster.deleted_at.is_(None),
            )
            .order_by(ConceptCluster.label)
        ).all()
        return [
            ClusterRecord(
                id=r.id,
                path_id=r.scope_id,
                label=r.label,
                vector_id=r.vector_id or "",
                embedding=embedding_from_bytes(r.embedding),
                metadata=dict(r.metadata_ or {}),
            )
            for r in rows
        ]

    def insert_clusters(self, records: Sequence[ClusterRecord]) -> int:
        if not records:
            return 0
        self.session.execute(
            pg_insert(ConceptCluster),
            [
                {
                    "id": c.id,
                    "scope": "path",
                    "scope_id": c.path_id,
                    "label": c.label,
                    "vector_id": c.vector_id,
                    "embedding": _emb(c.embedding),
                    "metadata_": dict(c.metadata),
                }
                for c in records
            ],
        )
        return len(records)

    def insert_cluster_members(self, records: Sequence[ClusterMemberRecord]) -> int:
        if not records:
            return 0
        stmt = pg_insert(ConceptClusterMember).values(
            [{"id": m.id, "cluster_id": m.cluster_id, "concept_id": m.concept_id, "weight": m.weight} for m in records]
        )
        result = self.session.execute(stmt.on_conflict_do_nothing())
        return result.rowcount or 0

    # ========================================
    # Material knowledge graph
    # ========================================

    def count_material_kg(self, material_set_id: UUID) -> tuple[int, int]:
        entities = self.session.scalar(
            select(func.count()).select_from(MaterialEntity).where(MaterialEntity.material_set_id == material_set_id)
        )
        claims = self.session.scalar(
            select(func.count()).select_from(MaterialClaim).where(MaterialClaim.material_set_id == material_set_id)
        )
        return int(entities or 0), int(claims or 0)

    def upsert_entities(self, records: Sequence[EntityRecord]) -> int:
        for e in records:
            stmt = pg_insert(MaterialEntity).values(
                id=e.id,
                material_set_id=e.material_set_id,
                key=e.key,
                name=e.name,
                type=e.type,
                description=e.description,
                aliases=list(e.aliases),
                global_entity_id=e.global_entity_id,
                metadata_=dict(e.metadata),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "name": stmt.excluded.name,
                    "type": stmt.excluded.type,
                    "description": stmt.excluded.description,
                    "aliases": stmt.excluded.aliases,
                    "global_entity_id": stmt.excluded.global_entity_id,
                    "metadata": stmt.excluded["metadata"],
                    "updated_at": func.now(),
                },
            )
            self.session.execute(stmt)
        return len(records)

    def upsert_claims(self, records: Sequence[ClaimRecord]) -> int:
        for c in records:
            stmt = pg_insert(MaterialClaim).values(
                id=c.id,
                material_set_id=c.material_set_id,
                key=c.key,
                kind=c.kind,
                content=c.content,
                confidence=c.confidence,
                metadata_=dict(c.metadata),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "kind": stmt.excluded.kind,
                    "content": stmt.excluded.content,
                    "confidence": stmt.excluded.confidence,
                    "metadata": stmt.excluded["metadata"],
                    "updated_at": func.now(),
                },
            )
            self.session.execute(stmt)
        return len(records)

    def insert_links(self, links: Sequence[KnowledgeLink]) -> int:
        inserted = 0
        for table, (model, src_col, dst_col) in _LINK_TABLES.items():
            rows = [
                {"id": link.id, src_col: link.src_id, dst_col: link.dst_id, "relation": link.relation}
                for link in links
                if link.table == table
            ]
            if not rows:
                continue
            result = self.session.execute(pg_insert(model).values(rows).on_conflict_do_nothing())
            inserted += result.rowcount or 0
        return inserted

    def list_global_entities(self) -> list[GlobalEntityRecord]:
        rows = self.session.scalars(select(GlobalEntity).order_by(GlobalEntity.key)).all()
        return [
            GlobalEntityRecord(
                id=r.id,
                key=r.key,
                name=r.name,
                type=r.type or "unknown",
                aliases=list(r.aliases or []),
                embedding=embedding_from_bytes(r.embedding),
            )
            for r in rows
        ]

    def upsert_global_entities(self, records: Sequence[GlobalEntityRecord]) -> int:
        for g in records:
            stmt = pg_insert(GlobalEntity).values(
                id=g.id,
                key=g.key,
                name=g.name,
                type=g.type,
                aliases=list(g.aliases),
                embedding=_emb(g.embedding),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["key"],
                set_={"aliases": stmt.excluded.aliases, "updated_at": func.now()},
            )
            self.session.execute(stmt)
        return len(records)

    # ========================================
    # User context
    # ========================================

    def get_user_profile_doc(self, user_id: UUID) -> str | None:
        row = self.session.get(UserProfileDoc, user_id)
        if row is None or not (row.profile_doc or "").strip():
            return None
        return row.profile_doc

    def list_user_concept_states(
        self, user_id: UUID, concept_ids: Sequence[UUID]
    ) -> dict[UUID, UserConceptStateRecord]:
        if not concept_ids:
            return {}
        rows = self.session.scalars(
            select(UserConceptState).where(
                UserConceptState.user_id == user_id, UserConceptState.concept_id.in_(list(concept_ids))
            )
        ).all()
        return {
            r.concept_id: UserConceptStateRecord(
                concept_id=r.concept_id,
                mastery=r.mastery or 0.0,
                confidence=r.confidence or 0.0,
                coverage_debt=r.coverage_debt or 0.0,
                last_seen_at=r.last_seen_at,
                next_review_at=r.next_review_at,
            )
            for r in rows
        }

    # ========================================
    # Path nodes & docs
    # ========================================

    def list_path_nodes(self, path_id: UUID) -> list[NodeRecord]:
        rows = self.session.scalars(select(PathNode).where(PathNode.path_id == path_id).order_by(PathNode.index)).all()
        return [_node(r) for r in rows]

    def upsert_path_nodes(self, records: Sequence[NodeRecord]) -> int:
        """Insert nodes by (path_id, index), updating title/metadata on conflict; parents in a second pass."""
        for n in records:
            stmt = pg_insert(PathNode).values(
                id=n.id, path_id=n.path_id, index=n.index, title=n.title, metadata_=dict(n.metadata)
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["path_id", "index"],
                set_={"title": stmt.excluded.title, "metadata": stmt.excluded["metadata"], "updated_at": func.now()},
            )
            self.session.execute(stmt)
        for n in records:
            self.session.execute(
                update(PathNode)
                .where(PathNode.path_id == n.path_id, PathNode.index == n.index)
                .values(parent_node_id=n.parent_node_id)
            )
        return len(records)

    def list_node_docs(self, path_id: UUID) -> list[NodeDocRecord]:
        rows = self.session.scalars(select(LearningNodeDoc).where(LearningNodeDoc.path_id == path_id)).all()
        return [_node_doc(r) for r in rows]

    def get_node_doc(self, path_node_id: UUID) -> NodeDocRecord | None:
        row = self.session.scalars(
            select(LearningNodeDoc).where(LearningNodeDoc.path_node_id == path_node_id)
        ).first()
        return _node_doc(row) if row else None

    def upsert_node_doc(self, record: NodeDocRecord) -> None:
        stmt = pg_insert(LearningNodeDoc).values(
            id=record.id,
            user_id=record.user_id,
            path_id=record.path_id,
            path_node_id=record.path_node_id,
            schema_version=record.schema_version,
            doc_json=record.doc_json,
            doc_text=record.doc_text,
            content_hash=record.content_hash,
            sources_hash=record.sources_hash,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["path_node_id"],
            set_={
                "schema_version": stmt.excluded.schema_version,
                "doc_json": stmt.excluded.doc_json,
                "doc_text": stmt.excluded.doc_text,
                "content_hash": stmt.excluded.content_hash,
                "sources_hash": stmt.excluded.sources_hash,
                "updated_at": func.now(),
            },
        )
        self.session.execute(stmt)

    def upsert_node_doc_variant(self, record: NodeDocVariantRecord) -> None:
        stmt = pg_insert(LearningNodeDocVariant).values(
            id=record.id,
            user_id=record.user_id,
            path_node_id=record.path_node_id,
            variant_kind=record.variant_kind,
            snapshot_id=record.snapshot_id,
            doc_json=record.doc_json,
            content_hash=record.content_hash,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_node_doc_variant",
            set_={
                "doc_json": stmt.excluded.doc_json,
                "content_hash": stmt.excluded.content_hash,
                "updated_at": func.now(),
            },
        )
        self.session.execute(stmt)

    def insert_generation_run(self, record: GenerationRunRecord) -> None:
        self.session.add(
            LearningDocGenerationRun(
                user_id=record.user_id,
                path_id=record.path_id,
                path_node_id=record.path_node_id,
                stage=record.stage,
                status=record.status,
                attempt=record.attempt,
                latency_ms=record.latency_ms,
                content_hash=record.content_hash,
                errors=list(record.errors),
                metrics=dict(record.metrics),
            )
        )
        self.session.flush()

    # ========================================
    # Saga
    # ========================================

    def ensure_saga_run(self, saga_id: UUID, owner_user_id: UUID | None = None) -> None:
        stmt = pg_insert(SagaRun).values(id=saga_id, owner_user_id=owner_user_id, status="running")
        self.session.execute(stmt.on_conflict_do_nothing(index_elements=["id"]))

    def lock_saga_run(self, saga_id: UUID) -> str | None:
        """Row-lock the saga run; returns its status or None when absent."""
        row = self.session.get(SagaRun, saga_id, with_for_update=True)
        return row.status if row else None

    def next_saga_seq(self, saga_id: UUID) -> int:
        current = self.session.scalar(select(func.max(SagaAction.seq)).where(SagaAction.saga_id == saga_id))
        return int(current or 0) + 1

    def insert_saga_action(self, record: SagaActionRecord) -> None:
        self.session.add(
            SagaAction(
                id=record.id,
                saga_id=record.saga_id,
                seq=record.seq,
                kind=record.kind,
                payload=dict(record.payload),
                status=record.status,
                error=record.error,
            )
        )
        self.session.flush()

    def list_saga_actions(self, saga_id: UUID, status: str | None = None) -> list[SagaActionRecord]:
        stmt = select(SagaAction).where(SagaAction.saga_id == saga_id)
        if status:
            stmt = stmt.where(SagaAction.status == status)
        return [_saga_action(r) for r in self.session.scalars(stmt.order_by(SagaAction.seq)).all()]

    def update_saga_action(self, action_id: UUID, status: str, error: str | None = None) -> None:
        self.session.execute(update(SagaAction).where(SagaAction.id == action_id).values(status=status, error=error))

    def set_saga_status(self, saga_id: UUID, status: str) -> None:
        self.session.execute(update(SagaRun).where(SagaRun.id == saga_id).values(status=status))


class UnitOfWork:
    """
    Transaction boundary for stages.

    `transaction()` commits on success and rolls back on any error;
    `read()` always rolls back, so reads never hold locks past their block.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self) -> Generator[LearningRepository, None, None]:
        with session_scope(self.session_factory) as session:
            yield LearningRepository(session)

    @contextmanager
    def read(self) -> Generator[LearningRepository, None, None]:
        session = self.session_factory()
        try:
            yield LearningRepository(session)
        finally:
            session.rollback()
            session.close()
