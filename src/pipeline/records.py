"""
Plain records exchanged between the repository layer and the pipeline stages.

Stages never touch ORM rows directly: the repository maps rows to these
records, which keeps stage logic independent of the session lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass
class StageInput:
    """Common stage arguments."""

    owner_user_id: UUID
    material_set_id: UUID
    saga_id: UUID
    path_id: UUID | None = None


@dataclass
class FileRecord:
    id: UUID
    material_set_id: UUID
    name: str = ""


@dataclass
class ChunkRecord:
    id: UUID
    file_id: UUID
    index: int
    text: str
    embedding: list[float] | None = None
    page: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def usable(self) -> bool:
        """Unextractable chunks carry no usable text."""
        return str(self.metadata.get("kind", "")).strip().lower() != "unextractable"


@dataclass
class AssetRecord:
    id: UUID
    kind: str  # 'image' | 'video'
    url: str
    caption: str = ""
    chunk_ids: list[UUID] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PathRecord:
    id: UUID
    owner_user_id: UUID
    material_set_id: UUID
    title: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConceptRecord:
    id: UUID
    scope: str
    scope_id: UUID | None
    key: str
    name: str
    summary: str = ""
    key_points: list[str] = field(default_factory=list)
    parent_id: UUID | None = None
    depth: int = 0
    sort_index: int = 0
    vector_id: str = ""
    canonical_concept_id: UUID | None = None
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    deleted_at: datetime | None = None


@dataclass
class EdgeRecord:
    id: UUID
    from_concept_id: UUID
    to_concept_id: UUID
    edge_type: str
    strength: float = 1.0
    rationale: str = ""
    chunk_ids: list[UUID] = field(default_factory=list)
    deleted_at: datetime | None = None


@dataclass
class EvidenceRecord:
    id: UUID
    concept_id: UUID
    chunk_id: UUID
    kind: str = "grounding"
    weight: float = 1.0
    deleted_at: datetime | None = None


@dataclass
class ClusterRecord:
    id: UUID
    path_id: UUID
    label: str
    vector_id: str
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClusterMemberRecord:
    id: UUID
    cluster_id: UUID
    concept_id: UUID
    weight: float = 1.0


@dataclass
class NodeRecord:
    id: UUID
    path_id: UUID
    index: int
    title: str
    parent_node_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeDocRecord:
    id: UUID
    user_id: UUID
    path_id: UUID
    path_node_id: UUID
    doc_json: dict[str, Any]
    doc_text: str
    content_hash: str
    sources_hash: str
    schema_version: int = 1


@dataclass
class NodeDocVariantRecord:
    id: UUID
    user_id: UUID
    path_node_id: UUID
    variant_kind: str
    snapshot_id: str
    doc_json: dict[str, Any]
    content_hash: str


@dataclass
class GenerationRunRecord:
    user_id: UUID
    path_id: UUID
    path_node_id: UUID
    stage: str
    status: str
    attempt: int
    latency_ms: int
    errors: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    content_hash: str | None = None


@dataclass
class UserConceptStateRecord:
    concept_id: UUID
    mastery: float = 0.0
    confidence: float = 0.0
    coverage_debt: float = 0.0
    last_seen_at: datetime | None = None
    next_review_at: datetime | None = None


@dataclass
class GlobalEntityRecord:
    id: UUID
    key: str
    name: str
    type: str = "unknown"
    aliases: list[str] = field(default_factory=list)
    embedding: list[float] | None = None


@dataclass
class EntityRecord:
    id: UUID
    material_set_id: UUID
    key: str
    name: str
    type: str = "unknown"
    description: str = ""
    aliases: list[str] = field(default_factory=list)
    global_entity_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClaimRecord:
    id: UUID
    material_set_id: UUID
    key: str
    content: str
    kind: str = "claim"
    confidence: float = 0.7
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class KnowledgeLink:
    """A join edge in the material knowledge graph.

    table is one of chunk_entity, chunk_claim, claim_entity, claim_concept.
    """

    id: UUID
    table: str
    src_id: UUID
    dst_id: UUID
    relation: str


@dataclass
class SagaActionRecord:
    id: UUID
    saga_id: UUID
    seq: int
    kind: str
    payload: dict[str, Any]
    status: str = "pending"
    error: str | None = None
