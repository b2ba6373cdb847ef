"""
Concept graph models.

Concepts are scoped either to a path or to the global canonical namespace.
Path-scoped concepts link to their global identity through canonical_concept_id.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Float, ForeignKey, Index, Integer, LargeBinary, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Concept(Base):
    __tablename__ = "concept"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    scope: Mapped[str] = mapped_column(Text, nullable=False)  # 'path' | 'global'
    scope_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="")
    key_points: Mapped[list] = mapped_column(JSONB, default=list)
    parent_id: Mapped[UUID | None] = mapped_column(ForeignKey("concept.id", ondelete="SET NULL"))
    depth: Mapped[int] = mapped_column(Integer, default=0)
    sort_index: Mapped[int] = mapped_column(Integer, default=0)
    vector_id: Mapped[str | None] = mapped_column(Text)
    canonical_concept_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("concept.id", ondelete="SET NULL")
    )
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index(
            "uq_concept_scope_key_live",
            "scope",
            "scope_id",
            "key",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Concept {self.scope}:{self.key}>"


class ConceptEdge(Base):
    __tablename__ = "concept_edge"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    from_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept.id", ondelete="CASCADE"), nullable=False
    )
    to_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept.id", ondelete="CASCADE"), nullable=False
    )
    edge_type: Mapped[str] = mapped_column(Text, nullable=False)
    strength: Mapped[float] = mapped_column(Float, default=1.0)
    evidence: Mapped[dict] = mapped_column(JSONB, default=dict)  # {rationale, chunk_ids}
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        UniqueConstraint("from_concept_id", "to_concept_id", "edge_type", name="uq_concept_edge"),
    )


class ConceptEvidence(Base):
    __tablename__ = "concept_evidence"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept.id", ondelete="CASCADE"), nullable=False
    )
    material_chunk_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_chunk.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(Text, default="grounding")
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        UniqueConstraint("concept_id", "material_chunk_id", "kind", name="uq_concept_evidence"),
    )


class ConceptCluster(Base):
    """Flat overlay grouping concepts per path, with an embedding for retrieval."""

    __tablename__ = "concept_cluster"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    scope: Mapped[str] = mapped_column(Text, default="path")
    scope_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), index=True)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    vector_id: Mapped[str | None] = mapped_column(Text)
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()


class ConceptClusterMember(Base):
    __tablename__ = "concept_cluster_member"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    cluster_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept_cluster.id", ondelete="CASCADE"), nullable=False
    )
    concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept.id", ondelete="CASCADE"), nullable=False
    )
    weight: Mapped[float] = mapped_column(Float, default=1.0)

    __table_args__ = (
        UniqueConstraint("cluster_id", "concept_id", name="uq_concept_cluster_member"),
    )
