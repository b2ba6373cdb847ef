"""
Material knowledge graph models: entities, claims and their join edges.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Float, ForeignKey, LargeBinary, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class GlobalEntity(Base):
    """Cross-material-set entity identity."""

    __tablename__ = "global_entity"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, default="unknown")
    aliases: Mapped[list] = mapped_column(JSONB, default=list)
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class MaterialEntity(Base):
    __tablename__ = "material_entity"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, default="unknown")
    description: Mapped[str] = mapped_column(Text, default="")
    aliases: Mapped[list] = mapped_column(JSONB, default=list)
    global_entity_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("global_entity.id", ondelete="SET NULL")
    )
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("material_set_id", "key", name="uq_material_entity_key"),)


class MaterialClaim(Base):
    __tablename__ = "material_claim"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)  # 'sha256:<hex>'
    kind: Mapped[str] = mapped_column(Text, default="claim")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.7)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("material_set_id", "key", name="uq_material_claim_key"),)


class MaterialChunkEntity(Base):
    __tablename__ = "material_chunk_entity"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    material_chunk_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_chunk.id", ondelete="CASCADE"), nullable=False
    )
    material_entity_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_entity.id", ondelete="CASCADE"), nullable=False
    )
    relation: Mapped[str] = mapped_column(Text, default="mentions")

    __table_args__ = (
        UniqueConstraint("material_chunk_id", "material_entity_id", "relation", name="uq_chunk_entity"),
    )


class MaterialChunkClaim(Base):
    __tablename__ = "material_chunk_claim"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    material_chunk_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_chunk.id", ondelete="CASCADE"), nullable=False
    )
    material_claim_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_claim.id", ondelete="CASCADE"), nullable=False
    )
    relation: Mapped[str] = mapped_column(Text, default="supports")

    __table_args__ = (
        UniqueConstraint("material_chunk_id", "material_claim_id", "relation", name="uq_chunk_claim"),
    )


class MaterialClaimEntity(Base):
    __tablename__ = "material_claim_entity"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    material_claim_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_claim.id", ondelete="CASCADE"), nullable=False
    )
    material_entity_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_entity.id", ondelete="CASCADE"), nullable=False
    )
    relation: Mapped[str] = mapped_column(Text, default="about")

    __table_args__ = (
        UniqueConstraint("material_claim_id", "material_entity_id", "relation", name="uq_claim_entity"),
    )


class MaterialClaimConcept(Base):
    __tablename__ = "material_claim_concept"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    material_claim_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_claim.id", ondelete="CASCADE"), nullable=False
    )
    concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept.id", ondelete="CASCADE"), nullable=False
    )
    relation: Mapped[str] = mapped_column(Text, default="about")

    __table_args__ = (
        UniqueConstraint("material_claim_id", "concept_id", "relation", name="uq_claim_concept"),
    )
