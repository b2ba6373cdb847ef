"""
Learning path models.

A path is the per-(user, material set) root of the plan; path nodes form a
forest of modules and lessons; each lesson has at most one live node doc.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Float, ForeignKey, Index, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Path(Base):
    __tablename__ = "path"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("owner_user_id", "material_set_id", name="uq_path_user_set"),
    )


class PathNode(Base):
    __tablename__ = "path_node"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    path_id: Mapped[UUID] = mapped_column(ForeignKey("path.id", ondelete="CASCADE"), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_node_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("path_node.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("path_id", "index", name="uq_path_node_index"),)


class LearningNodeDoc(Base):
    """Canonical learner-facing document for one path node."""

    __tablename__ = "learning_node_doc"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    path_id: Mapped[UUID] = mapped_column(ForeignKey("path.id", ondelete="CASCADE"), nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_node.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    doc_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
    doc_text: Mapped[str] = mapped_column(Text, default="")
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    sources_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class LearningNodeDocVariant(Base):
    """Alternative doc payloads; never replaces the canonical node doc."""

    __tablename__ = "learning_node_doc_variant"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_node.id", ondelete="CASCADE"), nullable=False
    )
    variant_kind: Mapped[str] = mapped_column(Text, nullable=False)
    snapshot_id: Mapped[str] = mapped_column(Text, nullable=False)
    doc_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "user_id", "path_node_id", "variant_kind", "snapshot_id", name="uq_node_doc_variant"
        ),
    )


class LearningDocGenerationRun(Base):
    """One row per node doc build attempt outcome."""

    __tablename__ = "learning_doc_generation_run"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    path_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    path_node_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)  # 'succeeded' | 'failed'
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    content_hash: Mapped[str | None] = mapped_column(Text)
    errors: Mapped[list] = mapped_column(JSONB, default=list)
    metrics: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())


class UserProfileDoc(Base):
    __tablename__ = "user_profile_doc"

    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    profile_doc: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class UserConceptState(Base):
    """Per-user mastery of a canonical concept."""

    __tablename__ = "user_concept_state"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concept.id", ondelete="CASCADE"), nullable=False
    )
    mastery: Mapped[float] = mapped_column(Float, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    coverage_debt: Mapped[float] = mapped_column(Float, default=0.0)
    last_seen_at: Mapped[datetime | None] = mapped_column()
    next_review_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        UniqueConstraint("user_id", "concept_id", name="uq_user_concept_state"),
        Index("idx_user_concept_state_user", "user_id"),
    )
