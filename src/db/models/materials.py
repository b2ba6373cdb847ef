"""
Material models.

Uploaded study materials are owned by the upload subsystem; the pipeline only
reads them. Chunks are the immutable leaf evidence every citation points at.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, LargeBinary, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class MaterialSet(Base):
    """A user's upload batch; derived sets point at their source set."""

    __tablename__ = "material_set"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, default="")
    source_material_set_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("material_set.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()


class MaterialFile(Base):
    __tablename__ = "material_file"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_name: Mapped[str] = mapped_column(Text, default="")
    mime_type: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()


class MaterialChunk(Base):
    """Immutable evidence unit. Embedding is a serialized float32 numpy array."""

    __tablename__ = "material_chunk"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_file_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_file.id", ondelete="CASCADE"), nullable=False
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, default="")
    page: Mapped[int | None] = mapped_column(Integer)
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        UniqueConstraint("material_file_id", "index", name="uq_material_chunk_file_index"),
        Index("idx_material_chunk_file", "material_file_id"),
    )


class MaterialAsset(Base):
    """Figures and videos extracted from (or generated for) a material set."""

    __tablename__ = "material_asset"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(Text, nullable=False)  # 'image', 'video'
    url: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[str] = mapped_column(Text, default="")
    chunk_ids: Mapped[list] = mapped_column(JSONB, default=list)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column()


class MaterialSetSummary(Base):
    __tablename__ = "material_set_summary"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    material_set_id: Mapped[UUID] = mapped_column(
        ForeignKey("material_set.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    summary_md: Mapped[str] = mapped_column(Text, default="")
    subjects: Mapped[list] = mapped_column(JSONB, default=list)
    level: Mapped[str | None] = mapped_column(Text)
    vector_id: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())
