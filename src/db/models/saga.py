"""
Saga log models.

Compensating actions are appended inside the same transaction as the canonical
write they undo, so a later sweep can clean derived caches.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SagaRun(Base):
    __tablename__ = "saga_run"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    owner_user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    # 'running' | 'succeeded' | 'failed' | 'compensating' | 'compensated'
    status: Mapped[str] = mapped_column(Text, default="running")
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())


class SagaAction(Base):
    __tablename__ = "saga_action"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    saga_id: Mapped[UUID] = mapped_column(ForeignKey("saga_run.id", ondelete="CASCADE"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)  # 'pinecone_delete_ids'
    payload: Mapped[dict] = mapped_column(JSONB, default=dict)
    status: Mapped[str] = mapped_column(Text, default="pending")  # 'pending' | 'done' | 'failed'
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("saga_id", "seq", name="uq_saga_action_seq"),)
