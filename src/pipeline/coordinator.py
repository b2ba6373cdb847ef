"""
Canonical write coordinator.

Every stage that produces canonical state goes through `CanonicalWriter.run`:

1. open a transaction and take the advisory lock for (stage, entity)
2. re-check idempotency under the lock and skip when the state exists
3. run the stage's writes (deterministic ids, saga actions included)
4. on a unique violation, re-read: existing state is a successful no-op,
   soft-deleted rows are restored in a follow-up transaction, anything else
   propagates
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from loguru import logger

from src.db.database import is_unique_violation

T = TypeVar("T")

RepoCheck = Callable[[Any], bool]
RepoWork = Callable[[Any], T]
RepoRestore = Callable[[Any], int]


@dataclass
class WriteOutcome(Generic[T]):
    value: T | None = None
    skipped: bool = False
    recovered: bool = False
    restored: int = 0


class CanonicalWriter:
    """Runs canonical writes under a stage-scoped advisory lock."""

    def __init__(self, uow):
        self.uow = uow

    def run(
        self,
        stage: str,
        entity_id: object,
        work: RepoWork,
        exists: RepoCheck | None = None,
        restore: RepoRestore | None = None,
    ) -> WriteOutcome:
        try:
            with self.uow.transaction() as repo:
                repo.advisory_lock(stage, entity_id)
                if exists is not None and exists(repo):
                    logger.info(f"{stage}: canonical state for {entity_id} already exists; skipping")
                    return WriteOutcome(skipped=True)
                value = work(repo)
            return WriteOutcome(value=value)
        except Exception as exc:
            if not is_unique_violation(exc):
                raise
            logger.warning(f"{stage}: unique violation for {entity_id}; checking for a concurrent winner")
            return self._recover(stage, entity_id, exc, exists, restore)

    def _recover(
        self,
        stage: str,
        entity_id: object,
        exc: Exception,
        exists: RepoCheck | None,
        restore: RepoRestore | None,
    ) -> WriteOutcome:
        if exists is not None:
            with self.uow.read() as repo:
                if exists(repo):
                    logger.info(f"{stage}: state for {entity_id} committed by another worker")
                    return WriteOutcome(skipped=True, recovered=True)
        if restore is not None:
            with self.uow.transaction() as repo:
                repo.advisory_lock(stage, entity_id)
                restored = restore(repo)
            if restored > 0:
                logger.info(f"{stage}: restored {restored} soft-deleted rows for {entity_id}")
                return WriteOutcome(skipped=True, recovered=True, restored=restored)
        raise exc
