"""
Saga log for derived caches.

Canonical writes append compensating actions in the same transaction; a
later `compensate` call replays pending actions newest-first against the
vector store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from loguru import logger

from .errors import CompensationError
from .ids import chunked
from .records import SagaActionRecord

PINECONE_DELETE_IDS = "pinecone_delete_ids"
DEFAULT_ACTION_BATCH = 64


class SagaStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class ActionStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


def append_action(repo, saga_id: UUID, kind: str, payload: dict[str, Any]) -> SagaActionRecord:
    """Append one action under the saga row lock; seq is max(seq) + 1."""
    if repo.lock_saga_run(saga_id) is None:
        repo.ensure_saga_run(saga_id)
        repo.lock_saga_run(saga_id)
    record = SagaActionRecord(
        id=uuid.uuid4(),
        saga_id=saga_id,
        seq=repo.next_saga_seq(saga_id),
        kind=kind,
        payload=payload,
        status=ActionStatus.PENDING.value,
    )
    repo.insert_saga_action(record)
    return record


def append_vector_deletes(
    repo,
    saga_id: UUID,
    namespace: str,
    vector_ids: list[str],
    batch_size: int = DEFAULT_ACTION_BATCH,
) -> int:
    """One `pinecone_delete_ids` action per id batch; returns the number of actions."""
    ids = [v for v in vector_ids if v]
    if not ids:
        return 0
    batches = chunked(ids, batch_size)
    for batch in batches:
        append_action(repo, saga_id, PINECONE_DELETE_IDS, {"namespace": namespace, "ids": batch})
    return len(batches)


@dataclass
class CompensationResult:
    saga_id: UUID
    executed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return SagaStatus.FAILED.value if self.failed else SagaStatus.COMPENSATED.value


async def compensate(saga_id: UUID, uow, vectors) -> CompensationResult:
    """Execute pending actions in descending seq and mark the run compensated (or failed)."""
    with uow.transaction() as repo:
        if repo.lock_saga_run(saga_id) is None:
            raise CompensationError("saga", f"saga {saga_id} not found")
        repo.set_saga_status(saga_id, SagaStatus.COMPENSATING.value)
        pending = repo.list_saga_actions(saga_id, status=ActionStatus.PENDING.value)

    result = CompensationResult(saga_id=saga_id)
    for action in sorted(pending, key=lambda a: a.seq, reverse=True):
        error: str | None = None
        try:
            await _execute(action, vectors)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception(f"Saga {saga_id} action seq={action.seq} ({action.kind}) failed")
        with uow.transaction() as repo:
            if error is None:
                repo.update_saga_action(action.id, ActionStatus.DONE.value)
                result.executed += 1
            else:
                repo.update_saga_action(action.id, ActionStatus.FAILED.value, error)
                result.failed += 1
                result.errors.append(f"seq={action.seq}: {error}")

    with uow.transaction() as repo:
        repo.set_saga_status(saga_id, result.status)
    logger.info(f"Saga {saga_id} {result.status}: {result.executed} executed, {result.failed} failed")
    if result.failed:
        raise CompensationError("saga", f"{result.failed} of {len(pending)} actions failed: {result.errors[0]}")
    return result


async def _execute(action: SagaActionRecord, vectors) -> None:
    if action.kind != PINECONE_DELETE_IDS:
        raise ValueError(f"unknown saga action kind {action.kind!r}")
    namespace = str(action.payload.get("namespace") or "").strip()
    ids = [str(v) for v in action.payload.get("ids") or [] if v]
    if not namespace or not ids:
        return
    await vectors.delete_ids(namespace, ids)
