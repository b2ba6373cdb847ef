"""Alternative canonical payloads for a lesson doc, keyed by (user, node, kind, snapshot)."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from loguru import logger

from src.content.node_doc import NodeDoc, canonical_json, doc_to_json, parse_node_doc

from .errors import ContractError
from .ids import deterministic_uuid, sha256_hex
from .records import NodeDocVariantRecord

STAGE = "node_doc_variant"


def node_doc_variant_id(user_id: UUID, path_node_id: UUID, variant_kind: str, snapshot_id: str) -> UUID:
    return deterministic_uuid("learning_node_doc_variant", user_id, path_node_id, variant_kind, snapshot_id)


def save_node_doc_variant(
    uow,
    user_id: UUID,
    path_node_id: UUID,
    variant_kind: str,
    snapshot_id: str,
    doc: NodeDoc | dict[str, Any],
) -> NodeDocVariantRecord:
    """Store a variant; the primary learning_node_doc row is never touched."""
    variant_kind = (variant_kind or "").strip().lower()
    snapshot_id = (snapshot_id or "").strip()
    if not variant_kind or not snapshot_id:
        raise ContractError(STAGE, "variant_kind and snapshot_id are required")
    if not isinstance(doc, NodeDoc):
        doc = parse_node_doc(doc)
    payload = doc_to_json(doc)
    record = NodeDocVariantRecord(
        id=node_doc_variant_id(user_id, path_node_id, variant_kind, snapshot_id),
        user_id=user_id,
        path_node_id=path_node_id,
        variant_kind=variant_kind,
        snapshot_id=snapshot_id,
        doc_json=payload,
        content_hash=sha256_hex(canonical_json(payload)),
    )
    with uow.transaction() as repo:
        repo.upsert_node_doc_variant(record)
    logger.debug(f"{STAGE}: stored {variant_kind}@{snapshot_id} for node {path_node_id}")
    return record
