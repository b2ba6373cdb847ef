"""Concept clusters: labelled thematic groups over a path's concepts."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import get_settings
from src.generation import prompts as prompt_lib
from src.sync.cache_sync import sync_vectors
from src.sync.vector_store import VectorItem, path_clusters_namespace, vector_id

from .concept_normalizer import dedupe_strings, normalize_concept_key
from .coordinator import CanonicalWriter
from .embedding import embed_in_batches
from .errors import ContractError, DependencyMissingError
from .ids import deterministic_uuid
from .records import ClusterMemberRecord, ClusterRecord, StageInput
from .saga import append_vector_deletes

STAGE = "concept_clusters_build"


class ClusterItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str = ""
    rationale: str = ""
    tags: list[str] = Field(default_factory=list)
    concept_keys: list[str] = Field(default_factory=list)

    @field_validator("label", "rationale", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("tags", "concept_keys", mode="before")
    @classmethod
    def _list(cls, v: Any) -> Any:
        return v or []


@dataclass
class ConceptClustersResult:
    path_id: UUID | None = None
    clusters_made: int = 0
    members_made: int = 0
    pinecone_batches: int = 0
    skipped: bool = False
    cluster_ids: list[UUID] = field(default_factory=list)


def parse_clusters(obj: dict[str, Any] | None, known_keys: set[str]) -> list[ClusterItem]:
    """Clusters with a label, member keys filtered to known concepts, sorted by label."""
    out: dict[str, ClusterItem] = {}
    for raw in (obj or {}).get("clusters") or []:
        if not isinstance(raw, dict):
            continue
        try:
            item = ClusterItem.model_validate(raw)
        except ValidationError as exc:
            logger.debug(f"Dropping malformed cluster: {exc}")
            continue
        label = item.label.strip()
        if not label:
            continue
        keys = [k for k in dedupe_strings([normalize_concept_key(k) for k in item.concept_keys]) if k in known_keys]
        item.label = label
        item.rationale = item.rationale.strip()
        item.tags = dedupe_strings(item.tags)
        item.concept_keys = keys
        if label in out:
            existing = out[label]
            existing.concept_keys = dedupe_strings(existing.concept_keys + keys)
            existing.tags = dedupe_strings(existing.tags + item.tags)
            continue
        out[label] = item
    return [out[label] for label in sorted(out)]


def cluster_embed_doc(c: ClusterItem) -> str:
    return "\n".join([c.label, c.rationale, ", ".join(c.tags), ", ".join(c.concept_keys)]).strip()


async def build_concept_clusters(
    inp: StageInput,
    uow,
    prompts,
    vectors=None,
    settings=None,
) -> ConceptClustersResult:
    settings = settings or get_settings()
    if inp.path_id is None:
        raise ContractError(STAGE, "path_id is required")
    result = ConceptClustersResult(path_id=inp.path_id)

    with uow.read() as repo:
        if repo.list_clusters(inp.path_id):
            result.skipped = True
            return result
        concepts = repo.list_concepts("path", inp.path_id)
    if not concepts:
        raise DependencyMissingError(STAGE, f"path {inp.path_id} has no concepts")

    by_key = {c.key: c for c in concepts}
    payload = {"concepts": [{"key": c.key, "name": c.name, "summary": c.summary} for c in concepts]}
    system, user = prompt_lib.concept_clusters(json.dumps(payload, ensure_ascii=False))
    obj = await prompts.generate_json(system, user, "concept_clusters", prompt_lib.SCHEMAS["concept_clusters"])
    clusters = [c for c in parse_clusters(obj, set(by_key)) if c.concept_keys]
    if not clusters:
        logger.warning(f"{STAGE}: no usable clusters for path {inp.path_id}")
        return result

    embeddings = await embed_in_batches(
        prompts,
        STAGE,
        [cluster_embed_doc(c) for c in clusters],
        settings.concept_graph_embed_batch_size,
        settings.concept_graph_embed_concurrency,
    )

    records: list[ClusterRecord] = []
    members: list[ClusterMemberRecord] = []
    for item, emb in zip(clusters, embeddings):
        cid = deterministic_uuid("concept_cluster", inp.path_id, item.label)
        records.append(
            ClusterRecord(
                id=cid,
                path_id=inp.path_id,
                label=item.label,
                vector_id=vector_id("concept_cluster", cid),
                embedding=emb,
                metadata={"tags": item.tags, "rationale": item.rationale, "concept_keys": item.concept_keys},
            )
        )
        for key in item.concept_keys:
            members.append(
                ClusterMemberRecord(
                    id=deterministic_uuid("concept_cluster_member", cid, by_key[key].id),
                    cluster_id=cid,
                    concept_id=by_key[key].id,
                )
            )

    namespace = path_clusters_namespace(inp.path_id)

    def work(repo) -> int:
        repo.insert_clusters(records)
        made = repo.insert_cluster_members(members)
        result.pinecone_batches = append_vector_deletes(
            repo, inp.saga_id, namespace, [r.vector_id for r in records], settings.concept_cluster_pinecone_batch_size
        )
        return made

    outcome = CanonicalWriter(uow).run(
        STAGE, inp.path_id, work, exists=lambda repo: bool(repo.list_clusters(inp.path_id))
    )
    if outcome.skipped:
        result.skipped = True
        return result

    result.clusters_made = len(records)
    result.members_made = outcome.value or 0
    result.cluster_ids = [r.id for r in records]
    logger.info(f"{STAGE}: path {inp.path_id} {result.clusters_made} clusters, {result.members_made} members")

    items = [
        VectorItem(
            id=r.vector_id,
            values=list(r.embedding or []),
            metadata={"type": "concept_cluster", "cluster_id": str(r.id), "label": r.label, "path_id": str(inp.path_id)},
        )
        for r in records
    ]
    await sync_vectors(vectors, namespace, items, settings.concept_cluster_pinecone_batch_size)
    return result
