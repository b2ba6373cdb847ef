"""
Material knowledge graph.

Extracts entities and atomic claims from a material set and links them to
chunks, to each other and to the path's concepts. AI failures leave the set
without a graph and the stage reports a skip; they never fail the pipeline.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from config import get_settings
from src.generation import prompts as prompt_lib
from src.sync.cache_sync import sync_graph
from src.sync.graph_store import GraphBatch, GraphNode, GraphRel

from .concept_normalizer import dedupe_strings, filter_chunk_ids, normalize_concept_key
from .coordinator import CanonicalWriter
from .embedding import embed_in_batches
from .errors import DependencyMissingError, SchemaRejectedError
from .excerpts import stratified_excerpts
from .global_entities import resolve_global_entities
from .ids import deterministic_uuid, parse_uuid, sha256_hex
from .path_context import intake_context
from .records import ClaimRecord, EntityRecord, KnowledgeLink, StageInput

STAGE = "material_kg_build"
MAX_EVIDENCE_IDS = 6
DEFAULT_CLAIM_CONFIDENCE = 0.7


@dataclass
class MaterialKGResult:
    material_set_id: UUID | None = None
    entities_upserted: int = 0
    claims_upserted: int = 0
    links_inserted: int = 0
    global_entities_created: int = 0
    skipped: bool = False
    reason: str = ""


@dataclass
class ExtractedGraph:
    entities: dict[str, EntityRecord] = field(default_factory=dict)
    claims: dict[str, ClaimRecord] = field(default_factory=dict)
    links: dict[UUID, KnowledgeLink] = field(default_factory=dict)

    def link(self, table: str, src: UUID, dst: UUID, relation: str) -> None:
        lid = deterministic_uuid(table, src, dst)
        self.links.setdefault(lid, KnowledgeLink(id=lid, table=table, src_id=src, dst_id=dst, relation=relation))


def entity_key(name: str | None) -> str:
    return " ".join((name or "").lower().split())


def claim_key(content: str) -> str:
    return "sha256:" + sha256_hex(" ".join(content.lower().split()))


def _confidence(value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CLAIM_CONFIDENCE
    return max(0.0, min(1.0, v))


def parse_material_kg(
    obj: dict[str, Any] | None,
    material_set_id: UUID,
    allowed_chunk_ids: set[str],
    concept_ids: dict[str, UUID],
) -> ExtractedGraph:
    """Entities, claims and link rows from the extraction output, deduped by deterministic id."""
    g = ExtractedGraph()
    obj = obj or {}

    def ensure_entity(name: str, etype: str = "", description: str = "", aliases=None) -> EntityRecord | None:
        key = entity_key(name)
        if not key:
            return None
        existing = g.entities.get(key)
        if existing is None:
            existing = EntityRecord(
                id=deterministic_uuid("material_entity", material_set_id, key),
                material_set_id=material_set_id,
                key=key,
                name=name.strip(),
                type=(etype or "").strip().lower() or "unknown",
                description=(description or "").strip(),
                aliases=dedupe_strings(aliases),
            )
            g.entities[key] = existing
            return existing
        if existing.type == "unknown" and etype:
            existing.type = etype.strip().lower() or "unknown"
        if len((description or "").strip()) > len(existing.description):
            existing.description = description.strip()
        existing.aliases = dedupe_strings(existing.aliases + list(aliases or []))
        return existing

    for raw in obj.get("entities") or []:
        if not isinstance(raw, dict):
            continue
        entity = ensure_entity(
            str(raw.get("name") or ""), str(raw.get("type") or ""), str(raw.get("description") or ""), raw.get("aliases")
        )
        if entity is None:
            continue
        evidence = filter_chunk_ids(raw.get("evidence_chunk_ids"), allowed_chunk_ids)[:MAX_EVIDENCE_IDS]
        for cid in evidence:
            g.link("chunk_entity", parse_uuid(cid), entity.id, "mentions")

    for raw in obj.get("claims") or []:
        if not isinstance(raw, dict):
            continue
        content = " ".join(str(raw.get("content") or "").split())
        if not content:
            continue
        key = claim_key(content)
        claim = g.claims.get(key)
        if claim is None:
            claim = ClaimRecord(
                id=deterministic_uuid("material_claim", material_set_id, key),
                material_set_id=material_set_id,
                key=key,
                content=content,
                kind=str(raw.get("kind") or "").strip().lower() or "claim",
                confidence=_confidence(raw.get("confidence", DEFAULT_CLAIM_CONFIDENCE)),
            )
            g.claims[key] = claim
        evidence = filter_chunk_ids(raw.get("evidence_chunk_ids"), allowed_chunk_ids)[:MAX_EVIDENCE_IDS]
        for cid in evidence:
            g.link("chunk_claim", parse_uuid(cid), claim.id, "supports")
        for name in dedupe_strings(raw.get("entity_names")):
            entity = ensure_entity(name)
            if entity is not None:
                g.link("claim_entity", claim.id, entity.id, "about")
        for ck in raw.get("concept_keys") or []:
            concept_id = concept_ids.get(normalize_concept_key(str(ck)))
            if concept_id is not None:
                g.link("claim_concept", claim.id, concept_id, "about")
    return g


def material_kg_batch(g: ExtractedGraph) -> GraphBatch:
    batch = GraphBatch()
    for e in g.entities.values():
        batch.nodes.append(GraphNode("MaterialEntity", str(e.id), {"name": e.name, "type": e.type}))
    for c in g.claims.values():
        batch.nodes.append(GraphNode("MaterialClaim", str(c.id), {"kind": c.kind, "confidence": c.confidence}))
    shapes = {
        "chunk_entity": ("MENTIONS", "Chunk", "MaterialEntity"),
        "chunk_claim": ("SUPPORTS", "Chunk", "MaterialClaim"),
        "claim_entity": ("ABOUT", "MaterialClaim", "MaterialEntity"),
        "claim_concept": ("ABOUT", "MaterialClaim", "Concept"),
    }
    for link in g.links.values():
        rel, src_label, dst_label = shapes[link.table]
        if src_label == "Chunk":
            batch.nodes.append(GraphNode("Chunk", str(link.src_id)))
        batch.rels.append(GraphRel(rel, src_label, str(link.src_id), dst_label, str(link.dst_id)))
    return batch


async def build_material_kg(
    inp: StageInput,
    uow,
    prompts,
    graph=None,
    settings=None,
) -> MaterialKGResult:
    settings = settings or get_settings()
    set_id = inp.material_set_id
    result = MaterialKGResult(material_set_id=set_id)
    force = settings.material_kg_force_rebuild

    with uow.read() as repo:
        if not force and sum(repo.count_material_kg(set_id)) > 0:
            result.skipped = True
            result.reason = "exists"
            return result
        files = repo.list_files(set_id)
        path = repo.get_path(inp.path_id) if inp.path_id else repo.get_path_for_set(inp.owner_user_id, set_id)
        intake = intake_context(path.metadata if path else None)
        chunks = repo.list_chunks(set_id, intake.file_ids or None)
        concepts = repo.list_concepts("path", path.id) if path else []
    if not files:
        raise DependencyMissingError(STAGE, f"material set {set_id} has no files")
    usable = [c for c in chunks if c.usable and (c.text or "").strip()]
    if not usable:
        raise DependencyMissingError(STAGE, f"material set {set_id} has no chunks")

    pack = stratified_excerpts(
        usable,
        settings.material_kg_excerpts_per_file,
        settings.material_kg_excerpt_max_chars,
        settings.material_kg_excerpt_max_lines,
        settings.material_kg_excerpt_max_total_chars,
    )
    concepts_json = json.dumps([{"key": c.key, "name": c.name} for c in concepts], ensure_ascii=False)
    system, user = prompt_lib.material_kg_extract(concepts_json, pack.text, intake.intent_md)
    try:
        obj = await prompts.generate_json(
            system, user, "material_kg_extract", prompt_lib.SCHEMAS["material_kg_extract"]
        )
    except SchemaRejectedError:
        raise
    except Exception as exc:
        logger.warning(f"{STAGE}: extraction failed for set {set_id}; skipping: {exc}")
        result.skipped = True
        result.reason = f"ai_failed: {exc}"
        return result

    extracted = parse_material_kg(
        obj, set_id, {str(c.id) for c in usable}, {c.key: c.id for c in concepts}
    )
    entities = sorted(extracted.entities.values(), key=lambda e: e.key)
    claims = sorted(extracted.claims.values(), key=lambda c: c.key)
    if not entities and not claims:
        result.skipped = True
        result.reason = "empty"
        return result

    created_globals = []
    if settings.material_kg_global_entities_enabled and entities:
        vectors = await embed_in_batches(
            prompts,
            STAGE,
            [e.name for e in entities],
            settings.global_entity_embed_batch_size,
            settings.global_entity_embed_concurrency,
        )
        with uow.read() as repo:
            existing = repo.list_global_entities()
        resolution = resolve_global_entities(
            entities, existing, {e.id: v for e, v in zip(entities, vectors)}, settings.global_entity_sim_threshold
        )
        for e in entities:
            e.global_entity_id = resolution.assignments.get(e.id)
        created_globals = resolution.created
        logger.debug(
            f"{STAGE}: global entities key={resolution.by_key} alias={resolution.by_alias} "
            f"embedding={resolution.by_embedding} new={len(created_globals)}"
        )

    links = sorted(extracted.links.values(), key=lambda lk: (lk.table, str(lk.src_id), str(lk.dst_id)))

    def work(repo) -> int:
        if created_globals:
            repo.upsert_global_entities(created_globals)
        repo.upsert_entities(entities)
        repo.upsert_claims(claims)
        return repo.insert_links(links)

    exists = None if force else (lambda repo: sum(repo.count_material_kg(set_id)) > 0)
    outcome = CanonicalWriter(uow).run(STAGE, set_id, work, exists=exists)
    if outcome.skipped:
        result.skipped = True
        result.reason = "exists"
        return result

    result.entities_upserted = len(entities)
    result.claims_upserted = len(claims)
    result.links_inserted = outcome.value or 0
    result.global_entities_created = len(created_globals)
    logger.info(
        f"{STAGE}: set {set_id} {len(entities)} entities, {len(claims)} claims, {result.links_inserted} links"
    )
    if settings.graph_sync_enabled:
        await sync_graph(graph, material_kg_batch(extracted))
    return result
