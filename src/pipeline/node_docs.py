"""
Node doc generator.

For every lesson of a planned path that has no doc yet:

    context (neighbours, user knowledge, must-cite share)
      -> outline prompt (deterministic fallback)
      -> per-section evidence retrieval
      -> doc prompt -> deterministic repairs -> validate
      -> retry with the errors as feedback (bounded)
      -> locked upsert of the canonical doc

Lessons run in a bounded pool; a lesson that exhausts its attempts fails the
stage and cancels the rest.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from config import get_settings
from src.content.doc_citations import inject_missing_must_cite, missing_must_cite_ids, sanitize_citations
from src.content.doc_diagrams import ensure_diagram, sanitize_diagrams
from src.content.doc_flow import ensure_quick_checks_after_teaching, ensure_threading_references, validate_threading
from src.content.doc_repair import (
    MediaUsage,
    cap_block_type,
    dedupe_doc,
    dedupe_media,
    ensure_block_ids,
    inject_figure,
    pad_minimums,
    prune_meta_blocks,
    remove_block_type,
    repair_order,
    scrub_doc,
)
from src.content.doc_requirements import (
    NodeDocRequirements,
    apply_diagram_policy,
    diagram_policy,
    requirements_for_template,
    requirements_prompt_lines,
)
from src.content.doc_validation import outline_heading_errors, validate_node_doc
from src.content.node_doc import (
    PROMPT_VERSION,
    SCHEMA_VERSION,
    NodeDoc,
    canonical_json,
    doc_text,
    doc_to_json,
    parse_node_doc,
    sanitize_for_postgres,
)
from src.content.outline import NodeOutline, fallback_outline, parse_outline
from src.generation import prompts as prompt_lib
from src.sync.vector_store import chunks_namespace

from .concurrency import run_bounded
from .concept_normalizer import normalize_concept_key
from .coordinator import CanonicalWriter
from .embedding import embed_in_batches
from .errors import DependencyMissingError, NodeDocGenerationError, SchemaRejectedError
from .ids import deterministic_uuid, merge_uuid_lists, sha256_hex, sources_hash
from .must_cite import distribute_must_cite, uncovered_chunk_ids
from .node_context import LessonContext, lesson_contexts
from .path_context import charter_style, intake_context
from .records import AssetRecord, ChunkRecord, GenerationRunRecord, NodeDocRecord, StageInput
from .retrieval import LocalChunkIndex, RetrievalPlan, grounding_excerpts, merge_with_priority, retrieve_chunk_ids
from .user_knowledge import build_user_knowledge, canonical_ids

STAGE = "node_doc_build"
SECTION_EXCERPT_LINES = 10
SECTION_EXCERPT_CHARS = 750
DOC_EXCERPT_LINES = 24
DOC_EXCERPT_CHARS = 900
MAX_OFFERED_FIGURES = 3
MAX_OFFERED_VIDEOS = 1


@dataclass
class NodeDocBuildResult:
    path_id: UUID | None = None
    docs_written: int = 0
    docs_existing: int = 0
    diagrams_written: int = 0
    figures_written: int = 0
    videos_written: int = 0
    tables_written: int = 0
    paused: bool = False


@dataclass
class SectionEvidence:
    heading: str
    goal: str
    concept_keys: list[str]
    bridge_in: str
    bridge_out: str
    chunk_ids: list[UUID] = field(default_factory=list)
    excerpts: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "heading": self.heading,
            "goal": self.goal,
            "concept_keys": self.concept_keys,
            "bridge_in": self.bridge_in,
            "bridge_out": self.bridge_out,
            "chunk_ids": [str(c) for c in self.chunk_ids],
            "excerpts": self.excerpts,
        }


@dataclass
class DocEvidence:
    sections: list[SectionEvidence]
    chunk_ids: list[UUID]
    must_cite: list[str]
    figures: list[AssetRecord]
    videos: list[AssetRecord]
    excerpts: str = ""

    @property
    def allowed(self) -> set[str]:
        return {str(c) for c in self.chunk_ids}


@dataclass
class AttemptOutcome:
    doc: NodeDoc | None = None
    errors: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)


def node_doc_id(path_node_id: UUID) -> UUID:
    return deterministic_uuid("learning_node_doc", path_node_id)


def fill_concept_keys(doc: NodeDoc, ctx: LessonContext, outline: NodeOutline) -> bool:
    """Fill empty doc concept keys from the node, outline sections, prereqs, then the title."""
    if any(k.strip() for k in doc.concept_keys):
        return False
    candidates = [
        ctx.concept_keys,
        [k for s in outline.sections for k in s.concept_keys],
        ctx.prereq_keys,
        [ctx.title],
    ]
    for keys in candidates:
        normalized = [k for k in dict.fromkeys(normalize_concept_key(k) for k in keys) if k]
        if normalized:
            doc.concept_keys = normalized
            return True
    return False


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


class NodeDocBuilder:
    """Generates, repairs, validates and stores lesson docs for a path."""

    def __init__(self, uow, prompts, vectors=None, settings=None):
        self.uow = uow
        self.prompts = prompts
        self.vectors = vectors
        self.settings = settings or get_settings()
        self.config = self.settings.get_node_doc_config()

    # ========================================
    # Stage entry
    # ========================================

    async def build(self, inp: StageInput) -> NodeDocBuildResult:
        with self.uow.read() as repo:
            path = repo.get_path(inp.path_id) if inp.path_id else repo.get_path_for_set(
                inp.owner_user_id, inp.material_set_id
            )
            if path is None:
                raise DependencyMissingError(STAGE, f"no path for set {inp.material_set_id}")
            nodes = repo.list_path_nodes(path.id)
            existing = repo.list_node_docs(path.id)
            intake = intake_context(path.metadata)
            source_set = repo.resolve_source_set_id(inp.material_set_id)
            chunks = repo.list_chunks(source_set, intake.file_ids or None)
            assets = repo.list_assets(inp.material_set_id)
            concepts = repo.list_concepts("path", path.id)
            edges = repo.list_edges([c.id for c in concepts])
            profile_doc = repo.get_user_profile_doc(inp.owner_user_id) or ""
            states = repo.list_user_concept_states(inp.owner_user_id, canonical_ids(concepts))

        result = NodeDocBuildResult(path_id=path.id)
        if not intake.confirmed:
            result.paused = True
            return result
        if not nodes:
            raise DependencyMissingError(STAGE, f"path {path.id} has no nodes")

        lessons = lesson_contexts(nodes, concepts, edges, self.settings.node_narrative_enabled)
        done = {d.path_node_id for d in existing}
        pending = [ctx for ctx in lessons if ctx.node_id not in done]
        result.docs_existing = len(lessons) - len(pending)
        if not pending:
            logger.info(f"{STAGE}: path {path.id} has docs for all {len(lessons)} lessons")
            return result

        usable = [c for c in chunks if c.usable and (c.text or "").strip()]
        if not usable:
            raise DependencyMissingError(STAGE, f"material set {source_set} has no usable chunks")
        chunk_by_id = {c.id: c for c in usable}

        existing_docs = [parse_node_doc(d.doc_json) for d in existing]
        cited = {cid for doc in existing_docs for cid in doc.cited_chunk_ids()}
        used_urls = [f.url for doc in existing_docs for f in doc.figures]
        used_urls += [v.url for doc in existing_docs for v in doc.videos]
        usage = MediaUsage(used_urls)

        query_vectors = await embed_in_batches(self.prompts, STAGE, [ctx.query_text for ctx in pending])
        node_vectors = {ctx.node_id: vec for ctx, vec in zip(pending, query_vectors)}
        uncovered = uncovered_chunk_ids(chunk_by_id, cited)
        shares = distribute_must_cite(
            uncovered,
            {c.id: c.embedding for c in usable if c.embedding},
            [ctx.node_id for ctx in pending],
            node_vectors,
            self.config["must_cite_per_node"],
        )
        by_key = {c.key: c for c in concepts}
        for ctx in pending:
            ctx.must_cite = shares.get(ctx.node_id, [])
            knowledge = build_user_knowledge(ctx.concept_keys, by_key, states)
            ctx.user_knowledge_json = "" if knowledge.is_empty else _dumps(knowledge.to_dict())
        logger.info(
            f"{STAGE}: path {path.id} building {len(pending)} docs "
            f"({len(uncovered)} uncovered chunks to distribute)"
        )

        run = _LessonRun(
            builder=self,
            inp=inp,
            path_id=path.id,
            path_meta=path.metadata,
            intent_md=intake.intent_md,
            profile_doc=profile_doc,
            chunk_by_id=chunk_by_id,
            namespace=chunks_namespace(source_set),
            source_set=source_set,
            file_ids=intake.file_ids,
            local=LocalChunkIndex(usable),
            assets=assets,
            usage=usage,
            query_vectors=node_vectors,
        )
        docs = await run_bounded(pending, self.config["build_concurrency"], run.build_one)
        for doc in docs:
            if doc is None:
                continue
            result.docs_written += 1
            result.diagrams_written += len(doc.diagrams)
            result.figures_written += len(doc.figures)
            result.videos_written += len(doc.videos)
            result.tables_written += len(doc.tables)
        result.docs_existing += len(pending) - result.docs_written
        logger.info(
            f"{STAGE}: path {path.id} wrote {result.docs_written} docs "
            f"(diagrams={result.diagrams_written} figures={result.figures_written} tables={result.tables_written})"
        )
        return result

    # ========================================
    # Generation runs
    # ========================================

    def record_run(
        self,
        inp: StageInput,
        path_id: UUID,
        node_id: UUID,
        status: str,
        attempt: int,
        started: float,
        errors: list[str] | None = None,
        metrics: dict[str, Any] | None = None,
        content_hash: str | None = None,
        repo=None,
    ) -> None:
        record = GenerationRunRecord(
            user_id=inp.owner_user_id,
            path_id=path_id,
            path_node_id=node_id,
            stage=STAGE,
            status=status,
            attempt=attempt,
            latency_ms=int((time.monotonic() - started) * 1000),
            errors=list(errors or []),
            metrics={k: v for k, v in (metrics or {}).items() if k != "doc_text"},
            content_hash=content_hash,
        )
        if repo is not None:
            repo.insert_generation_run(record)
            return
        with self.uow.transaction() as tx:
            tx.insert_generation_run(record)


@dataclass
class _LessonRun:
    """Shared, read-only inputs for the lesson workers of one build."""

    builder: NodeDocBuilder
    inp: StageInput
    path_id: UUID
    path_meta: dict[str, Any]
    intent_md: str
    profile_doc: str
    chunk_by_id: dict[UUID, ChunkRecord]
    namespace: str
    source_set: UUID
    file_ids: list[UUID]
    local: LocalChunkIndex
    assets: list[AssetRecord]
    usage: MediaUsage
    query_vectors: dict[UUID, list[float]]

    @property
    def settings(self):
        return self.builder.settings

    @property
    def config(self) -> dict[str, Any]:
        return self.builder.config

    @property
    def prompts(self):
        return self.builder.prompts

    @property
    def strict(self) -> bool:
        return bool(self.config["strict"])

    async def build_one(self, ctx: LessonContext) -> NodeDoc | None:
        outline = await self.outline(ctx)
        evidence = await self.evidence(ctx, outline)
        req = apply_diagram_policy(
            requirements_for_template(ctx.doc_template, self.settings.is_premium), self.config["diagrams_limit"]
        )
        policy = diagram_policy(req, self.config["diagrams_limit"])
        if evidence.figures:
            req.require_media = True

        errors: list[str] = []
        for attempt in range(1, self.config["max_attempts"] + 1):
            started = time.monotonic()
            outcome = await self.attempt(ctx, outline, evidence, req, policy, errors)
            if outcome.doc is None or outcome.errors:
                errors = outcome.errors
                self.usage.release(ctx.node_id)
                logger.warning(
                    f"{STAGE}: node {ctx.node_id} attempt {attempt} failed with {len(errors)} errors"
                )
                self.builder.record_run(
                    self.inp, self.path_id, ctx.node_id, "failed", attempt, started, errors, outcome.metrics
                )
                continue
            return self.commit(ctx, outcome, evidence, attempt, started)
        raise NodeDocGenerationError(STAGE, ctx.node_id, errors)

    # ─── Outline ────────────────────────────────────────────────────────────────

    async def outline(self, ctx: LessonContext) -> NodeOutline:
        system, user = prompt_lib.node_doc_outline(
            ctx.title,
            ctx.goal,
            ctx.node_kind,
            ctx.doc_template,
            ctx.concept_keys,
            ctx.prereq_keys,
            _dumps(ctx.narrative),
            self.intent_md,
            _dumps(charter_style(self.path_meta)),
            _dumps(ctx.patterns) if ctx.patterns else "",
        )
        try:
            obj = await self.prompts.generate_json(
                system, user, "node_doc_outline_v1", prompt_lib.SCHEMAS["node_doc_outline_v1"]
            )
        except SchemaRejectedError:
            raise
        except Exception as exc:
            logger.warning(f"{STAGE}: outline failed for node {ctx.node_id}; using fallback: {exc}")
            return fallback_outline(ctx.title, ctx.concept_keys)
        return parse_outline(obj, ctx.title, ctx.concept_keys)

    # ─── Evidence ───────────────────────────────────────────────────────────────

    async def evidence(self, ctx: LessonContext, outline: NodeOutline) -> DocEvidence:
        queries = [
            " ".join(p for p in (ctx.title, ctx.goal, s.heading, s.goal, " ".join(s.concept_keys)) if p)
            for s in outline.sections
        ]
        vectors = await embed_in_batches(self.prompts, STAGE, queries)

        async def _section(i: int) -> SectionEvidence:
            sec = outline.sections[i]
            plan = RetrievalPlan(
                material_set_id=self.source_set,
                chunks_namespace=self.namespace,
                query_text=queries[i],
                query_embedding=vectors[i],
                file_ids=list(self.file_ids),
                semantic_k=self.config["section_semantic_k"],
                lexical_k=self.config["section_lexical_k"],
                final_k=self.config["section_final_k"],
            )
            ids = await retrieve_chunk_ids(plan, self.builder.vectors, self.builder.uow, self.local)
            ids = [c for c in ids if c in self.chunk_by_id]
            return SectionEvidence(
                heading=sec.heading,
                goal=sec.goal,
                concept_keys=sec.concept_keys,
                bridge_in=sec.bridge_in,
                bridge_out=sec.bridge_out,
                chunk_ids=ids,
                excerpts=grounding_excerpts(ids, self.chunk_by_id, SECTION_EXCERPT_LINES, SECTION_EXCERPT_CHARS),
            )

        sections = await run_bounded(
            range(len(outline.sections)), self.config["section_retrieval_concurrency"], _section
        )
        retrieved = merge_uuid_lists(*(s.chunk_ids for s in sections))
        figures, videos = self.offered_media(set(retrieved) | set(ctx.must_cite))
        figure_cite = merge_uuid_lists(*(a.chunk_ids for a in figures))
        video_cite = merge_uuid_lists(*(a.chunk_ids for a in videos))
        doc_ids = [
            c
            for c in merge_with_priority(ctx.must_cite, figure_cite, video_cite, retrieved, self.config["final_k"])
            if c in self.chunk_by_id
        ]
        allowed = {str(c) for c in doc_ids}
        return DocEvidence(
            sections=sections,
            chunk_ids=doc_ids,
            must_cite=[str(c) for c in ctx.must_cite if str(c) in allowed],
            figures=figures,
            videos=videos,
            excerpts=grounding_excerpts(doc_ids, self.chunk_by_id, DOC_EXCERPT_LINES, DOC_EXCERPT_CHARS),
        )

    def offered_media(self, chunk_ids: set[UUID]) -> tuple[list[AssetRecord], list[AssetRecord]]:
        """Unused image and video assets grounded in this lesson's chunks."""
        figures: list[AssetRecord] = []
        videos: list[AssetRecord] = []
        for asset in self.assets:
            if not asset.url or asset.url in self.usage:
                continue
            if not chunk_ids.intersection(asset.chunk_ids):
                continue
            if asset.kind == "image" and len(figures) < MAX_OFFERED_FIGURES:
                figures.append(asset)
            elif asset.kind == "video" and len(videos) < MAX_OFFERED_VIDEOS:
                videos.append(asset)
        return figures, videos

    # ─── Attempt ────────────────────────────────────────────────────────────────

    async def attempt(
        self,
        ctx: LessonContext,
        outline: NodeOutline,
        evidence: DocEvidence,
        req: NodeDocRequirements,
        policy: str,
        feedback: list[str],
    ) -> AttemptOutcome:
        media = [
            {
                "asset_id": str(a.id),
                "kind": a.kind,
                "url": a.url,
                "caption": a.caption,
                "chunk_ids": [str(c) for c in a.chunk_ids],
            }
            for a in evidence.figures + evidence.videos
        ]
        media_requirement = (
            "MEDIA_REQUIREMENT: include at least one figure block using a url from AVAILABLE_MEDIA_JSON."
            if evidence.figures
            else ""
        )
        system, user = prompt_lib.node_doc(
            title=ctx.title,
            goal=ctx.goal,
            node_kind=ctx.node_kind,
            doc_template=ctx.doc_template,
            prev_title=ctx.prev_title,
            next_title=ctx.next_title,
            module_title=ctx.module_title,
            outline_json=_dumps(outline.model_dump()),
            sections_json=_dumps(
                {"sections": [s.to_dict() for s in evidence.sections], "doc_excerpts": evidence.excerpts}
            ),
            narrative_context_json=_dumps(ctx.narrative),
            requirements_md=requirements_prompt_lines(req),
            allowed_chunk_ids=sorted(evidence.allowed),
            must_cite_chunk_ids=evidence.must_cite,
            diagram_policy=policy,
            media_json=_dumps(media) if media else "",
            media_requirement=media_requirement,
            user_knowledge_json=ctx.user_knowledge_json,
            user_profile_doc=self.profile_doc,
            pattern_context_json=_dumps(ctx.patterns) if ctx.patterns else "",
            path_style_json=_dumps(charter_style(self.path_meta)),
            path_intent_md=self.intent_md,
            activity_slots_json=(
                _dumps(ctx.activity_slots) if self.settings.doc_slot_injection_enabled and ctx.activity_slots else ""
            ),
            feedback=feedback,
        )
        try:
            obj = await self.prompts.generate_json(system, user, "node_doc_v2", prompt_lib.SCHEMAS["node_doc_v2"])
        except SchemaRejectedError:
            raise
        except Exception as exc:
            return AttemptOutcome(errors=[f"generate_failed: {exc}"])
        try:
            doc = parse_node_doc(obj)
        except ValueError as exc:
            return AttemptOutcome(errors=[str(exc)])
        return self.repair_and_validate(doc, ctx, outline, evidence, req, policy)

    def repair_and_validate(
        self,
        doc: NodeDoc,
        ctx: LessonContext,
        outline: NodeOutline,
        evidence: DocEvidence,
        req: NodeDocRequirements,
        policy: str,
    ) -> AttemptOutcome:
        """Deterministic repairs in a fixed order, then validation."""
        fixes: dict[str, Any] = {}
        chunks = {str(cid): c for cid, c in self.chunk_by_id.items()}
        allowed = evidence.allowed
        fallback_ids = evidence.must_cite + [str(c) for c in evidence.chunk_ids]

        fixes["order"] = repair_order(doc)
        errs = outline_heading_errors(doc, outline.headings)
        fixes["concept_keys_filled"] = fill_concept_keys(doc, ctx, outline)
        fixes["meta_pruned"] = prune_meta_blocks(doc)
        fixes["scrubbed"] = scrub_doc(doc)
        fixes["deduped"] = dedupe_doc(doc)
        if policy == "required":
            fixes["diagram_injected"] = ensure_diagram(doc, allowed, fallback_ids, ctx.title)
        if evidence.figures:
            asset = evidence.figures[0]
            cid = next((str(c) for c in asset.chunk_ids if str(c) in allowed), None)
            quote = (self.chunk_by_id[UUID(cid)].text or "") if cid else ""
            figure = {"url": asset.url, "kind": asset.kind, "caption": asset.caption, "asset_id": str(asset.id)}
            fixes["figure_injected"] = inject_figure(doc, figure, cid, quote)
        if policy == "disabled":
            fixes["diagrams_removed"] = remove_block_type(doc, "diagram")
        else:
            fixes["diagrams_capped"] = cap_block_type(doc, "diagram", self.config["diagrams_limit"])
        fixes["deduped_again"] = dedupe_doc(doc)
        if not self.strict:
            pad_evidence = [
                (str(cid), self.chunk_by_id[cid].text) for cid in evidence.chunk_ids if cid in self.chunk_by_id
            ]
            fixes["padded"] = pad_minimums(doc, req, pad_evidence)
        fixes["ids"] = ensure_block_ids(doc)
        if self.settings.node_doc_polish_enabled:
            fixes["polished"] = prune_meta_blocks(doc) + scrub_doc(doc)
        fixes["media_deduped"] = dedupe_media(doc, self.usage, ctx.node_id)
        fixes["diagrams_sanitized"] = sanitize_diagrams(doc)
        fixes["citations"] = sanitize_citations(doc, allowed, chunks, fallback_ids).to_dict()
        fixes["quick_check_order"] = ensure_quick_checks_after_teaching(doc, chunks).to_dict()
        if self.strict:
            fixes["threading_injected"] = ensure_threading_references(
                doc, ctx.prev_title, ctx.next_title, ctx.module_title, fallback_ids[0] if fallback_ids else None
            )

        # repairs may rewrite or drop headings
        errs.extend(outline_heading_errors(doc, outline.headings))
        verrs, metrics = validate_node_doc(doc, allowed, req)
        missing = missing_must_cite_ids(doc, evidence.must_cite)
        if missing and inject_missing_must_cite(doc, missing, chunks):
            fixes["must_cite_injected"] = len(missing)
            verrs, metrics = validate_node_doc(doc, allowed, req)
            missing = missing_must_cite_ids(doc, evidence.must_cite)
        if missing:
            verrs.append(f"missing must-cite chunk ids: {', '.join(missing)}")
        errs.extend(verrs)
        if self.strict:
            terrs, tmetrics = validate_threading(
                metrics.get("doc_text", ""), ctx.prev_title, ctx.next_title, ctx.module_title
            )
            errs.extend(terrs)
            metrics.update(tmetrics)
        metrics["repairs"] = fixes
        return AttemptOutcome(doc=doc, errors=list(dict.fromkeys(errs)), metrics=metrics)

    # ─── Commit ─────────────────────────────────────────────────────────────────

    def commit(
        self, ctx: LessonContext, outcome: AttemptOutcome, evidence: DocEvidence, attempt: int, started: float
    ) -> NodeDoc | None:
        doc = outcome.doc
        payload = doc_to_json(doc)
        content_hash = sha256_hex(canonical_json(payload))
        record = NodeDocRecord(
            id=node_doc_id(ctx.node_id),
            user_id=self.inp.owner_user_id,
            path_id=self.path_id,
            path_node_id=ctx.node_id,
            doc_json=payload,
            doc_text=sanitize_for_postgres(doc_text(doc)),
            content_hash=content_hash,
            sources_hash=sources_hash(PROMPT_VERSION, SCHEMA_VERSION, evidence.chunk_ids),
            schema_version=SCHEMA_VERSION,
        )

        def work(repo) -> None:
            repo.upsert_node_doc(record)
            self.builder.record_run(
                self.inp, self.path_id, ctx.node_id, "succeeded", attempt, started, [], outcome.metrics,
                content_hash, repo=repo,
            )

        result = CanonicalWriter(self.builder.uow).run(
            STAGE, ctx.node_id, work, exists=lambda repo: repo.get_node_doc(ctx.node_id) is not None
        )
        if result.skipped:
            self.usage.release(ctx.node_id)
            logger.info(f"{STAGE}: node {ctx.node_id} doc written by another worker")
            return None
        logger.info(f"{STAGE}: node {ctx.node_id} doc stored on attempt {attempt} ({content_hash[:12]})")
        return doc
