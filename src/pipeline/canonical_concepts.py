"""
Canonical concept resolution.

Links path-scoped concepts to global canonical concepts. Matching runs in
order: exact global key, alias key, then embedding ANN over the global
concepts namespace. ANN hits that themselves redirect to another canonical
row are followed one hop.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from src.sync.vector_store import GLOBAL_CONCEPTS_NAMESPACE, VectorItem, VectorMatch, vector_id

from .concept_normalizer import ConceptItem, normalize_concept_key
from .concurrency import run_bounded, with_timeout
from .ids import deterministic_uuid, parse_uuid
from .records import ConceptRecord

GLOBAL_CONCEPT_FILTER = {"type": "concept", "scope": "global", "canonical": True}

DEFAULT_MATCH_CONFIG: dict[str, Any] = {
    "min_score": 0.885,
    "min_gap": 0.02,
    "top_k": 6,
    "concurrency": 12,
    "timeout_seconds": 2.5,
}


@dataclass
class CanonicalMatchReport:
    exact: int = 0
    alias: int = 0
    semantic: int = 0
    rejected: int = 0
    failed: int = 0
    redirected: int = 0
    sources: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("sources")
        return data


def global_concept_id(key: str) -> UUID:
    return deterministic_uuid("global_concept", key)


def _root(record: ConceptRecord) -> UUID:
    return record.canonical_concept_id or record.id


def _match_id(match: VectorMatch) -> UUID | None:
    raw = match.id
    if raw.startswith("concept:"):
        raw = raw[len("concept:") :]
    return parse_uuid(raw)


def accept_semantic_match(matches: Sequence[VectorMatch], min_score: float, min_gap: float) -> VectorMatch | None:
    """Best match wins only when it clears the score floor and leads the runner-up by min_gap."""
    if not matches:
        return None
    ranked = sorted(matches, key=lambda m: m.score, reverse=True)
    best = ranked[0]
    if best.score < min_score:
        return None
    if len(ranked) > 1 and best.score - ranked[1].score < min_gap:
        return None
    return best


async def match_canonical_concepts(
    concepts: Sequence[ConceptItem],
    embeddings: dict[str, list[float]],
    uow,
    vectors,
    config: dict[str, Any] | None = None,
) -> tuple[dict[str, UUID], CanonicalMatchReport]:
    """
    Map normalized path concept keys to global canonical concept ids.

    ANN failures and timeouts leave the concept unmatched; they never fail
    the stage.
    """
    cfg = {**DEFAULT_MATCH_CONFIG, **(config or {})}
    report = CanonicalMatchReport()
    mapping: dict[str, UUID] = {}

    keys = [normalize_concept_key(c.key) for c in concepts]
    aliases: dict[str, list[str]] = {}
    lookup: set[str] = set()
    for key, c in zip(keys, concepts):
        if not key:
            continue
        lookup.add(key)
        alias_keys = []
        for a in c.aliases:
            ak = normalize_concept_key(a)
            if ak and ak != key and ak not in alias_keys:
                alias_keys.append(ak)
        aliases[key] = alias_keys
        lookup.update(alias_keys)

    with uow.read() as repo:
        globals_by_key = repo.get_global_concepts_by_keys(lookup)

    pending: list[str] = []
    for key in sorted(aliases):
        row = globals_by_key.get(key)
        if row is not None:
            mapping[key] = _root(row)
            report.exact += 1
            report.sources[key] = "exact"
            continue
        alias_row = next((globals_by_key[a] for a in aliases[key] if a in globals_by_key), None)
        if alias_row is not None:
            mapping[key] = _root(alias_row)
            report.alias += 1
            report.sources[key] = "alias"
            continue
        if embeddings.get(key):
            pending.append(key)

    if not pending or vectors is None:
        return mapping, report

    async def _query(key: str) -> tuple[str, VectorMatch | None]:
        try:
            matches = await with_timeout(
                vectors.query_matches(
                    GLOBAL_CONCEPTS_NAMESPACE, embeddings[key], int(cfg["top_k"]), dict(GLOBAL_CONCEPT_FILTER)
                ),
                float(cfg["timeout_seconds"]),
            )
        except Exception as exc:
            logger.debug(f"Canonical ANN for {key!r} failed: {exc!r}")
            report.failed += 1
            return key, None
        best = accept_semantic_match(matches, float(cfg["min_score"]), float(cfg["min_gap"]))
        if best is None and matches:
            report.rejected += 1
        return key, best

    results = await run_bounded(pending, int(cfg["concurrency"]), _query)

    semantic: dict[str, UUID] = {}
    for key, best in results:
        if best is None:
            continue
        matched = _match_id(best)
        if matched is not None:
            semantic[key] = matched

    if semantic:
        with uow.read() as repo:
            rows = {r.id: r for r in repo.get_concepts_by_ids(sorted(set(semantic.values()), key=str))}
        for key, matched in semantic.items():
            row = rows.get(matched)
            if row is not None and row.canonical_concept_id and row.canonical_concept_id != row.id:
                matched = row.canonical_concept_id
                report.redirected += 1
            mapping[key] = matched
            report.semantic += 1
            report.sources[key] = "semantic"

    logger.info(
        f"Canonical matching: {report.exact} exact, {report.alias} alias, {report.semantic} semantic "
        f"({report.rejected} rejected, {report.failed} failed) of {len(aliases)} concepts"
    )
    return mapping, report


@dataclass
class CanonicalizeResult:
    assignments: dict[UUID, UUID] = field(default_factory=dict)
    created: list[ConceptRecord] = field(default_factory=list)


def canonicalize_path_concepts(
    repo,
    path_concepts: Sequence[ConceptRecord],
    matches: dict[str, UUID],
) -> CanonicalizeResult:
    """
    Ensure a global row exists for every path concept key and point each
    path concept at its canonical root.

    A concept matched by alias or ANN gets a global alias row whose
    canonical link is the matched root; an unmatched concept becomes a new
    canonical row. Runs inside the caller's transaction.
    """
    result = CanonicalizeResult()
    if not path_concepts:
        return result
    existing = repo.get_global_concepts_by_keys(c.key for c in path_concepts)

    for c in path_concepts:
        if c.key in existing:
            continue
        gid = global_concept_id(c.key)
        matched = matches.get(c.key)
        metadata: dict[str, Any] = {"observed_from": str(c.id)}
        canonical = gid
        if matched is not None and matched != gid:
            canonical = matched
            metadata["alias_for"] = str(matched)
        result.created.append(
            ConceptRecord(
                id=gid,
                scope="global",
                scope_id=None,
                key=c.key,
                name=c.name,
                summary=c.summary,
                key_points=list(c.key_points),
                sort_index=c.sort_index,
                vector_id=vector_id("concept", gid),
                canonical_concept_id=canonical,
                embedding=c.embedding,
                metadata=metadata,
            )
        )
    if result.created:
        repo.upsert_global_concepts(result.created)
        existing = repo.get_global_concepts_by_keys(c.key for c in path_concepts)

    for c in path_concepts:
        target = matches.get(c.key)
        if target is None and c.key in existing:
            target = _root(existing[c.key])
        if target is not None and c.canonical_concept_id != target:
            result.assignments[c.id] = target
    if result.assignments:
        repo.set_canonical_concept_ids(result.assignments)
    logger.debug(f"Canonicalized {len(result.assignments)} path concepts ({len(result.created)} new global rows)")
    return result


def global_vector_items(created: Sequence[ConceptRecord]) -> list[VectorItem]:
    """Vector items for newly created canonical global concepts (alias rows are not indexed)."""
    items = []
    for g in created:
        if not g.embedding or (g.canonical_concept_id and g.canonical_concept_id != g.id):
            continue
        items.append(
            VectorItem(
                id=vector_id("concept", g.id),
                values=list(g.embedding),
                metadata={
                    "type": "concept",
                    "scope": "global",
                    "canonical": True,
                    "concept_id": str(g.id),
                    "observedKey": g.key,
                    "observedName": g.name,
                },
            )
        )
    return items
