"""
Cross-set entity resolution.

Material entities are linked to global entities by normalized key, then by
alias, then by embedding similarity. Anything left unmatched becomes a new
global entity that later entities in the same batch can match.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from uuid import UUID

from src.semantic.similarity import cosine_similarity

from .ids import deterministic_uuid
from .records import EntityRecord, GlobalEntityRecord

SHORT_KEY_LEN = 4
SHORT_KEY_PENALTY = 0.04
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize_global_entity_key(name: str | None) -> str:
    """Lowercase letters and digits separated by single spaces; '&' reads as 'and'."""
    s = (name or "").lower().replace("&", " and ")
    return " ".join(_NON_ALNUM_RE.sub(" ", s).split())


def similarity_threshold(key: str, base: float) -> float:
    """Short keys (acronyms) need a stricter match."""
    return base + SHORT_KEY_PENALTY if len(key) <= SHORT_KEY_LEN else base


@dataclass
class GlobalResolution:
    assignments: dict[UUID, UUID] = field(default_factory=dict)
    created: list[GlobalEntityRecord] = field(default_factory=list)
    by_key: int = 0
    by_alias: int = 0
    by_embedding: int = 0


class GlobalEntityIndex:
    def __init__(self, existing: Sequence[GlobalEntityRecord]):
        self.by_key: dict[str, GlobalEntityRecord] = {}
        self.by_alias: dict[str, GlobalEntityRecord] = {}
        self.with_embedding: list[GlobalEntityRecord] = []
        for g in existing:
            self.add(g)

    def add(self, g: GlobalEntityRecord) -> None:
        self.by_key.setdefault(g.key, g)
        for a in g.aliases:
            ak = normalize_global_entity_key(a)
            if ak:
                self.by_alias.setdefault(ak, g)
        if g.embedding:
            self.with_embedding.append(g)

    def nearest(self, embedding: Sequence[float]) -> tuple[GlobalEntityRecord | None, float]:
        best, best_score = None, -1.0
        for g in self.with_embedding:
            score = cosine_similarity(embedding, g.embedding)
            if score > best_score:
                best, best_score = g, score
        return best, best_score


def resolve_global_entities(
    entities: Sequence[EntityRecord],
    existing: Sequence[GlobalEntityRecord],
    embeddings: dict[UUID, list[float]],
    threshold: float,
) -> GlobalResolution:
    """Assign every entity a global id; entities are visited in key order."""
    index = GlobalEntityIndex(existing)
    res = GlobalResolution()

    for e in sorted(entities, key=lambda x: x.key):
        gkey = normalize_global_entity_key(e.name) or normalize_global_entity_key(e.key)
        if not gkey:
            continue
        match = index.by_key.get(gkey)
        if match is not None:
            res.by_key += 1
        else:
            match = index.by_alias.get(gkey)
            if match is None:
                for a in e.aliases:
                    ak = normalize_global_entity_key(a)
                    match = index.by_key.get(ak) or index.by_alias.get(ak)
                    if match is not None:
                        break
            if match is not None:
                res.by_alias += 1
        emb = embeddings.get(e.id)
        if match is None and emb:
            candidate, score = index.nearest(emb)
            if candidate is not None and score >= similarity_threshold(gkey, threshold):
                match = candidate
                res.by_embedding += 1
        if match is None:
            match = GlobalEntityRecord(
                id=deterministic_uuid("global_entity", gkey),
                key=gkey,
                name=e.name,
                type=e.type or "unknown",
                aliases=list(e.aliases),
                embedding=list(emb) if emb else None,
            )
            index.add(match)
            res.created.append(match)
        res.assignments[e.id] = match.id
    return res
