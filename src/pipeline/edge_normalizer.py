"""Concept edge normalization: known endpoints, closed type set, clamped strength."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .concept_normalizer import dedupe_strings, filter_chunk_ids, normalize_concept_key

EDGE_TYPES = ("prereq", "related", "analogy")
DEFAULT_STRENGTH = 0.5


class EdgeItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    from_key: str = ""
    to_key: str = ""
    edge_type: str = "related"
    strength: float = DEFAULT_STRENGTH
    rationale: str = ""
    citations: list[str] = Field(default_factory=list)

    @field_validator("from_key", "to_key", "edge_type", "rationale", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("strength", mode="before")
    @classmethod
    def _float(cls, v: Any) -> Any:
        if v is None or isinstance(v, bool):
            return DEFAULT_STRENGTH
        try:
            f = float(v)
        except (TypeError, ValueError):
            return DEFAULT_STRENGTH
        return DEFAULT_STRENGTH if math.isnan(f) else f

    @field_validator("citations", mode="before")
    @classmethod
    def _list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(x) for x in v if x is not None]


def parse_edge_items(obj: dict[str, Any] | None) -> list[EdgeItem]:
    out: list[EdgeItem] = []
    for raw in (obj or {}).get("edges") or []:
        if not isinstance(raw, dict):
            continue
        try:
            out.append(EdgeItem.model_validate(raw))
        except ValidationError:
            continue
    return out


@dataclass
class EdgeNormStats:
    modified: int = 0
    dropped_missing_concepts: int = 0
    dropped_self_loops: int = 0
    type_normalized: int = 0
    strength_clamped: int = 0
    citations_filtered: int = 0
    deduped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def normalize_edge_type(value: str | None) -> str:
    t = (value or "").strip().lower()
    return t if t in EDGE_TYPES else "related"


def normalize_edges(
    items: list[EdgeItem],
    known_keys: set[str],
    allowed_chunk_ids: set[str],
) -> tuple[list[EdgeItem], EdgeNormStats]:
    """Normalize and dedupe edges, sorted by (from, to, type)."""
    stats = EdgeNormStats()
    out: dict[tuple[str, str, str], EdgeItem] = {}

    for e in items:
        fk0, tk0 = e.from_key.strip(), e.to_key.strip()
        fk, tk = normalize_concept_key(fk0), normalize_concept_key(tk0)
        if not fk or not tk:
            continue
        if fk != fk0 or tk != tk0:
            stats.modified += 1
        if fk == tk:
            stats.dropped_self_loops += 1
            stats.modified += 1
            continue
        if fk not in known_keys or tk not in known_keys:
            stats.dropped_missing_concepts += 1
            stats.modified += 1
            continue

        et = normalize_edge_type(e.edge_type)
        if et != e.edge_type:
            if et != e.edge_type.strip().lower():
                stats.type_normalized += 1
            stats.modified += 1

        strength = e.strength
        if strength < 0 or strength > 1:
            strength = min(1.0, max(0.0, strength))
            stats.strength_clamped += 1
            stats.modified += 1

        cits = filter_chunk_ids(e.citations, allowed_chunk_ids)
        if len(cits) != len(e.citations):
            stats.citations_filtered += 1
            stats.modified += 1

        item = EdgeItem(
            from_key=fk,
            to_key=tk,
            edge_type=et,
            strength=strength,
            rationale=e.rationale.strip(),
            citations=cits,
        )
        key = (fk, tk, et)
        existing = out.get(key)
        if existing is None:
            out[key] = item
            continue
        stats.deduped += 1
        stats.modified += 1
        existing.strength = max(existing.strength, item.strength)
        if len(item.rationale) > len(existing.rationale):
            existing.rationale = item.rationale
        existing.citations = dedupe_strings(existing.citations + item.citations)

    return [out[k] for k in sorted(out)], stats
