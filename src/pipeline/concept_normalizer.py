"""
Concept inventory normalization.

AI-produced concept records are folded into a deterministic forest: keys are
slugged, duplicates merged, dangling or self parents cleared, cycles broken,
depths recomputed from the parent chain and citations filtered to the
allowed chunk set. Output is sorted by key.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

KEY_MAX_LEN = 64
_NON_KEY_RE = re.compile(r"[^a-z0-9]+")
_UNDERSCORES_RE = re.compile(r"_+")


def normalize_concept_key(value: str | None) -> str:
    """
    Slug a concept key: lowercase, every run of non [a-z0-9] characters
    (whitespace, hyphens, apostrophes, punctuation) becomes one underscore,
    trimmed and capped at 64 chars.
    """
    s = (value or "").strip().lower()
    if not s:
        return ""
    s = _NON_KEY_RE.sub("_", s)
    s = _UNDERSCORES_RE.sub("_", s).strip("_")
    if len(s) > KEY_MAX_LEN:
        s = s[:KEY_MAX_LEN].strip("_")
    return s


def dedupe_strings(values: list[str] | None) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for v in values or []:
        s = str(v or "").strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


def filter_chunk_ids(values: list[str] | None, allowed: set[str]) -> list[str]:
    """Keep only allowed chunk ids, deduped, first-seen order."""
    return [v for v in dedupe_strings(values) if v in allowed]


def _longer(a: str, b: str) -> str:
    return b if len(b.strip()) > len(a.strip()) else a


class ConceptItem(BaseModel):
    """One concept as emitted by the inventory prompts."""

    model_config = ConfigDict(extra="ignore")

    key: str = ""
    name: str = ""
    parent_key: str = ""
    depth: int = 0
    summary: str = ""
    key_points: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    importance: int = 0
    citations: list[str] = Field(default_factory=list)

    @field_validator("key", "name", "parent_key", "summary", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("depth", "importance", mode="before")
    @classmethod
    def _int_or_zero(cls, v: Any) -> Any:
        if v is None or isinstance(v, bool):
            return 0
        try:
            return int(float(v))
        except (TypeError, ValueError):
            return 0

    @field_validator("key_points", "aliases", "citations", mode="before")
    @classmethod
    def _list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(x) for x in v if x is not None]


def parse_concept_items(obj: dict[str, Any] | None) -> list[ConceptItem]:
    """Parse `concepts` from an inventory payload, skipping malformed entries."""
    out: list[ConceptItem] = []
    for raw in (obj or {}).get("concepts") or []:
        if not isinstance(raw, dict):
            continue
        try:
            out.append(ConceptItem.model_validate(raw))
        except ValidationError:
            continue
    return out


@dataclass
class ConceptNormStats:
    modified: int = 0
    keys_changed: int = 0
    duplicates_merged: int = 0
    parents_repaired: int = 0
    cycles_broken: int = 0
    depth_capped: int = 0
    depths_recomputed: int = 0
    citations_filtered: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def normalize_concepts(
    items: list[ConceptItem],
    allowed_chunk_ids: set[str],
    max_depth: int = 6,
) -> tuple[list[ConceptItem], ConceptNormStats]:
    """Normalize an inventory; idempotent on its own output."""
    stats = ConceptNormStats()
    merged: dict[str, ConceptItem] = {}

    for raw in items:
        c = raw.model_copy(deep=True)
        orig_key = c.key.strip()
        key = normalize_concept_key(orig_key)
        if not key:
            continue
        if key != orig_key:
            stats.keys_changed += 1
            stats.modified += 1
        c.key = key

        orig_parent = c.parent_key.strip()
        parent = normalize_concept_key(orig_parent)
        if parent != orig_parent:
            stats.modified += 1
        c.parent_key = parent

        c.name = c.name.strip() or key.replace("_", " ")
        c.summary = c.summary.strip()
        c.key_points = dedupe_strings(c.key_points)
        c.aliases = dedupe_strings(c.aliases)
        filtered = filter_chunk_ids(c.citations, allowed_chunk_ids)
        if len(filtered) != len(c.citations):
            stats.citations_filtered += len(c.citations) - len(filtered)
            stats.modified += 1
        c.citations = filtered

        existing = merged.get(key)
        if existing is None:
            merged[key] = c
            continue
        stats.duplicates_merged += 1
        stats.modified += 1
        existing.summary = _longer(existing.summary, c.summary)
        existing.key_points = dedupe_strings(existing.key_points + c.key_points)
        existing.aliases = dedupe_strings(existing.aliases + c.aliases)
        existing.citations = dedupe_strings(existing.citations + c.citations)
        if not existing.parent_key and c.parent_key:
            existing.parent_key = c.parent_key
        existing.importance = max(existing.importance, c.importance)

    ordered = [merged[k] for k in sorted(merged)]

    for c in ordered:
        if c.parent_key and (c.parent_key == c.key or c.parent_key not in merged):
            c.parent_key = ""
            stats.parents_repaired += 1
            stats.modified += 1

    for c in ordered:
        seen = {c.key}
        p = c.parent_key
        while p:
            if p in seen:
                c.parent_key = ""
                stats.cycles_broken += 1
                stats.modified += 1
                break
            seen.add(p)
            parent = merged.get(p)
            p = parent.parent_key if parent is not None else ""

    memo: dict[str, int] = {}

    def depth_of(key: str) -> int:
        if key in memo:
            return memo[key]
        c = merged[key]
        d = depth_of(c.parent_key) + 1 if c.parent_key else 0
        memo[key] = d
        return d

    # Detach nodes that sit below the depth bound; children follow their new root.
    for c in ordered:
        if max_depth > 0 and c.parent_key and depth_of(c.key) > max_depth:
            c.parent_key = ""
            stats.depth_capped += 1
            stats.modified += 1
            memo.clear()

    for c in ordered:
        d = depth_of(c.key)
        if c.depth != d:
            stats.depths_recomputed += 1
            stats.modified += 1
        c.depth = d

    return ordered, stats


def concepts_prompt_json(items: list[ConceptItem]) -> list[dict[str, Any]]:
    """Compact concept list for prompts."""
    return [
        {
            "key": c.key,
            "name": c.name,
            "parent_key": c.parent_key or None,
            "summary": c.summary,
            "aliases": c.aliases,
        }
        for c in items
    ]


@dataclass
class CoverageReport:
    confidence: float = 0.0
    notes: str = ""
    missing_topics_suspected: list[str] = field(default_factory=list)


def parse_coverage(obj: dict[str, Any] | None) -> CoverageReport:
    raw = (obj or {}).get("coverage") or {}
    if not isinstance(raw, dict):
        return CoverageReport()
    try:
        confidence = float(raw.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    return CoverageReport(
        confidence=confidence,
        notes=str(raw.get("notes") or ""),
        missing_topics_suspected=dedupe_strings(raw.get("missing_topics_suspected")),
    )
