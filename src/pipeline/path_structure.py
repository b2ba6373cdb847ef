"""
Path structure parsing and deterministic node-tree normalization.

Rules, applied in order:
- drop nodes with index <= 0 or an empty title; duplicate indices keep the first
- parent_index must be positive, smaller than the node's own index and exist
- cycles are broken and depth is capped at 3 levels by detaching nodes
- nodes are sorted by index and renumbered 1..n (parents remapped)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.content.doc_requirements import normalize_doc_template, normalize_node_kind

from .concept_normalizer import dedupe_strings, normalize_concept_key

MAX_TREE_DEPTH = 3
DIFFICULTIES = ("intro", "intermediate", "advanced")


class ActivitySlot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    slot: int = 0
    kind: str = "reading"
    primary_concept_keys: list[str] = Field(default_factory=list)
    estimated_minutes: int = 0


class PathNodeItem(BaseModel):
    """One node of the planned path tree."""

    model_config = ConfigDict(extra="ignore")

    index: int = 0
    parent_index: int | None = None
    node_kind: str = "lesson"
    doc_template: str = ""
    title: str = ""
    goal: str = ""
    concept_keys: list[str] = Field(default_factory=list)
    prereq_concept_keys: list[str] = Field(default_factory=list)
    difficulty: str = "intro"
    activity_slots: list[ActivitySlot] = Field(default_factory=list)

    @field_validator("title", "goal", "node_kind", "doc_template", "difficulty", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("index", mode="before")
    @classmethod
    def _int(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("concept_keys", "prereq_concept_keys", "activity_slots", mode="before")
    @classmethod
    def _list(cls, v: Any) -> Any:
        return v or []

    @property
    def is_module(self) -> bool:
        return self.node_kind == "module"


@dataclass
class PathStructure:
    title: str = ""
    description: str = ""
    nodes: list[PathNodeItem] = field(default_factory=list)
    uncovered_concept_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "nodes": [n.model_dump() for n in self.nodes],
            "coverage_check": {"uncovered_concept_keys": list(self.uncovered_concept_keys)},
        }


@dataclass
class TreeNormStats:
    dropped: int = 0
    duplicates: int = 0
    parents_cleared: int = 0
    cycles_broken: int = 0
    depth_capped: int = 0
    renumbered: int = 0


def parse_path_structure(obj: dict[str, Any] | None, known_keys: set[str]) -> PathStructure:
    obj = obj or {}
    nodes: list[PathNodeItem] = []
    for raw in obj.get("nodes") or []:
        if not isinstance(raw, dict):
            continue
        try:
            node = PathNodeItem.model_validate(raw)
        except ValidationError as exc:
            logger.debug(f"Dropping malformed path node: {exc}")
            continue
        node.title = node.title.strip()
        node.goal = node.goal.strip()
        node.node_kind = normalize_node_kind(node.node_kind)
        node.doc_template = normalize_doc_template(node.doc_template, node.node_kind)
        node.difficulty = node.difficulty.strip().lower()
        if node.difficulty not in DIFFICULTIES:
            node.difficulty = "intro"
        node.concept_keys = _known_keys(node.concept_keys, known_keys)
        node.prereq_concept_keys = [
            k for k in _known_keys(node.prereq_concept_keys, known_keys) if k not in node.concept_keys
        ]
        for slot in node.activity_slots:
            slot.primary_concept_keys = _known_keys(slot.primary_concept_keys, known_keys)
        nodes.append(node)

    coverage = obj.get("coverage_check") or {}
    reported = coverage.get("uncovered_concept_keys") if isinstance(coverage, dict) else None
    return PathStructure(
        title=str(obj.get("title") or "").strip(),
        description=str(obj.get("description") or "").strip(),
        nodes=nodes,
        uncovered_concept_keys=_known_keys(reported or [], known_keys),
    )


def _known_keys(values: list[str], known: set[str]) -> list[str]:
    keys = dedupe_strings([normalize_concept_key(v) for v in values])
    return [k for k in keys if k in known] if known else keys


def normalize_node_tree(nodes: list[PathNodeItem]) -> tuple[list[PathNodeItem], TreeNormStats]:
    stats = TreeNormStats()
    by_index: dict[int, PathNodeItem] = {}
    for n in nodes:
        if n.index <= 0 or not n.title.strip():
            stats.dropped += 1
            continue
        if n.index in by_index:
            stats.duplicates += 1
            continue
        by_index[n.index] = n.model_copy(deep=True)

    for n in by_index.values():
        p = n.parent_index
        if p is not None and (p <= 0 or p >= n.index or p not in by_index):
            n.parent_index = None
            stats.parents_cleared += 1

    for n in by_index.values():
        seen = {n.index}
        p = n.parent_index
        while p is not None:
            if p in seen:
                n.parent_index = None
                stats.cycles_broken += 1
                break
            seen.add(p)
            p = by_index[p].parent_index

    def depth(idx: int) -> int:
        d, p = 1, by_index[idx].parent_index
        while p is not None:
            d += 1
            p = by_index[p].parent_index
        return d

    for idx in sorted(by_index):
        if depth(idx) > MAX_TREE_DEPTH:
            by_index[idx].parent_index = None
            stats.depth_capped += 1

    ordered = [by_index[i] for i in sorted(by_index)]
    remap = {n.index: i + 1 for i, n in enumerate(ordered)}
    for n in ordered:
        if remap[n.index] != n.index:
            stats.renumbered += 1
        n.index = remap[n.index]
        if n.parent_index is not None:
            n.parent_index = remap[n.parent_index]
    return ordered, stats


def uncovered_concept_keys(nodes: list[PathNodeItem], known_keys: set[str]) -> list[str]:
    covered = {k for n in nodes for k in n.concept_keys}
    return sorted(k for k in known_keys if k not in covered)


def rerank_concept_keys(nodes: list[PathNodeItem], importance: dict[str, int]) -> int:
    """Order each node's concept keys by material importance, stable for ties. Returns nodes changed."""
    changed = 0
    for n in nodes:
        ranked = sorted(n.concept_keys, key=lambda k: -importance.get(k, 0))
        if ranked != n.concept_keys:
            n.concept_keys = ranked
            changed += 1
    return changed


def module_index_of(index: int, parent_by_index: dict[int, int | None], module_indices: set[int]) -> int:
    """Nearest module ancestor (or self); 0 when the node sits outside any module."""
    curr: int | None = index
    seen: set[int] = set()
    while curr is not None and curr > 0 and curr not in seen:
        seen.add(curr)
        if curr in module_indices:
            return curr
        curr = parent_by_index.get(curr)
    return 0
