"""
Per-lesson context for node doc generation: neighbours, module, concept hints.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from src.content.doc_requirements import normalize_doc_template, normalize_node_kind

from .records import ConceptRecord, EdgeRecord, NodeRecord

MAX_HINTS = 6
SUMMARY_CHARS = 240


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v or "").strip()]


def node_kind_of(node: NodeRecord) -> str:
    return normalize_node_kind(node.metadata.get("node_kind"))


def is_lesson(node: NodeRecord) -> bool:
    return node_kind_of(node) != "module"


@dataclass
class LessonContext:
    node: NodeRecord
    title: str
    goal: str = ""
    node_kind: str = "lesson"
    doc_template: str = "concept"
    concept_keys: list[str] = field(default_factory=list)
    prereq_keys: list[str] = field(default_factory=list)
    activity_slots: list[dict[str, Any]] = field(default_factory=list)
    patterns: dict[str, Any] = field(default_factory=dict)
    prev_title: str = ""
    next_title: str = ""
    module_title: str = ""
    narrative: dict[str, Any] = field(default_factory=dict)
    must_cite: list[UUID] = field(default_factory=list)
    user_knowledge_json: str = ""

    @property
    def node_id(self) -> UUID:
        return self.node.id

    @property
    def query_text(self) -> str:
        return " ".join(p for p in (self.title, self.goal, " ".join(self.concept_keys)) if p).strip()


def _thread(node: NodeRecord | None) -> dict[str, Any] | None:
    if node is None:
        return None
    goal = str(node.metadata.get("goal") or "").strip()
    return {
        "title": node.title,
        "summary": goal[:SUMMARY_CHARS],
        "key_terms": _str_list(node.metadata.get("concept_keys"))[:5],
    }


def _module_of(node: NodeRecord, by_id: dict[UUID, NodeRecord]) -> NodeRecord | None:
    seen: set[UUID] = set()
    parent_id = node.parent_node_id
    while parent_id is not None and parent_id not in seen:
        seen.add(parent_id)
        parent = by_id.get(parent_id)
        if parent is None:
            return None
        if node_kind_of(parent) == "module":
            return parent
        parent_id = parent.parent_node_id
    return None


def concept_hints(
    keys: Sequence[str],
    concepts: Sequence[ConceptRecord],
    edges: Sequence[EdgeRecord],
) -> dict[str, list[str]]:
    """Prereqs pointing into the lesson's concepts plus related and analogy neighbours."""
    key_by_id = {c.id: c.key for c in concepts}
    wanted = set(keys)
    hints: dict[str, list[str]] = {"prereqs": [], "related": [], "analogies": []}
    for e in sorted(edges, key=lambda e: (-e.strength, str(e.id))):
        src, dst = key_by_id.get(e.from_concept_id), key_by_id.get(e.to_concept_id)
        if src is None or dst is None:
            continue
        if e.edge_type == "prereq":
            if dst in wanted and src not in wanted:
                hints["prereqs"].append(src)
            continue
        bucket = "analogies" if e.edge_type == "analogy" else "related"
        if src in wanted and dst not in wanted:
            hints[bucket].append(dst)
        elif dst in wanted and src not in wanted:
            hints[bucket].append(src)
    return {k: list(dict.fromkeys(v))[:MAX_HINTS] for k, v in hints.items()}


def lesson_contexts(
    nodes: Sequence[NodeRecord],
    concepts: Sequence[ConceptRecord] = (),
    edges: Sequence[EdgeRecord] = (),
    narrative_enabled: bool = True,
) -> list[LessonContext]:
    """One context per lesson in path order; threading follows lesson order, skipping modules."""
    by_id = {n.id: n for n in nodes}
    lessons = [n for n in sorted(nodes, key=lambda n: n.index) if is_lesson(n)]
    out: list[LessonContext] = []
    for i, node in enumerate(lessons):
        meta = node.metadata
        kind = node_kind_of(node)
        keys = _str_list(meta.get("concept_keys"))
        ctx = LessonContext(
            node=node,
            title=node.title,
            goal=str(meta.get("goal") or "").strip(),
            node_kind=kind,
            doc_template=normalize_doc_template(meta.get("doc_template"), kind),
            concept_keys=keys,
            prereq_keys=_str_list(meta.get("prereq_concept_keys")),
            activity_slots=[s for s in meta.get("activity_slots") or [] if isinstance(s, dict)],
            patterns=meta.get("patterns") if isinstance(meta.get("patterns"), dict) else {},
        )
        prev_node = lessons[i - 1] if i > 0 else None
        next_node = lessons[i + 1] if i + 1 < len(lessons) else None
        module = _module_of(node, by_id)
        ctx.prev_title = prev_node.title if prev_node else ""
        ctx.next_title = next_node.title if next_node else ""
        ctx.module_title = module.title if module else ""
        if narrative_enabled:
            siblings = [
                n.title for n in lessons if module is not None and n.id != node.id and _module_of(n, by_id) is module
            ]
            ctx.narrative = {
                "previous": _thread(prev_node),
                "next": _thread(next_node),
                "module": {"title": ctx.module_title, "sibling_titles": siblings} if module else None,
                "concept_hints": concept_hints(keys, concepts, edges),
            }
        out.append(ctx)
    return out
