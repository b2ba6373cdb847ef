"""
Per-template minimum counts for lesson docs.

Requirements feed both the generation prompt (as stated targets) and the
validator (as hard floors).
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace

NODE_KINDS = ("module", "lesson", "capstone", "review")
DOC_TEMPLATES = ("overview", "concept", "practice", "cheatsheet", "project", "review")


@dataclass
class NodeDocRequirements:
    min_word_count: int = 1100
    min_headings: int = 3
    min_paragraphs: int = 8
    min_callouts: int = 2
    min_quick_checks: int = 3
    min_diagrams: int = 0
    min_tables: int = 0
    min_why_it_matters: int = 1
    min_intuition: int = 1
    min_mental_models: int = 1
    min_pitfalls: int = 1  # common_mistakes + misconceptions
    min_steps: int = 0
    min_checklist: int = 0
    min_connections: int = 0
    require_media: bool = False
    require_example: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_node_kind(kind: str | None) -> str:
    k = (kind or "").strip().lower()
    return k if k in NODE_KINDS else "lesson"


def normalize_doc_template(template: str | None, node_kind: str | None = None) -> str:
    t = (template or "").strip().lower()
    if t in DOC_TEMPLATES:
        return t
    kind = normalize_node_kind(node_kind)
    if kind == "module":
        return "overview"
    if kind == "capstone":
        return "project"
    if kind == "review":
        return "review"
    return "concept"


def requirements_for_template(template: str, premium: bool = False) -> NodeDocRequirements:
    """Minimums for a doc template, raised in premium quality modes."""
    req = NodeDocRequirements()
    t = normalize_doc_template(template)
    if t == "overview":
        req = replace(req, min_word_count=900, min_headings=2, min_paragraphs=6, min_callouts=1, min_quick_checks=2)
    elif t == "practice":
        req = replace(req, min_word_count=1300, min_headings=3, min_paragraphs=7, min_callouts=3, min_quick_checks=4)
    elif t == "cheatsheet":
        req = replace(
            req, min_word_count=900, min_headings=2, min_paragraphs=3, min_callouts=1, min_quick_checks=2, min_tables=1
        )
    elif t == "project":
        req = replace(
            req,
            min_word_count=1600,
            min_headings=3,
            min_paragraphs=8,
            min_callouts=2,
            min_quick_checks=2,
            min_steps=1,
            min_checklist=1,
        )
    elif t == "review":
        req = replace(req, min_word_count=1000, min_headings=2, min_paragraphs=4, min_callouts=1, min_quick_checks=6)

    if premium:
        req.min_word_count = int(math.ceil(req.min_word_count * 1.35))
        if req.min_paragraphs > 0:
            req.min_paragraphs += 2
        if req.min_callouts > 0:
            req.min_callouts += 1
        if t == "practice":
            req.min_quick_checks += 2
            req.min_callouts += 1
        if t in ("concept", "overview"):
            req.min_diagrams = max(req.min_diagrams, 1)
    return req


def apply_diagram_policy(req: NodeDocRequirements, diagrams_limit: int) -> NodeDocRequirements:
    """Diagrams disabled (limit 0) removes the diagram floor; a positive cap bounds it."""
    if diagrams_limit == 0:
        req.min_diagrams = 0
    elif diagrams_limit > 0:
        req.min_diagrams = min(req.min_diagrams, diagrams_limit)
    return req


def diagram_policy(req: NodeDocRequirements, diagrams_limit: int) -> str:
    if diagrams_limit == 0:
        return "disabled"
    if req.min_diagrams > 0:
        return "required"
    return "optional"


def requirements_prompt_lines(req: NodeDocRequirements) -> str:
    lines = [
        f"- at least {req.min_word_count} words of learner-facing text",
        f"- at least {req.min_headings} headings, {req.min_paragraphs} paragraphs, {req.min_callouts} callouts",
        f"- at least {req.min_quick_checks} quick_check blocks",
    ]
    extras = [
        ("diagram", req.min_diagrams),
        ("table", req.min_tables),
        ("why_it_matters", req.min_why_it_matters),
        ("intuition", req.min_intuition),
        ("mental_model", req.min_mental_models),
        ("common_mistakes|misconceptions", req.min_pitfalls),
        ("steps", req.min_steps),
        ("checklist", req.min_checklist),
        ("connections", req.min_connections),
    ]
    for name, n in extras:
        if n > 0:
            lines.append(f"- at least {n} {name} block(s)")
    if req.require_example:
        lines.append('- a tip callout titled "Worked example"')
    return "\n".join(lines)
