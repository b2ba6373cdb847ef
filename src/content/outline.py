"""
Lesson outlines: the section plan a node doc's headings must follow verbatim.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ROADMAP_HEADING = "Roadmap"


def dedupe_strings(values: list[str] | None) -> list[str]:
    """Trimmed, non-empty, first-seen order."""
    out: list[str] = []
    seen: set[str] = set()
    for v in values or []:
        s = str(v or "").strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


class OutlineSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    heading: str = ""
    goal: str = ""
    concept_keys: list[str] = Field(default_factory=list)
    include_worked_example: bool = False
    include_media_block: bool = False
    quick_checks: int = 0
    flashcards: int = 0
    bridge_in: str = ""
    bridge_out: str = ""

    @field_validator("heading", "goal", "bridge_in", "bridge_out", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class NodeOutline(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = 1
    title: str = ""
    thread_summary: str = ""
    key_terms: list[str] = Field(default_factory=list)
    prereq_recap: str = ""
    next_preview: str = ""
    sections: list[OutlineSection] = Field(default_factory=list)

    @property
    def headings(self) -> list[str]:
        return [s.heading for s in self.sections]


def normalize_outline(outline: NodeOutline | None, node_title: str, concept_keys: list[str]) -> NodeOutline:
    """
    Trim and clamp an outline.

    Sections without concept keys inherit the node's keys; quick_checks and
    flashcards are clamped to [0, 4]. An outline with no sections gets the
    minimal Roadmap / Core idea plan.
    """
    out = (outline or NodeOutline()).model_copy(deep=True)
    if out.schema_version == 0:
        out.schema_version = 1
    if not out.title.strip():
        out.title = node_title.strip()
    out.thread_summary = out.thread_summary.strip()
    out.prereq_recap = out.prereq_recap.strip()
    out.next_preview = out.next_preview.strip()
    out.key_terms = dedupe_strings(out.key_terms)

    keys = dedupe_strings(concept_keys)
    sections: list[OutlineSection] = []
    for s in out.sections:
        sec = s.model_copy()
        sec.heading = sec.heading.strip() or "Section"
        sec.goal = sec.goal.strip() or "Teach the core idea in this section."
        sec.bridge_in = sec.bridge_in.strip()
        sec.bridge_out = sec.bridge_out.strip()
        sec.concept_keys = dedupe_strings(sec.concept_keys) or list(keys)
        sec.quick_checks = min(4, max(0, sec.quick_checks))
        sec.flashcards = min(4, max(0, sec.flashcards))
        sections.append(sec)
    if not sections:
        sections = [
            OutlineSection(
                heading=ROADMAP_HEADING,
                goal="Preview the structure of the lesson.",
                concept_keys=list(keys),
            ),
            OutlineSection(
                heading="Core idea",
                goal="Explain the main concept clearly.",
                concept_keys=list(keys),
                include_worked_example=True,
                include_media_block=True,
                quick_checks=1,
                flashcards=1,
            ),
        ]
    out.sections = sections
    return out


def parse_outline(raw: dict[str, Any] | None, node_title: str, concept_keys: list[str]) -> NodeOutline:
    """Parse generator output; undecodable payloads degrade to the fallback outline."""
    try:
        parsed = NodeOutline.model_validate(raw or {})
    except ValidationError:
        parsed = NodeOutline()
    return normalize_outline(parsed, node_title, concept_keys)


def fallback_outline(node_title: str, concept_keys: list[str]) -> NodeOutline:
    return normalize_outline(None, node_title, concept_keys)
