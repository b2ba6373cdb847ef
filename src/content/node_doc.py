"""
NodeDocV1: the canonical learner-facing lesson document.

A doc is an `order` list of `{kind, id}` references plus one array per block
kind. Generated output may arrive either in that shape or as a flat `blocks`
list (`{"type": ..., ...}`); `parse_node_doc` accepts both.

Canonical JSON uses sorted keys and compact separators so that
`content_hash` is stable across runs.
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

SCHEMA_VERSION = 1
PROMPT_VERSION = "node_doc_v2@1"

# ========================================
# Citations
# ========================================


class CitationLoc(BaseModel):
    model_config = ConfigDict(extra="ignore")

    page: int = 0
    start: int = 0
    end: int = 0


class Citation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    chunk_id: str = ""
    quote: str = ""
    loc: CitationLoc = Field(default_factory=CitationLoc)

    @field_validator("chunk_id", "quote", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


# ========================================
# Blocks
# ========================================


class Block(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    citations: list[Citation] = Field(default_factory=list)

    @field_validator("citations", mode="before")
    @classmethod
    def _citations_list(cls, v: Any) -> Any:
        return v or []


class Heading(Block):
    level: int = 2
    text: str = ""


class Paragraph(Block):
    md: str = ""


class Callout(Block):
    variant: str = "info"  # info | tip | warning | note
    title: str = ""
    md: str = ""


class CodeBlock(Block):
    language: str = ""
    filename: str = ""
    code: str = ""


class Figure(Block):
    asset: dict[str, Any] = Field(default_factory=dict)
    caption: str = ""

    @property
    def url(self) -> str:
        return str(self.asset.get("url") or "")


class Video(Block):
    url: str = ""
    start_sec: int = 0
    caption: str = ""


class Diagram(Block):
    kind: str = ""  # svg | mermaid
    source: str = ""
    caption: str = ""


class Table(Block):
    caption: str = ""
    columns: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)


class Equation(Block):
    latex: str = ""
    display: bool = True
    caption: str = ""


class ItemList(Block):
    """objectives, prerequisites, key_takeaways, steps, checklist and friends."""

    title: str = ""
    items: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("items", "items_md", "steps_md"),
    )


class GlossaryTerm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    term: str = ""
    definition_md: str = ""


class Glossary(Block):
    title: str = ""
    terms: list[GlossaryTerm] = Field(default_factory=list)


class FaqEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    question_md: str = ""
    answer_md: str = ""


class Faq(Block):
    title: str = ""
    qas: list[FaqEntry] = Field(default_factory=list)


class Explainer(Block):
    """intuition, mental_model and why_it_matters blocks."""

    title: str = ""
    md: str = ""


class QuickCheckOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    text: str = ""


class QuickCheck(Block):
    kind: str = "mcq"  # mcq | short_answer | true_false
    prompt_md: str = ""
    options: list[QuickCheckOption] = Field(default_factory=list)
    answer_id: str = ""
    answer_md: str = ""


class Divider(Block):
    pass


# kind -> (array field on NodeDoc, block model)
BLOCK_KINDS: dict[str, tuple[str, type[Block]]] = {
    "heading": ("headings", Heading),
    "paragraph": ("paragraphs", Paragraph),
    "callout": ("callouts", Callout),
    "code": ("codes", CodeBlock),
    "figure": ("figures", Figure),
    "video": ("videos", Video),
    "diagram": ("diagrams", Diagram),
    "table": ("tables", Table),
    "equation": ("equations", Equation),
    "objectives": ("objectives", ItemList),
    "prerequisites": ("prerequisites", ItemList),
    "key_takeaways": ("key_takeaways", ItemList),
    "glossary": ("glossary", Glossary),
    "common_mistakes": ("common_mistakes", ItemList),
    "misconceptions": ("misconceptions", ItemList),
    "edge_cases": ("edge_cases", ItemList),
    "heuristics": ("heuristics", ItemList),
    "steps": ("steps", ItemList),
    "checklist": ("checklist", ItemList),
    "faq": ("faq", Faq),
    "intuition": ("intuition", Explainer),
    "mental_model": ("mental_model", Explainer),
    "why_it_matters": ("why_it_matters", Explainer),
    "connections": ("connections", ItemList),
    "quick_check": ("quick_checks", QuickCheck),
    "divider": ("dividers", Divider),
}

# Blocks that carry no evidence and therefore need no citations.
UNCITED_KINDS = frozenset({"heading", "divider", "video", "code"})

_KIND_ALIASES = {
    "headings": "heading",
    "paragraphs": "paragraph",
    "callouts": "callout",
    "codes": "code",
    "figures": "figure",
    "videos": "video",
    "diagrams": "diagram",
    "tables": "table",
    "equations": "equation",
    "quick_checks": "quick_check",
    "quickcheck": "quick_check",
    "dividers": "divider",
    "mental_models": "mental_model",
    "pitfalls": "common_mistakes",
}


def normalize_kind(kind: Any) -> str:
    k = str(kind or "").strip().lower().replace("-", "_").replace(" ", "_")
    return _KIND_ALIASES.get(k, k)


class OrderItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: str = ""
    id: str = ""

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, v: Any) -> str:
        return normalize_kind(v)


class NodeDoc(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    concept_keys: list[str] = Field(default_factory=list)
    summary: str = ""
    order: list[OrderItem] = Field(default_factory=list)

    headings: list[Heading] = Field(default_factory=list)
    paragraphs: list[Paragraph] = Field(default_factory=list)
    callouts: list[Callout] = Field(default_factory=list)
    codes: list[CodeBlock] = Field(default_factory=list)
    figures: list[Figure] = Field(default_factory=list)
    videos: list[Video] = Field(default_factory=list)
    diagrams: list[Diagram] = Field(default_factory=list)
    tables: list[Table] = Field(default_factory=list)
    equations: list[Equation] = Field(default_factory=list)
    objectives: list[ItemList] = Field(default_factory=list)
    prerequisites: list[ItemList] = Field(default_factory=list)
    key_takeaways: list[ItemList] = Field(default_factory=list)
    glossary: list[Glossary] = Field(default_factory=list)
    common_mistakes: list[ItemList] = Field(default_factory=list)
    misconceptions: list[ItemList] = Field(default_factory=list)
    edge_cases: list[ItemList] = Field(default_factory=list)
    heuristics: list[ItemList] = Field(default_factory=list)
    steps: list[ItemList] = Field(default_factory=list)
    checklist: list[ItemList] = Field(default_factory=list)
    faq: list[Faq] = Field(default_factory=list)
    intuition: list[Explainer] = Field(default_factory=list)
    mental_model: list[Explainer] = Field(default_factory=list)
    why_it_matters: list[Explainer] = Field(default_factory=list)
    connections: list[ItemList] = Field(default_factory=list)
    quick_checks: list[QuickCheck] = Field(default_factory=list)
    dividers: list[Divider] = Field(default_factory=list)

    # ─── Block access ───────────────────────────────────────────────────────────

    def blocks_of(self, kind: str) -> list[Block]:
        field_name, _ = BLOCK_KINDS[kind]
        return getattr(self, field_name)

    def find_block(self, kind: str, block_id: str) -> Block | None:
        if kind not in BLOCK_KINDS:
            return None
        for block in self.blocks_of(kind):
            if block.id == block_id:
                return block
        return None

    def ordered_blocks(self) -> list[tuple[str, Block]]:
        """Blocks in document order; unresolved references are skipped."""
        out: list[tuple[str, Block]] = []
        for item in self.order:
            block = self.find_block(item.kind, item.id)
            if block is not None:
                out.append((item.kind, block))
        return out

    def all_blocks(self) -> list[tuple[str, Block]]:
        out: list[tuple[str, Block]] = []
        for kind in BLOCK_KINDS:
            out.extend((kind, b) for b in self.blocks_of(kind))
        return out

    def remove_block(self, kind: str, block_id: str) -> None:
        field_name, _ = BLOCK_KINDS[kind]
        setattr(self, field_name, [b for b in getattr(self, field_name) if b.id != block_id])
        self.order = [o for o in self.order if not (o.kind == kind and o.id == block_id)]

    def insert_block(self, kind: str, block: Block, position: int | None = None) -> None:
        """Append block to its array and reference it in order at position (end if None)."""
        self.blocks_of(kind).append(block)
        item = OrderItem(kind=kind, id=block.id)
        if position is None or position >= len(self.order):
            self.order.append(item)
        else:
            self.order.insert(max(0, position), item)

    def cited_chunk_ids(self) -> set[str]:
        out: set[str] = set()
        for _, block in self.all_blocks():
            for c in block.citations:
                if c.chunk_id:
                    out.add(c.chunk_id)
        return out


def new_block_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ========================================
# Codec
# ========================================


def parse_node_doc(raw: dict[str, Any] | str) -> NodeDoc:
    """
    Parse generator output into a NodeDoc.

    Raises ValueError when the payload cannot be decoded at all.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"schema_unmarshal_failed: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("schema_unmarshal_failed: doc is not an object")
    if isinstance(raw.get("blocks"), list) and not raw.get("order"):
        raw = _from_block_list(raw)
    try:
        return NodeDoc.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"schema_unmarshal_failed: {e.error_count()} errors") from e


def _from_block_list(raw: dict[str, Any]) -> dict[str, Any]:
    """Convert a flat `blocks` list into the order + per-kind arrays shape."""
    out: dict[str, Any] = {k: v for k, v in raw.items() if k != "blocks"}
    order: list[dict[str, str]] = []
    for i, block in enumerate(raw.get("blocks") or []):
        if not isinstance(block, dict):
            continue
        type_key = "type" if block.get("type") else "kind"
        kind = normalize_kind(block.get(type_key))
        if kind not in BLOCK_KINDS:
            continue
        field_name, _ = BLOCK_KINDS[kind]
        body = {k: v for k, v in block.items() if k != type_key}
        body["id"] = str(body.get("id") or f"{kind}_{i + 1}")
        out.setdefault(field_name, []).append(body)
        order.append({"kind": kind, "id": body["id"]})
    out["order"] = order
    return out


def canonical_json(value: Any) -> str:
    """Stable-key-order compact JSON."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def doc_to_json(doc: NodeDoc) -> dict[str, Any]:
    return json.loads(canonical_json(doc.model_dump(mode="json")))


# ========================================
# Flattened text
# ========================================

_NUL_RE = re.compile(r"[\x00]")
_CTRL_RE = re.compile(r"[\x01-\x08\x0b\x0c\x0e-\x1f]")


def block_texts(kind: str, block: Block) -> list[str]:
    """Learner-visible text fragments of a block."""
    if isinstance(block, Heading):
        return [block.text]
    if isinstance(block, (Paragraph,)):
        return [block.md]
    if isinstance(block, (Callout, Explainer)):
        return [block.title, block.md]
    if isinstance(block, CodeBlock):
        return [block.code]
    if isinstance(block, (Figure, Video, Diagram, Equation)):
        return [block.caption]
    if isinstance(block, Table):
        return [block.caption, " | ".join(block.columns), *(" | ".join(r) for r in block.rows)]
    if isinstance(block, ItemList):
        return [block.title, *block.items]
    if isinstance(block, Glossary):
        return [block.title, *(f"{t.term}: {t.definition_md}" for t in block.terms)]
    if isinstance(block, Faq):
        return [block.title, *(f"{q.question_md} {q.answer_md}" for q in block.qas)]
    if isinstance(block, QuickCheck):
        return [block.prompt_md, *(o.text for o in block.options), block.answer_md]
    return []


def doc_text(doc: NodeDoc) -> str:
    parts: list[str] = []
    if doc.summary.strip():
        parts.append(doc.summary.strip())
    for kind, block in doc.ordered_blocks():
        for text in block_texts(kind, block):
            if text and text.strip():
                parts.append(text.strip())
    return "\n\n".join(parts)


def sanitize_for_postgres(text: str) -> str:
    """Drop NUL bytes and stray control chars Postgres text columns reject or mangle."""
    text = _NUL_RE.sub("", text)
    text = _CTRL_RE.sub(" ", text)
    return text.encode("utf-8", "replace").decode("utf-8")


def count_words(text: str) -> int:
    return len(re.findall(r"\b[\w'’-]+\b", text or ""))
