"""
Node doc validation.

`validate_node_doc` returns a list of human-readable errors (fed back to the
generator on retry) plus a metrics map. An empty error list means the doc is
publishable.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any

from .doc_requirements import NodeDocRequirements
from .node_doc import (
    BLOCK_KINDS,
    UNCITED_KINDS,
    Callout,
    Citation,
    Diagram,
    Equation,
    Explainer,
    Faq,
    Figure,
    Glossary,
    Heading,
    ItemList,
    NodeDoc,
    Paragraph,
    QuickCheck,
    Table,
    Video,
    CodeBlock,
    count_words,
    doc_text,
)

BANNED_PHRASES = (
    "quick check-in",
    "entry check",
    "before we dive in",
    "answer these",
    "here's the plan",
    "here is the plan",
    "plan:",
    "up next",
    "next up",
    "next lesson",
    "next module",
    "in the next lesson",
    "you've seen the plan",
    "youve seen the plan",
    "let's anchor",
    "lets anchor",
    "no magic",
    "no sorcery",
    "your next hop",
    "bridge-in",
    "bridge in",
    "bridge-out",
    "bridge out",
    "recommended drills",
    "reveal answer",
    "wrap-up",
    "wrap up",
    "i can tailor this",
    "pick one",
    "what are you using this for",
    "what's your current",
    "what is your current",
    "do you prefer",
    "any constraints",
    "while you think about that",
    "if you want to go deeper",
    "if you'd like to go deeper",
    "let me know if you want",
)

CALLOUT_VARIANTS = frozenset({"info", "tip", "warning"})
_KEY_RE = re.compile(r"^[a-z0-9_]{1,64}$")


def find_banned_phrases(text: str) -> list[str]:
    if not text or not text.strip():
        return []
    lowered = text.lower()
    return sorted({p for p in BANNED_PHRASES if p in lowered})


def has_worked_example(doc: NodeDoc) -> bool:
    for heading in doc.headings:
        if "example" in heading.text.strip().lower():
            return True
    for callout in doc.callouts:
        title = callout.title.strip().lower()
        if callout.variant.strip().lower() == "tip" and title.startswith("worked example"):
            return True
    return False


def block_counts(doc: NodeDoc) -> Counter:
    """Counts of blocks reachable from `order`."""
    return Counter(kind for kind, _ in doc.ordered_blocks())


def node_doc_metrics(doc: NodeDoc) -> dict[str, Any]:
    text = doc_text(doc)
    counts = block_counts(doc)
    cited = doc.cited_chunk_ids()
    return {
        "word_count": count_words(text),
        "block_counts": dict(counts),
        "block_total": sum(counts.values()),
        "citations_unique_chunks": len(cited),
        "doc_text": text,
    }


def validate_order(doc: NodeDoc) -> list[str]:
    """Every order entry resolves to exactly one block and every block is referenced once."""
    errs: list[str] = []
    seen: set[tuple[str, str]] = set()
    for i, item in enumerate(doc.order):
        if item.kind not in BLOCK_KINDS:
            errs.append(f"order[{i}] unknown kind {item.kind!r}")
            continue
        if not item.id:
            errs.append(f"order[{i}] id missing")
            continue
        key = (item.kind, item.id)
        if key in seen:
            errs.append(f"order[{i}] duplicate reference {item.kind}:{item.id}")
            continue
        seen.add(key)
        matches = [b for b in doc.blocks_of(item.kind) if b.id == item.id]
        if not matches:
            errs.append(f"order[{i}] references missing {item.kind}:{item.id}")
        elif len(matches) > 1:
            errs.append(f"order[{i}] id {item.id!r} is not unique in {item.kind}")
    for kind in BLOCK_KINDS:
        for block in doc.blocks_of(kind):
            if (kind, block.id) not in seen:
                errs.append(f"{kind}:{block.id or '<no id>'} not referenced by order")
    return errs


def validate_citations(label: str, citations: list[Citation], allowed: set[str]) -> list[str]:
    if not citations:
        return [f"{label} citations missing"]
    errs: list[str] = []
    for j, c in enumerate(citations):
        if not c.chunk_id.strip():
            errs.append(f"{label} citations[{j}].chunk_id missing")
        elif c.chunk_id not in allowed:
            errs.append(f"{label} citations[{j}].chunk_id not allowed ({c.chunk_id})")
    return errs


def _validate_block(kind: str, label: str, block: Any) -> list[str]:
    errs: list[str] = []
    if isinstance(block, Heading):
        if block.level < 2 or block.level > 4:
            errs.append(f"{label} heading.level must be 2-4 (got {block.level})")
        if not block.text.strip():
            errs.append(f"{label} heading.text missing")
    elif isinstance(block, Paragraph):
        if not block.md.strip():
            errs.append(f"{label} paragraph.md missing")
    elif isinstance(block, Callout):
        variant = block.variant.strip().lower()
        if variant not in CALLOUT_VARIANTS:
            errs.append(f"{label} callout.variant invalid ({variant!r})")
        if not block.md.strip():
            errs.append(f"{label} callout.md missing")
    elif isinstance(block, CodeBlock):
        if not block.code.strip():
            errs.append(f"{label} code.code missing")
    elif isinstance(block, Figure):
        if not block.url.strip():
            errs.append(f"{label} figure.asset.url missing")
    elif isinstance(block, Video):
        if not block.url.strip():
            errs.append(f"{label} video.url missing")
    elif isinstance(block, Diagram):
        dk = block.kind.strip().lower()
        if dk not in ("svg", "mermaid"):
            errs.append(f"{label} diagram.kind invalid ({dk!r})")
        if not block.source.strip():
            errs.append(f"{label} diagram.source missing")
    elif isinstance(block, Table):
        if not block.columns:
            errs.append(f"{label} table.columns missing")
        if not block.rows:
            errs.append(f"{label} table.rows missing")
    elif isinstance(block, Equation):
        if not block.latex.strip():
            errs.append(f"{label} equation.latex missing")
    elif isinstance(block, QuickCheck):
        errs.extend(_validate_quick_check(label, block))
    elif isinstance(block, ItemList):
        if not [i for i in block.items if i.strip()]:
            errs.append(f"{label} {kind}.items missing")
    elif isinstance(block, Glossary):
        if not block.terms:
            errs.append(f"{label} glossary.terms missing")
        for j, t in enumerate(block.terms):
            if not t.term.strip():
                errs.append(f"{label} glossary.terms[{j}].term missing")
            if not t.definition_md.strip():
                errs.append(f"{label} glossary.terms[{j}].definition_md missing")
    elif isinstance(block, Faq):
        if not block.qas:
            errs.append(f"{label} faq.qas missing")
        for j, qa in enumerate(block.qas):
            if not qa.question_md.strip():
                errs.append(f"{label} faq.qas[{j}].question_md missing")
            if not qa.answer_md.strip():
                errs.append(f"{label} faq.qas[{j}].answer_md missing")
    elif isinstance(block, Explainer):
        if not block.md.strip():
            errs.append(f"{label} {kind}.md missing")
    return errs


def _validate_quick_check(label: str, qc: QuickCheck) -> list[str]:
    errs: list[str] = []
    if not qc.prompt_md.strip():
        errs.append(f"{label} quick_check.prompt_md missing")
    if not qc.answer_md.strip():
        errs.append(f"{label} quick_check.answer_md missing")
    kind = qc.kind.strip().lower()
    is_choice = kind in ("mcq", "true_false") or bool(qc.options) or bool(qc.answer_id.strip())
    if not is_choice:
        return errs
    if len(qc.options) < 2:
        errs.append(f"{label} quick_check.options needs >=2 options for {kind or 'choice'}")
    option_ids: set[str] = set()
    for j, opt in enumerate(qc.options):
        oid = opt.id.strip()
        if not oid:
            errs.append(f"{label} quick_check.options[{j}].id missing")
        elif oid in option_ids:
            errs.append(f"{label} quick_check.options[{j}].id duplicate {oid!r}")
        if not opt.text.strip():
            errs.append(f"{label} quick_check.options[{j}].text missing")
        if oid:
            option_ids.add(oid)
    answer = qc.answer_id.strip()
    if not answer:
        errs.append(f"{label} quick_check.answer_id missing")
    elif option_ids and answer not in option_ids:
        errs.append(f"{label} quick_check.answer_id {answer!r} not in options")
    return errs


def validate_node_doc(
    doc: NodeDoc,
    allowed_chunk_ids: set[str],
    req: NodeDocRequirements,
) -> tuple[list[str], dict[str, Any]]:
    """Validate a doc against structure, citation and minimum-count rules."""
    errs: list[str] = []

    if doc.schema_version != 1:
        errs.append(f"schema_version must be 1 (got {doc.schema_version})")
    keys = [k for k in doc.concept_keys if _KEY_RE.match(k)]
    if not keys:
        errs.append("concept_keys missing")
    if not doc.order:
        errs.append("blocks missing")

    errs.extend(validate_order(doc))

    metrics = node_doc_metrics(doc)
    counts: dict[str, int] = metrics["block_counts"]
    words = metrics["word_count"]
    if req.min_word_count > 0 and words < req.min_word_count:
        errs.append(f"word_count too low ({words} < {req.min_word_count})")

    floors = [
        ("heading", "headings", req.min_headings),
        ("paragraph", "paragraph blocks", req.min_paragraphs),
        ("callout", "callout blocks", req.min_callouts),
        ("quick_check", "quick_check blocks", req.min_quick_checks),
        ("diagram", "diagram blocks", req.min_diagrams),
        ("table", "table blocks", req.min_tables),
        ("why_it_matters", "why_it_matters blocks", req.min_why_it_matters),
        ("intuition", "intuition blocks", req.min_intuition),
        ("mental_model", "mental_model blocks", req.min_mental_models),
        ("steps", "steps blocks", req.min_steps),
        ("checklist", "checklist blocks", req.min_checklist),
        ("connections", "connections blocks", req.min_connections),
    ]
    for kind, label, minimum in floors:
        got = counts.get(kind, 0)
        if minimum > 0 and got < minimum:
            errs.append(f"need >={minimum} {label} (got {got})")
    pitfalls = counts.get("misconceptions", 0) + counts.get("common_mistakes", 0)
    if req.min_pitfalls > 0 and pitfalls < req.min_pitfalls:
        errs.append(f"need >={req.min_pitfalls} misconceptions|common_mistakes blocks (got {pitfalls})")
    has_media = counts.get("figure", 0) + counts.get("diagram", 0) + counts.get("table", 0) > 0
    if req.require_media and not has_media:
        errs.append("need at least one figure|diagram|table block")
    if req.require_example and not has_worked_example(doc):
        errs.append("missing worked example (heading containing 'example' or a tip callout titled 'Worked example')")

    banned = find_banned_phrases(metrics["doc_text"])
    if banned:
        # Count only; echoing the phrase back in retry feedback teaches it to the model.
        metrics["banned_phrases"] = banned
        errs.append(f"contains banned meta phrasing ({len(banned)} hits)")

    for i, (kind, block) in enumerate(doc.ordered_blocks()):
        label = f"block[{i}] {kind}:{block.id}"
        errs.extend(_validate_block(kind, label, block))
        if kind not in UNCITED_KINDS:
            errs.extend(validate_citations(label, block.citations, allowed_chunk_ids))

    return _dedupe(errs), metrics


def outline_heading_errors(doc: NodeDoc, outline_headings: list[str]) -> list[str]:
    """Heading blocks must equal the outline headings, in order and verbatim."""
    if not outline_headings:
        return []
    got = [b.text for kind, b in doc.ordered_blocks() if kind == "heading"]
    want = list(outline_headings)
    if got == want:
        return []
    errs: list[str] = []
    if len(got) != len(want):
        errs.append(f"heading count {len(got)} does not match outline section count {len(want)}")
    for i, expected in enumerate(want):
        actual = got[i] if i < len(got) else None
        if actual != expected:
            errs.append(f"heading[{i}] must be exactly {expected!r} (got {actual!r})")
    return errs


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))
