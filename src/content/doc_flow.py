"""
Reading-flow passes: teach-before-test ordering of quick checks and explicit
threading references to neighbouring lessons.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from .doc_citations import truncate_utf8
from .node_doc import Citation, CitationLoc, NodeDoc, OrderItem, Paragraph

NON_TEACHING_KINDS = frozenset(
    {
        "",
        "quick_check",
        "flashcard",
        "heading",
        "divider",
        "video",
        "code",
        "objectives",
        "prerequisites",
        "key_takeaways",
    }
)
TAIL_KINDS = frozenset(
    {
        "key_takeaways",
        "glossary",
        "faq",
        "checklist",
        "common_mistakes",
        "misconceptions",
        "edge_cases",
        "heuristics",
        "connections",
        "divider",
    }
)


@dataclass
class QuickCheckOrderStats:
    quick_checks_seen: int = 0
    quick_checks_reordered: int = 0
    context_paragraphs_inserted: int = 0
    pending_quick_checks_resolved: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _chunk_ids(block: Any) -> list[str]:
    return list(dict.fromkeys(c.chunk_id.strip() for c in block.citations if c.chunk_id.strip()))


def ensure_quick_checks_after_teaching(doc: NodeDoc, chunks: Mapping[str, Any]) -> QuickCheckOrderStats:
    """
    Move each quick check after the first teaching block that cites its chunks.

    Quick checks whose chunks are never taught get a short context paragraph
    quoting the relevant excerpts placed right before them.
    """
    stats = QuickCheckOrderStats()
    taught: set[str] = set()
    pending: list[OrderItem] = []
    out: list[OrderItem] = []
    changed = False

    def _all_taught(ids: list[str]) -> bool:
        return all(i in taught for i in ids)

    def _flush() -> None:
        nonlocal pending
        kept: list[OrderItem] = []
        for item in pending:
            qc = doc.find_block(item.kind, item.id)
            if qc is not None and _all_taught(_chunk_ids(qc)):
                out.append(item)
                stats.pending_quick_checks_resolved += 1
            else:
                kept.append(item)
        pending = kept

    for item in doc.order:
        block = doc.find_block(item.kind, item.id)
        if block is None:
            out.append(item)
            continue
        if item.kind == "quick_check":
            stats.quick_checks_seen += 1
            if not _all_taught(_chunk_ids(block)):
                pending.append(item)
                stats.quick_checks_reordered += 1
                changed = True
                continue
            out.append(item)
            continue
        out.append(item)
        if item.kind not in NON_TEACHING_KINDS:
            taught.update(_chunk_ids(block))
            _flush()

    for item in pending:
        qc = doc.find_block(item.kind, item.id)
        missing = [i for i in _chunk_ids(qc) if i not in taught] if qc is not None else []
        if missing:
            paragraph = _context_paragraph(missing, chunks)
            doc.paragraphs.append(paragraph)
            out.append(OrderItem(kind="paragraph", id=paragraph.id))
            stats.context_paragraphs_inserted += 1
            taught.update(missing)
        out.append(item)

    if changed:
        doc.order = out
    return stats


def _context_paragraph(missing: list[str], chunks: Mapping[str, Any]) -> Paragraph:
    citations: list[Citation] = []
    quotes: list[str] = []
    for cid in missing:
        chunk = chunks.get(cid)
        text = (getattr(chunk, "text", "") or "").strip() if chunk is not None else ""
        page = (getattr(chunk, "page", None) or 0) if chunk is not None else 0
        citations.append(Citation(chunk_id=cid, quote=truncate_utf8(text, 220), loc=CitationLoc(page=page)))
        if text:
            quotes.append(truncate_utf8(" ".join(text.split()), 240))
    md = "Relevant excerpt (from your materials):"
    if quotes:
        md += "".join(f"\n\n> {q}" for q in quotes)
    else:
        md += "\n\n_(Relevant passage is cited below.)_"
    return Paragraph(id=f"qc_context_{uuid.uuid4().hex[:12]}", md=md, citations=citations)


# ========================================
# Threading
# ========================================


def _contains(haystack: str, needle: str) -> bool:
    h, n = (haystack or "").strip().lower(), (needle or "").strip().lower()
    return bool(h) and bool(n) and n in h


def _doc_blob(doc: NodeDoc) -> str:
    return json.dumps(doc.model_dump(mode="json"), ensure_ascii=False)


def ensure_threading_references(
    doc: NodeDoc,
    prev_title: str,
    next_title: str,
    module_title: str,
    citation_chunk_id: str | None = None,
) -> bool:
    """Insert a short paragraph naming neighbouring lessons and the module when the text omits them."""
    if not (prev_title.strip() or next_title.strip() or module_title.strip()):
        return False
    blob = _doc_blob(doc)
    sentences: list[str] = []
    if prev_title.strip() and not _contains(blob, prev_title):
        sentences.append(f'Earlier in "{prev_title.strip()}", we set the foundation this lesson builds on.')
    if module_title.strip() and not _contains(blob, module_title):
        sentences.append(
            f'This fits within the "{module_title.strip()}" module, connecting today\'s ideas to the broader path.'
        )
    if next_title.strip() and not _contains(blob, next_title):
        sentences.append(f'"{next_title.strip()}" carries these ideas forward into new applications.')
    if not sentences:
        return False
    citations = [Citation(chunk_id=citation_chunk_id)] if citation_chunk_id else []
    block = Paragraph(id=f"thread_{uuid.uuid4()}", md=" ".join(sentences), citations=citations)

    position = len(doc.order)
    for i, item in enumerate(doc.order):
        if item.kind in TAIL_KINDS:
            position = i
            break
    doc.insert_block("paragraph", block, position)
    return True


def validate_threading(text: str, prev_title: str, next_title: str, module_title: str) -> tuple[list[str], dict]:
    errs: list[str] = []
    metrics: dict[str, bool] = {}
    if not (text or "").strip():
        return errs, metrics
    if prev_title.strip():
        ok = _contains(text, prev_title)
        metrics["prev_title_present"] = ok
        if not ok:
            errs.append("missing explicit reference to previous lesson title")
    if next_title.strip():
        ok = _contains(text, next_title)
        metrics["next_title_present"] = ok
        if not ok:
            errs.append("missing explicit reference to next lesson title")
    if module_title.strip():
        ok = _contains(text, module_title)
        metrics["module_title_present"] = ok
        if not ok:
            errs.append("missing explicit reference to module title")
    return errs, metrics
