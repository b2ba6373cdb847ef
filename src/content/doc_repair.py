"""
Deterministic repair passes for generated lesson docs.

Every pass mutates the doc in place, is safe to re-run, and returns a short
list of labels describing what it changed (used for generation-run metrics).
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Sequence
from typing import Any

from .node_doc import (
    BLOCK_KINDS,
    Block,
    Callout,
    Citation,
    CitationLoc,
    Diagram,
    Equation,
    Explainer,
    Faq,
    Figure,
    Glossary,
    Heading,
    ItemList,
    NodeDoc,
    OrderItem,
    Paragraph,
    QuickCheck,
    Table,
    Video,
    canonical_json,
    new_block_id,
)
from .doc_requirements import NodeDocRequirements

_WS_RE = re.compile(r"[ \t]{2,}")
_MD_RE = re.compile(r"[*_`#>\[\]()~]")

# (label, pattern, replacement)
META_SCRUB_RULES: list[tuple[str, re.Pattern, str]] = [
    ("quick check-in", re.compile(r"(?i)quick check-in"), "quick check"),
    ("here's the plan", re.compile(r"(?i)here's the plan"), "overview"),
    ("here is the plan", re.compile(r"(?i)here is the plan"), "overview"),
    ("plan:", re.compile(r"(?i)\bplan:"), "overview:"),
    ("i can tailor this", re.compile(r"(?i)i can tailor this"), ""),
    ("before we dive in", re.compile(r"(?i)before we dive in"), ""),
    ("answer these", re.compile(r"(?i)\banswer these\b"), ""),
    ("pick one", re.compile(r"(?i)\bpick\s+one\b\s*:?\s*"), ""),
    ("if you want to go deeper", re.compile(r"(?i)if you want to go deeper"), ""),
    ("if you'd like to go deeper", re.compile(r"(?i)if you'd like to go deeper"), ""),
    ("let me know if you want", re.compile(r"(?i)let me know if you want"), ""),
    ("up next", re.compile(r"(?i)\bup next\b:?\s*"), ""),
    ("next up", re.compile(r"(?i)\bnext up\b:?\s*"), ""),
    ("wrap-up", re.compile(r"(?i)\bwrap[- ]up\b"), "summary"),
    ("bridge-in", re.compile(r"(?i)\bbridge[- ]in\b:?\s*"), ""),
    ("bridge-out", re.compile(r"(?i)\bbridge[- ]out\b:?\s*"), ""),
]

_META_BODY = (
    "before we dive in",
    "answer these",
    "so i can",
    "to tailor",
    "what are you using this for",
    "what's your current",
    "what is your current",
    "do you prefer",
    "any constraints",
    "while you think about that",
    "tell me",
)


def normalize_text(s: str) -> str:
    s = (s or "").replace("\r\n", "\n").replace("\r", "\n")
    s = _MD_RE.sub("", s)
    return re.sub(r"\s+", " ", s.strip().lower()).strip()


def scrub_meta_text(s: str) -> tuple[str, list[str]]:
    if not s or not s.strip():
        return s, []
    original = s
    hits: list[str] = []
    for label, pattern, replacement in META_SCRUB_RULES:
        if pattern.search(s):
            s = pattern.sub(replacement, s)
            hits.append(label)
    if s != original:
        s = _WS_RE.sub(" ", s).replace(" \n", "\n").replace("\n ", "\n").strip()
    return s, list(dict.fromkeys(hits))


# ========================================
# Text field traversal
# ========================================


def map_block_text(block: Block, fn: Callable[[str], str]) -> None:
    """Apply fn to every learner-visible text field of block."""
    if isinstance(block, Heading):
        block.text = fn(block.text)
    elif isinstance(block, Paragraph):
        block.md = fn(block.md)
    elif isinstance(block, (Callout, Explainer)):
        block.title = fn(block.title)
        block.md = fn(block.md)
    elif isinstance(block, (Figure, Video, Diagram, Equation)):
        block.caption = fn(block.caption)
    elif isinstance(block, Table):
        block.caption = fn(block.caption)
        block.rows = [[fn(cell) for cell in row] for row in block.rows]
    elif isinstance(block, ItemList):
        block.title = fn(block.title)
        block.items = [fn(i) for i in block.items]
    elif isinstance(block, Glossary):
        block.title = fn(block.title)
        for t in block.terms:
            t.definition_md = fn(t.definition_md)
    elif isinstance(block, Faq):
        block.title = fn(block.title)
        for qa in block.qas:
            qa.question_md = fn(qa.question_md)
            qa.answer_md = fn(qa.answer_md)
    elif isinstance(block, QuickCheck):
        block.prompt_md = fn(block.prompt_md)
        block.answer_md = fn(block.answer_md)
        for opt in block.options:
            opt.text = fn(opt.text)


def _joined_text(block: Block) -> tuple[str, str]:
    """(title-ish, body) text of a block for meta detection."""
    if isinstance(block, Heading):
        return block.text, ""
    if isinstance(block, Paragraph):
        return "", block.md
    if isinstance(block, (Callout, Explainer)):
        return block.title, block.md
    if isinstance(block, ItemList):
        return block.title, "\n".join(block.items)
    if isinstance(block, Glossary):
        return block.title, "\n".join(f"{t.term} {t.definition_md}" for t in block.terms)
    if isinstance(block, Faq):
        return block.title, "\n".join(f"{q.question_md} {q.answer_md}" for q in block.qas)
    return "", ""


# ========================================
# Order repair
# ========================================


def ensure_block_ids(doc: NodeDoc) -> list[str]:
    """Give every block a non-empty id unique within its kind."""
    fixes: list[str] = []
    for kind in BLOCK_KINDS:
        seen: set[str] = set()
        for block in doc.blocks_of(kind):
            if not block.id.strip() or block.id in seen:
                block.id = new_block_id(kind)
                fixes.append("block_id_regenerated")
            seen.add(block.id)
    return list(dict.fromkeys(fixes))


def repair_order(doc: NodeDoc) -> list[str]:
    """
    Make `order` and the per-kind arrays agree.

    Drops references to unknown kinds or missing blocks, drops duplicate
    references, renames duplicate block ids, and appends blocks that no entry
    references.
    """
    fixes: list[str] = []

    for kind in BLOCK_KINDS:
        seen: set[str] = set()
        for block in doc.blocks_of(kind):
            if not block.id.strip():
                block.id = new_block_id(kind)
                fixes.append("missing_block_id")
            elif block.id in seen:
                block.id = new_block_id(kind)
                fixes.append("duplicate_block_id")
            seen.add(block.id)

    kept: list[OrderItem] = []
    referenced: set[tuple[str, str]] = set()
    for item in doc.order:
        if item.kind not in BLOCK_KINDS:
            fixes.append("order_unknown_kind")
            continue
        if doc.find_block(item.kind, item.id) is None:
            fixes.append("order_missing_block")
            continue
        key = (item.kind, item.id)
        if key in referenced:
            fixes.append("order_duplicate_ref")
            continue
        referenced.add(key)
        kept.append(item)

    for kind in BLOCK_KINDS:
        for block in doc.blocks_of(kind):
            if (kind, block.id) not in referenced:
                kept.append(OrderItem(kind=kind, id=block.id))
                referenced.add((kind, block.id))
                fixes.append("order_unreferenced_block")

    doc.order = kept
    return list(dict.fromkeys(fixes))


# ========================================
# Meta pruning & scrubbing
# ========================================


def _is_meta_heading(s: str) -> bool:
    lowered = (s or "").strip().lower()
    if not lowered:
        return False
    if "entry check" in lowered or "format preference" in lowered or "check-in" in lowered:
        return True
    if "your goal" in lowered and "level" in lowered:
        return True
    return "goal, level" in lowered


def _is_meta_body(s: str) -> bool:
    lowered = (s or "").strip().lower()
    return bool(lowered) and any(m in lowered for m in _META_BODY)


def prune_meta_blocks(doc: NodeDoc) -> list[str]:
    """Remove blocks that talk to the learner about the lesson instead of teaching it."""
    removed: list[str] = []
    for kind, block in list(doc.ordered_blocks()):
        title, body = _joined_text(block)
        if kind == "heading":
            meta = _is_meta_heading(title)
        elif kind == "paragraph":
            meta = _is_meta_body(body)
        elif kind in ("callout", "intuition", "mental_model", "why_it_matters") or isinstance(
            block, (ItemList, Glossary, Faq)
        ):
            meta = _is_meta_heading(title) or _is_meta_body(body)
        else:
            meta = False
        if meta:
            doc.remove_block(kind, block.id)
            removed.append(f"meta_{kind}")
    return list(dict.fromkeys(removed))


def scrub_doc(doc: NodeDoc) -> list[str]:
    hits: list[str] = []

    def _scrub(s: str) -> str:
        out, h = scrub_meta_text(s)
        hits.extend(h)
        return out

    doc.summary = _scrub(doc.summary)
    for _, block in doc.all_blocks():
        map_block_text(block, _scrub)
    return list(dict.fromkeys(hits))


# ========================================
# Dedupe
# ========================================


def _content_key(kind: str, block: Block) -> str:
    body = block.model_dump(mode="json", exclude={"id", "citations"})
    if kind in ("paragraph",):
        return f"{kind}:{normalize_text(body.get('md', ''))}"
    if kind in ("callout",):
        return f"{kind}:{normalize_text(body.get('title', '') + chr(10) + body.get('md', ''))}"
    return f"{kind}:{canonical_json(body)}"


def dedupe_doc(doc: NodeDoc) -> list[str]:
    """Remove empty and repeated blocks while keeping the first occurrence."""
    removed: list[str] = []
    summary_norm = normalize_text(doc.summary)
    blocks = doc.ordered_blocks()
    seen: set[str] = set()
    last_heading = ""
    last_divider = False
    skip_next = False

    for i, (kind, block) in enumerate(blocks):
        if skip_next:
            skip_next = False
            doc.remove_block(kind, block.id)
            continue
        drop = ""
        if isinstance(block, Heading):
            text = block.text.strip()
            if not text:
                drop = "empty_heading"
            elif summary_norm and text.lower() == "summary" and i + 1 < len(blocks):
                nkind, nblock = blocks[i + 1]
                if isinstance(nblock, (Paragraph, Callout)) and normalize_text(nblock.md) == summary_norm:
                    drop = "summary_section_dup"
                    skip_next = True
            if not drop:
                key = f"heading:{block.level}:{normalize_text(text)}"
                if key == last_heading:
                    drop = "duplicate_heading"
                else:
                    last_heading = key
                    last_divider = False
        elif kind == "divider":
            if last_divider:
                drop = "duplicate_divider"
            else:
                last_divider = True
                last_heading = ""
        else:
            if isinstance(block, Paragraph):
                norm = normalize_text(block.md)
                if not norm:
                    drop = "empty_paragraph"
                elif summary_norm and norm == summary_norm:
                    drop = "summary_dup_paragraph"
            if not drop:
                key = _content_key(kind, block)
                if key in seen:
                    drop = f"duplicate_{kind}"
                else:
                    seen.add(key)
                    last_divider = False
        if drop:
            doc.remove_block(kind, block.id)
            removed.append(drop)
    return list(dict.fromkeys(removed))


# ========================================
# Block type caps
# ========================================


def remove_block_type(doc: NodeDoc, kind: str) -> int:
    blocks = list(doc.blocks_of(kind))
    for block in blocks:
        doc.remove_block(kind, block.id)
    return len(blocks)


def cap_block_type(doc: NodeDoc, kind: str, limit: int) -> int:
    """Keep the first `limit` blocks of kind in document order; negative means no cap."""
    if limit < 0:
        return 0
    ordered = [b for k, b in doc.ordered_blocks() if k == kind]
    ordered_ids = {b.id for b in ordered}
    extra = [b for b in doc.blocks_of(kind) if b.id not in ordered_ids]
    removed = 0
    for block in ordered[limit:] + extra:
        doc.remove_block(kind, block.id)
        removed += 1
    return removed


# ========================================
# Media
# ========================================


class MediaUsage:
    """
    Asset URLs already used by a doc on this path; shared across lesson workers.

    URLs from stored docs have no owner and can never be claimed again. A
    worker claims under its node id, may re-claim its own URLs on a retry and
    releases them when an attempt fails.
    """

    def __init__(self, used: Sequence[str] = ()):
        self._lock = threading.Lock()
        self._used: dict[str, object] = {u: None for u in used if u}

    def claim(self, url: str, owner: object = None) -> bool:
        """Reserve url for owner; False when a stored doc or another owner holds it."""
        if not url:
            return True
        with self._lock:
            if url not in self._used:
                self._used[url] = owner
                return True
            return owner is not None and self._used[url] == owner

    def release(self, owner: object) -> int:
        """Free every URL held by owner."""
        if owner is None:
            return 0
        with self._lock:
            held = [u for u, o in self._used.items() if o == owner]
            for url in held:
                del self._used[url]
            return len(held)

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._used


def dedupe_media(doc: NodeDoc, usage: MediaUsage, owner: object = None) -> list[str]:
    """Drop figures and videos whose URL appears earlier in the doc or in another doc on the path."""
    removed: list[str] = []
    seen: set[str] = set()
    for fig in list(doc.figures):
        if (fig.url and fig.url in seen) or not usage.claim(fig.url, owner):
            doc.remove_block("figure", fig.id)
            removed.append(fig.url)
        elif fig.url:
            seen.add(fig.url)
    for vid in list(doc.videos):
        if (vid.url and vid.url in seen) or not usage.claim(vid.url, owner):
            doc.remove_block("video", vid.id)
            removed.append(vid.url)
        elif vid.url:
            seen.add(vid.url)
    return removed


def _first_body_index(doc: NodeDoc) -> int:
    for i, item in enumerate(doc.order):
        if item.kind != "heading":
            return i + 1
    return len(doc.order)


def inject_figure(doc: NodeDoc, asset: dict[str, Any], chunk_id: str | None, quote: str = "") -> bool:
    """Insert one figure block for asset unless its URL is already present."""
    url = str(asset.get("url") or "").strip()
    if not url or any(f.url == url for f in doc.figures):
        return False
    citations = [Citation(chunk_id=chunk_id, quote=quote[:240])] if chunk_id else []
    figure = Figure(
        id=new_block_id("figure"),
        asset={k: v for k, v in asset.items() if k in ("url", "kind", "alt", "width", "height", "asset_id")},
        caption=str(asset.get("caption") or "Figure from your materials"),
        citations=citations,
    )
    doc.insert_block("figure", figure, _first_body_index(doc))
    return True


# ========================================
# Minimum padding
# ========================================


def pad_minimums(
    doc: NodeDoc,
    req: NodeDocRequirements,
    evidence: Sequence[tuple[str, str]],
    max_deficit: int = 2,
) -> list[str]:
    """
    Close near-miss block minimums with fillers quoted from evidence chunks.

    evidence is a list of (chunk_id, text). Only deficits of at most
    max_deficit are padded; larger gaps stay as validation errors.
    """
    if not evidence:
        return []
    padded: list[str] = []
    cursor = [0]

    def _next_evidence() -> tuple[str, str]:
        cid, text = evidence[cursor[0] % len(evidence)]
        cursor[0] += 1
        return cid, _shorten(text, 480)

    def _cite(cid: str, text: str) -> list[Citation]:
        return [Citation(chunk_id=cid, quote=_shorten(text, 240), loc=CitationLoc())]

    def _count(kind: str) -> int:
        return sum(1 for k, _ in doc.ordered_blocks() if k == kind)

    deficit = req.min_paragraphs - _count("paragraph")
    if 0 < deficit <= max_deficit:
        for _ in range(deficit):
            cid, text = _next_evidence()
            doc.insert_block(
                "paragraph",
                Paragraph(id=new_block_id("paragraph"), md=f"From your materials: {text}", citations=_cite(cid, text)),
            )
            padded.append("paragraph")

    deficit = req.min_callouts - _count("callout")
    if 0 < deficit <= max_deficit:
        for _ in range(deficit):
            cid, text = _next_evidence()
            doc.insert_block(
                "callout",
                Callout(
                    id=new_block_id("callout"),
                    variant="info",
                    title="Key point",
                    md=text,
                    citations=_cite(cid, text),
                ),
            )
            padded.append("callout")

    explainers = [
        ("why_it_matters", req.min_why_it_matters, "Why it matters"),
        ("intuition", req.min_intuition, "Intuition"),
        ("mental_model", req.min_mental_models, "Mental model"),
    ]
    for kind, minimum, title in explainers:
        deficit = minimum - _count(kind)
        if 0 < deficit <= max_deficit:
            for _ in range(deficit):
                cid, text = _next_evidence()
                doc.insert_block(
                    kind,
                    Explainer(id=new_block_id(kind), title=title, md=text, citations=_cite(cid, text)),
                )
                padded.append(kind)

    pitfalls = _count("common_mistakes") + _count("misconceptions")
    deficit = req.min_pitfalls - pitfalls
    if 0 < deficit <= max_deficit:
        cid, text = _next_evidence()
        doc.insert_block(
            "common_mistakes",
            ItemList(
                id=new_block_id("common_mistakes"),
                title="Common mistakes",
                items=[f"Overlooking this detail from your materials: {text}"],
                citations=_cite(cid, text),
            ),
        )
        padded.append("common_mistakes")

    return padded


def _shorten(text: str, limit: int) -> str:
    text = re.sub(r"\s+", " ", (text or "").strip())
    if len(text.encode("utf-8")) <= limit:
        return text
    return text.encode("utf-8")[:limit].decode("utf-8", "ignore").rstrip()


__all__ = [
    "MediaUsage",
    "cap_block_type",
    "dedupe_doc",
    "dedupe_media",
    "ensure_block_ids",
    "inject_figure",
    "map_block_text",
    "normalize_text",
    "pad_minimums",
    "prune_meta_blocks",
    "remove_block_type",
    "repair_order",
    "scrub_doc",
    "scrub_meta_text",
]
