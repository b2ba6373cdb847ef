"""
Citation sanitation and must-cite coverage for lesson docs.

Chunk lookups are keyed by the chunk id string; values only need `.text` and
`.page` attributes (material chunk records satisfy this).
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from typing import Any

from .node_doc import UNCITED_KINDS, Citation, CitationLoc, NodeDoc

QUOTE_MAX_BYTES = 240
MUST_CITE_QUOTE_MAX_BYTES = 220
_MUST_CITE_TARGET_KINDS = ("paragraph", "callout", "figure", "diagram", "table")


@dataclass
class CitationSanitizeStats:
    blocks_touched: int = 0
    citations_kept: int = 0
    citations_dropped: int = 0
    blocks_backfilled: int = 0
    chunk_ids_normalized: int = 0
    quotes_truncated: int = 0
    loc_repaired: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def truncate_utf8(text: str, max_bytes: int) -> str:
    raw = (text or "").encode("utf-8")
    if len(raw) <= max_bytes:
        return text or ""
    return raw[:max_bytes].decode("utf-8", "ignore")


def normalize_chunk_id(value: str) -> str | None:
    value = (value or "").strip()
    if not value:
        return None
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        return None
    if parsed.int == 0:
        return None
    return str(parsed)


def sanitize_citations(
    doc: NodeDoc,
    allowed_chunk_ids: set[str],
    chunks: Mapping[str, Any],
    fallback_chunk_ids: Sequence[str] = (),
) -> CitationSanitizeStats:
    """
    Keep only well-formed citations to allowed chunks, one per chunk per block.

    A block left without citations is backfilled from the first allowed
    fallback chunk. With an empty allowed set nothing survives and nothing is
    backfilled, so validation fails instead of inventing evidence.
    """
    stats = CitationSanitizeStats()
    fallback = next((c for c in fallback_chunk_ids if c in allowed_chunk_ids), None)
    if fallback is None and allowed_chunk_ids:
        fallback = sorted(allowed_chunk_ids)[0]

    for kind, block in doc.all_blocks():
        if kind in UNCITED_KINDS:
            continue
        stats.blocks_touched += 1
        kept: list[Citation] = []
        seen: set[str] = set()
        for c in block.citations:
            cid = normalize_chunk_id(c.chunk_id)
            if cid is None:
                stats.citations_dropped += 1
                continue
            if cid != c.chunk_id.strip():
                stats.chunk_ids_normalized += 1
            if cid not in allowed_chunk_ids or cid in seen:
                stats.citations_dropped += 1
                continue
            seen.add(cid)
            quote = c.quote.strip()
            if len(quote.encode("utf-8")) > QUOTE_MAX_BYTES:
                quote = truncate_utf8(quote, QUOTE_MAX_BYTES)
                stats.quotes_truncated += 1
            loc = c.loc
            page, start, end = loc.page, loc.start, loc.end
            if page < 0 or start < 0 or end < 0:
                page, start, end = max(0, page), max(0, start), max(0, end)
                stats.loc_repaired += 1
            if start > 0 and end > 0 and end < start:
                start, end = 0, 0
                stats.loc_repaired += 1
            kept.append(Citation(chunk_id=cid, quote=quote, loc=CitationLoc(page=page, start=start, end=end)))
        if not kept and fallback is not None:
            kept.append(_citation_for(fallback, chunks, QUOTE_MAX_BYTES))
            stats.blocks_backfilled += 1
        stats.citations_kept += len(kept)
        block.citations = kept
    return stats


def _citation_for(chunk_id: str, chunks: Mapping[str, Any], max_bytes: int) -> Citation:
    chunk = chunks.get(chunk_id)
    quote = truncate_utf8((getattr(chunk, "text", "") or "").strip(), max_bytes) if chunk else ""
    page = (getattr(chunk, "page", None) or 0) if chunk else 0
    return Citation(chunk_id=chunk_id, quote=quote, loc=CitationLoc(page=page))


def missing_must_cite_ids(doc: NodeDoc, must_cite_ids: Sequence[str]) -> list[str]:
    cited = doc.cited_chunk_ids()
    return [c for c in must_cite_ids if c and c not in cited]


def inject_missing_must_cite(doc: NodeDoc, missing: Sequence[str], chunks: Mapping[str, Any]) -> bool:
    """Attach missing must-cite chunks to the first paragraph, callout, figure, diagram or table."""
    if not missing:
        return False
    target = None
    for kind, block in doc.ordered_blocks():
        if kind in _MUST_CITE_TARGET_KINDS:
            target = block
            break
    if target is None:
        return False
    have = {c.chunk_id for c in target.citations}
    for cid in missing:
        if cid not in have:
            target.citations.append(_citation_for(cid, chunks, MUST_CITE_QUOTE_MAX_BYTES))
            have.add(cid)
    return True
