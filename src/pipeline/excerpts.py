"""Grounding excerpt blocks: `[chunk_id=<id>] <shortened text>` lines."""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import UUID

from .records import ChunkRecord

_WS_RE = re.compile(r"\s+")


def shorten_text(text: str, max_chars: int) -> str:
    """Collapse whitespace and cut to max_chars (0 = no cap), marking the cut."""
    s = _WS_RE.sub(" ", text or "").strip()
    if max_chars <= 0 or len(s) <= max_chars:
        return s
    return s[: max(0, max_chars - 3)].rstrip() + "..."


def excerpt_line(chunk: ChunkRecord, max_chars: int) -> str:
    return f"[chunk_id={chunk.id}] {shorten_text(chunk.text, max_chars)}"


@dataclass
class ExcerptPack:
    text: str = ""
    chunk_ids: list[UUID] = field(default_factory=list)

    @property
    def chunk_id_set(self) -> set[str]:
        return {str(c) for c in self.chunk_ids}


def build_excerpts(
    chunks: Iterable[ChunkRecord],
    max_chars: int,
    max_lines: int = 0,
    max_total_chars: int = 0,
) -> ExcerptPack:
    """Render chunks in the given order, bounded by line and total char caps (0 = no cap)."""
    lines: list[str] = []
    ids: list[UUID] = []
    total = 0
    for chunk in chunks:
        if not chunk.usable or not (chunk.text or "").strip():
            continue
        if max_lines > 0 and len(lines) >= max_lines:
            break
        line = excerpt_line(chunk, max_chars)
        if max_total_chars > 0 and total + len(line) + 1 > max_total_chars:
            break
        lines.append(line)
        ids.append(chunk.id)
        total += len(line) + 1
    return ExcerptPack(text="\n".join(lines), chunk_ids=ids)


def stratified_chunks(chunks: Iterable[ChunkRecord], per_file: int) -> list[ChunkRecord]:
    """
    Up to `per_file` usable chunks per file, picked at an even stride across
    the file's chunk order. Files keep first-seen order.
    """
    by_file: dict[UUID, list[ChunkRecord]] = defaultdict(list)
    file_order: list[UUID] = []
    for chunk in chunks:
        if not chunk.usable or not (chunk.text or "").strip():
            continue
        if chunk.file_id not in by_file:
            file_order.append(chunk.file_id)
        by_file[chunk.file_id].append(chunk)

    out: list[ChunkRecord] = []
    for file_id in file_order:
        items = sorted(by_file[file_id], key=lambda c: c.index)
        if per_file <= 0 or len(items) <= per_file:
            out.extend(items)
            continue
        stride = len(items) / per_file
        picked: list[int] = []
        for i in range(per_file):
            idx = min(len(items) - 1, int(i * stride))
            if not picked or picked[-1] != idx:
                picked.append(idx)
        out.extend(items[i] for i in picked)
    return out


def stratified_excerpts(
    chunks: Iterable[ChunkRecord],
    per_file: int,
    max_chars: int,
    max_lines: int = 0,
    max_total_chars: int = 0,
) -> ExcerptPack:
    return build_excerpts(stratified_chunks(chunks, per_file), max_chars, max_lines, max_total_chars)
