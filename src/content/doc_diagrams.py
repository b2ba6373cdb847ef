"""
Diagram sanitation and the minimal concept-flow SVG used when a lesson needs a
diagram the generator did not supply.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Sequence

from .node_doc import Citation, CitationLoc, Diagram, NodeDoc

SVG_WIDTH = 900
SVG_HEIGHT = 240
SVG_MARGIN = 24
SVG_GAP = 22
SVG_BOX_HEIGHT = 86
AUTO_DIAGRAM_CAPTION = "Concept relationship overview"

_SVG_SCRIPT_RE = re.compile(r"(?is)<script[\s\S]*?>[\s\S]*?</script>")
_SVG_ON_ATTR_RE = re.compile(r"""(?i)\son[a-z]+\s*=\s*('[^']*'|"[^"]*")""")
_MERMAID_PREFIXES = (
    "flowchart",
    "graph",
    "sequencediagram",
    "classdiagram",
    "statediagram",
    "erdiagram",
    "journey",
    "gantt",
    "pie",
    "mindmap",
    "timeline",
    "quadrantchart",
)


def escape_xml(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def shorten(s: str, limit: int) -> str:
    s = " ".join((s or "").split())
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)].rstrip() + "…"


def strip_code_fences(src: str) -> str:
    s = (src or "").strip()
    if not s.startswith("```"):
        return s
    lines = s.split("\n")
    if len(lines) < 2:
        return s
    body = lines[1:-1] if lines[-1].strip() == "```" else lines[1:]
    return "\n".join(body).strip()


def extract_and_sanitize_svg(raw: str) -> str:
    """Cut the standalone <svg>…</svg> element and strip scripts and on* handlers."""
    s = (raw or "").strip()
    if not s:
        return ""
    low = s.lower()
    start = low.find("<svg")
    end = low.rfind("</svg>")
    if start >= 0 and end > start:
        s = s[start : end + len("</svg>")]
    s = _SVG_SCRIPT_RE.sub("", s)
    s = _SVG_ON_ATTR_RE.sub("", s)
    return s.strip()


def _looks_like_caption(line: str) -> bool:
    s = line.strip()
    if not s:
        return False
    lc = s.lower()
    if "-->" in lc or ":::" in lc or "--" in lc:
        return False
    if any(ch in s for ch in "[]{}<>|"):
        return False
    if any(lc.startswith(p) for p in _MERMAID_PREFIXES):
        return False
    if len(s.split()) >= 6:
        return True
    return s.endswith((".", "!", "?"))


def split_mermaid_source_and_caption(raw: str) -> tuple[str, str]:
    """Mermaid source without fences or prose, plus a caption lifted from a trailing prose line."""
    s = strip_code_fences((raw or "").strip())
    if not s:
        return "", ""
    lines = s.split("\n")
    if lines and lines[0].strip().lower() == "diagram":
        lines = lines[1:]
    while lines and not lines[0].strip():
        lines = lines[1:]
    while lines and not lines[-1].strip():
        lines = lines[:-1]
    if not lines:
        return "", ""
    caption = ""
    if len(lines) >= 2 and _looks_like_caption(lines[-1]):
        caption = shorten(lines[-1].strip(), 220)
        lines = lines[:-1]
        while lines and not lines[-1].strip():
            lines = lines[:-1]
    return "\n".join(lines).strip(), caption


def sanitize_diagrams(doc: NodeDoc) -> int:
    """Normalize diagram kind and source; returns the number of diagrams changed."""
    changed = 0
    for diagram in doc.diagrams:
        before = (diagram.kind, diagram.source, diagram.caption)
        kind = diagram.kind.strip().lower()
        source = diagram.source.strip()
        if kind not in ("svg", "mermaid"):
            if "<svg" in source.lower():
                kind = "svg"
            elif source:
                kind = "mermaid"
        diagram.kind = kind
        if kind == "svg":
            cleaned = extract_and_sanitize_svg(source)
            if cleaned:
                diagram.source = cleaned
        elif kind == "mermaid":
            cleaned, caption = split_mermaid_source_and_caption(source)
            if cleaned:
                diagram.source = cleaned
            if not diagram.caption.strip() and caption:
                diagram.caption = caption
        if (diagram.kind, diagram.source, diagram.caption) != before:
            changed += 1
    return changed


def build_simple_flow_svg(labels: Sequence[str]) -> str:
    """Left-to-right boxes joined by arrows, one per label (max 4)."""
    labels = list(dict.fromkeys(l.strip() for l in labels if l and l.strip()))[:4]
    if not labels:
        return ""
    n = len(labels)
    inner_w = SVG_WIDTH - SVG_MARGIN * 2 - SVG_GAP * (n - 1)
    if inner_w < 120:
        return ""
    box_w = inner_w // n
    y = (SVG_HEIGHT - SVG_BOX_HEIGHT) // 2

    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{SVG_WIDTH}" height="{SVG_HEIGHT}" '
        f'viewBox="0 0 {SVG_WIDTH} {SVG_HEIGHT}">',
        "\n<style>\n"
        ".box{fill:#f7f7fb;stroke:#2b2b2b;stroke-width:2;rx:14;}\n"
        ".t{font-family:Arial, Helvetica, sans-serif;font-size:16px;fill:#111;}\n"
        ".arrow{stroke:#111;stroke-width:2.5;marker-end:url(#m);}\n"
        "</style>\n<defs>\n"
        '<marker id="m" markerWidth="10" markerHeight="10" refX="8" refY="3" orient="auto">\n'
        '<path d="M0,0 L9,3 L0,6 Z" fill="#111"/>\n'
        "</marker>\n</defs>\n",
    ]
    for i, raw in enumerate(labels):
        x = SVG_MARGIN + i * (box_w + SVG_GAP)
        parts.append(f'<rect class="box" x="{x}" y="{y}" width="{box_w}" height="{SVG_BOX_HEIGHT}"/>')
        tx = x + box_w // 2
        ty = y + SVG_BOX_HEIGHT // 2 + 6
        parts.append(f'<text class="t" x="{tx}" y="{ty}" text-anchor="middle">{escape_xml(raw)}</text>')
        if i < n - 1:
            ay = y + SVG_BOX_HEIGHT // 2
            parts.append(
                f'<line class="arrow" x1="{x + box_w}" y1="{ay}" x2="{x + box_w + SVG_GAP - 6}" y2="{ay}"/>'
            )
    parts.append("</svg>")
    return "".join(parts)


def ensure_diagram(
    doc: NodeDoc,
    allowed_chunk_ids: set[str],
    fallback_chunk_ids: Sequence[str],
    title: str = "",
) -> bool:
    """Insert a concept-flow SVG after the first body block when the doc has no diagram."""
    if doc.diagrams:
        return False
    cid = next((c for c in fallback_chunk_ids if c and c in allowed_chunk_ids), None)
    if cid is None:
        return False
    labels = [k.replace("_", " ").strip() for k in doc.concept_keys if k.strip()][:4]
    if not labels:
        labels = [title.strip() or "Core idea"]
    svg = build_simple_flow_svg([shorten(l, 28) for l in labels])
    if not svg:
        return False
    block = Diagram(
        id=f"auto_diagram_{uuid.uuid4()}",
        kind="svg",
        source=svg,
        caption=AUTO_DIAGRAM_CAPTION,
        citations=[Citation(chunk_id=cid, quote="", loc=CitationLoc())],
    )
    position = len(doc.order)
    for i, item in enumerate(doc.order):
        if item.kind != "heading":
            position = i + 1
            break
    doc.insert_block("diagram", block, position)
    return True
