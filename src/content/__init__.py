"""
Content: the NodeDocV1 lesson document and its deterministic passes.

Core modules:
- node_doc: typed doc model, codec, canonical JSON, flattened text
- outline: section outlines that drive heading conformance
- doc_requirements: per-template minimum counts
- doc_repair: order repair, meta scrubs, dedupe, padding, media helpers
- doc_citations: citation sanitation and must-cite coverage
- doc_diagrams: diagram sanitation and the fallback concept-flow SVG
- doc_flow: quick-check teach order and threading references
- doc_validation: structural and quality validation
"""

from .node_doc import PROMPT_VERSION, SCHEMA_VERSION, NodeDoc, canonical_json, doc_text, parse_node_doc
from .outline import NodeOutline, OutlineSection, normalize_outline

__all__ = [
    "PROMPT_VERSION",
    "SCHEMA_VERSION",
    "NodeDoc",
    "NodeOutline",
    "OutlineSection",
    "canonical_json",
    "doc_text",
    "normalize_outline",
    "parse_node_doc",
]
