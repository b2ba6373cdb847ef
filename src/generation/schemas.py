"""
JSON Schema definitions for pipeline prompts.

Schemas are passed to Gemini as `response_schema` (JSON mode) and double as
documentation of the payload each stage parses. They stick to the OpenAPI
subset Gemini accepts: object/array/string/number/integer/boolean, `enum`,
`nullable` and `required`.
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# Building blocks
# =============================================================================


def _str(description: str = "") -> dict[str, Any]:
    out: dict[str, Any] = {"type": "string"}
    if description:
        out["description"] = description
    return out


def _str_list(description: str = "") -> dict[str, Any]:
    out: dict[str, Any] = {"type": "array", "items": {"type": "string"}}
    if description:
        out["description"] = description
    return out


def _enum(*values: str) -> dict[str, Any]:
    return {"type": "string", "enum": list(values)}


def _obj(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(required if required is not None else properties.keys()),
    }


def _versioned(version: int, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    props = {"schema_version": {"type": "integer", "description": f"Always {version}"}, **properties}
    return _obj(props, ["schema_version", *required])


INT = {"type": "integer"}
NUMBER = {"type": "number"}
BOOL = {"type": "boolean"}
NULLABLE_STR = {"type": "string", "nullable": True}
NULLABLE_INT = {"type": "integer", "nullable": True}


# =============================================================================
# Concept graph
# =============================================================================

CONCEPT_ITEM_SCHEMA = _obj(
    {
        "key": _str("Stable snake_case key"),
        "name": _str(),
        "parent_key": NULLABLE_STR,
        "depth": INT,
        "summary": _str(),
        "key_points": _str_list(),
        "aliases": _str_list("Abbreviations, acronyms and expanded names"),
        "importance": INT,
        "citations": _str_list("chunk_id strings actually used"),
    }
)

CONCEPT_INVENTORY_SCHEMA = _versioned(
    3,
    {
        "concepts": {"type": "array", "items": CONCEPT_ITEM_SCHEMA},
        "coverage": _obj(
            {
                "confidence": NUMBER,
                "notes": _str(),
                "missing_topics_suspected": _str_list(),
            }
        ),
    },
    ["concepts", "coverage"],
)

CONCEPT_INVENTORY_DELTA_SCHEMA = CONCEPT_INVENTORY_SCHEMA

CONCEPT_EDGES_SCHEMA = _versioned(
    1,
    {
        "edges": {
            "type": "array",
            "items": _obj(
                {
                    "from_key": _str(),
                    "to_key": _str(),
                    "edge_type": _enum("prereq", "related", "analogy"),
                    "strength": NUMBER,
                    "rationale": _str(),
                    "citations": _str_list(),
                }
            ),
        }
    },
    ["edges"],
)

CONCEPT_CLUSTERS_SCHEMA = _versioned(
    1,
    {
        "clusters": {
            "type": "array",
            "items": _obj(
                {
                    "label": _str(),
                    "concept_keys": _str_list(),
                    "tags": _str_list(),
                    "rationale": _str(),
                }
            ),
        }
    },
    ["clusters"],
)

# =============================================================================
# Material knowledge graph
# =============================================================================

MATERIAL_KG_EXTRACT_SCHEMA = _versioned(
    1,
    {
        "entities": {
            "type": "array",
            "items": _obj(
                {
                    "name": _str(),
                    "type": _str("person, org, tool, method, dataset, system, concept, variable, other"),
                    "description": _str(),
                    "aliases": _str_list(),
                    "evidence_chunk_ids": _str_list("1-6 chunk_id strings"),
                }
            ),
        },
        "claims": {
            "type": "array",
            "items": _obj(
                {
                    "kind": _str("claim, definition, procedure, example, warning"),
                    "content": _str("1-2 sentences"),
                    "confidence": NUMBER,
                    "entity_names": _str_list(),
                    "concept_keys": _str_list(),
                    "evidence_chunk_ids": _str_list("1-6 chunk_id strings"),
                }
            ),
        },
    },
    ["entities", "claims"],
)

# =============================================================================
# Path planning
# =============================================================================

_TERM_DEFINITION = _obj({"term": _str(), "definition": _str()})

PATH_CHARTER_SCHEMA = _versioned(
    1,
    {
        "path_style": _obj(
            {
                "tone": _str(),
                "reading_level": _str(),
                "verbosity": _enum("low", "medium", "high"),
                "pace": _enum("slow", "normal", "fast"),
                "analogy_style": _enum("none", "light", "heavy"),
                "terminology_policy": _obj(
                    {
                        "must_use_terms": {"type": "array", "items": _TERM_DEFINITION},
                        "avoid_terms": _str_list(),
                    }
                ),
                "diagram_conventions": _obj(
                    {
                        "preferred_formats": {"type": "array", "items": _enum("mermaid", "dot", "json")},
                        "labeling": _enum("minimal", "standard", "heavy"),
                        "density": _enum("sparse", "normal", "dense"),
                    }
                ),
            }
        ),
    },
    ["path_style"],
)

_ACTIVITY_SLOT = _obj(
    {
        "slot": INT,
        "kind": _enum("reading", "quiz", "drill", "case"),
        "primary_concept_keys": _str_list(),
        "estimated_minutes": INT,
    }
)

PATH_NODE_SCHEMA = _obj(
    {
        "index": INT,
        "parent_index": NULLABLE_INT,
        "node_kind": _enum("module", "lesson", "capstone", "review"),
        "doc_template": _enum("overview", "concept", "practice", "cheatsheet", "project", "review"),
        "title": _str(),
        "goal": _str(),
        "concept_keys": _str_list(),
        "prereq_concept_keys": _str_list(),
        "difficulty": _enum("intro", "intermediate", "advanced"),
        "activity_slots": {"type": "array", "items": _ACTIVITY_SLOT},
    }
)

PATH_STRUCTURE_SCHEMA = _versioned(
    2,
    {
        "title": _str(),
        "description": _str(),
        "nodes": {"type": "array", "items": PATH_NODE_SCHEMA},
        "coverage_check": _obj({"uncovered_concept_keys": _str_list()}),
    },
    ["title", "description", "nodes", "coverage_check"],
)

TEACHING_PATTERN_HIERARCHY_SCHEMA = _versioned(
    1,
    {
        "path": _obj(
            {
                "sequencing": _str(),
                "pedagogy": _str(),
                "mastery": _str(),
                "reinforcement": _str(),
            }
        ),
        "modules": {
            "type": "array",
            "items": _obj(
                {
                    "module_index": INT,
                    "sequencing": _str(),
                    "pedagogy": _str(),
                    "assessment": _str(),
                    "content_mix": _str(),
                }
            ),
        },
        "lessons": {
            "type": "array",
            "items": _obj(
                {
                    "lesson_index": INT,
                    "opening": _str(),
                    "core": _str(),
                    "example": _str(),
                    "visual": _str(),
                    "practice": _str(),
                    "closing": _str(),
                    "depth": _str(),
                    "engagement": _str(),
                }
            ),
        },
    },
    ["path", "modules", "lessons"],
)

# =============================================================================
# Node docs
# =============================================================================

NODE_DOC_OUTLINE_SCHEMA = _versioned(
    1,
    {
        "title": _str(),
        "thread_summary": _str(),
        "key_terms": _str_list(),
        "prereq_recap": _str(),
        "next_preview": _str(),
        "sections": {
            "type": "array",
            "items": _obj(
                {
                    "heading": _str(),
                    "goal": _str(),
                    "concept_keys": _str_list(),
                    "include_worked_example": BOOL,
                    "include_media_block": BOOL,
                    "quick_checks": INT,
                    "flashcards": INT,
                    "bridge_in": _str(),
                    "bridge_out": _str(),
                }
            ),
        },
    },
    ["title", "thread_summary", "key_terms", "prereq_recap", "next_preview", "sections"],
)

_CITATION = _obj(
    {
        "chunk_id": _str(),
        "quote": _str(),
        "loc": _obj({"page": INT, "start": INT, "end": INT}),
    },
    ["chunk_id"],
)
_CITATIONS = {"type": "array", "items": _CITATION}


def _block(properties: dict[str, Any], cited: bool = True) -> dict[str, Any]:
    props = {"id": _str(), **properties}
    if cited:
        props["citations"] = _CITATIONS
    return {"type": "array", "items": _obj(props)}


_LIST_BLOCK = {"title": _str(), "items": _str_list()}
_EXPLAINER_BLOCK = {"title": _str(), "md": _str()}

NODE_DOC_SCHEMA = _versioned(
    1,
    {
        "concept_keys": _str_list(),
        "summary": _str(),
        "order": {"type": "array", "items": _obj({"kind": _str(), "id": _str()})},
        "headings": _block({"level": INT, "text": _str()}, cited=False),
        "paragraphs": _block({"md": _str()}),
        "callouts": _block({"variant": _enum("info", "tip", "warning"), "title": _str(), "md": _str()}),
        "codes": _block({"language": _str(), "filename": _str(), "code": _str()}, cited=False),
        "figures": _block({"asset": _obj({"url": _str()}), "caption": _str()}),
        "videos": _block({"url": _str(), "start_sec": INT, "caption": _str()}, cited=False),
        "diagrams": _block({"kind": _enum("svg", "mermaid"), "source": _str(), "caption": _str()}),
        "tables": _block(
            {
                "caption": _str(),
                "columns": _str_list(),
                "rows": {"type": "array", "items": _str_list()},
            }
        ),
        "equations": _block({"latex": _str(), "display": BOOL, "caption": _str()}),
        "objectives": _block(_LIST_BLOCK),
        "prerequisites": _block(_LIST_BLOCK),
        "key_takeaways": _block(_LIST_BLOCK),
        "glossary": _block(
            {"title": _str(), "terms": {"type": "array", "items": _obj({"term": _str(), "definition_md": _str()})}}
        ),
        "common_mistakes": _block(_LIST_BLOCK),
        "misconceptions": _block(_LIST_BLOCK),
        "edge_cases": _block(_LIST_BLOCK),
        "heuristics": _block(_LIST_BLOCK),
        "steps": _block(_LIST_BLOCK),
        "checklist": _block(_LIST_BLOCK),
        "faq": _block(
            {"title": _str(), "qas": {"type": "array", "items": _obj({"question_md": _str(), "answer_md": _str()})}}
        ),
        "intuition": _block(_EXPLAINER_BLOCK),
        "mental_model": _block(_EXPLAINER_BLOCK),
        "why_it_matters": _block(_EXPLAINER_BLOCK),
        "connections": _block(_LIST_BLOCK),
        "quick_checks": _block(
            {
                "kind": _enum("mcq", "short_answer", "true_false"),
                "prompt_md": _str(),
                "options": {"type": "array", "items": _obj({"id": _str(), "text": _str()})},
                "answer_id": _str(),
                "answer_md": _str(),
            }
        ),
        "dividers": _block({}, cited=False),
    },
    ["concept_keys", "summary", "order"],
)


# =============================================================================
# Generation config
# =============================================================================


def get_generation_config(
    schema: dict[str, Any] | None,
    temperature: float = 0.3,
    max_output_tokens: int = 8192,
) -> dict[str, Any]:
    """Gemini generation config for JSON-mode output."""
    config: dict[str, Any] = {
        "temperature": temperature,
        "top_p": 0.8,
        "max_output_tokens": max_output_tokens,
        "response_mime_type": "application/json",
    }
    if schema:
        config["response_schema"] = schema
    return config
