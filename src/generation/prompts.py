"""
Prompt catalogue for the content pipeline.

Each builder returns a (system, user) pair. Prompt text is product surface:
bump PROMPT_VERSIONS when wording changes so cached outputs are invalidated
through the sources hash.
"""
from __future__ import annotations

from src.generation import schemas

PROMPT_VERSIONS = {
    "concept_inventory": 2,
    "concept_inventory_delta": 2,
    "concept_edges": 1,
    "concept_clusters": 1,
    "material_kg_extract": 1,
    "path_charter": 3,
    "path_structure": 6,
    "path_structure_refine": 1,
    "teaching_pattern_hierarchy": 2,
    "node_doc_outline_v1": 1,
    "node_doc_v2": 1,
}

SCHEMAS = {
    "concept_inventory": schemas.CONCEPT_INVENTORY_SCHEMA,
    "concept_inventory_delta": schemas.CONCEPT_INVENTORY_DELTA_SCHEMA,
    "concept_edges": schemas.CONCEPT_EDGES_SCHEMA,
    "concept_clusters": schemas.CONCEPT_CLUSTERS_SCHEMA,
    "material_kg_extract": schemas.MATERIAL_KG_EXTRACT_SCHEMA,
    "path_charter": schemas.PATH_CHARTER_SCHEMA,
    "path_structure": schemas.PATH_STRUCTURE_SCHEMA,
    "path_structure_refine": schemas.PATH_STRUCTURE_SCHEMA,
    "teaching_pattern_hierarchy": schemas.TEACHING_PATTERN_HIERARCHY_SCHEMA,
    "node_doc_outline_v1": schemas.NODE_DOC_OUTLINE_SCHEMA,
    "node_doc_v2": schemas.NODE_DOC_SCHEMA,
}


def _opt(value: str | None) -> str:
    return (value or "").strip() or "(none)"


# =============================================================================
# Concept Graph
# =============================================================================

CONCEPT_INVENTORY_SYSTEM = """You are constructing an exhaustive concept inventory that will drive a personalized learning path.
Every concept must be grounded in the excerpts with citations (chunk_id strings).
Concept keys must be stable snake_case.
Return JSON only."""


def concept_inventory(excerpts: str, path_intent_md: str = "") -> tuple[str, str]:
    user = f"""PATH_INTENT_MD (optional; user goal context for relevance/noise filtering):
{_opt(path_intent_md)}

EXCERPTS (each line includes chunk_id):
{excerpts}

Task:
- Extract ALL distinct concepts present in excerpts, but prioritize those that support the PATH_INTENT_MD.
- Organize into hierarchy via parent_key + depth.
- Provide summary + key_points + aliases + importance.
  - Prefer full descriptive concept keys over abbreviations (put abbreviations/acronyms in aliases).
- citations must be chunk_id strings actually used.
- coverage: estimate completeness and list suspected missing topics."""
    return CONCEPT_INVENTORY_SYSTEM, user


CONCEPT_INVENTORY_DELTA_SYSTEM = """You are extending an existing concept inventory using additional excerpts from the same material set.
You must only add concepts that are truly missing from the existing inventory.
Every new concept must be grounded in the excerpts with citations (chunk_id strings).
Concept keys must be stable snake_case and must not collide with existing keys.
Return JSON only."""


def concept_inventory_delta(concepts_json: str, excerpts: str, path_intent_md: str = "") -> tuple[str, str]:
    user = f"""PATH_INTENT_MD (optional):
{_opt(path_intent_md)}

EXISTING_CONCEPTS_JSON (do not repeat these; use these keys for parent_key when appropriate):
{concepts_json}

NEW_EXCERPTS (each line includes chunk_id):
{excerpts}

Task:
- Extract NEW distinct concepts present in NEW_EXCERPTS that are missing from EXISTING_CONCEPTS_JSON.
- Prefer missing high-signal concepts and prerequisite scaffolding; avoid exploding into micro-topics.
- parent_key should reference an existing key when possible; otherwise null.
- citations must be chunk_id strings actually used."""
    return CONCEPT_INVENTORY_DELTA_SYSTEM, user


CONCEPT_EDGES_SYSTEM = """You are building a concept graph for sequencing.
Edges must be supported by excerpts.
Avoid dense graphs; keep only meaningful edges.
Return JSON only."""


def concept_edges(concepts_json: str, excerpts: str, path_intent_md: str = "") -> tuple[str, str]:
    user = f"""PATH_INTENT_MD (optional):
{_opt(path_intent_md)}

CONCEPTS_JSON:
{concepts_json}

EXCERPTS:
{excerpts}

Create edges between concept keys.
edge_type: prereq|related|analogy.
strength: 0..1.
citations: chunk_id strings you used."""
    return CONCEPT_EDGES_SYSTEM, user


CONCEPT_CLUSTERS_SYSTEM = """You are clustering concepts into higher-level families to transfer teaching priors.
Clusters must be meaningful and non-overlapping unless necessary.
Return JSON only."""


def concept_clusters(concepts_json: str) -> tuple[str, str]:
    user = f"""CONCEPTS_JSON:
{concepts_json}

Task:
Return 6-18 clusters with:
- label
- concept_keys
- tags
- rationale"""
    return CONCEPT_CLUSTERS_SYSTEM, user


# =============================================================================
# Material Knowledge Graph
# =============================================================================

MATERIAL_KG_SYSTEM = """You are extracting a grounded material knowledge graph.
Only use information supported by the excerpts and cite evidence by chunk_id strings.
Do not invent entities or claims not grounded in the excerpts.
Return JSON only."""


def material_kg_extract(concepts_json: str, excerpts: str, path_intent_md: str = "") -> tuple[str, str]:
    user = f"""PATH_INTENT_MD (optional):
{_opt(path_intent_md)}

ALLOWED_CONCEPTS_JSON (use concept_keys only from this list; otherwise leave concept_keys empty):
{concepts_json}

EXCERPTS (each line includes chunk_id):
{excerpts}

Task:
- Output a deduplicated list of entities mentioned in the excerpts, each with 1-6 evidence_chunk_ids.
- Output a list of atomic claims grounded in the excerpts, each with 1-6 evidence_chunk_ids.
  - entity_names should reference entities by their canonical name when possible.
  - concept_keys must be a subset of ALLOWED_CONCEPTS_JSON keys.
- Prefer fewer, higher-signal entities/claims over exhaustive micro-fragments."""
    return MATERIAL_KG_SYSTEM, user


# =============================================================================
# Path Planning
# =============================================================================

PATH_CHARTER_SYSTEM = """You are establishing global coherence constraints for a personalized learning path.
The charter must keep terminology and diagram conventions consistent.
Return JSON only."""


def path_charter(
    user_profile_doc: str,
    bundle_summary: str = "",
    user_knowledge_json: str = "",
    material_signals_json: str = "",
) -> tuple[str, str]:
    user = f"""USER_PROFILE_DOC:
{_opt(user_profile_doc)}

MATERIAL_SET_SUMMARY (optional):
{_opt(bundle_summary)}

MATERIAL_SIGNAL_JSON (optional):
{_opt(material_signals_json)}

USER_KNOWLEDGE_JSON (optional; mastery/exposure from prior learning; do not mention explicitly):
{_opt(user_knowledge_json)}

Task:
Output path_style with:
- tone, reading_level, verbosity, pace, analogy_style
- terminology_policy (must_use_terms, avoid_terms)
- diagram_conventions (preferred_formats, labeling, density)"""
    return PATH_CHARTER_SYSTEM, user


PATH_STRUCTURE_SYSTEM = """You design the path structure (nodes and activity slots) to cover all concepts coherently.
Respect prerequisite edges when ordering.
Return JSON only."""

_PATH_STRUCTURE_RULES = """Rules:
- "module" nodes are grouping/overview nodes; "lesson" nodes are the main teaching units.
- Optional: "review" nodes for spaced repetition, and a "capstone" node for integration.
- Indices must be unique positive integers (start at 1, increase by 1).
- Use parent_index to nest nodes. For top-level nodes, parent_index must be null.
- Parents must come before children (parent_index < index). Avoid cycles. Keep depth <= 3.
- Every concept in CONCEPTS_JSON should appear in at least one node.concept_keys.
- If USER_KNOWLEDGE_JSON marks a concept as "known", compress it into brief review.
- If USER_KNOWLEDGE_JSON marks a concept as "weak" or "unseen", add scaffolding before relying on it.

Include coverage_check.uncovered_concept_keys."""


def path_structure(
    charter_json: str,
    concepts_json: str,
    edges_json: str,
    bundle_summary: str = "",
    intake_json: str = "",
    user_knowledge_json: str = "",
) -> tuple[str, str]:
    user = f"""PATH_CHARTER_JSON:
{charter_json}

MATERIAL_SET_SUMMARY_MD (optional):
{_opt(bundle_summary)}

INTAKE_JSON (optional):
{_opt(intake_json)}

CONCEPTS_JSON:
{concepts_json}

EDGES_JSON:
{edges_json}

USER_KNOWLEDGE_JSON (optional):
{_opt(user_knowledge_json)}

Task:
Create a dynamic path outline that covers all concepts.

{_PATH_STRUCTURE_RULES}"""
    return PATH_STRUCTURE_SYSTEM, user


def path_structure_refine(
    draft_json: str,
    uncovered_keys: list[str],
    concepts_json: str,
    edges_json: str,
) -> tuple[str, str]:
    user = f"""DRAFT_PATH_STRUCTURE_JSON:
{draft_json}

UNCOVERED_CONCEPT_KEYS:
{", ".join(uncovered_keys) or "(none)"}

CONCEPTS_JSON:
{concepts_json}

EDGES_JSON:
{edges_json}

Task:
Revise the draft so every uncovered concept key is taught by at least one lesson.
Keep existing node titles and ordering where they still work; tighten goals and activity slots.

{_PATH_STRUCTURE_RULES}"""
    return PATH_STRUCTURE_SYSTEM, user


TEACHING_PATTERN_SYSTEM = """You select a teaching-pattern hierarchy for a learning path.
Choose only from the allowed pattern keys and obey the constraint cascade.
Return JSON only."""


def teaching_pattern_hierarchy(
    user_profile_doc: str,
    charter_json: str,
    structure_json: str,
    concepts_json: str,
    edges_json: str,
    vocabulary_md: str,
    signals_json: str = "",
) -> tuple[str, str]:
    user = f"""USER_PROFILE_DOC:
{_opt(user_profile_doc)}

PATH_CHARTER_JSON:
{charter_json}

PATH_STRUCTURE_JSON:
{structure_json}

CONCEPTS_JSON:
{concepts_json}

EDGES_JSON:
{edges_json}

PATTERN_SIGNALS_JSON (optional; computed statistics):
{_opt(signals_json)}

Task:
Select one path pattern, one pattern per module_index and one pattern per lesson_index
(every non-module node) from these vocabularies:

{vocabulary_md}

Use position hints: first lessons should orient (hook_relevance/context_setting/advance_organizer);
last lessons should consolidate (summary/connection_forward)."""
    return TEACHING_PATTERN_SYSTEM, user


# =============================================================================
# Node Docs
# =============================================================================

NODE_DOC_OUTLINE_SYSTEM = """MODE: NODE_DOC_OUTLINE

You create a research-grade lesson outline with a clear narrative arc.
Rules:
- Output ONLY valid JSON that matches the schema.
- First section MUST be "Roadmap".
- 4-8 sections total, ordered from intuition -> core idea -> worked example -> practice/pitfalls -> summary.
- Provide bridge_in and bridge_out sentences that connect sections naturally.
- bridge_in/bridge_out must be learner-facing and content-focused; do NOT mention outlines, plans, modules, paths, or lesson structure.
- concept_keys per section should be a subset of the node's concepts (include prereqs when needed).
- thread_summary is a 1-2 sentence throughline that connects this lesson to previous and following nodes.
- key_terms are 3-7 short nouns/phrases.
- prereq_recap is 1-2 sentences that explicitly references any prereq concepts.
- next_preview is 1 sentence; if a following title is provided, reference the title directly."""


def node_doc_outline(
    title: str,
    goal: str,
    node_kind: str,
    doc_template: str,
    concept_keys: list[str],
    prereq_keys: list[str],
    narrative_context_json: str,
    path_intent_md: str = "",
    path_style_json: str = "",
    pattern_context_json: str = "",
) -> tuple[str, str]:
    user = f"""NODE_TITLE: {title}
NODE_GOAL: {goal}
NODE_KIND: {node_kind}
DOC_TEMPLATE: {doc_template}
CONCEPT_KEYS: {", ".join(concept_keys)}
PREREQ_CONCEPT_KEYS: {", ".join(prereq_keys)}

NARRATIVE_CONTEXT_JSON:
{narrative_context_json}

PATH_INTENT_MD:
{_opt(path_intent_md)}

PATH_STYLE_JSON (optional):
{_opt(path_style_json)}

PATTERN_CONTEXT_JSON (optional; path/module/lesson teaching patterns):
{_opt(pattern_context_json)}"""
    return NODE_DOC_OUTLINE_SYSTEM, user


NODE_DOC_SYSTEM = """MODE: NODE_DOC

You write a rich, learner-facing lesson document grounded ONLY in the provided evidence.
Rules:
- Output ONLY valid JSON that matches the schema: an `order` array of {kind, id} plus one array per block kind.
- Every id in `order` must exist in exactly one block array, and every block must be referenced by `order`.
- Heading blocks must match OUTLINE_JSON section headings exactly, in order.
- Every block except heading, divider, video and code must cite at least one chunk_id from ALLOWED_CHUNK_IDS.
- Cite every chunk in MUST_CITE_CHUNK_IDS at least once.
- Include a tip callout titled "Worked example".
- Teach before testing: each quick_check follows the block that teaches its idea.
- Never talk about the lesson itself (no "up next", "wrap-up", "here's the plan", "bridge-in")."""


def node_doc(
    *,
    title: str,
    goal: str,
    node_kind: str,
    doc_template: str,
    prev_title: str,
    next_title: str,
    module_title: str,
    outline_json: str,
    sections_json: str,
    narrative_context_json: str,
    requirements_md: str,
    allowed_chunk_ids: list[str],
    must_cite_chunk_ids: list[str],
    diagram_policy: str,
    media_json: str = "",
    media_requirement: str = "",
    user_knowledge_json: str = "",
    user_profile_doc: str = "",
    pattern_context_json: str = "",
    path_style_json: str = "",
    path_intent_md: str = "",
    activity_slots_json: str = "",
    feedback: list[str] | None = None,
) -> tuple[str, str]:
    feedback_md = "\n".join(f"- {e}" for e in (feedback or [])) or "(none)"
    user = f"""NODE_TITLE: {title}
NODE_GOAL: {goal}
NODE_KIND: {node_kind}
DOC_TEMPLATE: {doc_template}

PREVIOUS_TITLE (verbatim): {_opt(prev_title)}
FOLLOWING_TITLE (verbatim): {_opt(next_title)}
MODULE_TITLE (verbatim): {_opt(module_title)}

OUTLINE_JSON:
{outline_json}

SECTION_EVIDENCE_JSON:
{sections_json}

NARRATIVE_CONTEXT_JSON:
{narrative_context_json}

PATH_STYLE_JSON (optional):
{_opt(path_style_json)}

PATTERN_CONTEXT_JSON (optional):
{_opt(pattern_context_json)}

USER_KNOWLEDGE_JSON (optional; do not mention explicitly):
{_opt(user_knowledge_json)}

USER_PROFILE_DOC (optional):
{_opt(user_profile_doc)}

PATH_INTENT_MD (optional):
{_opt(path_intent_md)}

ACTIVITY_SLOTS_JSON (optional):
{_opt(activity_slots_json)}

AVAILABLE_MEDIA_JSON (optional):
{_opt(media_json)}
{media_requirement}

DIAGRAM_POLICY: {diagram_policy}

REQUIREMENTS:
{requirements_md}

MUST_CITE_CHUNK_IDS:
{", ".join(must_cite_chunk_ids) or "(none)"}

ALLOWED_CHUNK_IDS:
{", ".join(allowed_chunk_ids)}

PREVIOUS_ATTEMPT_ERRORS (fix all of these):
{feedback_md}"""
    return NODE_DOC_SYSTEM, user
