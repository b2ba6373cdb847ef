"""
Teaching pattern hierarchy.

Pattern tags come from closed vocabularies at three levels (path, module,
lesson). Normalization replaces unknown values with deterministic defaults,
then propagates constraints top-down: path sequencing and pedagogy restrict
module choices, module pedagogy restricts lesson openings, cores and
practice. Position snaps (first/last lesson of the path or a module) run
last and apply to every lesson.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from .path_structure import PathNodeItem, module_index_of

# =============================================================================
# Vocabularies
# =============================================================================

PATH_SEQUENCING = frozenset({
    "linear", "spiral", "modular", "branching", "layered", "thematic", "chronological",
    "whole_to_part", "part_to_whole", "concentric", "comparative", "problem_arc",
})
PATH_PEDAGOGY = frozenset({
    "direct_instruction", "project_based", "problem_based", "case_based", "inquiry_based", "discovery",
    "narrative", "apprenticeship", "simulation", "socratic", "challenge_ladder", "competency",
})
PATH_MASTERY = frozenset({"mastery_gated", "soft_gated", "ungated", "diagnostic_adaptive", "xp_progression"})
PATH_REINFORCEMENT = frozenset({"spaced_review", "interleaved", "cumulative", "end_review", "just_in_time", "none"})

MODULE_SEQUENCING = frozenset({
    "linear_lessons", "sandwich", "hub_spoke", "funnel", "expansion", "spiral_mini", "parallel",
    "comparative_pairs", "chronological", "simple_to_complex", "dependency_driven",
})
MODULE_PEDAGOGY = frozenset({
    "theory_then_practice", "practice_then_theory", "interleaved", "immersion", "survey", "case_driven",
    "project_milestone", "problem_solution", "skill_build", "concept_build", "question_driven", "workshop",
})
MODULE_ASSESSMENT = frozenset({
    "quiz_per_lesson", "module_end_only", "pre_post", "continuous_embedded", "diagnostic_entry", "none",
    "portfolio", "peer_review",
})
MODULE_CONTENT_MIX = frozenset({
    "explanation_heavy", "activity_heavy", "balanced", "example_rich", "visual_rich", "discussion_rich",
    "reading_heavy", "multimedia_mix",
})

LESSON_OPENING = frozenset({
    "hook_question", "hook_problem", "hook_story", "hook_surprise", "hook_relevance", "hook_challenge",
    "objectives_first", "recap_prior", "diagnostic_check", "advance_organizer", "direct_start", "tldr_first",
    "context_setting", "misconception_address",
})
LESSON_CORE = frozenset({
    "direct_instruction", "worked_example", "faded_example", "multiple_examples", "non_example",
    "example_non_example_pairs", "analogy_based", "metaphor_extended", "compare_contrast", "cause_effect",
    "process_steps", "classification", "definition_elaboration", "rule_then_apply", "cases_then_rule",
    "principle_illustration", "concept_attainment", "narrative_embed", "dialogue_format",
    "socratic_questioning", "discovery_guided", "simulation_walkthrough", "demonstration",
    "explanation_then_demo", "demo_then_explanation", "chunked_progressive", "layered_depth",
    "problem_solution_reveal", "debate_format", "q_and_a_format", "interview_format",
})
LESSON_EXAMPLE = frozenset({
    "single_canonical", "multiple_varied", "progression", "edge_cases", "real_world", "abstract_formal",
    "relatable_everyday", "domain_specific", "counterexample", "minimal_pairs", "annotated",
})
LESSON_VISUAL = frozenset({
    "text_only", "diagram_supported", "diagram_primary", "dual_coded", "sequential_visual", "before_after",
    "comparison_visual", "infographic", "flowchart", "concept_map", "timeline", "table_matrix",
    "annotated_image", "animation_described",
})
LESSON_PRACTICE = frozenset({
    "immediate", "delayed_end", "interleaved_throughout", "scaffolded", "faded_support", "massed", "varied",
    "retrieval", "application", "generation", "error_analysis", "self_explanation", "teach_back",
    "prediction", "comparison", "reflection", "none",
})
LESSON_CLOSING = frozenset({
    "summary", "single_takeaway", "connection_forward", "connection_backward", "connection_lateral",
    "reflection_prompt", "application_prompt", "check_understanding", "open_question", "call_to_action",
    "cliff_hanger", "consolidation", "none",
})
LESSON_DEPTH = frozenset({"eli5", "concise", "standard", "thorough", "exhaustive", "layered", "adaptive"})
LESSON_ENGAGEMENT = frozenset({
    "passive", "active_embedded", "active_end", "gamified", "challenge_framed", "curiosity_driven",
    "choice_driven", "personalized_reference", "social_framed", "timed", "untimed",
})

VOCABULARIES: dict[str, dict[str, frozenset[str]]] = {
    "path": {
        "sequencing": PATH_SEQUENCING,
        "pedagogy": PATH_PEDAGOGY,
        "mastery": PATH_MASTERY,
        "reinforcement": PATH_REINFORCEMENT,
    },
    "module": {
        "sequencing": MODULE_SEQUENCING,
        "pedagogy": MODULE_PEDAGOGY,
        "assessment": MODULE_ASSESSMENT,
        "content_mix": MODULE_CONTENT_MIX,
    },
    "lesson": {
        "opening": LESSON_OPENING,
        "core": LESSON_CORE,
        "example": LESSON_EXAMPLE,
        "visual": LESSON_VISUAL,
        "practice": LESSON_PRACTICE,
        "closing": LESSON_CLOSING,
        "depth": LESSON_DEPTH,
        "engagement": LESSON_ENGAGEMENT,
    },
}

# =============================================================================
# Constraint tables
# =============================================================================

PATH_SEQUENCING_TO_MODULE_SEQUENCING = {
    "linear": {"linear_lessons", "sandwich", "funnel", "simple_to_complex"},
    "spiral": {"spiral_mini", "expansion", "linear_lessons"},
    "modular": {"sandwich", "hub_spoke"},
    "chronological": {"chronological", "linear_lessons"},
}
PATH_PEDAGOGY_TO_MODULE_PEDAGOGY = {
    "project_based": {"project_milestone", "workshop", "skill_build"},
    "problem_based": {"problem_solution", "case_driven", "question_driven"},
    "case_based": {"case_driven"},
    "discovery": {"practice_then_theory", "question_driven"},
    "direct_instruction": {"theory_then_practice"},
    "narrative": {"question_driven"},
}
PATH_PEDAGOGY_TO_MODULE_SEQUENCING = {
    "case_based": {"comparative_pairs"},
    "direct_instruction": {"linear_lessons"},
    "narrative": {"chronological", "linear_lessons"},
}
MODULE_PEDAGOGY_TO_LESSON_OPENING = {
    "theory_then_practice": {"objectives_first", "recap_prior"},
    "practice_then_theory": {"hook_challenge", "hook_problem"},
    "project_milestone": {"objectives_first", "hook_problem"},
    "case_driven": {"hook_story", "context_setting"},
    "skill_build": {"objectives_first", "direct_start"},
    "concept_build": {"hook_question", "recap_prior"},
    "workshop": {"direct_start", "hook_challenge"},
    "survey": {"advance_organizer", "tldr_first"},
}
MODULE_PEDAGOGY_TO_LESSON_CORE = {
    "theory_then_practice": {"direct_instruction", "worked_example"},
    "practice_then_theory": {"discovery_guided", "problem_solution_reveal"},
    "project_milestone": {"demonstration", "worked_example"},
    "case_driven": {"narrative_embed", "socratic_questioning"},
    "skill_build": {"process_steps", "worked_example", "faded_example"},
    "concept_build": {"direct_instruction", "compare_contrast"},
    "workshop": {"demonstration", "worked_example"},
    "survey": {"direct_instruction", "chunked_progressive"},
}
MODULE_PEDAGOGY_TO_LESSON_PRACTICE = {
    "theory_then_practice": {"delayed_end", "massed"},
    "practice_then_theory": {"immediate", "interleaved_throughout"},
    "project_milestone": {"application", "generation"},
    "case_driven": {"application", "reflection"},
    "skill_build": {"scaffolded", "massed"},
    "concept_build": {"retrieval", "self_explanation"},
    "workshop": {"immediate", "scaffolded"},
    "survey": {"none"},
}

LESSON_DEFAULTS = {
    "opening": "objectives_first",
    "core": "direct_instruction",
    "example": "multiple_varied",
    "visual": "diagram_supported",
    "practice": "interleaved_throughout",
    "closing": "connection_forward",
    "depth": "standard",
    "engagement": "active_embedded",
}


def normalize_enum(value: Any, allowed: Iterable[str], default: str = "") -> str:
    """Known value as-is; otherwise the default when allowed, else the first allowed value."""
    allowed = set(allowed)
    v = str(value or "").strip().lower()
    if v in allowed:
        return v
    if default in allowed:
        return default
    return sorted(allowed)[0] if allowed else ""


def _constrain(value: str, allowed: set[str] | None) -> str:
    if allowed is None or value in allowed:
        return value
    return sorted(allowed)[0]


# =============================================================================
# Types
# =============================================================================


@dataclass
class PatternSignals:
    concept_count: int = 0
    prereq_edge_count: int = 0
    max_prereq_depth: int = 0
    doc_template_count: dict[str, int] = field(default_factory=dict)
    node_kind_count: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PathPattern:
    sequencing: str = ""
    pedagogy: str = ""
    mastery: str = ""
    reinforcement: str = ""
    rationale: str = ""


@dataclass
class ModulePattern:
    module_index: int
    sequencing: str = ""
    pedagogy: str = ""
    assessment: str = ""
    content_mix: str = ""
    rationale: str = ""


@dataclass
class LessonPattern:
    lesson_index: int
    opening: str = ""
    core: str = ""
    example: str = ""
    visual: str = ""
    practice: str = ""
    closing: str = ""
    depth: str = ""
    engagement: str = ""
    rationale: str = ""


@dataclass
class PatternHierarchy:
    path: PathPattern = field(default_factory=PathPattern)
    modules: list[ModulePattern] = field(default_factory=list)
    lessons: list[LessonPattern] = field(default_factory=list)
    schema_version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PatternHierarchy:
        data = data or {}
        path = data.get("path") or {}
        return cls(
            path=PathPattern(**{k: str(path.get(k) or "") for k in asdict(PathPattern())}),
            modules=[
                ModulePattern(**_fields(ModulePattern, m, "module_index")) for m in data.get("modules") or []
            ],
            lessons=[
                LessonPattern(**_fields(LessonPattern, m, "lesson_index")) for m in data.get("lessons") or []
            ],
            schema_version=int(data.get("schema_version") or 1),
        )


def _fields(cls, raw: Any, index_field: str) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    names = [f for f in cls.__dataclass_fields__ if f != index_field]
    out: dict[str, Any] = {n: str(raw.get(n) or "") for n in names}
    try:
        out[index_field] = int(raw.get(index_field) or 0)
    except (TypeError, ValueError):
        out[index_field] = 0
    return out


# =============================================================================
# Signals and defaults
# =============================================================================


def max_prereq_depth(edges: Sequence[tuple[object, object]]) -> int:
    """Longest prerequisite chain length in edges (cycle-tolerant)."""
    adj: dict[object, list[object]] = defaultdict(list)
    for src, dst in edges:
        adj[src].append(dst)
    memo: dict[object, int] = {}
    on_stack: set[object] = set()

    def dfs(node: object) -> int:
        if node in memo:
            return memo[node]
        if node in on_stack:
            return 0
        on_stack.add(node)
        best = max((dfs(n) for n in adj.get(node, ())), default=0)
        on_stack.discard(node)
        memo[node] = best + 1
        return memo[node]

    longest = max((dfs(n) for n in list(adj)), default=0)
    return max(0, longest - 1)


def pattern_signals(nodes: Sequence[PathNodeItem], prereq_edges: Sequence[tuple[object, object]]) -> PatternSignals:
    return PatternSignals(
        concept_count=len({k for n in nodes for k in n.concept_keys}),
        prereq_edge_count=len(prereq_edges),
        max_prereq_depth=max_prereq_depth(prereq_edges),
        doc_template_count=dict(Counter(n.doc_template for n in nodes)),
        node_kind_count=dict(Counter(n.node_kind for n in nodes)),
    )


def default_path_sequencing(s: PatternSignals) -> str:
    if s.max_prereq_depth >= 3:
        return "linear"
    if s.concept_count > 40:
        return "spiral"
    if s.prereq_edge_count == 0:
        return "modular"
    return "layered"


def default_path_pedagogy(s: PatternSignals) -> str:
    if s.doc_template_count.get("project", 0) > 0:
        return "project_based"
    if s.doc_template_count.get("practice", 0) > 0:
        return "problem_based"
    return "direct_instruction"


def default_path_mastery(user_profile_doc: str) -> str:
    text = (user_profile_doc or "").lower()
    if "certification" in text or "exam" in text:
        return "mastery_gated"
    if "overview" in text or "skim" in text:
        return "ungated"
    return "soft_gated"


def default_path_reinforcement(s: PatternSignals) -> str:
    reviews = s.node_kind_count.get("review", 0)
    if reviews > 1:
        return "spaced_review"
    if reviews == 1:
        return "end_review"
    return "none"


_MODULE_SEQUENCING_DEFAULT = {
    "linear": "linear_lessons",
    "spiral": "spiral_mini",
    "modular": "hub_spoke",
    "chronological": "chronological",
}
_MODULE_PEDAGOGY_DEFAULT = {
    "project_based": "project_milestone",
    "problem_based": "problem_solution",
    "case_based": "case_driven",
    "discovery": "practice_then_theory",
    "direct_instruction": "theory_then_practice",
    "narrative": "question_driven",
}
_MODULE_ASSESSMENT_DEFAULT = {"mastery_gated": "quiz_per_lesson", "diagnostic_adaptive": "pre_post"}


# =============================================================================
# Normalization
# =============================================================================


def _known(value: Any, allowed: frozenset[str]) -> str:
    v = str(value or "").strip().lower()
    return v if v in allowed else ""


def normalize_path_pattern(p: PathPattern, s: PatternSignals, user_profile_doc: str) -> PathPattern:
    return PathPattern(
        sequencing=_known(p.sequencing, PATH_SEQUENCING) or default_path_sequencing(s),
        pedagogy=_known(p.pedagogy, PATH_PEDAGOGY) or default_path_pedagogy(s),
        mastery=_known(p.mastery, PATH_MASTERY) or default_path_mastery(user_profile_doc),
        reinforcement=_known(p.reinforcement, PATH_REINFORCEMENT) or default_path_reinforcement(s),
        rationale=p.rationale.strip(),
    )


def normalize_module_pattern(m: ModulePattern, path: PathPattern) -> ModulePattern:
    out = ModulePattern(
        module_index=m.module_index,
        sequencing=normalize_enum(
            m.sequencing, MODULE_SEQUENCING, _MODULE_SEQUENCING_DEFAULT.get(path.sequencing, "linear_lessons")
        ),
        pedagogy=normalize_enum(
            m.pedagogy, MODULE_PEDAGOGY, _MODULE_PEDAGOGY_DEFAULT.get(path.pedagogy, "theory_then_practice")
        ),
        assessment=normalize_enum(
            m.assessment, MODULE_ASSESSMENT, _MODULE_ASSESSMENT_DEFAULT.get(path.mastery, "continuous_embedded")
        ),
        content_mix=normalize_enum(m.content_mix, MODULE_CONTENT_MIX, "balanced"),
        rationale=m.rationale.strip(),
    )
    out.sequencing = _constrain(out.sequencing, PATH_SEQUENCING_TO_MODULE_SEQUENCING.get(path.sequencing))
    out.pedagogy = _constrain(out.pedagogy, PATH_PEDAGOGY_TO_MODULE_PEDAGOGY.get(path.pedagogy))
    out.sequencing = _constrain(out.sequencing, PATH_PEDAGOGY_TO_MODULE_SEQUENCING.get(path.pedagogy))
    return out


def normalize_lesson_pattern(lp: LessonPattern, module: ModulePattern | None) -> LessonPattern:
    vocab = VOCABULARIES["lesson"]
    values = {name: normalize_enum(getattr(lp, name), vocab[name], LESSON_DEFAULTS[name]) for name in vocab}
    out = LessonPattern(lesson_index=lp.lesson_index, rationale=lp.rationale.strip(), **values)
    if module is not None:
        out.opening = _constrain(out.opening, MODULE_PEDAGOGY_TO_LESSON_OPENING.get(module.pedagogy))
        out.core = _constrain(out.core, MODULE_PEDAGOGY_TO_LESSON_CORE.get(module.pedagogy))
        out.practice = _constrain(out.practice, MODULE_PEDAGOGY_TO_LESSON_PRACTICE.get(module.pedagogy))
    return out


def normalize_pattern_hierarchy(
    raw: PatternHierarchy,
    nodes: Sequence[PathNodeItem],
    prereq_edges: Sequence[tuple[object, object]],
    user_profile_doc: str = "",
) -> PatternHierarchy:
    signals = pattern_signals(nodes, prereq_edges)
    path = normalize_path_pattern(raw.path, signals, user_profile_doc)

    parent_by_index = {n.index: n.parent_index for n in nodes if n.index > 0}
    module_indices = {n.index for n in nodes if n.index > 0 and n.is_module}
    lesson_indices = sorted(n.index for n in nodes if n.index > 0 and not n.is_module)

    modules: dict[int, ModulePattern] = {}
    for m in raw.modules:
        if m.module_index in module_indices and m.module_index not in modules:
            modules[m.module_index] = normalize_module_pattern(m, path)
    for idx in module_indices:
        if idx not in modules:
            modules[idx] = normalize_module_pattern(ModulePattern(module_index=idx), path)

    raw_lessons = {}
    for lp in raw.lessons:
        raw_lessons.setdefault(lp.lesson_index, lp)

    by_module: dict[int, list[int]] = defaultdict(list)
    lessons: dict[int, LessonPattern] = {}
    for idx in lesson_indices:
        mid = module_index_of(idx, parent_by_index, module_indices)
        by_module[mid].append(idx)
        raw_lesson = raw_lessons.get(idx, LessonPattern(lesson_index=idx))
        lessons[idx] = normalize_lesson_pattern(raw_lesson, modules.get(mid))

    if lesson_indices:
        lessons[lesson_indices[0]].opening = "hook_relevance"
        lessons[lesson_indices[-1]].closing = "summary"
    for kids in by_module.values():
        lessons[kids[0]].opening = "advance_organizer"
        lessons[kids[-1]].closing = "connection_forward"

    return PatternHierarchy(
        path=path,
        modules=[modules[i] for i in sorted(modules)],
        lessons=[lessons[i] for i in sorted(lessons)],
    )


def pattern_context_for_node(
    node: PathNodeItem, nodes: Sequence[PathNodeItem], hierarchy: PatternHierarchy
) -> dict[str, Any]:
    """Per-node pattern context: path patterns, the enclosing module's and (for lessons) its own."""
    parent_by_index = {n.index: n.parent_index for n in nodes}
    module_indices = {n.index for n in nodes if n.is_module}
    mid = module_index_of(node.index, parent_by_index, module_indices)
    out: dict[str, Any] = {"path": asdict(hierarchy.path), "module_index": mid}
    module = next((m for m in hierarchy.modules if m.module_index == mid), None)
    if module is not None:
        out["module"] = asdict(module)
    if not node.is_module:
        out["lesson_index"] = node.index
        lesson = next((lp for lp in hierarchy.lessons if lp.lesson_index == node.index), None)
        if lesson is not None:
            out["lesson"] = asdict(lesson)
    return out


def vocabulary_markdown() -> str:
    lines = []
    for level, fields in VOCABULARIES.items():
        lines.append(f"{level.upper()}:")
        for name, values in fields.items():
            lines.append(f"- {name}: {', '.join(sorted(values))}")
    return "\n".join(lines)
