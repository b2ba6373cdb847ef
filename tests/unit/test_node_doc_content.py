"""
Unit tests for the lesson doc model, validation and deterministic repairs.

Covers:
- parse_node_doc for both payload shapes
- validate_node_doc floors, banned phrasing and citations
- outline normalization and heading matching
- repair passes (order, meta pruning, scrubbing, dedupe, caps, padding, media)
- citation sanitation and must-cite injection
- quick check ordering and threading
- diagram sanitation and the fallback SVG
"""
import uuid
from types import SimpleNamespace

import pytest

from conftest import lesson_doc_payload
from src.content.doc_citations import (
    inject_missing_must_cite,
    missing_must_cite_ids,
    normalize_chunk_id,
    sanitize_citations,
    truncate_utf8,
)
from src.content.doc_diagrams import (
    AUTO_DIAGRAM_CAPTION,
    build_simple_flow_svg,
    ensure_diagram,
    extract_and_sanitize_svg,
    sanitize_diagrams,
    split_mermaid_source_and_caption,
)
from src.content.doc_flow import (
    ensure_quick_checks_after_teaching,
    ensure_threading_references,
    validate_threading,
)
from src.content.doc_repair import (
    MediaUsage,
    cap_block_type,
    dedupe_doc,
    dedupe_media,
    inject_figure,
    pad_minimums,
    prune_meta_blocks,
    repair_order,
    scrub_doc,
    scrub_meta_text,
)
from src.content.doc_requirements import (
    apply_diagram_policy,
    diagram_policy,
    normalize_doc_template,
    requirements_for_template,
)
from src.content.doc_validation import outline_heading_errors, validate_node_doc
from src.content.node_doc import (
    Citation,
    Heading,
    NodeDoc,
    OrderItem,
    Paragraph,
    QuickCheck,
    canonical_json,
    doc_text,
    doc_to_json,
    parse_node_doc,
)
from src.content.outline import ROADMAP_HEADING, NodeOutline, OutlineSection, fallback_outline, parse_outline

CHUNK = str(uuid.UUID("00000000-0000-0000-0000-00000000c001"))
OTHER = str(uuid.UUID("00000000-0000-0000-0000-00000000c002"))
HEADINGS = ["Foundations", "Worked example", "Practice"]


def chunk(text, page=1):
    return SimpleNamespace(text=text, page=page)


def valid_doc(headings=HEADINGS):
    return parse_node_doc(lesson_doc_payload(headings, chunk_id=CHUNK, concept_keys=["routing"]))


def small_doc(*blocks):
    """Doc built from (kind, block) pairs in order."""
    doc = NodeDoc(concept_keys=["k"])
    for kind, block in blocks:
        doc.insert_block(kind, block)
    return doc


# ============================================================================
# Codec
# ============================================================================


class TestParseNodeDoc:
    """Tests for parse_node_doc()."""

    def test_flat_blocks_become_order_and_arrays(self):
        """A `blocks` list is split by type with generated ids."""
        doc = parse_node_doc({"blocks": [{"type": "heading", "text": "A"}, {"type": "paragraphs", "md": "x"}]})

        assert [(o.kind, o.id) for o in doc.order] == [("heading", "heading_1"), ("paragraph", "paragraph_2")]
        assert doc.paragraphs[0].md == "x"

    def test_unknown_block_types_are_dropped(self):
        """Blocks of unknown type never reach the order."""
        doc = parse_node_doc({"blocks": [{"type": "hologram"}, {"type": "paragraph", "md": "x"}]})

        assert [o.kind for o in doc.order] == ["paragraph"]

    def test_order_shape_is_accepted(self):
        """Order plus per-kind arrays parses as-is; kind aliases are normalized."""
        doc = parse_node_doc(
            {"order": [{"kind": "Paragraphs", "id": "p1"}], "paragraphs": [{"id": "p1", "md": "text"}]}
        )

        assert doc.ordered_blocks()[0][1].md == "text"

    def test_item_list_aliases(self):
        """steps_md is read into items."""
        doc = parse_node_doc({"blocks": [{"type": "steps", "steps_md": ["one", "two"]}]})

        assert doc.steps[0].items == ["one", "two"]

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
    def test_undecodable_payloads_raise(self, raw):
        """Bad JSON or a non-object raises ValueError."""
        with pytest.raises(ValueError, match="schema_unmarshal_failed"):
            parse_node_doc(raw)

    def test_doc_text_and_canonical_json(self):
        """doc_text joins summary and block text; canonical_json sorts keys."""
        doc = valid_doc()

        assert doc_text(doc).startswith("How routers pick the next hop.")
        assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'


# ============================================================================
# Validation
# ============================================================================


class TestValidateNodeDoc:
    """Tests for validate_node_doc()."""

    def test_payload_helper_is_valid(self):
        """The reference payload passes the concept template."""
        errs, metrics = validate_node_doc(valid_doc(), {CHUNK}, requirements_for_template("concept"))

        assert errs == []
        assert metrics["word_count"] >= 1100
        assert metrics["citations_unique_chunks"] == 1

    def test_floors_are_reported(self):
        """A bare doc misses word, heading and explainer minimums."""
        doc = small_doc(("paragraph", Paragraph(id="p", md="short", citations=[Citation(chunk_id=CHUNK)])))

        errs, _ = validate_node_doc(doc, {CHUNK}, requirements_for_template("concept"))

        assert any(e.startswith("word_count too low") for e in errs)
        assert "need >=3 headings (got 0)" in errs
        assert any("worked example" in e for e in errs)

    def test_citations_must_be_allowed(self):
        """Citations to chunks outside the allowed set are errors."""
        errs, _ = validate_node_doc(valid_doc(), {OTHER}, requirements_for_template("concept"))

        assert any("chunk_id not allowed" in e for e in errs)

    def test_banned_phrasing_is_counted_not_echoed(self):
        """Banned phrases raise one error without repeating the phrase."""
        doc = valid_doc()
        doc.paragraphs[0].md += " Before we dive in, relax."

        errs, metrics = validate_node_doc(doc, {CHUNK}, requirements_for_template("concept"))

        assert "contains banned meta phrasing (1 hits)" in errs
        assert metrics["banned_phrases"] == ["before we dive in"]

    def test_quick_check_answer_must_be_an_option(self):
        """answer_id outside option ids is flagged."""
        doc = valid_doc()
        doc.quick_checks[0].answer_id = "z"

        errs, _ = validate_node_doc(doc, {CHUNK}, requirements_for_template("concept"))

        assert any("answer_id 'z' not in options" in e for e in errs)

    def test_unreferenced_block_is_an_error(self):
        """Every block must appear in order."""
        doc = valid_doc()
        doc.paragraphs.append(Paragraph(id="orphan", md="x"))

        errs, _ = validate_node_doc(doc, {CHUNK}, requirements_for_template("concept"))

        assert "paragraph:orphan not referenced by order" in errs


class TestRequirements:
    """Tests for template requirements and diagram policy."""

    def test_templates_fall_back_by_kind(self):
        """Unknown templates derive from node kind."""
        assert normalize_doc_template("???", "module") == "overview"
        assert normalize_doc_template(None, "capstone") == "project"
        assert normalize_doc_template("", "lesson") == "concept"

    def test_premium_raises_floors_and_requires_diagrams(self):
        """Premium concept docs need more words and one diagram."""
        req = requirements_for_template("concept", premium=True)

        assert req.min_word_count > requirements_for_template("concept").min_word_count
        assert req.min_paragraphs == 10
        assert diagram_policy(req, -1) == "required"
        assert diagram_policy(apply_diagram_policy(req, 0), 0) == "disabled"

    def test_standard_concept_diagrams_are_optional(self):
        """No diagram floor in standard mode."""
        assert diagram_policy(requirements_for_template("concept"), -1) == "optional"


# ============================================================================
# Outline
# ============================================================================


class TestOutline:
    """Tests for outline parsing and heading enforcement."""

    def test_fallback_outline(self):
        """No sections yields Roadmap and Core idea."""
        outline = fallback_outline("Routing", ["routing"])

        assert outline.headings == [ROADMAP_HEADING, "Core idea"]
        assert outline.title == "Routing"
        assert outline.sections[1].concept_keys == ["routing"]

    def test_sections_are_trimmed_and_clamped(self):
        """Blank headings become Section; counts clamp to [0, 4]; keys inherit."""
        raw = {"sections": [{"heading": "  ", "quick_checks": 9, "flashcards": -2}]}

        outline = parse_outline(raw, "T", ["a", "a", "b"])

        sec = outline.sections[0]
        assert (sec.heading, sec.quick_checks, sec.flashcards) == ("Section", 4, 0)
        assert sec.concept_keys == ["a", "b"]

    def test_invalid_payload_degrades(self):
        """A payload that fails validation becomes the fallback outline."""
        outline = parse_outline({"sections": "nope"}, "T", [])

        assert outline.headings == [ROADMAP_HEADING, "Core idea"]

    def test_heading_errors(self):
        """Doc headings must equal outline headings in order."""
        doc = valid_doc(["A", "B", "C"])

        assert outline_heading_errors(doc, ["A", "B", "C"]) == []
        errs = outline_heading_errors(doc, ["A", "X"])
        assert "heading count 3 does not match outline section count 2" in errs
        assert "heading[1] must be exactly 'X' (got 'B')" in errs

    def test_normalize_keeps_explicit_sections(self):
        """Model sections survive normalization untouched apart from trimming."""
        outline = NodeOutline(sections=[OutlineSection(heading=" Intro ", goal="g", concept_keys=["x"])])

        assert parse_outline(outline.model_dump(), "T", ["y"]).headings == ["Intro"]


# ============================================================================
# Repairs
# ============================================================================


class TestRepairs:
    """Tests for the deterministic repair passes."""

    def test_repair_order_reconciles_arrays(self):
        """Missing refs and duplicates are dropped; orphans appended; duplicate ids renamed."""
        doc = NodeDoc(
            paragraphs=[Paragraph(id="p", md="a"), Paragraph(id="p", md="b"), Paragraph(id="q", md="c")],
            order=[OrderItem(kind="paragraph", id="p"), OrderItem(kind="paragraph", id="p"),
                   OrderItem(kind="paragraph", id="ghost")],
        )

        fixes = repair_order(doc)

        assert set(fixes) >= {"duplicate_block_id", "order_duplicate_ref", "order_missing_block",
                              "order_unreferenced_block"}
        assert len(doc.order) == 3
        assert len({o.id for o in doc.order}) == 3

    def test_repair_order_is_idempotent(self):
        """A consistent doc reports no fixes."""
        doc = valid_doc()

        assert repair_order(doc) == []

    def test_prune_meta_blocks(self):
        """Learner-interview paragraphs and check-in headings are removed."""
        doc = small_doc(
            ("heading", Heading(id="h", text="Quick check-in")),
            ("paragraph", Paragraph(id="p1", md="Tell me what you already know.")),
            ("paragraph", Paragraph(id="p2", md="Routers forward packets.")),
        )

        removed = prune_meta_blocks(doc)

        assert removed == ["meta_heading", "meta_paragraph"]
        assert [o.id for o in doc.order] == ["p2"]

    def test_scrub_meta_text(self):
        """Meta phrasing is rewritten or removed and whitespace collapsed."""
        text, hits = scrub_meta_text("Here's the plan for routing. Up next: subnets.")

        assert text == "overview for routing. subnets."
        assert hits == ["here's the plan", "up next"]

    def test_scrub_doc_reaches_nested_text(self):
        """Quick check options are scrubbed too."""
        doc = small_doc(("quick_check", QuickCheck(id="q", prompt_md="Wrap-up question", answer_md="a")))

        assert scrub_doc(doc) == ["wrap-up"]
        assert doc.quick_checks[0].prompt_md == "summary question"

    def test_dedupe_doc(self):
        """Repeated paragraphs, empty paragraphs and summary echoes are dropped."""
        doc = small_doc(
            ("paragraph", Paragraph(id="a", md="**Routers** forward.")),
            ("paragraph", Paragraph(id="b", md="routers forward.")),
            ("paragraph", Paragraph(id="c", md="   ")),
            ("paragraph", Paragraph(id="d", md="Summary text")),
        )
        doc.summary = "summary text"

        removed = dedupe_doc(doc)

        assert removed == ["duplicate_paragraph", "empty_paragraph", "summary_dup_paragraph"]
        assert [o.id for o in doc.order] == ["a"]

    def test_cap_block_type(self):
        """Only the first `limit` blocks survive; negative means unlimited."""
        doc = valid_doc()

        assert cap_block_type(doc, "paragraph", -1) == 0
        assert cap_block_type(doc, "paragraph", 2) == 6
        assert [b.id for k, b in doc.ordered_blocks() if k == "paragraph"] == ["paragraph_2", "paragraph_3"]

    def test_pad_minimums_closes_small_gaps_only(self):
        """A deficit of 2 is padded; a deficit larger than max_deficit is left alone."""
        req = requirements_for_template("concept")
        doc = small_doc(*[("paragraph", Paragraph(id=f"p{i}", md=f"text {i}")) for i in range(6)])

        padded = pad_minimums(doc, req, [(CHUNK, "Evidence text.")])

        assert padded.count("paragraph") == 2
        assert "callout" in padded
        assert "common_mistakes" in padded
        assert doc.paragraphs[-1].citations[0].chunk_id == CHUNK
        assert pad_minimums(small_doc(), req, [(CHUNK, "x")], max_deficit=0) == []

    def test_media_usage_is_shared(self):
        """A figure URL already used on the path is removed from the next doc."""
        usage = MediaUsage(["https://cdn/a.png"])
        doc = small_doc()
        assert inject_figure(doc, {"url": "https://cdn/a.png"}, CHUNK)
        assert not inject_figure(doc, {"url": "https://cdn/a.png"}, CHUNK)

        assert dedupe_media(doc, usage) == ["https://cdn/a.png"]
        assert doc.figures == []
        assert usage.claim("https://cdn/b.png") is True
        assert "https://cdn/b.png" in usage

    def test_media_claims_are_owned_per_lesson(self):
        """A lesson may re-claim its own URL; other lessons may not until it is released."""
        usage = MediaUsage(["https://cdn/stored.png"])
        lesson_a, lesson_b = uuid.uuid4(), uuid.uuid4()

        assert usage.claim("https://cdn/a.png", lesson_a)
        assert usage.claim("https://cdn/a.png", lesson_a)
        assert not usage.claim("https://cdn/a.png", lesson_b)
        assert not usage.claim("https://cdn/stored.png", lesson_a)

        assert usage.release(lesson_a) == 1
        assert usage.claim("https://cdn/a.png", lesson_b)
        assert usage.release(None) == 0
        assert "https://cdn/stored.png" in usage

    def test_dedupe_media_keeps_own_figure_on_retry(self):
        """The same lesson re-running dedupe keeps its figure but drops in-doc repeats."""
        usage = MediaUsage()
        lesson = uuid.uuid4()
        first = small_doc()
        inject_figure(first, {"url": "https://cdn/a.png"}, CHUNK)
        assert dedupe_media(first, usage, lesson) == []

        retry = small_doc()
        inject_figure(retry, {"url": "https://cdn/a.png"}, CHUNK)
        retry.insert_block("figure", retry.figures[0].model_copy(update={"id": "fig-copy"}))

        assert dedupe_media(retry, usage, lesson) == ["https://cdn/a.png"]
        assert [f.url for f in retry.figures] == ["https://cdn/a.png"]

    def test_repair_chain_is_a_fixpoint(self):
        """A second prune, scrub and dedupe pass changes nothing."""
        doc = small_doc(
            ("heading", Heading(id="h", text="Quick check-in")),
            ("paragraph", Paragraph(id="p1", md="Tell me what you already know.")),
            ("paragraph", Paragraph(id="p2", md="Here's the plan for routing. Up next: subnets.")),
            ("paragraph", Paragraph(id="p3", md="Here is the plan for routing. Up next: subnets.")),
            ("paragraph", Paragraph(id="p4", md="Routers forward packets.")),
            ("paragraph", Paragraph(id="p5", md="**Routers** forward packets.")),
            ("quick_check", QuickCheck(id="q", prompt_md="Wrap-up question", answer_md="a")),
        )
        assert prune_meta_blocks(doc) and scrub_doc(doc) and dedupe_doc(doc)
        once = canonical_json(doc_to_json(doc))

        assert prune_meta_blocks(doc) == []
        assert scrub_doc(doc) == []
        assert dedupe_doc(doc) == []
        assert canonical_json(doc_to_json(doc)) == once
        assert [o.id for o in doc.order] == ["p2", "p4", "q"]


# ============================================================================
# Citations
# ============================================================================


class TestCitations:
    """Tests for citation sanitation and must-cite coverage."""

    def test_normalize_chunk_id(self):
        """Non-UUIDs and the nil UUID are rejected; case is canonicalized."""
        assert normalize_chunk_id(CHUNK.upper()) == CHUNK
        assert normalize_chunk_id("nope") is None
        assert normalize_chunk_id(str(uuid.UUID(int=0))) is None

    def test_sanitize_drops_bad_and_backfills(self):
        """Disallowed and duplicate citations go; an emptied block gets the fallback."""
        doc = small_doc(
            ("paragraph", Paragraph(id="a", md="x", citations=[
                Citation(chunk_id=CHUNK), Citation(chunk_id=CHUNK.upper()), Citation(chunk_id=OTHER)])),
            ("paragraph", Paragraph(id="b", md="y", citations=[Citation(chunk_id="junk")])),
        )

        stats = sanitize_citations(doc, {CHUNK}, {CHUNK: chunk("Chunk text", page=4)}, [CHUNK])

        assert [c.chunk_id for c in doc.paragraphs[0].citations] == [CHUNK]
        assert doc.paragraphs[1].citations[0].quote == "Chunk text"
        assert doc.paragraphs[1].citations[0].loc.page == 4
        assert stats.blocks_backfilled == 1
        assert stats.citations_dropped == 3

    def test_sanitize_with_empty_allowed_set_backfills_nothing(self):
        """No allowed chunks means no invented evidence."""
        doc = small_doc(("paragraph", Paragraph(id="a", md="x", citations=[Citation(chunk_id=CHUNK)])))

        sanitize_citations(doc, set(), {}, [CHUNK])

        assert doc.paragraphs[0].citations == []

    def test_truncate_utf8_keeps_characters_whole(self):
        """Multi-byte characters are never split."""
        assert truncate_utf8("héllo", 2) == "h"

    def test_must_cite_injection_targets_first_teaching_block(self):
        """Missing must-cite chunks attach to the first paragraph."""
        doc = valid_doc()

        missing = missing_must_cite_ids(doc, [CHUNK, OTHER])
        assert missing == [OTHER]
        assert inject_missing_must_cite(doc, missing, {OTHER: chunk("Other")})
        assert OTHER in {c.chunk_id for c in doc.paragraphs[0].citations}
        assert not inject_missing_must_cite(doc, [], {})


# ============================================================================
# Flow
# ============================================================================


class TestFlow:
    """Tests for quick check ordering and threading."""

    def test_quick_check_moves_after_teaching(self):
        """A quick check citing an untaught chunk waits for the paragraph that teaches it."""
        doc = small_doc(
            ("quick_check", QuickCheck(id="q", prompt_md="?", answer_md="!", citations=[Citation(chunk_id=CHUNK)])),
            ("paragraph", Paragraph(id="p", md="teach", citations=[Citation(chunk_id=CHUNK)])),
        )

        stats = ensure_quick_checks_after_teaching(doc, {})

        assert [o.id for o in doc.order] == ["p", "q"]
        assert stats.quick_checks_reordered == 1
        assert stats.pending_quick_checks_resolved == 1

    def test_never_taught_chunk_gets_context_paragraph(self):
        """A quick check on untaught evidence is preceded by a quoted excerpt."""
        doc = small_doc(
            ("quick_check", QuickCheck(id="q", prompt_md="?", answer_md="!", citations=[Citation(chunk_id=OTHER)])),
        )

        stats = ensure_quick_checks_after_teaching(doc, {OTHER: chunk("The excerpt.")})

        assert stats.context_paragraphs_inserted == 1
        assert doc.order[0].kind == "paragraph"
        assert "> The excerpt." in doc.paragraphs[0].md

    def test_threading_paragraph_lands_before_tail(self):
        """Neighbour references go before the first tail block."""
        doc = valid_doc()
        tail_index = next(i for i, o in enumerate(doc.order) if o.kind == "common_mistakes")

        assert ensure_threading_references(doc, "Subnetting", "Address Translation", "Layer 3", CHUNK)
        assert doc.order[tail_index].kind == "paragraph"

        errs, metrics = validate_threading(doc_text(doc), "Subnetting", "Address Translation", "Layer 3")
        assert errs == []
        assert metrics == {"prev_title_present": True, "next_title_present": True, "module_title_present": True}

    def test_threading_noop_when_titles_present(self):
        """Nothing is inserted when the doc already names its neighbours."""
        doc = valid_doc()

        assert not ensure_threading_references(doc, "routing tables", "", "")
        assert validate_threading("", "a", "b", "c") == ([], {})


# ============================================================================
# Diagrams
# ============================================================================


class TestDiagrams:
    """Tests for diagram sanitation and the fallback flow SVG."""

    def test_svg_scripts_and_handlers_are_stripped(self):
        """Only the svg element survives, without script or on* attributes."""
        raw = 'prefix <svg onload="x()"><script>alert(1)</script><rect/></svg> suffix'

        assert extract_and_sanitize_svg(raw) == "<svg><rect/></svg>"

    def test_mermaid_caption_is_split(self):
        """Fences are removed and a trailing prose line becomes the caption."""
        src, caption = split_mermaid_source_and_caption(
            "```mermaid\nflowchart LR\nA-->B\nThis diagram shows the forwarding path.\n```"
        )

        assert src == "flowchart LR\nA-->B"
        assert caption == "This diagram shows the forwarding path."

    def test_sanitize_infers_kind(self):
        """A diagram with unknown kind and svg source becomes svg."""
        doc = parse_node_doc({"blocks": [{"type": "diagram", "kind": "", "source": "<svg></svg>"}]})

        assert sanitize_diagrams(doc) == 1
        assert doc.diagrams[0].kind == "svg"

    def test_flow_svg_caps_labels(self):
        """At most four boxes are drawn and labels are escaped."""
        svg = build_simple_flow_svg(["a", "b", "c", "d", "e<"])

        assert svg.count("<rect") == 4
        assert build_simple_flow_svg(["x<y"]).count("x&lt;y") == 1
        assert build_simple_flow_svg([]) == ""

    def test_ensure_diagram_needs_an_allowed_chunk(self):
        """The fallback diagram cites an allowed chunk or is not inserted."""
        doc = valid_doc()

        assert not ensure_diagram(doc, set(), [CHUNK])
        assert ensure_diagram(doc, {CHUNK}, [CHUNK])
        assert doc.diagrams[0].caption == AUTO_DIAGRAM_CAPTION
        assert doc.order[2].kind == "diagram"
        assert not ensure_diagram(doc, {CHUNK}, [CHUNK])
