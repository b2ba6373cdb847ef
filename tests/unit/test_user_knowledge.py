"""
Unit tests for user knowledge context and path intake readers.
"""
import uuid
from datetime import datetime, timedelta, timezone

from src.pipeline.path_context import charter_style, intake_context
from src.pipeline.records import ConceptRecord, UserConceptStateRecord
from src.pipeline.user_knowledge import build_user_knowledge, concept_status, load_user_knowledge


def concept(key, canonical=None):
    return ConceptRecord(
        id=uuid.uuid5(uuid.NAMESPACE_URL, key),
        scope="path",
        scope_id=None,
        key=key,
        name=key,
        canonical_concept_id=canonical,
    )


class TestConceptStatus:
    """Tests for concept_status()."""

    def test_thresholds(self):
        """unseen / known / weak / learning follow the mastery and confidence bands."""
        cid = uuid.uuid4()
        assert concept_status(None) == "unseen"
        assert concept_status(UserConceptStateRecord(cid, mastery=0.9, confidence=0.7)) == "known"
        assert concept_status(UserConceptStateRecord(cid, mastery=0.4, confidence=0.9)) == "weak"
        assert concept_status(UserConceptStateRecord(cid, mastery=0.7, confidence=0.5)) == "learning"


class TestBuildUserKnowledge:
    """Tests for build_user_knowledge()."""

    def test_states_are_looked_up_by_canonical_id(self):
        """A path concept reads the learner state recorded on its canonical concept."""
        canonical = uuid.uuid4()
        c = concept("tcp", canonical=canonical)
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        state = UserConceptStateRecord(
            canonical, mastery=0.9, confidence=0.8, next_review_at=datetime(2025, 12, 31)
        )

        ctx = build_user_knowledge(["tcp", "udp"], {"tcp": c, "udp": concept("udp")}, {canonical: state}, now)

        assert ctx.concepts[0]["status"] == "known"
        assert ctx.concepts[0]["due"] is True
        assert ctx.concepts[1] == {"key": "udp", "status": "unseen"}
        assert ctx.known_ratio == 0.5
        assert ctx.seen_ratio == 0.5

    def test_unknown_keys_are_skipped(self):
        """Keys without a concept row contribute nothing."""
        ctx = build_user_knowledge(["ghost"], {}, {})

        assert ctx.is_empty
        assert ctx.to_dict()["summary"] == {"known_ratio": 0.0, "seen_ratio": 0.0}

    def test_load_user_knowledge_reads_states(self, uow, seed):
        """The repository wrapper queries states for canonical ids only."""
        c = concept("dns")
        uow.store.concept_states[(seed.user_id, c.id)] = UserConceptStateRecord(
            c.id, mastery=0.2, confidence=0.2, next_review_at=datetime.now(timezone.utc) + timedelta(days=3)
        )

        with uow.read() as repo:
            ctx = load_user_knowledge(repo, seed.user_id, ["dns"], {"dns": c})

        assert ctx.concepts[0]["status"] == "weak"
        assert ctx.concepts[0]["due"] is False


class TestIntakeContext:
    """Tests for path metadata readers."""

    def test_absent_intake_is_confirmed(self):
        """No intake at all never pauses a stage."""
        ctx = intake_context({})

        assert ctx.confirmed is True
        assert ctx.present is False

    def test_unconfirmed_intake_pauses(self):
        """A present intake needs paths_confirmed."""
        file_id = uuid.uuid4()
        ctx = intake_context(
            {"intake": {"paths_confirmed": "no", "material_file_ids": [str(file_id), "junk"]}, "intake_md": " Goal "}
        )

        assert ctx.present is True
        assert ctx.confirmed is False
        assert ctx.file_ids == [file_id]
        assert ctx.intent_md == "Goal"

    def test_charter_style_prefers_path_style(self):
        """path_style wins over the legacy style key."""
        meta = {"charter": {"path_style": {"tone": "plain"}, "style": {"tone": "old"}}}

        assert charter_style(meta) == {"tone": "plain"}
        assert charter_style({"charter": {"style": {"tone": "old"}}}) == {"tone": "old"}
        assert charter_style(None) == {}
