"""Per-concept learner state, compacted for prompts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from .records import ConceptRecord, UserConceptStateRecord

KNOWN_MASTERY = 0.85
KNOWN_CONFIDENCE = 0.6
WEAK_MASTERY = 0.5
WEAK_CONFIDENCE = 0.35


def concept_status(state: UserConceptStateRecord | None) -> str:
    if state is None:
        return "unseen"
    if state.mastery >= KNOWN_MASTERY and state.confidence >= KNOWN_CONFIDENCE:
        return "known"
    if state.mastery <= WEAK_MASTERY or state.confidence <= WEAK_CONFIDENCE:
        return "weak"
    return "learning"


@dataclass
class UserKnowledgeContext:
    concepts: list[dict[str, Any]] = field(default_factory=list)
    known_ratio: float = 0.0
    seen_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "concepts": self.concepts,
            "summary": {"known_ratio": round(self.known_ratio, 3), "seen_ratio": round(self.seen_ratio, 3)},
        }

    @property
    def is_empty(self) -> bool:
        return not self.concepts


def build_user_knowledge(
    concept_keys: Sequence[str],
    concepts_by_key: dict[str, ConceptRecord],
    states: dict[UUID, UserConceptStateRecord],
    now: datetime | None = None,
) -> UserKnowledgeContext:
    """
    Resolve each key to its canonical concept and look up the learner's state.

    States are keyed by canonical concept id; a concept without a canonical
    link is looked up by its own id.
    """
    now = now or datetime.now(timezone.utc)
    ctx = UserKnowledgeContext()
    known = seen = 0
    for key in concept_keys:
        concept = concepts_by_key.get(key)
        if concept is None:
            continue
        canonical = concept.canonical_concept_id or concept.id
        state = states.get(canonical)
        status = concept_status(state)
        entry: dict[str, Any] = {"key": key, "status": status}
        if state is not None:
            seen += 1
            known += status == "known"
            entry.update(
                {
                    "mastery": round(state.mastery, 3),
                    "confidence": round(state.confidence, 3),
                    "coverage_debt": round(state.coverage_debt, 3),
                    "last_seen": state.last_seen_at.isoformat() if state.last_seen_at else None,
                    "due": bool(state.next_review_at and _aware(state.next_review_at) <= now),
                }
            )
        ctx.concepts.append(entry)
    if ctx.concepts:
        ctx.known_ratio = known / len(ctx.concepts)
        ctx.seen_ratio = seen / len(ctx.concepts)
    return ctx


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def canonical_ids(concepts: Sequence[ConceptRecord]) -> list[UUID]:
    return sorted({c.canonical_concept_id or c.id for c in concepts}, key=str)


def load_user_knowledge(repo, user_id: UUID, concept_keys: Sequence[str], concepts_by_key: dict[str, ConceptRecord]):
    """Repository-backed convenience wrapper around `build_user_knowledge`."""
    wanted = [concepts_by_key[k] for k in concept_keys if k in concepts_by_key]
    states = repo.list_user_concept_states(user_id, canonical_ids(wanted))
    return build_user_knowledge(concept_keys, concepts_by_key, states)
