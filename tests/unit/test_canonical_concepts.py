"""
Unit tests for canonical concept matching and canonicalization.
"""
import uuid

import pytest

from src.pipeline.canonical_concepts import (
    accept_semantic_match,
    canonicalize_path_concepts,
    global_concept_id,
    global_vector_items,
    match_canonical_concepts,
)
from src.pipeline.concept_normalizer import ConceptItem
from src.pipeline.records import ConceptRecord
from src.sync.vector_store import GLOBAL_CONCEPTS_NAMESPACE, VectorItem, VectorMatch, vector_id


def global_row(key, canonical=None, embedding=None):
    gid = global_concept_id(key)
    return ConceptRecord(
        id=gid, scope="global", scope_id=None, key=key, name=key,
        canonical_concept_id=canonical or gid, embedding=embedding,
    )


def path_concept(key, path_id, embedding=None):
    return ConceptRecord(
        id=uuid.uuid5(path_id, key), scope="path", scope_id=path_id, key=key, name=key.title(), embedding=embedding
    )


class TestAcceptSemanticMatch:
    """Tests for accept_semantic_match()."""

    @pytest.mark.parametrize(
        "scores,expected",
        [
            ([0.95, 0.80], "a"),
            ([0.95, 0.94], None),
            ([0.80], None),
            ([0.90], "a"),
            ([], None),
        ],
    )
    def test_score_floor_and_gap(self, scores, expected):
        """The best match needs min_score and a min_gap lead."""
        matches = [VectorMatch(id=chr(ord("a") + i), score=s, metadata={}) for i, s in enumerate(scores)]

        best = accept_semantic_match(matches, 0.885, 0.02)

        assert (best.id if best else None) == expected


class TestMatchCanonicalConcepts:
    """Tests for match_canonical_concepts()."""

    @pytest.mark.asyncio
    async def test_exact_then_alias(self, uow):
        """Exact key wins; otherwise an alias key resolves to the row's root."""
        root = global_row("internet_protocol")
        alias = global_row("ip_protocol", canonical=root.id)
        for row in (root, alias):
            uow.store.concepts[row.id] = row

        mapping, report = await match_canonical_concepts(
            [ConceptItem(key="internet_protocol"), ConceptItem(key="ip", aliases=["IP Protocol"])],
            {},
            uow,
            None,
        )

        assert mapping == {"internet_protocol": root.id, "ip": root.id}
        assert (report.exact, report.alias) == (1, 1)
        assert report.sources == {"internet_protocol": "exact", "ip": "alias"}

    @pytest.mark.asyncio
    async def test_semantic_match_follows_redirect(self, uow, vectors, embedder):
        """An ANN hit on an alias row redirects one hop to its canonical root."""
        root = global_row("transmission_control")
        alias = global_row("tcp_protocol", canonical=root.id)
        for row in (root, alias):
            uow.store.concepts[row.id] = row
        vec = embedder.vector("tcp handshake")
        await vectors.upsert(
            GLOBAL_CONCEPTS_NAMESPACE,
            [VectorItem(id=vector_id("concept", alias.id), values=vec,
                        metadata={"type": "concept", "scope": "global", "canonical": True})],
        )

        mapping, report = await match_canonical_concepts(
            [ConceptItem(key="tcp_handshake")], {"tcp_handshake": vec}, uow, vectors
        )

        assert mapping == {"tcp_handshake": root.id}
        assert (report.semantic, report.redirected) == (1, 1)

    @pytest.mark.asyncio
    async def test_ann_failure_leaves_unmatched(self, uow, vectors, embedder):
        """Vector errors are counted, never raised."""
        vectors.fail_queries = True

        mapping, report = await match_canonical_concepts(
            [ConceptItem(key="dns")], {"dns": embedder.vector("dns")}, uow, vectors
        )

        assert mapping == {}
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_weak_match_is_rejected(self, uow, vectors, embedder):
        """A low-scoring nearest neighbour is not accepted."""
        await vectors.upsert(
            GLOBAL_CONCEPTS_NAMESPACE,
            [VectorItem(id="concept:" + str(uuid.uuid4()), values=embedder.vector("unrelated words entirely"),
                        metadata={"type": "concept", "scope": "global", "canonical": True})],
        )

        mapping, report = await match_canonical_concepts(
            [ConceptItem(key="dns")], {"dns": embedder.vector("dns resolver")}, uow, vectors
        )

        assert mapping == {}
        assert report.rejected == 1


class TestCanonicalizePathConcepts:
    """Tests for canonicalize_path_concepts()."""

    def test_unmatched_concept_becomes_canonical(self, uow):
        """A new global row points at itself and the path concept points at it."""
        path_id = uuid.uuid4()
        c = path_concept("subnet_mask", path_id, embedding=[1.0, 0.0])
        uow.store.concepts[c.id] = c

        with uow.transaction() as repo:
            result = canonicalize_path_concepts(repo, [c], {})

        gid = global_concept_id("subnet_mask")
        assert [g.id for g in result.created] == [gid]
        assert result.assignments == {c.id: gid}
        assert uow.store.concepts[c.id].canonical_concept_id == gid
        assert [i.id for i in global_vector_items(result.created)] == [vector_id("concept", gid)]

    def test_matched_concept_gets_alias_row(self, uow):
        """A matched key gets a global alias row linked to the match, which is not indexed."""
        root = global_row("internet_protocol")
        uow.store.concepts[root.id] = root
        path_id = uuid.uuid4()
        c = path_concept("ip", path_id, embedding=[1.0])
        uow.store.concepts[c.id] = c

        with uow.transaction() as repo:
            result = canonicalize_path_concepts(repo, [c], {"ip": root.id})

        created = result.created[0]
        assert created.canonical_concept_id == root.id
        assert created.metadata["alias_for"] == str(root.id)
        assert result.assignments == {c.id: root.id}
        assert global_vector_items(result.created) == []

    def test_existing_global_row_is_reused(self, uow):
        """A key with a global row already is linked to that row's root without new rows."""
        root = global_row("dns")
        uow.store.concepts[root.id] = root
        c = path_concept("dns", uuid.uuid4())
        uow.store.concepts[c.id] = c

        with uow.transaction() as repo:
            result = canonicalize_path_concepts(repo, [c], {})

        assert result.created == []
        assert result.assignments == {c.id: root.id}
