"""
Unit tests for must-cite distribution.
"""
import uuid

import pytest

from src.pipeline.must_cite import distribute_must_cite, per_node_cap, uncovered_chunk_ids


def ids(n, prefix):
    return [uuid.UUID(f"{prefix:08x}-0000-0000-0000-{i:012x}") for i in range(1, n + 1)]


class TestPerNodeCap:
    """Tests for per_node_cap()."""

    @pytest.mark.parametrize(
        "configured,uncovered,nodes,expected",
        [
            (2, 2, 4, 2),
            (0, 0, 4, 2),
            (20, 0, 4, 8),
            (-3, 0, 4, 1),
            (2, 12, 4, 3),
            (2, 100, 4, 10),
        ],
    )
    def test_cap(self, configured, uncovered, nodes, expected):
        """Configured cap clamps to [1, 8] and grows to cover the backlog, never past 10."""
        assert per_node_cap(configured, uncovered, nodes) == expected


class TestDistributeMustCite:
    """Tests for distribute_must_cite()."""

    def test_uncovered_excludes_cited(self):
        """Cited ids (as strings or UUIDs) are removed; output sorted."""
        a, b, c = ids(3, 1)

        assert uncovered_chunk_ids([c, a, b], [str(b)]) == [a, c]

    def test_chunks_go_to_the_most_similar_node(self):
        """Each chunk lands on its best-cosine node."""
        n1, n2 = ids(2, 2)
        c1, c2 = ids(2, 3)
        node_vecs = {n1: [1.0, 0.0], n2: [0.0, 1.0]}
        chunk_vecs = {c1: [0.9, 0.1], c2: [0.1, 0.9]}

        out = distribute_must_cite([c1, c2], chunk_vecs, [n1, n2], node_vecs, 2)

        assert out == {n1: [c1], n2: [c2]}

    def test_full_node_overflows_to_least_loaded(self):
        """Once the best node is at cap, the chunk goes to the least loaded node."""
        n1, n2 = ids(2, 2)
        chunks = ids(3, 3)
        node_vecs = {n1: [1.0, 0.0], n2: [0.0, 1.0]}
        chunk_vecs = {c: [1.0, 0.0] for c in chunks}

        out = distribute_must_cite(chunks, chunk_vecs, [n1, n2], node_vecs, 2)

        assert out[n1] == chunks[:2]
        assert out[n2] == chunks[2:]

    def test_missing_embeddings_balance_load(self):
        """Chunks with no vector spread over the least loaded nodes."""
        nodes = ids(3, 2)
        chunks = ids(3, 3)

        out = distribute_must_cite(chunks, {}, nodes, {}, 2)

        assert sorted(len(v) for v in out.values()) == [1, 1, 1]

    def test_full_nodes_still_take_every_chunk(self):
        """Past every node's cap, chunks keep landing on a node instead of being dropped."""
        nodes = ids(1, 2)
        chunks = ids(15, 3)

        out = distribute_must_cite(chunks, {}, nodes, {}, 2)

        assert out[nodes[0]] == chunks

    def test_forty_chunks_over_three_lessons_cover_everything(self):
        """Every uncovered chunk is assigned; overflow follows the best-matching node."""
        nodes = ids(3, 2)
        chunks = ids(40, 3)
        axes = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
        node_vecs = dict(zip(nodes, axes))
        chunk_vecs = {c: axes[i % 3] for i, c in enumerate(chunks)}

        out = distribute_must_cite(chunks, chunk_vecs, nodes, node_vecs, 2)

        assigned = [c for share in out.values() for c in share]
        assert sorted(assigned) == sorted(chunks)
        assert len(assigned) == len(set(assigned))
        assert all(len(share) >= 2 for share in out.values())

    def test_overflow_without_vectors_balances_load(self):
        """With no embeddings, overflow past the cap stays balanced."""
        nodes = ids(3, 2)
        chunks = ids(40, 3)

        out = distribute_must_cite(chunks, {}, nodes, {}, 2)

        assert sorted(len(v) for v in out.values()) == [13, 13, 14]

    def test_empty_inputs(self):
        """No chunks yields empty lists for every node."""
        nodes = ids(2, 2)

        assert distribute_must_cite([], {}, nodes, {}) == {nodes[0]: [], nodes[1]: []}
