"""
Unit tests for concept cluster parsing and the cluster build stage.
"""
import uuid

import pytest

from src.pipeline.concept_clusters import build_concept_clusters, cluster_embed_doc, parse_clusters
from src.pipeline.errors import ContractError, DependencyMissingError
from src.pipeline.records import ConceptRecord
from src.pipeline.saga import PINECONE_DELETE_IDS
from src.sync.vector_store import path_clusters_namespace

PATH_ID = uuid.UUID("00000000-0000-0000-0000-0000000000d2")
KEYS = ["ip_addressing", "subnet_mask", "routing"]


@pytest.fixture
def path_concepts(uow):
    rows = []
    for i, key in enumerate(KEYS):
        row = ConceptRecord(
            id=uuid.uuid5(PATH_ID, key), scope="path", scope_id=PATH_ID, key=key,
            name=key.replace("_", " ").title(), summary=f"About {key}.", sort_index=i,
        )
        uow.store.concepts[row.id] = row
        rows.append(row)
    return rows


CLUSTERS = {
    "clusters": [
        {"label": "Addressing", "rationale": "How hosts are named.", "tags": ["ipv4", "ipv4"],
         "concept_keys": ["IP Addressing", "subnet_mask", "ghost"]},
        {"label": "Forwarding", "concept_keys": ["routing"]},
        {"label": "Empty", "concept_keys": ["ghost"]},
    ]
}


class TestParseClusters:
    """Tests for parse_clusters()."""

    def test_filters_keys_and_sorts(self):
        """Member keys are normalized and restricted to known concepts; clusters sort by label."""
        out = parse_clusters(CLUSTERS, set(KEYS))

        assert [c.label for c in out] == ["Addressing", "Empty", "Forwarding"]
        assert out[0].concept_keys == ["ip_addressing", "subnet_mask"]
        assert out[0].tags == ["ipv4"]
        assert out[1].concept_keys == []

    def test_same_label_merges(self):
        """Repeated labels merge their members."""
        out = parse_clusters(
            {"clusters": [{"label": "A", "concept_keys": ["routing"]},
                          {"label": " A ", "concept_keys": ["subnet_mask", "routing"]},
                          {"label": "", "concept_keys": ["routing"]}, "junk"]},
            set(KEYS),
        )

        assert len(out) == 1
        assert out[0].concept_keys == ["routing", "subnet_mask"]

    def test_embed_doc(self):
        """The embed document joins label, rationale, tags and keys."""
        c = parse_clusters(CLUSTERS, set(KEYS))[0]

        assert cluster_embed_doc(c) == "Addressing\nHow hosts are named.\nipv4\nip_addressing, subnet_mask"


class TestBuildConceptClusters:
    """Tests for build_concept_clusters()."""

    @pytest.mark.asyncio
    async def test_build_writes_clusters_members_and_vectors(
        self, uow, seed, prompts, vectors, settings, path_concepts
    ):
        """Clusters with members are stored, logged for compensation and indexed."""
        prompts.script("concept_clusters", CLUSTERS)

        result = await build_concept_clusters(seed.stage_input(PATH_ID), uow, prompts, vectors, settings)

        assert (result.clusters_made, result.members_made) == (2, 3)
        assert sorted(c.label for c in uow.store.clusters.values()) == ["Addressing", "Forwarding"]
        assert len(uow.store.cluster_members) == 3
        assert [a.kind for a in uow.store.saga_actions.values()] == [PINECONE_DELETE_IDS]
        assert len(vectors.namespaces[path_clusters_namespace(PATH_ID)]) == 2

    @pytest.mark.asyncio
    async def test_existing_clusters_skip(self, uow, seed, prompts, vectors, settings, path_concepts):
        """A path with clusters is not rebuilt."""
        prompts.script("concept_clusters", CLUSTERS)
        await build_concept_clusters(seed.stage_input(PATH_ID), uow, prompts, vectors, settings)
        calls = len(prompts.calls)

        again = await build_concept_clusters(seed.stage_input(PATH_ID), uow, prompts, vectors, settings)

        assert again.skipped is True
        assert len(prompts.calls) == calls

    @pytest.mark.asyncio
    async def test_no_usable_clusters_writes_nothing(self, uow, seed, prompts, settings, path_concepts):
        """Clusters without known members are dropped and nothing is stored."""
        prompts.script("concept_clusters", {"clusters": [{"label": "Empty", "concept_keys": ["ghost"]}]})

        result = await build_concept_clusters(seed.stage_input(PATH_ID), uow, prompts, None, settings)

        assert result.clusters_made == 0
        assert uow.store.clusters == {}

    @pytest.mark.asyncio
    async def test_requires_path_and_concepts(self, uow, seed, prompts, settings):
        """A missing path id is a contract error; a path without concepts is a missing dependency."""
        with pytest.raises(ContractError):
            await build_concept_clusters(seed.stage_input(), uow, prompts, None, settings)
        with pytest.raises(DependencyMissingError):
            await build_concept_clusters(seed.stage_input(PATH_ID), uow, prompts, None, settings)
