"""
Unit tests for material knowledge graph extraction and global entity resolution.
"""
import uuid

import pytest

from src.pipeline.errors import DependencyMissingError, SchemaRejectedError
from src.pipeline.global_entities import (
    normalize_global_entity_key,
    resolve_global_entities,
    similarity_threshold,
)
from src.pipeline.ids import deterministic_uuid
from src.pipeline.material_kg import (
    build_material_kg,
    claim_key,
    entity_key,
    material_kg_batch,
    parse_material_kg,
)
from src.pipeline.records import EntityRecord, GlobalEntityRecord

SET_ID = uuid.UUID("00000000-0000-0000-0000-0000000000b1")
TEXTS = [
    "OSPF is a link-state routing protocol.",
    "OSPF runs Dijkstra's algorithm to compute shortest paths.",
]


def extraction(chunk_ids):
    a, b = (str(c) for c in chunk_ids)
    return {
        "entities": [
            {"name": "OSPF", "type": "Protocol", "description": "Link-state", "aliases": ["Open Shortest Path First"],
             "evidence_chunk_ids": [a, "not-a-chunk"]},
            {"name": "ospf ", "description": "Link-state interior gateway protocol"},
            {"name": "   "},
        ],
        "claims": [
            {"content": "OSPF  uses link state.", "kind": "Fact", "confidence": "2",
             "evidence_chunk_ids": [b], "entity_names": ["OSPF", "Dijkstra"], "concept_keys": ["Routing"]},
            {"content": ""},
        ],
    }


def entity(name, aliases=(), set_id=SET_ID):
    key = entity_key(name)
    return EntityRecord(
        id=deterministic_uuid("material_entity", set_id, key), material_set_id=set_id, key=key, name=name,
        aliases=list(aliases),
    )


class TestParseMaterialKG:
    """Tests for parse_material_kg()."""

    def test_entities_claims_and_links(self):
        """Entities dedupe by key, claims by content hash; only allowed chunks link."""
        chunk_ids = [uuid.uuid4(), uuid.uuid4()]
        concept_id = uuid.uuid4()

        g = parse_material_kg(extraction(chunk_ids), SET_ID, {str(c) for c in chunk_ids}, {"routing": concept_id})

        assert sorted(g.entities) == ["dijkstra", "ospf"]
        ospf = g.entities["ospf"]
        assert (ospf.type, ospf.description) == ("protocol", "Link-state interior gateway protocol")
        assert ospf.aliases == ["Open Shortest Path First"]
        assert g.entities["dijkstra"].type == "unknown"

        claim = g.claims[claim_key("ospf uses link state.")]
        assert (claim.content, claim.kind, claim.confidence) == ("OSPF uses link state.", "fact", 1.0)

        tables = sorted(link.table for link in g.links.values())
        assert tables == ["chunk_claim", "chunk_entity", "claim_concept", "claim_entity", "claim_entity"]

    def test_ids_are_deterministic(self):
        """Parsing twice yields the same ids."""
        chunk_ids = [uuid.uuid4(), uuid.uuid4()]
        allowed = {str(c) for c in chunk_ids}

        first = parse_material_kg(extraction(chunk_ids), SET_ID, allowed, {})
        second = parse_material_kg(extraction(chunk_ids), SET_ID, allowed, {})

        assert set(first.links) == set(second.links)
        assert first.entities["ospf"].id == second.entities["ospf"].id

    def test_graph_batch_shapes(self):
        """Links become typed relations between labelled nodes."""
        chunk_ids = [uuid.uuid4(), uuid.uuid4()]
        g = parse_material_kg(extraction(chunk_ids), SET_ID, {str(c) for c in chunk_ids}, {})

        batch = material_kg_batch(g)

        assert sorted(r.type for r in batch.rels) == ["ABOUT", "ABOUT", "MENTIONS", "SUPPORTS"]
        assert {n.label for n in batch.nodes} == {"MaterialEntity", "MaterialClaim", "Chunk"}


class TestGlobalEntities:
    """Tests for resolve_global_entities()."""

    def test_key_normalization(self):
        """Punctuation collapses and '&' reads as 'and'."""
        assert normalize_global_entity_key("  AT&T  Labs!! ") == "at and t labs"
        assert normalize_global_entity_key(None) == ""

    def test_short_keys_need_a_stricter_match(self):
        """Acronym-length keys raise the threshold."""
        assert similarity_threshold("ospf", 0.88) == pytest.approx(0.92)
        assert similarity_threshold("routing", 0.88) == 0.88

    def test_key_alias_embedding_and_new(self, embedder):
        """Resolution goes by key, then alias, then embedding; the rest are created."""
        bgp_vec = embedder.vector("border gateway protocol")
        existing = [
            GlobalEntityRecord(id=uuid.uuid4(), key="ospf", name="OSPF"),
            GlobalEntityRecord(id=uuid.uuid4(), key="intermediate system", name="IS-IS", aliases=["IS IS"]),
            GlobalEntityRecord(id=uuid.uuid4(), key="border gateway protocol", name="BGP", embedding=bgp_vec),
        ]
        entities = [entity("OSPF"), entity("is-is"), entity("BGP routing"), entity("RIP")]
        embeddings = {entities[2].id: bgp_vec, entities[3].id: embedder.vector("rip")}

        res = resolve_global_entities(entities, existing, embeddings, 0.88)

        assert res.assignments[entities[0].id] == existing[0].id
        assert res.assignments[entities[1].id] == existing[1].id
        assert res.assignments[entities[2].id] == existing[2].id
        assert (res.by_key, res.by_alias, res.by_embedding) == (1, 1, 1)
        assert [g.key for g in res.created] == ["rip"]
        assert res.assignments[entities[3].id] == deterministic_uuid("global_entity", "rip")

    def test_new_globals_are_matched_within_the_batch(self):
        """A created global entity is visible to later entities."""
        entities = [entity("Spanning Tree"), entity("spanning-tree", set_id=uuid.uuid4())]

        res = resolve_global_entities(entities, [], {}, 0.88)

        assert len(res.created) == 1
        assert len(set(res.assignments.values())) == 1


class TestBuildMaterialKG:
    """Tests for build_material_kg()."""

    @pytest.mark.asyncio
    async def test_build_writes_graph_and_global_entities(self, uow, seed, prompts, settings):
        """Entities, claims, links and new global entities are written once."""
        settings.global_entity_sim_threshold = 2.0
        chunk_ids = seed.add_chunks(TEXTS)
        prompts.script("material_kg_extract", extraction(chunk_ids))

        result = await build_material_kg(seed.stage_input(), uow, prompts, None, settings)

        assert (result.entities_upserted, result.claims_upserted) == (2, 1)
        assert result.links_inserted == 4
        assert result.global_entities_created == 2
        assert all(e.global_entity_id is not None for e in uow.store.entities.values())
        assert sorted(uow.store.global_entities) == ["dijkstra", "ospf"]

    @pytest.mark.asyncio
    async def test_existing_graph_skips(self, uow, seed, prompts, settings):
        """A set with entities or claims is not re-extracted."""
        chunk_ids = seed.add_chunks(TEXTS)
        prompts.script("material_kg_extract", extraction(chunk_ids))
        await build_material_kg(seed.stage_input(), uow, prompts, None, settings)

        again = await build_material_kg(seed.stage_input(), uow, prompts, None, settings)

        assert (again.skipped, again.reason) == (True, "exists")
        assert len(prompts.calls_for("material_kg_extract")) == 1

    @pytest.mark.asyncio
    async def test_ai_failure_is_a_skip(self, uow, seed, prompts, settings):
        """Provider errors skip the stage instead of failing it."""
        seed.add_chunks(TEXTS)
        prompts.script("material_kg_extract", RuntimeError("provider down"))

        result = await build_material_kg(seed.stage_input(), uow, prompts, None, settings)

        assert result.skipped is True
        assert result.reason.startswith("ai_failed")
        assert uow.store.entities == {}

    @pytest.mark.asyncio
    async def test_schema_rejection_propagates(self, uow, seed, prompts, settings):
        """A rejected schema is not treated as a transient failure."""
        seed.add_chunks(TEXTS)
        prompts.script("material_kg_extract", SchemaRejectedError("prompts", "bad schema"))

        with pytest.raises(SchemaRejectedError):
            await build_material_kg(seed.stage_input(), uow, prompts, None, settings)

    @pytest.mark.asyncio
    async def test_graph_sync_when_enabled(self, uow, seed, prompts, graph, settings):
        """Enabled graph sync pushes the extracted graph."""
        settings.graph_sync_enabled = True
        chunk_ids = seed.add_chunks(TEXTS)
        prompts.script("material_kg_extract", extraction(chunk_ids))

        await build_material_kg(seed.stage_input(), uow, prompts, graph, settings)

        assert len(graph.batches) == 1
        assert len(graph.batches[0].rels) == 4

    @pytest.mark.asyncio
    async def test_missing_files(self, uow, seed, prompts, settings):
        """A set without files is a missing dependency."""
        with pytest.raises(DependencyMissingError):
            await build_material_kg(seed.stage_input(), uow, prompts, None, settings)
