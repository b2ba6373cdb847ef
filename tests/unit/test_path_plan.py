"""
Unit tests for the path planning stage.
"""
import uuid

import pytest

from src.pipeline.errors import ContractError, DependencyMissingError
from src.pipeline.path_plan import PathPlanner, path_node_id
from src.pipeline.records import ConceptRecord, EdgeRecord

CHARTER = {"path_style": {"tone": "direct"}, "goals": ["Route packets"]}


def node(index, title, kind="lesson", parent=None, keys=()):
    return {"index": index, "parent_index": parent, "node_kind": kind, "title": title, "concept_keys": list(keys)}


STRUCTURE = {
    "title": "Networking fundamentals",
    "description": "From masks to routes.",
    "nodes": [
        node(1, "Layer 3", kind="module"),
        node(2, "Masks and routes", parent=1, keys=["routing", "Subnet Mask"]),
    ],
}
PARTIAL = {"title": "Draft", "nodes": [node(1, "Routing only", keys=["routing"])]}


@pytest.fixture
def planned_path(uow, seed):
    """A path with two concepts joined by a prereq edge and a learner profile."""
    seed.add_file()
    seed.add_profile()
    with uow.transaction() as repo:
        path = repo.ensure_path(seed.user_id, seed.set_id, "Networking")
    concepts = {}
    for i, key in enumerate(["subnet_mask", "routing"]):
        row = ConceptRecord(
            id=uuid.uuid5(path.id, key), scope="path", scope_id=path.id, key=key, name=key.title(), sort_index=i
        )
        uow.store.concepts[row.id] = row
        concepts[key] = row
    edge = EdgeRecord(
        id=uuid.uuid4(), from_concept_id=concepts["subnet_mask"].id, to_concept_id=concepts["routing"].id,
        edge_type="prereq", strength=0.9,
    )
    uow.store.edges[edge.id] = edge
    return path


def script(prompts, structure=STRUCTURE, refine=None):
    prompts.script("path_charter", CHARTER)
    prompts.script("path_structure", structure)
    prompts.script("teaching_pattern_hierarchy", {})
    if refine is not None:
        prompts.script("path_structure_refine", refine)


class TestPathPlanner:
    """Tests for PathPlanner.build()."""

    @pytest.mark.asyncio
    async def test_plans_and_stores_nodes(self, uow, seed, prompts, settings, planned_path):
        """Charter, structure and patterns are committed with deterministic node ids."""
        script(prompts)

        result = await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())

        assert result.nodes_made == 2
        assert result.refined is False
        assert result.uncovered_concept_keys == []
        nodes = uow.store.nodes
        lesson = nodes[(planned_path.id, 2)]
        assert lesson.id == path_node_id(planned_path.id, 2)
        assert lesson.parent_node_id == path_node_id(planned_path.id, 1)
        assert lesson.metadata["concept_keys"] == ["routing", "subnet_mask"]
        assert nodes[(planned_path.id, 1)].metadata["node_kind"] == "module"
        stored = uow.store.paths[planned_path.id]
        assert stored.title == "Networking fundamentals"
        assert set(stored.metadata) >= {"charter", "structure", "pattern_hierarchy"}
        assert prompts.calls_for("path_structure_refine") == []

    @pytest.mark.asyncio
    async def test_uncovered_concepts_trigger_refine(self, uow, seed, prompts, settings, planned_path):
        """A draft missing concepts is refined and the refined tree is stored."""
        script(prompts, structure=PARTIAL, refine=STRUCTURE)

        result = await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())

        assert result.refined is True
        assert result.uncovered_concept_keys == []
        _, _, user = prompts.calls_for("path_structure_refine")[0]
        assert "subnet_mask" in user
        assert len(uow.store.nodes) == 2

    @pytest.mark.asyncio
    async def test_refine_failure_keeps_draft(self, uow, seed, prompts, settings, planned_path):
        """A failing refine pass leaves the draft and reports the gap."""
        script(prompts, structure=PARTIAL, refine=RuntimeError("provider down"))

        result = await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())

        assert result.refined is False
        assert result.uncovered_concept_keys == ["subnet_mask"]
        assert result.nodes_made == 1

    @pytest.mark.asyncio
    async def test_existing_nodes_skip(self, uow, seed, prompts, settings, planned_path):
        """A path that already has nodes is not replanned."""
        script(prompts)
        planner = PathPlanner(uow, prompts, settings=settings)
        await planner.build(seed.stage_input())
        calls = len(prompts.calls)

        again = await planner.build(seed.stage_input())

        assert again.skipped is True
        assert len(prompts.calls) == calls

    @pytest.mark.asyncio
    async def test_unconfirmed_intake_pauses(self, uow, seed, prompts, settings, planned_path):
        """An intake awaiting confirmation pauses before any prompt."""
        uow.store.paths[planned_path.id].metadata = {"intake": {"paths_confirmed": "no"}}

        result = await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())

        assert result.paused is True
        assert prompts.calls == []

    @pytest.mark.asyncio
    async def test_missing_profile(self, uow, seed, prompts, settings, planned_path):
        """Planning needs the learner's profile doc."""
        uow.store.profiles.clear()

        with pytest.raises(DependencyMissingError, match="profile"):
            await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())

    @pytest.mark.asyncio
    async def test_missing_path(self, uow, seed, prompts, settings):
        """No path for the set is a missing dependency."""
        with pytest.raises(DependencyMissingError, match="no path"):
            await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())

    @pytest.mark.asyncio
    async def test_empty_structure_is_a_contract_error(self, uow, seed, prompts, settings, planned_path):
        """A structure without valid nodes aborts before writing."""
        script(prompts, structure={"nodes": [node(0, "bad"), node(3, "  ")]})

        with pytest.raises(ContractError, match="no nodes"):
            await PathPlanner(uow, prompts, settings=settings).build(seed.stage_input())
        assert uow.store.nodes == {}
