"""
Path planner.

Charter prompt -> structure prompt -> deterministic tree normalization ->
optional refine pass -> importance re-rank -> teaching pattern hierarchy ->
locked commit of path metadata and nodes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from loguru import logger

from config import get_settings
from src.generation import prompts as prompt_lib
from src.sync.cache_sync import path_nodes_batch, sync_graph

from .coordinator import CanonicalWriter
from .errors import ContractError, DependencyMissingError, SchemaRejectedError
from .ids import deterministic_uuid
from .path_context import intake_context
from .path_structure import (
    PathStructure,
    normalize_node_tree,
    parse_path_structure,
    rerank_concept_keys,
    uncovered_concept_keys,
)
from .records import ConceptRecord, EdgeRecord, NodeRecord, StageInput
from .teaching_patterns import (
    PatternHierarchy,
    normalize_pattern_hierarchy,
    pattern_context_for_node,
    pattern_signals,
    vocabulary_markdown,
)
from .user_knowledge import load_user_knowledge

STAGE = "path_plan_build"


@dataclass
class PathPlanResult:
    path_id: UUID | None = None
    nodes_made: int = 0
    refined: bool = False
    skipped: bool = False
    paused: bool = False
    uncovered_concept_keys: list[str] = field(default_factory=list)


def path_node_id(path_id: UUID, index: int) -> UUID:
    return deterministic_uuid("path_node", path_id, index)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _concepts_json(concepts: list[ConceptRecord]) -> str:
    return _dumps(
        [
            {"key": c.key, "name": c.name, "summary": c.summary, "depth": c.depth, "importance": c.sort_index}
            for c in concepts
        ]
    )


def _edges_json(edges: list[EdgeRecord], key_by_id: dict[UUID, str]) -> str:
    return _dumps(
        [
            {
                "from_key": key_by_id[e.from_concept_id],
                "to_key": key_by_id[e.to_concept_id],
                "edge_type": e.edge_type,
                "strength": e.strength,
            }
            for e in edges
            if e.from_concept_id in key_by_id and e.to_concept_id in key_by_id
        ]
    )


class PathPlanner:
    """Plans the node tree of a path from its concept graph and the learner's profile."""

    def __init__(self, uow, prompts, graph=None, settings=None):
        self.uow = uow
        self.prompts = prompts
        self.graph = graph
        self.settings = settings or get_settings()

    async def build(self, inp: StageInput) -> PathPlanResult:
        with self.uow.read() as repo:
            path = repo.get_path(inp.path_id) if inp.path_id else repo.get_path_for_set(
                inp.owner_user_id, inp.material_set_id
            )
            if path is None:
                raise DependencyMissingError(STAGE, f"no path for set {inp.material_set_id}")
            result = PathPlanResult(path_id=path.id)
            if repo.list_path_nodes(path.id):
                result.skipped = True
                return result
            profile_doc = repo.get_user_profile_doc(inp.owner_user_id)
            concepts = repo.list_concepts("path", path.id)
            edges = repo.list_edges([c.id for c in concepts])
            summary = repo.get_material_set_summary(inp.material_set_id)
            files = repo.list_files(inp.material_set_id)
            by_key = {c.key: c for c in concepts}
            knowledge = load_user_knowledge(repo, inp.owner_user_id, sorted(by_key), by_key)

        intake = intake_context(path.metadata)
        if not intake.confirmed:
            result.paused = True
            return result
        if not profile_doc:
            raise DependencyMissingError(STAGE, f"user {inp.owner_user_id} has no profile doc")
        if not concepts:
            raise DependencyMissingError(STAGE, f"path {path.id} has no concepts")

        known_keys = set(by_key)
        key_by_id = {c.id: c.key for c in concepts}
        concepts_json = _concepts_json(concepts)
        edges_json = _edges_json(edges, key_by_id)
        knowledge_json = "" if knowledge.is_empty else _dumps(knowledge.to_dict())
        signals = {
            "file_count": len(files),
            "concept_count": len(concepts),
            "edge_count": len(edges),
            "top_concepts": [c.key for c in sorted(concepts, key=lambda c: (-c.sort_index, c.key))[:12]],
        }

        system, user = prompt_lib.path_charter(profile_doc, summary, knowledge_json, _dumps(signals))
        charter = await self.prompts.generate_json(system, user, "path_charter", prompt_lib.SCHEMAS["path_charter"])
        charter_json = _dumps(charter)

        intake_json = _dumps({"intake_md": intake.intent_md, "file_ids": [str(f) for f in intake.file_ids]})
        system, user = prompt_lib.path_structure(
            charter_json, concepts_json, edges_json, summary, intake_json if intake.present else "", knowledge_json
        )
        obj = await self.prompts.generate_json(system, user, "path_structure", prompt_lib.SCHEMAS["path_structure"])
        structure = parse_path_structure(obj, known_keys)
        structure.nodes, stats = normalize_node_tree(structure.nodes)
        if not structure.nodes:
            raise ContractError(STAGE, "path structure produced no nodes")
        logger.info(f"{STAGE}: draft has {len(structure.nodes)} nodes ({stats})")

        uncovered = sorted(
            set(structure.uncovered_concept_keys) | set(uncovered_concept_keys(structure.nodes, known_keys))
        )
        if uncovered or self.settings.is_premium:
            refined = await self._refine(structure, uncovered, concepts_json, edges_json, known_keys)
            if refined is not None:
                structure = refined
                result.refined = True
                uncovered = uncovered_concept_keys(structure.nodes, known_keys)
        result.uncovered_concept_keys = uncovered

        rerank_concept_keys(structure.nodes, {c.key: c.sort_index for c in concepts})

        prereq_pairs = [(e.from_concept_id, e.to_concept_id) for e in edges if e.edge_type == "prereq"]
        hierarchy = await self._patterns(
            profile_doc, charter_json, structure, concepts_json, edges_json, prereq_pairs
        )

        records = self._node_records(path.id, structure, hierarchy)
        metadata = {
            "charter": charter,
            "structure": structure.to_dict(),
            "pattern_hierarchy": hierarchy.to_dict(),
        }

        def work(repo) -> int:
            repo.update_path(
                path.id,
                title=structure.title or None,
                description=structure.description or None,
                metadata=metadata,
            )
            return repo.upsert_path_nodes(records)

        outcome = CanonicalWriter(self.uow).run(
            STAGE, path.id, work, exists=lambda repo: bool(repo.list_path_nodes(path.id))
        )
        if outcome.skipped:
            result.skipped = True
            return result
        result.nodes_made = outcome.value or 0
        logger.info(f"{STAGE}: path {path.id} planned {result.nodes_made} nodes (refined={result.refined})")

        if self.settings.graph_sync_enabled:
            await sync_graph(self.graph, path_nodes_batch(path.id, records))
        return result

    async def _refine(
        self,
        draft: PathStructure,
        uncovered: list[str],
        concepts_json: str,
        edges_json: str,
        known_keys: set[str],
    ) -> PathStructure | None:
        system, user = prompt_lib.path_structure_refine(_dumps(draft.to_dict()), uncovered, concepts_json, edges_json)
        try:
            obj = await self.prompts.generate_json(
                system, user, "path_structure_refine", prompt_lib.SCHEMAS["path_structure_refine"]
            )
        except SchemaRejectedError:
            raise
        except Exception as exc:
            logger.warning(f"{STAGE}: refine pass failed; keeping draft: {exc}")
            return None
        refined = parse_path_structure(obj, known_keys)
        refined.nodes, _ = normalize_node_tree(refined.nodes)
        if not refined.nodes:
            return None
        refined.title = refined.title or draft.title
        refined.description = refined.description or draft.description
        return refined

    async def _patterns(
        self,
        profile_doc: str,
        charter_json: str,
        structure: PathStructure,
        concepts_json: str,
        edges_json: str,
        prereq_pairs: list[tuple[UUID, UUID]],
    ) -> PatternHierarchy:
        signals = pattern_signals(structure.nodes, prereq_pairs)
        system, user = prompt_lib.teaching_pattern_hierarchy(
            profile_doc,
            charter_json,
            _dumps(structure.to_dict()),
            concepts_json,
            edges_json,
            vocabulary_markdown(),
            _dumps(signals.to_dict()),
        )
        try:
            obj = await self.prompts.generate_json(
                system, user, "teaching_pattern_hierarchy", prompt_lib.SCHEMAS["teaching_pattern_hierarchy"]
            )
            raw = PatternHierarchy.from_dict(obj)
        except SchemaRejectedError:
            raise
        except Exception as exc:
            logger.warning(f"{STAGE}: pattern hierarchy prompt failed; using defaults: {exc}")
            raw = PatternHierarchy()
        return normalize_pattern_hierarchy(raw, structure.nodes, prereq_pairs, profile_doc)

    @staticmethod
    def _node_records(path_id: UUID, structure: PathStructure, hierarchy: PatternHierarchy) -> list[NodeRecord]:
        records = []
        for n in structure.nodes:
            records.append(
                NodeRecord(
                    id=path_node_id(path_id, n.index),
                    path_id=path_id,
                    index=n.index,
                    title=n.title,
                    parent_node_id=path_node_id(path_id, n.parent_index) if n.parent_index else None,
                    metadata={
                        "node_kind": n.node_kind,
                        "doc_template": n.doc_template,
                        "goal": n.goal,
                        "concept_keys": n.concept_keys,
                        "prereq_concept_keys": n.prereq_concept_keys,
                        "difficulty": n.difficulty,
                        "activity_slots": [s.model_dump() for s in n.activity_slots],
                        "patterns": pattern_context_for_node(n, structure.nodes, hierarchy),
                    },
                )
            )
        return records
