"""
Ordered stage sequence for one material set.

    concept_graph -> concept_clusters -> material_kg -> path_plan -> node_docs

The saga run is opened before the first stage and closed as succeeded or
failed; compensation is a separate, explicit operator action.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field, is_dataclass, replace
from typing import Any

from loguru import logger

from config import get_settings

from .concept_clusters import build_concept_clusters
from .concept_graph import ConceptGraphBuilder
from .material_kg import build_material_kg
from .node_docs import NodeDocBuilder
from .path_plan import PathPlanner
from .records import StageInput
from .saga import SagaStatus

STAGE_ORDER = ("concept_graph", "concept_clusters", "material_kg", "path_plan", "node_docs")


@dataclass
class PipelineServices:
    uow: Any
    prompts: Any
    vectors: Any = None
    graph: Any = None
    settings: Any = None


@dataclass
class PipelineRun:
    inp: StageInput
    results: dict[str, Any] = field(default_factory=dict)
    paused_at: str | None = None

    def summary(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for name, result in self.results.items():
            out[name] = asdict(result) if is_dataclass(result) else {"value": result}
        return out


def select_stages(requested: Sequence[str] | None) -> list[str]:
    """Requested stages in pipeline order; unknown names raise ValueError."""
    if not requested:
        return list(STAGE_ORDER)
    wanted = {s.strip().lower().replace("-", "_") for s in requested if s.strip()}
    unknown = sorted(wanted - set(STAGE_ORDER))
    if unknown:
        raise ValueError(f"unknown stages: {', '.join(unknown)} (choose from {', '.join(STAGE_ORDER)})")
    return [s for s in STAGE_ORDER if s in wanted]


async def run_pipeline(
    inp: StageInput,
    services: PipelineServices,
    stages: Sequence[str] | None = None,
) -> PipelineRun:
    settings = services.settings or get_settings()
    run = PipelineRun(inp=inp)
    with services.uow.transaction() as repo:
        repo.ensure_saga_run(inp.saga_id, inp.owner_user_id)

    try:
        for name in select_stages(stages):
            logger.info(f"Stage {name} starting for set {run.inp.material_set_id}")
            result = await _run_stage(name, run.inp, services, settings)
            run.results[name] = result
            path_id = getattr(result, "path_id", None)
            if path_id is not None and run.inp.path_id is None:
                run.inp = replace(run.inp, path_id=path_id)
            if getattr(result, "paused", False):
                run.paused_at = name
                logger.info(f"Stage {name} paused: path intake is not confirmed")
                break
    except Exception:
        logger.exception(f"Pipeline failed for set {inp.material_set_id} (saga {inp.saga_id})")
        with services.uow.transaction() as repo:
            repo.set_saga_status(inp.saga_id, SagaStatus.FAILED.value)
        raise

    with services.uow.transaction() as repo:
        repo.set_saga_status(inp.saga_id, SagaStatus.SUCCEEDED.value)
    return run


async def _run_stage(name: str, inp: StageInput, services: PipelineServices, settings) -> Any:
    if name == "concept_graph":
        builder = ConceptGraphBuilder(services.uow, services.prompts, services.vectors, services.graph, settings)
        return await builder.build(inp)
    if name == "concept_clusters":
        return await build_concept_clusters(inp, services.uow, services.prompts, services.vectors, settings)
    if name == "material_kg":
        return await build_material_kg(inp, services.uow, services.prompts, services.graph, settings)
    if name == "path_plan":
        return await PathPlanner(services.uow, services.prompts, services.graph, settings).build(inp)
    if name == "node_docs":
        return await NodeDocBuilder(services.uow, services.prompts, services.vectors, settings).build(inp)
    raise ValueError(f"unknown stage {name!r}")
