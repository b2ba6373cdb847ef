"""
Content-build stages.

- concept_graph: concept inventory, edges and canonical links (C6, with C3-C5)
- concept_clusters / material_kg: supplemental graph stages
- path_plan: charter, node tree and teaching patterns (C7)
- node_docs: outline, evidence, generate, repair, validate (C8)
- coordinator: locked, idempotent canonical writes (C9)
- saga: compensating actions for derived caches
- runner: the ordered stage sequence used by the CLI
"""

from .errors import (
    CompensationError,
    ContractError,
    DependencyMissingError,
    NodeDocGenerationError,
    PipelineError,
    SchemaRejectedError,
)
from .records import StageInput

__all__ = [
    "CompensationError",
    "ContractError",
    "DependencyMissingError",
    "NodeDocGenerationError",
    "PipelineError",
    "SchemaRejectedError",
    "StageInput",
]
