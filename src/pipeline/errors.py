"""
Pipeline error taxonomy.

Contract errors fail fast; dependency errors name the missing prerequisite so
the caller can run the right upstream stage; schema rejections are never retried.
"""

from __future__ import annotations

from uuid import UUID


class PipelineError(Exception):
    """Base error for all stages."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class ContractError(PipelineError):
    """Missing dependencies, zero ids or empty inputs."""


class DependencyMissingError(PipelineError):
    """A prerequisite row or upstream stage output is absent."""


class SchemaRejectedError(PipelineError):
    """Deterministic provider rejection of the JSON schema."""


class NodeDocGenerationError(PipelineError):
    """All validate/repair attempts failed for a lesson."""

    def __init__(self, stage: str, path_node_id: UUID, errors: list[str]):
        self.path_node_id = path_node_id
        self.errors = list(errors)
        preview = "; ".join(errors[:6])
        super().__init__(stage, f"path_node_id={path_node_id} failed validation: {preview}")


class CompensationError(PipelineError):
    """One or more saga actions could not be executed."""
