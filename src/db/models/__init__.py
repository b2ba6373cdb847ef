# SQLAlchemy models
from .base import Base
from .concepts import (
    Concept,
    ConceptCluster,
    ConceptClusterMember,
    ConceptEdge,
    ConceptEvidence,
)
from .knowledge import (
    GlobalEntity,
    MaterialChunkClaim,
    MaterialChunkEntity,
    MaterialClaim,
    MaterialClaimConcept,
    MaterialClaimEntity,
    MaterialEntity,
)
from .materials import (
    MaterialAsset,
    MaterialChunk,
    MaterialFile,
    MaterialSet,
    MaterialSetSummary,
)
from .paths import (
    LearningDocGenerationRun,
    LearningNodeDoc,
    LearningNodeDocVariant,
    Path,
    PathNode,
    UserConceptState,
    UserProfileDoc,
)
from .saga import SagaAction, SagaRun

__all__ = [
    "Base",
    # Materials
    "MaterialSet",
    "MaterialFile",
    "MaterialChunk",
    "MaterialAsset",
    "MaterialSetSummary",
    # Concept graph
    "Concept",
    "ConceptEdge",
    "ConceptEvidence",
    "ConceptCluster",
    "ConceptClusterMember",
    # Knowledge graph
    "GlobalEntity",
    "MaterialEntity",
    "MaterialClaim",
    "MaterialChunkEntity",
    "MaterialChunkClaim",
    "MaterialClaimEntity",
    "MaterialClaimConcept",
    # Paths
    "Path",
    "PathNode",
    "LearningNodeDoc",
    "LearningNodeDocVariant",
    "LearningDocGenerationRun",
    "UserProfileDoc",
    "UserConceptState",
    # Saga
    "SagaRun",
    "SagaAction",
]
