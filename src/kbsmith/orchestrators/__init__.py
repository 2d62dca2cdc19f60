"""Pipeline orchestrators for creating and merging notes."""

from .base import CONFIRMATION_STAGES, BaseOrchestrator, OrchestratorDeps, PipelineEvent
from .create import CREATE_TRANSITIONS, CreateOrchestrator
from .merge import MERGE_TRANSITIONS, MergeOrchestrator

__all__ = [
    "BaseOrchestrator",
    "CONFIRMATION_STAGES",
    "CREATE_TRANSITIONS",
    "CreateOrchestrator",
    "MERGE_TRANSITIONS",
    "MergeOrchestrator",
    "OrchestratorDeps",
    "PipelineEvent",
]
