"""Pydantic models for notes, pipelines, tasks and the persisted stores."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import KnowledgeType
from .errors import ErrorCode, KBError


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Notes
# =============================================================================

NoteStatus = Literal["Stub", "Draft", "Evergreen"]


class NoteFrontmatter(BaseModel):
    """Front matter of a concept note.

    Keys this model does not know about are kept so that rewriting a note
    never drops user metadata.
    """

    model_config = ConfigDict(extra="allow")

    cruid: str  # Stable node id, independent of the file path
    type: KnowledgeType
    name: str
    definition: str = ""
    status: NoteStatus = "Stub"
    aliases: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    parents: list[str] = Field(default_factory=list)  # Wiki links, e.g. "[[Neural Network]]"
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)


class StandardName(BaseModel):
    english: str
    chinese: str = ""


class StandardizedConcept(BaseModel):
    """Output of the define step: canonical names and type classification."""

    standard_names: dict[str, StandardName]  # Per knowledge type
    type_confidences: dict[str, float] = Field(default_factory=dict)
    primary_type: KnowledgeType | None = None
    core_definition: str = ""

    def name_for(self, concept_type: str) -> StandardName:
        if concept_type in self.standard_names:
            return self.standard_names[concept_type]
        if self.primary_type and self.primary_type in self.standard_names:
            return self.standard_names[self.primary_type]
        return next(iter(self.standard_names.values()))


class EnrichedData(BaseModel):
    """Output of the tag step."""

    aliases: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


# =============================================================================
# Pipelines
# =============================================================================

PipelineKind = Literal["create", "merge"]

PipelineStage = Literal[
    "idle",
    "tagging",
    "review_draft",
    "saving",
    "writing",
    "indexing",
    "review_changes",
    "checking_duplicates",
    "verifying",
    "completed",
    "failed",
]

TERMINAL_STAGES: frozenset[str] = frozenset({"completed", "failed"})


class PipelineError(BaseModel):
    code: ErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: KBError) -> PipelineError:
        return cls(code=error.code, message=error.message, details=error.details)


class PipelineContext(BaseModel):
    """State of one Create or Merge invocation."""

    pipeline_id: str
    kind: PipelineKind
    node_id: str
    type: KnowledgeType
    stage: PipelineStage = "idle"

    user_input: str = ""
    standardized_data: StandardizedConcept | None = None
    enriched_data: EnrichedData | None = None
    generated_content: dict[str, Any] | None = None
    embedding: list[float] | None = None
    file_path: str | None = None
    previous_content: str | None = None  # Merge: kept note at preview time
    new_content: str | None = None
    snapshot_id: str | None = None
    error: PipelineError | None = None

    # Create only
    parents: list[str] = Field(default_factory=list)
    sources: str = ""

    # Merge only
    merge_pair_id: str | None = None
    merged_name: str | None = None
    delete_node_id: str | None = None
    delete_file_path: str | None = None
    delete_note_name: str | None = None
    delete_content: str | None = None  # Deleted note at preview time
    delete_snapshot_id: str | None = None
    final_file_path: str | None = None  # Set when the merged note is renamed

    verification_result: dict[str, Any] | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


class PipelineStateFile(BaseModel):
    """On-disk format of the persisted pipeline state."""

    version: str = "1.0.0"
    pipelines: list[PipelineContext] = Field(default_factory=list)
    task_to_pipeline: dict[str, str] = Field(default_factory=dict)
    saved_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Tasks
# =============================================================================

TaskType = Literal["tag", "write", "merge", "verify"]
TaskState = Literal["Pending", "Running", "Completed", "Failed", "Cancelled"]


class TagPayload(BaseModel):
    kind: Literal["tag"] = "tag"
    pipeline_id: str
    concept_type: KnowledgeType
    user_input: str
    standardized: StandardizedConcept


class WritePayload(BaseModel):
    kind: Literal["write"] = "write"
    pipeline_id: str
    concept_type: KnowledgeType
    name: str
    standardized: StandardizedConcept
    enriched: EnrichedData
    parents: list[str] = Field(default_factory=list)
    sources: str = ""
    target_path: str


class MergeSource(BaseModel):
    node_id: str
    name: str
    path: str
    content: str


class MergePayload(BaseModel):
    kind: Literal["merge"] = "merge"
    pipeline_id: str
    pair_id: str
    concept_type: KnowledgeType
    keep: MergeSource
    delete: MergeSource


class VerifyPayload(BaseModel):
    kind: Literal["verify"] = "verify"
    pipeline_id: str
    concept_type: KnowledgeType
    name: str
    file_path: str
    content: str


TaskPayload = Annotated[
    Union[TagPayload, WritePayload, MergePayload, VerifyPayload],
    Field(discriminator="kind"),
]


class TaskError(BaseModel):
    """One failed attempt."""

    code: ErrorCode
    message: str
    attempt: int
    timestamp: datetime = Field(default_factory=utcnow)


class Task(BaseModel):
    id: str
    node_id: str
    payload: TaskPayload
    state: TaskState = "Pending"
    attempt: int = 0
    max_attempts: int = 3
    result: dict[str, Any] | None = None
    errors: list[TaskError] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def task_type(self) -> TaskType:
        return self.payload.kind

    @property
    def pipeline_id(self) -> str:
        return self.payload.pipeline_id


# =============================================================================
# Duplicate pairs
# =============================================================================

DuplicatePairStatus = Literal["pending", "merging", "merged", "dismissed"]


class DuplicatePair(BaseModel):
    id: str  # Sorted node ids joined by "--"
    node_id_a: str
    node_id_b: str
    type: KnowledgeType
    similarity: float
    detected_at: datetime = Field(default_factory=utcnow)
    status: DuplicatePairStatus = "pending"

    def involves(self, node_id: str) -> bool:
        return node_id in (self.node_id_a, self.node_id_b)

    def other(self, node_id: str) -> str:
        return self.node_id_b if node_id == self.node_id_a else self.node_id_a


class DuplicatePairStore(BaseModel):
    version: str = "1.0.0"
    pairs: list[DuplicatePair] = Field(default_factory=list)
    dismissed_pairs: list[str] = Field(default_factory=list)


# =============================================================================
# Snapshots
# =============================================================================


class SnapshotRecord(BaseModel):
    """Index entry for a snapshot (metadata only)."""

    model_config = ConfigDict(frozen=True)

    id: str
    path: str
    node_id: str | None = None
    label: str
    created: datetime
    checksum: str  # sha256 of content
    size: int  # Bytes, UTF-8


class Snapshot(SnapshotRecord):
    content: str


class SnapshotIndex(BaseModel):
    version: str = "1.0.0"
    snapshots: list[SnapshotRecord] = Field(default_factory=list)


# =============================================================================
# Vector index
# =============================================================================


class VectorEntry(BaseModel):
    node_id: str
    type: KnowledgeType
    name: str = ""
    path: str = ""
    embedding: list[float]
    updated: datetime = Field(default_factory=utcnow)


class SearchHit(BaseModel):
    node_id: str
    type: KnowledgeType
    name: str = ""
    path: str = ""
    similarity: float
