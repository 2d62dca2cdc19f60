"""Machinery shared by the Create and Merge orchestrators.

An orchestrator owns a registry of PipelineContext objects, one per
invocation. It advances a context along its kind's transition table in
response to task queue events and publishes a PipelineEvent at every
transition. Any non-terminal stage may move to `failed`; nothing leaves
`completed` or `failed`.

Queue listeners must not block, so completion handling is scheduled as a
background asyncio task. Exceptions escaping a handler fail the pipeline
with E500.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Literal

from ..config import Settings
from ..duplicates import DuplicateManager
from ..errors import Err, ErrorCode, KBError, Ok, Result, SoftFailure
from ..indexer import VectorIndex
from ..llm_providers import ProviderClient
from ..locks import LockCoordinator, LockHandle, node_key
from ..models import (
    PipelineContext,
    PipelineError,
    PipelineKind,
    Task,
    TaskPayload,
    VectorEntry,
    VerifyPayload,
)
from ..naming import note_title
from ..note_repository import NoteRepository
from ..pipeline_state import PipelineStateStore
from ..renderer import build_verification_report
from ..snapshots import SnapshotManager
from ..task_queue import Conflict, QueueEvent, TaskQueue, TaskSpec

log = logging.getLogger(__name__)

PipelineEventType = Literal[
    "stage_changed",
    "confirmation_required",
    "pipeline_completed",
    "pipeline_failed",
]

# Stages that stand for a user decision
CONFIRMATION_STAGES = frozenset({"review_draft", "review_changes"})


@dataclass(frozen=True)
class PipelineEvent:
    type: PipelineEventType
    pipeline_id: str
    stage: str
    context: PipelineContext  # Copy taken at publication time
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


PipelineListener = Callable[[PipelineEvent], None]


@dataclass
class OrchestratorDeps:
    """Collaborators an orchestrator needs."""

    queue: TaskQueue
    locks: LockCoordinator
    repository: NoteRepository
    snapshots: SnapshotManager
    vector_index: VectorIndex
    duplicates: DuplicateManager
    provider: ProviderClient
    get_settings: Callable[[], Settings]
    state_store: PipelineStateStore | None = None


class BaseOrchestrator:
    """State machine runner for one pipeline kind."""

    kind: ClassVar[PipelineKind]
    transitions: ClassVar[dict[str, frozenset[str]]]

    def __init__(self, deps: OrchestratorDeps) -> None:
        self._deps = deps
        self._pipelines: dict[str, PipelineContext] = {}
        self._task_to_pipeline: dict[str, str] = {}
        self._listeners: list[PipelineListener] = []
        self._background: set[asyncio.Task[None]] = set()
        self._changed = asyncio.Event()
        self._unsubscribe_queue = deps.queue.subscribe(self._on_queue_event)

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def _new_context(self, **fields: Any) -> PipelineContext:
        ctx = PipelineContext(pipeline_id=f"{self.kind}-{uuid.uuid4().hex[:12]}", kind=self.kind, **fields)
        self._pipelines[ctx.pipeline_id] = ctx
        return ctx

    def get_context(self, pipeline_id: str) -> PipelineContext | None:
        ctx = self._pipelines.get(pipeline_id)
        return ctx.model_copy(deep=True) if ctx else None

    def get_active_pipelines(self) -> list[PipelineContext]:
        return [c.model_copy(deep=True) for c in self._pipelines.values() if not c.is_terminal]

    def get_all_pipelines(self) -> list[PipelineContext]:
        return [c.model_copy(deep=True) for c in self._pipelines.values()]

    def task_ids_for(self, pipeline_id: str) -> list[str]:
        return [t for t, p in self._task_to_pipeline.items() if p == pipeline_id]

    def _require(self, pipeline_id: str, stage: str) -> PipelineContext | Err:
        ctx = self._pipelines.get(pipeline_id)
        if ctx is None:
            return Err(KBError.not_found("pipeline", pipeline_id))
        if ctx.stage != stage:
            return Err(
                KBError.invalid_state(
                    f"Pipeline {pipeline_id} is at {ctx.stage}, expected {stage}",
                    pipeline_id=pipeline_id,
                    stage=ctx.stage,
                )
            )
        return ctx

    # -------------------------------------------------------------------------
    # Transitions and events
    # -------------------------------------------------------------------------

    def can_transition(self, current: str, target: str) -> bool:
        if current in ("completed", "failed"):
            return False
        if target == "failed":
            return True
        return target in self.transitions.get(current, frozenset())

    def _transition(self, ctx: PipelineContext, stage: str) -> None:
        """Move ctx to stage and publish the matching event.

        Raises:
            KBError: E310 if the edge is not in the transition table.
        """
        if not self.can_transition(ctx.stage, stage):
            raise KBError.invalid_state(
                f"Illegal {self.kind} transition {ctx.stage} -> {stage}",
                pipeline_id=ctx.pipeline_id,
            )
        previous = ctx.stage
        ctx.stage = stage  # type: ignore[assignment]
        ctx.updated_at = datetime.now(UTC)
        log.debug("Pipeline %s: %s -> %s", ctx.pipeline_id, previous, stage)

        if stage == "failed":
            event_type: PipelineEventType = "pipeline_failed"
        elif stage == "completed":
            event_type = "pipeline_completed"
        elif stage in CONFIRMATION_STAGES:
            event_type = "confirmation_required"
        else:
            event_type = "stage_changed"
        self._publish(PipelineEvent(event_type, ctx.pipeline_id, stage, ctx.model_copy(deep=True)))

    def subscribe(self, listener: PipelineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, event: PipelineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Pipeline listener failed on %s for %s", event.type, event.pipeline_id)
        self._changed.set()
        self._changed = asyncio.Event()

    async def wait_for_stage(self, pipeline_id: str, *stages: str, timeout: float | None = None) -> PipelineContext:
        """Wait until the pipeline reaches one of stages.

        Raises:
            KeyError: Unknown pipeline id.
            TimeoutError: The stage was not reached in time.
        """

        async def _wait() -> PipelineContext:
            while True:
                ctx = self._pipelines[pipeline_id]
                if ctx.stage in stages:
                    return ctx.model_copy(deep=True)
                await self._changed.wait()

        return await asyncio.wait_for(_wait(), timeout)

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    async def _fail(self, ctx: PipelineContext, error: KBError) -> None:
        if ctx.is_terminal:
            log.debug("Ignoring failure of finished pipeline %s: %s", ctx.pipeline_id, error.message)
            return
        ctx.error = PipelineError.from_error(error)
        log.error("Pipeline %s failed at %s: [%s] %s", ctx.pipeline_id, ctx.stage, error.code.value, error.message)
        self._forget_tasks(ctx.pipeline_id)
        self._release_leases(ctx)
        self._transition(ctx, "failed")
        await self._on_terminal(ctx)

    async def _complete(self, ctx: PipelineContext) -> None:
        self._forget_tasks(ctx.pipeline_id)
        self._release_leases(ctx)
        self._transition(ctx, "completed")
        log.info("Pipeline %s completed (%s)", ctx.pipeline_id, ctx.file_path)
        await self._on_terminal(ctx)

    async def _on_terminal(self, ctx: PipelineContext) -> None:
        """Hook for kind-specific cleanup after completed/failed."""

    def _forget_tasks(self, pipeline_id: str) -> None:
        for task_id in self.task_ids_for(pipeline_id):
            del self._task_to_pipeline[task_id]

    async def cancel_pipeline(self, pipeline_id: str) -> Result[None]:
        """Stop a pipeline and cancel its queued work.

        The task mappings are dropped before cancelling, so a task that is
        already executing has its result ignored.
        """
        ctx = self._pipelines.get(pipeline_id)
        if ctx is None:
            return Err(KBError.not_found("pipeline", pipeline_id))
        if ctx.is_terminal:
            return Err(KBError.invalid_state(f"Pipeline {pipeline_id} already {ctx.stage}", pipeline_id=pipeline_id))

        task_ids = self.task_ids_for(pipeline_id)
        self._forget_tasks(pipeline_id)
        for task_id in task_ids:
            self._deps.queue.cancel(task_id)

        log.info("Cancelling pipeline %s at %s", pipeline_id, ctx.stage)
        await self._fail(
            ctx,
            KBError(ErrorCode.E310_INVALID_STATE, "Pipeline cancelled", {"cancelled": True, "stage": ctx.stage}),
        )
        return Ok(None)

    # -------------------------------------------------------------------------
    # Queue integration
    # -------------------------------------------------------------------------

    def _enqueue(self, ctx: PipelineContext, node_id: str, payload: TaskPayload) -> str:
        """Queue a task for this pipeline.

        Raises:
            KBError: E320 if the note already has work in flight.
        """
        outcome = self._deps.queue.enqueue(TaskSpec(node_id=node_id, payload=payload))
        if isinstance(outcome, Conflict):
            raise KBError.conflict(
                f"Note {node_id} is busy" + (f" with task {outcome.existing_task_id}" if outcome.existing_task_id else ""),
                node_id=node_id,
                existing_task_id=outcome.existing_task_id,
            )
        self._task_to_pipeline[outcome.task_id] = ctx.pipeline_id
        return outcome.task_id

    def _on_queue_event(self, event: QueueEvent) -> None:
        if event.type not in ("task-completed", "task-failed"):
            return
        pipeline_id = self._task_to_pipeline.pop(event.task_id, None)
        if pipeline_id is None:
            return
        ctx = self._pipelines.get(pipeline_id)
        task = self._deps.queue.get_task(event.task_id)
        if ctx is None or task is None or ctx.is_terminal:
            return
        self._spawn(self._dispatch(ctx, task, succeeded=event.type == "task-completed"))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        handle = asyncio.get_running_loop().create_task(coro)
        self._background.add(handle)
        handle.add_done_callback(self._background.discard)

    async def _dispatch(self, ctx: PipelineContext, task: Task, succeeded: bool) -> None:
        try:
            if succeeded:
                await self._handle_task_completed(ctx, task)
            else:
                await self._handle_task_failed(ctx, task)
        except KBError as e:
            await self._fail(ctx, e)
        except Exception as e:
            log.exception("Pipeline %s crashed handling %s task %s", ctx.pipeline_id, task.task_type, task.id)
            await self._fail(ctx, KBError.internal(e))

    async def _handle_task_completed(self, ctx: PipelineContext, task: Task) -> None:
        if task.task_type == "verify":
            await self._on_verify_completed(ctx, task)
            return
        raise KBError(ErrorCode.E500_INTERNAL_ERROR, f"Unexpected {task.task_type} task in {self.kind} pipeline")

    async def _handle_task_failed(self, ctx: PipelineContext, task: Task) -> None:
        if task.task_type == "verify":
            log.warning("Verification of %s failed; completing without a report", ctx.file_path)
            await self._complete(ctx)
            return
        last = task.errors[-1] if task.errors else None
        if last is None:
            raise KBError(ErrorCode.E500_INTERNAL_ERROR, f"{task.task_type} task failed without an error")
        await self._fail(
            ctx,
            KBError(last.code, last.message, {"task_id": task.id, "attempts": task.attempt}),
        )

    # -------------------------------------------------------------------------
    # Note leases
    # -------------------------------------------------------------------------

    def _acquire_leases(self, ctx: PipelineContext, node_ids: Iterable[str]) -> None:
        """Lease notes for direct mutation by this pipeline.

        Raises:
            KBError: E320 if any note is leased or has queued work. Nothing
                stays leased in that case.
        """
        acquired: list[str] = []
        for node_id in dict.fromkeys(node_ids):
            key = node_key(node_id)
            if self._deps.locks.holder_of(key) == ctx.pipeline_id:
                continue
            busy = self._deps.queue.active_task_for(node_id)
            outcome = None if busy else self._deps.locks.acquire(key, holder=ctx.pipeline_id)
            if not isinstance(outcome, LockHandle):
                for held in acquired:
                    self._deps.locks.release(held)
                raise KBError.conflict(
                    f"Note {node_id} is being modified by another operation",
                    node_id=node_id,
                    holder=busy.id if busy else getattr(outcome, "holder", None),
                )
            acquired.append(key)

    def _release_leases(self, ctx: PipelineContext) -> None:
        for handle in self._deps.locks.active_locks():
            if handle.holder == ctx.pipeline_id:
                self._deps.locks.release(handle.key)

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    async def _snapshot_then_write(self, ctx: PipelineContext, path: str, content: str, label: str) -> str | None:
        """Write a note, snapshotting whatever is there first.

        Returns:
            The snapshot id, or None when the note did not exist.

        Raises:
            KBError: From the snapshot or the write; on snapshot failure the
                write does not happen.
        """
        repo = self._deps.repository
        existing = await repo.read_by_path_if_exists(path)
        snapshot_id = None
        if existing is not None:
            result = await self._deps.snapshots.create_snapshot(path, existing, label, ctx.node_id)
            if isinstance(result, Err):
                raise result.error
            snapshot_id = result.value
        await repo.write_atomic(path, content)
        return snapshot_id

    async def _embed(self, text: str) -> list[float]:
        settings = self._deps.get_settings()
        result = await self._deps.provider.embed(
            settings.embedding_provider_id,
            settings.embedding_model,
            text,
            settings.embedding_dimension,
        )
        return result.embedding

    async def _upsert_vector(self, ctx: PipelineContext, name: str) -> SoftFailure | None:
        if ctx.embedding is None or ctx.file_path is None:
            return SoftFailure("index", ErrorCode.E310_INVALID_STATE, "No embedding to index")
        try:
            await self._deps.vector_index.upsert(
                VectorEntry(
                    node_id=ctx.node_id,
                    type=ctx.type,
                    name=name,
                    path=ctx.file_path,
                    embedding=ctx.embedding,
                )
            )
        except KBError as e:
            return SoftFailure.from_error("index", e)
        return None

    async def _run_dedup(self, ctx: PipelineContext) -> SoftFailure | None:
        if ctx.embedding is None:
            return SoftFailure("dedup", ErrorCode.E310_INVALID_STATE, "No embedding to compare")
        result = await self._deps.duplicates.detect(ctx.node_id, ctx.type, ctx.embedding)
        if isinstance(result, Err):
            return SoftFailure.from_error("dedup", result.error)
        if result.value:
            log.info("%s has %d new duplicate candidate(s)", ctx.file_path, len(result.value))
        return None

    async def _verify_or_complete(self, ctx: PipelineContext) -> None:
        if not self._deps.get_settings().enable_auto_verify:
            await self._complete(ctx)
            return
        soft = await self._start_verify(ctx)
        if soft is not None:
            log.warning("Pipeline %s: %s", ctx.pipeline_id, soft)
            await self._complete(ctx)

    async def _start_verify(self, ctx: PipelineContext) -> SoftFailure | None:
        if ctx.file_path is None:
            return SoftFailure("verify", ErrorCode.E310_INVALID_STATE, "Pipeline has no note path")
        try:
            content = await self._deps.repository.read_by_path(ctx.file_path)
            self._transition(ctx, "verifying")
            self._enqueue(
                ctx,
                ctx.node_id,
                VerifyPayload(
                    pipeline_id=ctx.pipeline_id,
                    concept_type=ctx.type,
                    name=ctx.merged_name or note_title(ctx.file_path),
                    file_path=ctx.file_path,
                    content=content,
                ),
            )
        except KBError as e:
            return SoftFailure.from_error("verify", e)
        return None

    async def _on_verify_completed(self, ctx: PipelineContext, task: Task) -> None:
        ctx.verification_result = task.result
        soft = await self._append_report(ctx, task.result or {})
        if soft is not None:
            log.warning("Pipeline %s: %s", ctx.pipeline_id, soft)
        await self._complete(ctx)

    async def _append_report(self, ctx: PipelineContext, result: dict[str, Any]) -> SoftFailure | None:
        if ctx.file_path is None:
            return SoftFailure("report", ErrorCode.E310_INVALID_STATE, "Pipeline has no note path")
        try:
            self._acquire_leases(ctx, [ctx.node_id])
            try:
                current = await self._deps.repository.read_by_path(ctx.file_path)
                updated = current.rstrip("\n") + "\n\n" + build_verification_report(result)
                await self._snapshot_then_write(ctx, ctx.file_path, updated, f"verify:{ctx.pipeline_id}")
            finally:
                self._release_leases(ctx)
        except KBError as e:
            return SoftFailure.from_error("report", e)
        return None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for scheduled completion handlers to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def dispose(self) -> None:
        self._unsubscribe_queue()
        for handle in list(self._background):
            handle.cancel()
        self._listeners.clear()
