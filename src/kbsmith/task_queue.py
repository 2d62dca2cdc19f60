"""Bounded-concurrency task queue with per-note exclusion and retries.

Each task belongs to one note (node id). While a task for a note is Pending
or Running, no other task for that note is accepted. Execution holds the
note's lease from the LockCoordinator, so at most one task per note runs at a
time even across abandoned (cancelled while running) tasks.

Lifecycle:

    Pending -> Running -> Completed
                       -> Pending (retryable error, attempts left)
                       -> Failed  (attempts exhausted or permanent error)
    Pending/Running -> Cancelled

Listeners are plain callables invoked synchronously, in subscription order.
A listener that raises is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from .config import DEFAULT_CONCURRENCY, DEFAULT_MAX_RETRY_ATTEMPTS, MODEL_OUTPUT_MAX_ATTEMPTS
from .errors import MODEL_OUTPUT_CODES, ErrorCode, KBError
from .locks import LockCoordinator, node_key
from .models import Task, TaskError, TaskPayload

log = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class TaskSpec:
    """What a caller asks the queue to run."""

    node_id: str
    payload: TaskPayload
    max_attempts: int | None = None  # None uses the queue default


@dataclass(frozen=True)
class Enqueued:
    task_id: str


@dataclass(frozen=True)
class Conflict:
    """The note already has work in flight.

    existing_task_id is None when the note is leased outside the queue.
    """

    node_id: str
    existing_task_id: str | None


EnqueueResult = Enqueued | Conflict

QueueEventType = Literal[
    "task-added",
    "task-started",
    "task-retrying",
    "task-completed",
    "task-failed",
    "task-cancelled",
]


@dataclass(frozen=True)
class QueueEvent:
    type: QueueEventType
    task_id: str
    node_id: str
    task_type: str
    errors: tuple[TaskError, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


QueueListener = Callable[[QueueEvent], None]


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    paused: bool


class TaskQueue:
    """Runs tasks through handlers registered per task type."""

    def __init__(
        self,
        locks: LockCoordinator,
        handlers: dict[str, TaskHandler] | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        model_output_max_attempts: int = MODEL_OUTPUT_MAX_ATTEMPTS,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._locks = locks
        self._handlers: dict[str, TaskHandler] = dict(handlers or {})
        self._concurrency = concurrency
        self._default_max_attempts = max_attempts
        self._model_output_max_attempts = model_output_max_attempts

        self._tasks: dict[str, Task] = {}
        self._pending: list[str] = []  # FIFO of task ids
        self._running: dict[str, asyncio.Task[None]] = {}
        self._listeners: list[QueueListener] = []
        self._paused = False
        self._idle = asyncio.Event()
        self._idle.set()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def set_concurrency(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._concurrency = concurrency
        self._pump()

    # -------------------------------------------------------------------------
    # Submission and lookup
    # -------------------------------------------------------------------------

    def enqueue(self, spec: TaskSpec) -> EnqueueResult:
        """Add a task, unless its note already has work in flight.

        Returns:
            Enqueued with the new task id, or Conflict naming the task (if
            any) that already owns the note. A conflicting spec is dropped.
        """
        existing = self.active_task_for(spec.node_id)
        if existing is not None:
            log.info(
                "Rejected %s task for %s: task %s is %s",
                spec.payload.kind, spec.node_id, existing.id, existing.state,
            )
            return Conflict(node_id=spec.node_id, existing_task_id=existing.id)

        holder = self._locks.holder_of(node_key(spec.node_id))
        if holder is not None and holder not in self._tasks:
            log.info("Rejected %s task for %s: note leased by %s", spec.payload.kind, spec.node_id, holder)
            return Conflict(node_id=spec.node_id, existing_task_id=None)

        task = Task(
            id=f"task-{uuid.uuid4().hex[:12]}",
            node_id=spec.node_id,
            payload=spec.payload,
            max_attempts=spec.max_attempts or self._default_max_attempts,
        )
        self._tasks[task.id] = task
        self._pending.append(task.id)
        self._idle.clear()
        log.debug("Enqueued %s task %s for %s", task.task_type, task.id, task.node_id)

        self._emit(QueueEvent("task-added", task.id, task.node_id, task.task_type))
        self._pump()
        return Enqueued(task_id=task.id)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def active_task_for(self, node_id: str) -> Task | None:
        """The Pending or Running task for a note, if any."""
        for task in self._tasks.values():
            if task.node_id == node_id and task.state in ("Pending", "Running"):
                return task
        return None

    def has_active_task(self, node_id: str) -> bool:
        return self.active_task_for(node_id) is not None

    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def status(self) -> QueueStatus:
        counts = {"Pending": 0, "Running": 0, "Completed": 0, "Failed": 0, "Cancelled": 0}
        for task in self._tasks.values():
            counts[task.state] += 1
        return QueueStatus(
            pending=counts["Pending"],
            running=counts["Running"],
            completed=counts["Completed"],
            failed=counts["Failed"],
            cancelled=counts["Cancelled"],
            paused=self._paused,
        )

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def cancel(self, task_id: str) -> bool:
        """Cancel a task.

        A Pending task is removed outright. A Running task is abandoned: its
        handler keeps its lease until it returns, and whatever it returns is
        discarded.

        Returns:
            True if the task was Pending or Running.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return False

        if task.state == "Pending":
            self._pending.remove(task_id)
            task.state = "Cancelled"
            task.completed_at = datetime.now(UTC)
            log.info("Cancelled pending task %s", task_id)
        elif task.state == "Running":
            task.state = "Cancelled"
            task.completed_at = datetime.now(UTC)
            log.info("Abandoned running task %s", task_id)
        else:
            return False

        self._emit(QueueEvent("task-cancelled", task.id, task.node_id, task.task_type))
        self._update_idle()
        return True

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._pump()

    @property
    def paused(self) -> bool:
        return self._paused

    def cleanup(self, before: datetime | None = None) -> int:
        """Forget finished tasks, optionally only those finished before a time."""
        removed = 0
        for task_id, task in list(self._tasks.items()):
            if task.state not in ("Completed", "Failed", "Cancelled"):
                continue
            if task_id in self._running:
                continue
            if before is not None and task.completed_at and task.completed_at >= before:
                continue
            del self._tasks[task_id]
            removed += 1
        return removed

    async def join(self) -> None:
        """Wait until nothing is pending or running."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Cancel executing handlers and drop pending work."""
        self._paused = True
        for task_id in list(self._pending):
            self.cancel(task_id)
        interrupted = [self._tasks[task_id] for task_id in self._running]
        running = list(self._running.values())
        for handle in running:
            handle.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        # A cancelled handler never reaches _settle
        for task in interrupted:
            if task.state == "Running":
                task.state = "Cancelled"
                task.completed_at = datetime.now(UTC)
                self._emit(QueueEvent("task-cancelled", task.id, task.node_id, task.task_type))
        self._update_idle()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Task queue listener failed on %s for %s", event.type, event.task_id)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _pump(self) -> None:
        """Start as many pending tasks as concurrency and leases allow."""
        if self._paused:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Started later by the first call made from inside the loop
            return

        for task_id in list(self._pending):
            if len(self._running) >= self._concurrency:
                break
            task = self._tasks[task_id]
            key = node_key(task.node_id)
            if not self._locks.try_acquire(key, holder=task.id):
                continue

            self._pending.remove(task_id)
            task.state = "Running"
            task.attempt += 1
            task.started_at = datetime.now(UTC)
            self._running[task.id] = loop.create_task(self._execute(task, key))

    async def _execute(self, task: Task, key: str) -> None:
        result: dict[str, Any] | None = None
        error: KBError | None = None

        try:
            handler = self._handlers.get(task.task_type)
            if handler is None:
                raise KBError(
                    ErrorCode.E500_INTERNAL_ERROR,
                    f"No handler registered for task type '{task.task_type}'",
                )
            self._emit(QueueEvent("task-started", task.id, task.node_id, task.task_type))
            result = await handler(task)
        except KBError as e:
            error = e
        except Exception as e:
            log.exception("Handler for %s task %s raised", task.task_type, task.id)
            error = KBError.internal(e)
        finally:
            self._locks.release(key)
            self._running.pop(task.id, None)

        self._settle(task, result, error)
        self._pump()
        self._update_idle()

    def _settle(self, task: Task, result: dict[str, Any] | None, error: KBError | None) -> None:
        if task.state == "Cancelled":
            log.info("Discarding outcome of cancelled task %s", task.id)
            return

        if error is None:
            task.state = "Completed"
            task.result = result or {}
            task.completed_at = datetime.now(UTC)
            log.info("Task %s (%s) completed on attempt %d", task.id, task.task_type, task.attempt)
            self._emit(QueueEvent("task-completed", task.id, task.node_id, task.task_type))
            return

        task.errors.append(TaskError(code=error.code, message=error.message, attempt=task.attempt))

        if error.retryable and task.attempt < self._attempt_limit(task, error):
            task.state = "Pending"
            self._pending.append(task.id)
            log.warning(
                "Task %s attempt %d/%d failed with %s, retrying: %s",
                task.id, task.attempt, task.max_attempts, error.code.value, error.message,
            )
            self._emit(QueueEvent("task-retrying", task.id, task.node_id, task.task_type, tuple(task.errors)))
            return

        task.state = "Failed"
        task.completed_at = datetime.now(UTC)
        log.error(
            "Task %s (%s) failed after %d attempt(s): [%s] %s",
            task.id, task.task_type, task.attempt, error.code.value, error.message,
        )
        self._emit(QueueEvent("task-failed", task.id, task.node_id, task.task_type, tuple(task.errors)))

    def _attempt_limit(self, task: Task, error: KBError) -> int:
        if error.code in MODEL_OUTPUT_CODES:
            return min(task.max_attempts, self._model_output_max_attempts)
        return task.max_attempts

    def _update_idle(self) -> None:
        if not self._pending and not self._running:
            self._idle.set()
        else:
            self._idle.clear()
