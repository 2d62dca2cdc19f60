"""Wiring for a knowledge base session.

Builds every component over one KB root and loads the persisted stores:

    services = await Services.open(kb_root)
    try:
        result = await services.create.define("attention in transformers")
        ...
    finally:
        await services.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import SettingsStore, get_index_root
from .duplicates import DuplicateManager
from .errors import Err, KBError, Ok, Result
from .indexer import VectorIndex
from .indexer.vector_index import JsonVectorIndex
from .llm_providers import ProviderClient
from .locks import LockCoordinator, node_key
from .note_repository import NoteRepository
from .orchestrators import CreateOrchestrator, MergeOrchestrator, OrchestratorDeps
from .pipeline_state import PipelineStateStore
from .prompts import PromptBuilder
from .snapshots import SnapshotManager
from .task_queue import TaskQueue
from .task_runner import TaskRunner

log = logging.getLogger(__name__)


def _build_vector_index(backend: str, index_root: Path, model: str, dimension: int) -> VectorIndex:
    if backend == "chroma":
        from .indexer.chroma_index import ChromaVectorIndex

        return ChromaVectorIndex(index_root / "chroma", model, dimension)
    return JsonVectorIndex(index_root, model, dimension)


@dataclass
class Services:
    kb_root: Path
    index_root: Path
    settings: SettingsStore
    locks: LockCoordinator
    provider: ProviderClient
    runner: TaskRunner
    queue: TaskQueue
    vector_index: VectorIndex
    duplicates: DuplicateManager
    snapshots: SnapshotManager
    repository: NoteRepository
    state_store: PipelineStateStore
    create: CreateOrchestrator
    merge: MergeOrchestrator

    @classmethod
    async def open(
        cls,
        kb_root: Path,
        settings: SettingsStore | None = None,
        provider: ProviderClient | None = None,
        index_root: Path | None = None,
    ) -> Services:
        """Build and load all components for kb_root.

        Args:
            kb_root: Knowledge base directory.
            settings: Settings to use instead of reading .kbconfig.
            provider: Provider client to use instead of one built from settings.
            index_root: Store directory; defaults to get_index_root(kb_root).
        """
        store = settings or SettingsStore(kb_root)
        current = store.get_settings()
        index_root = index_root or get_index_root(kb_root)
        index_root.mkdir(parents=True, exist_ok=True)

        locks = LockCoordinator()
        provider = provider or ProviderClient(current.providers, cache_root=index_root)
        runner = TaskRunner(provider, PromptBuilder(language=current.language), store.get_settings)
        queue = TaskQueue(
            locks,
            handlers=runner.handlers(),
            concurrency=current.concurrency,
            max_attempts=current.max_retry_attempts,
        )
        vector_index = _build_vector_index(
            current.vector_backend, index_root, current.embedding_model, current.embedding_dimension
        )
        duplicates = DuplicateManager(index_root, vector_index, locks, store.get_settings)
        snapshots = SnapshotManager(
            index_root,
            max_count=current.snapshot_max_count,
            max_age_days=current.snapshot_max_age_days,
        )
        repository = NoteRepository(kb_root)
        state_store = PipelineStateStore(index_root)

        await vector_index.load()
        await duplicates.load()

        def deps(with_state: bool) -> OrchestratorDeps:
            return OrchestratorDeps(
                queue=queue,
                locks=locks,
                repository=repository,
                snapshots=snapshots,
                vector_index=vector_index,
                duplicates=duplicates,
                provider=provider,
                get_settings=store.get_settings,
                state_store=state_store if with_state else None,
            )

        # Only the merge orchestrator writes pipeline state
        create = CreateOrchestrator(deps(with_state=False), runner)
        merge = MergeOrchestrator(deps(with_state=True))
        await merge.restore()

        log.debug("Opened knowledge base %s (indices in %s)", kb_root, index_root)
        return cls(
            kb_root=kb_root,
            index_root=index_root,
            settings=store,
            locks=locks,
            provider=provider,
            runner=runner,
            queue=queue,
            vector_index=vector_index,
            duplicates=duplicates,
            snapshots=snapshots,
            repository=repository,
            state_store=state_store,
            create=create,
            merge=merge,
        )

    async def undo(self, snapshot_id: str) -> Result[str]:
        """Put a snapshot's content back at its path.

        Returns:
            Ok(path), Err E311/E304 for a missing or damaged snapshot, or E320
            if the note is being modified.
        """
        restored = await self.snapshots.restore_snapshot(snapshot_id)
        if isinstance(restored, Err):
            return restored
        snapshot = restored.value

        if snapshot.node_id and (
            self.queue.has_active_task(snapshot.node_id) or self.locks.is_locked(node_key(snapshot.node_id))
        ):
            return Err(KBError.conflict(f"Note {snapshot.node_id} is being modified", node_id=snapshot.node_id))

        try:
            await self.repository.write_atomic(snapshot.path, snapshot.content)
        except KBError as e:
            return Err(e)
        log.info("Restored %s from snapshot %s", snapshot.path, snapshot_id)
        return Ok(snapshot.path)

    async def wait_idle(self) -> None:
        """Wait until queued work and the orchestrators' follow-ups are done."""
        while True:
            await self.queue.join()
            await self.create.drain()
            await self.merge.drain()
            status = self.queue.status()
            if status.pending == 0 and status.running == 0:
                return

    async def close(self) -> None:
        self.create.dispose()
        self.merge.dispose()
        await self.queue.shutdown()
