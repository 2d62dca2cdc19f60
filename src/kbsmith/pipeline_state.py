"""Crash recovery for pipelines awaiting a user decision.

Only merge pipelines sitting in `review_changes` are worth keeping across a
restart: everything before that stage is cheap to redo, and everything after
it is already on disk. The file is rewritten whenever such a pipeline enters
or leaves that stage.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from .models import PipelineContext, PipelineKind, PipelineStateFile
from .storage import read_json, write_json_atomic

log = logging.getLogger(__name__)

STATE_FILENAME = "pipeline-state.json"

PERSISTED_STAGE = "review_changes"


def should_persist(context: PipelineContext) -> bool:
    return context.kind == "merge" and context.stage == PERSISTED_STAGE


class PipelineStateStore:
    """Reads and writes {index_root}/pipeline-state.json."""

    def __init__(self, index_root: Path) -> None:
        self._path = index_root / STATE_FILENAME
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, contexts: Iterable[PipelineContext], task_to_pipeline: dict[str, str] | None = None) -> int:
        """Persist the contexts that qualify. Returns how many were written."""
        keep = [c for c in contexts if should_persist(c)]
        kept_ids = {c.pipeline_id for c in keep}
        mapping = {t: p for t, p in (task_to_pipeline or {}).items() if p in kept_ids}
        state = PipelineStateFile(pipelines=keep, task_to_pipeline=mapping)

        async with self._lock:
            if not keep:
                await asyncio.to_thread(self._remove_file)
            else:
                await asyncio.to_thread(write_json_atomic, self._path, state.model_dump(mode="json"))
        return len(keep)

    def _remove_file(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass

    async def load(self, kind: PipelineKind | None = None) -> PipelineStateFile:
        """Read persisted state, optionally only pipelines of one kind.

        A corrupt file is deleted with a warning and treated as empty.
        """
        async with self._lock:
            try:
                data = await asyncio.to_thread(read_json, self._path)
                state = PipelineStateFile.model_validate(data) if data else PipelineStateFile()
            except (json.JSONDecodeError, ValidationError) as e:
                log.warning("Pipeline state file is corrupt, clearing it: %s", e)
                await asyncio.to_thread(self._remove_file)
                return PipelineStateFile()

        if kind is not None:
            pipelines = [c for c in state.pipelines if c.kind == kind]
            ids = {c.pipeline_id for c in pipelines}
            state = PipelineStateFile(
                pipelines=pipelines,
                task_to_pipeline={t: p for t, p in state.task_to_pipeline.items() if p in ids},
                saved_at=state.saved_at,
            )
        return state

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove_file)
