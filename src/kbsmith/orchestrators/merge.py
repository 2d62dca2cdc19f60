"""Merge pipeline: fold one note of a duplicate pair into the other.

    idle -> saving -> writing (LLM merge) -> review_changes
         -> writing (apply) -> indexing -> [verifying] -> completed

Both notes are snapshotted before the model is called. At confirmation the
notes must still match what the preview was built from, and every note whose
parent links are repointed is leased and snapshotted before the first write.
Otherwise the merge is abandoned with E320 and nothing stays written. The
pair is returned to `pending` on any failure or cancellation.

Pipelines waiting in review_changes are persisted so a restart can pick them
up again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import Err, ErrorCode, KBError, Ok, Result, SoftFailure
from ..frontmatter import build_note, parse_note, require_frontmatter, rewrite_parent_links
from ..locks import node_key
from ..models import MergePayload, MergeSource, PipelineContext, Task
from ..naming import note_title, renamed_path
from ..renderer import build_merged_note, embedding_text
from .base import BaseOrchestrator

log = logging.getLogger(__name__)

MERGE_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"saving"}),
    "saving": frozenset({"writing"}),
    "writing": frozenset({"review_changes", "indexing"}),
    "review_changes": frozenset({"writing"}),
    "indexing": frozenset({"verifying", "completed"}),
    "verifying": frozenset({"completed"}),
}


@dataclass(frozen=True)
class ParentRewrite:
    """A note whose parent links point at a title the merge removes."""

    path: str
    content: str
    updated: str
    node_id: str | None


class MergeOrchestrator(BaseOrchestrator):
    kind = "merge"
    transitions = MERGE_TRANSITIONS

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def start_merge_pipeline(
        self,
        pair_id: str,
        keep_node_id: str,
        final_file_name: str | None = None,
    ) -> Result[str]:
        """Reserve a pending pair and queue the merge task.

        Args:
            pair_id: Id of a pending duplicate pair.
            keep_node_id: The note that survives; the other one is deleted.
            final_file_name: Renames the merged note within the kept note's
                directory. Links to either old title are repointed at it.

        Returns:
            Ok(pipeline_id), or Err. The pair is left `pending` on any error.
        """
        duplicates = self._deps.duplicates
        pair = duplicates.get_pair(pair_id)
        if pair is None:
            return Err(KBError.not_found("pair", pair_id))
        if not pair.involves(keep_node_id):
            return Err(
                KBError(
                    ErrorCode.E101_INVALID_INPUT,
                    f"Note {keep_node_id} is not part of pair {pair_id}",
                    {"pair_id": pair_id, "node_id": keep_node_id},
                )
            )
        delete_node_id = pair.other(keep_node_id)
        for node_id in (keep_node_id, delete_node_id):
            if self._deps.queue.has_active_task(node_id) or self._deps.locks.is_locked(node_key(node_id)):
                return Err(KBError.conflict(f"Note {node_id} is busy", node_id=node_id))

        reserved = await duplicates.start_merge(pair_id)
        if isinstance(reserved, Err):
            return reserved

        ctx = self._new_context(
            node_id=keep_node_id,
            type=pair.type,
            merge_pair_id=pair_id,
            delete_node_id=delete_node_id,
        )
        log.info("Merge pipeline %s started: keep %s, delete %s", ctx.pipeline_id, keep_node_id, delete_node_id)

        try:
            keep_path = await self._resolve_path(keep_node_id)
            delete_path = await self._resolve_path(delete_node_id)
            repo = self._deps.repository
            ctx.file_path = keep_path
            ctx.delete_file_path = delete_path
            ctx.previous_content = await repo.read_by_path(keep_path)
            ctx.delete_content = await repo.read_by_path(delete_path)
            ctx.delete_note_name = note_title(delete_path)
            if final_file_name:
                ctx.final_file_path = self._final_path(keep_path, final_file_name)

            self._transition(ctx, "saving")
            ctx.snapshot_id = await self._snapshot(ctx, keep_path, ctx.previous_content, keep_node_id)
            ctx.delete_snapshot_id = await self._snapshot(ctx, delete_path, ctx.delete_content, delete_node_id)

            self._transition(ctx, "writing")
            self._enqueue(
                ctx,
                keep_node_id,
                MergePayload(
                    pipeline_id=ctx.pipeline_id,
                    pair_id=pair_id,
                    concept_type=ctx.type,
                    keep=MergeSource(
                        node_id=keep_node_id,
                        name=note_title(keep_path),
                        path=keep_path,
                        content=ctx.previous_content,
                    ),
                    delete=MergeSource(
                        node_id=delete_node_id,
                        name=ctx.delete_note_name,
                        path=delete_path,
                        content=ctx.delete_content,
                    ),
                ),
            )
        except KBError as e:
            await self._fail(ctx, e)
            return Err(e)
        return Ok(ctx.pipeline_id)

    async def restore(self) -> int:
        """Reload merge pipelines that were waiting for confirmation.

        Pipelines whose pair is no longer `merging` are dropped.

        Returns:
            Number of pipelines restored.
        """
        store = self._deps.state_store
        if store is None:
            return 0
        state = await store.load(kind="merge")
        restored = self.restore_pipelines(state.pipelines)
        if restored != len(state.pipelines):
            await self._persist()
        return restored

    def restore_pipelines(self, contexts: list[PipelineContext]) -> int:
        """Register persisted review_changes contexts; returns how many were kept."""
        restored = 0
        for ctx in contexts:
            if ctx.pipeline_id in self._pipelines or ctx.stage != "review_changes":
                continue
            pair = self._deps.duplicates.get_pair(ctx.merge_pair_id or "")
            if pair is None or pair.status != "merging":
                log.warning("Dropping persisted merge %s: pair %s is not merging", ctx.pipeline_id, ctx.merge_pair_id)
                continue
            self._pipelines[ctx.pipeline_id] = ctx
            restored += 1
        if restored:
            log.info("Restored %d merge pipeline(s) awaiting confirmation", restored)
        return restored

    # -------------------------------------------------------------------------
    # Task outcomes
    # -------------------------------------------------------------------------

    async def _handle_task_completed(self, ctx: PipelineContext, task: Task) -> None:
        if task.task_type != "merge":
            await super()._handle_task_completed(ctx, task)
            return

        assert ctx.previous_content is not None and ctx.delete_note_name is not None
        language = self._deps.get_settings().language
        ctx.new_content, ctx.merged_name = build_merged_note(
            ctx.previous_content,
            task.result or {},
            ctx.type,
            ctx.delete_note_name,
            language,
        )
        if ctx.final_file_path and ctx.file_path:
            # The kept note's old title keeps resolving after the rename
            fm, body = require_frontmatter(ctx.new_content, ctx.final_file_path)
            old_title = note_title(ctx.file_path)
            if old_title not in fm.aliases:
                ctx.new_content = build_note(fm.model_copy(update={"aliases": [*fm.aliases, old_title]}), body)
        self._transition(ctx, "review_changes")
        await self._persist()

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    async def confirm_write(self, pipeline_id: str) -> Result[None]:
        """Apply a previewed merge.

        Every note the merge touches is leased and snapshotted, and the
        pair is re-checked against the preview, before anything is written.
        Then the merged note is written, parent links are repointed at it,
        the other note and its index entries are deleted, and the merged
        note is re-indexed.

        A busy note returns E320 and leaves the preview in place. A note that
        changed since the preview fails the pipeline with E320, with every
        write made so far put back.
        """
        found = self._require(pipeline_id, "review_changes")
        if isinstance(found, Err):
            return found
        ctx = found
        assert ctx.file_path and ctx.delete_file_path and ctx.delete_node_id and ctx.new_content
        target = ctx.final_file_path or ctx.file_path

        try:
            self._acquire_leases(ctx, [ctx.node_id, ctx.delete_node_id])
            rewrites = await self._plan_parent_rewrites(ctx, target)
            self._acquire_leases(ctx, [r.node_id for r in rewrites if r.node_id])
        except KBError as e:
            # Leave the preview in place; the caller may retry
            self._release_leases(ctx)
            return Err(e)

        try:
            try:
                for rewrite in rewrites:
                    await self._snapshot(
                        ctx, rewrite.path, rewrite.content, rewrite.node_id,
                        label=f"merge-parents:{ctx.pipeline_id}",
                    )
                await self._check_unchanged(ctx)
                self._transition(ctx, "writing")

                repo = self._deps.repository
                await self._write_merged(ctx, target, rewrites)
                if target != ctx.file_path:
                    await repo.delete_by_path_if_exists(ctx.file_path)
                    ctx.file_path = target
                await repo.delete_by_path_if_exists(ctx.delete_file_path)
                await self._deps.vector_index.delete(ctx.delete_node_id)
                await self._deps.duplicates.remove_pairs_by_node_id(ctx.delete_node_id)
            finally:
                self._release_leases(ctx)
        except KBError as e:
            await self._fail(ctx, e)
            return Err(e)

        log.info("Merged %s into %s", ctx.delete_file_path, ctx.file_path)
        self._transition(ctx, "indexing")
        soft = await self._reindex(ctx)
        if soft is not None:
            log.warning("Pipeline %s: %s", ctx.pipeline_id, soft)

        completed = await self._deps.duplicates.complete_merge(ctx.merge_pair_id or "")
        if isinstance(completed, Err):
            log.error("Could not mark pair %s merged: %s", ctx.merge_pair_id, completed.message)
        await self._persist()

        await self._verify_or_complete(ctx)
        return Ok(None)

    async def _check_unchanged(self, ctx: PipelineContext) -> None:
        repo = self._deps.repository
        assert ctx.file_path and ctx.delete_file_path
        for path, expected in ((ctx.file_path, ctx.previous_content), (ctx.delete_file_path, ctx.delete_content)):
            current = await repo.read_by_path_if_exists(path)
            if current != expected:
                raise KBError.conflict(
                    f"{path} changed since the merge preview was generated",
                    path=path,
                    deleted=current is None,
                )
        if ctx.final_file_path and repo.exists(ctx.final_file_path):
            raise KBError.conflict(f"A note already exists at {ctx.final_file_path}", path=ctx.final_file_path)

    async def _plan_parent_rewrites(self, ctx: PipelineContext, target: str) -> list[ParentRewrite]:
        """Find the notes whose parent links must follow the merge."""
        assert ctx.file_path and ctx.delete_file_path
        repo = self._deps.repository
        old_titles = [note_title(ctx.delete_file_path)]
        if target != ctx.file_path:
            old_titles.append(note_title(ctx.file_path))
        new_title = note_title(target)

        rewrites: list[ParentRewrite] = []
        for path in repo.list_markdown_files():
            if path in (ctx.file_path, ctx.delete_file_path):
                continue
            content = await repo.read_by_path_if_exists(path)
            if content is None:
                continue
            updated = content
            try:
                for old_title in old_titles:
                    updated = rewrite_parent_links(updated, old_title, new_title) or updated
            except KBError as e:
                log.warning("Skipping %s while rewriting parent links: %s", path, e.message)
                continue
            if updated != content:
                node_id = parse_note(content).metadata.get("cruid")
                rewrites.append(ParentRewrite(path, content, updated, str(node_id) if node_id else None))
        return rewrites

    async def _write_merged(self, ctx: PipelineContext, target: str, rewrites: list[ParentRewrite]) -> None:
        """Write the merged note, then repoint parent links one note at a time.

        Each linking note is re-read just before it is written. If it no
        longer matches what was snapshotted, or any write fails, the writes
        already made are undone and the error is raised.
        """
        assert ctx.new_content is not None
        repo = self._deps.repository
        written: list[tuple[str, str | None]] = []
        try:
            await repo.write_atomic(target, ctx.new_content)
            written.append((target, ctx.previous_content if target == ctx.file_path else None))
            for rewrite in rewrites:
                current = await repo.read_by_path_if_exists(rewrite.path)
                if current != rewrite.content:
                    raise KBError.conflict(
                        f"{rewrite.path} changed while parent links were being rewritten",
                        path=rewrite.path,
                        deleted=current is None,
                    )
                await repo.write_atomic(rewrite.path, rewrite.updated)
                written.append((rewrite.path, rewrite.content))
        except KBError:
            await self._undo_writes(written)
            raise
        if rewrites:
            log.info("Repointed parent links in %d note(s) to [[%s]]", len(rewrites), note_title(target))

    async def _undo_writes(self, written: list[tuple[str, str | None]]) -> None:
        repo = self._deps.repository
        for path, previous in reversed(written):
            try:
                if previous is None:
                    await repo.delete_by_path_if_exists(path)
                else:
                    await repo.write_atomic(path, previous)
            except KBError as e:
                log.error("Could not put back %s after a failed merge: %s", path, e.message)
        if written:
            log.warning("Undid %d write(s) of an interrupted merge", len(written))

    async def _reindex(self, ctx: PipelineContext) -> SoftFailure | None:
        """Embed the merged note and scan it for duplicates again."""
        assert ctx.new_content is not None
        index = self._deps.vector_index
        duplicates = self._deps.duplicates
        try:
            fm, _ = require_frontmatter(ctx.new_content, ctx.file_path or "")
            try:
                ctx.embedding = await self._embed(embedding_text(fm))
            except KBError as e:
                # A stale vector would keep matching the old content
                await index.delete(ctx.node_id)
                await duplicates.clear_pending_pairs_by_node_id(ctx.node_id)
                return SoftFailure.from_error("reindex", e)
            await duplicates.clear_pending_pairs_by_node_id(ctx.node_id)
        except KBError as e:
            return SoftFailure.from_error("reindex", e)

        soft = await self._upsert_vector(ctx, ctx.merged_name or fm.name)
        if soft is not None:
            return soft
        return await self._run_dedup(ctx)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _final_path(self, keep_path: str, final_file_name: str) -> str | None:
        path = renamed_path(keep_path, final_file_name)
        if not note_title(path):
            raise KBError(ErrorCode.E101_INVALID_INPUT, "Final file name is empty", {"final_file_name": final_file_name})
        if path == keep_path:
            return None
        if self._deps.repository.exists(path):
            raise KBError.conflict(f"A note already exists at {path}", path=path)
        return path

    async def _resolve_path(self, node_id: str) -> str:
        entry = self._deps.vector_index.get_entry(node_id)
        if entry is not None and entry.path and self._deps.repository.exists(entry.path):
            return entry.path
        path = await self._deps.repository.locate_node(node_id)
        if path is None:
            raise KBError(ErrorCode.E301_FILE_NOT_FOUND, f"No note carries node id {node_id}", {"node_id": node_id})
        return path

    async def _snapshot(
        self,
        ctx: PipelineContext,
        path: str,
        content: str,
        node_id: str | None,
        label: str | None = None,
    ) -> str:
        result = await self._deps.snapshots.create_snapshot(path, content, label or f"merge:{ctx.pipeline_id}", node_id)
        if isinstance(result, Err):
            raise result.error
        return result.value

    async def _persist(self) -> None:
        store = self._deps.state_store
        if store is None:
            return
        try:
            await store.save(self._pipelines.values(), self._task_to_pipeline)
        except KBError as e:
            log.warning("Could not persist merge pipeline state: %s", e.message)

    async def _on_terminal(self, ctx: PipelineContext) -> None:
        if ctx.stage == "failed" and ctx.merge_pair_id:
            pair = self._deps.duplicates.get_pair(ctx.merge_pair_id)
            if pair is not None and pair.status == "merging":
                aborted = await self._deps.duplicates.abort_merge(ctx.merge_pair_id)
                if isinstance(aborted, Err):
                    log.error("Could not release pair %s: %s", ctx.merge_pair_id, aborted.message)
        await self._persist()
