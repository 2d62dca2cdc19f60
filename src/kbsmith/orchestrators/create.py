"""Create pipeline: from a standardized concept to an indexed Draft note.

    idle -> tagging -> review_draft -> writing (stub) -> indexing
         -> review_changes -> writing (draft) -> checking_duplicates
         -> [verifying] -> completed

The two review stages are confirmed automatically; `confirm_create` and
`confirm_write` are public so a caller can drive them explicitly.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from ..errors import Err, ErrorCode, KBError, Ok, Result
from ..frontmatter import build_note, create_stub, parse_note
from ..models import (
    EnrichedData,
    NoteFrontmatter,
    PipelineContext,
    StandardizedConcept,
    TagPayload,
    Task,
    WritePayload,
)
from ..naming import generate_file_path, note_title, render_naming_template, wikilink, wikilink_target
from ..renderer import embedding_text, render_note_body
from ..task_runner import TaskRunner
from .base import BaseOrchestrator, OrchestratorDeps

log = logging.getLogger(__name__)

CREATE_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"tagging"}),
    "tagging": frozenset({"review_draft"}),
    "review_draft": frozenset({"writing"}),
    "writing": frozenset({"indexing", "checking_duplicates"}),
    "indexing": frozenset({"review_changes"}),
    "review_changes": frozenset({"writing"}),
    "checking_duplicates": frozenset({"verifying", "completed"}),
    "verifying": frozenset({"completed"}),
}


def _normalize_parents(parents: list[str] | None) -> list[str]:
    links: list[str] = []
    for parent in parents or []:
        title = wikilink_target(parent) or parent.strip()
        if title and wikilink(title) not in links:
            links.append(wikilink(title))
    return links


class CreateOrchestrator(BaseOrchestrator):
    kind = "create"
    transitions = CREATE_TRANSITIONS

    def __init__(self, deps: OrchestratorDeps, runner: TaskRunner) -> None:
        super().__init__(deps)
        self._runner = runner

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def define(self, user_input: str) -> Result[StandardizedConcept]:
        """Standardize a concept description. Direct call; not queued."""
        try:
            return Ok(await self._runner.define(user_input))
        except KBError as e:
            log.warning("define failed: [%s] %s", e.code.value, e.message)
            return Err(e)

    def validate_prerequisites(self) -> Result[None]:
        """Check that every provider the create flow calls is usable."""
        settings = self._deps.get_settings()
        provider_ids = {settings.model_for(t).provider_id for t in ("tag", "write")}
        if settings.enable_auto_verify:
            provider_ids.add(settings.model_for("verify").provider_id)
        provider_ids.add(settings.embedding_provider_id)
        for provider_id in sorted(provider_ids):
            if not self._deps.provider.is_configured(provider_id):
                return Err(
                    KBError(
                        ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                        f"Provider '{provider_id}' is not configured",
                        {"provider_id": provider_id},
                    )
                )
        return Ok(None)

    async def start_create_pipeline(
        self,
        standardized: StandardizedConcept,
        concept_type: str,
        parents: list[str] | None = None,
        target_dir: str | None = None,
        sources: str = "",
        user_input: str = "",
    ) -> Result[str]:
        """Start creating a note for one knowledge type of a defined concept.

        target_dir places the note in that KB directory instead of the one
        the directory scheme gives its type.

        Returns:
            Ok(pipeline_id) once the tag task is queued. Err E401 when a
            provider is missing, E320 when a note already has the target
            path.
        """
        prerequisites = self.validate_prerequisites()
        if isinstance(prerequisites, Err):
            return prerequisites

        settings = self._deps.get_settings()
        standard_name = standardized.name_for(concept_type)
        name = render_naming_template(
            settings.naming_template,
            standard_name.english,
            standard_name.chinese,
            concept_type,
        )
        if not name:
            return Err(KBError(ErrorCode.E101_INVALID_INPUT, "Concept has no usable name"))

        try:
            file_path = generate_file_path(name, settings.directory_scheme, concept_type, target_dir)
            if self._deps.repository.exists(file_path):
                return Err(KBError.conflict(f"A note already exists at {file_path}", path=file_path))
        except KBError as e:
            return Err(e)

        ctx = self._new_context(
            node_id=str(uuid.uuid4()),
            type=concept_type,
            user_input=user_input,
            standardized_data=standardized,
            file_path=file_path,
            parents=_normalize_parents(parents),
            sources=sources,
        )
        log.info("Create pipeline %s started for %s", ctx.pipeline_id, file_path)

        try:
            self._transition(ctx, "tagging")
            self._enqueue(
                ctx,
                ctx.node_id,
                TagPayload(
                    pipeline_id=ctx.pipeline_id,
                    concept_type=concept_type,
                    user_input=user_input,
                    standardized=standardized,
                ),
            )
        except KBError as e:
            await self._fail(ctx, e)
            return Err(e)
        return Ok(ctx.pipeline_id)

    # -------------------------------------------------------------------------
    # Task outcomes
    # -------------------------------------------------------------------------

    async def _handle_task_completed(self, ctx: PipelineContext, task: Task) -> None:
        if task.task_type == "tag":
            await self._on_tag_completed(ctx, task)
        elif task.task_type == "write":
            await self._on_write_completed(ctx, task)
        else:
            await super()._handle_task_completed(ctx, task)

    async def _on_tag_completed(self, ctx: PipelineContext, task: Task) -> None:
        ctx.enriched_data = EnrichedData.model_validate(task.result or {})
        self._transition(ctx, "review_draft")
        await self.confirm_create(ctx.pipeline_id)

    async def _on_write_completed(self, ctx: PipelineContext, task: Task) -> None:
        ctx.generated_content = task.result or {}
        self._transition(ctx, "indexing")
        ctx.new_content = self._compose_draft(ctx)

        parsed = parse_note(ctx.new_content)
        assert parsed.frontmatter is not None
        ctx.embedding = await self._embed(embedding_text(parsed.frontmatter))

        self._transition(ctx, "review_changes")
        await self.confirm_write(ctx.pipeline_id)

    # -------------------------------------------------------------------------
    # Confirmations
    # -------------------------------------------------------------------------

    async def confirm_create(self, pipeline_id: str) -> Result[None]:
        """Write the Stub note and queue content generation."""
        found = self._require(pipeline_id, "review_draft")
        if isinstance(found, Err):
            return found
        ctx = found

        try:
            self._acquire_leases(ctx, [ctx.node_id])
            try:
                await self._write_stub(ctx)
            finally:
                self._release_leases(ctx)

            self._transition(ctx, "writing")
            self._enqueue(ctx, ctx.node_id, self._write_payload(ctx))
        except KBError as e:
            await self._fail(ctx, e)
            return Err(e)
        return Ok(None)

    async def confirm_write(self, pipeline_id: str) -> Result[None]:
        """Replace the Stub with the Draft, then index it and look for duplicates."""
        found = self._require(pipeline_id, "review_changes")
        if isinstance(found, Err):
            return found
        ctx = found
        assert ctx.file_path is not None and ctx.new_content is not None

        try:
            self._transition(ctx, "writing")
            self._acquire_leases(ctx, [ctx.node_id])
            try:
                ctx.previous_content = await self._deps.repository.read_by_path_if_exists(ctx.file_path)
                ctx.snapshot_id = await self._snapshot_then_write(
                    ctx, ctx.file_path, ctx.new_content, f"create:{ctx.pipeline_id}"
                )
            finally:
                self._release_leases(ctx)
        except KBError as e:
            await self._fail(ctx, e)
            return Err(e)

        log.info("Draft written to %s", ctx.file_path)

        soft = await self._upsert_vector(ctx, note_title(ctx.file_path))
        if soft is not None:
            log.warning("Pipeline %s: %s", ctx.pipeline_id, soft)

        self._transition(ctx, "checking_duplicates")
        soft = await self._run_dedup(ctx)
        if soft is not None:
            log.warning("Pipeline %s: %s", ctx.pipeline_id, soft)

        await self._verify_or_complete(ctx)
        return Ok(None)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _note_name(self, ctx: PipelineContext) -> str:
        assert ctx.file_path is not None
        return note_title(ctx.file_path)

    def _write_payload(self, ctx: PipelineContext) -> WritePayload:
        assert ctx.standardized_data is not None and ctx.file_path is not None
        return WritePayload(
            pipeline_id=ctx.pipeline_id,
            concept_type=ctx.type,
            name=self._note_name(ctx),
            standardized=ctx.standardized_data,
            enriched=ctx.enriched_data or EnrichedData(),
            parents=ctx.parents,
            sources=ctx.sources,
            target_path=ctx.file_path,
        )

    async def _write_stub(self, ctx: PipelineContext) -> None:
        assert ctx.file_path is not None and ctx.standardized_data is not None
        repo = self._deps.repository
        if repo.exists(ctx.file_path):
            raise KBError.conflict(f"A note appeared at {ctx.file_path}", path=ctx.file_path)

        enriched = ctx.enriched_data or EnrichedData()
        stub = create_stub(
            ctx.node_id,
            ctx.type,
            self._note_name(ctx),
            definition=ctx.standardized_data.core_definition,
            aliases=enriched.aliases,
            tags=enriched.tags,
            parents=ctx.parents,
        )
        await repo.write_atomic(ctx.file_path, stub)
        log.info("Stub written to %s", ctx.file_path)

    def _compose_draft(self, ctx: PipelineContext) -> str:
        assert ctx.generated_content is not None and ctx.standardized_data is not None
        content = ctx.generated_content
        enriched = ctx.enriched_data or EnrichedData()
        name = self._note_name(ctx)
        definition = content.get("definition")
        if not isinstance(definition, str) or not definition.strip():
            definition = ctx.standardized_data.core_definition

        now = datetime.now(UTC)
        fm = NoteFrontmatter(
            cruid=ctx.node_id,
            type=ctx.type,
            name=name,
            definition=definition.strip(),
            status="Draft",
            aliases=enriched.aliases,
            tags=enriched.tags,
            parents=ctx.parents,
            created=ctx.created_at,
            updated=now,
        )
        return build_note(fm, render_note_body(name, ctx.type, content))
