"""End-to-end tests for the merge pipeline."""

from __future__ import annotations

import pytest

from kbsmith.config import SettingsStore
from kbsmith.errors import Err, ErrorCode, KBError, Ok
from kbsmith.frontmatter import require_frontmatter
from kbsmith.locks import node_key
from kbsmith.models import VectorEntry
from kbsmith.services import Services

KEEP = "entities/Transformer.md"
DELETE = "entities/Transformer Model.md"
CHILD = "entities/BERT.md"
VECTOR = [1.0, 0.0, 0.0, 0.0]


@pytest.fixture
def notes(write_note):
    write_note(KEEP, node_id="n-a", name="Transformer", body="# Transformer\n\nEncoder and decoder stacks.")
    write_note(DELETE, node_id="n-b", name="Transformer Model", body="# Transformer Model\n\nUses positional encodings.")
    write_note(CHILD, node_id="n-c", name="BERT", parents=["[[Transformer Model]]", "[[Language Model]]"])


async def _pair(services) -> str:
    for node_id, path in (("n-a", KEEP), ("n-b", DELETE)):
        await services.vector_index.upsert(
            VectorEntry(node_id=node_id, type="Entity", name=path, path=path, embedding=VECTOR)
        )
    detected = await services.duplicates.detect("n-b", "Entity", VECTOR)
    assert isinstance(detected, Ok)
    assert len(detected.value) == 1
    return detected.value[0].id


async def _preview(services) -> tuple[str, str]:
    pair_id = await _pair(services)
    started = await services.merge.start_merge_pipeline(pair_id, "n-a")
    assert isinstance(started, Ok), started
    await services.wait_idle()
    return pair_id, started.value


# ─────────────────────────────────────────────────────────────────────────────
# Preview
# ─────────────────────────────────────────────────────────────────────────────


class TestMergePreview:
    @pytest.mark.asyncio
    async def test_preview_waits_for_confirmation(self, services, notes, tmp_kb, fake_provider):
        pair_id, pid = await _preview(services)

        ctx = services.merge.get_context(pid)
        assert ctx.stage == "review_changes"
        assert ctx.merged_name == "Transformer"
        assert ctx.delete_note_name == "Transformer Model"
        assert "## Merge Rationale" in ctx.new_content
        assert "### From Transformer Model" in ctx.new_content
        assert services.duplicates.get_pair(pair_id).status == "merging"
        assert fake_provider.calls == ["merge"]
        assert "Uses positional encodings." in fake_provider.prompts[0]

        # Nothing written yet
        assert (tmp_kb / DELETE).exists()
        assert "Encoder and decoder stacks." in (tmp_kb / KEEP).read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_both_notes_snapshotted_before_model_call(self, services, notes):
        _, pid = await _preview(services)

        records = await services.snapshots.list_snapshots()
        assert sorted(r.path for r in records) == [DELETE, KEEP]
        assert {r.label for r in records} == {f"merge:{pid}"}

    @pytest.mark.asyncio
    async def test_preview_state_is_persisted(self, services, notes):
        _, pid = await _preview(services)

        state = await services.state_store.load()
        assert [c.pipeline_id for c in state.pipelines] == [pid]

    @pytest.mark.asyncio
    async def test_unknown_pair(self, services):
        result = await services.merge.start_merge_pipeline("x--y", "x")
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E311_NOT_FOUND

    @pytest.mark.asyncio
    async def test_keep_note_must_belong_to_pair(self, services, notes):
        pair_id = await _pair(services)
        result = await services.merge.start_merge_pipeline(pair_id, "n-c")
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E101_INVALID_INPUT
        assert services.duplicates.get_pair(pair_id).status == "pending"

    @pytest.mark.asyncio
    async def test_busy_note_is_rejected(self, services, notes):
        pair_id = await _pair(services)
        services.locks.acquire(node_key("n-b"), holder="someone-else")

        result = await services.merge.start_merge_pipeline(pair_id, "n-a")

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert services.duplicates.get_pair(pair_id).status == "pending"

    @pytest.mark.asyncio
    async def test_snapshot_failure_aborts_before_model_call(self, services, notes, tmp_kb, fake_provider, monkeypatch):
        pair_id = await _pair(services)
        original = services.snapshots.create_snapshot

        async def failing_snapshot(path, content, label, node_id=None):
            if path == DELETE:
                return Err(KBError(ErrorCode.E304_SNAPSHOT_FAILED, "disk full"))
            return await original(path, content, label, node_id)

        monkeypatch.setattr(services.snapshots, "create_snapshot", failing_snapshot)
        before = {p: (tmp_kb / p).read_text(encoding="utf-8") for p in (KEEP, DELETE)}

        result = await services.merge.start_merge_pipeline(pair_id, "n-a")
        await services.wait_idle()

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E304_SNAPSHOT_FAILED
        [ctx] = services.merge.get_all_pipelines()
        assert ctx.stage == "failed"
        assert services.duplicates.get_pair(pair_id).status == "pending"
        assert fake_provider.calls == []
        assert {p: (tmp_kb / p).read_text(encoding="utf-8") for p in (KEEP, DELETE)} == before

    @pytest.mark.asyncio
    async def test_merge_task_failure_releases_pair(self, services, notes, fake_provider):
        fake_provider.replies["merge"].append(KBError(ErrorCode.E203_INVALID_API_KEY, "bad key"))

        pair_id, pid = await _preview(services)

        assert services.merge.get_context(pid).stage == "failed"
        assert services.duplicates.get_pair(pair_id).status == "pending"
        assert not services.state_store.path.exists()


# ─────────────────────────────────────────────────────────────────────────────
# Confirmation
# ─────────────────────────────────────────────────────────────────────────────


class TestMergeConfirm:
    @pytest.mark.asyncio
    async def test_confirm_applies_merge(self, services, notes, tmp_kb):
        pair_id, pid = await _preview(services)

        result = await services.merge.confirm_write(pid)
        await services.wait_idle()

        assert isinstance(result, Ok)
        assert services.merge.get_context(pid).stage == "completed"

        fm, body = require_frontmatter((tmp_kb / KEEP).read_text(encoding="utf-8"))
        assert fm.cruid == "n-a"
        assert fm.definition == "A neural network architecture built on self-attention."
        assert "Transformer Model" in fm.aliases
        assert "## Preserved Insights" in body
        assert not (tmp_kb / DELETE).exists()

        child, _ = require_frontmatter((tmp_kb / CHILD).read_text(encoding="utf-8"))
        assert child.parents == ["[[Transformer]]", "[[Language Model]]"]

        assert services.vector_index.get_entry("n-b") is None
        assert services.vector_index.get_entry("n-a").name == "Transformer"
        assert services.duplicates.get_pair(pair_id).status == "merged"
        assert services.duplicates.get_pending_pairs() == []
        assert not services.state_store.path.exists()
        assert services.locks.active_locks() == []

    @pytest.mark.asyncio
    async def test_affected_notes_are_snapshotted(self, services, notes):
        _, pid = await _preview(services)
        await services.merge.confirm_write(pid)

        records = await services.snapshots.list_snapshots(CHILD)
        assert [r.label for r in records] == [f"merge-parents:{pid}"]
        assert records[0].node_id == "n-c"

    @pytest.mark.asyncio
    async def test_changed_note_blocks_merge(self, services, notes, tmp_kb):
        pair_id, pid = await _preview(services)
        (tmp_kb / DELETE).write_text("edited by hand", encoding="utf-8")

        result = await services.merge.confirm_write(pid)

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert result.error.details["path"] == DELETE
        assert services.merge.get_context(pid).stage == "failed"
        assert services.duplicates.get_pair(pair_id).status == "pending"
        assert "Encoder and decoder stacks." in (tmp_kb / KEEP).read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_deleted_note_blocks_merge(self, services, notes, tmp_kb):
        _, pid = await _preview(services)
        (tmp_kb / DELETE).unlink()

        result = await services.merge.confirm_write(pid)

        assert isinstance(result, Err)
        assert result.error.details["deleted"] is True

    @pytest.mark.asyncio
    async def test_leased_note_leaves_preview_in_place(self, services, notes):
        _, pid = await _preview(services)
        services.locks.acquire(node_key("n-b"), holder="someone-else")

        result = await services.merge.confirm_write(pid)
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert services.merge.get_context(pid).stage == "review_changes"
        assert services.locks.holder_of(node_key("n-a")) is None

        services.locks.release(node_key("n-b"))
        assert isinstance(await services.merge.confirm_write(pid), Ok)

    @pytest.mark.asyncio
    async def test_busy_linking_note_blocks_before_any_write(self, services, notes, tmp_kb):
        """A leased child is found before the merged note is written."""
        _, pid = await _preview(services)
        before = {p: (tmp_kb / p).read_text(encoding="utf-8") for p in (KEEP, DELETE, CHILD)}
        services.locks.acquire(node_key("n-c"), holder="someone-else")

        result = await services.merge.confirm_write(pid)

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert {p: (tmp_kb / p).read_text(encoding="utf-8") for p in (KEEP, DELETE, CHILD)} == before
        assert services.merge.get_context(pid).stage == "review_changes"
        assert await services.snapshots.list_snapshots(CHILD) == []
        assert services.locks.holder_of(node_key("n-a")) is None
        assert services.locks.holder_of(node_key("n-b")) is None

        services.locks.release(node_key("n-c"))
        assert isinstance(await services.merge.confirm_write(pid), Ok)
        assert not (tmp_kb / DELETE).exists()

    @pytest.mark.asyncio
    async def test_linking_note_edited_mid_confirm_undoes_writes(self, services, notes, tmp_kb, monkeypatch):
        """A child that drifts after its snapshot aborts the merge and puts earlier writes back."""
        gpt = tmp_kb / "entities/GPT.md"
        gpt.write_text("---\nparents:\n- '[[Transformer Model]]'\n---\n# GPT\n", encoding="utf-8")
        pair_id, pid = await _preview(services)
        before = {p: (tmp_kb / p).read_text(encoding="utf-8") for p in (KEEP, DELETE, CHILD)}

        original = services.snapshots.create_snapshot

        async def snapshot_then_edit(path, content, label, node_id=None):
            result = await original(path, content, label, node_id)
            if path == "entities/GPT.md":
                gpt.write_text("edited elsewhere", encoding="utf-8")
            return result

        monkeypatch.setattr(services.snapshots, "create_snapshot", snapshot_then_edit)

        result = await services.merge.confirm_write(pid)

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert result.error.details["path"] == "entities/GPT.md"
        assert {p: (tmp_kb / p).read_text(encoding="utf-8") for p in (KEEP, DELETE, CHILD)} == before
        assert gpt.read_text(encoding="utf-8") == "edited elsewhere"
        assert services.merge.get_context(pid).stage == "failed"
        assert services.duplicates.get_pair(pair_id).status == "pending"
        assert services.vector_index.get_entry("n-b") is not None

    @pytest.mark.asyncio
    async def test_cancel_returns_pair_to_pending(self, services, notes, tmp_kb):
        pair_id, pid = await _preview(services)

        result = await services.merge.cancel_pipeline(pid)

        assert isinstance(result, Ok)
        assert services.merge.get_context(pid).stage == "failed"
        assert services.duplicates.get_pair(pair_id).status == "pending"
        assert not services.state_store.path.exists()
        assert (tmp_kb / DELETE).exists()

    @pytest.mark.asyncio
    async def test_auto_verify_after_merge(self, services, notes, tmp_kb, fake_provider):
        services.settings.update(enable_auto_verify=True)
        _, pid = await _preview(services)

        await services.merge.confirm_write(pid)
        await services.wait_idle()

        assert services.merge.get_context(pid).stage == "completed"
        assert "## Verification Report" in (tmp_kb / KEEP).read_text(encoding="utf-8")
        assert 'note about the Entity "Transformer"' in fake_provider.prompts[-1]


class TestMergeRename:
    RENAMED = "entities/Transformer Architecture.md"

    @pytest.mark.asyncio
    async def test_final_file_name_renames_merged_note(self, services, notes, tmp_kb):
        pair_id = await _pair(services)
        started = await services.merge.start_merge_pipeline(pair_id, "n-a", final_file_name="Transformer Architecture.md")
        assert isinstance(started, Ok), started
        await services.wait_idle()
        pid = started.value

        assert isinstance(await services.merge.confirm_write(pid), Ok)
        await services.wait_idle()

        assert not (tmp_kb / KEEP).exists()
        assert not (tmp_kb / DELETE).exists()
        fm, _ = require_frontmatter((tmp_kb / self.RENAMED).read_text(encoding="utf-8"))
        assert fm.cruid == "n-a"
        assert {"Transformer", "Transformer Model"} <= set(fm.aliases)

        child, _ = require_frontmatter((tmp_kb / CHILD).read_text(encoding="utf-8"))
        assert child.parents == ["[[Transformer Architecture]]", "[[Language Model]]"]
        assert services.merge.get_context(pid).file_path == self.RENAMED
        assert services.vector_index.get_entry("n-a").path == self.RENAMED

    @pytest.mark.asyncio
    async def test_final_file_name_taken(self, services, notes, tmp_kb, fake_provider):
        pair_id = await _pair(services)

        result = await services.merge.start_merge_pipeline(pair_id, "n-a", final_file_name="BERT")

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert services.duplicates.get_pair(pair_id).status == "pending"
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_same_name_is_not_a_rename(self, services, notes):
        pair_id = await _pair(services)
        started = await services.merge.start_merge_pipeline(pair_id, "n-a", final_file_name="Transformer")
        assert isinstance(started, Ok)
        await services.wait_idle()
        assert services.merge.get_context(started.value).final_file_path is None


class TestMergeRestore:
    @pytest.mark.asyncio
    async def test_pending_confirmation_survives_restart(self, services, notes, tmp_kb, settings, fake_provider):
        pair_id, pid = await _preview(services)

        reopened = await Services.open(tmp_kb, settings=SettingsStore(tmp_kb, settings), provider=fake_provider)
        try:
            ctx = reopened.merge.get_context(pid)
            assert ctx is not None
            assert ctx.stage == "review_changes"

            assert isinstance(await reopened.merge.confirm_write(pid), Ok)
            await reopened.wait_idle()
            assert not (tmp_kb / DELETE).exists()
            assert reopened.duplicates.get_pair(pair_id).status == "merged"
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_stale_state_is_dropped(self, services, notes, tmp_kb, settings, fake_provider):
        pair_id, pid = await _preview(services)
        await services.duplicates.abort_merge(pair_id)

        reopened = await Services.open(tmp_kb, settings=SettingsStore(tmp_kb, settings), provider=fake_provider)
        try:
            assert reopened.merge.get_context(pid) is None
            assert not reopened.state_store.path.exists()
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_restore_pipelines_skips_known_and_other_stages(self, services, notes):
        _, pid = await _preview(services)
        ctx = services.merge.get_context(pid)

        assert services.merge.restore_pipelines([ctx]) == 0
        assert services.merge.restore_pipelines([ctx.model_copy(update={"pipeline_id": "merge-x", "stage": "writing"})]) == 0
        assert services.merge.restore_pipelines([ctx.model_copy(update={"pipeline_id": "merge-y"})]) == 1
        assert services.merge.get_context("merge-y").stage == "review_changes"
