"""Tests for session wiring and undo."""

from __future__ import annotations

import pytest

from kbsmith.config import get_index_root
from kbsmith.errors import Err, ErrorCode, Ok
from kbsmith.indexer.vector_index import JsonVectorIndex
from kbsmith.locks import node_key


class TestServices:
    @pytest.mark.asyncio
    async def test_open_creates_index_root(self, services, tmp_kb):
        assert services.index_root == tmp_kb / ".indices"
        assert services.index_root.is_dir()
        assert isinstance(services.vector_index, JsonVectorIndex)
        assert services.vector_index.dimension == 4

    def test_index_root_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KBSMITH_INDEX_ROOT", str(tmp_path / "elsewhere"))
        assert get_index_root() == tmp_path / "elsewhere"

    @pytest.mark.asyncio
    async def test_undo_restores_content(self, services, tmp_kb, write_note):
        path = write_note("entities/A.md", node_id="n-a", name="A")
        original = (tmp_kb / path).read_text(encoding="utf-8")
        snapshot = await services.snapshots.create_snapshot(path, original, "manual", "n-a")
        (tmp_kb / path).write_text("overwritten", encoding="utf-8")

        result = await services.undo(snapshot.value)

        assert isinstance(result, Ok)
        assert result.value == path
        assert (tmp_kb / path).read_text(encoding="utf-8") == original

    @pytest.mark.asyncio
    async def test_undo_refuses_busy_note(self, services, tmp_kb, write_note):
        path = write_note("entities/A.md", node_id="n-a", name="A")
        snapshot = await services.snapshots.create_snapshot(path, "old", "manual", "n-a")
        services.locks.acquire(node_key("n-a"), holder="merge-x")

        result = await services.undo(snapshot.value)

        assert isinstance(result, Err)
        assert result.code == ErrorCode.E320_TASK_CONFLICT
        assert (tmp_kb / path).read_text(encoding="utf-8") != "old"

    @pytest.mark.asyncio
    async def test_wait_idle_with_nothing_queued(self, services):
        await services.wait_idle()
        assert services.queue.status().pending == 0
