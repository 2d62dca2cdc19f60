"""Tests for the snapshot manager."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from kbsmith.errors import Err, ErrorCode, Ok
from kbsmith.snapshots import SnapshotManager, content_checksum


@pytest.fixture
def manager(tmp_path: Path) -> SnapshotManager:
    return SnapshotManager(tmp_path / ".indices", max_count=3, max_age_days=30)


class TestCreateAndRestore:
    @pytest.mark.asyncio
    async def test_round_trip(self, manager):
        """Restoring returns exactly the captured content."""
        result = await manager.create_snapshot("entities/A.md", "# A\n\nbody", "create:p1", node_id="n1")
        assert isinstance(result, Ok)
        assert result.value.startswith("snap-")

        restored = await manager.restore_snapshot(result.value)
        assert isinstance(restored, Ok)
        assert restored.value.content == "# A\n\nbody"
        assert restored.value.path == "entities/A.md"
        assert restored.value.node_id == "n1"
        assert restored.value.checksum == content_checksum("# A\n\nbody")

    @pytest.mark.asyncio
    async def test_rejects_escaping_path(self, manager):
        result = await manager.create_snapshot("../outside.md", "x", "test")
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E101_INVALID_INPUT

    @pytest.mark.asyncio
    async def test_rejects_oversized_content(self, tmp_path):
        manager = SnapshotManager(tmp_path / ".indices", max_content_bytes=10)
        result = await manager.create_snapshot("a.md", "x" * 11, "test")
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E101_INVALID_INPUT

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, manager):
        result = await manager.restore_snapshot("snap-nope")
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E311_NOT_FOUND

    @pytest.mark.asyncio
    async def test_tampered_snapshot_fails_checksum(self, manager):
        created = await manager.create_snapshot("a.md", "original", "test")
        path = manager.directory / f"{created.value}.json"
        data = json.loads(path.read_text())
        data["content"] = "tampered"
        path.write_text(json.dumps(data))

        result = await manager.restore_snapshot(created.value)
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E304_SNAPSHOT_FAILED

    @pytest.mark.asyncio
    async def test_storage_failure_is_snapshot_error(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("a file where a directory should be")
        manager = SnapshotManager(blocker)

        result = await manager.create_snapshot("a.md", "content", "test")
        assert isinstance(result, Err)
        assert result.code == ErrorCode.E304_SNAPSHOT_FAILED


class TestListingAndRetention:
    @pytest.mark.asyncio
    async def test_list_newest_first_and_filter(self, manager):
        first = await manager.create_snapshot("a.md", "1", "test")
        second = await manager.create_snapshot("b.md", "2", "test")
        third = await manager.create_snapshot("a.md", "3", "test")

        ids = [r.id for r in await manager.list_snapshots()]
        assert set(ids) == {first.value, second.value, third.value}
        assert ids[0] == third.value

        only_a = await manager.list_snapshots("a.md")
        assert {r.id for r in only_a} == {first.value, third.value}

    @pytest.mark.asyncio
    async def test_count_limit_drops_oldest(self, manager):
        ids = [(await manager.create_snapshot("a.md", str(i), "test")).value for i in range(5)]

        remaining = {r.id for r in await manager.list_snapshots()}
        assert len(remaining) == 3
        assert ids[0] not in remaining
        assert ids[-1] in remaining

    @pytest.mark.asyncio
    async def test_age_limit(self, manager):
        created = await manager.create_snapshot("a.md", "old", "test")
        index_path = manager.directory / "index.json"
        data = json.loads(index_path.read_text())
        data["snapshots"][0]["created"] = (datetime.now(UTC) - timedelta(days=40)).isoformat()
        index_path.write_text(json.dumps(data))

        reloaded = SnapshotManager(manager.directory.parent, max_count=3, max_age_days=30)
        assert await reloaded.cleanup() == 1
        assert await reloaded.list_snapshots() == []
        assert isinstance(await reloaded.restore_snapshot(created.value), Err)

    @pytest.mark.asyncio
    async def test_delete_snapshot(self, manager):
        created = await manager.create_snapshot("a.md", "x", "test")
        assert await manager.delete_snapshot(created.value)
        assert not await manager.delete_snapshot(created.value)
