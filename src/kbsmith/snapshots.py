"""Snapshots of note content taken before destructive writes.

Each snapshot is an immutable JSON file under {index_root}/snapshots/ with an
index.json listing them. Retention keeps at most SNAPSHOT_MAX_COUNT snapshots
and drops any older than SNAPSHOT_MAX_AGE_DAYS.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path, PurePosixPath

from pydantic import ValidationError

from .config import SNAPSHOT_MAX_AGE_DAYS, SNAPSHOT_MAX_CONTENT_BYTES, SNAPSHOT_MAX_COUNT
from .errors import Err, ErrorCode, KBError, Ok, Result, err
from .models import Snapshot, SnapshotIndex, SnapshotRecord
from .storage import read_json, write_json_atomic

log = logging.getLogger(__name__)

SNAPSHOT_DIRNAME = "snapshots"
INDEX_FILENAME = "index.json"


def content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _valid_note_path(path: str) -> bool:
    if not path or path.startswith("/") or "\\" in path:
        return False
    return ".." not in PurePosixPath(path).parts


class SnapshotManager:
    """Creates, lists and restores snapshots."""

    def __init__(
        self,
        index_root: Path,
        max_count: int = SNAPSHOT_MAX_COUNT,
        max_age_days: int = SNAPSHOT_MAX_AGE_DAYS,
        max_content_bytes: int = SNAPSHOT_MAX_CONTENT_BYTES,
    ) -> None:
        self._dir = index_root / SNAPSHOT_DIRNAME
        self._max_count = max_count
        self._max_age = timedelta(days=max_age_days)
        self._max_content_bytes = max_content_bytes
        self._index = SnapshotIndex()
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def _snapshot_path(self, snapshot_id: str) -> Path:
        return self._dir / f"{snapshot_id}.json"

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        index_path = self._dir / INDEX_FILENAME
        try:
            data = read_json(index_path)
            self._index = SnapshotIndex.model_validate(data) if data else SnapshotIndex()
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            log.warning("Snapshot index unreadable, rebuilding from snapshot files: %s", e)
            self._index = self._rebuild_index()
        self._loaded = True

    def _rebuild_index(self) -> SnapshotIndex:
        records = []
        for path in sorted(self._dir.glob("*.json")):
            if path.name == INDEX_FILENAME:
                continue
            try:
                snapshot = Snapshot.model_validate(read_json(path))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                log.warning("Skipping unreadable snapshot %s: %s", path.name, e)
                continue
            records.append(SnapshotRecord.model_validate(snapshot.model_dump(exclude={"content"})))
        return SnapshotIndex(snapshots=records)

    async def _save_index(self) -> None:
        payload = self._index.model_dump(mode="json")
        await asyncio.to_thread(write_json_atomic, self._dir / INDEX_FILENAME, payload)

    async def create_snapshot(
        self,
        path: str,
        content: str,
        label: str,
        node_id: str | None = None,
    ) -> Result[str]:
        """Capture content of the note at path.

        Returns:
            Ok(snapshot_id), or Err with E101 for an invalid path or oversized
            content, E304 if the snapshot could not be stored.
        """
        if not _valid_note_path(path):
            return err(ErrorCode.E101_INVALID_INPUT, f"Refusing to snapshot invalid path: {path!r}", path=path)

        size = len(content.encode("utf-8"))
        if size > self._max_content_bytes:
            return err(
                ErrorCode.E101_INVALID_INPUT,
                f"Content of {path} is {size} bytes; snapshots are limited to {self._max_content_bytes}",
                path=path,
                size=size,
            )

        now = datetime.now(UTC)
        snapshot = Snapshot(
            id=f"snap-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}",
            path=path,
            node_id=node_id,
            label=label,
            created=now,
            checksum=content_checksum(content),
            size=size,
            content=content,
        )

        async with self._lock:
            await self._ensure_loaded()
            try:
                await asyncio.to_thread(
                    write_json_atomic, self._snapshot_path(snapshot.id), snapshot.model_dump(mode="json")
                )
                self._index.snapshots.append(SnapshotRecord.model_validate(snapshot.model_dump(exclude={"content"})))
                await self._save_index()
            except KBError as e:
                log.error("Snapshot of %s failed: %s", path, e.message)
                return Err(
                    KBError(
                        ErrorCode.E304_SNAPSHOT_FAILED,
                        f"Could not snapshot {path}: {e.message}",
                        {"path": path, "cause": e.code.value},
                    )
                )
            removed = await self._apply_retention()

        if removed:
            log.debug("Retention removed %d snapshots", removed)
        log.info("Snapshot %s taken of %s (%s)", snapshot.id, path, label)
        return Ok(snapshot.id)

    async def restore_snapshot(self, snapshot_id: str) -> Result[Snapshot]:
        """Load a snapshot, checking its content against the stored checksum."""
        path = self._snapshot_path(snapshot_id)
        try:
            data = await asyncio.to_thread(read_json, path)
        except (OSError, json.JSONDecodeError) as e:
            return err(ErrorCode.E304_SNAPSHOT_FAILED, f"Snapshot {snapshot_id} is unreadable: {e}")
        if data is None:
            return Err(KBError.not_found("snapshot", snapshot_id))

        try:
            snapshot = Snapshot.model_validate(data)
        except ValidationError as e:
            return err(ErrorCode.E304_SNAPSHOT_FAILED, f"Snapshot {snapshot_id} is corrupt: {e}")

        if content_checksum(snapshot.content) != snapshot.checksum:
            return err(
                ErrorCode.E304_SNAPSHOT_FAILED,
                f"Snapshot {snapshot_id} failed its checksum",
                snapshot_id=snapshot_id,
            )
        return Ok(snapshot)

    async def list_snapshots(self, path: str | None = None) -> list[SnapshotRecord]:
        """Snapshot records, newest first, optionally for one note path."""
        async with self._lock:
            await self._ensure_loaded()
            records = [r for r in self._index.snapshots if path is None or r.path == path]
        return sorted(records, key=lambda r: r.created, reverse=True)

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            removed = self._remove(snapshot_id)
            if removed:
                await self._save_index()
        return removed

    async def cleanup(self) -> int:
        """Apply retention now. Returns the number of snapshots removed."""
        async with self._lock:
            await self._ensure_loaded()
            return await self._apply_retention()

    def _remove(self, snapshot_id: str) -> bool:
        before = len(self._index.snapshots)
        self._index.snapshots = [r for r in self._index.snapshots if r.id != snapshot_id]
        try:
            self._snapshot_path(snapshot_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Could not delete snapshot file %s: %s", snapshot_id, e)
        return len(self._index.snapshots) < before

    async def _apply_retention(self) -> int:
        cutoff = datetime.now(UTC) - self._max_age
        ordered = sorted(self._index.snapshots, key=lambda r: r.created)
        expired = [r.id for r in ordered if r.created < cutoff]
        surplus = len(ordered) - len(expired) - self._max_count
        if surplus > 0:
            expired.extend([r.id for r in ordered if r.created >= cutoff][:surplus])

        if not expired:
            return 0
        for snapshot_id in expired:
            self._remove(snapshot_id)
        try:
            await self._save_index()
        except KBError as e:
            log.warning("Could not save snapshot index after retention: %s", e.message)
        return len(expired)
