"""File access for notes, rooted at the KB directory.

All paths are KB-relative with forward slashes ("entities/Transformer.md").
Paths that would resolve outside the KB root are rejected.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .config import INDEX_DIRNAME
from .errors import ErrorCode, KBError
from .frontmatter import parse_note
from .storage import atomic_write_text

log = logging.getLogger(__name__)

# Directories never scanned for notes
_SKIP_DIRS = frozenset({INDEX_DIRNAME, ".git", ".obsidian", ".trash"})


class NoteRepository:
    """Reads and writes notes under a KB root."""

    def __init__(self, kb_root: Path) -> None:
        self._root = kb_root.resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, rel_path: str) -> Path:
        """Absolute path for a KB-relative path.

        Raises:
            KBError: E101 if the path is absolute or escapes the KB root.
        """
        if not rel_path or Path(rel_path).is_absolute():
            raise KBError(ErrorCode.E101_INVALID_INPUT, f"Invalid note path: {rel_path!r}", {"path": rel_path})
        full = (self._root / rel_path).resolve()
        if full != self._root and self._root not in full.parents:
            raise KBError(ErrorCode.E101_INVALID_INPUT, f"Path escapes the KB: {rel_path}", {"path": rel_path})
        return full

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self._root).as_posix()

    def get_file_by_path(self, rel_path: str) -> Path | None:
        full = self.resolve(rel_path)
        return full if full.is_file() else None

    def exists(self, rel_path: str) -> bool:
        return self.get_file_by_path(rel_path) is not None

    async def read_by_path(self, rel_path: str) -> str:
        """Read a note.

        Raises:
            KBError: E301 if missing, E302 if unreadable.
        """
        full = self.resolve(rel_path)
        try:
            return await asyncio.to_thread(full.read_text, encoding="utf-8")
        except OSError as e:
            raise KBError.from_os_error(e, rel_path) from e

    async def read_by_path_if_exists(self, rel_path: str) -> str | None:
        full = self.resolve(rel_path)
        try:
            return await asyncio.to_thread(full.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise KBError.from_os_error(e, rel_path) from e

    def ensure_dir_for_path(self, rel_path: str) -> None:
        full = self.resolve(rel_path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise KBError.from_os_error(e, rel_path) from e

    async def write_atomic(self, rel_path: str, content: str) -> None:
        """Replace a note's content; the file is either fully updated or untouched."""
        full = self.resolve(rel_path)
        self.ensure_dir_for_path(rel_path)
        await asyncio.to_thread(atomic_write_text, full, content)
        log.debug("Wrote %s (%d chars)", rel_path, len(content))

    async def delete_by_path_if_exists(self, rel_path: str) -> bool:
        full = self.resolve(rel_path)
        try:
            await asyncio.to_thread(full.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise KBError.from_os_error(e, rel_path) from e
        log.info("Deleted %s", rel_path)
        return True

    def list_markdown_files(self) -> list[str]:
        """KB-relative paths of all notes, sorted."""
        results = []
        for path in self._root.rglob("*.md"):
            rel = path.relative_to(self._root)
            if any(part in _SKIP_DIRS for part in rel.parts[:-1]):
                continue
            if path.is_file():
                results.append(rel.as_posix())
        return sorted(results)

    async def locate_node(self, node_id: str) -> str | None:
        """Find the note whose front matter carries this node id."""
        for rel_path in self.list_markdown_files():
            content = await self.read_by_path_if_exists(rel_path)
            if content is None:
                continue
            try:
                parsed = parse_note(content)
            except KBError:
                continue
            if parsed.metadata.get("cruid") == node_id:
                return rel_path
        return None
