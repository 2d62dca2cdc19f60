"""Atomic file writes for notes and persisted stores.

A write goes to a temporary file in the target's directory, is flushed and
fsynced, read back, then moved over the target with os.replace. Readers see
either the old content or the new content, never a partial file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .errors import ErrorCode, KBError

log = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str, verify: bool = True) -> None:
    """Replace the contents of path with content atomically.

    Args:
        path: Destination file. Parent directories are created.
        content: Full new content.
        verify: Re-read the temporary file before the rename.

    Raises:
        KBError: E302/E303/E500 depending on the underlying OSError.
    """
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        if verify:
            written = Path(tmp_name).read_text(encoding="utf-8")
            if written != content:
                raise KBError(
                    ErrorCode.E500_INTERNAL_ERROR,
                    f"Verification of temporary file failed for {path}",
                    {"path": str(path)},
                )

        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise KBError.from_os_error(e, str(path)) from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError as e:
                log.warning("Could not remove temporary file %s: %s", tmp_name, e)


def write_json_atomic(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False, default=str), verify=False)


def read_json(path: Path) -> Any | None:
    """Read a JSON file, returning None when it does not exist.

    Raises:
        json.JSONDecodeError: If the file exists but is not valid JSON.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(text)
