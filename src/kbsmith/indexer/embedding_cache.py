"""Persistent embedding cache.

Notes are re-embedded after every write, and most writes (front matter
fixes, parent rewrites, verification reports) leave the embedding text
unchanged. Vectors are stored per model key ("<provider>:<model>:<dims>")
and text hash, as float32 blobs. Cache location:
{index_root}/embedding_cache.sqlite
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

import numpy as np

log = logging.getLogger(__name__)

CACHE_FILENAME = "embedding_cache.sqlite"
SCHEMA_VERSION = 2


def hash_embedding_text(text: str) -> str:
    """Return a stable hash for embedding text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def model_key(provider_id: str, model: str, dimensions: int | None) -> str:
    return f"{provider_id}:{model}:{dimensions or 0}"


class EmbeddingCache:
    """Vectors for one model key.

    Cache failures never fail an embed call: sqlite errors are logged and
    the lookup counts as a miss.
    """

    def __init__(self, index_root: Path, key: str) -> None:
        self._path = index_root / CACHE_FILENAME
        self._key = key

    @property
    def path(self) -> Path:
        return self._path

    @property
    def key(self) -> str:
        return self._key

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path))
        conn.execute("PRAGMA journal_mode=WAL")
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version != SCHEMA_VERSION:
            # Older layouts are dropped rather than migrated; the cache refills on demand.
            conn.execute("DROP TABLE IF EXISTS embedding_cache")
            conn.execute("DROP TABLE IF EXISTS embedding_cache_meta")
            conn.execute(
                """
                CREATE TABLE embeddings (
                    model_key TEXT NOT NULL,
                    text_hash TEXT NOT NULL,
                    dims INTEGER NOT NULL,
                    vector BLOB NOT NULL,
                    stored_at TEXT NOT NULL,
                    PRIMARY KEY (model_key, text_hash)
                )
                """
            )
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
        return conn

    def get(self, text: str) -> list[float] | None:
        """Cached vector for text, or None on a miss."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT dims, vector FROM embeddings WHERE model_key = ? AND text_hash = ?",
                    (self._key, hash_embedding_text(text)),
                ).fetchone()
        except sqlite3.Error as e:
            log.warning("Embedding cache read failed: %s", e)
            return None
        if row is None:
            return None

        dims, blob = row
        vector = np.frombuffer(blob, dtype=np.float32)
        if vector.shape[0] != dims:
            log.warning("Discarding truncated cache entry for %s", self._key)
            return None
        return vector.astype(float).tolist()

    def put(self, text: str, vector: list[float]) -> None:
        blob = np.asarray(vector, dtype=np.float32).tobytes()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO embeddings (model_key, text_hash, dims, vector, stored_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (self._key, hash_embedding_text(text), len(vector), blob, datetime.now(tz=UTC).isoformat()),
                )
        except sqlite3.Error as e:
            log.warning("Embedding cache write failed: %s", e)

    def __len__(self) -> int:
        try:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT COUNT(*) FROM embeddings WHERE model_key = ?", (self._key,)
                ).fetchone()[0]
        except sqlite3.Error as e:
            log.warning("Embedding cache read failed: %s", e)
            return 0

    def clear(self) -> None:
        """Drop every vector stored under this model key."""
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM embeddings WHERE model_key = ?", (self._key,))
        except sqlite3.Error as e:
            log.warning("Embedding cache clear failed: %s", e)
