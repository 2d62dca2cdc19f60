"""Type-bucketed vector index persisted as JSON.

Entries are grouped by knowledge type so similarity search only ever compares
notes of the same type. Cosine similarity is computed with numpy over the
whole bucket; buckets hold at most a few thousand notes in practice.

File format ({index_root}/vector-index.json):

    {
      "version": "1.0.0",
      "model": "sentence-transformers/all-MiniLM-L6-v2",
      "dimension": 384,
      "buckets": {"Entity": {"<node_id>": {...VectorEntry...}}, ...}
    }
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import numpy as np
from pydantic import ValidationError

from ..errors import ErrorCode, KBError
from ..models import SearchHit, VectorEntry
from ..storage import read_json, write_json_atomic

log = logging.getLogger(__name__)

INDEX_FILENAME = "vector-index.json"
INDEX_VERSION = "1.0.0"


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of matrix against query.

    Zero vectors have similarity 0 with everything.
    """
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(query)
    denom = row_norms * query_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / denom, 0.0)
    return np.clip(sims, -1.0, 1.0)


class JsonVectorIndex:
    """In-memory vector index with JSON persistence."""

    def __init__(self, index_root: Path, model: str, dimension: int) -> None:
        self._path = index_root / INDEX_FILENAME
        self._model = model
        self._dimension = dimension
        self._buckets: dict[str, dict[str, VectorEntry]] = {}
        self._save_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    async def load(self) -> None:
        """Load the index file.

        A corrupt file or a file built with another model starts an empty
        index; vectors from a different model are not comparable.
        """
        try:
            data = read_json(self._path)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Vector index at %s is unreadable, starting empty: %s", self._path, e)
            self._buckets = {}
            return

        if data is None:
            self._buckets = {}
            return

        if data.get("model") != self._model or data.get("dimension") != self._dimension:
            log.warning(
                "Vector index was built with %s/%s, now using %s/%s; discarding stored vectors",
                data.get("model"), data.get("dimension"), self._model, self._dimension,
            )
            self._buckets = {}
            return

        buckets: dict[str, dict[str, VectorEntry]] = {}
        for concept_type, entries in (data.get("buckets") or {}).items():
            bucket: dict[str, VectorEntry] = {}
            for node_id, raw in entries.items():
                try:
                    bucket[node_id] = VectorEntry.model_validate(raw)
                except ValidationError as e:
                    log.warning("Skipping invalid vector entry %s: %s", node_id, e)
            buckets[concept_type] = bucket
        self._buckets = buckets
        log.debug("Loaded vector index with %d entries", sum(len(b) for b in buckets.values()))

    async def _save(self) -> None:
        async with self._save_lock:
            payload = {
                "version": INDEX_VERSION,
                "model": self._model,
                "dimension": self._dimension,
                "buckets": {
                    concept_type: {node_id: entry.model_dump(mode="json") for node_id, entry in bucket.items()}
                    for concept_type, bucket in self._buckets.items()
                },
            }
            await asyncio.to_thread(write_json_atomic, self._path, payload)

    def _check_dimension(self, embedding: list[float]) -> None:
        if len(embedding) != self._dimension:
            raise KBError(
                ErrorCode.E101_INVALID_INPUT,
                f"Embedding has {len(embedding)} dimensions, index expects {self._dimension}",
                {"expected": self._dimension, "actual": len(embedding)},
            )

    async def upsert(self, entry: VectorEntry) -> None:
        """Insert or replace the vector for a note.

        Raises:
            KBError: E101 on a dimension mismatch.
        """
        self._check_dimension(entry.embedding)
        # A note whose type changed moves buckets
        for concept_type, bucket in self._buckets.items():
            if concept_type != entry.type:
                bucket.pop(entry.node_id, None)
        self._buckets.setdefault(entry.type, {})[entry.node_id] = entry
        await self._save()

    async def delete(self, node_id: str) -> bool:
        removed = False
        for bucket in self._buckets.values():
            if bucket.pop(node_id, None) is not None:
                removed = True
        if removed:
            await self._save()
        return removed

    def get_entry(self, node_id: str) -> VectorEntry | None:
        for bucket in self._buckets.values():
            if node_id in bucket:
                return bucket[node_id]
        return None

    def _ranked(self, concept_type: str, embedding: list[float]) -> list[SearchHit]:
        bucket = self._buckets.get(concept_type)
        if not bucket:
            return []
        self._check_dimension(embedding)

        entries = list(bucket.values())
        matrix = np.asarray([e.embedding for e in entries], dtype=np.float64)
        sims = cosine_similarities(matrix, np.asarray(embedding, dtype=np.float64))
        order = np.argsort(-sims, kind="stable")
        return [
            SearchHit(
                node_id=entries[i].node_id,
                type=entries[i].type,
                name=entries[i].name,
                path=entries[i].path,
                similarity=float(sims[i]),
            )
            for i in order
        ]

    def search(self, concept_type: str, embedding: list[float], top_k: int) -> list[SearchHit]:
        """Nearest neighbours within one type bucket, most similar first."""
        return self._ranked(concept_type, embedding)[:top_k]

    def search_above_threshold(
        self,
        concept_type: str,
        embedding: list[float],
        threshold: float,
        top_k: int | None = None,
    ) -> list[SearchHit]:
        """Neighbours within one type bucket with similarity >= threshold."""
        hits = [hit for hit in self._ranked(concept_type, embedding) if hit.similarity >= threshold]
        return hits[:top_k] if top_k is not None else hits

    def stats(self) -> dict[str, int]:
        return {concept_type: len(bucket) for concept_type, bucket in self._buckets.items()}
