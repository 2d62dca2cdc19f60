"""ChromaDB-backed vector index.

Same interface as JsonVectorIndex, for knowledge bases large enough that a
brute-force scan per detection gets slow. Vectors are supplied by the caller;
Chroma only stores and searches them. The knowledge type is stored as entry
metadata and every query is filtered on it.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from ..errors import ErrorCode, KBError
from ..models import SearchHit, VectorEntry

log = logging.getLogger(__name__)

if TYPE_CHECKING:
    import chromadb
    from chromadb.api import ClientAPI


class ChromaVectorIndex:
    """Vector index stored in a persistent Chroma collection."""

    COLLECTION_NAME = "kbsmith_notes"

    def __init__(self, index_dir: Path, model: str, dimension: int) -> None:
        """Initialize the Chroma index.

        Args:
            index_dir: Directory for Chroma storage, usually INDEX_ROOT/chroma/.
            model: Embedding model name, recorded on the collection.
            dimension: Expected embedding dimension.
        """
        self._index_dir = index_dir
        self._model = model
        self._dimension = dimension
        self._client: ClientAPI | None = None
        self._collection: chromadb.Collection | None = None

    def _collection_metadata(self) -> dict[str, Any]:
        return {"hnsw:space": "cosine", "model": self._model, "dimension": self._dimension}

    def _get_collection(self) -> "chromadb.Collection":
        """Get or create the Chroma collection."""
        if self._collection is not None:
            return self._collection

        import chromadb

        self._index_dir.mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(path=str(self._index_dir))
        try:
            collection = self._client.get_or_create_collection(
                name=self.COLLECTION_NAME,
                metadata=self._collection_metadata(),
            )
        except KeyError:
            # Schema incompatibility from a chromadb version change - reset the index
            del self._client
            shutil.rmtree(self._index_dir, ignore_errors=True)
            self._index_dir.mkdir(parents=True, exist_ok=True)
            self._client = chromadb.PersistentClient(path=str(self._index_dir))
            collection = self._client.get_or_create_collection(
                name=self.COLLECTION_NAME,
                metadata=self._collection_metadata(),
            )

        stored_model = (collection.metadata or {}).get("model")
        if stored_model and stored_model != self._model:
            log.warning("Chroma collection holds %s vectors, now using %s; resetting", stored_model, self._model)
            self._client.delete_collection(self.COLLECTION_NAME)
            collection = self._client.get_or_create_collection(
                name=self.COLLECTION_NAME,
                metadata=self._collection_metadata(),
            )

        self._collection = collection
        return collection

    async def load(self) -> None:
        await asyncio.to_thread(self._get_collection)

    def _check_dimension(self, embedding: list[float]) -> None:
        if len(embedding) != self._dimension:
            raise KBError(
                ErrorCode.E101_INVALID_INPUT,
                f"Embedding has {len(embedding)} dimensions, index expects {self._dimension}",
                {"expected": self._dimension, "actual": len(embedding)},
            )

    async def upsert(self, entry: VectorEntry) -> None:
        self._check_dimension(entry.embedding)
        collection = self._get_collection()
        await asyncio.to_thread(
            collection.upsert,
            ids=[entry.node_id],
            embeddings=cast(Any, [entry.embedding]),
            metadatas=[
                {
                    "type": entry.type,
                    "name": entry.name,
                    "path": entry.path,
                    "updated": entry.updated.isoformat(),
                }
            ],
        )

    async def delete(self, node_id: str) -> bool:
        collection = self._get_collection()
        existing = collection.get(ids=[node_id], include=[])
        if not existing["ids"]:
            return False
        await asyncio.to_thread(collection.delete, ids=[node_id])
        return True

    def get_entry(self, node_id: str) -> VectorEntry | None:
        collection = self._get_collection()
        result = collection.get(ids=[node_id], include=cast(Any, ["embeddings", "metadatas"]))
        if not result["ids"]:
            return None
        meta = (result["metadatas"] or [{}])[0] or {}
        embeddings = result["embeddings"]
        vector = embeddings[0] if embeddings is not None and len(embeddings) else []
        updated = str(meta.get("updated") or "")
        return VectorEntry(
            node_id=node_id,
            type=cast(Any, str(meta.get("type", ""))),
            name=str(meta.get("name") or ""),
            path=str(meta.get("path") or ""),
            embedding=[float(x) for x in vector],
            **({"updated": datetime.fromisoformat(updated)} if updated else {}),
        )

    def search(self, concept_type: str, embedding: list[float], top_k: int) -> list[SearchHit]:
        """Nearest neighbours within one type, most similar first."""
        self._check_dimension(embedding)
        collection = self._get_collection()

        bucket_size = len(collection.get(where={"type": concept_type}, include=[])["ids"])
        if bucket_size == 0:
            return []

        results = collection.query(
            query_embeddings=cast(Any, [embedding]),
            n_results=min(top_k, bucket_size),
            where={"type": concept_type},
            include=cast(Any, ["metadatas", "distances"]),
        )
        if not results["ids"] or not results["ids"][0]:
            return []

        ids = results["ids"][0]
        metadatas = results["metadatas"][0] if results["metadatas"] else []
        distances = results["distances"][0] if results["distances"] else []

        hits = []
        for i, node_id in enumerate(ids):
            meta = metadatas[i] if i < len(metadatas) else {}
            distance = distances[i] if i < len(distances) else 1.0
            # Cosine distance is 1 - cosine similarity
            hits.append(
                SearchHit(
                    node_id=node_id,
                    type=cast(Any, concept_type),
                    name=str(meta.get("name") or ""),
                    path=str(meta.get("path") or ""),
                    similarity=max(-1.0, min(1.0, 1.0 - float(distance))),
                )
            )
        return hits

    def search_above_threshold(
        self,
        concept_type: str,
        embedding: list[float],
        threshold: float,
        top_k: int | None = None,
    ) -> list[SearchHit]:
        collection = self._get_collection()
        limit = top_k if top_k is not None else max(collection.count(), 1)
        return [hit for hit in self.search(concept_type, embedding, limit) if hit.similarity >= threshold]

    def stats(self) -> dict[str, int]:
        collection = self._get_collection()
        result = collection.get(include=cast(Any, ["metadatas"]))
        counts: dict[str, int] = {}
        for meta in result["metadatas"] or []:
            concept_type = str((meta or {}).get("type", ""))
            counts[concept_type] = counts.get(concept_type, 0) + 1
        return counts
