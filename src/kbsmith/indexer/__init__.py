"""Vector indices and the embedding cache."""

from __future__ import annotations

from typing import Protocol

from ..models import SearchHit, VectorEntry


class VectorIndex(Protocol):
    """Interface shared by the JSON and Chroma backends."""

    async def load(self) -> None: ...

    async def upsert(self, entry: VectorEntry) -> None: ...

    async def delete(self, node_id: str) -> bool: ...

    def search(self, concept_type: str, embedding: list[float], top_k: int) -> list[SearchHit]: ...

    def search_above_threshold(
        self, concept_type: str, embedding: list[float], threshold: float, top_k: int | None = None
    ) -> list[SearchHit]: ...

    def get_entry(self, node_id: str) -> VectorEntry | None: ...

    def stats(self) -> dict[str, int]: ...
