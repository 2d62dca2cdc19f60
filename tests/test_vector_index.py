"""Tests for the JSON vector index."""

from __future__ import annotations

import json

import numpy as np
import pytest

from kbsmith.errors import ErrorCode, KBError
from kbsmith.indexer.vector_index import INDEX_FILENAME, JsonVectorIndex, cosine_similarities
from kbsmith.models import VectorEntry

MODEL = "test-model"


def _entry(node_id: str, embedding: list[float], concept_type: str = "Entity") -> VectorEntry:
    return VectorEntry(node_id=node_id, type=concept_type, name=node_id.upper(), path=f"{node_id}.md", embedding=embedding)


def test_cosine_similarities_handles_zero_vectors():
    matrix = np.array([[1.0, 0.0], [0.0, 2.0], [0.0, 0.0]])
    sims = cosine_similarities(matrix, np.array([1.0, 0.0]))
    assert sims.tolist() == pytest.approx([1.0, 0.0, 0.0])


class TestJsonVectorIndex:
    @pytest.fixture
    def index(self, tmp_path) -> JsonVectorIndex:
        return JsonVectorIndex(tmp_path, MODEL, dimension=2)

    @pytest.mark.asyncio
    async def test_search_ranks_within_type(self, index):
        await index.upsert(_entry("a", [1.0, 0.0]))
        await index.upsert(_entry("b", [0.6, 0.8]))
        await index.upsert(_entry("c", [1.0, 0.0], concept_type="Theory"))

        hits = index.search("Entity", [1.0, 0.0], top_k=5)
        assert [h.node_id for h in hits] == ["a", "b"]
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[1].similarity == pytest.approx(0.6)
        assert index.search("Domain", [1.0, 0.0], top_k=5) == []

    @pytest.mark.asyncio
    async def test_threshold_and_top_k(self, index):
        await index.upsert(_entry("a", [1.0, 0.0]))
        await index.upsert(_entry("b", [0.6, 0.8]))

        assert [h.node_id for h in index.search_above_threshold("Entity", [1.0, 0.0], 0.9)] == ["a"]
        assert len(index.search_above_threshold("Entity", [1.0, 0.0], 0.5, top_k=1)) == 1

    @pytest.mark.asyncio
    async def test_type_change_moves_bucket(self, index):
        await index.upsert(_entry("a", [1.0, 0.0]))
        await index.upsert(_entry("a", [1.0, 0.0], concept_type="Theory"))

        assert index.stats() == {"Entity": 0, "Theory": 1}
        assert index.get_entry("a").type == "Theory"

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, index):
        with pytest.raises(KBError) as exc:
            await index.upsert(_entry("a", [1.0, 0.0, 0.0]))
        assert exc.value.code == ErrorCode.E101_INVALID_INPUT

    @pytest.mark.asyncio
    async def test_persistence_and_delete(self, tmp_path, index):
        await index.upsert(_entry("a", [1.0, 0.0]))
        await index.upsert(_entry("b", [0.0, 1.0]))
        assert await index.delete("a")
        assert not await index.delete("a")

        reloaded = JsonVectorIndex(tmp_path, MODEL, dimension=2)
        await reloaded.load()
        assert reloaded.get_entry("a") is None
        assert reloaded.get_entry("b").embedding == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_model_change_discards_vectors(self, tmp_path, index):
        await index.upsert(_entry("a", [1.0, 0.0]))

        other = JsonVectorIndex(tmp_path, "other-model", dimension=2)
        await other.load()
        assert other.get_entry("a") is None

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path, index):
        (tmp_path / INDEX_FILENAME).write_text("{broken")
        await index.load()
        assert index.stats() == {}

    @pytest.mark.asyncio
    async def test_invalid_entry_skipped(self, tmp_path, index):
        (tmp_path / INDEX_FILENAME).write_text(
            json.dumps(
                {
                    "version": "1.0.0",
                    "model": MODEL,
                    "dimension": 2,
                    "buckets": {"Entity": {"a": {"node_id": "a", "type": "Entity"}, "b": _entry("b", [0.0, 1.0]).model_dump(mode="json")}},
                }
            )
        )
        await index.load()
        assert index.get_entry("a") is None
        assert index.get_entry("b") is not None
