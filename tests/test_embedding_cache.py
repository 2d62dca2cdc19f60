from __future__ import annotations

import pytest

from kbsmith.config import ProviderConfig
from kbsmith.indexer.chroma_index import ChromaVectorIndex
from kbsmith.indexer.embedding_cache import EmbeddingCache, hash_embedding_text, model_key
from kbsmith.llm_providers import EmbedResult, ProviderClient
from kbsmith.models import VectorEntry


class DummyCollection:
    def __init__(self) -> None:
        self.upserts: list[dict[str, object]] = []

    def upsert(self, ids, embeddings, metadatas) -> None:
        self.upserts.append({"ids": ids, "embeddings": embeddings, "metadatas": metadatas})


def test_embedding_cache_roundtrip(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path / ".indices", model_key("local", "mini", None))
    assert cache.get("hello world") is None

    cache.put("hello world", [0.5, 0.25, -1.0])

    assert cache.get("hello world") == [0.5, 0.25, -1.0]
    assert len(cache) == 1


def test_embedding_cache_is_partitioned_by_model(tmp_path) -> None:
    EmbeddingCache(tmp_path, "a").put("hello world", [1.0])

    assert EmbeddingCache(tmp_path, "b").get("hello world") is None


def test_embedding_cache_clear_only_touches_its_model(tmp_path) -> None:
    EmbeddingCache(tmp_path, "a").put("x", [1.0])
    other = EmbeddingCache(tmp_path, "b")
    other.put("x", [2.0])

    other.clear()

    assert EmbeddingCache(tmp_path, "a").get("x") == [1.0]
    assert len(other) == 0


def test_hash_is_stable() -> None:
    assert hash_embedding_text("abc") == hash_embedding_text("abc")
    assert hash_embedding_text("abc") != hash_embedding_text("abd")


@pytest.mark.asyncio
async def test_provider_embed_uses_cache(tmp_path, monkeypatch) -> None:
    client = ProviderClient({"local": ProviderConfig(kind="local")}, cache_root=tmp_path)
    calls = {"count": 0}

    async def fake_local_embed(model: str, text: str) -> EmbedResult:
        calls["count"] += 1
        return EmbedResult(embedding=[float(len(text)), 0.0])

    monkeypatch.setattr(client, "_local_embed", fake_local_embed)

    first = await client.embed("local", "mini", "Hello")
    second = await client.embed("local", "mini", "Hello")

    assert calls["count"] == 1
    assert not first.cached
    assert second.cached
    assert second.embedding == [5.0, 0.0]


@pytest.mark.asyncio
async def test_chroma_index_upserts_type_metadata(tmp_path, monkeypatch) -> None:
    chroma = ChromaVectorIndex(index_dir=tmp_path / "chroma", model="mini", dimension=2)
    dummy = DummyCollection()
    monkeypatch.setattr(chroma, "_get_collection", lambda: dummy)

    await chroma.upsert(VectorEntry(node_id="n1", type="Entity", name="Doc", path="doc.md", embedding=[1.0, 0.0]))

    assert dummy.upserts
    last = dummy.upserts[-1]
    assert last["ids"] == ["n1"]
    metadatas = last.get("metadatas")
    assert isinstance(metadatas, list)
    assert metadatas[0]["type"] == "Entity"
    assert metadatas[0]["path"] == "doc.md"


@pytest.mark.semantic
@pytest.mark.asyncio
async def test_chroma_index_search_within_type(tmp_path) -> None:
    chroma = ChromaVectorIndex(index_dir=tmp_path / "chroma", model="mini", dimension=2)
    await chroma.load()
    await chroma.upsert(VectorEntry(node_id="a", type="Entity", name="A", embedding=[1.0, 0.0]))
    await chroma.upsert(VectorEntry(node_id="b", type="Entity", name="B", embedding=[0.6, 0.8]))
    await chroma.upsert(VectorEntry(node_id="c", type="Theory", name="C", embedding=[1.0, 0.0]))

    hits = chroma.search("Entity", [1.0, 0.0], top_k=5)
    assert [h.node_id for h in hits] == ["a", "b"]
    assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)
    assert chroma.stats() == {"Entity": 2, "Theory": 1}

    assert await chroma.delete("a")
    assert chroma.get_entry("a") is None
