"""Shared test fixtures for the kbsmith test suite.

Design:
- tmp_kb: isolated KB in a temp directory, KBSMITH_KB_ROOT pointing at it
- fake_provider: scripted stand-in for ProviderClient (no network, no models)
- services: fully wired Services over tmp_kb and fake_provider
- Async tests use pytest-asyncio with function scope
"""

from __future__ import annotations

import copy
import importlib.util
import json
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from click.testing import CliRunner

from kbsmith.config import Settings, SettingsStore
from kbsmith.frontmatter import build_note
from kbsmith.llm_providers import ChatResult, EmbedResult
from kbsmith.models import NoteFrontmatter
from kbsmith.services import Services

EMBEDDING_DIMENSION = 4


# ─────────────────────────────────────────────────────────────────────────────
# Markers
# ─────────────────────────────────────────────────────────────────────────────


def _semantic_deps_available() -> bool:
    return (
        importlib.util.find_spec("chromadb") is not None
        and importlib.util.find_spec("sentence_transformers") is not None
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "semantic: requires chromadb and sentence-transformers extras",
    )
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if _semantic_deps_available():
        return

    skip_semantic = pytest.mark.skip(
        reason=(
            "semantic extras not installed; install with "
            "`pip install -e '.[semantic]'` to run these tests"
        )
    )

    for item in items:
        if "semantic" in item.keywords:
            item.add_marker(skip_semantic)


# ─────────────────────────────────────────────────────────────────────────────
# Fake provider
# ─────────────────────────────────────────────────────────────────────────────

# First words of each prompt template
_PROMPT_PREFIXES = {
    "You standardize concepts": "define",
    "Concept:": "tag",
    "Write the knowledge base entry": "write",
    "Two ": "merge",
    "Fact-check": "verify",
}

DEFAULT_REPLIES: dict[str, dict[str, Any]] = {
    "define": {
        "standard_names": {
            "Entity": {"english": "Transformer", "chinese": ""},
            "Mechanism": {"english": "Self-Attention", "chinese": ""},
        },
        "type_confidences": {"Entity": 0.7, "Mechanism": 0.3},
        "primary_type": "Entity",
        "core_definition": "A neural network architecture built on attention.",
    },
    "tag": {"aliases": ["Transformer model"], "tags": ["deep-learning", "nlp"]},
    "write": {
        "definition": "A neural network architecture that relies on self-attention.",
        "properties": ["Parallel over sequence positions", "Stacked encoder and decoder blocks"],
        "examples": ["BERT", "GPT"],
        "related_entities": ["Recurrent Neural Network"],
    },
    "merge": {
        "merged_name": {"english": "Transformer", "chinese": ""},
        "merge_rationale": "Both notes describe the same architecture.",
        "content": {
            "definition": "A neural network architecture built on self-attention.",
            "properties": ["Parallel", "Attention based"],
        },
        "preserved_from_a": ["Encoder/decoder structure"],
        "preserved_from_b": ["Positional encodings"],
    },
    "verify": {
        "overall_assessment": "pass",
        "confidence_score": 0.9,
        "requires_human_review": False,
        "verified_claims": ["Transformers use attention"],
        "issues": [],
        "recommendations": [],
    },
}


def task_of_prompt(prompt: str) -> str:
    for prefix, task_type in _PROMPT_PREFIXES.items():
        if prompt.startswith(prefix):
            return task_type
    raise AssertionError(f"Unrecognized prompt: {prompt[:60]!r}")


class FakeProvider:
    """Duck-typed ProviderClient with scripted replies.

    replies[task_type] is consumed first; each item is a dict (sent as JSON),
    a str (sent verbatim) or an exception (raised). When it is empty the
    default reply for the task type is used.

    Embeddings come from `vectors`, the first key found in the text wins;
    otherwise `default_vector` is returned.
    """

    def __init__(self) -> None:
        self.replies: dict[str, list[Any]] = defaultdict(list)
        self.defaults: dict[str, Any] = copy.deepcopy(DEFAULT_REPLIES)
        self.calls: list[str] = []
        self.prompts: list[str] = []
        self.vectors: dict[str, list[float]] = {}
        self.default_vector: list[float] = [1.0, 0.0, 0.0, 0.0]
        self.embed_errors: list[Exception] = []
        self.embed_calls: list[str] = []
        self.configured = True

    def is_configured(self, provider_id: str) -> bool:
        return self.configured

    async def chat(self, provider_id: str, model: str, messages: list[dict[str, str]], **kwargs: Any) -> ChatResult:
        prompt = messages[-1]["content"]
        task_type = task_of_prompt(prompt)
        self.calls.append(task_type)
        self.prompts.append(prompt)
        scripted = self.replies[task_type]
        reply = scripted.pop(0) if scripted else self.defaults[task_type]
        if isinstance(reply, Exception):
            raise reply
        return ChatResult(content=reply if isinstance(reply, str) else json.dumps(reply), tokens_used=42)

    async def embed(self, provider_id: str, model: str, text: str, dimensions: int | None = None) -> EmbedResult:
        self.embed_calls.append(text)
        if self.embed_errors:
            raise self.embed_errors.pop(0)
        for key, vector in self.vectors.items():
            if key in text:
                return EmbedResult(embedding=list(vector))
        return EmbedResult(embedding=list(self.default_vector))


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def tmp_kb(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolated KB directory with a .kbconfig and KBSMITH_KB_ROOT set.

    Usage:
        def test_something(tmp_kb):
            (tmp_kb / "entities" / "Note.md").write_text("...")
    """
    kb_root = tmp_path / "kb"
    kb_root.mkdir()
    (kb_root / ".kbconfig").write_text(
        f"kbsmith:\n  embedding_dimension: {EMBEDDING_DIMENSION}\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("KBSMITH_KB_ROOT", str(kb_root))
    monkeypatch.delenv("KBSMITH_INDEX_ROOT", raising=False)
    return kb_root


@pytest.fixture
def settings() -> Settings:
    return Settings(embedding_dimension=EMBEDDING_DIMENSION)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def services(tmp_kb: Path, settings: Settings, fake_provider: FakeProvider) -> AsyncIterator[Services]:
    """Services over tmp_kb with the fake provider."""
    store = SettingsStore(tmp_kb, settings)
    svc = await Services.open(tmp_kb, settings=store, provider=fake_provider)  # type: ignore[arg-type]
    try:
        yield svc
    finally:
        await svc.close()


@pytest.fixture
def write_note(tmp_kb: Path) -> Callable[..., str]:
    """Write a concept note under tmp_kb and return its KB-relative path.

    Usage:
        path = write_note("entities/Transformer.md", node_id="n1", name="Transformer")
    """

    def _write(
        rel_path: str,
        node_id: str,
        name: str,
        concept_type: str = "Entity",
        body: str = "",
        parents: list[str] | None = None,
        status: str = "Draft",
    ) -> str:
        fm = NoteFrontmatter(
            cruid=node_id,
            type=concept_type,
            name=name,
            definition=f"Definition of {name}.",
            status=status,
            parents=parents or [],
        )
        full = tmp_kb / rel_path
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(build_note(fm, body or f"# {name}\n\nAbout {name}."), encoding="utf-8")
        return rel_path

    return _write
