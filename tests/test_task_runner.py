"""Tests for LLM output parsing and the task handlers."""

from __future__ import annotations

import pytest

from kbsmith.config import Settings
from kbsmith.errors import ErrorCode, KBError
from kbsmith.models import EnrichedData, StandardizedConcept, TagPayload, Task, WritePayload
from kbsmith.prompts import PromptBuilder
from kbsmith.task_runner import TaskRunner, parse_json_output, require_keys


class TestParseJsonOutput:
    def test_plain_object(self):
        assert parse_json_output('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        assert parse_json_output('```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    def test_prose_around_object(self):
        assert parse_json_output('Here you go:\n{"a": "b"}\nHope that helps.') == {"a": "b"}

    @pytest.mark.parametrize("reply", ["no json here", "{not: json}", "[1, 2]"])
    def test_unparsable(self, reply):
        with pytest.raises(KBError) as exc:
            parse_json_output(reply)
        assert exc.value.code == ErrorCode.E210_MODEL_OUTPUT_PARSE_FAILED

    def test_require_keys(self):
        require_keys({"a": 1}, ("a",), "tag")
        with pytest.raises(KBError) as exc:
            require_keys({"a": 1}, ("a", "tags"), "tag")
        assert exc.value.code == ErrorCode.E211_MODEL_SCHEMA_VIOLATION
        assert exc.value.details["missing"] == ["tags"]


def _concept() -> StandardizedConcept:
    return StandardizedConcept.model_validate(
        {
            "standard_names": {"Entity": {"english": "Transformer"}},
            "primary_type": "Entity",
            "core_definition": "An architecture.",
        }
    )


class TestTaskRunner:
    """Handlers driven by the scripted provider."""

    @pytest.fixture
    def task_runner(self, fake_provider) -> TaskRunner:
        return TaskRunner(fake_provider, PromptBuilder(), lambda: Settings())

    @pytest.mark.asyncio
    async def test_define(self, task_runner, fake_provider):
        concept = await task_runner.define("the transformer architecture")

        assert concept.primary_type == "Entity"
        assert concept.name_for("Mechanism").english == "Self-Attention"
        assert concept.type_confidences["Entity"] == pytest.approx(0.7)
        assert fake_provider.calls == ["define"]

    @pytest.mark.asyncio
    async def test_define_drops_unknown_types(self, task_runner, fake_provider):
        """Primary type falls back to the highest confidence known type."""
        fake_provider.replies["define"].append(
            {
                "standard_names": {"Gadget": {"english": "X"}, "Theory": {"english": "Y"}},
                "type_confidences": {"Gadget": 0.9, "Theory": 0.1},
                "primary_type": "Gadget",
            }
        )
        concept = await task_runner.define("something")
        assert list(concept.standard_names) == ["Theory"]
        assert concept.primary_type == "Theory"

    @pytest.mark.asyncio
    async def test_define_rejects_bad_input_without_calling_model(self, task_runner, fake_provider):
        with pytest.raises(KBError) as exc:
            await task_runner.define("   ")
        assert exc.value.code == ErrorCode.E101_INVALID_INPUT
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_tag_cleans_lists(self, task_runner, fake_provider):
        fake_provider.replies["tag"].append({"aliases": ["  A  ", ""], "tags": "not-a-list"})
        task = Task(
            id="t1",
            node_id="n1",
            payload=TagPayload(pipeline_id="p", concept_type="Entity", user_input="x", standardized=_concept()),
        )
        assert await task_runner.run_tag(task) == {"aliases": ["A"], "tags": []}
        assert "Concept: Transformer (Entity)" in fake_provider.prompts[0]

    @pytest.mark.asyncio
    async def test_write_empty_definition(self, task_runner, fake_provider):
        fake_provider.replies["write"].append({"definition": "  "})
        task = Task(
            id="t1",
            node_id="n1",
            payload=WritePayload(
                pipeline_id="p",
                concept_type="Entity",
                name="Transformer",
                standardized=_concept(),
                enriched=EnrichedData(),
                target_path="entities/Transformer.md",
            ),
        )
        with pytest.raises(KBError) as exc:
            await task_runner.run_write(task)
        assert exc.value.code == ErrorCode.E211_MODEL_SCHEMA_VIOLATION

    @pytest.mark.asyncio
    async def test_wrong_payload(self, task_runner):
        task = Task(
            id="t1",
            node_id="n1",
            payload=TagPayload(pipeline_id="p", concept_type="Entity", user_input="x", standardized=_concept()),
        )
        with pytest.raises(KBError) as exc:
            await task_runner.run_write(task)
        assert exc.value.code == ErrorCode.E500_INTERNAL_ERROR
