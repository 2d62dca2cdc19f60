"""LLM-backed work: the define call and the queued task handlers.

Every call renders a prompt, sends it to the provider configured for the task
type, and parses the reply as a JSON object. Unparsable replies raise E210,
replies missing required keys raise E211; both are retried by the queue.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .config import KNOWLEDGE_TYPES, Settings
from .errors import ErrorCode, KBError
from .llm_providers import ProviderClient
from .models import MergePayload, StandardizedConcept, TagPayload, Task, VerifyPayload, WritePayload
from .prompts import PromptBuilder
from .task_queue import TaskHandler
from .validation import validate_user_input

log = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_output(text: str) -> dict[str, Any]:
    """Extract the JSON object from a model reply.

    Tolerates a surrounding code fence or prose before and after the object.

    Raises:
        KBError: E210 if no JSON object can be decoded.
    """
    stripped = text.strip()
    fenced = _CODE_FENCE.match(stripped)
    if fenced:
        stripped = fenced.group(1)

    start, end = stripped.find("{"), stripped.rfind("}")
    if start == -1 or end <= start:
        raise KBError(
            ErrorCode.E210_MODEL_OUTPUT_PARSE_FAILED,
            "Model reply contains no JSON object",
            {"reply": text[:200]},
        )
    try:
        data = json.loads(stripped[start : end + 1])
    except json.JSONDecodeError as e:
        raise KBError(
            ErrorCode.E210_MODEL_OUTPUT_PARSE_FAILED,
            f"Model reply is not valid JSON: {e.msg}",
            {"reply": text[:200]},
        ) from e
    if not isinstance(data, dict):
        raise KBError(ErrorCode.E210_MODEL_OUTPUT_PARSE_FAILED, "Model reply is not a JSON object")
    return data


def require_keys(data: dict[str, Any], keys: tuple[str, ...], task_type: str) -> None:
    missing = [k for k in keys if k not in data]
    if missing:
        raise KBError(
            ErrorCode.E211_MODEL_SCHEMA_VIOLATION,
            f"{task_type} output is missing {', '.join(missing)}",
            {"missing": missing},
        )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


class TaskRunner:
    """Executes LLM calls for each task type."""

    def __init__(
        self,
        provider: ProviderClient,
        prompts: PromptBuilder,
        get_settings: Callable[[], Settings],
    ) -> None:
        self._provider = provider
        self._prompts = prompts
        self._get_settings = get_settings

    def handlers(self) -> dict[str, TaskHandler]:
        return {
            "tag": self.run_tag,
            "write": self.run_write,
            "merge": self.run_merge,
            "verify": self.run_verify,
        }

    async def _complete(self, task_type: str, prompt: str) -> dict[str, Any]:
        model = self._get_settings().model_for(task_type)
        reply = await self._provider.chat(
            model.provider_id,
            model.model,
            [{"role": "user", "content": prompt}],
            temperature=model.temperature,
            top_p=model.top_p,
            max_tokens=model.max_tokens,
        )
        log.debug("%s call used %d tokens", task_type, reply.tokens_used)
        return parse_json_output(reply.content)

    @staticmethod
    def _payload(task: Task, expected: type[P]) -> P:
        if not isinstance(task.payload, expected):
            raise KBError(
                ErrorCode.E500_INTERNAL_ERROR,
                f"Task {task.id} carries a {task.payload.kind} payload, expected {expected.__name__}",
            )
        return task.payload

    # -------------------------------------------------------------------------
    # Direct call
    # -------------------------------------------------------------------------

    async def define(self, user_input: str) -> StandardizedConcept:
        """Standardize and classify a free-text concept description.

        Raises:
            KBError: E101 for rejected input, E2xx for provider or output errors.
        """
        cleaned = validate_user_input(user_input)
        prompt = self._prompts.build("define", {"user_input": cleaned})
        data = await self._complete("define", prompt)
        require_keys(data, ("standard_names",), "define")

        names = {k: v for k, v in (data.get("standard_names") or {}).items() if k in KNOWLEDGE_TYPES}
        confidences = {
            k: float(v)
            for k, v in (data.get("type_confidences") or {}).items()
            if k in KNOWLEDGE_TYPES and isinstance(v, (int, float))
        }
        primary = data.get("primary_type")
        if primary not in KNOWLEDGE_TYPES:
            primary = max(confidences, key=confidences.__getitem__) if confidences else None

        try:
            concept = StandardizedConcept.model_validate(
                {
                    "standard_names": names,
                    "type_confidences": confidences,
                    "primary_type": primary,
                    "core_definition": str(data.get("core_definition") or "").strip(),
                }
            )
        except ValidationError as e:
            raise KBError(ErrorCode.E211_MODEL_SCHEMA_VIOLATION, f"define output is malformed: {e}") from e
        if not concept.standard_names:
            raise KBError(ErrorCode.E211_MODEL_SCHEMA_VIOLATION, "define output names no knowledge type")
        return concept

    # -------------------------------------------------------------------------
    # Queue handlers
    # -------------------------------------------------------------------------

    async def run_tag(self, task: Task) -> dict[str, Any]:
        payload = self._payload(task, TagPayload)
        name = payload.standardized.name_for(payload.concept_type)
        prompt = self._prompts.build(
            "tag",
            {
                "name": name.english or name.chinese,
                "concept_type": payload.concept_type,
                "definition": payload.standardized.core_definition,
                "user_input": payload.user_input,
            },
        )
        data = await self._complete("tag", prompt)
        require_keys(data, ("aliases", "tags"), "tag")
        return {"aliases": _string_list(data["aliases"]), "tags": _string_list(data["tags"])}

    async def run_write(self, task: Task) -> dict[str, Any]:
        payload = self._payload(task, WritePayload)
        prompt = self._prompts.build(
            "write",
            {
                "name": payload.name,
                "definition": payload.standardized.core_definition,
                "aliases": payload.enriched.aliases,
                "tags": payload.enriched.tags,
                "parents": payload.parents,
                "sources": payload.sources,
            },
            concept_type=payload.concept_type,
        )
        data = await self._complete("write", prompt)
        require_keys(data, ("definition",), "write")
        if not isinstance(data["definition"], str) or not data["definition"].strip():
            raise KBError(ErrorCode.E211_MODEL_SCHEMA_VIOLATION, "write output has an empty definition")
        return data

    async def run_merge(self, task: Task) -> dict[str, Any]:
        payload = self._payload(task, MergePayload)
        prompt = self._prompts.build(
            "merge",
            {
                "keep_name": payload.keep.name,
                "keep_content": payload.keep.content,
                "delete_name": payload.delete.name,
                "delete_content": payload.delete.content,
            },
            concept_type=payload.concept_type,
        )
        data = await self._complete("merge", prompt)
        require_keys(data, ("merged_name", "content"), "merge")
        if not isinstance(data["content"], dict):
            raise KBError(ErrorCode.E211_MODEL_SCHEMA_VIOLATION, "merge output content is not an object")
        if not isinstance(data["merged_name"], dict):
            raise KBError(ErrorCode.E211_MODEL_SCHEMA_VIOLATION, "merge output merged_name is not an object")
        return data

    async def run_verify(self, task: Task) -> dict[str, Any]:
        payload = self._payload(task, VerifyPayload)
        prompt = self._prompts.build(
            "verify",
            {"name": payload.name, "concept_type": payload.concept_type, "content": payload.content},
        )
        data = await self._complete("verify", prompt)
        require_keys(data, ("overall_assessment",), "verify")
        return data
