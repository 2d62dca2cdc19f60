"""Prompt templates for the LLM-backed task types.

Templates are inline Jinja2 strings rendered with StrictUndefined, so a
missing slot fails loudly instead of producing a half-empty prompt.
"""

from __future__ import annotations

from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateNotFound, UndefinedError

from .errors import ErrorCode, KBError

# Body sections the write step must return, per knowledge type, in render order
TYPE_SECTIONS: dict[str, tuple[str, ...]] = {
    "Domain": ("definition", "scope", "sub_domains", "key_concepts", "history"),
    "Issue": ("definition", "core_tension", "stakeholders", "approaches", "open_questions"),
    "Theory": ("definition", "axioms", "key_claims", "evidence", "limitations"),
    "Entity": ("definition", "properties", "examples", "related_entities"),
    "Mechanism": ("definition", "components", "process_steps", "conditions", "outcomes"),
}

_JSON_ONLY = "Respond with a single JSON object and nothing else."

DEFINE_TEMPLATE = """\
You standardize concepts for a personal knowledge base written in {{ language }}.

Concept description:
<input>
{{ user_input }}
</input>

Classify the concept against these knowledge types: Domain, Issue, Theory,
Entity, Mechanism. For every type give the name the concept would have if it
were filed under that type.

Return JSON with keys:
- "standard_names": object mapping each type to {"english": str, "chinese": str}
- "type_confidences": object mapping each type to a number in [0, 1], summing to 1
- "primary_type": the most likely type
- "core_definition": one sentence
""" + _JSON_ONLY

TAG_TEMPLATE = """\
Concept: {{ name }} ({{ concept_type }})
Definition: {{ definition }}
Original description: {{ user_input }}

Suggest alternative names people use for this concept and topical tags.
Tags are lowercase, hyphenated, without '#'.

Return JSON with keys "aliases" (list of strings) and "tags" (list of strings).
""" + _JSON_ONLY

WRITE_TEMPLATE = """\
Write the knowledge base entry for the {{ concept_type }} "{{ name }}".

Definition: {{ definition }}
Aliases: {{ aliases | join(", ") or "none" }}
Tags: {{ tags | join(", ") or "none" }}
{% if parents %}Parent concepts: {{ parents | join(", ") }}
{% endif %}{% if sources %}Sources to draw on:
{{ sources }}
{% endif %}
Return JSON with exactly these keys:
{% for section in sections %}- "{{ section }}"
{% endfor %}
"definition" is a single precise sentence. Other values are Markdown strings
or lists of strings. Write in {{ language }}.
""" + _JSON_ONLY

MERGE_TEMPLATE = """\
Two {{ concept_type }} notes in a knowledge base describe the same concept.
Merge them into one note, keeping every distinct insight.

Note A (kept): {{ keep_name }}
<note_a>
{{ keep_content }}
</note_a>

Note B (merged into A): {{ delete_name }}
<note_b>
{{ delete_content }}
</note_b>

Return JSON with keys:
- "merged_name": {"english": str, "chinese": str}
- "merge_rationale": why these are the same concept
- "content": object with keys {{ sections | join(", ") }}
- "preserved_from_a": list of insights kept from note A
- "preserved_from_b": list of insights kept from note B
Write in {{ language }}.
""" + _JSON_ONLY

VERIFY_TEMPLATE = """\
Fact-check this knowledge base note about the {{ concept_type }} "{{ name }}".

<note>
{{ content }}
</note>

Return JSON with keys:
- "overall_assessment": "pass", "needs_review" or "fail"
- "confidence_score": number in [0, 1]
- "requires_human_review": boolean
- "verified_claims": list of strings
- "issues": list of {"claim", "verdict" ("false" | "suspect" | "unverifiable"), "correction", "source"}
- "recommendations": list of strings
""" + _JSON_ONLY

TEMPLATES: dict[str, str] = {
    "define": DEFINE_TEMPLATE,
    "tag": TAG_TEMPLATE,
    "write": WRITE_TEMPLATE,
    "merge": MERGE_TEMPLATE,
    "verify": VERIFY_TEMPLATE,
}

# Templates whose prompt depends on the knowledge type
TYPED_TEMPLATES = frozenset({"write", "merge"})


class PromptBuilder:
    """Renders the prompt for a task type from named slots."""

    def __init__(self, templates: dict[str, str] | None = None, language: str = "en") -> None:
        self._env = Environment(
            loader=DictLoader(templates or TEMPLATES),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._language = language

    def build(self, task_type: str, slots: dict[str, Any], concept_type: str | None = None) -> str:
        """Render the template for task_type.

        Args:
            task_type: Template id ("define", "tag", "write", "merge", "verify").
            slots: Values for the template variables.
            concept_type: Knowledge type; required by typed templates.

        Raises:
            KBError: E404 for an unknown template, E406 for a missing slot
                or a typed template without a known concept type.
        """
        try:
            template = self._env.get_template(task_type)
        except TemplateNotFound as e:
            raise KBError(
                ErrorCode.E404_TEMPLATE_NOT_FOUND,
                f"No prompt template for task type '{task_type}'",
                {"task_type": task_type},
            ) from e

        context: dict[str, Any] = {"language": self._language, **slots}
        if task_type in TYPED_TEMPLATES:
            if concept_type not in TYPE_SECTIONS:
                raise KBError(
                    ErrorCode.E406_TEMPLATE_INVALID,
                    f"Template '{task_type}' needs a knowledge type, got {concept_type!r}",
                    {"task_type": task_type},
                )
            context.setdefault("concept_type", concept_type)
            context.setdefault("sections", TYPE_SECTIONS[concept_type])

        try:
            return template.render(**context)
        except UndefinedError as e:
            raise KBError(
                ErrorCode.E406_TEMPLATE_INVALID,
                f"Missing slot for '{task_type}' prompt: {e.message}",
                {"task_type": task_type},
            ) from e
