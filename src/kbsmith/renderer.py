"""Turns structured model output into note Markdown."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from .errors import ErrorCode, KBError
from .frontmatter import build_note, require_frontmatter
from .models import NoteFrontmatter
from .prompts import TYPE_SECTIONS


def _heading(key: str) -> str:
    return key.replace("_", " ").strip().title()


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return "\n".join(f"- **{k}**: {_inline(v)}" for k, v in value.items())
    if isinstance(value, list):
        lines = []
        for item in value:
            if isinstance(item, dict):
                label = item.get("name") or item.get("title") or item.get("term")
                rest = {k: v for k, v in item.items() if k not in ("name", "title", "term")}
                detail = "; ".join(_inline(v) for v in rest.values() if v)
                if label and detail:
                    lines.append(f"- **{label}**: {detail}")
                else:
                    lines.append(f"- {label or detail}")
            else:
                lines.append(f"- {_inline(item)}")
        return "\n".join(lines)
    return str(value)


def _inline(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(_inline(v) for v in value)
    if isinstance(value, dict):
        return ", ".join(f"{k}: {_inline(v)}" for k, v in value.items())
    return str(value).strip()


def render_structured_content(concept_type: str, content: dict[str, Any]) -> str:
    """Sections for the known keys of a type, in order, then any extra keys."""
    known = TYPE_SECTIONS.get(concept_type, ())
    keys = [k for k in known if k in content] + [k for k in content if k not in known]
    sections = []
    for key in keys:
        rendered = _render_value(content[key])
        if rendered:
            sections.append(f"## {_heading(key)}\n\n{rendered}")
    return "\n\n".join(sections)


def render_note_body(name: str, concept_type: str, content: dict[str, Any]) -> str:
    structured = render_structured_content(concept_type, content)
    return f"# {name}\n\n{structured}" if structured else f"# {name}"


def build_merged_note(
    keep_content: str,
    merge_result: dict[str, Any],
    concept_type: str,
    delete_note_name: str,
    language: str = "en",
) -> tuple[str, str]:
    """Build the merged note from the kept note and the merge task output.

    The kept note's front matter is carried over: `updated` is refreshed,
    `definition` replaced when the model returned one, and the deleted
    note's title added to `aliases` so links to it still resolve.

    Returns:
        (merged note content, merged display name)

    Raises:
        KBError: E101 if the kept note has no front matter, E211 if the merge
            output has no content.
    """
    fm, _ = require_frontmatter(keep_content)

    content = merge_result.get("content")
    if not isinstance(content, dict) or not content:
        raise KBError(ErrorCode.E211_MODEL_SCHEMA_VIOLATION, "Merge result has no content object")

    names = merge_result.get("merged_name") or {}
    if language == "zh":
        merged_name = names.get("chinese") or names.get("english") or fm.name
    else:
        merged_name = names.get("english") or names.get("chinese") or fm.name

    updates: dict[str, Any] = {"updated": datetime.now(UTC)}
    definition = content.get("definition")
    if isinstance(definition, str) and definition.strip():
        updates["definition"] = definition.strip()
    aliases = list(fm.aliases)
    if delete_note_name.strip() and delete_note_name.strip() not in aliases:
        aliases.append(delete_note_name.strip())
    updates["aliases"] = aliases
    merged_fm: NoteFrontmatter = fm.model_copy(update=updates)

    sections = [f"# {merged_name}"]
    rationale = merge_result.get("merge_rationale")
    if isinstance(rationale, str) and rationale.strip():
        sections.append(f"## Merge Rationale\n\n{rationale.strip()}")

    structured = render_structured_content(concept_type, content)
    if structured:
        sections.append(structured)

    preserved_a = [str(x) for x in merge_result.get("preserved_from_a") or []]
    preserved_b = [str(x) for x in merge_result.get("preserved_from_b") or []]
    if preserved_a or preserved_b:
        parts = ["## Preserved Insights"]
        if preserved_a:
            parts.append("### From " + fm.name + "\n\n" + "\n".join(f"- {x}" for x in preserved_a))
        if preserved_b:
            parts.append("### From " + delete_note_name + "\n\n" + "\n".join(f"- {x}" for x in preserved_b))
        sections.append("\n\n".join(parts))

    return build_note(merged_fm, "\n\n".join(sections)), merged_name


_ASSESSMENT_LABELS = {
    "pass": "Pass",
    "needs_review": "Needs review",
    "fail": "Fail",
}

_VERDICT_MARKS = {"false": "[false]", "suspect": "[suspect]"}


def build_verification_report(result: dict[str, Any]) -> str:
    """Markdown section appended to a note after fact-checking."""
    lines = ["## Verification Report", ""]

    assessment = result.get("overall_assessment")
    if isinstance(assessment, str) and assessment:
        lines.append(f"**Overall assessment**: {_ASSESSMENT_LABELS.get(assessment, assessment)}")

    score = result.get("confidence_score")
    if isinstance(score, (int, float)) and not isinstance(score, bool):
        lines.append(f"**Confidence**: {score * 100:.0f}%")

    if result.get("requires_human_review") is True:
        lines.append("**Requires human review**: yes")

    lines.append(f"**Checked**: {datetime.now(UTC).strftime('%Y-%m-%d %H:%M')} UTC")
    lines.append("")

    claims = [c for c in result.get("verified_claims") or [] if isinstance(c, str)]
    if claims:
        lines.append("### Verified Claims")
        lines.append("")
        lines.extend(f"- {claim}" for claim in claims)
        lines.append("")

    issues = [i for i in result.get("issues") or [] if isinstance(i, dict)]
    if issues:
        lines.append("### Issues")
        lines.append("")
        for issue in issues:
            mark = _VERDICT_MARKS.get(str(issue.get("verdict")), "[unverifiable]")
            lines.append(f"- {mark} {issue.get('claim', '')}")
            if issue.get("correction"):
                lines.append(f"  - Correction: {issue['correction']}")
            if issue.get("source"):
                lines.append(f"  - Source: {issue['source']}")
        lines.append("")

    recommendations = [r for r in result.get("recommendations") or [] if isinstance(r, str)]
    if recommendations:
        lines.append("### Recommendations")
        lines.append("")
        lines.extend(f"- {r}" for r in recommendations)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def embedding_text(fm: NoteFrontmatter) -> str:
    """Text embedded for a note: identity fields, not the full body."""
    parts = [fm.name, *fm.aliases]
    if fm.definition:
        parts.append(fm.definition)
    parts.append(f"Type: {fm.type}")
    if fm.tags:
        parts.append(f"Tags: {', '.join(fm.tags)}")
    return "\n".join(parts)
