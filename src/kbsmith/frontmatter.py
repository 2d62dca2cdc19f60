"""Front matter parsing and serialization for concept notes.

Notes are Markdown files with a YAML header:

    ---
    cruid: 3f2a...
    type: Entity
    name: Transformer
    status: Draft
    ...
    ---

    # Transformer
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import frontmatter
import yaml
from pydantic import ValidationError

from .errors import ErrorCode, KBError
from .models import NoteFrontmatter
from .naming import wikilink, wikilink_target

log = logging.getLogger(__name__)

# Serialization order; unknown keys follow in their original order
FIELD_ORDER = (
    "cruid",
    "type",
    "name",
    "definition",
    "status",
    "aliases",
    "tags",
    "parents",
    "created",
    "updated",
)


@dataclass
class ParsedNote:
    metadata: dict[str, Any]
    body: str
    frontmatter: NoteFrontmatter | None  # None when the header is not a concept note


def parse_note(content: str) -> ParsedNote:
    """Split a note into metadata and body.

    Raises:
        KBError: E101 if the YAML header is malformed.
    """
    try:
        post = frontmatter.loads(content)
    except yaml.YAMLError as e:
        raise KBError(ErrorCode.E101_INVALID_INPUT, f"Malformed front matter: {e}") from e

    metadata = dict(post.metadata)
    note_fm: NoteFrontmatter | None = None
    if metadata.get("cruid"):
        try:
            note_fm = NoteFrontmatter.model_validate(metadata)
        except ValidationError as e:
            log.debug("Front matter is not a concept note header: %s", e)

    return ParsedNote(metadata=metadata, body=post.content, frontmatter=note_fm)


def require_frontmatter(content: str, path: str = "") -> tuple[NoteFrontmatter, str]:
    """Parse a note that must carry a concept header.

    Raises:
        KBError: E101 if the header is missing or invalid.
    """
    parsed = parse_note(content)
    if parsed.frontmatter is None:
        raise KBError(
            ErrorCode.E101_INVALID_INPUT,
            f"Note has no valid concept front matter: {path or '<content>'}",
            {"path": path},
        )
    return parsed.frontmatter, parsed.body


def dump_frontmatter(fm: NoteFrontmatter) -> str:
    """Serialize front matter to a YAML block including the --- delimiters."""
    data = fm.model_dump(mode="json")
    ordered = {key: data.pop(key) for key in FIELD_ORDER if key in data}
    ordered.update(data)
    body = yaml.safe_dump(ordered, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{body}---\n"


def build_note(fm: NoteFrontmatter, body: str = "") -> str:
    header = dump_frontmatter(fm)
    body = body.strip("\n")
    if not body:
        return header
    return f"{header}\n{body}\n"


def create_stub(
    node_id: str,
    concept_type: str,
    name: str,
    definition: str = "",
    aliases: list[str] | None = None,
    tags: list[str] | None = None,
    parents: list[str] | None = None,
) -> str:
    """Front-matter-only note written before full content is generated."""
    now = datetime.now(UTC)
    fm = NoteFrontmatter(
        cruid=node_id,
        type=concept_type,
        name=name,
        definition=definition,
        status="Stub",
        aliases=aliases or [],
        tags=tags or [],
        parents=parents or [],
        created=now,
        updated=now,
    )
    return build_note(fm)


def rewrite_parent_links(content: str, old_title: str, new_title: str) -> str | None:
    """Point parent links at new_title instead of old_title.

    Returns:
        The rewritten note, or None when it has no matching parent link.
    """
    parsed = parse_note(content)
    parents = parsed.metadata.get("parents")
    if not isinstance(parents, list):
        return None

    changed = False
    rewritten: list[str] = []
    for link in parents:
        target = wikilink_target(str(link))
        if target == old_title:
            link = wikilink(new_title)
            changed = True
        if link not in rewritten:
            rewritten.append(link)

    if not changed:
        return None

    metadata = dict(parsed.metadata)
    metadata["parents"] = rewritten
    if parsed.frontmatter is not None:
        fm = parsed.frontmatter.model_copy(update={"parents": rewritten})
        return build_note(fm, parsed.body)

    post = frontmatter.Post(parsed.body, **metadata)
    return frontmatter.dumps(post) + "\n"
