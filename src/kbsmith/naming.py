"""Note naming and file path derivation."""

from __future__ import annotations

import re

# Characters rejected by Windows or Unix filesystems
_ILLEGAL_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")
_EMPTY_PARENS = re.compile(r"\(\s*\)")
_WIKILINK = re.compile(r"^\[\[([^\]|#]+)(?:[#|][^\]]*)?\]\]$")


def sanitize_file_name(name: str) -> str:
    """Replace filesystem-illegal characters with '-' and tidy whitespace.

    Examples:
        >>> sanitize_file_name('TCP/IP: "stack"')
        'TCP-IP- -stack-'
    """
    cleaned = _ILLEGAL_FILENAME_CHARS.sub("-", name)
    return _WHITESPACE.sub(" ", cleaned).strip()


def generate_file_path(
    name: str,
    directory_scheme: dict[str, str],
    concept_type: str,
    target_dir: str | None = None,
) -> str:
    """Canonical KB-relative path for a note.

    Args:
        name: Display name of the note.
        directory_scheme: Knowledge type to directory.
        concept_type: Knowledge type of the note.
        target_dir: Directory that overrides the scheme for this note.

    Returns:
        "<dir>/<name>.md", or "<name>.md" when there is no directory.
    """
    if target_dir is not None:
        directory = target_dir.replace("\\", "/").strip().strip("/")
    else:
        directory = directory_scheme.get(concept_type, "").strip("/")
    file_name = sanitize_file_name(name)
    if directory:
        return f"{directory}/{file_name}.md"
    return f"{file_name}.md"


def render_naming_template(
    template: str,
    english: str,
    chinese: str = "",
    concept_type: str = "",
    alias: str = "",
) -> str:
    """Fill a naming template such as "{{english}} ({{chinese}})".

    Empty placeholders leave no empty brackets or doubled spaces behind.
    """
    result = (
        template.replace("{{english}}", english or "")
        .replace("{{chinese}}", chinese or "")
        .replace("{{type}}", concept_type or "")
        .replace("{{alias}}", alias or "")
    )
    result = _EMPTY_PARENS.sub("", result)
    result = _WHITESPACE.sub(" ", result).strip()
    return result or english or chinese


def wikilink(title: str) -> str:
    return f"[[{title}]]"


def wikilink_target(link: str) -> str | None:
    """Target title of "[[Title]]", "[[Title|alias]]" or "[[Title#heading]]"."""
    match = _WIKILINK.match(link.strip())
    return match.group(1).strip() if match else None


def note_title(path: str) -> str:
    """File stem of a KB-relative path; this is what wiki links point at."""
    base = path.rsplit("/", 1)[-1]
    return base[:-3] if base.endswith(".md") else base


def renamed_path(path: str, new_name: str) -> str:
    """Path of a note renamed in place; a trailing ".md" in new_name is ignored."""
    stem = new_name[:-3] if new_name.lower().endswith(".md") else new_name
    file_name = sanitize_file_name(stem)
    directory = path.rsplit("/", 1)[0] if "/" in path else ""
    return f"{directory}/{file_name}.md" if directory else f"{file_name}.md"
