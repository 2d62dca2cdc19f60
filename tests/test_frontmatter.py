"""Tests for note front matter handling."""

from __future__ import annotations

import pytest

from kbsmith.errors import ErrorCode, KBError
from kbsmith.frontmatter import (
    build_note,
    create_stub,
    parse_note,
    require_frontmatter,
    rewrite_parent_links,
)
from kbsmith.models import NoteFrontmatter


class TestParse:
    def test_stub_round_trip(self):
        """A stub parses back into the same front matter."""
        content = create_stub("n1", "Entity", "Transformer", definition="An architecture.", tags=["nlp"])
        fm, body = require_frontmatter(content)

        assert fm.cruid == "n1"
        assert fm.type == "Entity"
        assert fm.status == "Stub"
        assert fm.tags == ["nlp"]
        assert body == ""

    def test_field_order(self):
        content = create_stub("n1", "Entity", "Transformer")
        keys = [line.split(":", 1)[0] for line in content.splitlines()[1:6]]
        assert keys == ["cruid", "type", "name", "definition", "status"]

    def test_unknown_keys_preserved(self):
        fm = NoteFrontmatter(cruid="n1", type="Entity", name="T", custom_field="keep me")
        fm2, _ = require_frontmatter(build_note(fm, "# T"))
        assert fm2.model_extra["custom_field"] == "keep me"

    def test_plain_markdown_has_no_concept_header(self):
        parsed = parse_note("# Just text\n")
        assert parsed.frontmatter is None
        with pytest.raises(KBError) as exc:
            require_frontmatter("# Just text\n", "x.md")
        assert exc.value.code == ErrorCode.E101_INVALID_INPUT

    def test_malformed_yaml(self):
        with pytest.raises(KBError):
            parse_note("---\nname: [unclosed\n---\nbody")


class TestRewriteParentLinks:
    def test_rewrites_matching_link(self):
        fm = NoteFrontmatter(cruid="c", type="Entity", name="Child", parents=["[[Old]]", "[[Other]]"])
        updated = rewrite_parent_links(build_note(fm, "# Child"), "Old", "New")

        assert updated is not None
        new_fm, body = require_frontmatter(updated)
        assert new_fm.parents == ["[[New]]", "[[Other]]"]
        assert body.strip() == "# Child"

    def test_alias_form_is_matched(self):
        fm = NoteFrontmatter(cruid="c", type="Entity", name="Child", parents=["[[Old|shown]]"])
        updated = rewrite_parent_links(build_note(fm), "Old", "New")
        assert require_frontmatter(updated)[0].parents == ["[[New]]"]

    def test_no_duplicate_after_rewrite(self):
        fm = NoteFrontmatter(cruid="c", type="Entity", name="Child", parents=["[[Old]]", "[[New]]"])
        updated = rewrite_parent_links(build_note(fm), "Old", "New")
        assert require_frontmatter(updated)[0].parents == ["[[New]]"]

    def test_unrelated_note_untouched(self):
        fm = NoteFrontmatter(cruid="c", type="Entity", name="Child", parents=["[[Other]]"])
        assert rewrite_parent_links(build_note(fm), "Old", "New") is None
        assert rewrite_parent_links("# no header", "Old", "New") is None
