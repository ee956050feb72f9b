"""Tests for on-demand backlink computation."""
import pytest

from pagevault_mcp.exceptions import PageNotFoundError
from tests.helpers import paragraph, tick


class TestBacklinks:
    """Tests for BacklinkService via the VaultService."""

    def test_bare_title_token_round_trip(self, vault_service):
        target = vault_service.create_page("A's Title")
        source = vault_service.create_page("B")
        vault_service.create_block(source.id, "paragraph", content=paragraph("See [[A's Title]]!"))

        page, backlinks = vault_service.get_backlinks(target.id)
        assert page.id == target.id
        assert [(b.id, b.title) for b in backlinks] == [(source.id, "B")]
        assert backlinks[0].count >= 1
        assert backlinks[0].type == "note"

    def test_counts_both_token_forms(self, vault_service):
        target = vault_service.create_page("Dragon")
        source = vault_service.create_page("Journal")
        vault_service.create_block(
            source.id,
            "paragraph",
            content=paragraph(f"[[Dragon]] then [[page:{target.id}|the wyrm]] and [[Dragon]]"),
        )
        vault_service.create_block(source.id, "paragraph", content=paragraph(f"[[page:{target.id}|again]]"))

        _, backlinks = vault_service.get_backlinks(target.id)
        assert len(backlinks) == 1
        assert backlinks[0].count == 4

    def test_ordering_by_count_then_recency(self, vault_service):
        target = vault_service.create_page("Dragon")
        one = vault_service.create_page("One")
        vault_service.create_block(one.id, "paragraph", content=paragraph("[[Dragon]]"))
        tick()
        many = vault_service.create_page("Many")
        vault_service.create_block(many.id, "paragraph", content=paragraph("[[Dragon]] [[Dragon]] [[Dragon]]"))
        tick()
        recent = vault_service.create_page("Recent")
        vault_service.create_block(recent.id, "paragraph", content=paragraph("[[Dragon]]"))

        _, backlinks = vault_service.get_backlinks(target.id)
        assert [b.id for b in backlinks] == [many.id, recent.id, one.id]
        assert [b.count for b in backlinks] == [3, 1, 1]

    def test_ignores_self_links_and_other_block_types(self, vault_service):
        target = vault_service.create_page("Dragon")
        vault_service.create_block(target.id, "paragraph", content=paragraph("[[Dragon]]"))
        other = vault_service.create_page("Other")
        vault_service.create_block(other.id, "heading", content={"text": "[[Dragon]]"})
        vault_service.create_block(other.id, "paragraph", content=paragraph("[[Dragonfly]] [[page:zzz|Dragon]]"))

        _, backlinks = vault_service.get_backlinks(target.id)
        assert backlinks == []

    def test_titles_with_quotes_match_stored_json(self, vault_service):
        target = vault_service.create_page('The "Old" Mill')
        source = vault_service.create_page("Source")
        vault_service.create_block(source.id, "paragraph", content=paragraph('Go to [[The "Old" Mill]]'))
        _, backlinks = vault_service.get_backlinks(target.id)
        assert [b.id for b in backlinks] == [source.id]

    def test_unknown_page(self, vault_service):
        with pytest.raises(PageNotFoundError):
            vault_service.get_backlinks("missing")
