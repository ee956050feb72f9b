"""Tests for bulk link rewrites through the VaultService."""
import pytest

from pagevault_mcp.exceptions import ErrorCode, PageNotFoundError, ValidationError
from tests.helpers import paragraph, tick


@pytest.fixture
def dragon(vault_service):
    return vault_service.create_page("Dragon", "npc")


class TestResolveLinks:
    """Tests for turning [[label]] into resolved tokens."""

    def test_resolve_single_page(self, vault_service, dragon):
        page = vault_service.create_page("Journal")
        block = vault_service.create_block(page.id, "paragraph", content=paragraph("Met [[Dragon]] twice: [[Dragon]]"))
        other = vault_service.create_page("Untouched")
        vault_service.create_block(other.id, "paragraph", content=paragraph("[[Dragon]]"))

        result = vault_service.resolve_links("Dragon", dragon.id, scope="page", page_id=page.id)
        assert result.to_dict() == {"updatedPages": 1, "updatedBlocks": 1}
        text = vault_service.blocks.get(block.id).content["text"]
        assert text == f"Met [[page:{dragon.id}|Dragon]] twice: [[page:{dragon.id}|Dragon]]"
        assert vault_service.get_page(other.id).blocks[0].content["text"] == "[[Dragon]]"

    def test_resolve_all_pages_and_props(self, vault_service, dragon):
        a = vault_service.create_page("A")
        b = vault_service.create_page("B")
        vault_service.create_block(a.id, "paragraph", content=paragraph("[[Dragon]]"))
        vault_service.create_block(
            b.id, "table", props={"caption": "see [[Dragon]]"}, content={"rows": [["[[Dragon]]", 1]]}
        )

        result = vault_service.resolve_links("Dragon", dragon.id, scope="all")
        assert (result.updated_pages, result.updated_blocks) == (2, 2)
        table = vault_service.get_page(b.id).blocks[0]
        assert table.props["caption"] == f"see [[page:{dragon.id}|Dragon]]"
        assert table.content["rows"] == [[f"[[page:{dragon.id}|Dragon]]", 1]]

    def test_resolving_twice_changes_nothing(self, vault_service, dragon):
        page = vault_service.create_page("Journal")
        vault_service.create_block(page.id, "paragraph", content=paragraph("[[Dragon]]"))
        vault_service.resolve_links("Dragon", dragon.id, scope="all")
        again = vault_service.resolve_links("Dragon", dragon.id, scope="all")
        assert again.updated_blocks == 0

    def test_resolve_touches_page_once(self, vault_service, dragon):
        page = vault_service.create_page("Journal")
        for _ in range(3):
            vault_service.create_block(page.id, "paragraph", content=paragraph("[[Dragon]]"))
        before = vault_service.pages.get(page.id).updated_at
        tick()
        result = vault_service.resolve_links("Dragon", dragon.id, scope="pages", page_ids=[page.id, page.id])
        assert (result.updated_pages, result.updated_blocks) == (1, 3)
        updated = vault_service.get_page(page.id)
        assert updated.updated_at > before
        assert {b.updated_at for b in updated.blocks} == {updated.updated_at}

    def test_validation(self, vault_service, dragon):
        with pytest.raises(ValidationError) as exc_info:
            vault_service.resolve_links("  ", dragon.id, scope="all")
        assert exc_info.value.code == ErrorCode.LINK_LABEL_REQUIRED
        with pytest.raises(ValidationError) as exc_info:
            vault_service.resolve_links("Dragon", "", scope="all")
        assert exc_info.value.code == ErrorCode.LINK_TARGET_REQUIRED
        with pytest.raises(PageNotFoundError):
            vault_service.resolve_links("Dragon", "missing", scope="all")
        with pytest.raises(ValidationError) as exc_info:
            vault_service.resolve_links("Dragon", dragon.id, scope="everywhere")
        assert exc_info.value.code == ErrorCode.LINK_INVALID_SCOPE
        with pytest.raises(ValidationError):
            vault_service.resolve_links("Dragon", dragon.id, scope="page")
        with pytest.raises(PageNotFoundError):
            vault_service.resolve_links("Dragon", dragon.id, scope="page", page_id="missing")

    def test_empty_page_list_falls_back_to_all(self, vault_service, dragon):
        page = vault_service.create_page("Journal")
        vault_service.create_block(page.id, "paragraph", content=paragraph("[[Dragon]]"))
        result = vault_service.resolve_links("Dragon", dragon.id, scope="pages", page_ids=[])
        assert result.updated_blocks == 1


class TestLinkify:
    """Tests for linking plain-text mentions."""

    def test_linkify_paragraphs_and_headings_only(self, vault_service, dragon):
        page = vault_service.create_page("Journal")
        para = vault_service.create_block(page.id, "paragraph", content=paragraph("The dragon woke. `dragon` stays."))
        head = vault_service.create_block(page.id, "heading", props={"level": 2}, content={"text": "Dragon"})
        section = vault_service.create_block(page.id, "section", content={"title": "Dragon lore"})

        result = vault_service.linkify("dragon", dragon.id, scope="page", page_id=page.id)
        assert result.to_dict() == {"updatedPages": 1, "updatedBlocks": 2, "linkedOccurrences": 2}
        assert vault_service.blocks.get(para.id).content["text"] == (
            f"The [[page:{dragon.id}|dragon]] woke. `dragon` stays."
        )
        assert vault_service.blocks.get(head.id).content["text"] == f"[[page:{dragon.id}|Dragon]]"
        assert vault_service.blocks.get(section.id).content["title"] == "Dragon lore"

    def test_linkify_is_idempotent(self, vault_service, dragon):
        page = vault_service.create_page("Journal")
        vault_service.create_block(page.id, "paragraph", content=paragraph("Dragon and [[Dragon]]"))
        first = vault_service.linkify("Dragon", dragon.id, scope="all")
        second = vault_service.linkify("Dragon", dragon.id, scope="all")
        assert first.linked_occurrences == 1
        assert second.linked_occurrences == 0
        assert second.updated_blocks == 0

    def test_term_required(self, vault_service, dragon):
        with pytest.raises(ValidationError) as exc_info:
            vault_service.linkify("", dragon.id, scope="all")
        assert exc_info.value.code == ErrorCode.LINK_TERM_REQUIRED


class TestRepairAndOccurrences:
    """Tests for nested-token repair and token occurrence listing."""

    def test_repair_nested_tokens(self, vault_service, dragon):
        page = vault_service.create_page("Broken")
        block = vault_service.create_block(
            page.id,
            "paragraph",
            content=paragraph(f"[[page:{dragon.id}|[[page:{dragon.id}|Bavlorna]]]]"),
            props={"note": f"[[page:{dragon.id}|[[page:{dragon.id}|X]]]]"},
        )
        clean = vault_service.create_page("Clean")
        vault_service.create_block(clean.id, "paragraph", content=paragraph("fine"))

        result = vault_service.repair_links()
        assert result.to_dict() == {"updatedPages": 1, "updatedBlocks": 1}
        stored = vault_service.blocks.get(block.id)
        assert stored.content["text"] == f"[[page:{dragon.id}|Bavlorna]]"
        assert stored.props["note"] == f"[[page:{dragon.id}|X]]"
        assert vault_service.repair_links().updated_blocks == 0

    def test_occurrences(self, vault_service):
        older = vault_service.create_page("Older")
        b1 = vault_service.create_block(older.id, "paragraph", content=paragraph("[[Ghost]] and [[Ghost]]"))
        tick()
        newer = vault_service.create_page("Newer")
        b2 = vault_service.create_block(newer.id, "paragraph", content=paragraph("[[Ghost]]"))
        b3 = vault_service.create_block(newer.id, "table", props={"caption": "[[Ghost]]"})
        vault_service.create_block(newer.id, "paragraph", content=paragraph("[[Ghostly]]"))

        found = vault_service.link_occurrences("Ghost")
        assert [o.page_id for o in found] == [newer.id, older.id]
        assert found[0].matches == 2
        assert found[0].block_ids == [b2.id, b3.id]
        assert found[1].to_dict()["matches"] == 2
        assert found[1].block_ids == [b1.id]
        assert len(vault_service.link_occurrences("Ghost", limit=1)) == 1

    def test_resolve_token_uses_current_titles(self, vault_service, dragon):
        assert vault_service.resolve_token(label="it", target_title="dragon") == f"[[page:{dragon.id}|it]]"
        assert vault_service.resolve_token(target_title="Nobody") == "[[Nobody]]"
        assert vault_service.resolve_token(
            label="Foo", legacy_key="a.html", legacy_map={"a.html": "legacy"}
        ) == "[[page:legacy|Foo]]"
