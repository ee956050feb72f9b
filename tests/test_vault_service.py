"""Tests for the VaultService facade."""
import pytest

from pagevault_mcp.exceptions import (
    BlockNotFoundError,
    ErrorCode,
    InvalidBlockTypeError,
    InvalidPageTypeError,
    PageNotFoundError,
    SlugNotFoundError,
    ValidationError,
)
from pagevault_mcp.models.schema import BlockPatch, PageType
from tests.helpers import paragraph


class TestPages:
    """Tests for page operations."""

    def test_create_and_get(self, vault_service):
        page = vault_service.create_page("  Dragon  ", "NPC")
        assert page.title == "Dragon"
        assert page.type == PageType.NPC
        loaded = vault_service.get_page(page.id)
        assert loaded.blocks == []
        assert vault_service.get_page_by_slug("dragon").id == page.id

    def test_create_validation(self, vault_service):
        with pytest.raises(ValidationError) as exc_info:
            vault_service.create_page("   ")
        assert exc_info.value.code == ErrorCode.PAGE_TITLE_REQUIRED
        with pytest.raises(InvalidPageTypeError):
            vault_service.create_page("X", "monster")

    def test_not_found(self, vault_service):
        with pytest.raises(PageNotFoundError):
            vault_service.get_page("missing")
        with pytest.raises(SlugNotFoundError):
            vault_service.get_page_by_slug("missing")
        with pytest.raises(PageNotFoundError):
            vault_service.update_page("missing", title="x")
        with pytest.raises(PageNotFoundError):
            vault_service.delete_page("missing")

    def test_update_slug_stability(self, vault_service):
        page = vault_service.create_page("Old Name")
        kept = vault_service.update_page(page.id, title="New Name")
        assert kept.slug == "old-name"
        regenerated = vault_service.update_page(page.id, regenerate_slug=True)
        assert regenerated.slug == "new-name"

    def test_resolve_or_create(self, vault_service):
        page, created = vault_service.resolve_or_create_page("Harbor", "location")
        assert created
        same, created = vault_service.resolve_or_create_page("Harbor")
        assert not created and same.id == page.id

    def test_stats(self, vault_service):
        page = vault_service.create_page("A")
        vault_service.create_block(page.id, "paragraph")
        vault_service.set_page_tags(page.id, ["x"])
        assert vault_service.get_stats() == {"pages": 1, "blocks": 1, "tags": 1}


class TestBlocks:
    """Tests for block operations."""

    def test_create_block_validation(self, vault_service):
        page = vault_service.create_page("A")
        with pytest.raises(PageNotFoundError):
            vault_service.create_block("missing", "paragraph")
        with pytest.raises(InvalidBlockTypeError):
            vault_service.create_block(page.id, "Not A Type!")
        block = vault_service.create_block(page.id, "Callout", content={"text": "x"})
        assert block.type == "callout"

    def test_update_block_from_mapping(self, vault_service):
        page = vault_service.create_page("A")
        block = vault_service.create_block(page.id, "paragraph", content=paragraph("a"))
        updated = vault_service.update_block(block.id, {"content": {"text": "b"}, "type": "HEADING"})
        assert updated.content == {"text": "b"}
        assert updated.type == "heading"
        with pytest.raises(ValidationError):
            vault_service.update_block(block.id, {"sort": "first"})
        with pytest.raises(BlockNotFoundError):
            vault_service.update_block("missing", BlockPatch(sort=0))

    def test_update_block_blank_parent_moves_to_top_level(self, vault_service):
        page = vault_service.create_page("A")
        section = vault_service.create_block(page.id, "section", content={"title": "S"})
        child = vault_service.create_block(page.id, "paragraph", parent_id=section.id)
        updated = vault_service.update_block(child.id, {"parentId": ""})
        assert updated.parent_id is None
        again = vault_service.update_block(child.id, {"parentId": "  "})
        assert again.parent_id is None

    def test_delete_block(self, vault_service):
        page = vault_service.create_page("A")
        block = vault_service.create_block(page.id, "paragraph")
        assert vault_service.delete_block(block.id) is True
        with pytest.raises(BlockNotFoundError):
            vault_service.delete_block(block.id)

    def test_reorder_blocks(self, vault_service):
        page = vault_service.create_page("A")
        other = vault_service.create_page("B")
        a = vault_service.create_block(page.id, "paragraph", sort=0)
        b = vault_service.create_block(page.id, "paragraph", sort=1)
        foreign = vault_service.create_block(other.id, "paragraph")

        result = vault_service.reorder_blocks(page.id, [
            {"id": b.id, "parentId": None, "sort": 0},
            {"id": a.id, "sort": 1},
            {"id": foreign.id, "sort": 3},
            {"sort": 2},
        ])
        assert result == {"ok": True}
        assert [x.id for x in vault_service.get_page(page.id).blocks] == [b.id, a.id]
        assert vault_service.get_page(other.id).blocks[0].sort == 0

    def test_reorder_unknown_page(self, vault_service):
        with pytest.raises(PageNotFoundError):
            vault_service.reorder_blocks("missing", [])

    def test_delete_page_removes_blocks(self, vault_service):
        page = vault_service.create_page("A")
        vault_service.create_block(page.id, "paragraph")
        vault_service.delete_page(page.id)
        assert vault_service.get_stats()["blocks"] == 0
