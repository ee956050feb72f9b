"""Tests for substring search, snippets, excerpts and section paths."""
from sqlalchemy import update

from pagevault_mcp.models.db_models import DBBlock
from pagevault_mcp.models.schema import Block
from pagevault_mcp.services.search_service import (
    ELLIPSIS,
    SearchService,
    document_order,
    make_excerpt,
    make_snippet,
    section_path,
)
from tests.helpers import paragraph, tick


class TestTextHelpers:
    """Tests for snippet and excerpt helpers."""

    def test_short_snippet_is_collapsed_only(self):
        assert make_snippet("  two\n\nlines\there ") == "two lines here"

    def test_long_snippet_is_bounded(self):
        snippet = make_snippet("word\n" * 100)
        assert len(snippet) <= 141
        assert snippet.endswith(ELLIPSIS)
        assert "\n" not in snippet

    def test_excerpt_window(self):
        text = "a" * 100 + "TERM" + "b" * 100
        excerpt = make_excerpt(text, 100, 4)
        assert excerpt == ELLIPSIS + "a" * 60 + "TERM" + "b" * 80 + ELLIPSIS

    def test_excerpt_clamped_to_text(self):
        assert make_excerpt("find TERM here", 5, 4) == "find TERM here"

    def test_section_path_outermost_first(self):
        outer = Block(id="s1", page_id="p", type="section", content={"title": "Outer"})
        middle = Block(id="d1", page_id="p", parent_id="s1", type="divider")
        inner = Block(id="s2", page_id="p", parent_id="d1", type="section", content={"title": "Inner"})
        leaf = Block(id="b", page_id="p", parent_id="s2", type="paragraph")
        by_id = {b.id: b for b in (outer, middle, inner, leaf)}
        assert section_path(leaf, by_id) == ["Outer", "Inner"]
        assert section_path(outer, by_id) == []

    def test_section_path_terminates_on_cycles(self):
        blocks = [
            Block(id=f"s{i}", page_id="p", parent_id=f"s{(i + 1) % 50}", type="section",
                  content={"title": f"T{i}"})
            for i in range(50)
        ]
        by_id = {b.id: b for b in blocks}
        path = section_path(blocks[0], by_id, max_depth=10)
        assert len(path) <= 10

    def test_document_order_is_preorder(self):
        blocks = [
            Block(id="a", page_id="p", sort=0, type="section"),
            Block(id="b", page_id="p", sort=1, type="paragraph"),
            Block(id="a1", page_id="p", parent_id="a", sort=0, type="paragraph"),
            Block(id="x", page_id="p", parent_id="ghost", sort=0, type="paragraph"),
        ]
        assert [b.id for b in document_order(blocks)] == ["a", "a1", "b", "x"]

    def test_clamp_limit(self, test_config):
        assert SearchService.clamp_limit(None) == test_config.search_limit
        assert SearchService.clamp_limit(-5) == 1
        assert SearchService.clamp_limit(10 ** 9) == test_config.search_max_limit


class TestSearch:
    """Tests for the page-level search."""

    def test_title_and_paragraph_matches(self, vault_service):
        by_title = vault_service.create_page("Red Dragon")
        vault_service.create_block(by_title.id, "paragraph", content=paragraph("First paragraph."))
        tick()
        by_text = vault_service.create_page("Journal")
        vault_service.create_block(by_text.id, "paragraph", content=paragraph("Nothing here"))
        vault_service.create_block(by_text.id, "paragraph", content=paragraph("A DRAGON appeared"))
        vault_service.create_page("Unrelated")

        results = vault_service.search("dragon")
        assert [r.page.id for r in results] == [by_text.id, by_title.id]
        assert results[0].snippet == "A DRAGON appeared"
        assert results[1].snippet == "First paragraph."
        data = results[0].to_dict()
        assert set(data) == {"id", "title", "type", "slug", "updatedAt", "snippet"}

    def test_heading_text_does_not_match_plain_search(self, vault_service):
        page = vault_service.create_page("Journal")
        vault_service.create_block(page.id, "heading", content={"text": "Dragon"})
        assert vault_service.search("dragon") == []

    def test_json_keys_do_not_match(self, vault_service):
        page = vault_service.create_page("Journal")
        vault_service.create_block(page.id, "paragraph", content=paragraph("hello"))
        assert vault_service.search("text") == []

    def test_wildcards_are_literal(self, vault_service):
        page = vault_service.create_page("Progress")
        vault_service.create_block(page.id, "paragraph", content=paragraph("100% done"))
        vault_service.create_block(page.id, "paragraph", content=paragraph("1000 done"))
        assert [r.snippet for r in vault_service.search("0%")] == ["100% done"]
        assert vault_service.search("_") == []

    def test_limit_and_blank_query(self, vault_service):
        for i in range(5):
            vault_service.create_page(f"Dragon {i}")
        assert len(vault_service.search("dragon", limit=2)) == 2
        assert vault_service.search("   ") == []

    def test_snippet_bound(self, vault_service):
        page = vault_service.create_page("Long")
        vault_service.create_block(page.id, "paragraph", content=paragraph("dragon\n" + "lorem ipsum " * 40))
        (result,) = vault_service.search("dragon")
        assert len(result.snippet) <= 141
        assert "\n" not in result.snippet


class TestSearchWithMatches:
    """Tests for the detailed search."""

    def test_matches_in_document_order_with_paths(self, vault_service):
        page = vault_service.create_page("Dragon Notes")
        lore = vault_service.create_block(page.id, "section", content={"title": "Lore"})
        vault_service.create_block(page.id, "paragraph", parent_id=lore.id, content=paragraph("The dragon sleeps. Dragon!"))
        vault_service.create_block(page.id, "heading", content={"text": "Dragon fights"})

        (result,) = vault_service.search_detailed("dragon")
        assert result.match_count == 4
        assert [m.field for m in result.matches] == ["title", "block", "block", "block"]
        block_matches = result.matches[1:]
        assert [m.block_type for m in block_matches] == ["paragraph", "paragraph", "heading"]
        assert block_matches[0].section_path == ["Lore"]
        assert block_matches[2].section_path == []
        assert result.to_dict()["matches"][1]["sectionPath"] == ["Lore"]

    def test_section_titles_match(self, vault_service):
        page = vault_service.create_page("Journal")
        section = vault_service.create_block(page.id, "section", content={"title": "About the dragon"})
        (result,) = vault_service.search_detailed("dragon")
        assert result.matches[0].block_id == section.id
        assert result.matches[0].block_type == "section"

    def test_match_count_is_not_capped(self, vault_service):
        page = vault_service.create_page("Echo")
        vault_service.create_block(page.id, "paragraph", content=paragraph("echo " * 12))
        (result,) = vault_service.search_detailed("echo", per_page_match_limit=3)
        assert result.match_count == 13
        assert len(result.matches) == 3

    def test_cyclic_parents_terminate(self, vault_service, session_factory, test_config):
        page = vault_service.create_page("Deep")
        ids = [vault_service.create_block(page.id, "section", content={"title": f"S{i}"}).id for i in range(50)]
        leaf = vault_service.create_block(page.id, "paragraph", content=paragraph("needle"))
        with session_factory() as session:
            for i, block_id in enumerate(ids):
                session.execute(
                    update(DBBlock).where(DBBlock.id == block_id).values(parent_id=ids[(i + 1) % 50])
                )
            session.execute(update(DBBlock).where(DBBlock.id == leaf.id).values(parent_id=ids[0]))
            session.commit()

        (result,) = vault_service.search_detailed("needle")
        assert len(result.matches) == 1
        assert len(result.matches[0].section_path) <= test_config.section_path_max_depth

    def test_heading_with_bad_level_still_matches(self, vault_service):
        page = vault_service.create_page("Caves")
        heading = vault_service.create_block(
            page.id, "heading", props={"level": 7}, content={"text": "The wyvern lair"}
        )
        (result,) = vault_service.search_detailed("wyvern")
        assert result.matches[0].block_id == heading.id
        assert result.matches[0].excerpt == "The wyvern lair"

    def test_section_with_bad_collapsed_flag_keeps_path(self, vault_service):
        page = vault_service.create_page("Map")
        section = vault_service.create_block(
            page.id, "section", props={"collapsed": "sometimes"}, content={"title": "North"}
        )
        vault_service.create_block(
            page.id, "paragraph", parent_id=section.id, content=paragraph("Frost giants roam")
        )
        (result,) = vault_service.search_detailed("giants")
        assert result.matches[0].section_path == ["North"]

    def test_no_match(self, vault_service):
        vault_service.create_page("Something")
        assert vault_service.search_detailed("absent") == []


def test_non_ascii_query(vault_service):
    page = vault_service.create_page("Åsa")
    vault_service.create_block(page.id, "paragraph", content=paragraph("Åsa was here"))
    (result,) = vault_service.search("Åsa")
    assert result.page.id == page.id
    assert result.snippet == "Åsa was here"
