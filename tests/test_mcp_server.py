# tests/test_mcp_server.py
"""Tests for the MCP server implementation."""
import json
from unittest.mock import MagicMock, patch

import pytest

from pagevault_mcp.exceptions import PageNotFoundError
from pagevault_mcp.server.mcp_server import PageVaultMcpServer


class ToolCapture:
    """Stands in for FastMCP and records the registered tool functions."""

    def __init__(self):
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper

        self.mock_mcp.tool = mock_tool_decorator


@pytest.fixture
def tools(engine):
    """Registered tools of a server running on the test database."""
    capture = ToolCapture()
    with patch("pagevault_mcp.server.mcp_server.FastMCP", return_value=capture.mock_mcp):
        PageVaultMcpServer(engine=engine)
    return capture.registered_tools


def call(tools, name, **kwargs):
    """Invoke a tool and decode its JSON response."""
    return json.loads(tools[name](**kwargs))


EXPECTED_TOOLS = {
    "vault_create_page", "vault_get_page", "vault_update_page", "vault_delete_page",
    "vault_list_pages", "vault_resolve_page", "vault_create_block", "vault_update_block",
    "vault_delete_block", "vault_reorder_blocks", "vault_resolve_links", "vault_linkify",
    "vault_repair_links", "vault_link_occurrences", "vault_backlinks", "vault_search",
    "vault_set_tags", "vault_list_tags", "vault_rename_tag", "vault_status",
}


class TestMcpServerTools:
    """End-to-end tool calls against a temporary database."""

    def test_all_tools_registered(self, tools):
        assert set(tools) == EXPECTED_TOOLS

    def test_page_lifecycle(self, tools):
        page = call(tools, "vault_create_page", title="Red Dragon", page_type="npc")
        assert page["slug"] == "red-dragon"
        assert page["type"] == "npc"

        by_id = call(tools, "vault_get_page", identifier=page["id"])
        by_slug = call(tools, "vault_get_page", identifier="red-dragon")
        assert by_id["id"] == by_slug["id"] == page["id"]
        assert by_id["blocks"] == []

        updated = call(tools, "vault_update_page", page_id=page["id"], title="Blue Dragon")
        assert (updated["title"], updated["slug"]) == ("Blue Dragon", "red-dragon")

        listed = call(tools, "vault_list_pages")
        assert [p["id"] for p in listed] == [page["id"]]

        assert call(tools, "vault_delete_page", page_id=page["id"]) == {"ok": True, "id": page["id"]}
        assert tools["vault_get_page"](identifier=page["id"]).startswith("Page not found")

    def test_blocks_and_reorder(self, tools):
        page = call(tools, "vault_create_page", title="Journal")
        a = call(tools, "vault_create_block", page_id=page["id"], block_type="paragraph",
                 content='{"text": "first"}')
        b = call(tools, "vault_create_block", page_id=page["id"], block_type="heading",
                 props='{"level": 2}', content='{"text": "second"}', sort=1)
        assert (a["sort"], b["sort"]) == (0, 1)

        moves = json.dumps([{"id": b["id"], "sort": 0}, {"id": a["id"], "sort": 1}])
        assert call(tools, "vault_reorder_blocks", page_id=page["id"], moves=moves) == {"ok": True}
        blocks = call(tools, "vault_get_page", identifier=page["id"])["blocks"]
        assert [blk["id"] for blk in blocks] == [b["id"], a["id"]]

        patched = call(tools, "vault_update_block", block_id=a["id"], patch='{"content": {"text": "edited"}}')
        assert patched["content"] == {"text": "edited"}
        assert call(tools, "vault_delete_block", block_id=b["id"])["ok"] is True

    def test_links_backlinks_and_search(self, tools):
        dragon = call(tools, "vault_create_page", title="Dragon")
        journal = call(tools, "vault_create_page", title="Journal")
        call(tools, "vault_create_block", page_id=journal["id"], block_type="paragraph",
             content='{"text": "A dragon, then [[Dragon]]."}')

        occurrences = call(tools, "vault_link_occurrences", label="Dragon")
        assert occurrences[0]["pageId"] == journal["id"]

        resolved = call(tools, "vault_resolve_links", label="Dragon", target_page_id=dragon["id"], scope="all")
        assert resolved == {"updatedPages": 1, "updatedBlocks": 1}
        linked = call(tools, "vault_linkify", term="dragon", target_page_id=dragon["id"],
                      scope="pages", page_ids=journal["id"])
        assert linked["linkedOccurrences"] == 1
        assert call(tools, "vault_repair_links")["updatedBlocks"] == 0

        backlinks = call(tools, "vault_backlinks", page_id=dragon["id"])
        assert (backlinks["pageId"], backlinks["title"]) == (dragon["id"], "Dragon")
        assert backlinks["backlinks"][0]["id"] == journal["id"]
        assert backlinks["backlinks"][0]["count"] == 2

        plain = call(tools, "vault_search", query="then")
        assert plain["q"] == "then"
        assert [r["id"] for r in plain["results"]] == [journal["id"]]
        detailed = call(tools, "vault_search", query="then", detail=True)
        assert detailed[0]["matchCount"] == 1
        assert detailed[0]["matches"][0]["field"] == "block"

    def test_tags_and_status(self, tools):
        page = call(tools, "vault_create_page", title="Tagged")
        tags = call(tools, "vault_set_tags", page_id=page["id"], tags="Lore, quest")
        assert [t["name"] for t in tags] == ["lore", "quest"]
        assert call(tools, "vault_rename_tag", old_name="quest", new_name="Mission")["affectedPages"] == 1
        listed = call(tools, "vault_list_tags")
        assert [(t["displayName"], t["pageCount"]) for t in listed] == [("Lore", 1), ("Mission", 1)]

        status = call(tools, "vault_status")
        assert status["counts"] == {"pages": 1, "blocks": 0, "tags": 2}
        assert "note" in status["pageTypes"]
        assert status["metrics"]["total_operations"] >= 4

    def test_validation_errors_are_reported(self, tools):
        assert tools["vault_create_page"](title="   ").startswith("Error: Title is required")
        assert tools["vault_create_page"](title="x" * 501).startswith("Error:")
        page = call(tools, "vault_create_page", title="P")
        bad_json = tools["vault_create_block"](page_id=page["id"], block_type="paragraph", content="{nope")
        assert bad_json.startswith("Error: content must be valid JSON")
        wrong_shape = tools["vault_reorder_blocks"](page_id=page["id"], moves='{"id": "x"}')
        assert wrong_shape.startswith("Error: moves must be a JSON array")
        assert tools["vault_linkify"](term="", target_page_id=page["id"]).startswith("Error:")
        assert tools["vault_backlinks"](page_id="missing") == "Error: Page with ID 'missing' not found"


class TestMcpServerErrors:
    """Tests for error formatting with a mocked service."""

    def setup_method(self):
        self.capture = ToolCapture()
        self.mock_vault_service = MagicMock()
        self.mcp_patcher = patch(
            "pagevault_mcp.server.mcp_server.FastMCP", return_value=self.capture.mock_mcp
        )
        self.vault_patcher = patch(
            "pagevault_mcp.server.mcp_server.VaultService", return_value=self.mock_vault_service
        )
        self.mcp_patcher.start()
        self.vault_patcher.start()
        self.server = PageVaultMcpServer()

    def teardown_method(self):
        self.mcp_patcher.stop()
        self.vault_patcher.stop()

    def test_domain_error_shows_message(self):
        error = PageNotFoundError("abc")
        assert self.server.format_error_response(error) == f"Error: {error.message}"

    def test_unexpected_error_hides_details(self):
        self.mock_vault_service.get_stats.side_effect = RuntimeError("secret path /x/y")
        result = self.capture.registered_tools["vault_status"]()
        assert result.startswith("Error: An unexpected error occurred (ref: ")
        assert "secret" not in result

    def test_value_error_hides_details(self):
        result = self.server.format_error_response(ValueError("internal"))
        assert result.startswith("Error: Invalid input (ref: ")

    def test_search_limit_is_clamped(self):
        self.mock_vault_service.search.return_value = []
        self.capture.registered_tools["vault_search"](query="x", limit=10 ** 9)
        args, _ = self.mock_vault_service.search.call_args
        assert args[1] <= 1000
