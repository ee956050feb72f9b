"""Storage layer for the Page Vault MCP server."""

from pagevault_mcp.storage.block_repository import BlockRepository
from pagevault_mcp.storage.page_repository import PageRepository
from pagevault_mcp.storage.tag_repository import TagRepository

__all__ = [
    "PageRepository",
    "BlockRepository",
    "TagRepository",
]
