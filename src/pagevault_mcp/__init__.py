"""
Page Vault MCP - a personal knowledge base of hierarchical, richly-linked pages.

Pages are made of ordered blocks arranged in a tree. Blocks reference other pages
through inline ``[[...]]`` link tokens, from which backlinks are derived on demand.
This package exposes the store, the link engine, backlinks and search as an MCP server.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pagevault-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
