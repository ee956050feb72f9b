"""MCP server implementation for the Page Vault."""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from pagevault_mcp.config import config
from pagevault_mcp.exceptions import PageVaultError, SlugNotFoundError, ValidationError
from pagevault_mcp.models.schema import Block, LinkScope, Page, PageType
from pagevault_mcp.observability import metrics, timed_operation
from pagevault_mcp.services.search_service import SearchService
from pagevault_mcp.services.vault_service import VaultService

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_JSON_ARGUMENT_LENGTH = 1_000_000  # 1 MB


def _validate_title_length(title: Optional[str]) -> None:
    """Validate title length at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters", field="title"
        )


def _parse_json_argument(raw: Optional[str], name: str, expected: type) -> Any:
    """Decode a JSON-encoded tool argument, checking its top-level shape.

    Returns None when ``raw`` is None or blank.
    """
    if raw is None or not str(raw).strip():
        return None
    if len(raw) > MAX_JSON_ARGUMENT_LENGTH:
        raise ValidationError(f"{name} is too large", field=name)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{name} must be valid JSON: {e.msg}", field=name) from e
    if not isinstance(value, expected):
        raise ValidationError(
            f"{name} must be a JSON {'object' if expected is dict else 'array'}", field=name
        )
    return value


def _split_ids(raw: Optional[str]) -> Optional[List[str]]:
    """Comma-separated IDs to a list; None stays None."""
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


def _page_dict(page: Page) -> Dict[str, Any]:
    return page.model_dump(mode="json", by_alias=True)


def _block_dict(block: Block) -> Dict[str, Any]:
    return block.model_dump(mode="json", by_alias=True)


def _to_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)


class PageVaultMcpServer:
    """MCP server for the Page Vault."""

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by every
                    repository. When None, the configured database is opened.
        """
        self.mcp = FastMCP(config.server_name)
        self.vault_service = VaultService(engine=engine)
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        logger.info("Page Vault MCP server initialized")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, PageVaultError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        # =====================================================================
        # Pages
        # =====================================================================

        @self.mcp.tool(name="vault_create_page")
        def vault_create_page(title: str, page_type: str = "note") -> str:
            """Create a new page.
            Args:
                title: The title of the page (the slug is derived from it)
                page_type: Kind of page (note, npc, character, location, arc, tool)
            """
            with timed_operation("vault_create_page", title=title[:30]) as op:
                try:
                    _validate_title_length(title)
                    page = self.vault_service.create_page(title, page_type)
                    op["page_id"] = page.id
                    return _to_json(_page_dict(page))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_get_page")
        def vault_get_page(identifier: str) -> str:
            """Retrieve a page with its blocks by ID or slug.
            Args:
                identifier: The page ID, or its slug
            """
            with timed_operation("vault_get_page", identifier=identifier[:30]) as op:
                try:
                    identifier = str(identifier).strip()
                    if self.vault_service.pages.exists(identifier):
                        page = self.vault_service.get_page(identifier)
                    else:
                        try:
                            page = self.vault_service.get_page_by_slug(identifier)
                        except SlugNotFoundError:
                            op["found"] = False
                            return f"Page not found: {identifier}"
                    op["found"] = True
                    op["block_count"] = len(page.blocks)
                    return _to_json(_page_dict(page))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_update_page")
        def vault_update_page(
            page_id: str,
            title: Optional[str] = None,
            page_type: Optional[str] = None,
            regenerate_slug: bool = False,
        ) -> str:
            """Update a page's title and/or type.
            Args:
                page_id: The ID of the page to update
                title: New title (optional; the slug is kept unless regenerate_slug is set)
                page_type: New page type (optional)
                regenerate_slug: Derive a fresh slug from the (new) title
            """
            with timed_operation("vault_update_page", page_id=page_id):
                try:
                    _validate_title_length(title)
                    page = self.vault_service.update_page(
                        page_id, title=title, page_type=page_type, regenerate_slug=regenerate_slug
                    )
                    return _to_json(_page_dict(page))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_delete_page")
        def vault_delete_page(page_id: str) -> str:
            """Delete a page together with all of its blocks.
            Args:
                page_id: The ID of the page to delete
            """
            with timed_operation("vault_delete_page", page_id=page_id):
                try:
                    self.vault_service.delete_page(page_id)
                    return _to_json({"ok": True, "id": page_id})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_list_pages")
        def vault_list_pages(limit: int = 50, offset: int = 0) -> str:
            """List pages, most recently updated first.
            Args:
                limit: Maximum number of pages to return (default: 50)
                offset: Number of pages to skip
            """
            with timed_operation("vault_list_pages", limit=limit) as op:
                try:
                    pages = self.vault_service.list_pages(
                        limit=SearchService.clamp_limit(limit), offset=max(0, offset)
                    )
                    op["result_count"] = len(pages)
                    return _to_json([_page_dict(p) for p in pages])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_resolve_page")
        def vault_resolve_page(title: str, page_type: str = "note") -> str:
            """Find a page by exact title, creating it if it does not exist.
            Args:
                title: Exact page title
                page_type: Type for a newly created page
            """
            with timed_operation("vault_resolve_page", title=title[:30]) as op:
                try:
                    _validate_title_length(title)
                    page, created = self.vault_service.resolve_or_create_page(title, page_type)
                    op["created"] = created
                    return _to_json({"page": _page_dict(page), "created": created})
                except Exception as e:
                    return self.format_error_response(e)

        # =====================================================================
        # Blocks
        # =====================================================================

        @self.mcp.tool(name="vault_create_block")
        def vault_create_block(
            page_id: str,
            block_type: str,
            parent_id: Optional[str] = None,
            sort: int = 0,
            props: Optional[str] = None,
            content: Optional[str] = None,
        ) -> str:
            """Add a block to a page's tree.
            Args:
                page_id: The page the block belongs to
                block_type: Block type (section, paragraph, heading, divider, table, ...)
                parent_id: Parent block on the same page (omit for top level)
                sort: Position among its siblings (clamped to the end of the group)
                props: JSON object with type metadata, e.g. {"level": 2}
                content: JSON object with the payload, e.g. {"text": "See [[Dragon]]"}
            """
            with timed_operation("vault_create_block", page_id=page_id, type=block_type) as op:
                try:
                    block = self.vault_service.create_block(
                        page_id,
                        block_type,
                        parent_id=parent_id,
                        sort=sort,
                        props=_parse_json_argument(props, "props", dict),
                        content=_parse_json_argument(content, "content", dict),
                    )
                    op["block_id"] = block.id
                    return _to_json(_block_dict(block))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_update_block")
        def vault_update_block(block_id: str, patch: str) -> str:
            """Partially update a block.
            Args:
                block_id: The ID of the block
                patch: JSON object with any of parentId, sort, type, props, content.
                    Only keys present are applied; "parentId": null moves the
                    block to the top level.
            """
            with timed_operation("vault_update_block", block_id=block_id):
                try:
                    fields = _parse_json_argument(patch, "patch", dict)
                    if fields is None:
                        raise ValidationError("patch is required", field="patch")
                    block = self.vault_service.update_block(block_id, fields)
                    return _to_json(_block_dict(block))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_delete_block")
        def vault_delete_block(block_id: str) -> str:
            """Delete a block and every block nested below it.
            Args:
                block_id: The ID of the block
            """
            with timed_operation("vault_delete_block", block_id=block_id):
                try:
                    self.vault_service.delete_block(block_id)
                    return _to_json({"ok": True, "id": block_id})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_reorder_blocks")
        def vault_reorder_blocks(page_id: str, moves: str) -> str:
            """Move blocks within a page in one batch.
            Args:
                page_id: The page whose blocks move
                moves: JSON array of {"id", "parentId", "sort"} objects. Entries
                    naming blocks of other pages, unknown blocks or invalid
                    parents are skipped.
            """
            with timed_operation("vault_reorder_blocks", page_id=page_id) as op:
                try:
                    entries = _parse_json_argument(moves, "moves", list) or []
                    op["move_count"] = len(entries)
                    return _to_json(self.vault_service.reorder_blocks(page_id, entries))
                except Exception as e:
                    return self.format_error_response(e)

        # =====================================================================
        # Links
        # =====================================================================

        @self.mcp.tool(name="vault_resolve_links")
        def vault_resolve_links(
            label: str,
            target_page_id: str,
            scope: str = "page",
            page_id: Optional[str] = None,
            page_ids: Optional[str] = None,
        ) -> str:
            """Turn bare [[label]] tokens into links to a page.
            Args:
                label: The token label to resolve (exact, without brackets)
                target_page_id: The page the tokens should point to
                scope: "page" (needs page_id), "pages" (needs page_ids) or "all"
                page_id: Page to process for scope=page
                page_ids: Comma-separated page IDs for scope=pages
            """
            with timed_operation("vault_resolve_links", label=label[:30], scope=scope) as op:
                try:
                    result = self.vault_service.resolve_links(
                        label, target_page_id, scope, page_id, _split_ids(page_ids)
                    )
                    op["updated_blocks"] = result.updated_blocks
                    return _to_json(result.to_dict())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_linkify")
        def vault_linkify(
            term: str,
            target_page_id: str,
            scope: str = "page",
            page_id: Optional[str] = None,
            page_ids: Optional[str] = None,
            case_sensitive: bool = False,
        ) -> str:
            """Link plain-text mentions of a term to a page.

            Text inside existing [[...]] tokens and `code spans` is left alone.
            Args:
                term: The text to link (whole words when it is a single word)
                target_page_id: The page the new links point to
                scope: "page" (needs page_id), "pages" (needs page_ids) or "all"
                page_id: Page to process for scope=page
                page_ids: Comma-separated page IDs for scope=pages
                case_sensitive: Match the term's exact casing
            """
            with timed_operation("vault_linkify", term=term[:30], scope=scope) as op:
                try:
                    result = self.vault_service.linkify(
                        term,
                        target_page_id,
                        scope,
                        page_id,
                        _split_ids(page_ids),
                        case_sensitive=case_sensitive,
                    )
                    op["linked"] = result.linked_occurrences
                    return _to_json(result.to_dict())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_repair_links")
        def vault_repair_links(
            scope: str = "all",
            page_id: Optional[str] = None,
            page_ids: Optional[str] = None,
        ) -> str:
            """Collapse doubly-wrapped link tokens left by repeated resolution.
            Args:
                scope: "page", "pages" or "all" (default)
                page_id: Page to process for scope=page
                page_ids: Comma-separated page IDs for scope=pages
            """
            with timed_operation("vault_repair_links", scope=scope) as op:
                try:
                    result = self.vault_service.repair_links(scope, page_id, _split_ids(page_ids))
                    op["updated_blocks"] = result.updated_blocks
                    return _to_json(result.to_dict())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_link_occurrences")
        def vault_link_occurrences(label: str, limit: int = 100) -> str:
            """List pages containing the unresolved token [[label]].
            Args:
                label: The token label (exact, without brackets)
                limit: Maximum number of pages (1-500)
            """
            with timed_operation("vault_link_occurrences", label=label[:30]) as op:
                try:
                    found = self.vault_service.link_occurrences(label, limit)
                    op["result_count"] = len(found)
                    return _to_json([o.to_dict() for o in found])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_backlinks")
        def vault_backlinks(page_id: str) -> str:
            """List the pages linking to a page, most references first.
            Args:
                page_id: The referenced page
            """
            with timed_operation("vault_backlinks", page_id=page_id) as op:
                try:
                    page, backlinks = self.vault_service.get_backlinks(page_id)
                    op["result_count"] = len(backlinks)
                    return _to_json({
                        "pageId": page.id,
                        "title": page.title,
                        "backlinks": [b.model_dump(mode="json", by_alias=True) for b in backlinks],
                    })
                except Exception as e:
                    return self.format_error_response(e)

        # =====================================================================
        # Search
        # =====================================================================

        @self.mcp.tool(name="vault_search")
        def vault_search(
            query: str,
            limit: int = 30,
            detail: bool = False,
            per_page_match_limit: Optional[int] = None,
        ) -> str:
            """Search page titles and block text (case-insensitive substring).
            Args:
                query: Text to look for
                limit: Maximum number of pages (clamped to the configured maximum)
                detail: Also list match locations with excerpts and section paths
                per_page_match_limit: Maximum matches listed per page when detail is set
            """
            with timed_operation("vault_search", query=query[:30], detail=detail) as op:
                try:
                    limit = SearchService.clamp_limit(limit)
                    if detail:
                        results = self.vault_service.search_detailed(
                            query, limit, per_page_match_limit
                        )
                        op["result_count"] = len(results)
                        return _to_json([r.to_dict() for r in results])
                    results = self.vault_service.search(query, limit)
                    op["result_count"] = len(results)
                    return _to_json({"q": query, "results": [r.to_dict() for r in results]})
                except Exception as e:
                    return self.format_error_response(e)

        # =====================================================================
        # Tags
        # =====================================================================

        @self.mcp.tool(name="vault_set_tags")
        def vault_set_tags(page_id: str, tags: str) -> str:
            """Replace the tags of a page.
            Args:
                page_id: The page to tag
                tags: Comma-separated tag names (empty string clears all tags)
            """
            with timed_operation("vault_set_tags", page_id=page_id):
                try:
                    tag_list = _split_ids(tags) or []
                    result = self.vault_service.set_page_tags(page_id, tag_list)
                    return _to_json([t.model_dump(by_alias=True) for t in result])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_list_tags")
        def vault_list_tags() -> str:
            """List all tags with the number of pages carrying each."""
            with timed_operation("vault_list_tags") as op:
                try:
                    tags = self.vault_service.list_tags()
                    op["result_count"] = len(tags)
                    return _to_json([
                        {**tag.model_dump(by_alias=True), "pageCount": count}
                        for tag, count in tags
                    ])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="vault_rename_tag")
        def vault_rename_tag(old_name: str, new_name: str) -> str:
            """Rename a tag; an existing target tag absorbs the old one.
            Args:
                old_name: The tag to rename
                new_name: Its new name
            """
            with timed_operation("vault_rename_tag", old=old_name, new=new_name):
                try:
                    affected = self.vault_service.rename_tag(old_name, new_name)
                    return _to_json({"ok": True, "affectedPages": affected})
                except Exception as e:
                    return self.format_error_response(e)

        # =====================================================================
        # Status
        # =====================================================================

        @self.mcp.tool(name="vault_status")
        def vault_status() -> str:
            """Show store counts, allowed page types and operation metrics."""
            with timed_operation("vault_status"):
                try:
                    return _to_json({
                        "server": {"name": config.server_name, "version": config.server_version},
                        "counts": self.vault_service.get_stats(),
                        "pageTypes": [t.value for t in PageType],
                        "linkScopes": [s.value for s in LinkScope],
                        "metrics": metrics.get_summary(),
                    })
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
