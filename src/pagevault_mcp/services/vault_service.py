"""Service layer for Page Vault operations.

``VaultService`` is the single entry point used by the MCP server: it
validates caller input, delegates to the repositories and the link, backlink
and search services, and turns "absent" results into typed NotFound errors.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pagevault_mcp.exceptions import (
    BlockNotFoundError,
    ErrorCode,
    InvalidBlockTypeError,
    InvalidPageTypeError,
    PageNotFoundError,
    SlugNotFoundError,
    ValidationError,
)
from pagevault_mcp.models.db_models import get_session_factory, init_db
from pagevault_mcp.models.schema import (
    Backlink,
    Block,
    BlockMove,
    BlockPatch,
    BlockType,
    LinkScope,
    Page,
    PageType,
    PageWithBlocks,
    Tag,
    coerce_page_type,
)
from pagevault_mcp.services.backlink_service import BacklinkService
from pagevault_mcp.services.link_service import LinkService, LinkUpdateResult, TokenOccurrence
from pagevault_mcp.services.link_tokens import TokenContext
from pagevault_mcp.services.search_service import (
    DetailedSearchResult,
    SearchResult,
    SearchService,
)
from pagevault_mcp.storage.block_repository import BlockRepository
from pagevault_mcp.storage.page_repository import PageRepository
from pagevault_mcp.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)

# Block types are open-ended; unknown ones must still be simple identifiers
_BLOCK_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")


def _parse_page_type(value: Union[str, PageType, None]) -> PageType:
    try:
        return coerce_page_type(value)
    except ValueError:
        raise InvalidPageTypeError(value, allowed=[t.value for t in PageType])


def _parse_block_type(value: Optional[str]) -> str:
    block_type = str(value or "").strip().lower()
    if not _BLOCK_TYPE_PATTERN.match(block_type):
        raise InvalidBlockTypeError(value, allowed=[t.value for t in BlockType])
    return block_type


def _require_title(title: Optional[str]) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError(
            "Title is required", field="title", code=ErrorCode.PAGE_TITLE_REQUIRED
        )
    return cleaned


class VaultService:
    """Service for managing pages, blocks, links and tags."""

    def __init__(self, engine: Optional[Any] = None, session_factory=None):
        """Initialize the service.

        Args:
            engine: Pre-configured SQLAlchemy engine. When None (and no
                session factory is given) the configured database is opened.
            session_factory: Session factory to share with other components;
                takes precedence over ``engine``.
        """
        if session_factory is None:
            session_factory = get_session_factory(engine or init_db())
        self.session_factory = session_factory
        self.pages = PageRepository(session_factory)
        self.blocks = BlockRepository(session_factory)
        self.tags = TagRepository(session_factory)
        self.links = LinkService(self.pages, self.blocks)
        self.backlinks = BacklinkService(session_factory)
        self.searcher = SearchService(session_factory)

    # =========================================================================
    # Pages
    # =========================================================================

    def create_page(self, title: str, page_type: Union[str, PageType] = PageType.NOTE) -> Page:
        """Create a page; the slug is derived from the title."""
        return self.pages.create(_require_title(title), _parse_page_type(page_type))

    def get_page(self, page_id: str) -> PageWithBlocks:
        """Get a page with all of its blocks."""
        page = self.blocks.get_page_with_blocks(page_id)
        if page is None:
            raise PageNotFoundError(page_id)
        return page

    def get_page_by_slug(self, slug: str) -> PageWithBlocks:
        """Get a page with all of its blocks by slug."""
        page = self.pages.get_by_slug((slug or "").strip())
        if page is None:
            raise SlugNotFoundError(slug)
        return self.get_page(page.id)

    def update_page(
        self,
        page_id: str,
        title: Optional[str] = None,
        page_type: Union[str, PageType, None] = None,
        regenerate_slug: bool = False,
    ) -> PageWithBlocks:
        """Update title and/or type; the slug only changes on request."""
        new_title = _require_title(title) if title is not None else None
        new_type = _parse_page_type(page_type) if page_type is not None else None
        if self.pages.patch(page_id, new_title, new_type, regenerate_slug) is None:
            raise PageNotFoundError(page_id)
        return self.get_page(page_id)

    def delete_page(self, page_id: str) -> None:
        """Delete a page with its blocks and tag associations."""
        if not self.pages.delete(page_id):
            raise PageNotFoundError(page_id)

    def list_pages(self, limit: Optional[int] = None, offset: int = 0) -> List[Page]:
        return self.pages.list(limit=limit, offset=offset)

    def resolve_or_create_page(
        self, title: str, page_type: Union[str, PageType] = PageType.NOTE
    ) -> Tuple[Page, bool]:
        """Return the page titled ``title``, creating it if needed.

        Returns:
            ``(page, created)``.
        """
        return self.pages.resolve_or_create(_require_title(title), _parse_page_type(page_type))

    def backfill_slugs(self) -> int:
        return self.pages.backfill_slugs()

    # =========================================================================
    # Blocks
    # =========================================================================

    def create_block(
        self,
        page_id: str,
        block_type: str,
        parent_id: Optional[str] = None,
        sort: int = 0,
        props: Optional[Dict[str, Any]] = None,
        content: Optional[Dict[str, Any]] = None,
    ) -> Block:
        """Insert a block into a page's tree."""
        block = self.blocks.create(
            page_id,
            _parse_block_type(block_type),
            parent_id=parent_id or None,
            sort=sort,
            props=props,
            content=content,
        )
        if block is None:
            raise PageNotFoundError(page_id)
        return block

    def update_block(self, block_id: str, patch: Union[BlockPatch, Mapping[str, Any]]) -> Block:
        """Apply a partial update; only fields present in ``patch`` change."""
        if not isinstance(patch, BlockPatch):
            try:
                patch = BlockPatch.model_validate(dict(patch))
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid block patch: {e}", field="patch") from e
        if "parent_id" in patch.model_fields_set and not (patch.parent_id or "").strip():
            patch.parent_id = None
        if "type" in patch.model_fields_set and patch.type is not None:
            patch.type = _parse_block_type(patch.type)
        block = self.blocks.patch(block_id, patch)
        if block is None:
            raise BlockNotFoundError(block_id)
        return block

    def delete_block(self, block_id: str) -> bool:
        """Delete a block and its subtree."""
        if not self.blocks.delete(block_id):
            raise BlockNotFoundError(block_id)
        return True

    def reorder_blocks(
        self, page_id: str, moves: Sequence[Union[BlockMove, Mapping[str, Any]]]
    ) -> Dict[str, bool]:
        """Apply moves within a page; invalid entries are skipped.

        Returns:
            ``{"ok": True}`` once the batch has been applied.
        """
        if not self.pages.exists(page_id):
            raise PageNotFoundError(page_id)
        parsed: List[BlockMove] = []
        for move in moves or []:
            if isinstance(move, BlockMove):
                parsed.append(move)
                continue
            try:
                parsed.append(BlockMove.model_validate(dict(move)))
            except (TypeError, ValueError) as e:
                logger.warning(f"Reorder on page {page_id}: ignoring malformed move {move!r}: {e}")
        self.blocks.reorder(page_id, parsed)
        return {"ok": True}

    # =========================================================================
    # Links
    # =========================================================================

    def resolve_links(
        self,
        label: str,
        target_page_id: str,
        scope: Union[str, LinkScope] = LinkScope.PAGE,
        page_id: Optional[str] = None,
        page_ids: Optional[Sequence[str]] = None,
    ) -> LinkUpdateResult:
        return self.links.resolve(label, target_page_id, scope, page_id, page_ids)

    def linkify(
        self,
        term: str,
        target_page_id: str,
        scope: Union[str, LinkScope] = LinkScope.PAGE,
        page_id: Optional[str] = None,
        page_ids: Optional[Sequence[str]] = None,
        case_sensitive: bool = False,
    ) -> LinkUpdateResult:
        return self.links.linkify(
            term, target_page_id, scope, page_id, page_ids, case_sensitive=case_sensitive
        )

    def repair_links(
        self,
        scope: Union[str, LinkScope] = LinkScope.ALL,
        page_id: Optional[str] = None,
        page_ids: Optional[Sequence[str]] = None,
    ) -> LinkUpdateResult:
        return self.links.repair_nested_tokens(scope, page_id, page_ids)

    def link_occurrences(self, label: str, limit: Optional[int] = None) -> List[TokenOccurrence]:
        return self.links.occurrences(label, limit)

    def resolve_token(
        self,
        label: str = "",
        target_title: Optional[str] = None,
        legacy_key: Optional[str] = None,
        legacy_map: Optional[Dict[str, str]] = None,
    ) -> str:
        """Turn one imported link into token text (see ``TokenResolver``)."""
        return self.links.resolve_token(
            TokenContext(label=label, target_title=target_title, legacy_key=legacy_key),
            legacy_map=legacy_map,
        )

    # =========================================================================
    # Backlinks and search
    # =========================================================================

    def get_backlinks(self, page_id: str) -> Tuple[Page, List[Backlink]]:
        """The page and the pages linking to it."""
        page = self.pages.get(page_id)
        backlinks = self.backlinks.get_backlinks(page_id) if page else None
        if page is None or backlinks is None:
            raise PageNotFoundError(page_id)
        return page, backlinks

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        return self.searcher.search(query, limit)

    def search_detailed(
        self,
        query: str,
        limit: Optional[int] = None,
        per_page_match_limit: Optional[int] = None,
    ) -> List[DetailedSearchResult]:
        return self.searcher.search_with_matches(query, limit, per_page_match_limit)

    # =========================================================================
    # Tags
    # =========================================================================

    def list_tags(self) -> List[Tuple[Tag, int]]:
        return self.tags.list_with_counts()

    def get_page_tags(self, page_id: str) -> List[Tag]:
        tags = self.tags.get_page_tags(page_id)
        if tags is None:
            raise PageNotFoundError(page_id)
        return tags

    def set_page_tags(self, page_id: str, tag_names: Sequence[str]) -> List[Tag]:
        """Replace the page's tag set."""
        if isinstance(tag_names, str):
            raise ValidationError("tags must be a list of names", field="tags", value=tag_names)
        tags = self.tags.set_page_tags(page_id, list(tag_names))
        if tags is None:
            raise PageNotFoundError(page_id)
        return tags

    def rename_tag(self, old_name: str, new_name: str) -> int:
        return self.tags.rename(old_name, new_name)

    def merge_tags(self, source_name: str, target_name: str) -> int:
        return self.tags.merge(source_name, target_name)

    # =========================================================================
    # Status
    # =========================================================================

    def get_stats(self) -> Dict[str, int]:
        """Row counts of the store."""
        return {
            "pages": self.pages.count(),
            "blocks": self.blocks.count(),
            "tags": self.tags.count(),
        }
