"""Service for searching pages by substring over titles and block text."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from pagevault_mcp.config import config
from pagevault_mcp.exceptions import SearchError
from pagevault_mcp.models.db_models import DBBlock, DBPage
from pagevault_mcp.models.schema import Block, BlockType, Page, payload_text
from pagevault_mcp.storage.block_repository import TREE_ORDER, db_block_to_model
from pagevault_mcp.storage.page_repository import db_page_to_model
from pagevault_mcp.utils import collapse_whitespace, json_fragment, like_contains

logger = logging.getLogger(__name__)

ELLIPSIS = "…"

# Block types whose text is scanned by the detailed search
MATCHABLE_BLOCK_TYPES = (
    BlockType.PARAGRAPH.value,
    BlockType.HEADING.value,
    BlockType.SECTION.value,
)


@dataclass
class SearchResult:
    """A matching page with one display snippet."""

    page: Page
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.page.id,
            "title": self.page.title,
            "type": self.page.type.value,
            "slug": self.page.slug,
            "updatedAt": self.page.updated_at.isoformat(),
            "snippet": self.snippet,
        }


@dataclass
class SearchMatch:
    """One match location inside a page.

    ``block_id`` is None for a title match. ``section_path`` lists the
    titles of enclosing sections, outermost first.
    """

    field: str
    excerpt: str
    block_id: Optional[str] = None
    block_type: Optional[str] = None
    section_path: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "blockId": self.block_id,
            "blockType": self.block_type,
            "excerpt": self.excerpt,
            "sectionPath": list(self.section_path),
        }


@dataclass
class DetailedSearchResult(SearchResult):
    """A matching page with its individual match locations.

    ``match_count`` is the total number of occurrences on the page, which
    may exceed ``len(matches)``.
    """

    match_count: int = 0
    matches: List[SearchMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["matchCount"] = self.match_count
        data["matches"] = [m.to_dict() for m in self.matches]
        return data


def make_snippet(text: Optional[str], length: Optional[int] = None) -> str:
    """Whitespace-collapsed text; longer text is cut to ``length`` characters plus an ellipsis."""
    length = length or config.snippet_length
    text = collapse_whitespace(text or "")
    if len(text) > length:
        text = text[:length] + ELLIPSIS
    return text


def make_excerpt(
    text: str,
    index: int,
    term_length: int,
    before: Optional[int] = None,
    after: Optional[int] = None,
) -> str:
    """Context window ``[index - before, index + term_length + after]`` around a match.

    The window is clamped to the text; an ellipsis marks each truncated end.
    """
    before = config.excerpt_before if before is None else before
    after = config.excerpt_after if after is None else after
    start = max(0, index - before)
    end = min(len(text), index + term_length + after)
    excerpt = collapse_whitespace(text[start:end])
    if start > 0:
        excerpt = ELLIPSIS + excerpt
    if end < len(text):
        excerpt = excerpt + ELLIPSIS
    return excerpt


def section_path(
    block: Block, by_id: Dict[str, Block], max_depth: Optional[int] = None
) -> List[str]:
    """Titles of the ancestor sections of ``block``, outermost first.

    The walk stops at ``max_depth`` ancestors or on the first repeated ID,
    so a corrupted (cyclic) parent chain still terminates.
    """
    max_depth = max_depth or config.section_path_max_depth
    titles: List[str] = []
    seen = {block.id}
    current = block.parent_id
    depth = 0
    while current and current not in seen and depth < max_depth:
        seen.add(current)
        parent = by_id.get(current)
        if parent is None:
            break
        if parent.type == BlockType.SECTION.value:
            titles.append(payload_text(parent.payload))
        current = parent.parent_id
        depth += 1
    titles.reverse()
    return titles


def document_order(blocks: Sequence[Block]) -> List[Block]:
    """Depth-first pre-order over the block tree.

    ``blocks`` must already be in tree order (siblings by sort). Blocks
    unreachable from the top level (dangling or cyclic parents) follow at
    the end in their given order.
    """
    children: Dict[Optional[str], List[Block]] = {}
    for block in blocks:
        children.setdefault(block.parent_id, []).append(block)

    ordered: List[Block] = []
    seen = set()
    stack = list(reversed(children.get(None, [])))
    while stack:
        block = stack.pop()
        if block.id in seen:
            continue
        seen.add(block.id)
        ordered.append(block)
        stack.extend(reversed(children.get(block.id, [])))
    ordered.extend(b for b in blocks if b.id not in seen)
    return ordered


def _finditer(pattern: "re.Pattern[str]", text: str) -> Iterable["re.Match[str]"]:
    return pattern.finditer(text) if text else ()


class SearchService:
    """Substring search over page titles and block text.

    A LIKE scan over titles and serialized block JSON selects candidate
    pages; matches are then confirmed against the decoded text, so JSON
    keys and escapes never produce false hits.
    """

    def __init__(self, session_factory):
        """Initialize the search service.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def clamp_limit(limit: Optional[int]) -> int:
        """Clamp a requested limit to ``[1, search_max_limit]``."""
        if not limit:
            limit = config.search_limit
        return max(1, min(int(limit), config.search_max_limit))

    def _candidates(self, session, query: str, block_types: Sequence[str]) -> List[Page]:
        title_pattern = like_contains(query)
        block_pattern = like_contains(json_fragment(query))
        matching_blocks = select(DBBlock.page_id).where(
            DBBlock.type.in_(list(block_types)),
            DBBlock.content_json.like(block_pattern, escape="\\"),
        )
        rows = session.scalars(
            select(DBPage)
            .where(
                or_(
                    DBPage.title.like(title_pattern, escape="\\"),
                    DBPage.id.in_(matching_blocks),
                )
            )
            .order_by(DBPage.updated_at.desc(), DBPage.created_at.desc())
        ).all()
        return [db_page_to_model(r) for r in rows]

    @staticmethod
    def _blocks(
        session, page_id: str, block_types: Optional[Sequence[str]] = None
    ) -> List[Block]:
        query = select(DBBlock).where(DBBlock.page_id == page_id)
        if block_types is not None:
            query = query.where(DBBlock.type.in_(list(block_types)))
        rows = session.scalars(query.order_by(*TREE_ORDER)).all()
        return [db_block_to_model(r) for r in rows]

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Pages whose title or a paragraph contains ``query`` (case-insensitive).

        Each page gets one snippet: the first matching paragraph, else the
        page's first paragraph. Most recently updated pages come first.
        """
        q = (query or "").strip()
        if not q:
            return []
        limit = self.clamp_limit(limit)
        pattern = re.compile(re.escape(q), re.IGNORECASE)
        paragraph = (BlockType.PARAGRAPH.value,)

        results: List[SearchResult] = []
        try:
            with self.session_factory() as session:
                for page in self._candidates(session, q, paragraph):
                    texts = [
                        payload_text(b.payload)
                        for b in document_order(self._blocks(session, page.id))
                        if b.type == BlockType.PARAGRAPH.value
                    ]
                    matched = next((t for t in texts if pattern.search(t)), None)
                    if matched is None and not pattern.search(page.title):
                        continue
                    source = matched if matched is not None else (texts[0] if texts else "")
                    results.append(SearchResult(page=page, snippet=make_snippet(source)))
                    if len(results) >= limit:
                        break
        except SQLAlchemyError as e:
            logger.error(f"Search for '{q}' failed: {e}")
            raise SearchError(f"Search failed: {e}", query=q) from e

        logger.debug(f"Search '{q}' returned {len(results)} result(s)")
        return results

    def search_with_matches(
        self,
        query: str,
        limit: Optional[int] = None,
        per_page_match_limit: Optional[int] = None,
    ) -> List[DetailedSearchResult]:
        """Like ``search``, listing individual match locations per page.

        Matches are the title first, then paragraph, heading and section
        title text in document order, each with its section path and an
        excerpt. At most ``per_page_match_limit`` are listed per page.
        """
        q = (query or "").strip()
        if not q:
            return []
        limit = self.clamp_limit(limit)
        per_page = max(1, per_page_match_limit or config.per_page_match_limit)
        pattern = re.compile(re.escape(q), re.IGNORECASE)

        results: List[DetailedSearchResult] = []
        try:
            with self.session_factory() as session:
                for page in self._candidates(session, q, MATCHABLE_BLOCK_TYPES):
                    blocks = self._blocks(session, page.id)
                    result = self._page_matches(page, blocks, pattern, len(q), per_page)
                    if result is None:
                        continue
                    results.append(result)
                    if len(results) >= limit:
                        break
        except SQLAlchemyError as e:
            logger.error(f"Detailed search for '{q}' failed: {e}")
            raise SearchError(f"Search failed: {e}", query=q) from e

        logger.debug(f"Detailed search '{q}' returned {len(results)} result(s)")
        return results

    def _page_matches(
        self,
        page: Page,
        blocks: List[Block],
        pattern: "re.Pattern[str]",
        term_length: int,
        per_page: int,
    ) -> Optional[DetailedSearchResult]:
        matches: List[SearchMatch] = []
        total = 0

        for match in _finditer(pattern, page.title):
            total += 1
            if len(matches) < per_page:
                matches.append(SearchMatch(
                    field="title",
                    excerpt=make_excerpt(page.title, match.start(), term_length),
                ))

        by_id = {b.id: b for b in blocks}
        first_paragraph = None
        matched_paragraph = None
        for block in document_order(blocks):
            if block.type not in MATCHABLE_BLOCK_TYPES:
                continue
            text = payload_text(block.payload)
            if block.type == BlockType.PARAGRAPH.value and first_paragraph is None:
                first_paragraph = text
            found = list(_finditer(pattern, text))
            if not found:
                continue
            if block.type == BlockType.PARAGRAPH.value and matched_paragraph is None:
                matched_paragraph = text
            total += len(found)
            path = None
            for match in found:
                if len(matches) >= per_page:
                    break
                if path is None:
                    path = section_path(block, by_id)
                matches.append(SearchMatch(
                    field="block",
                    block_id=block.id,
                    block_type=block.type,
                    excerpt=make_excerpt(text, match.start(), term_length),
                    section_path=path,
                ))

        if not total:
            return None
        source = matched_paragraph if matched_paragraph is not None else (first_paragraph or "")
        return DetailedSearchResult(
            page=page,
            snippet=make_snippet(source),
            match_count=total,
            matches=matches,
        )
