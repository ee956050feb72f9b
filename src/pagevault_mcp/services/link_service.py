"""Service applying link-token rewrites to stored pages."""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pagevault_mcp.config import config
from pagevault_mcp.exceptions import ErrorCode, PageNotFoundError, ValidationError
from pagevault_mcp.models.schema import BlockType, LinkScope
from pagevault_mcp.services.link_tokens import (
    TokenContext,
    TokenResolver,
    format_unresolved,
    linkify_text,
    normalize_nested_tokens,
    resolve_literal,
)
from pagevault_mcp.storage.block_repository import BlockRepository
from pagevault_mcp.storage.page_repository import PageRepository
from pagevault_mcp.utils import count_occurrences, json_fragment

logger = logging.getLogger(__name__)

# Block types whose text linkify rewrites
LINKIFY_BLOCK_TYPES = (BlockType.PARAGRAPH.value, BlockType.HEADING.value)

# Pages needing repair contain at least one resolved token
NESTED_MARKER = "[[page:"


@dataclass
class LinkUpdateResult:
    """Summary of a bulk link rewrite."""

    updated_pages: int = 0
    updated_blocks: int = 0
    linked_occurrences: Optional[int] = None  # only reported by linkify

    def to_dict(self) -> Dict[str, int]:
        data = {"updatedPages": self.updated_pages, "updatedBlocks": self.updated_blocks}
        if self.linked_occurrences is not None:
            data["linkedOccurrences"] = self.linked_occurrences
        return data


@dataclass
class TokenOccurrence:
    """Pages containing an exact unresolved token, with per-page counts."""

    page_id: str
    title: str
    slug: str
    type: str
    matches: int = 0
    block_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageId": self.page_id,
            "title": self.title,
            "slug": self.slug,
            "type": self.type,
            "matches": self.matches,
            "blockIds": list(self.block_ids),
        }


def _require(value: Optional[str], name: str, code: ErrorCode) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{name} is required", field=name, code=code)
    return cleaned


class LinkService:
    """Resolve, linkify and repair link tokens across pages.

    Bulk rewrites work page by page: each page's blocks change in one
    transaction and the page is touched once if anything changed.
    """

    def __init__(self, page_repository: PageRepository, block_repository: BlockRepository):
        self.page_repository = page_repository
        self.block_repository = block_repository

    # ------------------------------------------------------------------
    # Scope handling
    # ------------------------------------------------------------------

    def _pages_in_scope(
        self,
        scope: Union[LinkScope, str],
        page_id: Optional[str],
        page_ids: Optional[Sequence[str]],
        candidate_needles: Sequence[str],
    ) -> List[str]:
        """Decide which pages a bulk operation processes.

        ``page`` needs an existing ``page_id``. ``pages`` uses the given IDs
        (unknown ones are skipped) and falls back to ``all`` when the list is
        empty. ``all`` selects every page containing a candidate needle.
        """
        try:
            scope = LinkScope(scope)
        except ValueError:
            raise ValidationError(
                f"Invalid scope: {scope} (allowed: {', '.join(s.value for s in LinkScope)})",
                field="scope",
                value=scope,
                code=ErrorCode.LINK_INVALID_SCOPE,
            )

        if scope is LinkScope.PAGE:
            if not page_id or not page_id.strip():
                raise ValidationError(
                    "pageId is required for scope=page",
                    field="pageId",
                    code=ErrorCode.LINK_INVALID_SCOPE,
                )
            if not self.page_repository.exists(page_id.strip()):
                raise PageNotFoundError(page_id.strip())
            return [page_id.strip()]

        if scope is LinkScope.PAGES and page_ids:
            unique: List[str] = []
            for pid in page_ids:
                pid = str(pid).strip()
                if pid and pid not in unique:
                    unique.append(pid)
            existing = self.page_repository.existing_ids(unique)
            if len(existing) != len(unique):
                logger.warning(f"Skipping {len(unique) - len(existing)} unknown page id(s)")
            return existing

        return self.block_repository.find_page_ids_containing(candidate_needles)

    def _rewrite(
        self,
        page_ids: List[str],
        transform: Callable[[str], str],
        block_types: Optional[Sequence[str]] = None,
        include_props: bool = True,
    ) -> LinkUpdateResult:
        result = LinkUpdateResult()
        for pid in page_ids:
            changed = self.block_repository.rewrite_page_strings(
                pid, transform, block_types=block_types, include_props=include_props
            )
            if changed:
                result.updated_pages += 1
                result.updated_blocks += changed
        return result

    def _require_target(self, target_page_id: Optional[str]) -> str:
        target = _require(target_page_id, "targetPageId", ErrorCode.LINK_TARGET_REQUIRED)
        if not self.page_repository.exists(target):
            raise PageNotFoundError(target)
        return target

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def resolve(
        self,
        label: str,
        target_page_id: str,
        scope: Union[LinkScope, str] = LinkScope.PAGE,
        page_id: Optional[str] = None,
        page_ids: Optional[Sequence[str]] = None,
    ) -> LinkUpdateResult:
        """Upgrade bare ``[[label]]`` tokens to ``[[page:<target>|label]]``."""
        label = _require(label, "label", ErrorCode.LINK_LABEL_REQUIRED)
        target = self._require_target(target_page_id)
        pages = self._pages_in_scope(scope, page_id, page_ids, [format_unresolved(label)])

        def transform(text: str) -> str:
            out = resolve_literal(text, label, target)
            return normalize_nested_tokens(out) if out != text else text

        result = self._rewrite(pages, transform)
        logger.info(
            f"Resolved [[{label}]] -> {target}: {result.updated_blocks} block(s) "
            f"on {result.updated_pages} page(s)"
        )
        return result

    def linkify(
        self,
        term: str,
        target_page_id: str,
        scope: Union[LinkScope, str] = LinkScope.PAGE,
        page_id: Optional[str] = None,
        page_ids: Optional[Sequence[str]] = None,
        case_sensitive: bool = False,
    ) -> LinkUpdateResult:
        """Link plain-text occurrences of ``term`` in paragraph and heading text."""
        term = _require(term, "term", ErrorCode.LINK_TERM_REQUIRED)
        target = self._require_target(target_page_id)
        pages = self._pages_in_scope(scope, page_id, page_ids, [term])
        linked = 0

        def transform(text: str) -> str:
            nonlocal linked
            out, count = linkify_text(text, term, target, case_sensitive=case_sensitive)
            if not count:
                return text
            linked += count
            return normalize_nested_tokens(out)

        result = self._rewrite(
            pages, transform, block_types=LINKIFY_BLOCK_TYPES, include_props=False
        )
        result.linked_occurrences = linked
        logger.info(
            f"Linkified '{term}' -> {target}: {linked} occurrence(s) in "
            f"{result.updated_blocks} block(s) on {result.updated_pages} page(s)"
        )
        return result

    def repair_nested_tokens(
        self,
        scope: Union[LinkScope, str] = LinkScope.ALL,
        page_id: Optional[str] = None,
        page_ids: Optional[Sequence[str]] = None,
    ) -> LinkUpdateResult:
        """Collapse doubly-wrapped tokens in every string field in scope."""
        pages = self._pages_in_scope(scope, page_id, page_ids, [NESTED_MARKER])
        result = self._rewrite(pages, normalize_nested_tokens)
        if result.updated_blocks:
            logger.info(
                f"Repaired nested tokens in {result.updated_blocks} block(s) "
                f"on {result.updated_pages} page(s)"
            )
        return result

    def occurrences(self, label: str, limit: Optional[int] = None) -> List[TokenOccurrence]:
        """Pages containing the exact token ``[[label]]``, most recent first."""
        label = _require(label, "label", ErrorCode.LINK_LABEL_REQUIRED)
        limit = max(1, min(limit or config.occurrence_limit, 500))
        token = format_unresolved(label)
        needle = json_fragment(token)

        page_ids = self.block_repository.find_page_ids_containing([token])
        by_page: Dict[str, TokenOccurrence] = {}
        for block_id, pid, content_json, props_json in self.block_repository.block_texts(page_ids):
            count = count_occurrences(content_json or "", needle) + count_occurrences(
                props_json or "", needle
            )
            if not count:
                continue
            entry = by_page.get(pid)
            if entry is None:
                page = self.page_repository.get(pid)
                if page is None:
                    continue
                entry = by_page[pid] = TokenOccurrence(
                    page_id=pid, title=page.title, slug=page.slug, type=page.type.value
                )
            entry.matches += count
            entry.block_ids.append(block_id)

        return [by_page[pid] for pid in page_ids if pid in by_page][:limit]

    def resolve_token(
        self, context: TokenContext, legacy_map: Optional[Dict[str, str]] = None
    ) -> str:
        """Resolve one link occurrence against the current page titles."""
        resolver = TokenResolver(
            legacy_map=legacy_map or {},
            title_index=self.page_repository.title_index(),
        )
        return resolver.resolve(context)
