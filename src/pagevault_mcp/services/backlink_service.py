"""Backlinks derived on demand from link tokens in paragraph blocks."""
import logging
from typing import List, Optional

from sqlalchemy import Integer, func, or_, select

from pagevault_mcp.models.db_models import DBBlock, DBPage
from pagevault_mcp.models.schema import Backlink, BlockType
from pagevault_mcp.services.link_tokens import format_unresolved
from pagevault_mcp.utils import json_fragment, like_contains

logger = logging.getLogger(__name__)


def _occurrence_sum(column, needle: str):
    """SQL for summed occurrences: (len(h) - len(replace(h, n, ''))) / len(n)."""
    return func.sum(
        (
            func.length(column, type_=Integer)
            - func.length(func.replace(column, needle, ""), type_=Integer)
        )
        // len(needle)
    )


class BacklinkService:
    """Computes "who links to page X" by scanning block content.

    Nothing is indexed: every call scans paragraph blocks of the other
    pages for ``[[<title>]]`` or a token starting with ``[[page:<id>``.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_backlinks(self, page_id: str) -> Optional[List[Backlink]]:
        """Pages referring to ``page_id``, highest count first.

        Ties are broken by the referring page's recency.

        Returns:
            The backlinks, or None if the page does not exist.
        """
        with self.session_factory() as session:
            page = session.get(DBPage, page_id)
            if page is None:
                return None

            # Needles as they appear inside the stored JSON text
            title_needle = json_fragment(format_unresolved(page.title or ""))
            id_needle = json_fragment(f"[[page:{page_id}")

            count = (
                _occurrence_sum(DBBlock.content_json, title_needle)
                + _occurrence_sum(DBBlock.content_json, id_needle)
            ).label("link_count")

            rows = session.execute(
                select(DBPage.id, DBPage.title, DBPage.type, count)
                .join(DBBlock, DBBlock.page_id == DBPage.id)
                .where(
                    DBPage.id != page_id,
                    DBBlock.type == BlockType.PARAGRAPH.value,
                    or_(
                        DBBlock.content_json.like(like_contains(title_needle), escape="\\"),
                        DBBlock.content_json.like(like_contains(id_needle), escape="\\"),
                    ),
                )
                .group_by(DBPage.id, DBPage.title, DBPage.type)
                .order_by(count.desc(), DBPage.updated_at.desc())
            ).all()

        backlinks = [
            Backlink(id=rid, title=title, type=rtype, count=max(1, int(total or 0)))
            for rid, title, rtype, total in rows
        ]
        logger.debug(f"Page {page_id} has {len(backlinks)} backlink(s)")
        return backlinks
