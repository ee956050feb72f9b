"""Repository for page storage and retrieval."""
import datetime
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from pagevault_mcp.models.db_models import DBBlock, DBPage
from pagevault_mcp.models.schema import (
    Page,
    PageType,
    ensure_timezone_aware,
    generate_id,
    utc_now,
)
from pagevault_mcp.storage.base import storage_operation
from pagevault_mcp.storage.slugs import ensure_unique_slug, slugify_title
from pagevault_mcp.utils import normalize_title_key

logger = logging.getLogger(__name__)


def touch_page(
    session: Session, page_id: str, ts: Optional[datetime.datetime] = None
) -> None:
    """Bump a page's ``updated_at`` inside the caller's transaction."""
    session.execute(
        update(DBPage).where(DBPage.id == page_id).values(updated_at=ts or utc_now())
    )


def db_page_to_model(db_page: DBPage) -> Page:
    """Convert a DBPage row to a Page model."""
    try:
        page_type = PageType(db_page.type)
    except ValueError:
        logger.warning(f"Page {db_page.id} has unknown type '{db_page.type}', reading as note")
        page_type = PageType.NOTE
    return Page(
        id=db_page.id,
        title=db_page.title,
        type=page_type,
        slug=db_page.slug or "page",
        created_at=ensure_timezone_aware(db_page.created_at),
        updated_at=ensure_timezone_aware(db_page.updated_at),
    )


class PageRepository:
    """Repository for pages.

    Each public method runs in its own session and commits once, so every
    call is a single transaction. Absent rows are reported as ``None`` or
    ``False``; turning those into errors is the service layer's job.
    """

    def __init__(self, session_factory):
        """Initialize the page repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def create(self, title: str, page_type: PageType = PageType.NOTE) -> Page:
        """Create a page with a freshly allocated unique slug."""
        now = utc_now()
        with storage_operation("create_page"):
            with self.session_factory() as session:
                db_page = self._insert(session, title, page_type, now)
                session.commit()
                page = db_page_to_model(db_page)
        logger.info(f"Created page {page.id} '{page.title}' (slug={page.slug})")
        return page

    def _insert(
        self, session: Session, title: str, page_type: PageType, now: datetime.datetime
    ) -> DBPage:
        slug = ensure_unique_slug(session, slugify_title(title))
        db_page = DBPage(
            id=generate_id(),
            title=title,
            type=PageType(page_type).value,
            slug=slug,
            created_at=now,
            updated_at=now,
        )
        session.add(db_page)
        session.flush()
        return db_page

    def get(self, page_id: str) -> Optional[Page]:
        """Get a page by ID (without blocks)."""
        with self.session_factory() as session:
            db_page = session.get(DBPage, page_id)
            return db_page_to_model(db_page) if db_page else None

    def get_by_slug(self, slug: str) -> Optional[Page]:
        """Get a page by its slug."""
        with self.session_factory() as session:
            db_page = session.scalar(select(DBPage).where(DBPage.slug == slug))
            return db_page_to_model(db_page) if db_page else None

    def get_by_title(self, title: str) -> Optional[Page]:
        """Get the oldest page with exactly this title."""
        with self.session_factory() as session:
            db_page = session.scalar(
                select(DBPage)
                .where(DBPage.title == title)
                .order_by(DBPage.created_at, DBPage.id)
                .limit(1)
            )
            return db_page_to_model(db_page) if db_page else None

    def exists(self, page_id: str) -> bool:
        with self.session_factory() as session:
            return session.scalar(select(DBPage.id).where(DBPage.id == page_id)) is not None

    def existing_ids(self, page_ids: List[str]) -> List[str]:
        """Filter ``page_ids`` down to the ones that exist, keeping order."""
        if not page_ids:
            return []
        with self.session_factory() as session:
            found = set(session.scalars(select(DBPage.id).where(DBPage.id.in_(page_ids))))
        return [pid for pid in page_ids if pid in found]

    def list(self, limit: Optional[int] = None, offset: int = 0) -> List[Page]:
        """List pages, most recently updated first."""
        with self.session_factory() as session:
            query = select(DBPage).order_by(
                DBPage.updated_at.desc(), DBPage.created_at.desc()
            )
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [db_page_to_model(p) for p in session.scalars(query)]

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBPage.id))) or 0

    def title_index(self) -> Dict[str, str]:
        """Map normalized title keys to page IDs (oldest page wins on duplicates)."""
        index: Dict[str, str] = {}
        with self.session_factory() as session:
            rows = session.execute(
                select(DBPage.id, DBPage.title).order_by(DBPage.created_at, DBPage.id)
            ).all()
        for page_id, title in rows:
            index.setdefault(normalize_title_key(title), page_id)
        return index

    def patch(
        self,
        page_id: str,
        title: Optional[str] = None,
        page_type: Optional[PageType] = None,
        regenerate_slug: bool = False,
    ) -> Optional[Page]:
        """Partially update a page.

        The slug is only recomputed when ``regenerate_slug`` is set; a title
        change alone keeps the existing permalink.

        Returns:
            The updated page, or None if it does not exist.
        """
        with storage_operation("patch_page"):
            with self.session_factory() as session:
                db_page = session.get(DBPage, page_id)
                if db_page is None:
                    return None
                if title is not None:
                    db_page.title = title
                if page_type is not None:
                    db_page.type = PageType(page_type).value
                if regenerate_slug:
                    old_slug = db_page.slug
                    db_page.slug = ensure_unique_slug(
                        session, slugify_title(db_page.title), exclude_page_id=page_id
                    )
                    if db_page.slug != old_slug:
                        logger.info(f"Regenerated slug for page {page_id}: {old_slug} -> {db_page.slug}")
                db_page.updated_at = utc_now()
                session.commit()
                return db_page_to_model(db_page)

    def delete(self, page_id: str) -> bool:
        """Delete a page together with its blocks and tag associations."""
        with storage_operation("delete_page"):
            with self.session_factory() as session:
                db_page = session.get(DBPage, page_id)
                if db_page is None:
                    return False
                # Explicit delete keeps this correct even without the FK pragma
                session.execute(DBBlock.__table__.delete().where(DBBlock.page_id == page_id))
                db_page.tags.clear()
                session.delete(db_page)
                session.commit()
        logger.info(f"Deleted page {page_id}")
        return True

    def resolve_or_create(
        self, title: str, page_type: PageType = PageType.NOTE
    ) -> Tuple[Page, bool]:
        """Return the page titled exactly ``title``, creating it if missing.

        Returns:
            ``(page, created)``; an existing page is returned unchanged.
        """
        now = utc_now()
        with storage_operation("resolve_or_create_page"):
            with self.session_factory() as session:
                db_page = session.scalar(
                    select(DBPage)
                    .where(DBPage.title == title)
                    .order_by(DBPage.created_at, DBPage.id)
                    .limit(1)
                )
                if db_page is not None:
                    return db_page_to_model(db_page), False
                db_page = self._insert(session, title, page_type, now)
                session.commit()
                page = db_page_to_model(db_page)
        logger.info(f"Created page {page.id} '{title}' while resolving")
        return page, True

    def backfill_slugs(self) -> int:
        """Assign unique slugs to pages that have none.

        Runs in one transaction; returns the number of pages fixed.
        """
        with storage_operation("backfill_slugs"):
            with self.session_factory() as session:
                missing = session.scalars(
                    select(DBPage)
                    .where(or_(DBPage.slug.is_(None), DBPage.slug == ""))
                    .order_by(DBPage.created_at, DBPage.id)
                ).all()
                now = utc_now()
                for db_page in missing:
                    db_page.slug = ensure_unique_slug(session, slugify_title(db_page.title))
                    db_page.updated_at = now
                    # Flush so the next probe sees this allocation
                    session.flush()
                session.commit()
        if missing:
            logger.info(f"Backfilled slugs for {len(missing)} page(s)")
        return len(missing)
