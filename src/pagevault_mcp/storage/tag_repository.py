"""Repository for page tags."""
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from pagevault_mcp.exceptions import ErrorCode, TagError
from pagevault_mcp.models.db_models import DBPage, DBTag, page_tags
from pagevault_mcp.models.schema import Tag
from pagevault_mcp.storage.base import storage_operation
from pagevault_mcp.utils import collapse_whitespace

logger = logging.getLogger(__name__)

MAX_TAG_LENGTH = 64


def normalize_tag_name(raw: Optional[str]) -> Tag:
    """Normalize a tag name to its key and display form.

    Whitespace is trimmed and collapsed; the key is the lowercase form.

    Raises:
        TagError: If the name is empty or longer than 64 characters.
    """
    display = collapse_whitespace(raw or "")
    key = display.lower()
    if not key:
        raise TagError("Tag name cannot be empty", tag_name=raw or "")
    if len(key) > MAX_TAG_LENGTH:
        raise TagError(
            f"Tag name exceeds {MAX_TAG_LENGTH} characters", tag_name=display[:MAX_TAG_LENGTH]
        )
    return Tag(name=key, display_name=display)


class TagRepository:
    """Repository for managing tags and their page associations."""

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _ensure(session: Session, tag: Tag) -> DBTag:
        """Get or create a tag row; the latest casing becomes the display name."""
        db_tag = session.scalar(select(DBTag).where(DBTag.name == tag.name))
        if db_tag is None:
            db_tag = DBTag(name=tag.name, display_name=tag.display_name)
            session.add(db_tag)
            session.flush()
        elif db_tag.display_name != tag.display_name:
            db_tag.display_name = tag.display_name
        return db_tag

    def get_or_create(self, tag_name: str) -> Tag:
        """Get an existing tag or create a new one."""
        tag = normalize_tag_name(tag_name)
        with storage_operation("ensure_tag"):
            with self.session_factory() as session:
                db_tag = self._ensure(session, tag)
                session.commit()
                return Tag(name=db_tag.name, display_name=db_tag.display_name)

    def get(self, tag_name: str) -> Optional[Tag]:
        """Get a tag by (unnormalized) name."""
        key = collapse_whitespace(tag_name or "").lower()
        with self.session_factory() as session:
            db_tag = session.scalar(select(DBTag).where(DBTag.name == key))
            if not db_tag:
                return None
            return Tag(name=db_tag.name, display_name=db_tag.display_name)

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBTag.id))) or 0

    def list_with_counts(self) -> List[Tuple[Tag, int]]:
        """All tags ordered by key, each with the number of pages carrying it."""
        with self.session_factory() as session:
            result = session.execute(
                select(DBTag.name, DBTag.display_name, func.count(page_tags.c.page_id))
                .select_from(DBTag)
                .outerjoin(page_tags, DBTag.id == page_tags.c.tag_id)
                .group_by(DBTag.id, DBTag.name, DBTag.display_name)
                .order_by(DBTag.name)
            ).all()
            return [
                (Tag(name=name, display_name=display), count)
                for name, display, count in result
            ]

    def get_page_tags(self, page_id: str) -> Optional[List[Tag]]:
        """Tags of a page ordered by key, or None if the page does not exist."""
        with self.session_factory() as session:
            if session.get(DBPage, page_id) is None:
                return None
            return self._page_tags(session, page_id)

    @staticmethod
    def _page_tags(session: Session, page_id: str) -> List[Tag]:
        rows = session.execute(
            select(DBTag.name, DBTag.display_name)
            .join(page_tags, page_tags.c.tag_id == DBTag.id)
            .where(page_tags.c.page_id == page_id)
            .order_by(DBTag.name)
        ).all()
        return [Tag(name=name, display_name=display) for name, display in rows]

    def set_page_tags(self, page_id: str, tag_names: List[str]) -> Optional[List[Tag]]:
        """Replace a page's tag set.

        Names are de-duplicated by key with the latest casing winning; invalid
        names are skipped with a warning.

        Returns:
            The page's tags after the update, or None if the page does not exist.
        """
        wanted: Dict[str, Tag] = {}
        for raw in tag_names:
            try:
                tag = normalize_tag_name(raw)
            except TagError as e:
                logger.warning(f"Skipping invalid tag for page {page_id}: {e}")
                continue
            wanted[tag.name] = tag

        with storage_operation("set_page_tags"):
            with self.session_factory() as session:
                if session.get(DBPage, page_id) is None:
                    return None
                tag_ids = [self._ensure(session, tag).id for tag in wanted.values()]
                remove = delete(page_tags).where(page_tags.c.page_id == page_id)
                if tag_ids:
                    remove = remove.where(page_tags.c.tag_id.notin_(tag_ids))
                session.execute(remove)
                have = set(session.scalars(
                    select(page_tags.c.tag_id).where(page_tags.c.page_id == page_id)
                ))
                missing = [tid for tid in tag_ids if tid not in have]
                if missing:
                    session.execute(
                        insert(page_tags),
                        [{"page_id": page_id, "tag_id": tid} for tid in missing],
                    )
                session.commit()
                return self._page_tags(session, page_id)

    def _move_associations(self, session: Session, source: DBTag, target: DBTag) -> None:
        page_ids = set(session.scalars(
            select(page_tags.c.page_id).where(page_tags.c.tag_id == source.id)
        ))
        already = set(session.scalars(
            select(page_tags.c.page_id).where(page_tags.c.tag_id == target.id)
        ))
        to_add = sorted(page_ids - already)
        if to_add:
            session.execute(
                insert(page_tags),
                [{"page_id": pid, "tag_id": target.id} for pid in to_add],
            )
        session.execute(delete(page_tags).where(page_tags.c.tag_id == source.id))
        session.execute(delete(DBTag.__table__).where(DBTag.id == source.id))

    def rename(self, old_name: str, new_name: str) -> int:
        """Rename a tag, merging into the target if that key already exists.

        Returns:
            Number of pages that carried the source tag.

        Raises:
            TagError: If either name is invalid or the source tag is unknown.
        """
        source_tag = normalize_tag_name(old_name)
        target_tag = normalize_tag_name(new_name)
        with storage_operation("rename_tag"):
            with self.session_factory() as session:
                source = session.scalar(select(DBTag).where(DBTag.name == source_tag.name))
                if source is None:
                    raise TagError(
                        f"Tag '{source_tag.display_name}' not found",
                        tag_name=source_tag.name,
                        code=ErrorCode.TAG_NOT_FOUND,
                    )
                affected = session.scalar(
                    select(func.count(func.distinct(page_tags.c.page_id)))
                    .where(page_tags.c.tag_id == source.id)
                ) or 0
                target = session.scalar(select(DBTag).where(DBTag.name == target_tag.name))
                if target is not None and target.id == source.id:
                    # Same key: only the display casing changes
                    source.display_name = target_tag.display_name
                    session.commit()
                    return 0
                if target is None:
                    source.name = target_tag.name
                    source.display_name = target_tag.display_name
                else:
                    self._move_associations(session, source, target)
                session.commit()
        logger.info(f"Renamed tag '{source_tag.name}' -> '{target_tag.name}' ({affected} page(s))")
        return affected

    def merge(self, source_name: str, target_name: str) -> int:
        """Move every page association of ``source_name`` onto ``target_name``.

        The source tag is dropped. A missing target is created by renaming
        the source.

        Returns:
            Number of pages that carried the source tag.
        """
        return self.rename(source_name, target_name)
