"""Repository for the block tree of each page."""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from pagevault_mcp.exceptions import ErrorCode, ValidationError
from pagevault_mcp.models.db_models import DBBlock, DBPage
from pagevault_mcp.models.schema import (
    Block,
    BlockMove,
    BlockPatch,
    PageWithBlocks,
    ensure_timezone_aware,
    generate_id,
    utc_now,
)
from pagevault_mcp.storage.base import storage_operation
from pagevault_mcp.storage.page_repository import db_page_to_model, touch_page
from pagevault_mcp.utils import (
    dump_json_object,
    json_fragment,
    like_contains,
    load_json_object,
)

logger = logging.getLogger(__name__)

# Top-level blocks first, then each parent's children grouped in sort order
TREE_ORDER = (
    DBBlock.parent_id.isnot(None),
    DBBlock.parent_id,
    DBBlock.sort,
    DBBlock.created_at,
)


def db_block_to_model(db_block: DBBlock) -> Block:
    """Convert a DBBlock row to a Block model, tolerating bad JSON."""
    return Block(
        id=db_block.id,
        page_id=db_block.page_id,
        parent_id=db_block.parent_id,
        sort=max(db_block.sort or 0, 0),
        type=db_block.type,
        props=load_json_object(db_block.props_json, context=f"block {db_block.id} props"),
        content=load_json_object(db_block.content_json, context=f"block {db_block.id} content"),
        created_at=ensure_timezone_aware(db_block.created_at),
        updated_at=ensure_timezone_aware(db_block.updated_at),
    )


def _group_filter(query, page_id: str, parent_id: Optional[str]):
    query = query.where(DBBlock.page_id == page_id)
    if parent_id is None:
        return query.where(DBBlock.parent_id.is_(None))
    return query.where(DBBlock.parent_id == parent_id)


def normalize_sibling_sort(session: Session, page_id: str, parent_id: Optional[str]) -> int:
    """Reassign dense sort values 0..n-1 within one sibling group.

    Order is ``(sort, created_at, id)``. Runs inside the caller's
    transaction (autoflush makes pending changes visible to the query).

    Returns:
        Number of rows whose sort value changed.
    """
    rows = session.scalars(
        _group_filter(select(DBBlock), page_id, parent_id).order_by(
            DBBlock.sort, DBBlock.created_at, DBBlock.id
        )
    ).all()
    changed = 0
    for index, db_block in enumerate(rows):
        if db_block.sort != index:
            db_block.sort = index
            changed += 1
    return changed


def _rewrite_strings(value: Any, transform: Callable[[str], str]) -> Any:
    """Apply ``transform`` to every string leaf of a JSON value."""
    if isinstance(value, str):
        return transform(value)
    if isinstance(value, list):
        return [_rewrite_strings(v, transform) for v in value]
    if isinstance(value, dict):
        return {k: _rewrite_strings(v, transform) for k, v in value.items()}
    return value


class BlockRepository:
    """Repository for blocks.

    Every mutation (create, patch, delete, reorder) runs as one transaction
    that also renormalizes the affected sibling groups and touches the
    owning page exactly once, so a gap or duplicate sort value is never
    observable.
    """

    def __init__(self, session_factory):
        """Initialize the block repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parent_map(session: Session, page_id: str) -> Dict[str, Optional[str]]:
        rows = session.execute(
            select(DBBlock.id, DBBlock.parent_id).where(DBBlock.page_id == page_id)
        ).all()
        return {block_id: parent_id for block_id, parent_id in rows}

    @staticmethod
    def _parent_problem(
        parents: Dict[str, Optional[str]],
        block_id: Optional[str],
        parent_id: Optional[str],
    ) -> Optional[str]:
        """Describe why ``parent_id`` is not a valid parent, or None if it is.

        ``parents`` holds the page's blocks only, so a parent missing from it
        is either unknown or on another page.
        """
        if parent_id is None:
            return None
        if parent_id not in parents:
            return f"Parent block '{parent_id}' does not exist on this page"
        if block_id is None:
            return None
        if parent_id == block_id:
            return "A block cannot be its own parent"
        # Walk up from the new parent; meeting the block means a cycle
        seen: Set[str] = set()
        current: Optional[str] = parent_id
        while current is not None and current not in seen:
            if current == block_id:
                return f"Parent block '{parent_id}' is a descendant of '{block_id}'"
            seen.add(current)
            current = parents.get(current)
        return None

    @staticmethod
    def _check_sort(sort: Optional[int]) -> None:
        if sort is not None and sort < 0:
            raise ValidationError(
                "Block sort must be a non-negative integer",
                field="sort",
                value=sort,
                code=ErrorCode.BLOCK_INVALID_SORT,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, block_id: str) -> Optional[Block]:
        """Get a block by ID."""
        with self.session_factory() as session:
            db_block = session.get(DBBlock, block_id)
            return db_block_to_model(db_block) if db_block else None

    def list_for_page(self, page_id: str) -> List[Block]:
        """All blocks of a page in tree order."""
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBBlock).where(DBBlock.page_id == page_id).order_by(*TREE_ORDER)
            ).all()
            return [db_block_to_model(b) for b in rows]

    def get_page_with_blocks(self, page_id: str) -> Optional[PageWithBlocks]:
        """Get a page and all of its blocks in tree order.

        Returns:
            The page with blocks, or None if the page does not exist.
        """
        with self.session_factory() as session:
            db_page = session.get(DBPage, page_id)
            if db_page is None:
                return None
            rows = session.scalars(
                select(DBBlock).where(DBBlock.page_id == page_id).order_by(*TREE_ORDER)
            ).all()
            page = db_page_to_model(db_page)
            return PageWithBlocks(
                **page.model_dump(),
                blocks=[db_block_to_model(b) for b in rows],
            )

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBBlock.id))) or 0

    def find_page_ids_containing(self, needles: Iterable[str]) -> List[str]:
        """IDs of pages with a block whose content or props contain any needle.

        Matching is a LIKE scan over the serialized JSON, so it is a
        candidate filter; callers re-check the decoded strings.
        """
        conditions = []
        for needle in needles:
            if not needle:
                continue
            pattern = like_contains(json_fragment(needle))
            conditions.append(DBBlock.content_json.like(pattern, escape="\\"))
            conditions.append(DBBlock.props_json.like(pattern, escape="\\"))
        if not conditions:
            return []
        with self.session_factory() as session:
            rows = session.execute(
                select(DBBlock.page_id, func.max(DBPage.updated_at))
                .join(DBPage, DBPage.id == DBBlock.page_id)
                .where(or_(*conditions))
                .group_by(DBBlock.page_id)
                .order_by(func.max(DBPage.updated_at).desc(), DBBlock.page_id)
            ).all()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        page_id: str,
        block_type: str,
        parent_id: Optional[str] = None,
        sort: int = 0,
        props: Optional[Dict[str, Any]] = None,
        content: Optional[Dict[str, Any]] = None,
    ) -> Optional[Block]:
        """Insert a block and renormalize its sibling group.

        Returns:
            The stored block, or None if the page does not exist.

        Raises:
            ValidationError: If the parent is unknown or on another page,
                or ``sort`` is negative.
        """
        self._check_sort(sort)
        now = utc_now()
        with storage_operation("create_block"):
            with self.session_factory() as session:
                if session.get(DBPage, page_id) is None:
                    return None
                problem = self._parent_problem(
                    self._parent_map(session, page_id), None, parent_id
                )
                if problem:
                    raise ValidationError(
                        problem, field="parentId", value=parent_id,
                        code=ErrorCode.BLOCK_INVALID_PARENT,
                    )
                db_block = DBBlock(
                    id=generate_id(),
                    page_id=page_id,
                    parent_id=parent_id,
                    sort=sort,
                    type=block_type,
                    props_json=dump_json_object(props),
                    content_json=dump_json_object(content),
                    created_at=now,
                    updated_at=now,
                )
                session.add(db_block)
                session.flush()
                normalize_sibling_sort(session, page_id, parent_id)
                touch_page(session, page_id, now)
                session.commit()
                block = db_block_to_model(db_block)
        logger.debug(f"Created {block_type} block {block.id} on page {page_id} (sort={block.sort})")
        return block

    def patch(self, block_id: str, patch: BlockPatch) -> Optional[Block]:
        """Merge the explicitly provided fields of ``patch`` into a block.

        A changed parent renormalizes both the group the block left and the
        group it joined.

        Returns:
            The updated block, or None if it does not exist.
        """
        fields = patch.model_fields_set
        if "sort" in fields:
            self._check_sort(patch.sort)
        now = utc_now()
        with storage_operation("patch_block"):
            with self.session_factory() as session:
                db_block = session.get(DBBlock, block_id)
                if db_block is None:
                    return None
                page_id = db_block.page_id
                old_parent = db_block.parent_id

                if "parent_id" in fields and patch.parent_id != old_parent:
                    problem = self._parent_problem(
                        self._parent_map(session, page_id), block_id, patch.parent_id
                    )
                    if problem:
                        raise ValidationError(
                            problem, field="parentId", value=patch.parent_id,
                            code=ErrorCode.BLOCK_INVALID_PARENT,
                        )
                    db_block.parent_id = patch.parent_id
                if "sort" in fields and patch.sort is not None:
                    db_block.sort = patch.sort
                if "type" in fields and patch.type is not None:
                    db_block.type = patch.type
                if "props" in fields:
                    db_block.props_json = dump_json_object(patch.props)
                if "content" in fields:
                    db_block.content_json = dump_json_object(patch.content)
                db_block.updated_at = now
                session.flush()

                if "parent_id" in fields or "sort" in fields:
                    normalize_sibling_sort(session, page_id, db_block.parent_id)
                    if db_block.parent_id != old_parent:
                        normalize_sibling_sort(session, page_id, old_parent)
                touch_page(session, page_id, now)
                session.commit()
                return db_block_to_model(db_block)

    def delete(self, block_id: str) -> bool:
        """Delete a block and its whole subtree, then close the gap it left."""
        with storage_operation("delete_block"):
            with self.session_factory() as session:
                db_block = session.get(DBBlock, block_id)
                if db_block is None:
                    return False
                page_id = db_block.page_id
                parent_id = db_block.parent_id

                children: Dict[Optional[str], List[str]] = {}
                for child_id, child_parent in self._parent_map(session, page_id).items():
                    children.setdefault(child_parent, []).append(child_id)
                doomed: List[str] = []
                seen: Set[str] = set()
                stack = [block_id]
                while stack:
                    current = stack.pop()
                    if current in seen:
                        continue
                    seen.add(current)
                    doomed.append(current)
                    stack.extend(children.get(current, []))

                session.execute(DBBlock.__table__.delete().where(DBBlock.id.in_(doomed)))
                session.expunge(db_block)
                normalize_sibling_sort(session, page_id, parent_id)
                touch_page(session, page_id)
                session.commit()
        logger.debug(f"Deleted block {block_id} and {len(doomed) - 1} descendant(s) from page {page_id}")
        return True

    def reorder(self, page_id: str, moves: List[BlockMove]) -> int:
        """Apply a batch of moves within one page.

        Best-effort: a move naming a block of another page, an unknown
        block, an invalid parent or a negative sort is skipped with a
        warning instead of failing the batch. Each sibling group touched
        (origin or destination) is renormalized once and the page is
        touched once.

        Returns:
            Number of moves applied.
        """
        if not moves:
            return 0
        now = utc_now()
        with storage_operation("reorder_blocks"):
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBBlock).where(DBBlock.page_id == page_id)
                ).all()
                by_id = {b.id: b for b in rows}
                parents = {b.id: b.parent_id for b in rows}
                groups: List[Optional[str]] = []
                applied = 0

                for move in moves:
                    db_block = by_id.get(move.id)
                    if db_block is None:
                        logger.warning(f"Reorder on page {page_id}: ignoring block '{move.id}' (not on this page)")
                        continue
                    if move.sort < 0:
                        logger.warning(f"Reorder on page {page_id}: ignoring negative sort for block '{move.id}'")
                        continue
                    problem = self._parent_problem(parents, move.id, move.parent_id)
                    if problem:
                        logger.warning(f"Reorder on page {page_id}: ignoring block '{move.id}': {problem}")
                        continue
                    for group in (db_block.parent_id, move.parent_id):
                        if group not in groups:
                            groups.append(group)
                    db_block.parent_id = move.parent_id
                    db_block.sort = move.sort
                    db_block.updated_at = now
                    parents[move.id] = move.parent_id
                    applied += 1

                if applied:
                    session.flush()
                    for group in groups:
                        normalize_sibling_sort(session, page_id, group)
                    touch_page(session, page_id, now)
                    session.commit()
        logger.debug(f"Reordered page {page_id}: {applied}/{len(moves)} move(s) applied")
        return applied

    def rewrite_page_strings(
        self,
        page_id: str,
        transform: Callable[[str], str],
        block_types: Optional[Iterable[str]] = None,
        include_props: bool = True,
    ) -> int:
        """Rewrite every string in the content (and props) of a page's blocks.

        The page is touched once if any block changed; all of it is one
        transaction.

        Returns:
            Number of blocks changed.
        """
        now = utc_now()
        with storage_operation("rewrite_blocks"):
            with self.session_factory() as session:
                query = select(DBBlock).where(DBBlock.page_id == page_id)
                if block_types is not None:
                    query = query.where(DBBlock.type.in_(list(block_types)))
                changed = 0
                for db_block in session.scalars(query.order_by(*TREE_ORDER)).all():
                    context = f"block {db_block.id}"
                    content = load_json_object(db_block.content_json, context=f"{context} content")
                    props = load_json_object(db_block.props_json, context=f"{context} props")
                    new_content = _rewrite_strings(content, transform)
                    new_props = _rewrite_strings(props, transform) if include_props else props
                    if new_content == content and new_props == props:
                        continue
                    db_block.content_json = dump_json_object(new_content)
                    db_block.props_json = dump_json_object(new_props)
                    db_block.updated_at = now
                    changed += 1
                if changed:
                    touch_page(session, page_id, now)
                    session.commit()
        return changed

    def block_texts(
        self, page_ids: Optional[List[str]] = None
    ) -> List[Tuple[str, str, str, str]]:
        """Raw ``(block_id, page_id, content_json, props_json)`` rows for scanning."""
        with self.session_factory() as session:
            query = select(
                DBBlock.id, DBBlock.page_id, DBBlock.content_json, DBBlock.props_json
            )
            if page_ids is not None:
                query = query.where(DBBlock.page_id.in_(page_ids))
            return [tuple(row) for row in session.execute(query.order_by(DBBlock.page_id, *TREE_ORDER))]
