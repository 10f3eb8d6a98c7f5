"""Denormalization engine for article/category assignments.

The assignments between articles and categories are stored in
``assignments``. The ``denormalized_assignments`` table contains each
of those assignments plus one additional row for every ancestor of the
assigned category, so "articles in category X or below" needs a single
join instead of a tree walk.

Rows in ``denormalized_assignments`` are written by this engine only.
"""

from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import (
    Integer,
    Select,
    and_,
    bindparam,
    delete,
    func,
    insert,
    literal,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_closure.catalog.closure import (
    expand_assignments,
    format_path,
    missing_rows,
    parse_path,
    path_pattern,
)
from catalog_closure.catalog.models import (
    Article,
    Assignment,
    Category,
    DenormalizedAssignment,
)
from catalog_closure.catalog.query import chunked, closure_join, limit
from catalog_closure.domain.exceptions import (
    CategoryCycleError,
    CategoryDepthExceededError,
)
from catalog_closure.infrastructure.config import settings

logger = structlog.get_logger()

categories = Category.__table__
articles = Article.__table__
assignments = Assignment.__table__
denormalized = DenormalizedAssignment.__table__

_CLOSURE_COLUMNS = ["article_id", "category_id", "parent_category_id"]
_UNSET: Any = object()


def _as_ids(category_ids: int | Iterable[int]) -> list[int]:
    if isinstance(category_ids, int):
        return [category_ids]
    return [int(category_id) for category_id in category_ids]


class DenormalizationEngine:
    """Maintains ``denormalized_assignments`` in sync with its sources.

    Every insert path skips rows that already exist and every delete path
    is scoped by key, so each operation can be re-run after a failure.
    Paged operations run one transaction per page unless transactions
    are disabled, in which case the caller owns commit and rollback.

    Example usage:
        async with async_session_factory() as session:
            engine = DenormalizationEngine(session)
            await engine.remove_orphaned_assignments()
            total = await engine.rebuild_all_assignments_count()
            for offset in range(0, total, 500):
                await engine.rebuild_all_assignments(500, offset)
    """

    def __init__(
        self,
        session: AsyncSession,
        enable_transactions: bool | None = None,
        max_depth: int | None = None,
        chunk_size: int | None = None,
    ) -> None:
        """Initialize engine with database session.

        Args:
            session: Async SQLAlchemy session.
            enable_transactions: Whether paged operations commit per page.
                Defaults to ``settings.denormalization_transactions``.
            max_depth: Maximum ancestor chain length before the tree is
                considered corrupt. Defaults to ``settings.max_category_depth``.
            chunk_size: Maximum number of IDs bound into one IN clause.
                Defaults to ``settings.in_clause_chunk_size``.
        """
        self.session = session
        if enable_transactions is None:
            enable_transactions = settings.denormalization_transactions
        self._enable_transactions = enable_transactions
        self.max_depth = max_depth if max_depth is not None else settings.max_category_depth
        self.chunk_size = chunk_size or settings.in_clause_chunk_size

    def set_session(self, session: AsyncSession) -> "DenormalizationEngine":
        """Replace the session used for all further operations."""
        self.session = session
        return self

    # ========================================================================
    # Transactions
    # ========================================================================

    def transactions_enabled(self) -> bool:
        return self._enable_transactions

    def enable_transactions(self) -> None:
        self._enable_transactions = True

    def disable_transactions(self) -> None:
        self._enable_transactions = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Commit the enclosed statements, or roll them back on error.

        Does nothing when transactions are disabled.
        """
        if not self._enable_transactions:
            yield
            return

        try:
            yield
        except Exception:
            await self.session.rollback()
            raise
        await self.session.commit()

    # ========================================================================
    # Category tree
    # ========================================================================

    async def get_parent_category_ids(self, category_id: int) -> list[int]:
        """Get all ancestors of a category, nearest first.

        Example for the tree 1 > 3 > 10 > 5 > 9:
            get_parent_category_ids(9) == [5, 10, 3, 1]

        Args:
            category_id: Category ID.

        Returns:
            Ancestor IDs, empty for a root or unknown category.

        Raises:
            CategoryCycleError: The parent chain loops.
            CategoryDepthExceededError: The chain is longer than ``max_depth``.
        """
        stmt = select(categories.c.parent_id).where(
            categories.c.id == bindparam("category_id", type_=Integer)
        )
        ancestors: list[int] = []
        visited = {category_id}
        current = category_id

        while True:
            result = await self.session.execute(stmt, {"category_id": current})
            parent_id = result.scalar_one_or_none()
            if parent_id is None:
                return ancestors
            if parent_id in visited:
                raise CategoryCycleError(category_id, [*ancestors, parent_id])
            if len(ancestors) >= self.max_depth:
                raise CategoryDepthExceededError(category_id, self.max_depth)
            ancestors.append(parent_id)
            visited.add(parent_id)
            current = parent_id

    async def rebuild_path(self, category_id: int, category_path: str | None = _UNSET) -> int:
        """Rebuild the materialized path of a single category.

        Args:
            category_id: Category ID.
            category_path: Currently stored path, read from the database
                when omitted.

        Returns:
            1 if the path was rewritten, 0 if it was already correct.
        """
        if category_path is _UNSET:
            result = await self.session.execute(
                select(categories.c.path).where(categories.c.id == category_id)
            )
            category_path = result.scalar_one_or_none()

        path = format_path(await self.get_parent_category_ids(category_id))
        if path == (category_path or None):
            return 0

        await self.session.execute(
            update(categories).where(categories.c.id == category_id).values(path=path)
        )
        return 1

    def _category_path_filter(self, category_id: int | None) -> Any:
        if category_id is None:
            return categories.c.parent_id.is_not(None)
        return categories.c.path.like(path_pattern(category_id))

    async def rebuild_category_path_count(self, category_id: int | None = None) -> int:
        """Count categories handled by ``rebuild_category_path``.

        Args:
            category_id: Limit to descendants of this category.

        Returns:
            Number of categories to page over.
        """
        stmt = select(func.count(categories.c.id)).where(
            self._category_path_filter(category_id)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def rebuild_category_path(
        self,
        category_id: int | None = None,
        count: int | None = None,
        offset: int = 0,
    ) -> int:
        """Rebuild materialized paths for a page of categories.

        Args:
            category_id: Limit to descendants of this category. The category
                itself is not included. None pages over every non-root
                category.
            count: Page size, None for all remaining categories.
            offset: Page offset.

        Returns:
            Number of paths rewritten.
        """
        stmt = (
            select(categories.c.id, categories.c.path)
            .where(self._category_path_filter(category_id))
            .order_by(categories.c.id)
        )
        result = await self.session.execute(limit(stmt, count, offset))
        rows = result.all()

        changed = 0
        async with self.transaction():
            for row in rows:
                changed += await self.rebuild_path(row.id, row.path)

        logger.info(
            "Rebuilt category paths",
            category_id=category_id,
            offset=offset,
            categories=len(rows),
            changed=changed,
        )
        return changed

    async def _get_child_categories(self, category_ids: list[int]) -> list[int]:
        """Get the given categories plus all of their descendants."""
        if not category_ids:
            return []
        stmt = select(categories.c.id).where(
            or_(
                categories.c.id.in_(category_ids),
                *(categories.c.path.like(path_pattern(cid)) for cid in category_ids),
            )
        )
        result = await self.session.execute(stmt)
        return sorted(set(result.scalars().all()) | set(category_ids))

    # ========================================================================
    # Closure rebuild
    # ========================================================================

    def _closure_insert(self, source: Any) -> Any:
        """Build the guarded INSERT ... SELECT for a set of direct assignments.

        Args:
            source: Selectable with ``article_id`` and ``category_id`` columns.
        """
        assigned = categories.alias("c")
        ancestor = categories.alias("c2")
        stored = denormalized.alias("ro")

        closure = (
            select(
                source.c.article_id,
                ancestor.c.id.label("category_id"),
                assigned.c.id.label("parent_category_id"),
            )
            .select_from(
                source.join(assigned, source.c.category_id == assigned.c.id)
                .join(ancestor, closure_join(assigned.c, ancestor.c))
                .outerjoin(
                    stored,
                    and_(
                        stored.c.article_id == source.c.article_id,
                        stored.c.category_id == ancestor.c.id,
                        stored.c.parent_category_id == assigned.c.id,
                    ),
                )
            )
            .where(stored.c.id.is_(None))
            .order_by(source.c.article_id, ancestor.c.id, assigned.c.id)
        )
        return insert(denormalized).from_select(_CLOSURE_COLUMNS, closure)

    async def rebuild_all_assignments_count(self) -> int:
        """Count direct assignments for paging ``rebuild_all_assignments``."""
        result = await self.session.execute(select(func.count()).select_from(assignments))
        return int(result.scalar_one())

    async def rebuild_all_assignments(self, count: int | None = None, offset: int = 0) -> int:
        """Denormalize a page of direct assignments.

        Args:
            count: Maximum number of direct assignments to denormalize.
            offset: Page offset into the direct assignments.

        Returns:
            Number of new denormalized rows.
        """
        page: Select[Any] = select(assignments.c.article_id, assignments.c.category_id).order_by(
            assignments.c.article_id, assignments.c.category_id
        )
        source = limit(page, count, offset).subquery("ac")

        async with self.transaction():
            result = await self.session.execute(self._closure_insert(source))
            inserted = result.rowcount

        logger.info(
            "Rebuilt denormalized assignments",
            count=count,
            offset=offset,
            inserted=inserted,
        )
        return inserted

    def _affected_categories(self, category_id: int) -> Select[Any]:
        return (
            select(categories.c.id)
            .where(categories.c.path.like(path_pattern(category_id)))
            .where(
                select(assignments.c.category_id)
                .where(assignments.c.category_id == categories.c.id)
                .exists()
            )
        )

    async def rebuild_assignments_count(self, category_id: int) -> int:
        """Count descendant categories with direct assignments.

        Args:
            category_id: Subtree root.

        Returns:
            Number of categories to page over in ``rebuild_assignments``.
        """
        stmt = select(func.count()).select_from(
            self._affected_categories(category_id).subquery()
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def rebuild_assignments(
        self,
        category_id: int,
        count: int | None = None,
        offset: int = 0,
    ) -> int:
        """Denormalize the direct assignments of a category subtree.

        The subtree root is handled on the first page, its descendants
        carrying direct assignments are paged.

        Args:
            category_id: Subtree root.
            count: Maximum number of descendant categories per page.
            offset: Page offset into the descendant categories.

        Returns:
            Number of new denormalized rows.
        """
        stmt = self._affected_categories(category_id).order_by(categories.c.id)
        result = await self.session.execute(limit(stmt, count, offset))
        affected = list(result.scalars().all())
        if offset == 0:
            affected.insert(0, category_id)

        inserted = 0
        async with self.transaction():
            for chunk in chunked(affected, self.chunk_size):
                source = (
                    select(assignments.c.article_id, assignments.c.category_id)
                    .where(assignments.c.category_id.in_(chunk))
                    .subquery("ac")
                )
                result = await self.session.execute(self._closure_insert(source))
                inserted += result.rowcount

        logger.info(
            "Rebuilt subtree assignments",
            category_id=category_id,
            offset=offset,
            categories=len(affected),
            inserted=inserted,
        )
        return inserted

    # ========================================================================
    # Point mutations
    # ========================================================================

    async def add_assignment(self, article_id: int, category_ids: int | Iterable[int]) -> int:
        """Add denormalized rows for new direct assignments.

        Args:
            article_id: Article ID.
            category_ids: Directly assigned category ID(s).

        Returns:
            Number of new denormalized rows.
        """
        ids = _as_ids(category_ids)
        if not ids:
            return 0

        assigned = categories.alias("c")
        ancestor = categories.alias("c2")
        stored = denormalized.alias("ro")
        closure = (
            select(
                literal(article_id, Integer).label("article_id"),
                ancestor.c.id.label("category_id"),
                assigned.c.id.label("parent_category_id"),
            )
            .select_from(
                assigned.join(ancestor, closure_join(assigned.c, ancestor.c)).outerjoin(
                    stored,
                    and_(
                        stored.c.article_id == article_id,
                        stored.c.category_id == ancestor.c.id,
                        stored.c.parent_category_id == assigned.c.id,
                    ),
                )
            )
            .where(assigned.c.id.in_(ids))
            .where(stored.c.id.is_(None))
            .order_by(ancestor.c.id, assigned.c.id)
        )
        result = await self.session.execute(
            insert(denormalized).from_select(_CLOSURE_COLUMNS, closure)
        )
        logger.debug(
            "Added assignment",
            article_id=article_id,
            category_ids=ids,
            inserted=result.rowcount,
        )
        return result.rowcount

    async def remove_assignment(self, article_id: int, category_ids: int | Iterable[int]) -> int:
        """Remove denormalized rows of deleted direct assignments.

        Rows still justified by another direct assignment of the same
        article are put back.

        Args:
            article_id: Article ID.
            category_ids: Category ID(s) the article was removed from.

        Returns:
            Deleted rows minus re-inserted rows.
        """
        ids = _as_ids(category_ids)
        if not ids:
            return 0

        async with self.transaction():
            count = 0
            for chunk in chunked(ids, self.chunk_size):
                result = await self.session.execute(
                    delete(denormalized).where(
                        denormalized.c.parent_category_id.in_(chunk),
                        denormalized.c.article_id == article_id,
                    )
                )
                count += result.rowcount
            count -=await self._fix_assignment(ids, article_id)

        logger.debug("Removed assignment", article_id=article_id, category_ids=ids, count=count)
        return count

    async def remove_old_assignments(
        self,
        category_id: int,
        parent_id: int | None = _UNSET,
    ) -> int:
        """Remove denormalized rows of a category subtree.

        Used when a category moves to a new parent: every row justified by
        the category or one of its descendants is deleted, then rows
        justified by the remaining categories under ``parent_id`` are
        re-derived. Rows for the moved subtree are not re-created; run
        ``rebuild_assignments`` once the paths are rebuilt.

        Args:
            category_id: Moved or deleted category.
            parent_id: Parent whose remaining subtree is re-derived. Defaults
                to the category's stored parent.

        Returns:
            Deleted rows minus re-inserted rows.
        """
        async with self.transaction():
            moved = await self._get_child_categories([category_id])
            count = 0
            for chunk in chunked(moved, self.chunk_size):
                result = await self.session.execute(
                    delete(denormalized).where(denormalized.c.parent_category_id.in_(chunk))
                )
                count += result.rowcount

            if parent_id is _UNSET:
                result = await self.session.execute(
                    select(categories.c.parent_id).where(categories.c.id == category_id)
                )
                parent_id = result.scalar_one_or_none()

            siblings: list[int] = []
            if parent_id is not None:
                subtree = await self._get_child_categories([parent_id])
                siblings = sorted(set(subtree) - set(moved))
            count -= await self._fix_assignment(siblings)

        logger.info(
            "Removed old assignments",
            category_id=category_id,
            parent_id=parent_id,
            categories=len(moved),
            count=count,
        )
        return count

    async def _fix_assignment(
        self,
        category_ids: list[int],
        article_id: int | None = None,
    ) -> int:
        """Re-insert closure rows that are still justified.

        Without ``article_id`` the scope is every direct assignment to
        ``category_ids``; with it, the article's direct assignments to any
        category outside ``category_ids``.

        Returns:
            Number of re-inserted rows.
        """
        stmt = select(assignments.c.article_id, assignments.c.category_id)
        if article_id is not None:
            excluded = set(category_ids)
            result = await self.session.execute(stmt.where(assignments.c.article_id == article_id))
            direct = [
                (row.article_id, row.category_id)
                for row in result.all()
                if row.category_id not in excluded
            ]
            return await self._insert_missing(direct, article_id)

        # One chunk of categories at a time keeps both the bound IDs and the
        # rows held in memory bounded.
        fixed = 0
        for chunk in chunked(category_ids, self.chunk_size):
            result = await self.session.execute(stmt.where(assignments.c.category_id.in_(chunk)))
            direct = [(row.article_id, row.category_id) for row in result.all()]
            fixed += await self._insert_missing(direct)
        return fixed

    async def _insert_missing(
        self,
        direct: Sequence[tuple[int, int]],
        article_id: int | None = None,
    ) -> int:
        """Insert the closure rows of ``direct`` that are not stored yet."""
        if not direct:
            return 0

        assigned_ids = sorted({category_id for _, category_id in direct})
        paths: dict[int, str | None] = {}
        for chunk in chunked(assigned_ids, self.chunk_size):
            result = await self.session.execute(
                select(categories.c.id, categories.c.path).where(categories.c.id.in_(chunk))
            )
            paths.update((row.id, row.path) for row in result.all())

        known = set(paths)
        ancestor_ids = sorted(
            {ancestor for path in paths.values() for ancestor in parse_path(path)} - known
        )
        for chunk in chunked(ancestor_ids, self.chunk_size):
            result = await self.session.execute(
                select(categories.c.id).where(categories.c.id.in_(chunk))
            )
            known.update(result.scalars().all())

        existing: list[tuple[int, int, int]] = []
        for chunk in chunked(assigned_ids, self.chunk_size):
            stored = select(
                denormalized.c.article_id,
                denormalized.c.category_id,
                denormalized.c.parent_category_id,
            ).where(denormalized.c.parent_category_id.in_(chunk))
            if article_id is not None:
                stored = stored.where(denormalized.c.article_id == article_id)
            result = await self.session.execute(stored)
            existing.extend(result.all())

        gap = missing_rows(expand_assignments(direct, paths, known), existing)
        if gap:
            await self.session.execute(insert(denormalized), [row._asdict() for row in gap])
        return len(gap)

    # ========================================================================
    # Bulk deletions
    # ========================================================================

    async def remove_article_assignments(self, article_id: int) -> int:
        """Remove all denormalized rows of a deleted article.

        Returns:
            Number of deleted rows.
        """
        result = await self.session.execute(
            delete(denormalized).where(denormalized.c.article_id == article_id)
        )
        return result.rowcount

    async def remove_category_assignments(self, category_id: int) -> int:
        """Remove all denormalized rows justified by a category subtree.

        Returns:
            Deleted rows minus re-inserted rows.
        """
        return await self.remove_old_assignments(category_id)

    async def remove_all_assignments(self) -> int:
        """Delete every denormalized row.

        TRUNCATE is tried first and a DELETE is used if the database
        rejects it.

        Returns:
            Number of deleted rows.
        """
        result = await self.session.execute(select(func.count()).select_from(denormalized))
        count = int(result.scalar_one())

        dialect = self.session.get_bind().dialect
        truncate = text(f"TRUNCATE TABLE {dialect.identifier_preparer.quote(denormalized.name)}")
        try:
            if dialect.name == "mysql":
                # TRUNCATE commits implicitly on MySQL, which drops any savepoint
                await self.session.execute(truncate)
            else:
                async with self.session.begin_nested():
                    await self.session.execute(truncate)
        except DBAPIError as exc:
            logger.warning(
                "TRUNCATE rejected, deleting denormalized assignments instead",
                error=str(exc.orig),
            )
            result = await self.session.execute(delete(denormalized))
            count = result.rowcount

        logger.info("Removed all denormalized assignments", count=count)
        return count

    async def remove_orphaned_assignments(self) -> int:
        """Delete direct assignments of missing articles or categories.

        Run before a full closure rebuild so orphans are not denormalized.

        Returns:
            Number of deleted direct assignments.
        """
        missing_article = ~(
            select(articles.c.id).where(articles.c.id == assignments.c.article_id).exists()
        )
        missing_category = ~(
            select(categories.c.id).where(categories.c.id == assignments.c.category_id).exists()
        )

        result = await self.session.execute(delete(assignments).where(missing_article))
        count = result.rowcount
        result = await self.session.execute(delete(assignments).where(missing_category))
        count += result.rowcount

        logger.info("Removed orphaned assignments", count=count)
        return count