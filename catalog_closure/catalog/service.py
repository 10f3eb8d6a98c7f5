"""Repair service for the denormalized assignment table.

High-level service that drives the engine's paged operations with the
count-then-page pattern.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_closure.catalog.engine import DenormalizationEngine
from catalog_closure.infrastructure.config import settings

logger = structlog.get_logger()


@dataclass
class RepairReport:
    """Totals collected by a full repair.

    Attributes:
        orphans_removed: Direct assignments deleted by orphan cleanup.
        paths_changed: Category paths rewritten.
        rows_wiped: Denormalized rows removed before the rebuild.
        rows_inserted: Denormalized rows created by the rebuild.
        pages: Pages processed per step.
    """

    orphans_removed: int = 0
    paths_changed: int = 0
    rows_wiped: int = 0
    rows_inserted: int = 0
    pages: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Dictionary representation.
        """
        return {
            "orphans_removed": self.orphans_removed,
            "paths_changed": self.paths_changed,
            "rows_wiped": self.rows_wiped,
            "rows_inserted": self.rows_inserted,
            "pages": dict(self.pages),
        }


class RepairService:
    """Service for full and subtree repairs.

    Example usage:
        async with async_session_factory() as session:
            service = RepairService(session)
            report = await service.repair(page_size=1000)
    """

    def __init__(
        self,
        session: AsyncSession,
        engine: DenormalizationEngine | None = None,
    ) -> None:
        """Initialize service with database session.

        Args:
            session: Async SQLAlchemy session.
            engine: Engine to drive, created for ``session`` when omitted.
        """
        self.session = session
        self.engine = engine or DenormalizationEngine(session)

    async def repair(self, page_size: int | None = None, wipe: bool = False) -> RepairReport:
        """Repair the category paths and the denormalized table from scratch.

        Steps run in order: orphan cleanup, path rebuild, optional wipe,
        closure rebuild.

        Args:
            page_size: Rows per page, defaults to ``settings.default_page_size``.
            wipe: Whether to delete all denormalized rows before rebuilding.

        Returns:
            Repair totals.
        """
        page_size = page_size or settings.default_page_size
        report = RepairReport()

        async with self.engine.transaction():
            report.orphans_removed = await self.engine.remove_orphaned_assignments()

        # Paging by offset is stable here: path rewrites never move a
        # category in or out of the non-root set.
        total = await self.engine.rebuild_category_path_count()
        report.pages["paths"] = 0
        for offset in range(0, total, page_size):
            report.paths_changed += await self.engine.rebuild_category_path(
                count=page_size, offset=offset
            )
            report.pages["paths"] += 1

        if wipe:
            async with self.engine.transaction():
                report.rows_wiped = await self.engine.remove_all_assignments()

        total = await self.engine.rebuild_all_assignments_count()
        report.pages["assignments"] = 0
        for offset in range(0, total, page_size):
            report.rows_inserted += await self.engine.rebuild_all_assignments(
                count=page_size, offset=offset
            )
            report.pages["assignments"] += 1

        logger.info("Repair complete", **report.to_dict())
        return report

    async def rebuild_subtree(self, category_id: int, page_size: int | None = None) -> int:
        """Bring a moved category subtree up to date.

        Call after the category's parent has been changed.

        Args:
            category_id: Moved category.
            page_size: Rows per page, defaults to ``settings.default_page_size``.

        Returns:
            Net change in denormalized rows.
        """
        page_size = page_size or settings.default_page_size

        delta = -await self.engine.remove_old_assignments(category_id)

        async with self.engine.transaction():
            await self.engine.rebuild_path(category_id)
        total = await self.engine.rebuild_category_path_count(category_id)
        for offset in range(0, total, page_size):
            await self.engine.rebuild_category_path(category_id, page_size, offset)

        total = await self.engine.rebuild_assignments_count(category_id)
        offset = 0
        while True:
            delta += await self.engine.rebuild_assignments(category_id, page_size, offset)
            offset += page_size
            if offset >= total:
                break

        logger.info("Rebuilt category subtree", category_id=category_id, delta=delta)
        return delta
