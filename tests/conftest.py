"""Shared fixtures for catalog closure tests.

Every test gets a fresh in-memory SQLite database with all tables created.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from catalog_closure.catalog.closure import format_path
from catalog_closure.catalog.engine import DenormalizationEngine
from catalog_closure.catalog.models import (
    Article,
    Assignment,
    Category,
    DenormalizedAssignment,
)
from catalog_closure.infrastructure.database import Base, create_engine


class CatalogBuilder:
    """Seeds source tables and reads back the denormalized table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add_tree(self, parents: dict[int, int | None], with_paths: bool = True) -> None:
        """Insert categories from a {category_id: parent_id} mapping.

        Paths are computed from the mapping unless ``with_paths`` is False.
        """
        rows = []
        for category_id, parent_id in parents.items():
            ancestors = []
            current = parent_id
            while with_paths and current is not None:
                ancestors.append(current)
                current = parents.get(current)
            rows.append(
                {
                    "id": category_id,
                    "parent_id": parent_id,
                    "path": format_path(ancestors),
                    "name": f"Category {category_id}",
                }
            )
        await self.session.execute(insert(Category), rows)
        await self.session.flush()

    async def add_articles(self, *article_ids: int) -> None:
        await self.session.execute(
            insert(Article),
            [{"id": article_id, "name": f"Article {article_id}"} for article_id in article_ids],
        )
        await self.session.flush()

    async def assign(self, article_id: int, *category_ids: int) -> None:
        await self.session.execute(
            insert(Assignment),
            [{"article_id": article_id, "category_id": cid} for cid in category_ids],
        )
        await self.session.flush()

    async def unassign(self, article_id: int, *category_ids: int) -> None:
        await self.session.execute(
            Assignment.__table__.delete().where(
                Assignment.article_id == article_id,
                Assignment.category_id.in_(category_ids),
            )
        )
        await self.session.flush()

    async def move(self, category_id: int, parent_id: int | None) -> None:
        await self.session.execute(
            Category.__table__.update()
            .where(Category.id == category_id)
            .values(parent_id=parent_id)
        )
        await self.session.flush()

    async def path(self, category_id: int) -> str | None:
        result = await self.session.execute(
            select(Category.path).where(Category.id == category_id)
        )
        return result.scalar_one_or_none()

    async def rows(self, article_id: int | None = None) -> list[tuple[int, int, int]]:
        """Get denormalized rows as sorted (article, category, parent) tuples."""
        stmt = select(
            DenormalizedAssignment.article_id,
            DenormalizedAssignment.category_id,
            DenormalizedAssignment.parent_category_id,
        ).order_by(
            DenormalizedAssignment.article_id,
            DenormalizedAssignment.category_id,
            DenormalizedAssignment.parent_category_id,
        )
        if article_id is not None:
            stmt = stmt.where(DenormalizedAssignment.article_id == article_id)
        result = await self.session.execute(stmt)
        return [tuple(row) for row in result.all()]

    async def direct(self) -> list[tuple[int, int]]:
        result = await self.session.execute(
            select(Assignment.article_id, Assignment.category_id).order_by(
                Assignment.article_id, Assignment.category_id
            )
        )
        return [tuple(row) for row in result.all()]


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine with in-memory SQLite and all tables."""
    engine = create_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session bound to the test engine."""
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def catalog(session: AsyncSession) -> CatalogBuilder:
    """Create catalog builder for seeding test data."""
    return CatalogBuilder(session)


@pytest.fixture
def engine(session: AsyncSession) -> DenormalizationEngine:
    """Create denormalization engine with transactions enabled."""
    return DenormalizationEngine(session, enable_transactions=True)
