"""Tests for ancestor resolution and materialized path rebuilds."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_closure.catalog.engine import DenormalizationEngine
from catalog_closure.catalog.models import Category
from catalog_closure.domain.exceptions import (
    CategoryCycleError,
    CategoryDepthExceededError,
    DataIntegrityError,
)

# 1 > 2 > 3 > 5, 1 > 4
TREE = {1: None, 2: 1, 3: 2, 4: 1, 5: 3}


class TestGetParentCategoryIds:
    """Tests for ancestor chain resolution."""

    async def test_nearest_first(self, engine: DenormalizationEngine, catalog) -> None:
        """Ancestors are listed from the parent up to the root."""
        await catalog.add_tree(TREE)
        assert await engine.get_parent_category_ids(5) == [3, 2, 1]

    async def test_root_has_no_ancestors(self, engine: DenormalizationEngine, catalog) -> None:
        """A root category returns an empty chain."""
        await catalog.add_tree(TREE)
        assert await engine.get_parent_category_ids(1) == []

    async def test_unknown_category(self, engine: DenormalizationEngine, catalog) -> None:
        """An unknown category returns an empty chain."""
        await catalog.add_tree(TREE)
        assert await engine.get_parent_category_ids(999) == []

    async def test_cycle_raises(self, engine: DenormalizationEngine, catalog) -> None:
        """A looping parent chain is reported as corrupt data."""
        await catalog.add_tree({1: 3, 2: 1, 3: 2}, with_paths=False)

        with pytest.raises(CategoryCycleError) as exc_info:
            await engine.get_parent_category_ids(3)

        assert exc_info.value.details["category_id"] == 3
        assert exc_info.value.details["chain"] == [2, 1, 3]

    async def test_self_parent_raises(self, engine: DenormalizationEngine, catalog) -> None:
        """A category that is its own parent is a cycle."""
        await catalog.add_tree({7: 7}, with_paths=False)

        with pytest.raises(DataIntegrityError):
            await engine.get_parent_category_ids(7)

    async def test_depth_limit(self, session, catalog) -> None:
        """Chains longer than the configured depth are rejected."""
        await catalog.add_tree(TREE)
        engine = DenormalizationEngine(session, max_depth=2)

        assert await engine.get_parent_category_ids(3) == [2, 1]
        with pytest.raises(CategoryDepthExceededError):
            await engine.get_parent_category_ids(5)


class TestRebuildPath:
    """Tests for single category path rebuilds."""

    async def test_writes_stale_path(self, engine: DenormalizationEngine, catalog) -> None:
        """A missing path is rebuilt from the parent chain."""
        await catalog.add_tree(TREE, with_paths=False)

        assert await engine.rebuild_path(5) == 1
        assert await catalog.path(5) == "|3|2|1|"

    async def test_idempotent(self, engine: DenormalizationEngine, catalog) -> None:
        """Rebuilding a correct path changes nothing."""
        await catalog.add_tree(TREE, with_paths=False)

        assert await engine.rebuild_path(5) == 1
        assert await engine.rebuild_path(5) == 0

    async def test_root_path_is_null(self, engine: DenormalizationEngine, catalog) -> None:
        """A root keeps a NULL path."""
        await catalog.add_tree(TREE)

        assert await engine.rebuild_path(1) == 0
        assert await catalog.path(1) is None

    async def test_uses_supplied_path(self, engine: DenormalizationEngine, catalog) -> None:
        """A supplied path is compared instead of the stored one."""
        await catalog.add_tree(TREE)

        assert await engine.rebuild_path(2, "|1|") == 0
        assert await engine.rebuild_path(2, "|9|") == 1
        assert await catalog.path(2) == "|1|"

    async def test_clears_path_of_new_root(self, engine: DenormalizationEngine, catalog) -> None:
        """A category moved to the top level loses its path."""
        await catalog.add_tree(TREE)
        await catalog.move(2, None)

        assert await engine.rebuild_path(2) == 1
        assert await catalog.path(2) is None


class TestRebuildCategoryPath:
    """Tests for paged path rebuilds."""

    async def test_count_all(self, engine: DenormalizationEngine, catalog) -> None:
        """Every non-root category is counted."""
        await catalog.add_tree(TREE)
        assert await engine.rebuild_category_path_count() == 4

    async def test_count_subtree(self, engine: DenormalizationEngine, catalog) -> None:
        """Subtree count covers descendants only."""
        await catalog.add_tree(TREE)
        assert await engine.rebuild_category_path_count(2) == 2

    async def test_rebuild_all(self, engine: DenormalizationEngine, catalog) -> None:
        """All stale paths are rewritten once."""
        await catalog.add_tree(TREE, with_paths=False)

        assert await engine.rebuild_category_path() == 4
        assert await catalog.path(3) == "|2|1|"
        assert await catalog.path(4) == "|1|"
        assert await engine.rebuild_category_path() == 0

    async def test_paged_rebuild(self, engine: DenormalizationEngine, catalog) -> None:
        """Pages together rebuild every category exactly once."""
        await catalog.add_tree(TREE, with_paths=False)

        total = await engine.rebuild_category_path_count()
        changed = 0
        for offset in range(0, total, 3):
            changed += await engine.rebuild_category_path(count=3, offset=offset)

        assert changed == 4
        assert await catalog.path(5) == "|3|2|1|"

    async def test_rebuild_moved_subtree(self, engine: DenormalizationEngine, catalog) -> None:
        """Descendants of a moved category get the new chain."""
        await catalog.add_tree(TREE)
        await catalog.move(3, 4)

        assert await engine.rebuild_category_path(3) == 1
        assert await catalog.path(5) == "|3|4|1|"
        # The moved category itself is not part of its subtree page
        assert await catalog.path(3) == "|2|1|"

    async def test_commits_page(self, db_engine, engine: DenormalizationEngine, catalog) -> None:
        """A page is committed when transactions are enabled."""
        await catalog.add_tree(TREE, with_paths=False)
        await engine.rebuild_category_path()

        async with AsyncSession(db_engine) as other:
            category = await other.get(Category, 5)
            assert category.path == "|3|2|1|"


class TestTransactions:
    """Tests for the transaction toggle."""

    def test_toggle(self, engine: DenormalizationEngine) -> None:
        """Transactions can be switched off and on."""
        assert engine.transactions_enabled()
        engine.disable_transactions()
        assert not engine.transactions_enabled()
        engine.enable_transactions()
        assert engine.transactions_enabled()

    async def test_disabled_leaves_commit_to_caller(self, session, catalog) -> None:
        """Without transactions the caller can still roll back."""
        await catalog.add_tree(TREE, with_paths=False)
        await session.commit()

        engine = DenormalizationEngine(session, enable_transactions=False)
        assert await engine.rebuild_category_path() == 4
        await session.rollback()

        assert await catalog.path(5) is None

    async def test_set_session(self, session, engine: DenormalizationEngine) -> None:
        """Session can be replaced fluently."""
        assert engine.set_session(session) is engine
