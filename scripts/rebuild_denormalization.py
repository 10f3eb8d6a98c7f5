#!/usr/bin/env python3
"""Rebuild category paths and denormalized assignments.

Runs the full repair (orphan cleanup, path rebuild, closure rebuild) or
brings a single moved category subtree up to date.

Usage:
    python scripts/rebuild_denormalization.py
    python scripts/rebuild_denormalization.py --wipe --page-size 1000
    python scripts/rebuild_denormalization.py --category 42
"""

import argparse
import asyncio

from catalog_closure.catalog.service import RepairService
from catalog_closure.infrastructure.config import settings
from catalog_closure.infrastructure.database import create_tables, session_scope
from catalog_closure.infrastructure.logging import configure_logging


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Rebuild the denormalized article/category assignments",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=settings.default_page_size,
        help=f"Rows per page (default: {settings.default_page_size})",
    )
    parser.add_argument(
        "--category",
        type=int,
        default=None,
        help="Only rebuild the subtree of this (moved) category",
    )
    parser.add_argument(
        "--wipe",
        action="store_true",
        help="Delete all denormalized rows before a full rebuild",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables first",
    )

    args = parser.parse_args()
    configure_logging()

    print("=" * 60)
    print("Category Denormalization Rebuild")
    print("=" * 60)
    print(f"Page size: {args.page_size}")
    print()

    if args.create_tables:
        print("Creating database tables...")
        await create_tables()
        print("Tables ready.")
        print()

    try:
        async with session_scope() as session:
            service = RepairService(session)
            if args.category is not None:
                print(f"Rebuilding subtree of category {args.category}...")
                delta = await service.rebuild_subtree(args.category, args.page_size)
                print(f"  ✓ Net row change: {delta}")
            else:
                print("Running full repair...")
                report = await service.repair(args.page_size, wipe=args.wipe)
                print(f"  ✓ Orphans removed: {report.orphans_removed}")
                print(f"  ✓ Paths changed: {report.paths_changed}")
                if args.wipe:
                    print(f"  ✓ Rows wiped: {report.rows_wiped}")
                print(f"  ✓ Rows inserted: {report.rows_inserted}")
    except Exception as e:
        print(f"  ✗ Error: {e}")
        raise

    print()
    print("=" * 60)
    print("Rebuild complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
