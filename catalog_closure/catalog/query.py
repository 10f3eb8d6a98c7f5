"""Dialect-agnostic query building helpers.

The engine composes its statements from these expressions so the same
code runs on SQLite, PostgreSQL and MySQL. SQLAlchemy renders the
concatenation operator per dialect ("||" or CONCAT()) and the paging
clause per dialect (LIMIT/OFFSET, OFFSET/FETCH).
"""

from collections.abc import Iterator, Sequence
from typing import Any, TypeVar

from sqlalchemy import ColumnElement, Select, String, cast, literal, or_

from catalog_closure.catalog.closure import PATH_DELIMITER

T = TypeVar("T")
S = TypeVar("S", bound="Select[Any]")


def limit(stmt: S, count: int | None, offset: int = 0) -> S:
    """Apply paging to a SELECT statement.

    Args:
        stmt: Statement to page. It should carry a deterministic ORDER BY.
        count: Page size, None for no limit.
        offset: Rows to skip.

    Returns:
        Paged statement.
    """
    if count is not None:
        stmt = stmt.limit(count)
    if offset:
        stmt = stmt.offset(offset)
    return stmt


def _as_text(part: Any) -> ColumnElement[str]:
    if isinstance(part, str):
        return literal(part, String)
    return cast(part, String)


def concat(*parts: Any) -> ColumnElement[str]:
    """Concatenate string literals and column expressions.

    Non-string expressions are cast to strings first.
    """
    if not parts:
        raise ValueError("concat() needs at least one part")
    expression = _as_text(parts[0])
    for part in parts[1:]:
        expression = expression.concat(_as_text(part))
    return expression


def path_contains(path_column: Any, category_id: Any) -> ColumnElement[bool]:
    """Match rows whose materialized path contains a category.

    Args:
        path_column: Path column of the candidate descendant.
        category_id: Column or value holding the ancestor ID.

    Returns:
        ``path LIKE '%|' || id || '|%'`` expression.
    """
    return path_column.like(
        concat(f"%{PATH_DELIMITER}", category_id, f"{PATH_DELIMITER}%")
    )


def closure_join(assigned: Any, ancestor: Any) -> ColumnElement[bool]:
    """Join condition from an assigned category to its ancestors-or-self.

    Args:
        assigned: Aliased category table of the directly assigned category.
        ancestor: Aliased category table of the ancestor candidate.

    Returns:
        Join condition.
    """
    return or_(path_contains(assigned.path, ancestor.id), ancestor.id == assigned.id)


def chunked(values: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Split values into consecutive slices of at most ``size`` items.

    Keeps ID lists bound into IN clauses under the driver's parameter limit.
    """
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(values), size):
        yield values[start : start + size]
