"""Pure closure computations over direct assignments and category paths.

A category path lists the ancestors of a category nearest first, bounded
by the delimiter on both ends ("|5|3|1|"). A root category has no path.

Example usage:
    paths = {1: None, 2: "|1|", 3: "|2|1|"}
    rows = expand_assignments([(100, 3)], paths)
    # [ClosureRow(100, 1, 3), ClosureRow(100, 2, 3), ClosureRow(100, 3, 3)]
"""

from collections.abc import Container, Iterable, Mapping, Sequence
from typing import NamedTuple

PATH_DELIMITER = "|"


class ClosureRow(NamedTuple):
    """One denormalized assignment row.

    Attributes:
        article_id: Article ID.
        category_id: Ancestor-or-self of the assigned category.
        parent_category_id: Directly assigned category.
    """

    article_id: int
    category_id: int
    parent_category_id: int


def format_path(ancestor_ids: Sequence[int]) -> str | None:
    """Serialize an ancestor chain into its stored path form.

    Args:
        ancestor_ids: Ancestor IDs, nearest first, without the node itself.

    Returns:
        Delimited path, or None for an empty chain.
    """
    if not ancestor_ids:
        return None
    inner = PATH_DELIMITER.join(str(category_id) for category_id in ancestor_ids)
    return f"{PATH_DELIMITER}{inner}{PATH_DELIMITER}"


def parse_path(path: str | None) -> list[int]:
    """Parse a stored path into ancestor IDs, nearest first."""
    if not path:
        return []
    return [int(part) for part in path.split(PATH_DELIMITER) if part]


def path_pattern(category_id: int) -> str:
    """Get the LIKE pattern matching paths that contain a category."""
    return f"%{PATH_DELIMITER}{category_id}{PATH_DELIMITER}%"


def ancestors_or_self(category_id: int, path: str | None) -> list[int]:
    """Get a category followed by its ancestors, nearest first."""
    return [category_id, *parse_path(path)]


def expand_assignments(
    assignments: Iterable[tuple[int, int]],
    paths: Mapping[int, str | None],
    known_categories: Container[int] | None = None,
) -> list[ClosureRow]:
    """Expand direct assignments into their closure rows.

    Assignments pointing at a category missing from ``paths`` produce no
    rows, matching the inner join against the category table.

    Args:
        assignments: (article_id, category_id) pairs.
        paths: Stored path per assigned category ID.
        known_categories: Existing category IDs. Path entries outside it
            are skipped. None trusts every path entry.

    Returns:
        Closure rows ordered by article, ancestor, then assigned category.
    """
    rows: set[ClosureRow] = set()
    for article_id, category_id in assignments:
        if category_id not in paths:
            continue
        for ancestor_id in ancestors_or_self(category_id, paths[category_id]):
            if known_categories is not None and ancestor_id not in known_categories:
                continue
            rows.add(ClosureRow(article_id, ancestor_id, category_id))
    return sorted(rows)


def missing_rows(
    expected: Iterable[ClosureRow],
    existing: Iterable[tuple[int, int, int]],
) -> list[ClosureRow]:
    """Get the expected rows that are not stored yet.

    Args:
        expected: Rows that should exist.
        existing: Rows currently stored, as (article, category, parent) tuples.

    Returns:
        Gap between expected and existing, sorted.
    """
    stored = {ClosureRow(*row) for row in existing}
    return sorted(set(expected) - stored)