"""SQLAlchemy models for the category tree and article assignments.

Defines the source tables (categories, articles, assignments) and the
derived denormalized_assignments closure table.
"""

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from catalog_closure.infrastructure.database import Base


class Category(Base):
    """Category node in the catalog tree.

    Attributes:
        id: Category ID.
        parent_id: Parent category ID (None for a root).
        path: Materialized ancestor path, nearest ancestor first
            (e.g. "|5|3|1|"), None for a root.
        name: Display name.
    """

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    parent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("categories.id"),
        nullable=True,
        index=True,
    )
    path: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Category(id={self.id}, parent_id={self.parent_id}, path={self.path})>"


class Article(Base):
    """Article (product) that can be placed in categories."""

    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Article(id={self.id}, name={self.name})>"


class Assignment(Base):
    """Direct placement of an article in a category.

    No foreign keys: rows may outlive the article or category they point
    to until orphan cleanup removes them.
    """

    __tablename__ = "assignments"

    article_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    category_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=False,
        index=True,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<Assignment(article_id={self.article_id}, category_id={self.category_id})>"


class DenormalizedAssignment(Base):
    """Closure row linking an article to an ancestor-or-self category.

    Attributes:
        id: Surrogate key, used by the existence-guard joins.
        article_id: Article ID.
        category_id: Ancestor-or-self of the directly assigned category.
        parent_category_id: Directly assigned category that justifies this row.
    """

    __tablename__ = "denormalized_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    parent_category_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    __table_args__ = (
        Index(
            "uq_denormalized_assignments_article_category_parent",
            "article_id",
            "category_id",
            "parent_category_id",
            unique=True,
        ),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<DenormalizedAssignment(article_id={self.article_id}, "
            f"category_id={self.category_id}, "
            f"parent_category_id={self.parent_category_id})>"
        )
