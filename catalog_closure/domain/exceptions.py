"""Domain exceptions.

Errors raised by the denormalization engine when the category tree or
the assignment tables violate the preconditions the engine relies on.
Storage failures are not wrapped; they surface as SQLAlchemy errors.
"""

from typing import Any


class DenormalizationError(Exception):
    """Base class for all denormalization exceptions.

    All engine errors inherit from this class to allow catching
    them at the application layer.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize denormalization error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# Data Integrity Errors
# ============================================================================


class DataIntegrityError(DenormalizationError):
    """Base class for corrupt source data detected during maintenance."""

    pass


class CategoryCycleError(DataIntegrityError):
    """Raised when a category's parent chain loops back on itself."""

    def __init__(self, category_id: int, chain: list[int]) -> None:
        """Initialize category cycle error.

        Args:
            category_id: Category whose ancestor chain was being resolved.
            chain: Ancestor ids visited before the cycle was detected.
        """
        super().__init__(
            f"Parent chain of category {category_id} contains a cycle: {chain}",
            details={"category_id": category_id, "chain": chain},
        )


class CategoryDepthExceededError(DataIntegrityError):
    """Raised when a category's parent chain is deeper than allowed."""

    def __init__(self, category_id: int, max_depth: int) -> None:
        """Initialize category depth exceeded error.

        Args:
            category_id: Category whose ancestor chain was being resolved.
            max_depth: Configured maximum number of ancestors.
        """
        super().__init__(
            f"Parent chain of category {category_id} exceeds {max_depth} levels",
            details={"category_id": category_id, "max_depth": max_depth},
        )
