"""Domain layer - exceptions describing corrupt catalog data."""

from catalog_closure.domain.exceptions import (
    CategoryCycleError,
    CategoryDepthExceededError,
    DataIntegrityError,
    DenormalizationError,
)

__all__ = [
    "CategoryCycleError",
    "CategoryDepthExceededError",
    "DataIntegrityError",
    "DenormalizationError",
]
