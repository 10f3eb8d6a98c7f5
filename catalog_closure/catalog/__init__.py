"""Category closure maintenance.

Provides the denormalization engine keeping the article/category closure
table in sync with the category tree and the direct assignments.
"""

from catalog_closure.catalog.closure import ClosureRow, expand_assignments, format_path, parse_path
from catalog_closure.catalog.engine import DenormalizationEngine
from catalog_closure.catalog.models import Article, Assignment, Category, DenormalizedAssignment
from catalog_closure.catalog.service import RepairReport, RepairService

__all__ = [
    # Closure
    "ClosureRow",
    "expand_assignments",
    "format_path",
    "parse_path",
    # Models
    "Article",
    "Assignment",
    "Category",
    "DenormalizedAssignment",
    # Engine
    "DenormalizationEngine",
    # Service
    "RepairReport",
    "RepairService",
]
