"""Denormalized article/category closure maintenance for catalogs."""

__version__ = "0.1.0"
