"""
Manifest Back

Schema translator and generic CRUD/query engine for manifest-described entities.

This package provides:
- specs: Entity, property and relationship description types
- runtime: Physical schema translation (SQLAlchemy Core), query building,
  pagination, validation and the CRUD service
"""

__version__ = "0.1.0"

from manifest_back.specs import AppSpec, EntitySpec

__all__ = ["AppSpec", "EntitySpec", "__version__"]
