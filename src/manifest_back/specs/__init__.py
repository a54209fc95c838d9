"""
Manifest specification types.

This module exports the entity description types consumed by the runtime.
"""

from manifest_back.specs.entity import (
    AppSpec,
    EntitySpec,
    PropertySpec,
    PropType,
    RelationKind,
    RelationshipSpec,
    singularize,
)

__all__ = [
    "AppSpec",
    "EntitySpec",
    "PropType",
    "PropertySpec",
    "RelationKind",
    "RelationshipSpec",
    "singularize",
]
