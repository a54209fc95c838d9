"""
Schema registry.

Holds the current ``(AppSpec, PhysicalSchema)`` snapshot. A reload builds a
complete new snapshot and swaps the reference under a lock, so a request that
grabbed ``snapshot`` keeps a consistent view until it finishes.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace

import sqlalchemy as sa

from manifest_back.runtime.column_types import StorageBackend
from manifest_back.runtime.errors import NotFoundError
from manifest_back.runtime.logging import get_schema_logger
from manifest_back.runtime.relation_resolver import RelationDefinition
from manifest_back.runtime.sa_schema import PhysicalSchema, translate
from manifest_back.specs.entity import AppSpec, EntitySpec

logger = get_schema_logger()


@dataclass(frozen=True)
class SchemaSnapshot:
    """One immutable generation of the app description and its tables."""

    app_spec: AppSpec
    schema: PhysicalSchema
    generation: int

    def get_entity(
        self,
        *,
        slug: str | None = None,
        class_name: str | None = None,
        include_nested: bool = False,
    ) -> EntitySpec:
        """Look an entity up by slug or class name.

        Nested entities are only reachable through their parent, so they are
        not resolved unless ``include_nested`` is set.

        Raises:
            NotFoundError: No matching (addressable) entity.
        """
        for entity in self.schema.entities.values():
            if slug is not None and entity.slug != slug:
                continue
            if class_name is not None and entity.class_name != class_name:
                continue
            if entity.nested and not include_nested:
                continue
            return entity
        key = slug if slug is not None else class_name
        raise NotFoundError(f"Entity {key} not found")

    def table_for(self, entity: EntitySpec | str) -> sa.Table:
        name = entity if isinstance(entity, str) else entity.class_name
        return self.schema.tables[name]

    def relations_for(self, entity: EntitySpec | str) -> list[RelationDefinition]:
        name = entity if isinstance(entity, str) else entity.class_name
        return self.schema.relations.get(name, [])

    def relation(self, entity: EntitySpec | str, name: str) -> RelationDefinition | None:
        for relation in self.relations_for(entity):
            if relation.name == name:
                return relation
        return None


class SchemaRegistry:
    """Thread-safe holder of the current schema snapshot."""

    def __init__(self, backend: StorageBackend, app_spec: AppSpec):
        self.backend = backend
        self._lock = threading.Lock()
        self._snapshot = self._build(app_spec, generation=1)

    def _build(self, app_spec: AppSpec, generation: int) -> SchemaSnapshot:
        schema = translate(self.backend, app_spec)
        return SchemaSnapshot(app_spec=app_spec, schema=schema, generation=generation)

    @property
    def snapshot(self) -> SchemaSnapshot:
        return self._snapshot

    @property
    def metadata(self) -> sa.MetaData:
        return self._snapshot.schema.metadata

    def reload(self, app_spec: AppSpec) -> SchemaSnapshot:
        """Translate ``app_spec`` and make it the current snapshot.

        Translation happens outside the lock; a failing translation leaves
        the current snapshot in place.
        """
        candidate = self._build(app_spec, generation=0)
        with self._lock:
            candidate = replace(candidate, generation=self._snapshot.generation + 1)
            self._snapshot = candidate
        logger.info(
            "Schema reloaded (generation %d, %d tables)",
            candidate.generation,
            len(candidate.schema.tables),
        )
        return candidate

    # Convenience lookups against the current snapshot

    def get_entity(
        self,
        *,
        slug: str | None = None,
        class_name: str | None = None,
        include_nested: bool = False,
    ) -> EntitySpec:
        return self._snapshot.get_entity(
            slug=slug, class_name=class_name, include_nested=include_nested
        )

    def table_for(self, entity: EntitySpec | str) -> sa.Table:
        return self._snapshot.table_for(entity)

    def relations_for(self, entity: EntitySpec | str) -> list[RelationDefinition]:
        return self._snapshot.relations_for(entity)
