"""
Schema translator: app descriptions to SQLAlchemy MetaData.

Converts ``EntitySpec`` objects into SQLAlchemy ``Table`` objects on a shared
``MetaData`` instance for one storage backend. This gives us:

* Topologically-sorted DDL via ``metadata.create_all()``
* Foreign keys and join tables derived from the relationship resolver
* Per-column transcoders bound through ``TranscodedType``

The module uses SQLAlchemy Core only; no ORM, no Session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa

from manifest_back.runtime.column_types import StorageBackend
from manifest_back.runtime.errors import ConfigurationError
from manifest_back.runtime.relation_resolver import RelationDefinition, resolve
from manifest_back.runtime.transcoders import (
    NumberTranscoder,
    TimestampTranscoder,
    TranscodedType,
    Transcoder,
)
from manifest_back.specs.entity import AppSpec, EntitySpec, PropType, RelationKind

logger = logging.getLogger(__name__)

# Engine-managed columns, never part of a projection.
TIMESTAMP_COLUMNS = ("createdAt", "updatedAt")

# Constraint names are needed for ALTER-based FK cycles and for constraint error parsing.
NAMING_CONVENTION = {
    "pk": "pk_%(table_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
}


@dataclass
class PhysicalSchema:
    """Result of translating an ``AppSpec`` for one backend."""

    backend: StorageBackend
    metadata: sa.MetaData
    tables: dict[str, sa.Table] = field(default_factory=dict)
    join_tables: dict[str, sa.Table] = field(default_factory=dict)
    relations: dict[str, list[RelationDefinition]] = field(default_factory=dict)
    entities: dict[str, EntitySpec] = field(default_factory=dict)

    def table(self, class_name: str) -> sa.Table:
        return self.tables[class_name]

    def relation(self, class_name: str, name: str) -> RelationDefinition | None:
        for relation in self.relations.get(class_name, []):
            if relation.name == name:
                return relation
        return None


# ---------------------------------------------------------------------------
# Column builders
# ---------------------------------------------------------------------------


def _transcoder_for(backend: StorageBackend, prop_type: PropType) -> Transcoder | None:
    if prop_type in (PropType.NUMBER, PropType.MONEY):
        return NumberTranscoder()
    if prop_type == PropType.TIMESTAMP:
        return TimestampTranscoder()
    if prop_type == PropType.BOOLEAN:
        return backend.boolean_transcoder()
    return None


def _property_column_type(backend: StorageBackend, prop_type: PropType) -> sa.types.TypeEngine:
    storage_type = backend.column_type_for(prop_type)
    transcoder = _transcoder_for(backend, prop_type)
    if transcoder is None:
        return storage_type
    return TranscodedType(storage_type, transcoder)


def _base_columns(backend: StorageBackend) -> list[sa.Column[Any]]:
    timestamp_type = TranscodedType(
        backend.column_type_for(PropType.TIMESTAMP), TimestampTranscoder()
    )
    return [
        sa.Column("id", backend.id_column_type(), primary_key=True),
        sa.Column("createdAt", timestamp_type, nullable=True),
        sa.Column("updatedAt", timestamp_type, nullable=True),
    ]


def _foreign_key_column(
    backend: StorageBackend, name: str, target: str, *, ondelete: str, self_ref: bool
) -> sa.Column[Any]:
    return sa.Column(
        name,
        backend.id_column_type(),
        # Self-reference needs use_alter to break the circular DDL dependency
        sa.ForeignKey(f"{target}.id", ondelete=ondelete, use_alter=self_ref),
        nullable=True,
    )


def _entity_columns(backend: StorageBackend, entity: EntitySpec) -> list[sa.Column[Any]]:
    columns = _base_columns(backend)
    for prop in entity.all_properties:
        if prop.name in ("id", *TIMESTAMP_COLUMNS):
            continue
        kwargs: dict[str, Any] = {"nullable": True}
        if entity.authenticable and prop.name == "email":
            kwargs["unique"] = True
        columns.append(sa.Column(prop.name, _property_column_type(backend, prop.type), **kwargs))
    return columns


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def translate(backend: StorageBackend, app_spec: AppSpec) -> PhysicalSchema:
    """Translate an app description into a physical schema for ``backend``.

    Every entity and group becomes a ``Table`` named after its class.
    Many-to-one relations add a ``<name>Id`` column to their source table,
    one-to-many relations add ``<inverse>Id`` to their target table and
    owning many-to-many relations emit a join table.

    Args:
        backend: Selected storage backend.
        app_spec: Entities and groups to translate.

    Returns:
        A ``PhysicalSchema`` holding the populated ``MetaData``.

    Raises:
        ConfigurationError: The backend type table has a gap, or a relation
            cannot be resolved.
    """
    backend.check_complete()

    concepts = app_spec.concepts
    entities: dict[str, EntitySpec] = {}
    for entity in concepts:
        if entity.class_name in entities:
            raise ConfigurationError(f"Duplicate entity class name: {entity.class_name}")
        entities[entity.class_name] = entity

    metadata = sa.MetaData(naming_convention=NAMING_CONVENTION)
    schema = PhysicalSchema(backend=backend, metadata=metadata, entities=entities)

    # Resolve first so that a bad relation fails before any table is built.
    for entity in concepts:
        schema.relations[entity.class_name] = resolve(entity, entities)

    # Foreign key columns grouped by the table that holds them.
    fk_columns: dict[str, dict[str, sa.Column[Any]]] = {name: {} for name in entities}
    for entity in concepts:
        for relation in schema.relations[entity.class_name]:
            if relation.kind == RelationKind.MANY_TO_ONE:
                holder, target, ondelete = relation.source, relation.target, "SET NULL"
            elif relation.kind == RelationKind.ONE_TO_MANY:
                holder, target = relation.target, relation.source
                ondelete = "CASCADE" if relation.nested else "SET NULL"
            else:
                continue
            assert relation.foreign_key is not None
            # A one-to-many and its inverse many-to-one share the column;
            # the nested side decides the delete rule.
            if relation.foreign_key in fk_columns[holder] and ondelete != "CASCADE":
                continue
            fk_columns[holder][relation.foreign_key] = _foreign_key_column(
                backend,
                relation.foreign_key,
                target,
                ondelete=ondelete,
                self_ref=holder == target,
            )

    for entity in concepts:
        columns = _entity_columns(backend, entity)
        taken = {c.name for c in columns}
        for fk_name, fk_column in fk_columns[entity.class_name].items():
            if fk_name in taken:
                raise ConfigurationError(
                    f"Foreign key column '{fk_name}' clashes with a property of "
                    f"{entity.class_name}"
                )
            columns.append(fk_column)
        table = sa.Table(entity.class_name, metadata, *columns)
        schema.tables[entity.class_name] = table
        logger.info(
            "Translated entity %s to table %s (%d columns, backend=%s)",
            entity.class_name,
            table.name,
            len(table.columns),
            backend.name,
        )

    for entity in concepts:
        for relation in schema.relations[entity.class_name]:
            if not relation.emits_join_table:
                continue
            assert relation.join_table and relation.join_column and relation.inverse_join_column
            join_table = sa.Table(
                relation.join_table,
                metadata,
                sa.Column(
                    relation.join_column,
                    backend.id_column_type(),
                    sa.ForeignKey(f"{relation.source}.id", ondelete="CASCADE"),
                    primary_key=True,
                ),
                sa.Column(
                    relation.inverse_join_column,
                    backend.id_column_type(),
                    sa.ForeignKey(f"{relation.target}.id", ondelete="CASCADE"),
                    primary_key=True,
                ),
            )
            schema.join_tables[relation.join_table] = join_table
            logger.info("Translated join table %s", relation.join_table)

    return schema


def get_sorted_table_names(schema: PhysicalSchema) -> list[str]:
    """Return table names in FK-dependency order (referenced tables first)."""
    return [t.name for t in schema.metadata.sorted_tables]
