"""
Relationship resolver.

Turns abstract relationship descriptions into physical relation definitions:
which table holds the foreign key, which join table links many-to-many
relations and which side owns the link.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from manifest_back.runtime.errors import ConfigurationError
from manifest_back.specs.entity import EntitySpec, RelationKind, RelationshipSpec, lower_first


@dataclass(frozen=True)
class RelationDefinition:
    """Physical definition of one relation, seen from its source entity."""

    name: str
    kind: RelationKind
    source: str
    target: str
    eager: bool = False
    nested: bool = False
    owning_side: bool = False
    # many-to-one: column on the source table; one-to-many: column on the target table
    foreign_key: str | None = None
    # many-to-many only
    join_table: str | None = None
    join_column: str | None = None  # points at the source row
    inverse_join_column: str | None = None  # points at the target row

    @property
    def is_to_many(self) -> bool:
        return self.kind in (RelationKind.ONE_TO_MANY, RelationKind.MANY_TO_MANY)

    @property
    def emits_join_table(self) -> bool:
        return self.kind == RelationKind.MANY_TO_MANY and self.owning_side

    def is_inverse_of(self, other: RelationDefinition) -> bool:
        """True when both relations walk the same foreign key or join table."""
        if self.source != other.target or self.target != other.source:
            return False
        if self.join_table is not None:
            return self.join_table == other.join_table
        return self.foreign_key is not None and self.foreign_key == other.foreign_key


def join_table_name(source: str, relation: str, target: str) -> str:
    return f"{source}_{relation}_{target}"


def join_table_columns(source: str, target: str) -> tuple[str, str]:
    """Column names of a many-to-many join table: (source side, target side)."""
    source_col = f"{lower_first(source)}Id"
    target_col = f"{lower_first(target)}Id"
    if source_col == target_col:
        # Self-referencing many-to-many
        target_col = f"related{target}Id"
    return source_col, target_col


def one_to_many_foreign_key(entity: EntitySpec, relationship: RelationshipSpec) -> str:
    inverse = relationship.inverse_side or lower_first(entity.class_name)
    return f"{inverse}Id"


def _find_owning_side(
    entity: EntitySpec, relationship: RelationshipSpec, target: EntitySpec
) -> RelationshipSpec:
    for candidate in target.relationships:
        if candidate.type != RelationKind.MANY_TO_MANY or not candidate.owning_side:
            continue
        if candidate.entity != entity.class_name:
            continue
        if relationship.inverse_side and candidate.name != relationship.inverse_side:
            continue
        return candidate
    raise ConfigurationError(
        f"Many-to-many relation {entity.class_name}.{relationship.name} has no owning side "
        f"on {target.class_name}"
    )


def resolve_relationship(
    entity: EntitySpec,
    relationship: RelationshipSpec,
    entities: Mapping[str, EntitySpec],
) -> RelationDefinition:
    """Resolve one relationship of ``entity`` against the full entity registry."""
    target = entities.get(relationship.entity)
    if target is None:
        raise ConfigurationError(
            f"Relation {entity.class_name}.{relationship.name} targets unknown entity "
            f"'{relationship.entity}'"
        )

    common = {
        "name": relationship.name,
        "kind": relationship.type,
        "source": entity.class_name,
        "target": target.class_name,
        "eager": relationship.eager,
        "nested": relationship.nested,
        "owning_side": relationship.owning_side,
    }

    if relationship.type == RelationKind.MANY_TO_ONE:
        return RelationDefinition(**common, foreign_key=f"{relationship.name}Id")

    if relationship.type == RelationKind.ONE_TO_MANY:
        return RelationDefinition(
            **common, foreign_key=one_to_many_foreign_key(entity, relationship)
        )

    if relationship.owning_side:
        source_col, target_col = join_table_columns(entity.class_name, target.class_name)
        return RelationDefinition(
            **common,
            join_table=join_table_name(entity.class_name, relationship.name, target.class_name),
            join_column=source_col,
            inverse_join_column=target_col,
        )

    # Non-owning many-to-many reuses the owner's join table with the columns swapped.
    owner = _find_owning_side(entity, relationship, target)
    owner_col, owned_col = join_table_columns(target.class_name, entity.class_name)
    return RelationDefinition(
        **common,
        join_table=join_table_name(target.class_name, owner.name, entity.class_name),
        join_column=owned_col,
        inverse_join_column=owner_col,
    )


def resolve(entity: EntitySpec, entities: Mapping[str, EntitySpec]) -> list[RelationDefinition]:
    """Resolve every relationship of ``entity``."""
    return [resolve_relationship(entity, rel, entities) for rel in entity.relationships]
