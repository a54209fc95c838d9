"""
Generic CRUD service.

Serves every entity of the current schema snapshot without per-entity code:
reads compile a ``QuerySpec`` from the request parameters, writes filter the
payload to known columns, resolve relation references, hash passwords,
validate and persist. Each public operation is one unit of work on a single
database transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from pydantic import BaseModel

from manifest_back.runtime.config import EngineSettings
from manifest_back.runtime.crypto import hash_password
from manifest_back.runtime.errors import (
    BadRequestError,
    DeleteBlockedError,
    NotFoundError,
    RecordValidationError,
)
from manifest_back.runtime.logging import get_crud_logger, log_with_context
from manifest_back.runtime.pagination import Paginator, paginate
from manifest_back.runtime.query_builder import (
    QueryParams,
    QuerySpec,
    build_query,
    fetch_records,
    id_select,
    load_relations,
    select_query,
    single_value,
    where_id,
)
from manifest_back.runtime.relation_resolver import RelationDefinition
from manifest_back.runtime.repository import DatabaseManager
from manifest_back.runtime.schema_registry import SchemaRegistry, SchemaSnapshot
from manifest_back.runtime.validation import PropertyValidator, ValidationGateway
from manifest_back.specs.entity import EntitySpec, PropType, RelationKind

logger = get_crud_logger()

# Resolved relation reference: a related id, a list of related ids, or a cleared link.
RelationValue = str | list[str] | None


class SelectOption(BaseModel):
    """One ``{id, label}`` pair for select inputs."""

    id: str
    label: Any = None


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


def _is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def _int_param(value: str | Sequence[str] | None, default: int) -> int:
    """Parse a numeric query parameter; missing, invalid or zero gives ``default``."""
    raw = single_value(value)
    try:
        parsed = int(raw) if raw else 0
    except ValueError:
        parsed = 0
    return parsed or default


def _as_id_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, (list, tuple, set)):
        items = [str(v) for v in value if v not in (None, "")]
    else:
        items = [str(value)]
    # Keep first occurrence order
    return list(dict.fromkeys(items))


class CrudService:
    """
    CRUD and query operations for every entity of a schema registry.

    Args:
        registry: Holder of the current schema snapshot
        database: Database manager providing the unit of work
        validator: Validation gateway (defaults to ``PropertyValidator``)
        settings: Engine settings (page size, hashing cost)
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        database: DatabaseManager,
        validator: ValidationGateway | None = None,
        settings: EngineSettings | None = None,
    ):
        self.registry = registry
        self.database = database
        self.validator: ValidationGateway = validator or PropertyValidator()
        self.settings = settings or EngineSettings()

    # =========================================================================
    # Read path
    # =========================================================================

    def find_all(
        self,
        entity_slug: str,
        query_params: QueryParams | None = None,
        full_version: bool = False,
    ) -> Paginator:
        """
        Return a page of records.

        Args:
            entity_slug: Collection slug
            query_params: Filters plus ``page``, ``perPage``, ``orderBy``,
                ``order`` and ``relations``
            full_version: Include hidden properties

        Returns:
            Paginator with the matching records
        """
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        return self._find_all(snapshot, entity, query_params or {}, full_version)

    def _find_all(
        self,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        params: QueryParams,
        full_version: bool,
    ) -> Paginator:
        query = build_query(snapshot, entity, params, full_version=full_version)
        with self.database.connection() as conn:
            return paginate(
                conn,
                snapshot,
                query,
                current_page=_int_param(params.get("page"), 1),
                results_per_page=_int_param(
                    params.get("perPage"), self.settings.default_results_per_page
                ),
            )

    def find_select_options(
        self, entity_slug: str, query_params: QueryParams | None = None
    ) -> list[SelectOption]:
        """All matching records as ``{id, label}`` pairs, labelled by the main property."""
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        params = {**(query_params or {}), "perPage": "-1"}
        page = self._find_all(snapshot, entity, params, full_version=False)
        label_prop = entity.display_prop
        return [SelectOption(id=item["id"], label=item.get(label_prop)) for item in page.data]

    def find_one(
        self,
        entity_slug: str,
        id: str | None = None,
        query_params: QueryParams | None = None,
        full_version: bool = False,
    ) -> dict[str, Any]:
        """
        Return a single record.

        ``single`` entities ignore ``id``; every other entity requires it.

        Raises:
            BadRequestError: Missing id for a collection
            NotFoundError: No such record
        """
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        if not entity.single and not id:
            raise BadRequestError("Id is required for collections.")

        query = build_query(snapshot, entity, query_params, full_version=full_version)
        if not entity.single:
            if not _is_uuid(id):
                raise NotFoundError("Item not found")
            query = where_id(query, str(id))

        with self.database.connection() as conn:
            record = self._first(conn, snapshot, query)
        if record is None:
            raise NotFoundError("Item not found")
        return record

    def _first(
        self, conn: sa.Connection, snapshot: SchemaSnapshot, query: QuerySpec
    ) -> dict[str, Any] | None:
        ids = [row[0] for row in conn.execute(id_select(query, snapshot).limit(1))]
        records = fetch_records(conn, snapshot, query, ids)
        return records[0] if records else None

    def _load_stored(
        self, conn: sa.Connection, snapshot: SchemaSnapshot, entity: EntitySpec, record_id: str
    ) -> dict[str, Any]:
        """Full projection (no password) with eager relations, after a write."""
        query = load_relations(select_query(entity, full_version=True), snapshot)
        record = self._first(conn, snapshot, where_id(query, record_id))
        if record is None:
            raise NotFoundError("Item not found")
        return record

    # =========================================================================
    # Payload helpers
    # =========================================================================

    @staticmethod
    def _is_nested_collection(snapshot: SchemaSnapshot, relation: RelationDefinition) -> bool:
        return relation.kind == RelationKind.ONE_TO_MANY and (
            relation.nested or snapshot.schema.entities[relation.target].nested
        )

    def _nested_children(
        self, snapshot: SchemaSnapshot, entity: EntitySpec
    ) -> dict[str, EntitySpec]:
        """Nested one-to-many relation names mapped to their child entity."""
        return {
            relation.name: snapshot.schema.entities[relation.target]
            for relation in snapshot.relations_for(entity)
            if self._is_nested_collection(snapshot, relation)
        }

    def filter_valid_properties(
        self, snapshot: SchemaSnapshot, entity: EntitySpec, item_dto: Mapping[str, Any]
    ) -> dict[str, Any]:
        """
        Keep only keys the engine knows how to store.

        Valid keys are property columns, relation reference keys (``ownerId``
        for many-to-one, ``tagIds`` for owning many-to-many) and nested
        one-to-many relation names. Everything else is dropped silently.
        """
        allowed = {p.name for p in entity.all_properties}
        nested = self._nested_children(snapshot, entity)
        for relationship in entity.relationships:
            if relationship.persists_link:
                allowed.add(relationship.foreign_key_name)
            elif relationship.name in nested:
                allowed.add(relationship.name)
        return {key: value for key, value in item_dto.items() if key in allowed}

    def create_with_defaults(
        self, entity: EntitySpec, item_dto: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Candidate record with defaults applied to absent properties."""
        record = dict(item_dto)
        for prop in entity.all_properties:
            if prop.default is not None and prop.name not in record:
                record[prop.name] = prop.default
        return record

    def fetch_relation_items(
        self,
        conn: sa.Connection,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        item_dto: Mapping[str, Any],
        empty_missing: bool = False,
    ) -> dict[str, RelationValue]:
        """
        Resolve relation reference keys of the payload to stored ids.

        With ``empty_missing`` a relation absent from the payload resolves to
        ``None`` (many-to-one) or ``[]`` (many-to-many) so it gets cleared;
        otherwise it is left out.

        Raises:
            BadRequestError: A referenced id does not exist
        """
        items: dict[str, RelationValue] = {}
        for relationship in entity.relationships:
            if not relationship.persists_link:
                continue
            key = relationship.foreign_key_name
            if key not in item_dto:
                if empty_missing:
                    items[relationship.name] = [] if relationship.is_to_many else None
                continue

            target = snapshot.table_for(relationship.entity)
            value = item_dto[key]
            if relationship.type == RelationKind.MANY_TO_ONE:
                if value is None or value == "":
                    items[relationship.name] = None
                    continue
                self._require_existing(conn, target, [str(value)], relationship.name)
                items[relationship.name] = str(value)
            else:
                ids = _as_id_list(value)
                self._require_existing(conn, target, ids, relationship.name)
                items[relationship.name] = ids
        return items

    def _require_existing(
        self, conn: sa.Connection, table: sa.Table, ids: list[str], relation: str
    ) -> None:
        if not ids:
            return
        valid = [i for i in ids if _is_uuid(i)]
        found: set[str] = set()
        if valid:
            statement = sa.select(table.c.id).where(table.c.id.in_(valid))
            found = {str(i) for i in conn.execute(statement).scalars()}
        missing = [i for i in ids if i not in found]
        if missing:
            raise BadRequestError(
                f"Related item not found for {relation}: {', '.join(missing)}"
            )

    def _hash(self, password: str) -> str:
        return hash_password(password, iterations=self.settings.password_hash_iterations)

    def _hash_passwords(self, entity: EntitySpec, record: dict[str, Any]) -> None:
        for prop in entity.all_properties:
            value = record.get(prop.name)
            if prop.type == PropType.PASSWORD and isinstance(value, str) and value:
                record[prop.name] = self._hash(value)

    def _prepare_children(
        self,
        snapshot: SchemaSnapshot,
        children: Mapping[str, EntitySpec],
        record: dict[str, Any],
    ) -> None:
        """Filter, default and hash each nested child payload in place."""
        for name, child_entity in children.items():
            items = record.get(name)
            if not isinstance(items, list):
                continue
            prepared: list[Any] = []
            for item in items:
                if not isinstance(item, Mapping):
                    prepared.append(item)
                    continue
                child = self.create_with_defaults(
                    child_entity, self.filter_valid_properties(snapshot, child_entity, item)
                )
                self._hash_passwords(child_entity, child)
                prepared.append(child)
            record[name] = prepared

    def _validate(
        self,
        record: Mapping[str, Any],
        entity: EntitySpec,
        children: Mapping[str, EntitySpec],
        *,
        is_update: bool = False,
    ) -> None:
        violations = self.validator.validate(
            record, entity, is_update=is_update, children=children
        )
        if violations:
            log_with_context(
                logger,
                logging.INFO,
                f"Validation failed for {entity.class_name}",
                entity=entity.class_name,
                properties=[v.property for v in violations],
            )
            raise RecordValidationError(violations)

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    @staticmethod
    def _column_values(entity: EntitySpec, record: Mapping[str, Any]) -> dict[str, Any]:
        return {
            prop.name: record[prop.name]
            for prop in entity.all_properties
            if prop.name in record and prop.name != "id"
        }

    @staticmethod
    def _foreign_key_values(
        snapshot: SchemaSnapshot, entity: EntitySpec, relation_items: Mapping[str, RelationValue]
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for relation in snapshot.relations_for(entity):
            if relation.kind == RelationKind.MANY_TO_ONE and relation.name in relation_items:
                assert relation.foreign_key is not None
                values[relation.foreign_key] = relation_items[relation.name]
        return values

    def _insert_row(
        self,
        conn: sa.Connection,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        record_id: str,
        record: Mapping[str, Any],
        relation_items: Mapping[str, RelationValue],
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        now = _now()
        values: dict[str, Any] = {"id": record_id, "createdAt": now, "updatedAt": now}
        values.update(self._column_values(entity, record))
        values.update(self._foreign_key_values(snapshot, entity, relation_items))
        values.update(extra or {})
        conn.execute(snapshot.table_for(entity).insert().values(**values))

    @staticmethod
    def _replace_links(
        conn: sa.Connection,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        record_id: str,
        relation_items: Mapping[str, RelationValue],
        replace_existing: bool = False,
    ) -> None:
        """Write join table rows of owning many-to-many relations present in ``relation_items``."""
        for relation in snapshot.relations_for(entity):
            if not relation.emits_join_table or relation.name not in relation_items:
                continue
            assert relation.join_table and relation.join_column and relation.inverse_join_column
            link = snapshot.schema.join_tables[relation.join_table]
            if replace_existing:
                conn.execute(link.delete().where(link.c[relation.join_column] == record_id))
            ids = relation_items[relation.name] or []
            if ids:
                conn.execute(
                    link.insert(),
                    [
                        {relation.join_column: record_id, relation.inverse_join_column: i}
                        for i in ids
                    ],
                )

    def _insert_children(
        self,
        conn: sa.Connection,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        parent_id: str,
        record: Mapping[str, Any],
        children: Mapping[str, EntitySpec],
    ) -> None:
        for name, child_entity in children.items():
            items = record.get(name)
            if not isinstance(items, list):
                continue
            relation = snapshot.relation(entity, name)
            assert relation is not None and relation.foreign_key is not None
            for item in items:
                child_relations = self.fetch_relation_items(conn, snapshot, child_entity, item)
                child_id = _new_id()
                self._insert_row(
                    conn,
                    snapshot,
                    child_entity,
                    child_id,
                    item,
                    child_relations,
                    extra={relation.foreign_key: parent_id},
                )
                self._replace_links(conn, snapshot, child_entity, child_id, child_relations)

    def _delete_rows(
        self,
        conn: sa.Connection,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        ids: list[str],
    ) -> None:
        """Delete rows with their nested children and many-to-many links."""
        for relation in snapshot.relations_for(entity):
            if self._is_nested_collection(snapshot, relation):
                child_entity = snapshot.schema.entities[relation.target]
                child_table = snapshot.table_for(child_entity)
                child_ids = list(
                    conn.execute(
                        sa.select(child_table.c.id).where(
                            child_table.c[relation.foreign_key].in_(ids)
                        )
                    ).scalars()
                )
                if child_ids:
                    self._delete_rows(conn, snapshot, child_entity, child_ids)
            elif relation.kind == RelationKind.MANY_TO_MANY:
                assert relation.join_table and relation.join_column
                link = snapshot.schema.join_tables[relation.join_table]
                conn.execute(link.delete().where(link.c[relation.join_column].in_(ids)))
        table = snapshot.table_for(entity)
        conn.execute(table.delete().where(table.c.id.in_(ids)))

    def _load_row(
        self,
        conn: sa.Connection,
        snapshot: SchemaSnapshot,
        entity: EntitySpec,
        id: str | None,
    ) -> dict[str, Any]:
        """Stored property values of one row (``single`` entities: the only row)."""
        table = snapshot.table_for(entity)
        statement = sa.select(table)
        if entity.single:
            statement = statement.order_by(table.c.createdAt.desc()).limit(1)
        else:
            if not _is_uuid(id):
                raise NotFoundError("Item not found")
            statement = statement.where(table.c.id == str(id))
        row = conn.execute(statement).mappings().first()
        if row is None:
            raise NotFoundError("Item not found")
        record: dict[str, Any] = {"id": row["id"]}
        for prop in entity.all_properties:
            record[prop.name] = row[prop.name]
        return record

    # =========================================================================
    # Write path
    # =========================================================================

    def store(self, entity_slug: str, item_dto: Mapping[str, Any]) -> dict[str, Any]:
        """
        Create a record.

        Raises:
            BadRequestError: A referenced related id does not exist
            RecordValidationError: The candidate violates its constraints
        """
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        children = self._nested_children(snapshot, entity)

        with self.database.connection() as conn:
            relation_items = self.fetch_relation_items(conn, snapshot, entity, item_dto)
            record = self.create_with_defaults(
                entity, self.filter_valid_properties(snapshot, entity, item_dto)
            )
            self._prepare_children(snapshot, children, record)
            self._hash_passwords(entity, record)
            self._validate(record, entity, children)

            record_id = _new_id()
            self._insert_row(conn, snapshot, entity, record_id, record, relation_items)
            self._replace_links(conn, snapshot, entity, record_id, relation_items)
            self._insert_children(conn, snapshot, entity, record_id, record, children)
            stored = self._load_stored(conn, snapshot, entity, record_id)

        log_with_context(
            logger,
            logging.INFO,
            f"Stored {entity.class_name}",
            entity=entity.class_name,
            id=record_id,
        )
        return stored

    def store_empty(self, entity_slug: str) -> dict[str, Any]:
        """Create a record with only id and timestamps, bypassing validation."""
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        with self.database.connection() as conn:
            record_id = _new_id()
            self._insert_row(conn, snapshot, entity, record_id, {}, {})
            stored = self._load_stored(conn, snapshot, entity, record_id)
        log_with_context(
            logger,
            logging.INFO,
            f"Stored empty {entity.class_name}",
            entity=entity.class_name,
            id=record_id,
        )
        return stored

    def update(
        self,
        entity_slug: str,
        id: str | None = None,
        item_dto: Mapping[str, Any] | None = None,
        partial_replacement: bool = False,
    ) -> dict[str, Any]:
        """
        Update a record.

        Full replacement (the default) clears properties and relations
        missing from the payload. Partial replacement merges the payload over
        the stored record and leaves omitted relations untouched. The stored
        password is kept unless a new non-empty one is supplied.

        Raises:
            BadRequestError: Missing id for a collection, or unknown related id
            NotFoundError: No such record
            RecordValidationError: The candidate violates its constraints
        """
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        if not entity.single and not id:
            raise BadRequestError("Id is required for collections.")
        item_dto = item_dto or {}
        children = self._nested_children(snapshot, entity)
        password_props = [p.name for p in entity.all_properties if p.type == PropType.PASSWORD]

        with self.database.connection() as conn:
            existing = self._load_row(conn, snapshot, entity, id)
            for name in password_props:
                existing.pop(name, None)

            relation_items = self.fetch_relation_items(
                conn, snapshot, entity, item_dto, empty_missing=not partial_replacement
            )
            filtered = self.filter_valid_properties(snapshot, entity, item_dto)
            if partial_replacement:
                filtered = {**existing, **filtered}
                # An explicit null still clears a many-to-one; empty lists keep the links
                relation_items = {
                    name: value for name, value in relation_items.items() if value != []
                }

            candidate: dict[str, Any] = {**filtered, "id": existing["id"]}
            self._prepare_children(snapshot, children, candidate)
            for name in password_props:
                value = candidate.get(name)
                if isinstance(value, str) and value:
                    candidate[name] = self._hash(value)
                elif value is None or value == "":
                    candidate.pop(name, None)

            self._validate(candidate, entity, children, is_update=True)

            values: dict[str, Any] = {"updatedAt": _now()}
            for prop in entity.all_properties:
                if prop.name == "id":
                    continue
                if prop.name in password_props and prop.name not in candidate:
                    continue
                values[prop.name] = candidate.get(prop.name)
            values.update(self._foreign_key_values(snapshot, entity, relation_items))

            table = snapshot.table_for(entity)
            record_id = existing["id"]
            conn.execute(table.update().where(table.c.id == record_id).values(**values))
            self._replace_links(
                conn, snapshot, entity, record_id, relation_items, replace_existing=True
            )

            supplied = {name: child for name, child in children.items() if name in candidate}
            for name, child_entity in supplied.items():
                relation = snapshot.relation(entity, name)
                assert relation is not None and relation.foreign_key is not None
                child_table = snapshot.table_for(child_entity)
                old_ids = list(
                    conn.execute(
                        sa.select(child_table.c.id).where(
                            child_table.c[relation.foreign_key] == record_id
                        )
                    ).scalars()
                )
                if old_ids:
                    self._delete_rows(conn, snapshot, child_entity, old_ids)
            self._insert_children(conn, snapshot, entity, record_id, candidate, supplied)

            stored = self._load_stored(conn, snapshot, entity, record_id)

        log_with_context(
            logger,
            logging.INFO,
            f"Updated {entity.class_name}",
            entity=entity.class_name,
            id=record_id,
            partial=partial_replacement,
        )
        return stored

    def delete(self, entity_slug: str, id: str | None) -> dict[str, Any]:
        """
        Delete a record and return its pre-deletion snapshot.

        Nested children and many-to-many links go with it. A non-empty,
        non-nested one-to-many collection blocks the delete.

        Raises:
            BadRequestError: Missing id for a collection
            DeleteBlockedError: The record still has non-nested children
            NotFoundError: No such record
        """
        snapshot = self.registry.snapshot
        entity = snapshot.get_entity(slug=entity_slug)
        if not entity.single and not id:
            raise BadRequestError("Id is required for collections.")

        with self.database.connection() as conn:
            record_id = self._load_row(conn, snapshot, entity, id)["id"]
            record = self._load_stored(conn, snapshot, entity, record_id)

            for relation in snapshot.relations_for(entity):
                if relation.kind != RelationKind.ONE_TO_MANY:
                    continue
                if self._is_nested_collection(snapshot, relation):
                    continue
                child_table = snapshot.table_for(relation.target)
                count = conn.execute(
                    sa.select(sa.func.count())
                    .select_from(child_table)
                    .where(child_table.c[relation.foreign_key] == record_id)
                ).scalar_one()
                if count:
                    log_with_context(
                        logger,
                        logging.WARNING,
                        f"Delete of {entity.class_name} blocked by {relation.name}",
                        entity=entity.class_name,
                        id=record_id,
                        relation=relation.name,
                        count=count,
                    )
                    raise DeleteBlockedError(relation.name)

            self._delete_rows(conn, snapshot, entity, [record_id])

        log_with_context(
            logger,
            logging.INFO,
            f"Deleted {entity.class_name}",
            entity=entity.class_name,
            id=record_id,
        )
        return record
