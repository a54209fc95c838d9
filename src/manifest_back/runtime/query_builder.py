"""
Query compiler for the read path.

Turns a request (entity, optional id, query parameters) into an immutable
``QuerySpec`` value: projected columns, relation joins, filter conditions and
ordering. A ``QuerySpec`` is built up functionally (every step returns a new value)
and compiled to SQLAlchemy Core statements once, at execution time.

Filter keys are ``<propertyPath><suffix>``::

    ?age_gte=3&age_lte=5            -> entity.age >= 3 AND entity.age <= 5
    ?owner.name_like=%Ann%          -> entityOwner.name LIKE '%Ann%'
    ?status_in=draft,published      -> entity.status IN ('draft', 'published')
    ?status_in=a&status_in=b        -> repeated _in keys are merged into one set
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import UUID

import sqlalchemy as sa

from manifest_back.runtime.errors import BadRequestError
from manifest_back.runtime.relation_resolver import RelationDefinition
from manifest_back.runtime.sa_schema import TIMESTAMP_COLUMNS
from manifest_back.runtime.transcoders import TranscodedType
from manifest_back.specs.entity import EntitySpec, PropType, RelationKind

if TYPE_CHECKING:
    from manifest_back.runtime.schema_registry import SchemaSnapshot

logger = logging.getLogger(__name__)

ROOT_ALIAS = "entity"

QUERY_PARAMS_RESERVED_WORDS = frozenset({"page", "perPage", "orderBy", "order", "relations"})

QueryParams = Mapping[str, str | Sequence[str]]


# =============================================================================
# Operators
# =============================================================================


class WhereOperator(StrEnum):
    """Comparison operators available to filters."""

    EQUAL = "="
    NOT_EQUAL = "!="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUAL = ">="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUAL = "<="
    LIKE = "like"
    IN = "in"


WHERE_KEY_SUFFIXES: dict[str, WhereOperator] = {
    "_eq": WhereOperator.EQUAL,
    "_neq": WhereOperator.NOT_EQUAL,
    "_gt": WhereOperator.GREATER_THAN,
    "_gte": WhereOperator.GREATER_THAN_OR_EQUAL,
    "_lt": WhereOperator.LESS_THAN,
    "_lte": WhereOperator.LESS_THAN_OR_EQUAL,
    "_like": WhereOperator.LIKE,
    "_in": WhereOperator.IN,
}

_TEXT_OPERATORS = (
    WhereOperator.EQUAL,
    WhereOperator.NOT_EQUAL,
    WhereOperator.LIKE,
    WhereOperator.IN,
)
_ORDERABLE_OPERATORS = (
    WhereOperator.EQUAL,
    WhereOperator.NOT_EQUAL,
    WhereOperator.GREATER_THAN,
    WhereOperator.GREATER_THAN_OR_EQUAL,
    WhereOperator.LESS_THAN,
    WhereOperator.LESS_THAN_OR_EQUAL,
    WhereOperator.IN,
)

VALID_WHERE_OPERATORS: dict[PropType, tuple[WhereOperator, ...]] = {
    PropType.STRING: _TEXT_OPERATORS,
    PropType.TEXT: _TEXT_OPERATORS,
    PropType.RICH_TEXT: _TEXT_OPERATORS,
    PropType.EMAIL: _TEXT_OPERATORS,
    PropType.LINK: _TEXT_OPERATORS,
    PropType.FILE: _TEXT_OPERATORS,
    PropType.NUMBER: _ORDERABLE_OPERATORS,
    PropType.MONEY: _ORDERABLE_OPERATORS,
    PropType.DATE: _ORDERABLE_OPERATORS,
    PropType.TIMESTAMP: _ORDERABLE_OPERATORS,
    PropType.BOOLEAN: (WhereOperator.EQUAL, WhereOperator.NOT_EQUAL),
    PropType.CHOICE: (WhereOperator.EQUAL, WhereOperator.NOT_EQUAL, WhereOperator.IN),
    PropType.PASSWORD: (),
    PropType.LOCATION: (),
    PropType.IMAGE: (),
}

ID_OPERATORS = (WhereOperator.EQUAL, WhereOperator.NOT_EQUAL, WhereOperator.IN)


def get_valid_where_operators(prop_type: PropType) -> tuple[WhereOperator, ...]:
    return VALID_WHERE_OPERATORS.get(prop_type, ())


def parse_filter_key(key: str) -> tuple[str, str, WhereOperator]:
    """
    Split a filter key into ``(property_path, suffix, operator)``.

    The longest matching suffix wins, so ``age_gte`` is never read as
    ``age_gt`` + ``e``.

    Raises:
        BadRequestError: The key has no recognised operator suffix.
    """
    matches = [s for s in WHERE_KEY_SUFFIXES if key.endswith(s) and len(key) > len(s)]
    if not matches:
        raise BadRequestError(
            "Query param key should include an operator suffix like _eq, _gt, _lt, _in, etc."
        )
    suffix = max(matches, key=len)
    return key[: -len(suffix)], suffix, WHERE_KEY_SUFFIXES[suffix]


# =============================================================================
# Helpers
# =============================================================================


def camelize(parts: Iterable[str]) -> str:
    """``["entity", "owner"]`` -> ``entityOwner``."""
    items = [p for p in parts if p]
    if not items:
        return ""
    head, *rest = items
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def single_value(value: str | Sequence[str] | None) -> str | None:
    """Repeated query keys keep the last value."""
    if value is None or isinstance(value, str):
        return value
    return value[-1] if value else None


def parse_requested_relations(value: str | Sequence[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    raw = [value] if isinstance(value, str) else list(value)
    return tuple(r.strip() for item in raw for r in item.split(",") if r.strip())


def descend_requested(requested: Sequence[str], name: str) -> tuple[str, ...]:
    """
    Requested relations as seen from inside relation ``name``.

    ``name`` itself is removed and ``name.`` prefixes are stripped, so
    ``("owner", "owner.address", "tags")`` becomes ``("address", "tags")``.
    """
    prefix = f"{name}."
    return tuple(r.removeprefix(prefix) for r in requested if r != name)


def is_requested(requested: Sequence[str], name: str) -> bool:
    prefix = f"{name}."
    return any(r == name or r.startswith(prefix) for r in requested)


def visible_columns(entity: EntitySpec, full_version: bool = False) -> tuple[str, ...]:
    """``id`` plus every non-hidden property (hidden ones too when ``full_version``).

    Password, ``createdAt`` and ``updatedAt`` are never projected.
    """
    columns = ["id"]
    for prop in entity.all_properties:
        if prop.type == PropType.PASSWORD or prop.name == "password":
            continue
        if prop.name in ("id", *TIMESTAMP_COLUMNS):
            continue
        if prop.hidden and not full_version:
            continue
        columns.append(prop.name)
    return tuple(columns)


# =============================================================================
# Query values
# =============================================================================


@dataclass(frozen=True)
class JoinSpec:
    """One relation join. ``projected=False`` joins exist only for filtering."""

    alias: str
    parent_alias: str
    relation: RelationDefinition
    target: EntitySpec
    columns: tuple[str, ...] = ()
    projected: bool = True


@dataclass(frozen=True)
class Condition:
    alias: str
    column: str
    operator: WhereOperator
    value: Any


@dataclass(frozen=True)
class OrderSpec:
    column: str
    descending: bool = False


@dataclass(frozen=True)
class QuerySpec:
    """Immutable description of a read query against one root entity."""

    entity: EntitySpec
    columns: tuple[str, ...]
    joins: tuple[JoinSpec, ...] = ()
    conditions: tuple[Condition, ...] = ()
    order: tuple[OrderSpec, ...] = ()

    def join_for(self, alias: str) -> JoinSpec | None:
        for join in self.joins:
            if join.alias == alias:
                return join
        return None

    def with_join(self, join: JoinSpec) -> QuerySpec:
        return replace(self, joins=(*self.joins, join))

    def with_condition(self, condition: Condition) -> QuerySpec:
        return replace(self, conditions=(*self.conditions, condition))

    def with_order(self, *order: OrderSpec) -> QuerySpec:
        return replace(self, order=tuple(order))

    @property
    def projected_joins(self) -> tuple[JoinSpec, ...]:
        return tuple(j for j in self.joins if j.projected)


def select_query(entity: EntitySpec, full_version: bool = False) -> QuerySpec:
    return QuerySpec(entity=entity, columns=visible_columns(entity, full_version))


def load_relations(
    spec: QuerySpec,
    snapshot: SchemaSnapshot,
    requested: Sequence[str] = (),
    *,
    entity: EntitySpec | None = None,
    alias: str = ROOT_ALIAS,
    path: tuple[RelationDefinition, ...] = (),
) -> QuerySpec:
    """
    Join eager and requested relations, recursively.

    A relation is loaded when it is eager or requested. Eager expansion never
    walks back along the relation it just came through, nor a relation
    already on the current path, so eager cycles (A -> B -> A) terminate and
    a self-referencing eager relation loads one level deep. Explicit requests
    shrink at every level.
    """
    entity = entity or spec.entity
    entered = path[-1] if path else None

    for relation in snapshot.relations_for(entity):
        requested_here = is_requested(requested, relation.name)
        if not requested_here and not relation.eager:
            continue
        if not requested_here and (
            relation in path or (entered is not None and relation.is_inverse_of(entered))
        ):
            continue

        target = snapshot.get_entity(class_name=relation.target, include_nested=True)
        child_alias = camelize([alias, relation.name])
        spec = spec.with_join(
            JoinSpec(
                alias=child_alias,
                parent_alias=alias,
                relation=relation,
                target=target,
                columns=visible_columns(target),
            )
        )
        spec = load_relations(
            spec,
            snapshot,
            descend_requested(requested, relation.name),
            entity=target,
            alias=child_alias,
            path=(*path, relation),
        )
    return spec


def coerce_filter_value(column: sa.Column[Any], raw: str) -> Any:
    """Convert a raw query string value for comparison against ``column``.

    Raises:
        ValueError: The value cannot be represented in the column.
    """
    column_type = column.type
    if isinstance(column_type, TranscodedType):
        return column_type.transcoder.to_storage(raw)
    if isinstance(column_type, sa.Date):
        return date.fromisoformat(raw)
    return raw


def coerce_id_value(column: sa.Column[Any], raw: str) -> str:
    """Ids must be UUIDs; PostgreSQL rejects anything else at bind time.

    Raises:
        ValueError: ``raw`` is not a UUID.
    """
    UUID(raw)
    return raw


def _resolve_filter_path(
    spec: QuerySpec, snapshot: SchemaSnapshot, path: str
) -> tuple[QuerySpec, str, EntitySpec, str]:
    """Walk a dotted path, adding filter-only joins for relations not loaded."""
    *relation_names, prop_name = path.split(".")
    entity = spec.entity
    alias = ROOT_ALIAS
    for name in relation_names:
        relation = snapshot.relation(entity, name)
        if relation is None:
            raise BadRequestError(f"Property {path} does not exist in {spec.entity.class_name}")
        target = snapshot.get_entity(class_name=relation.target, include_nested=True)
        child_alias = camelize([alias, name])
        if spec.join_for(child_alias) is None:
            spec = spec.with_join(
                JoinSpec(
                    alias=child_alias,
                    parent_alias=alias,
                    relation=relation,
                    target=target,
                    projected=False,
                )
            )
        alias, entity = child_alias, target
    return spec, alias, entity, prop_name


def filter_query(
    spec: QuerySpec, snapshot: SchemaSnapshot, query_params: QueryParams | None
) -> QuerySpec:
    """Add one condition per non-reserved, non-empty query parameter."""
    for key, value in (query_params or {}).items():
        if key in QUERY_PARAMS_RESERVED_WORDS:
            continue
        if key.endswith("_in") and not isinstance(value, str):
            # Repeated _in keys widen the set
            raw = ",".join(v for v in value if v)
        else:
            raw = single_value(value)
        if not raw:
            continue

        path, suffix, operator = parse_filter_key(key)
        spec, alias, entity, prop_name = _resolve_filter_path(spec, snapshot, path)

        if prop_name == "id":
            type_name, allowed = "id", ID_OPERATORS
        else:
            prop = entity.get_property(prop_name)
            if prop is None or prop.hidden:
                raise BadRequestError(
                    f"Property {path} does not exist in {spec.entity.class_name}"
                )
            type_name, allowed = str(prop.type), get_valid_where_operators(prop.type)
        if operator not in allowed:
            operators = ", ".join(f"'{o}'" for o in allowed)
            raise BadRequestError(
                f"Operator {operator} (with '{suffix}' suffix) is not valid for property "
                f"{path}. {type_name} properties can only use the following operators: "
                f"{operators}."
            )

        column = snapshot.table_for(entity).c[prop_name]
        coerce = coerce_id_value if prop_name == "id" else coerce_filter_value
        try:
            if operator == WhereOperator.IN:
                coerced: Any = tuple(coerce(column, item) for item in raw.split(","))
            else:
                coerced = coerce(column, raw)
        except (TypeError, ValueError) as exc:
            raise BadRequestError(f"Invalid value '{raw}' for {path}") from exc

        spec = spec.with_condition(Condition(alias, prop_name, operator, coerced))
    return spec


def apply_ordering(spec: QuerySpec, query_params: QueryParams | None) -> QuerySpec:
    """Order by ``orderBy``/``order`` or, by default, newest first."""
    params = query_params or {}
    order_by = single_value(params.get("orderBy"))
    if not order_by:
        return spec.with_order(OrderSpec("createdAt", descending=True))

    prop = spec.entity.get_property(order_by)
    if order_by != "id" and (prop is None or prop.hidden or prop.type == PropType.PASSWORD):
        raise BadRequestError(
            f"Property {order_by} does not exist in {spec.entity.slug} "
            "and thus cannot be used for ordering"
        )
    descending = single_value(params.get("order")) == "DESC"
    return spec.with_order(OrderSpec(order_by, descending=descending))


def where_id(spec: QuerySpec, record_id: str) -> QuerySpec:
    return spec.with_condition(Condition(ROOT_ALIAS, "id", WhereOperator.EQUAL, record_id))


def build_query(
    snapshot: SchemaSnapshot,
    entity: EntitySpec,
    query_params: QueryParams | None = None,
    *,
    full_version: bool = False,
) -> QuerySpec:
    """Projection, relations, filters and ordering for one read request."""
    params = query_params or {}
    spec = select_query(entity, full_version)
    spec = load_relations(spec, snapshot, parse_requested_relations(params.get("relations")))
    spec = filter_query(spec, snapshot, params)
    return apply_ordering(spec, params)


# =============================================================================
# Compilation
# =============================================================================


@dataclass
class CompiledFrom:
    """Aliased tables and the FROM clause for one ``QuerySpec``."""

    root: sa.Alias
    aliases: dict[str, sa.Alias] = field(default_factory=dict)
    from_clause: Any = None


def compile_from(
    spec: QuerySpec, snapshot: SchemaSnapshot, *, projected_only: bool = False
) -> CompiledFrom:
    root = snapshot.table_for(spec.entity).alias(ROOT_ALIAS)
    compiled = CompiledFrom(root=root, aliases={ROOT_ALIAS: root}, from_clause=root)

    for join in spec.joins:
        if projected_only and not join.projected:
            continue
        parent = compiled.aliases[join.parent_alias]
        target = snapshot.table_for(join.target).alias(join.alias)
        relation = join.relation
        if relation.kind == RelationKind.MANY_TO_ONE:
            compiled.from_clause = compiled.from_clause.outerjoin(
                target, target.c.id == parent.c[relation.foreign_key]
            )
        elif relation.kind == RelationKind.ONE_TO_MANY:
            compiled.from_clause = compiled.from_clause.outerjoin(
                target, target.c[relation.foreign_key] == parent.c.id
            )
        else:
            link = snapshot.schema.join_tables[relation.join_table].alias(f"{join.alias}Link")
            compiled.from_clause = compiled.from_clause.outerjoin(
                link, link.c[relation.join_column] == parent.c.id
            ).outerjoin(target, target.c.id == link.c[relation.inverse_join_column])
        compiled.aliases[join.alias] = target
    return compiled


def _condition_clause(compiled: CompiledFrom, condition: Condition) -> sa.ColumnElement[bool]:
    column = compiled.aliases[condition.alias].c[condition.column]
    value = condition.value
    match condition.operator:
        case WhereOperator.EQUAL:
            return column == value
        case WhereOperator.NOT_EQUAL:
            return column != value
        case WhereOperator.GREATER_THAN:
            return column > value
        case WhereOperator.GREATER_THAN_OR_EQUAL:
            return column >= value
        case WhereOperator.LESS_THAN:
            return column < value
        case WhereOperator.LESS_THAN_OR_EQUAL:
            return column <= value
        case WhereOperator.LIKE:
            return column.like(value)
        case WhereOperator.IN:
            return column.in_(list(value))
    raise BadRequestError(f"Unsupported operator {condition.operator}")


def _where(compiled: CompiledFrom, spec: QuerySpec) -> list[sa.ColumnElement[bool]]:
    return [_condition_clause(compiled, c) for c in spec.conditions]


def _order_columns(compiled: CompiledFrom, spec: QuerySpec) -> list[sa.Column[Any]]:
    return [compiled.root.c[o.column] for o in spec.order if o.column != "id"]


def id_select(spec: QuerySpec, snapshot: SchemaSnapshot) -> sa.Select[Any]:
    """Distinct root ids matching the filters, in request order.

    ``id`` is always the final tie-breaker so pages are stable.
    """
    compiled = compile_from(spec, snapshot)
    root = compiled.root
    order_by = [
        root.c[o.column].desc() if o.descending else root.c[o.column].asc() for o in spec.order
    ]
    if not any(o.column == "id" for o in spec.order):
        order_by.append(root.c.id.asc())
    return (
        sa.select(root.c.id, *_order_columns(compiled, spec))
        .select_from(compiled.from_clause)
        .where(*_where(compiled, spec))
        .distinct()
        .order_by(*order_by)
    )


def count_select(spec: QuerySpec, snapshot: SchemaSnapshot) -> sa.Select[Any]:
    compiled = compile_from(spec, snapshot)
    ids = (
        sa.select(compiled.root.c.id)
        .select_from(compiled.from_clause)
        .where(*_where(compiled, spec))
        .distinct()
        .subquery()
    )
    return sa.select(sa.func.count()).select_from(ids)


def _label(alias: str, column: str) -> str:
    return f"{alias}__{column}"


def data_select(spec: QuerySpec, snapshot: SchemaSnapshot, ids: Sequence[str]) -> sa.Select[Any]:
    """Projected rows for the given root ids, joined with loaded relations."""
    compiled = compile_from(spec, snapshot, projected_only=True)
    root = compiled.root
    selected = [root.c[c].label(_label(ROOT_ALIAS, c)) for c in spec.columns]
    order_by: list[Any] = []
    for join in spec.projected_joins:
        target = compiled.aliases[join.alias]
        selected.extend(target.c[c].label(_label(join.alias, c)) for c in join.columns)
        order_by.extend([target.c.createdAt.asc(), target.c.id.asc()])
    return (
        sa.select(*selected)
        .select_from(compiled.from_clause)
        .where(root.c.id.in_(list(ids)))
        .order_by(*order_by)
    )


def _plain(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def hydrate(
    spec: QuerySpec, rows: Iterable[Mapping[str, Any]], ids: Sequence[str]
) -> list[dict[str, Any]]:
    """
    Fold flat joined rows into nested records, in the order of ``ids``.

    To-one relations become a dict or ``None``; to-many relations become a
    list without duplicates.
    """
    joins = spec.projected_joins
    children: dict[str, list[JoinSpec]] = {}
    for join in joins:
        children.setdefault(join.parent_alias, []).append(join)

    def build(alias: str, columns: Sequence[str], row: Mapping[str, Any]) -> dict[str, Any]:
        record = {c: _plain(row[_label(alias, c)]) for c in columns}
        for child in children.get(alias, []):
            record[child.relation.name] = [] if child.relation.is_to_many else None
        return record

    roots: dict[str, dict[str, Any]] = {}
    seen: dict[tuple[str, int, Any], dict[str, Any]] = {}

    for row in rows:
        root_id = row[_label(ROOT_ALIAS, "id")]
        if root_id not in roots:
            roots[root_id] = build(ROOT_ALIAS, spec.columns, row)
        current: dict[str, dict[str, Any] | None] = {ROOT_ALIAS: roots[root_id]}

        for join in joins:
            parent = current.get(join.parent_alias)
            child_id = row[_label(join.alias, "id")]
            if parent is None or child_id is None:
                current[join.alias] = None
                continue
            key = (join.alias, id(parent), child_id)
            record = seen.get(key)
            if record is None:
                record = build(join.alias, join.columns, row)
                seen[key] = record
                if join.relation.is_to_many:
                    parent[join.relation.name].append(record)
                else:
                    parent[join.relation.name] = record
            current[join.alias] = record

    return [roots[i] for i in ids if i in roots]


def fetch_records(
    connection: sa.Connection, snapshot: SchemaSnapshot, spec: QuerySpec, ids: Sequence[str]
) -> list[dict[str, Any]]:
    """Load and hydrate the records for ``ids`` (already filtered and ordered)."""
    if not ids:
        return []
    statement = data_select(spec, snapshot, ids)
    logger.debug("Data query for %s: %s", spec.entity.class_name, statement)
    rows = connection.execute(statement).mappings().all()
    return hydrate(spec, rows, ids)
