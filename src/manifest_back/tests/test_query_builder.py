"""
Tests for the query compiler.

Tests filter parsing, relation loading, ordering and row hydration.
"""

from __future__ import annotations

from uuid import uuid4

import pytest

from manifest_back.runtime.errors import BadRequestError
from manifest_back.runtime.query_builder import (
    Condition,
    JoinSpec,
    OrderSpec,
    QuerySpec,
    WhereOperator,
    apply_ordering,
    build_query,
    camelize,
    descend_requested,
    filter_query,
    hydrate,
    id_select,
    is_requested,
    parse_filter_key,
    parse_requested_relations,
    select_query,
    visible_columns,
)
from manifest_back.runtime.schema_registry import SchemaRegistry, SchemaSnapshot
from manifest_back.specs.entity import AppSpec


@pytest.fixture
def snapshot(registry: SchemaRegistry) -> SchemaSnapshot:
    return registry.snapshot


# =============================================================================
# Filter keys
# =============================================================================


class TestParseFilterKey:
    @pytest.mark.parametrize(
        "key,path,suffix,operator",
        [
            ("age_eq", "age", "_eq", WhereOperator.EQUAL),
            ("age_neq", "age", "_neq", WhereOperator.NOT_EQUAL),
            ("age_gt", "age", "_gt", WhereOperator.GREATER_THAN),
            ("age_gte", "age", "_gte", WhereOperator.GREATER_THAN_OR_EQUAL),
            ("age_lt", "age", "_lt", WhereOperator.LESS_THAN),
            ("age_lte", "age", "_lte", WhereOperator.LESS_THAN_OR_EQUAL),
            ("name_like", "name", "_like", WhereOperator.LIKE),
            ("owner.name_in", "owner.name", "_in", WhereOperator.IN),
        ],
    )
    def test_suffixes(
        self, key: str, path: str, suffix: str, operator: WhereOperator
    ) -> None:
        assert parse_filter_key(key) == (path, suffix, operator)

    def test_missing_suffix(self) -> None:
        with pytest.raises(BadRequestError, match="operator suffix"):
            parse_filter_key("name")

    def test_suffix_alone_is_not_a_key(self) -> None:
        with pytest.raises(BadRequestError):
            parse_filter_key("_eq")


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    def test_camelize(self) -> None:
        assert camelize(["entity", "owner", "address"]) == "entityOwnerAddress"
        assert camelize([]) == ""

    def test_parse_requested_relations(self) -> None:
        assert parse_requested_relations("owner, tags") == ("owner", "tags")
        assert parse_requested_relations(["owner", "tags,owner.dogs"]) == (
            "owner",
            "tags",
            "owner.dogs",
        )
        assert parse_requested_relations(None) == ()

    def test_descend_requested(self) -> None:
        requested = ("owner", "owner.address", "tags")
        assert descend_requested(requested, "owner") == ("address", "tags")

    def test_is_requested(self) -> None:
        assert is_requested(("owner.dogs",), "owner")
        assert not is_requested(("owners",), "owner")

    def test_visible_columns(self, registry: SchemaRegistry) -> None:
        owner = registry.get_entity(slug="owners")
        assert visible_columns(owner) == ("id", "name")
        assert visible_columns(owner, full_version=True) == ("id", "name", "secretNote")

    def test_password_never_projected(self, registry: SchemaRegistry) -> None:
        user = registry.get_entity(slug="super-users")
        assert "password" not in visible_columns(user, full_version=True)
        assert visible_columns(user) == ("id", "email", "name")


# =============================================================================
# Relation loading
# =============================================================================


class TestLoadRelations:
    def test_no_relations_by_default(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(snapshot, snapshot.get_entity(slug="dogs"))
        assert spec.joins == ()

    def test_requested_relation(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(snapshot, snapshot.get_entity(slug="dogs"), {"relations": "owner"})
        (join,) = spec.joins
        assert join.alias == "entityOwner"
        assert join.parent_alias == "entity"
        assert join.projected
        assert join.columns == ("id", "name")

    def test_nested_request(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(
            snapshot, snapshot.get_entity(slug="dogs"), {"relations": "owner.dogs"}
        )
        assert [j.alias for j in spec.joins] == ["entityOwner", "entityOwnerDogs"]

    def test_eager_cycle_terminates(self, snapshot: SchemaSnapshot) -> None:
        people = build_query(snapshot, snapshot.get_entity(slug="people"))
        assert [j.alias for j in people.joins] == ["entityTeam"]

        teams = build_query(snapshot, snapshot.get_entity(slug="teams"))
        assert [j.alias for j in teams.joins] == ["entityMembers"]

    def test_explicit_request_reenters_cycle(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(
            snapshot, snapshot.get_entity(slug="people"), {"relations": "team.members"}
        )
        assert [j.alias for j in spec.joins] == ["entityTeam", "entityTeamMembers"]


class TestSelfReference:
    @pytest.fixture
    def app_spec(self, staff_spec: AppSpec) -> AppSpec:
        return staff_spec

    def test_eager_self_reference_loads_one_level(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(snapshot, snapshot.get_entity(slug="employees"))
        (join,) = spec.joins
        assert join.alias == "entityManager"
        assert join.relation.target == "Employee"
        assert join.columns == ("id", "name")

    def test_explicit_request_goes_deeper(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(
            snapshot, snapshot.get_entity(slug="employees"), {"relations": "manager.manager"}
        )
        assert [j.alias for j in spec.joins] == ["entityManager", "entityManagerManager"]


# =============================================================================
# Filters
# =============================================================================


class TestFilters:
    def test_number_filter_is_coerced(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = filter_query(select_query(dog), snapshot, {"age_gte": "3"})
        assert spec.conditions == (
            Condition("entity", "age", WhereOperator.GREATER_THAN_OR_EQUAL, 3.0),
        )

    def test_in_filter_splits_values(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = filter_query(select_query(dog), snapshot, {"favoriteToy_in": "ball,rope"})
        assert spec.conditions[0].value == ("ball", "rope")

    def test_repeated_in_keys_are_merged(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = filter_query(
            select_query(dog), snapshot, {"favoriteToy_in": ["ball", "rope,bone"]}
        )
        assert spec.conditions[0].value == ("ball", "rope", "bone")

    def test_repeated_scalar_key_keeps_last(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = filter_query(select_query(dog), snapshot, {"age_gte": ["1", "3"]})
        assert spec.conditions[0].value == 3.0

    def test_id_filter_accepts_uuid(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        dog_id = str(uuid4())
        spec = filter_query(select_query(dog), snapshot, {"id_eq": dog_id})
        assert spec.conditions == (Condition("entity", "id", WhereOperator.EQUAL, dog_id),)

    @pytest.mark.parametrize(
        "params",
        [
            {"id_eq": "abc"},
            {"id_in": f"{uuid4()},nope"},
            {"owner.id_eq": "abc"},
        ],
    )
    def test_id_filter_rejects_non_uuid(
        self, snapshot: SchemaSnapshot, params: dict[str, str]
    ) -> None:
        dog = snapshot.get_entity(slug="dogs")
        with pytest.raises(BadRequestError, match="Invalid value"):
            filter_query(select_query(dog), snapshot, params)

    def test_relation_filter_adds_filter_only_join(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = filter_query(select_query(dog), snapshot, {"owner.name_like": "%Ann%"})
        (join,) = spec.joins
        assert join.alias == "entityOwner"
        assert not join.projected
        assert spec.conditions[0].alias == "entityOwner"

    def test_relation_filter_reuses_loaded_join(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = build_query(
            snapshot, dog, {"relations": "owner", "owner.name_eq": "Ann"}
        )
        assert len(spec.joins) == 1
        assert spec.joins[0].projected

    def test_id_operators(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        spec = filter_query(select_query(dog), snapshot, {"id_in": "a,b"})
        assert spec.conditions[0].operator == WhereOperator.IN
        with pytest.raises(BadRequestError, match="id properties"):
            filter_query(select_query(dog), snapshot, {"id_gt": "a"})

    def test_invalid_operator_for_type(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        with pytest.raises(BadRequestError) as exc_info:
            filter_query(select_query(dog), snapshot, {"isGoodBoy_gt": "true"})
        assert exc_info.value.message == (
            "Operator > (with '_gt' suffix) is not valid for property isGoodBoy. "
            "boolean properties can only use the following operators: '=', '!='."
        )

    def test_hidden_property_cannot_be_filtered(self, snapshot: SchemaSnapshot) -> None:
        owner = snapshot.get_entity(slug="owners")
        with pytest.raises(BadRequestError, match="does not exist"):
            filter_query(select_query(owner), snapshot, {"secretNote_eq": "x"})

    def test_unknown_relation_in_path(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        with pytest.raises(BadRequestError, match="does not exist"):
            filter_query(select_query(dog), snapshot, {"ghost.name_eq": "x"})

    def test_uncoercible_value(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        with pytest.raises(BadRequestError, match="Invalid value"):
            filter_query(select_query(dog), snapshot, {"age_eq": "old"})

    def test_reserved_and_empty_params_ignored(self, snapshot: SchemaSnapshot) -> None:
        dog = snapshot.get_entity(slug="dogs")
        params = {"page": "2", "perPage": "5", "orderBy": "name", "name_eq": ""}
        assert filter_query(select_query(dog), snapshot, params).conditions == ()


# =============================================================================
# Ordering
# =============================================================================


class TestOrdering:
    def test_default_newest_first(self, snapshot: SchemaSnapshot) -> None:
        spec = apply_ordering(select_query(snapshot.get_entity(slug="dogs")), {})
        assert spec.order == (OrderSpec("createdAt", descending=True),)

    def test_order_by_property(self, snapshot: SchemaSnapshot) -> None:
        spec = apply_ordering(
            select_query(snapshot.get_entity(slug="dogs")), {"orderBy": "name", "order": "DESC"}
        )
        assert spec.order == (OrderSpec("name", descending=True),)

    def test_order_by_id(self, snapshot: SchemaSnapshot) -> None:
        spec = apply_ordering(select_query(snapshot.get_entity(slug="dogs")), {"orderBy": "id"})
        assert spec.order == (OrderSpec("id"),)

    def test_hidden_property_cannot_order(self, snapshot: SchemaSnapshot) -> None:
        with pytest.raises(BadRequestError) as exc_info:
            apply_ordering(
                select_query(snapshot.get_entity(slug="owners")), {"orderBy": "secretNote"}
            )
        assert exc_info.value.message == (
            "Property secretNote does not exist in owners and thus cannot be used for ordering"
        )

    def test_password_cannot_order(self, snapshot: SchemaSnapshot) -> None:
        with pytest.raises(BadRequestError):
            apply_ordering(
                select_query(snapshot.get_entity(slug="super-users")), {"orderBy": "password"}
            )

    def test_id_is_final_tie_breaker(self, snapshot: SchemaSnapshot) -> None:
        spec = build_query(snapshot, snapshot.get_entity(slug="dogs"), {"orderBy": "name"})
        sql = str(id_select(spec, snapshot))
        assert "DISTINCT" in sql
        assert sql.rstrip().endswith("entity.id ASC")


# =============================================================================
# Hydration
# =============================================================================


class TestHydrate:
    @staticmethod
    def _row(root: tuple[str, str], alias: str, child: tuple[str | None, str | None]) -> dict:
        return {
            "entity__id": root[0],
            "entity__name": root[1],
            f"{alias}__id": child[0],
            f"{alias}__name": child[1],
        }

    @staticmethod
    def _spec(snapshot: SchemaSnapshot, slug: str, relation_name: str) -> QuerySpec:
        entity = snapshot.get_entity(slug=slug)
        relation = snapshot.relation(entity, relation_name)
        assert relation is not None
        return QuerySpec(entity=entity, columns=("id", "name")).with_join(
            JoinSpec(
                alias=camelize(["entity", relation_name]),
                parent_alias="entity",
                relation=relation,
                target=snapshot.get_entity(class_name=relation.target),
                columns=("id", "name"),
            )
        )

    def test_folds_to_many_rows(self, snapshot: SchemaSnapshot) -> None:
        rows = [
            self._row(("o1", "Ann"), "entityDogs", ("d1", "Rex")),
            self._row(("o1", "Ann"), "entityDogs", ("d2", "Fido")),
            self._row(("o1", "Ann"), "entityDogs", ("d1", "Rex")),
            self._row(("o2", "Bob"), "entityDogs", (None, None)),
        ]
        records = hydrate(self._spec(snapshot, "owners", "dogs"), rows, ["o2", "o1"])
        assert records == [
            {"id": "o2", "name": "Bob", "dogs": []},
            {
                "id": "o1",
                "name": "Ann",
                "dogs": [{"id": "d1", "name": "Rex"}, {"id": "d2", "name": "Fido"}],
            },
        ]

    def test_to_one_relation_is_none_when_missing(self, snapshot: SchemaSnapshot) -> None:
        rows = [self._row(("d1", "Rex"), "entityOwner", (None, None))]
        records = hydrate(self._spec(snapshot, "dogs", "owner"), rows, ["d1"])
        assert records == [{"id": "d1", "name": "Rex", "owner": None}]

    def test_ids_without_rows_are_skipped(self, snapshot: SchemaSnapshot) -> None:
        rows = [self._row(("d1", "Rex"), "entityOwner", ("o1", "Ann"))]
        records = hydrate(self._spec(snapshot, "dogs", "owner"), rows, ["gone", "d1"])
        assert records == [{"id": "d1", "name": "Rex", "owner": {"id": "o1", "name": "Ann"}}]
