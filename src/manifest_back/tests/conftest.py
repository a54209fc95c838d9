"""Shared pytest fixtures for manifest_back tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from manifest_back.runtime.column_types import get_backend
from manifest_back.runtime.config import EngineSettings
from manifest_back.runtime.crud_service import CrudService
from manifest_back.runtime.repository import DatabaseManager
from manifest_back.runtime.schema_registry import SchemaRegistry
from manifest_back.specs.entity import (
    AppSpec,
    EntitySpec,
    PropertySpec,
    PropType,
    RelationKind,
    RelationshipSpec,
)


def make_app_spec() -> AppSpec:
    """Small app covering every relation kind, nested children and validation rules."""
    owner = EntitySpec(
        class_name="Owner",
        slug="owners",
        properties=[
            PropertySpec(name="name", type=PropType.STRING),
            PropertySpec(name="secretNote", type=PropType.TEXT, hidden=True),
        ],
        relationships=[
            RelationshipSpec(
                name="dogs",
                entity="Dog",
                type=RelationKind.ONE_TO_MANY,
                inverse_side="owner",
            ),
        ],
    )
    dog = EntitySpec(
        class_name="Dog",
        slug="dogs",
        properties=[
            PropertySpec(name="name", type=PropType.STRING),
            PropertySpec(name="age", type=PropType.NUMBER),
            PropertySpec(name="website", type=PropType.LINK),
            PropertySpec(name="description", type=PropType.TEXT),
            PropertySpec(name="birthdate", type=PropType.DATE),
            PropertySpec(name="price", type=PropType.MONEY),
            PropertySpec(name="isGoodBoy", type=PropType.BOOLEAN),
            PropertySpec(name="acquiredAt", type=PropType.TIMESTAMP),
            PropertySpec(name="email", type=PropType.EMAIL),
            PropertySpec(
                name="favoriteToy",
                type=PropType.CHOICE,
                options={"values": ["ball", "bone", "rope"]},
            ),
            PropertySpec(name="location", type=PropType.LOCATION),
        ],
        relationships=[
            RelationshipSpec(name="owner", entity="Owner", type=RelationKind.MANY_TO_ONE),
            RelationshipSpec(
                name="tags",
                entity="Tag",
                type=RelationKind.MANY_TO_MANY,
                owning_side=True,
            ),
        ],
    )
    tag = EntitySpec(
        class_name="Tag",
        slug="tags",
        properties=[PropertySpec(name="label", type=PropType.STRING)],
        relationships=[
            RelationshipSpec(
                name="dogs",
                entity="Dog",
                type=RelationKind.MANY_TO_MANY,
                inverse_side="tags",
            ),
        ],
    )
    super_user = EntitySpec(
        class_name="SuperUser",
        slug="super-users",
        authenticable=True,
        properties=[PropertySpec(name="name", type=PropType.STRING)],
        validation={"name": {"required": True, "isEmpty": False}},
    )
    car = EntitySpec(
        class_name="Car",
        slug="cars",
        properties=[
            PropertySpec(name="model", type=PropType.STRING),
            PropertySpec(name="brand", type=PropType.STRING),
            PropertySpec(name="year", type=PropType.NUMBER, validation={"min": 1999}),
        ],
        validation={
            "model": {"contains": "turbo"},
            "brand": {"maxLength": 10},
            "year": {"min": 2010, "isOptional": True},
        },
    )
    tutorial = EntitySpec(
        class_name="Tutorial",
        slug="tutorials",
        properties=[PropertySpec(name="title", type=PropType.STRING)],
        relationships=[
            RelationshipSpec(
                name="steps", entity="Step", type=RelationKind.ONE_TO_MANY, nested=True
            ),
        ],
    )
    step = EntitySpec(
        class_name="Step",
        slug="steps",
        nested=True,
        properties=[
            PropertySpec(name="title", type=PropType.STRING, validation={"minLength": 3}),
        ],
    )
    settings = EntitySpec(
        class_name="Settings",
        slug="settings",
        single=True,
        properties=[
            PropertySpec(name="siteName", type=PropType.STRING),
            PropertySpec(name="maintenance", type=PropType.BOOLEAN, default=False),
        ],
    )
    person = EntitySpec(
        class_name="Person",
        slug="people",
        properties=[PropertySpec(name="name", type=PropType.STRING)],
        relationships=[
            RelationshipSpec(
                name="team", entity="Team", type=RelationKind.MANY_TO_ONE, eager=True
            ),
        ],
    )
    team = EntitySpec(
        class_name="Team",
        slug="teams",
        properties=[PropertySpec(name="name", type=PropType.STRING)],
        relationships=[
            RelationshipSpec(
                name="members",
                entity="Person",
                type=RelationKind.ONE_TO_MANY,
                inverse_side="team",
                eager=True,
            ),
        ],
    )
    return AppSpec(
        name="kennel",
        entities=[owner, dog, tag, super_user, car, tutorial, step, settings, person, team],
    )


@pytest.fixture
def app_spec() -> AppSpec:
    return make_app_spec()


@pytest.fixture
def staff_spec() -> AppSpec:
    """Single entity with an eager self-referencing many-to-one."""
    employee = EntitySpec(
        class_name="Employee",
        slug="employees",
        properties=[PropertySpec(name="name", type=PropType.STRING)],
        relationships=[
            RelationshipSpec(
                name="manager", entity="Employee", type=RelationKind.MANY_TO_ONE, eager=True
            ),
        ],
    )
    return AppSpec(name="staff", entities=[employee])


@pytest.fixture
def registry(app_spec: AppSpec) -> SchemaRegistry:
    return SchemaRegistry(get_backend("sqlite"), app_spec)


@pytest.fixture
def database(registry: SchemaRegistry) -> Iterator[DatabaseManager]:
    """In-memory SQLite database shared by every connection of the test."""
    engine = sa.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    manager = DatabaseManager(engine)
    manager.create_all(registry.metadata)
    yield manager
    manager.close()


@pytest.fixture
def settings() -> EngineSettings:
    # Low hashing cost keeps the suite fast.
    return EngineSettings(password_hash_iterations=1000, default_results_per_page=20)


@pytest.fixture
def service(
    registry: SchemaRegistry, database: DatabaseManager, settings: EngineSettings
) -> CrudService:
    return CrudService(registry, database, settings=settings)
