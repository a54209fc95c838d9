"""
Per-backend column type tables.

Each storage backend maps every abstract ``PropType`` to a SQLAlchemy column
type and knows its own id column type and boolean representation. The
backend is selected once at boot; nothing branches on the backend name at
request time.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import ClassVar

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from manifest_back.runtime.errors import ConfigurationError
from manifest_back.runtime.transcoders import BooleanTranscoder
from manifest_back.specs.entity import PropType

TypeFactory = Callable[[], sa.types.TypeEngine]

# =============================================================================
# Type Mapping Tables
# =============================================================================

SQLITE_COLUMN_TYPES: dict[PropType, TypeFactory] = {
    PropType.STRING: sa.String,
    PropType.TEXT: sa.Text,
    PropType.RICH_TEXT: sa.Text,
    PropType.NUMBER: lambda: sa.Numeric(asdecimal=False),
    PropType.MONEY: lambda: sa.Numeric(14, 2, asdecimal=False),
    PropType.LINK: sa.String,
    PropType.DATE: sa.Text,  # ISO format
    PropType.TIMESTAMP: sa.DateTime,
    PropType.EMAIL: sa.String,
    PropType.BOOLEAN: sa.Boolean,  # stored as 0/1
    PropType.PASSWORD: sa.String,
    PropType.CHOICE: sa.String,
    PropType.LOCATION: sa.JSON,
    PropType.FILE: sa.String,
    PropType.IMAGE: sa.JSON,
}

POSTGRES_COLUMN_TYPES: dict[PropType, TypeFactory] = {
    PropType.STRING: sa.String,
    PropType.TEXT: sa.Text,
    PropType.RICH_TEXT: sa.Text,
    PropType.NUMBER: sa.Numeric,
    PropType.MONEY: lambda: sa.Numeric(14, 2),
    PropType.LINK: sa.String,
    PropType.DATE: sa.Date,
    PropType.TIMESTAMP: sa.DateTime,
    PropType.EMAIL: sa.String,
    PropType.BOOLEAN: sa.Boolean,
    PropType.PASSWORD: sa.String,
    PropType.CHOICE: sa.String,
    PropType.LOCATION: postgresql.JSONB,
    PropType.FILE: sa.String,
    PropType.IMAGE: postgresql.JSONB,
}

MYSQL_COLUMN_TYPES: dict[PropType, TypeFactory] = {
    PropType.STRING: lambda: sa.String(255),
    PropType.TEXT: sa.Text,
    PropType.RICH_TEXT: sa.Text,
    PropType.NUMBER: sa.Double,
    PropType.MONEY: lambda: sa.Numeric(14, 2, asdecimal=False),
    PropType.LINK: lambda: sa.String(255),
    PropType.DATE: sa.Date,
    PropType.TIMESTAMP: sa.DateTime,
    PropType.EMAIL: lambda: sa.String(255),
    PropType.BOOLEAN: sa.Boolean,  # TINYINT(1)
    PropType.PASSWORD: lambda: sa.String(255),
    PropType.CHOICE: lambda: sa.String(255),
    PropType.LOCATION: sa.JSON,
    PropType.FILE: lambda: sa.String(255),
    PropType.IMAGE: sa.JSON,
}


# =============================================================================
# Backends
# =============================================================================


class StorageBackend:
    """
    Capabilities of one relational backend.

    Subclasses provide the type table, the id column type and the boolean
    literal convention.
    """

    name: ClassVar[str]
    column_types: ClassVar[Mapping[PropType, TypeFactory]]

    def column_type_for(self, prop_type: PropType) -> sa.types.TypeEngine:
        """Return a fresh column type for an abstract property type."""
        factory = self.column_types.get(prop_type)
        if factory is None:
            raise ConfigurationError(
                f"Property type '{prop_type}' has no column type for backend '{self.name}'"
            )
        return factory()

    def id_column_type(self) -> sa.types.TypeEngine:
        raise NotImplementedError

    def boolean_transcoder(self) -> BooleanTranscoder:
        return BooleanTranscoder(self.name)

    def missing_types(self) -> list[PropType]:
        return [t for t in PropType if t not in self.column_types]

    def check_complete(self) -> None:
        """Fail fast when the type table does not cover every property type."""
        missing = self.missing_types()
        if missing:
            names = ", ".join(str(t) for t in missing)
            raise ConfigurationError(
                f"Backend '{self.name}' has no column type for property types: {names}"
            )


class SqliteBackend(StorageBackend):
    name = "sqlite"
    column_types = SQLITE_COLUMN_TYPES

    def id_column_type(self) -> sa.types.TypeEngine:
        return sa.Text()


class PostgresBackend(StorageBackend):
    name = "postgres"
    column_types = POSTGRES_COLUMN_TYPES

    def id_column_type(self) -> sa.types.TypeEngine:
        return sa.Uuid(as_uuid=False)


class MysqlBackend(StorageBackend):
    name = "mysql"
    column_types = MYSQL_COLUMN_TYPES

    def id_column_type(self) -> sa.types.TypeEngine:
        return sa.String(36)


_BACKENDS: dict[str, type[StorageBackend]] = {
    "sqlite": SqliteBackend,
    "postgres": PostgresBackend,
    "postgresql": PostgresBackend,
    "mysql": MysqlBackend,
    "mariadb": MysqlBackend,
}


def get_backend(name: str) -> StorageBackend:
    """Resolve a backend by name or URL scheme (``postgresql`` -> postgres)."""
    backend_cls = _BACKENDS.get(name.lower())
    if backend_cls is None:
        raise ConfigurationError(f"Unsupported database backend: {name}")
    return backend_cls()
