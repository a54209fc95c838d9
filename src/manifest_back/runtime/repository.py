"""
Database manager - engine, unit of work and constraint error translation.

Wraps a SQLAlchemy engine for the CRUD engine. Every public service
operation runs inside one ``connection()`` block, which is a single
transaction committed on success and rolled back on any exception.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError

from manifest_back.runtime.config import EngineSettings
from manifest_back.runtime.errors import ConstraintViolationError

logger = logging.getLogger(__name__)


# =============================================================================
# Constraint Violation Parsing
# =============================================================================


def _parse_constraint_error(exc: str | Exception) -> tuple[str, str | None]:
    """Parse a constraint error message to extract type and field.

    Accepts either a string or a DBAPI exception object. For psycopg
    exceptions, uses ``pgerror`` and ``diag.detail`` to extract field-level
    information that may not appear in ``str(exc)``.

    Returns:
        (constraint_type, field_name_or_none)
    """
    if isinstance(exc, str):
        err = exc
        detail = ""
    else:
        err = getattr(exc, "pgerror", None) or str(exc)
        detail = getattr(getattr(exc, "diag", None), "message_detail", None) or ""

    full_text = f"{err} {detail}".strip()

    # SQLite: "UNIQUE constraint failed: SuperUser.email"
    if "UNIQUE constraint failed:" in err:
        parts = err.split("UNIQUE constraint failed:")[-1].strip()
        field_name = parts.split(",")[0].split(".")[-1].strip() if parts else None
        return "unique", field_name or None

    # SQLite: "FOREIGN KEY constraint failed"
    if "FOREIGN KEY constraint failed" in err:
        return "foreign_key", None

    # PostgreSQL: "duplicate key value violates unique constraint"
    if "duplicate key" in full_text and "unique constraint" in full_text:
        detail_match = re.search(r"Key \((\w+)\)", full_text)
        pg_field: str | None = detail_match.group(1) if detail_match else None
        return "unique", pg_field

    # MySQL: "Duplicate entry 'a@b.c' for key 'uq_SuperUser_email'"
    if "Duplicate entry" in full_text:
        key_match = re.search(r"for key '(?:[\w]+\.)?uq_\w+?_(\w+)'", full_text)
        return "unique", key_match.group(1) if key_match else None

    # PostgreSQL: "violates foreign key constraint" / MySQL: "a foreign key constraint fails"
    if "foreign key constraint" in full_text:
        fk_match = re.search(r"Key \((\w+)\)", full_text) or re.search(
            r"FOREIGN KEY \(`(\w+)`\)", full_text
        )
        fk_field: str | None = fk_match.group(1) if fk_match else None
        return "foreign_key", fk_field

    return "integrity", None


def translate_integrity_error(exc: IntegrityError) -> ConstraintViolationError:
    """Build the 400-class error for a database integrity failure."""
    constraint_type, field_name = _parse_constraint_error(exc.orig or str(exc))
    if constraint_type == "unique":
        message = f"Duplicate value for {field_name}" if field_name else "Duplicate value"
    elif constraint_type == "foreign_key":
        message = (
            f"Referenced record for {field_name} does not exist"
            if field_name
            else "Referenced record does not exist"
        )
    else:
        message = "Integrity constraint violated"
    return ConstraintViolationError(message, field=field_name, constraint_type=constraint_type)


# =============================================================================
# Database Manager
# =============================================================================


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class DatabaseManager:
    """
    Manages the SQLAlchemy engine and schema creation.

    Handles engine creation, table creation and the unit of work used by the
    CRUD service.
    """

    def __init__(self, engine: sa.Engine):
        """
        Initialize the database manager.

        Args:
            engine: SQLAlchemy engine for the selected backend
        """
        self.engine = engine
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None) -> DatabaseManager:
        """Create the engine described by ``settings``."""
        settings = settings or EngineSettings()
        url = make_url(settings.database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        engine = sa.create_engine(url, echo=settings.sql_echo)
        return cls(engine)

    @property
    def backend_type(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def connection(self) -> Iterator[sa.Connection]:
        """
        Open a connection inside one transaction.

        Commits when the block exits normally and rolls back on any exception.
        Integrity errors raised by the database are translated into
        ``ConstraintViolationError``; other storage errors propagate unchanged.

        Yields:
            SQLAlchemy connection
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            error = translate_integrity_error(exc)
            logger.info(
                "Integrity error (%s on %s): %s", error.constraint_type, error.field, exc.orig
            )
            raise error from exc

    def create_all(self, metadata: sa.MetaData) -> None:
        """Create every table in ``metadata`` that does not exist yet."""
        metadata.create_all(self.engine)
        logger.info("Created %d tables (%s)", len(metadata.tables), self.backend_type)

    def table_exists(self, table_name: str) -> bool:
        return sa.inspect(self.engine).has_table(table_name)

    def get_table_columns(self, table_name: str) -> list[str]:
        return [c["name"] for c in sa.inspect(self.engine).get_columns(table_name)]

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        self.engine.dispose()
