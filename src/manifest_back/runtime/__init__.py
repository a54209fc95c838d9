"""
Manifest Back Runtime

Turns an ``AppSpec`` into physical tables and serves CRUD operations over them.

This module provides:
- Schema translation (``translate``) and hot reload (``SchemaRegistry``)
- Query building and pagination (``build_query``, ``paginate``)
- Record validation (``PropertyValidator``)
- The CRUD service (``CrudService``)

Example usage:
    >>> from manifest_back.runtime import (
    ...     CrudService, DatabaseManager, EngineSettings, SchemaRegistry, get_backend
    ... )
    >>>
    >>> settings = EngineSettings()
    >>> database = DatabaseManager.from_settings(settings)
    >>> registry = SchemaRegistry(get_backend(settings.backend_name), app_spec)
    >>> database.create_all(registry.metadata)
    >>>
    >>> service = CrudService(registry, database, settings=settings)
    >>> service.store("dogs", {"name": "Rex"})
"""

from manifest_back.runtime.column_types import (
    MysqlBackend,
    PostgresBackend,
    SqliteBackend,
    StorageBackend,
    get_backend,
)
from manifest_back.runtime.config import EngineSettings
from manifest_back.runtime.crud_service import CrudService, SelectOption
from manifest_back.runtime.errors import (
    BadRequestError,
    ConfigurationError,
    ConstraintViolationError,
    CrudError,
    DeleteBlockedError,
    NotFoundError,
    RecordValidationError,
)
from manifest_back.runtime.pagination import Paginator, paginate
from manifest_back.runtime.query_builder import QuerySpec, build_query
from manifest_back.runtime.repository import DatabaseManager
from manifest_back.runtime.sa_schema import PhysicalSchema, translate
from manifest_back.runtime.schema_registry import SchemaRegistry, SchemaSnapshot
from manifest_back.runtime.validation import PropertyValidator, ValidationGateway, Violation

__all__ = [
    # Backends
    "StorageBackend",
    "SqliteBackend",
    "PostgresBackend",
    "MysqlBackend",
    "get_backend",
    # Configuration
    "EngineSettings",
    "DatabaseManager",
    # Schema
    "PhysicalSchema",
    "translate",
    "SchemaRegistry",
    "SchemaSnapshot",
    # Queries
    "QuerySpec",
    "build_query",
    "Paginator",
    "paginate",
    # Validation
    "PropertyValidator",
    "ValidationGateway",
    "Violation",
    # CRUD
    "CrudService",
    "SelectOption",
    # Errors
    "ConfigurationError",
    "CrudError",
    "BadRequestError",
    "NotFoundError",
    "RecordValidationError",
    "DeleteBlockedError",
    "ConstraintViolationError",
]
