"""
Value transcoders between application values and storage representations.

Each transcoder is a pair of idempotent conversions. They are attached to
columns through ``TranscodedType`` so SQLAlchemy applies them on every bind
parameter and result row, including filter values.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.types import TypeDecorator

# Tokens accepted for booleans in query strings and loose payloads.
_TRUE_TOKENS = frozenset({"true", "1"})
_FALSE_TOKENS = frozenset({"false", "0"})


class Transcoder:
    """Base transcoder: passes values through unchanged."""

    def to_storage(self, value: Any) -> Any:
        return value

    def from_storage(self, value: Any) -> Any:
        return value


class NumberTranscoder(Transcoder):
    """
    Numbers and money.

    PostgreSQL returns NUMERIC columns as ``Decimal`` (or text through some
    drivers); the application always sees floats.
    """

    def to_storage(self, value: Any) -> Any:
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, (str, Decimal)):
            return float(value)
        raise ValueError(f"Cannot store {value!r} as a number")

    def from_storage(self, value: Any) -> float | None:
        if value is None:
            return None
        return float(value)


class BooleanTranscoder(Transcoder):
    """Booleans: ``1``/``0`` on SQLite and MySQL, native booleans on PostgreSQL."""

    def __init__(self, backend: str):
        self.backend = backend

    @property
    def native(self) -> bool:
        return self.backend == "postgres"

    def to_storage(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            token = value.strip().lower()
            if token in _TRUE_TOKENS:
                value = True
            elif token in _FALSE_TOKENS:
                value = False
            else:
                raise ValueError(f"Cannot store {value!r} as a boolean")
        flag = bool(value)
        if self.native:
            return flag
        return 1 if flag else 0

    def from_storage(self, value: Any) -> bool | None:
        if value is None:
            return None
        return bool(value)


class TimestampTranscoder(Transcoder):
    """
    Timestamps are stored as naive UTC datetimes and read back as ISO strings.

    SQLite returns text and PostgreSQL returns ``datetime`` objects; both come
    out of the engine in the same ISO-8601 form.
    """

    def to_storage(self, value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        elif isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        if not isinstance(value, datetime):
            raise ValueError(f"Cannot store {value!r} as a timestamp")
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def from_storage(self, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)


class TranscodedType(TypeDecorator):
    """
    Column type wrapping a backend storage type with a transcoder.

    The declared ``impl`` is a placeholder; the real storage type is chosen
    per backend and returned from ``load_dialect_impl``.
    """

    impl = sa.String
    cache_ok = True

    def __init__(self, storage_type: sa.types.TypeEngine, transcoder: Transcoder):
        super().__init__()
        self.storage_type = storage_type
        self.transcoder = transcoder

    def load_dialect_impl(self, dialect: sa.engine.Dialect) -> sa.types.TypeEngine:
        return dialect.type_descriptor(self.storage_type)

    def process_bind_param(self, value: Any, dialect: sa.engine.Dialect) -> Any:
        return self.transcoder.to_storage(value)

    def process_result_value(self, value: Any, dialect: sa.engine.Dialect) -> Any:
        return self.transcoder.from_storage(value)

    def __repr__(self) -> str:
        return f"TranscodedType({self.storage_type!r}, {type(self.transcoder).__name__})"
