"""
Error types raised by the CRUD engine.

Request-time errors derive from ``CrudError`` and carry the HTTP status the
web layer should answer with. ``ConfigurationError`` is raised at boot only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from manifest_back.runtime.validation import Violation


class ConfigurationError(Exception):
    """Raised when an app description cannot be turned into a physical schema."""


class CrudError(Exception):
    """Base class for request-time errors."""

    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "statusCode": self.status_code}


class BadRequestError(CrudError):
    """Malformed or invalid request (missing id, bad filter, bad ordering...)."""

    status_code = 400


class NotFoundError(CrudError):
    """Entity, record or related record does not exist."""

    status_code = 404


class RecordValidationError(BadRequestError):
    """Raised when a candidate record fails its declared constraints."""

    def __init__(self, violations: list[Violation]):
        self.violations = violations
        props = ", ".join(v.property for v in violations)
        super().__init__(f"Validation failed for: {props}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "statusCode": self.status_code,
            "errors": [v.to_dict() for v in self.violations],
        }


class DeleteBlockedError(BadRequestError):
    """Raised when a record still has children in a non-nested one-to-many relation."""

    def __init__(self, relation: str):
        self.relation = relation
        super().__init__(
            f"Cannot delete item as it has related {relation}. "
            "Please delete the related items first."
        )


class ConstraintViolationError(BadRequestError):
    """Raised when a database constraint (unique, FK) is violated."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        constraint_type: str = "integrity",
    ):
        self.field = field
        self.constraint_type = constraint_type  # "unique" | "foreign_key" | "integrity"
        super().__init__(message)
