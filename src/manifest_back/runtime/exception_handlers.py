"""
Exception handlers for applications serving the CRUD engine over FastAPI.

Maps engine errors to JSON responses:
- RecordValidationError: 400, body is the list of violations
- DeleteBlockedError / BadRequestError: 400
- ConstraintViolationError: 400 with the offending field
- NotFoundError: 404
"""

from typing import Any

from fastapi import FastAPI
from fastapi.responses import Response


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register engine exception handlers on a FastAPI application.

    Args:
        app: FastAPI application instance
    """
    from fastapi import Request
    from fastapi.responses import JSONResponse as _JSONResponse

    from manifest_back.runtime.errors import (
        ConstraintViolationError,
        CrudError,
        DeleteBlockedError,
        RecordValidationError,
    )

    @app.exception_handler(RecordValidationError)
    async def record_validation_handler(request: Request, exc: RecordValidationError) -> Response:
        """Return every violation, not just the first."""
        return _JSONResponse(
            status_code=exc.status_code,
            content=[v.to_dict() for v in exc.violations],
        )

    @app.exception_handler(ConstraintViolationError)
    async def constraint_violation_handler(
        request: Request, exc: ConstraintViolationError
    ) -> Response:
        """Convert database constraint violations to 400 Bad Request."""
        detail: dict[str, Any] = {
            **exc.to_dict(),
            "type": "constraint_violation",
            "constraintType": exc.constraint_type,
        }
        if exc.field:
            detail["field"] = exc.field
        return _JSONResponse(status_code=exc.status_code, content=detail)

    @app.exception_handler(DeleteBlockedError)
    async def delete_blocked_handler(request: Request, exc: DeleteBlockedError) -> Response:
        return _JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "relation": exc.relation},
        )

    @app.exception_handler(CrudError)
    async def crud_error_handler(request: Request, exc: CrudError) -> Response:
        """Any other engine error: its own status code and message."""
        return _JSONResponse(status_code=exc.status_code, content=exc.to_dict())
