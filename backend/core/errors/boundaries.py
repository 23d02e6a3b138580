"""Error Boundary Mappers

Stores translate driver exceptions into persistence AppErrors here, so the
pipeline only ever sees E4xxx codes for storage trouble.
"""
from __future__ import annotations

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from .types import AppError, ErrorCode, ErrorContext
from .builders import internal_error, persistence_failed


class DatabaseErrorMapper:
    """Maps SQLAlchemy exceptions to persistence error codes."""

    def __init__(self, origin: str = "database"):
        self.origin = origin

    def map_exception(self, exc: Exception, operation: str = "query") -> AppError:
        if isinstance(exc, IntegrityError):
            message = str(exc.orig) if exc.orig else str(exc)
            lowered = message.lower()
            if "unique" in lowered or "duplicate key" in lowered:
                code = ErrorCode.E4011_DUPLICATE_KEY
            else:
                code = ErrorCode.E4013_CHECK_CONSTRAINT
            return AppError(
                code=code,
                message=f"Constraint violation during {operation}: {message}",
                context=ErrorContext(origin=self.origin),
                metadata={"operation": operation},
                cause=exc,
            )
        if isinstance(exc, OperationalError):
            message = str(exc.orig) if exc.orig else str(exc)
            if "connect" in message.lower():
                return persistence_failed(
                    operation, message,
                    code=ErrorCode.E4001_CONNECTION_FAILED,
                    origin=self.origin, cause=exc,
                ).error
            return persistence_failed(
                operation, message,
                code=ErrorCode.E4003_TRANSACTION_FAILED,
                origin=self.origin, cause=exc,
            ).error
        if isinstance(exc, SQLAlchemyError):
            return persistence_failed(
                operation, str(exc),
                code=ErrorCode.E4003_TRANSACTION_FAILED,
                origin=self.origin, cause=exc,
            ).error
        return internal_error(
            f"Database error: {exc}", origin=self.origin, cause=exc
        ).error
