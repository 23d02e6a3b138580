"""Monadic Error Handling System

Result[T, E] containers, the AppError type, the ErrorCode taxonomy and the
builder functions used by the engines and stores.

Usage:
    from core.errors import Ok, Err, Result, AppError, no_candidates

    def build_pool(objects) -> Result[list[Candidate], AppError]:
        if not objects:
            return no_candidates(goal_id)
        return Ok(objects)

    match build_pool(objects):
        case Ok(pool):
            ...
        case Err(error):
            log.warning("pool_failed", code=error.code.name)
"""
from .types import (
    Result,
    Ok,
    Err,
    AppError,
    ErrorCode,
    ErrorContext,
)

from .builders import (
    # External (E1xxx)
    network_error,
    timeout_error,
    external_service_unavailable,
    circuit_open,
    # Validation (E2xxx)
    validation_error,
    out_of_range,
    # Persistence (E4xxx)
    persistence_failed,
    version_conflict,
    # Engine (E51xx)
    engine_error,
    no_candidates,
    no_suitable_template,
    constraint_unsatisfiable,
    evaluation_failed,
    calibration_failed,
    # Internal (E9xxx)
    internal_error,
)

from .boundaries import DatabaseErrorMapper

__all__ = [
    "Result",
    "Ok",
    "Err",
    "AppError",
    "ErrorCode",
    "ErrorContext",
    "network_error",
    "timeout_error",
    "external_service_unavailable",
    "circuit_open",
    "validation_error",
    "out_of_range",
    "persistence_failed",
    "version_conflict",
    "engine_error",
    "no_candidates",
    "no_suitable_template",
    "constraint_unsatisfiable",
    "evaluation_failed",
    "calibration_failed",
    "internal_error",
    "DatabaseErrorMapper",
]

from .handlers import (
    AppErrorException,
    register_error_handlers,
    raise_result,
    result_to_response,
)

__all__ += [
    "AppErrorException",
    "register_error_handlers",
    "raise_result",
    "result_to_response",
]
