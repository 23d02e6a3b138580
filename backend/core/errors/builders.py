"""Domain-Specific Error Builders

Ergonomic constructors for the engine's typed errors.
Each builder creates an AppError with the appropriate code and context.
"""
from .types import AppError, ErrorCode, ErrorContext, Err


# =============================================================================
# External collaborators (E1xxx)
# =============================================================================

def network_error(
    message: str,
    *,
    code: ErrorCode = ErrorCode.E1000_NETWORK_GENERIC,
    origin: str = "",
    cause: Exception | None = None,
    **metadata,
) -> Err[AppError]:
    """Create network/external service error."""
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata={k: v for k, v in metadata.items() if v is not None},
        cause=cause,
    ))


def timeout_error(
    operation: str, timeout_seconds: float, origin: str = ""
) -> Err[AppError]:
    return network_error(
        f"Operation '{operation}' timed out after {timeout_seconds}s",
        code=ErrorCode.E1002_TIMEOUT,
        origin=origin,
        operation=operation,
        timeout_seconds=timeout_seconds,
    )


def external_service_unavailable(
    service: str, reason: str = "", origin: str = "", cause: Exception | None = None
) -> Err[AppError]:
    msg = f"External service '{service}' unavailable"
    if reason:
        msg += f": {reason}"
    return network_error(
        msg,
        code=ErrorCode.E1010_EXTERNAL_SERVICE_UNAVAILABLE,
        origin=origin,
        cause=cause,
        service=service,
    )


def circuit_open(service: str, origin: str = "") -> Err[AppError]:
    return network_error(
        f"Circuit breaker open for service '{service}'",
        code=ErrorCode.E1012_CIRCUIT_OPEN,
        origin=origin,
        service=service,
    )


# =============================================================================
# Validation (E2xxx)
# =============================================================================

def validation_error(
    message: str,
    *,
    field: str | None = None,
    code: ErrorCode = ErrorCode.E2000_VALIDATION_GENERIC,
    origin: str = "",
    **metadata,
) -> Err[AppError]:
    meta = {"field": field, **metadata}
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata={k: v for k, v in meta.items() if v is not None},
    ))


def out_of_range(
    field: str, value: float, min_val: float, max_val: float, origin: str = ""
) -> Err[AppError]:
    return validation_error(
        f"{field} must be between {min_val} and {max_val}, got {value}",
        field=field,
        code=ErrorCode.E2003_OUT_OF_RANGE,
        origin=origin,
        value=value,
    )


# =============================================================================
# Persistence (E4xxx)
# =============================================================================

def persistence_failed(
    operation: str,
    reason: str = "",
    *,
    code: ErrorCode = ErrorCode.E4000_DATABASE_GENERIC,
    origin: str = "store",
    cause: Exception | None = None,
) -> Err[AppError]:
    msg = f"Persistence operation '{operation}' failed"
    if reason:
        msg += f": {reason}"
    return Err(AppError(
        code=code,
        message=msg,
        context=ErrorContext(origin=origin),
        metadata={"operation": operation},
        cause=cause,
    ))


def version_conflict(
    entity: str, expected: int, actual: int, origin: str = ""
) -> Err[AppError]:
    return Err(AppError(
        code=ErrorCode.E5002_STATE_CONFLICT,
        message=f"{entity} was modified concurrently (expected v{expected}, found v{actual})",
        context=ErrorContext(origin=origin),
        metadata={"entity": entity, "expected": expected, "actual": actual},
    ))


# =============================================================================
# Engine (E51xx)
# =============================================================================

def engine_error(
    message: str,
    code: ErrorCode,
    origin: str = "",
    cause: Exception | None = None,
    **metadata,
) -> Err[AppError]:
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata=metadata,
        cause=cause,
    ))


def no_candidates(goal_id: str, origin: str = "optimizer") -> Err[AppError]:
    return engine_error(
        f"No eligible learning objects for goal '{goal_id}'",
        ErrorCode.E5100_NO_CANDIDATES,
        origin=origin,
        goal_id=goal_id,
    )


def no_suitable_template(
    pool_size: int, best_quality: float = 0.0, origin: str = "composer"
) -> Err[AppError]:
    return engine_error(
        f"No template can be filled from a pool of {pool_size} candidates",
        ErrorCode.E5101_NO_SUITABLE_TEMPLATE,
        origin=origin,
        pool_size=pool_size,
        best_quality=round(best_quality, 3),
    )


def constraint_unsatisfiable(
    violations: list[str], origin: str = "composer"
) -> Err[AppError]:
    return engine_error(
        f"Constraint graph rejected every composition ({len(violations)} violations)",
        ErrorCode.E5102_CONSTRAINT_UNSATISFIABLE,
        origin=origin,
        violations=violations[:10],
    )


def evaluation_failed(
    reason: str, origin: str = "evaluator", cause: Exception | None = None
) -> Err[AppError]:
    return engine_error(
        f"Evaluation failed: {reason}",
        ErrorCode.E5103_EVALUATION_FAILED,
        origin=origin,
        cause=cause,
    )


def calibration_failed(
    reason: str, origin: str = "calibrator", cause: Exception | None = None
) -> Err[AppError]:
    return engine_error(
        f"Calibration failed: {reason}",
        ErrorCode.E5104_CALIBRATION_FAILED,
        origin=origin,
        cause=cause,
    )


# =============================================================================
# Internal (E9xxx)
# =============================================================================

def internal_error(
    message: str,
    *,
    origin: str = "",
    cause: Exception | None = None,
    **metadata,
) -> Err[AppError]:
    return Err(AppError(
        code=ErrorCode.E9000_INTERNAL_GENERIC,
        message=message,
        context=ErrorContext(origin=origin),
        metadata=metadata,
        cause=cause,
    ))
