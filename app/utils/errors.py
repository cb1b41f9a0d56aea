from dataclasses import dataclass
from typing import Dict, Optional, Type

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.schemas.response_schemas import ErrorDetail
from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class FailsafeError(Exception):
    """Base of all errors the engine raises on purpose.

    ``error_code`` is stable and reaches API clients as ``meta.error_code``.
    """

    default_code = "FAILSAFE_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


class BusinessLogicError(FailsafeError):
    """Request is well-formed but not allowed in the condition's current state."""

    default_code = "BLOC_ERROR"


class InvalidConditionKindError(BusinessLogicError):
    """Operation is not valid for the condition's trigger kind. Never retried."""

    default_code = "INVALID_CONDITION_KIND"


class NotFoundError(FailsafeError):
    default_code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found", error_code: Optional[str] = None):
        super().__init__(message, error_code)


class ConflictError(FailsafeError):
    """A concurrent mutation won the race; the caller may retry."""

    default_code = "CONFLICT"

    def __init__(
        self,
        message: str = "Concurrent modification detected",
        error_code: Optional[str] = None,
    ):
        super().__init__(message, error_code)


class DispatchFailureError(FailsafeError):
    """Notification dispatch returned an error or timed out."""

    default_code = "DISPATCH_FAILURE"


class PersistenceFailureError(FailsafeError):
    """The store rejected or could not complete a write."""

    default_code = "PERSISTENCE_FAILURE"


@dataclass(frozen=True)
class _ErrorMapping:
    status_code: int
    error_type: str
    retryable: bool = False
    # Replaces the exception message when internals must not leak
    public_message: Optional[str] = None
    log_level: str = "ERROR"


# Most specific first; Starlette resolves handlers along the MRO
_ERROR_MAPPINGS: Dict[Type[FailsafeError], _ErrorMapping] = {
    InvalidConditionKindError: _ErrorMapping(
        status.HTTP_400_BAD_REQUEST, "INVALID_CONDITION_KIND_ERROR"
    ),
    BusinessLogicError: _ErrorMapping(
        status.HTTP_400_BAD_REQUEST, "BUSINESS_ERROR", log_level="WARNING"
    ),
    NotFoundError: _ErrorMapping(
        status.HTTP_404_NOT_FOUND, "NOT_FOUND_ERROR", log_level="WARNING"
    ),
    ConflictError: _ErrorMapping(
        status.HTTP_409_CONFLICT, "CONFLICT_ERROR", retryable=True, log_level="WARNING"
    ),
    DispatchFailureError: _ErrorMapping(
        status.HTTP_502_BAD_GATEWAY, "DISPATCH_FAILURE_ERROR", retryable=True
    ),
    PersistenceFailureError: _ErrorMapping(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "PERSISTENCE_FAILURE_ERROR",
        retryable=True,
        public_message="The store is temporarily unavailable",
    ),
}


def _failsafe_handler(mapping: _ErrorMapping):
    async def handler(request: Request, exc: FailsafeError):
        logger.log(
            mapping.log_level,
            "Request failed with {error_class}",
            error_class=type(exc).__name__,
            error_code=exc.error_code,
            detail=exc.message,
            path=request.url.path,
        )
        return ResponseBuilder.error(
            request=request,
            message=mapping.public_message or exc.message,
            error_code=exc.error_code,
            status_code=mapping.status_code,
            error_type=mapping.error_type,
            retryable=mapping.retryable,
        )

    return handler


def setup_error_handlers(app: FastAPI):
    """Register the envelope-producing handlers on the application."""

    for error_class, mapping in _ERROR_MAPPINGS.items():
        app.add_exception_handler(error_class, _failsafe_handler(mapping))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP Exception: {exc.status_code} - {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        details = [
            ErrorDetail(
                field=" -> ".join(str(loc) for loc in error["loc"]),
                message=error["msg"],
                type=error["type"],
            )
            for error in exc.errors()
        ]
        logger.warning("Request validation failed", error_count=len(details))

        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            errors=details,
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"SQLAlchemy Error: {exc}")

        # Don't expose internal database errors to users
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_type="SQLALCHEMY_ERROR",
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled Exception: {exc}")

        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_type="INTERNAL_ERROR",
        )
