from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class EngineError(Exception):
    """
    Base of every error the engine raises on purpose.

    Subclasses pin the HTTP status and `error_type` reported in the error
    envelope; `error_code` is chosen per raise site.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "ENGINE_ERROR"

    def __init__(self, message: str, error_code: str = "ENGINE_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def meta(self) -> Dict[str, Any]:
        return {"error_type": self.error_type}


class BusinessLogicError(EngineError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "BUSINESS_ERROR"

    def __init__(self, message: str, error_code: str = "BLOC_ERROR"):
        super().__init__(message, error_code)


class AuthenticationError(EngineError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "AUTHENTICATION_ERROR"

    def __init__(
        self, message: str = "Authentication failed", error_code: str = "UNAUTHORIZED"
    ):
        super().__init__(message, error_code)


class AuthorizationError(EngineError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Access denied", error_code: str = "FORBIDDEN"):
        super().__init__(message, error_code)


class NotFoundError(EngineError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "NOT_FOUND_ERROR"

    def __init__(
        self, message: str = "Resource not found", error_code: str = "NOT_FOUND"
    ):
        super().__init__(message, error_code)


class JobNotFoundError(NotFoundError):
    """Raised when a scheduler job name is not registered."""

    def __init__(self, job_name: str, error_code: str = "JOB_NOT_FOUND"):
        super().__init__(f"Job '{job_name}' is not registered", error_code)
        self.job_name = job_name


class ChannelDeliveryError(EngineError):
    """Raised by a delivery channel when the provider rejects a message."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "CHANNEL_DELIVERY_ERROR"

    def __init__(self, message: str, channel: str, error_code: str = "CHANNEL_ERROR"):
        super().__init__(message, error_code)
        self.channel = channel

    def meta(self) -> Dict[str, Any]:
        return {**super().meta(), "channel": self.channel}


def _format_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
            "input": error.get("input"),
        }
        for error in errors
    ]


def setup_error_handlers(app: FastAPI):
    """Map every exception to the standard error envelope."""

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        logger.error(f"{exc.__class__.__name__} ({exc.error_code}): {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=exc.status_code,
            meta=exc.meta(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
            meta={"http_status": exc.status_code},
        )

    # RequestValidationError is raised for bad query parameters and bodies
    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.error(f"Request Validation Error: {exc.errors()}")

        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=_format_validation_errors(exc.errors()),
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    # A model built inside a route failed: our bug, not the caller's
    @app.exception_handler(ValidationError)
    async def pydantic_validation_exception_handler(
        request: Request, exc: ValidationError
    ):
        logger.error(
            f"Pydantic Validation Error: {_format_validation_errors(exc.errors())}"
        )

        return ResponseBuilder.error(
            request=request,
            message="Data validation failed",
            error_code="INTERNAL_VALIDATION_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.opt(exception=exc).error(f"SQLAlchemy Error: {exc}")

        # Don't expose internal database errors to users
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "SQLALCHEMY_ERROR"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        logger.error(f"Value Error: {exc}")

        return ResponseBuilder.error(
            request=request,
            message=str(exc),
            error_code="VALUE_ERROR",
            status_code=status.HTTP_400_BAD_REQUEST,
            meta={"error_type": "VALUE_ERROR"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other unhandled exceptions"""
        logger.opt(exception=exc).error(f"Unhandled Exception: {exc}")

        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "INTERNAL_ERROR"},
        )
