from typing import Dict, Any, Optional
from datetime import datetime
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


class BaseCustomException(Exception):
    """Base for every error the API renders as an error envelope.

    Subclasses pick the HTTP status and the fallback ``error_code``; services
    pass a domain code such as ``CLAIM_LOCKED`` when raising.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal error"
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.details = details or {}
        self.error_code = error_code or self.default_code
        super().__init__(self.message)


class ValidationError(BaseCustomException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Validation failed"
    default_code = "VALIDATION_ERROR"


class AuthenticationError(BaseCustomException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication failed"
    default_code = "AUTHENTICATION_ERROR"


class AccountLockedError(BaseCustomException):
    """Login attempted while the user is locked out after repeated failures"""
    status_code = status.HTTP_423_LOCKED
    default_message = "Account is temporarily locked"
    default_code = "ACCOUNT_LOCKED"


class AuthorizationError(BaseCustomException):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"
    default_code = "AUTHORIZATION_ERROR"


class NotFoundError(BaseCustomException):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"
    default_code = "NOT_FOUND"


class ConflictError(BaseCustomException):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource conflict"
    default_code = "CONFLICT_ERROR"


class BusinessLogicError(BaseCustomException):
    """Business rule violation: wrong status, amount over balance and the like"""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Business rule violated"
    default_code = "BUSINESS_LOGIC_ERROR"


class PaymentGatewayError(BusinessLogicError):
    """A charge or refund declined by the payment gateway"""
    default_message = "Payment processing failed"
    default_code = "PAYMENT_FAILED"


class ExternalServiceError(BaseCustomException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "External service unavailable"
    default_code = "EXTERNAL_SERVICE_ERROR"


class DatabaseError(BaseCustomException):
    default_message = "Database operation failed"
    default_code = "DATABASE_ERROR"


class EncryptionError(BaseCustomException):
    default_message = "Encryption operation failed"
    default_code = "ENCRYPTION_ERROR"


class ConfigurationError(BaseCustomException):
    default_message = "Service is not configured"
    default_code = "CONFIGURATION_ERROR"


class ErrorResponse(BaseModel):
    """Shape of every error body, for OpenAPI docs"""
    error: str
    message: str
    error_code: str
    timestamp: str
    request_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


def create_error_response(exception: BaseCustomException, request_id: Optional[str] = None) -> Dict[str, Any]:
    body = {
        "error": exception.__class__.__name__.replace("Error", " Error"),
        "message": exception.message,
        "error_code": exception.error_code,
        "timestamp": datetime.utcnow().isoformat(),
        "request_id": request_id,
    }
    if exception.details:
        body["details"] = exception.details
    return body


def handle_database_error(error: SQLAlchemyError, operation: str) -> BaseCustomException:
    """Map a SQLAlchemy failure to a 409 for constraint hits, else a 500"""
    logger.error(f"Database error during {operation}: {error}")
    if isinstance(error, IntegrityError):
        # Unique (clinic_id, number) collisions land here when two writers race
        return ConflictError("Database constraint violation", {"operation": operation}, "CONSTRAINT_VIOLATION")
    return DatabaseError(details={"operation": operation}, error_code="DATABASE_OPERATION_ERROR")


def handle_external_service_error(error: Exception, service_name: str, operation: str = "request") -> ExternalServiceError:
    logger.error(f"{service_name} {operation} failed: {error}")
    return ExternalServiceError(
        f"External service {service_name} unavailable",
        {"service_name": service_name, "operation": operation, "original_error": str(error)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BaseCustomException)
    async def custom_exception_handler(request: Request, exc: BaseCustomException):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=create_error_response(exc, request.headers.get("X-Request-ID")),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        mapped = handle_database_error(exc, f"{request.method} {request.url.path}")
        return JSONResponse(
            status_code=mapped.status_code,
            content=create_error_response(mapped, request.headers.get("X-Request-ID")),
        )
