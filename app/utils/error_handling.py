"""
Centralized Error Handling for Billforge

This module provides:
- Custom exception hierarchy
- Standardized error responses
- Invoicing business-rule errors (quota, overpayment, transitions, schedules)
- Database and external service error handling
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("billforge.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Authentication Errors (401)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    CLIENT_NOT_FOUND = "CLIENT_NOT_FOUND"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    RECURRING_INVOICE_NOT_FOUND = "RECURRING_INVOICE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"

    # Business Logic Errors (409/422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    INVOICE_LIMIT_REACHED = "INVOICE_LIMIT_REACHED"
    OVERPAYMENT = "OVERPAYMENT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    REFUND_EXCEEDS_PAYMENT = "REFUND_EXCEEDS_PAYMENT"
    PAYMENT_NOT_REFUNDABLE = "PAYMENT_NOT_REFUNDABLE"
    CANNOT_MODIFY = "CANNOT_MODIFY"
    CANNOT_DELETE = "CANNOT_DELETE"
    SCHEDULE_NOT_DUE = "SCHEDULE_NOT_DUE"
    SCHEDULE_FINISHED = "SCHEDULE_FINISHED"
    SCHEDULE_NOT_ACTIVE = "SCHEDULE_NOT_ACTIVE"

    # Payment Errors (402)
    PAYMENT_DECLINED = "PAYMENT_DECLINED"

    # External Service Errors (502/503)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    EMAIL_SERVICE_ERROR = "EMAIL_SERVICE_ERROR"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = _utcnow_iso()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


# ============================================================================
# Authentication Exceptions
# ============================================================================

class AuthenticationException(AppException):
    """Caller identity missing or unknown"""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found (or not owned by the caller)"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class ClientNotFoundException(NotFoundException):
    def __init__(self, client_id: Union[str, UUID]):
        super().__init__(resource_type="Client", resource_id=client_id, code=ErrorCode.CLIENT_NOT_FOUND)


class InvoiceNotFoundException(NotFoundException):
    def __init__(self, invoice_id: Union[str, UUID, None] = None, message: Optional[str] = None):
        super().__init__(
            resource_type="Invoice",
            resource_id=invoice_id,
            message=message,
            code=ErrorCode.INVOICE_NOT_FOUND,
        )


class PaymentNotFoundException(NotFoundException):
    def __init__(self, payment_id: Union[str, UUID]):
        super().__init__(resource_type="Payment", resource_id=payment_id, code=ErrorCode.PAYMENT_NOT_FOUND)


class RecurringInvoiceNotFoundException(NotFoundException):
    def __init__(self, template_id: Union[str, UUID]):
        super().__init__(
            resource_type="Recurring invoice",
            resource_id=template_id,
            code=ErrorCode.RECURRING_INVOICE_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class DuplicateInvoiceNumberException(ConflictException):
    def __init__(self, invoice_number: str):
        super().__init__(
            message=f"Invoice number '{invoice_number}' already exists",
            code=ErrorCode.DUPLICATE_INVOICE,
            details={"invoice_number": invoice_number},
        )


class QuotaExceededException(ConflictException):
    """Plan invoice limit reached"""

    def __init__(self, plan: str, limit: int, current: int):
        super().__init__(
            message=(
                f"Invoice limit reached for the {plan} plan ({current}/{limit}). "
                "Cancel an existing invoice or upgrade your plan."
            ),
            code=ErrorCode.INVOICE_LIMIT_REACHED,
            details={"plan": plan, "limit": limit, "current": current},
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if rule:
            details["rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class InvalidStatusTransitionException(BusinessRuleException):
    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Cannot change invoice status from {current} to {target}",
            rule="invoice_status_transition",
            code=ErrorCode.INVALID_STATUS_TRANSITION,
            details={"current_status": current, "target_status": target},
        )


class OverpaymentException(BusinessRuleException):
    def __init__(self, amount: Decimal, remaining: Decimal):
        super().__init__(
            message=f"Payment amount {amount} exceeds remaining balance {remaining}",
            rule="overpayment",
            code=ErrorCode.OVERPAYMENT,
            details={"amount": str(amount), "remaining_balance": str(remaining)},
        )


class PaymentNotRefundableException(BusinessRuleException):
    def __init__(self, payment_status: str):
        super().__init__(
            message=f"Only completed payments can be refunded (payment is {payment_status})",
            rule="refund_source_status",
            code=ErrorCode.PAYMENT_NOT_REFUNDABLE,
            details={"payment_status": payment_status},
        )


class RefundExceedsPaymentException(BusinessRuleException):
    def __init__(self, amount: Decimal, original: Decimal):
        super().__init__(
            message=f"Refund amount {amount} exceeds original payment amount {original}",
            rule="refund_amount",
            code=ErrorCode.REFUND_EXCEEDS_PAYMENT,
            details={"amount": str(amount), "original_amount": str(original)},
        )


class CannotModifyException(BusinessRuleException):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.CANNOT_MODIFY):
        super().__init__(message=message, code=code)


class RecurringScheduleException(BusinessRuleException):
    """Generation refused by the template's schedule state"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.SCHEDULE_NOT_DUE):
        super().__init__(message=message, rule="recurring_schedule", code=code)


# ============================================================================
# External Service Exceptions
# ============================================================================

class ExternalServiceException(AppException):
    """External service call failed"""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        details = dict(details or {})
        details["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=details,
            original_error=original_error,
        )


class PaymentDeclinedException(ExternalServiceException):
    """Gateway refused to authorize the charge"""

    def __init__(self, reason: str, payment_id: Optional[UUID] = None):
        super().__init__(
            service_name="payment_gateway",
            message=f"Payment failed: {reason}",
            code=ErrorCode.PAYMENT_DECLINED,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"payment_id": str(payment_id) if payment_id else None},
        )


# ============================================================================
# Error Response Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": _utcnow_iso(),
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    logger.warning(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc.original_error,
    )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.EXTERNAL_SERVICE_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    "ErrorCode",
    "AppException",
    "ValidationException",
    "AuthenticationException",
    "NotFoundException",
    "ClientNotFoundException",
    "InvoiceNotFoundException",
    "PaymentNotFoundException",
    "RecurringInvoiceNotFoundException",
    "ConflictException",
    "DuplicateInvoiceNumberException",
    "QuotaExceededException",
    "BusinessRuleException",
    "InvalidStatusTransitionException",
    "OverpaymentException",
    "PaymentNotRefundableException",
    "RefundExceedsPaymentException",
    "CannotModifyException",
    "RecurringScheduleException",
    "ExternalServiceException",
    "PaymentDeclinedException",
    "create_error_response",
    "setup_exception_handlers",
]
