"""
Error Handling Module for the HR Loan Ledger

This module provides centralized error handling with:
- Custom exception hierarchy
- Standardized error responses
- Error logging
- Loan-ledger specific validation, conflict and precondition errors
- Database error handling
"""

from datetime import datetime
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

# Configure logging
logger = logging.getLogger("hrloans.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_MONTH_KEY = "INVALID_MONTH_KEY"
    INACTIVE_EMPLOYEE = "INACTIVE_EMPLOYEE"
    DUPLICATE_SKIP_REQUEST = "DUPLICATE_SKIP_REQUEST"

    # Authentication/Authorization Errors (401/403)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    LOAN_NOT_FOUND = "LOAN_NOT_FOUND"
    EMPLOYEE_NOT_FOUND = "EMPLOYEE_NOT_FOUND"
    APPROVAL_REQUEST_NOT_FOUND = "APPROVAL_REQUEST_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    EMI_SKIPPED = "EMI_SKIPPED"
    VERSION_CONFLICT = "VERSION_CONFLICT"

    # Business Logic Errors (412/422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    PRECHECK_FAILED = "PRECHECK_FAILED"
    NOT_SCHEDULED = "NOT_SCHEDULED"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


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
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
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


class InvalidAmountException(ValidationException):
    """Invalid monetary amount"""

    def __init__(self, amount: Any, field: str = "amount", message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid amount: {amount}. Amount must be a positive whole number.",
            field=field,
            code=ErrorCode.INVALID_AMOUNT,
            details={"provided_amount": str(amount)},
        )


class InvalidMonthKeyException(ValidationException):
    """Month key not in YYYY-MM form"""

    def __init__(self, month: Any, field: str = "month"):
        super().__init__(
            message=f"Invalid month: {month}. Expected a zero-padded YYYY-MM month key.",
            field=field,
            code=ErrorCode.INVALID_MONTH_KEY,
            details={"provided": str(month), "expected_format": "YYYY-MM"},
        )


class InactiveEmployeeException(ValidationException):
    """Loan actions are only permitted for active employees"""

    def __init__(self, employee_id: str, employee_status: Optional[str]):
        super().__init__(
            message=f"Employee '{employee_id}' is not active (status: {employee_status or 'unknown'})",
            field="employee_id",
            code=ErrorCode.INACTIVE_EMPLOYEE,
            details={"employee_id": employee_id, "status": employee_status},
        )


# ============================================================================
# Authentication/Authorization Exceptions
# ============================================================================

class AuthenticationException(AppException):
    """Base authentication exception"""

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


class AuthorizationException(AppException):
    """Authorization denied exception"""

    def __init__(
        self,
        message: str = "Permission denied",
        required_permission: Optional[str] = None,
        code: ErrorCode = ErrorCode.FORBIDDEN,
    ):
        details = {}
        if required_permission:
            details["required_permission"] = required_permission
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class InsufficientPermissionsException(AuthorizationException):
    """Insufficient permissions"""

    def __init__(self, required_permission: str, user_role: Optional[str] = None):
        super().__init__(
            message=f"Insufficient permissions. Required: {required_permission}",
            required_permission=required_permission,
            code=ErrorCode.INSUFFICIENT_PERMISSIONS,
        )
        if user_role:
            self.details["current_role"] = user_role


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

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


class LoanNotFoundException(NotFoundException):
    """Loan not found"""

    def __init__(self, loan_id: str):
        super().__init__(
            resource_type="Loan",
            resource_id=loan_id,
            code=ErrorCode.LOAN_NOT_FOUND,
        )


class EmployeeNotFoundException(NotFoundException):
    """Employee not found"""

    def __init__(self, employee_id: str):
        super().__init__(
            resource_type="Employee",
            resource_id=employee_id,
            code=ErrorCode.EMPLOYEE_NOT_FOUND,
        )


class ApprovalRequestNotFoundException(NotFoundException):
    """Approval request not found"""

    def __init__(self, request_id: str):
        super().__init__(
            resource_type="Approval request",
            resource_id=request_id,
            code=ErrorCode.APPROVAL_REQUEST_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class RequestAlreadyResolvedException(ConflictException):
    """A request that is no longer Pending cannot be resolved again"""

    def __init__(self, request_id: str, current_status: str):
        super().__init__(
            message=f"Request '{request_id}' is not pending (status: {current_status})",
            resource_type="Approval request",
            code=ErrorCode.ALREADY_RESOLVED,
            details={"request_id": request_id, "current_status": current_status},
        )


class DuplicatePaymentException(ConflictException):
    """An EMI payment has already been recorded for the month"""

    def __init__(self, loan_id: str, month: str):
        super().__init__(
            message=f"EMI payment for {month} already recorded on loan '{loan_id}'",
            resource_type="EMI payment",
            code=ErrorCode.DUPLICATE_PAYMENT,
            details={"loan_id": loan_id, "month": month},
        )


class EmiSkippedException(ConflictException):
    """The month carries an approved skip, so nothing may be credited for it"""

    def __init__(self, loan_id: str, month: str):
        super().__init__(
            message=f"EMI for {month} was skipped on loan '{loan_id}' and cannot be credited",
            resource_type="EMI payment",
            code=ErrorCode.EMI_SKIPPED,
            details={"loan_id": loan_id, "month": month},
        )


class TransactionContentionException(ConflictException):
    """Optimistic transaction kept losing the race for a document"""

    def __init__(self, path: str, attempts: int):
        super().__init__(
            message=f"Concurrent updates to '{path}' prevented the write after {attempts} attempts. Please retry.",
            code=ErrorCode.VERSION_CONFLICT,
            details={"path": path, "attempts": attempts},
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=_details,
        )


class PrecheckFailedException(BusinessRuleException):
    """Loan approval blocked by an unresolved loan-ceiling override"""

    def __init__(self, loan_id: str, override_request_id: str, override_status: str):
        super().__init__(
            message=(
                f"Loan '{loan_id}' cannot be approved while its max-loan override "
                f"is {override_status}. Resolve the override first."
            ),
            rule="MAX_LOAN_OVERRIDE_APPROVED",
            code=ErrorCode.PRECHECK_FAILED,
            details={
                "loan_id": loan_id,
                "override_request_id": override_request_id,
                "override_status": override_status,
            },
            status_code=status.HTTP_412_PRECONDITION_FAILED,
        )
        self.override_request_id = override_request_id


class NotScheduledException(BusinessRuleException):
    """No EMI is scheduled for the loan in the requested month"""

    def __init__(self, loan_id: str, month: str, reason: str):
        super().__init__(
            message=f"No EMI scheduled for loan '{loan_id}' in {month}: {reason}",
            rule="EMI_SCHEDULED",
            code=ErrorCode.NOT_SCHEDULED,
            details={"loan_id": loan_id, "month": month},
        )


# ============================================================================
# Exception Handlers
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
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
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
    # Map status codes to error codes
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        412: ErrorCode.PRECHECK_FAILED,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
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
        extra={"path": request.url.path, "method": request.method, "errors": errors},
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


# ============================================================================
# Utility Functions
# ============================================================================

def validate_amount(amount: Any, field: str = "amount") -> int:
    """Validate a positive integer currency amount"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountException(amount, field)
    if amount <= 0:
        raise InvalidAmountException(amount, field)
    return amount


def validate_reason(reason: Optional[str], field: str = "reason") -> str:
    """Validate a free-text justification is present"""
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationException(message=f"A {field} is required", field=field)
    return cleaned


# Export all exceptions for easy importing
__all__ = [
    # Base
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "InvalidAmountException",
    "InvalidMonthKeyException",
    "InactiveEmployeeException",

    # Auth
    "AuthenticationException",
    "AuthorizationException",
    "InsufficientPermissionsException",

    # Resource
    "NotFoundException",
    "LoanNotFoundException",
    "EmployeeNotFoundException",
    "ApprovalRequestNotFoundException",
    "ConflictException",
    "RequestAlreadyResolvedException",
    "DuplicatePaymentException",
    "EmiSkippedException",
    "TransactionContentionException",

    # Business Logic
    "BusinessRuleException",
    "PrecheckFailedException",
    "NotScheduledException",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",

    # Utilities
    "validate_amount",
    "validate_reason",
]
