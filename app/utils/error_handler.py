"""
Error handling for the login security service.

Defines the error taxonomy shared by the session store, the activity log and
the HTTP layer, plus a central handler that categorizes, logs and counts
errors and converts them into standardized API responses.

Propagation policy: anything that affects authentication or session
management is raised to the caller; purely observational work (activity
recording, suspicious-reason computation, new-device notification) catches
its own failures and reports them through ``ErrorHandler``.
"""

import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.security.monitoring.security_metrics import ERRORS_TOTAL
from app.utils.logger import get_logger

logger = get_logger(__name__)


class ErrorSeverity(str, Enum):
    """Error severity levels for categorization and alerting"""

    LOW = "low"  # Caller mistakes, logging only
    MEDIUM = "medium"  # Degraded behaviour, monitoring alerts
    HIGH = "high"  # Security relevant, immediate attention
    CRITICAL = "critical"  # Store outage affecting logins


class ErrorCategory(str, Enum):
    """Error categories for systematic handling"""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    STORE = "store"
    NOTIFICATION = "notification"
    SYSTEM = "system"


class ErrorContext:
    """Container for error context information"""

    def __init__(
        self,
        error: Exception,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        user_message: Optional[str] = None,
        technical_details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        status_code: int = 500,
    ):
        self.error = error
        self.severity = severity
        self.category = category
        self.user_message = user_message or self._generate_user_message()
        self.technical_details = technical_details or {}
        self.user_id = user_id
        self.status_code = status_code
        self.timestamp = datetime.now(timezone.utc)
        self.error_id = f"err_{int(self.timestamp.timestamp())}"

    def _generate_user_message(self) -> str:
        """Generate user-facing error message based on error type"""
        if isinstance(self.error, LoginSecurityError):
            return str(self.error)

        return "An unexpected error occurred. Please try again or contact support."

    def to_dict(self) -> Dict[str, Any]:
        """Convert error context to dictionary for logging/serialization"""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "error_type": type(self.error).__name__,
            "error_message": str(self.error),
            "severity": self.severity.value,
            "category": self.category.value,
            "user_message": self.user_message,
            "technical_details": self.technical_details,
            "user_id": self.user_id,
            "traceback": traceback.format_exc()
            if self.severity in [ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]
            else None,
        }


# === Custom Exception Classes ===


class LoginSecurityError(Exception):
    """Base exception for session and login security errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        technical_details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.severity = severity
        self.category = category
        self.technical_details = technical_details or {}


class ValidationError(LoginSecurityError):
    """Raised on malformed input from an upstream caller"""

    status_code = 400

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs,
        )


class AuthenticationError(LoginSecurityError):
    """Raised when a request carries no valid session"""

    status_code = 401

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.AUTHENTICATION,
            **kwargs,
        )


class AuthorizationError(LoginSecurityError):
    """Raised when a caller operates on another user's session"""

    status_code = 403

    def __init__(self, message: str = "Not allowed to modify this session", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.AUTHORIZATION,
            **kwargs,
        )


class NotFoundError(LoginSecurityError):
    """Raised when a session or user does not exist"""

    status_code = 404

    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs,
        )


class RateLimitExceededError(LoginSecurityError):
    """Raised when a caller exceeds the security endpoint rate limit"""

    status_code = 429

    def __init__(self, retry_after: Optional[int] = None, **kwargs):
        message = "Too many security requests, please try again later"
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.RATE_LIMIT,
            technical_details={"retry_after": retry_after},
            **kwargs,
        )
        self.retry_after = retry_after


class TransientStoreError(LoginSecurityError):
    """Raised when the session store or activity log is unavailable"""

    status_code = 503

    def __init__(self, message: str = "Backing store unavailable", **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.STORE,
            **kwargs,
        )


# === Error Handler Class ===


class ErrorHandler:
    """Centralized error categorization, logging and counting"""

    def __init__(self):
        self._error_counts: Dict[str, int] = {}

    def handle_error(
        self, error: Exception, context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """
        Handle an error with appropriate categorization, logging, and metrics.

        Args:
            error: The exception that occurred
            context: Additional context information

        Returns:
            ErrorContext with detailed error information
        """
        context = context or {}
        error_context = self._categorize_error(error, context)
        self._log_error(error_context)
        self._record_error_metrics(error_context)
        return error_context

    def _categorize_error(
        self, error: Exception, context: Dict[str, Any]
    ) -> ErrorContext:
        if isinstance(error, LoginSecurityError):
            return ErrorContext(
                error=error,
                severity=error.severity,
                category=error.category,
                technical_details={**error.technical_details, **context},
                user_id=context.get("user_id"),
                status_code=error.status_code,
            )

        error_mappings = {
            ConnectionError: (ErrorSeverity.CRITICAL, ErrorCategory.STORE, 503),
            TimeoutError: (ErrorSeverity.MEDIUM, ErrorCategory.STORE, 503),
            ValueError: (ErrorSeverity.LOW, ErrorCategory.VALIDATION, 400),
            PermissionError: (ErrorSeverity.HIGH, ErrorCategory.AUTHORIZATION, 403),
        }

        severity, category, status_code = error_mappings.get(
            type(error), (ErrorSeverity.MEDIUM, ErrorCategory.SYSTEM, 500)
        )

        return ErrorContext(
            error=error,
            severity=severity,
            category=category,
            technical_details=context,
            user_id=context.get("user_id"),
            status_code=status_code,
        )

    def _log_error(self, error_context: ErrorContext):
        log_data = {
            "error_id": error_context.error_id,
            "error_type": type(error_context.error).__name__,
            "error": str(error_context.error),
            "category": error_context.category.value,
            "severity": error_context.severity.value,
            "user_id": error_context.user_id,
            "technical_details": error_context.technical_details,
        }

        if error_context.severity == ErrorSeverity.CRITICAL:
            logger.critical(error_context.user_message, **log_data, exc_info=True)
        elif error_context.severity == ErrorSeverity.HIGH:
            logger.error(error_context.user_message, **log_data)
        elif error_context.severity == ErrorSeverity.MEDIUM:
            logger.warning(error_context.user_message, **log_data)
        else:
            logger.info(error_context.user_message, **log_data)

    def _record_error_metrics(self, error_context: ErrorContext):
        ERRORS_TOTAL.labels(
            error_type=type(error_context.error).__name__,
            category=error_context.category.value,
            severity=error_context.severity.value,
        ).inc()

        error_key = (
            f"{type(error_context.error).__name__}:{error_context.category.value}"
        )
        self._error_counts[error_key] = self._error_counts.get(error_key, 0) + 1

        if self._error_counts[error_key] > 5:
            logger.warning(
                "High frequency error detected",
                error_key=error_key,
                count=self._error_counts[error_key],
                error_id=error_context.error_id,
            )


# === Global Error Handler Instance ===

error_handler = ErrorHandler()


# === Utility Functions ===


def create_error_response(
    error: Exception, context: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Create standardized error response for APIs"""

    error_context = error_handler.handle_error(error, context)

    headers = None
    if isinstance(error, RateLimitExceededError) and error.retry_after:
        headers = {"Retry-After": str(error.retry_after)}

    return JSONResponse(
        status_code=error_context.status_code,
        headers=headers,
        content={
            "error": {
                "id": error_context.error_id,
                "message": error_context.user_message,
                "category": error_context.category.value,
                "severity": error_context.severity.value,
                "timestamp": error_context.timestamp.isoformat(),
            }
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Install the JSON error mapping on an app.

    LoginSecurityError subclasses carry their own status code; anything else
    falls through to ``ErrorHandler.error_mappings`` (store outages map to
    503, the rest to a generic 500).
    """

    async def _handle_error(request: Request, exc: Exception) -> JSONResponse:
        context = {
            "path": request.url.path,
            "method": request.method,
        }
        return create_error_response(exc, context)

    app.add_exception_handler(LoginSecurityError, _handle_error)
    app.add_exception_handler(Exception, _handle_error)
