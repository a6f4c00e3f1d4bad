import functools
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from sqlalchemy.exc import DBAPIError, OperationalError

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for the credit ledger service."""

    log_level = logging.ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

        # Log the exception for monitoring
        logger.log(self.log_level, f"{self.__class__.__name__}: {message}", extra={"details": self.details})


class InsufficientCreditsError(LedgerError):
    """Raised at the HTTP boundary when a spend was rejected for lack of credits."""

    log_level = logging.INFO

    def __init__(self, required: int, available: int, user_id: str = None):
        message = f"Insufficient credits. Required: {required}, Available: {available}"
        details = {
            "required_credits": required,
            "available_credits": available,
            "user_id": user_id
        }
        super().__init__(message, details)


class InvalidAmountError(LedgerError):
    """Raised when a credit amount is zero, negative or otherwise unusable."""

    log_level = logging.WARNING

    def __init__(self, amount: Any, reason: str = "Amount must be a positive integer"):
        super().__init__(f"Invalid credit amount {amount!r}: {reason}", {"amount": amount})


class UserNotFoundError(LedgerError):
    """Raised when an internal user id does not resolve."""

    log_level = logging.WARNING

    def __init__(self, user_id: Any):
        super().__init__(f"User {user_id} not found", {"user_id": str(user_id)})


class RefundTargetError(LedgerError):
    """Raised when a linked refund does not match a reversible debit."""

    log_level = logging.WARNING

    def __init__(self, transaction_id: Any, reason: str):
        message = f"Cannot refund transaction {transaction_id}: {reason}"
        super().__init__(message, {"reverses_transaction_id": str(transaction_id), "reason": reason})


class AuthenticationError(LedgerError):
    """Raised when authentication fails."""

    log_level = logging.WARNING

    def __init__(self, reason: str = "Authentication failed"):
        super().__init__(reason, {"auth_failure_reason": reason})


class TokenExpiredError(AuthenticationError):
    """Raised when JWT token has expired."""

    def __init__(self):
        super().__init__("Authentication token has expired")


class InvalidTokenError(AuthenticationError):
    """Raised when JWT token is invalid."""

    def __init__(self, reason: str = "Invalid token"):
        super().__init__(f"Invalid authentication token: {reason}")


class DatabaseError(LedgerError):
    """Raised when database operations fail. Callers may retry."""

    retry_after_seconds = 1

    def __init__(self, operation: str, error: str):
        message = f"Database operation '{operation}' failed: {error}"
        details = {"operation": operation, "database_error": error, "retryable": True}
        super().__init__(message, details)


class ConfigurationError(LedgerError):
    """Raised when application configuration is invalid."""

    def __init__(self, setting: str, reason: str):
        message = f"Configuration error for '{setting}': {reason}"
        details = {"setting": setting, "reason": reason}
        super().__init__(message, details)


# Exception to HTTP status code mapping
STATUS_CODE_MAPPING = {
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    InvalidAmountError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RefundTargetError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UserNotFoundError: status.HTTP_404_NOT_FOUND,
    AuthenticationError: status.HTTP_401_UNAUTHORIZED,
    TokenExpiredError: status.HTTP_401_UNAUTHORIZED,
    InvalidTokenError: status.HTTP_401_UNAUTHORIZED,
    DatabaseError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def to_http_exception(exc: LedgerError) -> HTTPException:
    """Convert ledger exception to HTTP exception with appropriate status code."""
    status_code = STATUS_CODE_MAPPING.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

    headers = None
    if isinstance(exc, DatabaseError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    elif isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}

    return HTTPException(
        status_code=status_code,
        detail={
            "error": exc.__class__.__name__,
            "message": exc.message,
            **exc.details
        },
        headers=headers,
    )


# Global exception handler decorator (sync)
def handle_ledger_exceptions(func):
    """Decorator to automatically convert ledger exceptions to HTTP exceptions."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HTTPException:
            raise
        except LedgerError as e:
            raise to_http_exception(e)
        except (OperationalError, DBAPIError) as e:
            raise to_http_exception(DatabaseError(func.__name__, str(e.orig or e)))
        except Exception:
            # Log unexpected exceptions
            logger.exception(f"Unexpected error in {func.__name__}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred"
                }
            )
    return wrapper
