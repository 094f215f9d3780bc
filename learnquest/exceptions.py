"""
Standardized exception hierarchy for the gamification engine
Provides rich context, consistent logging, and user-friendly error messages
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


class LearnQuestError(Exception):
    """
    Base exception for all engine errors

    Provides:
    - Automatic timestamping
    - Request ID for tracing
    - User-friendly messages
    - Structured context
    - Automatic logging

    Example:
        raise LearnQuestError(
            message="Failed to save gamification state",
            user_id="u-42",
            operation="award",
            context={"activity_type": "course_completion"}
        )
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message or "An error occurred. Please try again."
        self.timestamp = datetime.now(timezone.utc)

        # Auto-log on creation
        self._log_error()

    def _log_error(self) -> None:
        """Log error with full context"""
        log_data = {
            "error_type": self.__class__.__name__,
            "error_message": self.message,  # 'message' is reserved by logging
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation": self.operation,
            "error_context": self.context,
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)
            logger.error(f"{self.__class__.__name__}: {self.message}", extra=log_data, exc_info=self.cause)
        else:
            logger.error(f"{self.__class__.__name__}: {self.message}", extra=log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for API responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat()
        }


# ==========================================
# Validation Errors (Caller Input)
# ==========================================

class ValidationError(LearnQuestError):
    """
    Raised when a caller passes input the engine refuses

    Examples:
    - Negative XP amount
    - Page number below 1
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            user_message=f"Invalid {field}: {message}" if field else message,
            context={"field": field, "value": value},
            **kwargs
        )


# ==========================================
# Lookup Errors
# ==========================================

class NotFoundError(LearnQuestError):
    """Referenced user or achievement does not exist (never retried)"""

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(
            message=message,
            user_message=f"{record_type or 'Record'} not found.",
            context={"record_type": record_type, "record_id": record_id},
            **kwargs
        )


# ==========================================
# Persistence Errors
# ==========================================

class PersistenceError(LearnQuestError):
    """
    Base class for store read/write failures

    The failed operation leaves no partial state; callers may retry it.
    """

    retryable = True

    def __init__(self, message: str, user_message: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            user_message=user_message or "We couldn't save your progress. Please try again.",
            **kwargs
        )


class ConnectionError(PersistenceError):
    """Database connection failed"""

    def __init__(self, message: str = "Database connection failed", **kwargs):
        super().__init__(
            message=message,
            user_message="We're having trouble connecting to the database. Please try again in a moment.",
            **kwargs
        )


class QueryError(PersistenceError):
    """Database query execution failed"""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        **kwargs
    ):
        self.query = query
        super().__init__(
            message=message,
            context={"query": query},
            **kwargs
        )


class StaleStateError(PersistenceError):
    """
    A compare-and-swap write lost against a newer version

    Raised by stores; the awarder re-reads and retries, and only surfaces
    ConcurrentUpdateError once its retries are used up.
    """

    def __init__(self, user_id: str, expected_version: int, **kwargs):
        self.expected_version = expected_version
        super().__init__(
            message=f"State for user {user_id} changed since version {expected_version}",
            user_id=user_id,
            context={"expected_version": expected_version},
            **kwargs
        )

    def _log_error(self) -> None:
        # Routine under contention; the retry loop logs what matters
        logger.debug(f"StaleStateError: {self.message}")


class ConcurrentUpdateError(LearnQuestError):
    """Optimistic-concurrency retries exhausted for one user"""

    retryable = True

    def __init__(self, user_id: str, attempts: int, **kwargs):
        self.attempts = attempts
        super().__init__(
            message=f"Gave up updating user {user_id} after {attempts} conflicting attempts",
            user_id=user_id,
            user_message="Your progress is being updated elsewhere. Please try again.",
            context={"attempts": attempts},
            **kwargs
        )


# ==========================================
# External Collaborator Errors
# ==========================================

class ExternalAPIError(LearnQuestError):
    """
    Base class for collaborator service failures (course activity counts)
    """

    retryable = True

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        self.service = service
        self.status_code = status_code
        super().__init__(
            message=message,
            user_message=f"We're having trouble connecting to {service or 'an external service'}. Please try again later.",
            context={"service": service, "status_code": status_code},
            **kwargs
        )


class MalformedResponseError(ExternalAPIError):
    """Collaborator answered, but not with something we can use (not retried)"""

    retryable = False


# ==========================================
# Configuration Errors
# ==========================================

class ConfigurationError(LearnQuestError):
    """System configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            user_message="The system is not properly configured. Please contact support.",
            context={"config_key": config_key},
            **kwargs
        )


# ==========================================
# Helper Functions
# ==========================================

def wrap_external_exception(
    error: Exception,
    operation: str,
    user_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> LearnQuestError:
    """
    Wrap external exceptions (psycopg, httpx, etc.) into our exception hierarchy

    Args:
        error: Original exception
        operation: What operation was being performed
        user_id: User ID if applicable
        context: Additional context

    Returns:
        Appropriate LearnQuestError subclass

    Example:
        try:
            await cur.execute(query)
        except psycopg.Error as e:
            raise wrap_external_exception(
                e,
                operation="save_user_state",
                user_id="u-42",
            ) from e
    """
    # Import here to avoid circular dependencies
    import httpx
    import psycopg

    if isinstance(error, LearnQuestError):
        return error

    # Database errors
    if isinstance(error, psycopg.OperationalError):
        return ConnectionError(
            message=f"Database connection failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
    elif isinstance(error, psycopg.Error):
        return QueryError(
            message=f"Database query failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            cause=error
        )

    # HTTP errors
    elif isinstance(error, httpx.TimeoutException):
        return ExternalAPIError(
            message=f"API request timed out: {str(error)}",
            service="course service",
            user_id=user_id,
            operation=operation,
            cause=error
        )
    elif isinstance(error, httpx.HTTPStatusError):
        return ExternalAPIError(
            message=f"API returned error: {error.response.status_code}",
            service="course service",
            status_code=error.response.status_code,
            user_id=user_id,
            operation=operation,
            cause=error
        )
    elif isinstance(error, httpx.HTTPError):
        return ExternalAPIError(
            message=f"API request failed: {str(error)}",
            service="course service",
            user_id=user_id,
            operation=operation,
            cause=error
        )

    # Generic fallback
    else:
        return LearnQuestError(
            message=f"{operation} failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
