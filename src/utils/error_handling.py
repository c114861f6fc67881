"""
Error Handling Module

Provides a unified approach to error handling across the sync engine with:
- Hierarchical exception classes
- Error context enrichment
- Standardized error formatting
- Tagged lookup results separating expected absence from real failures
"""

import logging
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Union, Generic, TypeVar

from src.utils.logging import get_logger

# Setup logger
logger = get_logger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """Classification of error severity."""
    INFO = "info"           # Informational, not a true error
    WARNING = "warning"     # Operation continued but with issues
    ERROR = "error"         # Operation failed but the run can continue
    CRITICAL = "critical"   # The current organization run cannot continue
    FATAL = "fatal"         # The process cannot continue


class BaseError(Exception):
    """
    Base exception for all sync engine errors.

    Provides common functionality for error handling, context enrichment,
    and standardized formatting.
    """

    def __init__(
        self,
        message: str,
        original_exception: Optional[Exception] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the error.

        Args:
            message: Human-readable error message
            original_exception: Original exception if this wraps another error
            severity: Error severity level
            context: Additional context information
        """
        self.message = message
        self.original_exception = original_exception
        self.severity = severity
        self.context = context or {}
        self.traceback = traceback.format_exc() if original_exception else None

        super().__init__(self.message)

    def add_context(self, **kwargs) -> 'BaseError':
        """Add additional context to the error; returns self for chaining."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the error to a dictionary representation.

        Returns:
            Dictionary representation of the error
        """
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value
        }

        if self.context:
            result["context"] = self.context

        if self.original_exception:
            result["original_error"] = str(self.original_exception)
            result["original_error_type"] = self.original_exception.__class__.__name__

        return result

    def log(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the error with appropriate severity.

        Args:
            logger: Logger to use, defaults to module logger
        """
        log = logger or globals()["logger"]

        if self.severity == ErrorSeverity.INFO:
            log_method = log.info
        elif self.severity == ErrorSeverity.WARNING:
            log_method = log.warning
        elif self.severity == ErrorSeverity.ERROR:
            log_method = log.error
        else:  # CRITICAL or FATAL
            log_method = log.critical

        context_str = f" Context: {self.context}" if self.context else ""
        log_method(f"{self.__class__.__name__}: {self.message}{context_str}")

        if self.traceback and self.severity != ErrorSeverity.INFO:
            log.debug(f"Traceback for {self.__class__.__name__}:\n{self.traceback}")


class ConfigurationError(BaseError):
    """Error raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            severity=ErrorSeverity.ERROR,
            context=context,
            **kwargs
        )


class ProviderError(BaseError):
    """Base class for identity provider API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        **kwargs
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            status_code: HTTP status code
            endpoint: API endpoint that was called
            **kwargs: Additional arguments
        """
        context = kwargs.pop("context", {})
        if status_code:
            context["status_code"] = status_code
        if endpoint:
            context["endpoint"] = endpoint
        self.status_code = status_code

        super().__init__(
            message,
            context=context,
            **kwargs
        )


class CredentialError(ProviderError):
    """
    Missing, expired or unrefreshable provider credentials.

    Fatal for the current organization's run and never retried within it.
    """

    def __init__(self, message: str, organization_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if organization_id:
            context["organization_id"] = organization_id
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            context=context,
            **kwargs
        )


class ProviderTransientError(ProviderError):
    """Rate limit, timeout or transient 5xx from a provider."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        attempts: int = 0,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if retry_after is not None:
            context["retry_after"] = retry_after
        if attempts:
            context["attempts"] = attempts
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            context=context,
            **kwargs
        )


class PersistenceError(BaseError):
    """A database write failed; the failing batch is abandoned."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        batch_size: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if operation:
            context["operation"] = operation
        if batch_size is not None:
            context["batch_size"] = batch_size
        self.operation = operation
        super().__init__(
            message,
            severity=ErrorSeverity.ERROR,
            context=context,
            **kwargs
        )


class MergeConflictError(BaseError):
    """Re-pointing a relationship would duplicate a (user, application) pair."""

    def __init__(self, message: str, user_id: Optional[int] = None,
                 application_id: Optional[int] = None, **kwargs):
        context = kwargs.pop("context", {})
        if user_id is not None:
            context["user_id"] = user_id
        if application_id is not None:
            context["application_id"] = application_id
        self.user_id = user_id
        self.application_id = application_id
        super().__init__(
            message,
            severity=ErrorSeverity.INFO,
            context=context,
            **kwargs
        )


class RunInProgressError(BaseError):
    """A live run for the organization is already executing in this process."""

    def __init__(self, organization_id: int, **kwargs):
        self.organization_id = organization_id
        super().__init__(
            f"A live reconciliation for organization {organization_id} is already running",
            severity=ErrorSeverity.WARNING,
            context={"organization_id": organization_id},
            **kwargs
        )


# Tagged lookup results

@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    """Expected absence; not an error."""
    what: str


@dataclass(frozen=True)
class TransientFailure:
    """Lookup failed for a reason that may succeed on retry."""
    error: BaseError


@dataclass(frozen=True)
class FatalFailure:
    """Lookup failed and retrying will not help."""
    error: BaseError


LookupResult = Union[Found[T], NotFound, TransientFailure, FatalFailure]


def format_error_for_response(
    error: Union[BaseError, Exception],
    include_details: bool = False
) -> Dict[str, Any]:
    """
    Format an error for API responses.

    Args:
        error: Error to format
        include_details: Whether to include detailed information

    Returns:
        Formatted error dictionary
    """
    if isinstance(error, BaseError):
        result = {
            "success": False,
            "error": error.message,
            "error_type": error.__class__.__name__
        }
        if include_details and error.context:
            result["details"] = error.context
        return result

    return {
        "success": False,
        "error": str(error),
        "error_type": error.__class__.__name__
    }
