"""
Error handling for the element library.

Provides structured errors with:
- Categorized error codes for every failure the library can hit
- Short user-facing messages (diagnostic detail stays in the logs)
- Transient vs. terminal classification for remote calls
"""

from enum import Enum
from typing import Optional, Dict, Any

import structlog

logger = structlog.get_logger(__name__)


class ErrorCode(Enum):
    """
    Enumeration of all error codes raised inside the element library.

    Organized by category:
    - Remote Errors: production backend / provider failures
    - Registration Errors: element registration lifecycle
    - Store Errors: illegal state transitions
    - Storage Errors: image uploads
    """

    # Remote Errors
    REMOTE_UNAVAILABLE = "REMOTE_UNAVAILABLE"
    REMOTE_REJECTED = "REMOTE_REJECTED"
    REMOTE_TIMEOUT = "REMOTE_TIMEOUT"
    INVALID_RESPONSE = "INVALID_RESPONSE"

    # Registration Errors
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    REGISTRATION_CANCELLED = "REGISTRATION_CANCELLED"

    # Store Errors
    ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Storage Errors
    STORAGE_ERROR = "STORAGE_ERROR"


_FRIENDLY_MESSAGES = {
    ErrorCode.REMOTE_UNAVAILABLE: "Service temporarily unavailable. Please try again in a moment.",
    ErrorCode.REMOTE_REJECTED: "The request was rejected. Please check your input and try again.",
    ErrorCode.REMOTE_TIMEOUT: "Request timed out. Please try again.",
    ErrorCode.INVALID_RESPONSE: "Unexpected response from the server. Please try again.",
    ErrorCode.REGISTRATION_FAILED: "Failed to enable asset for video generation.",
    ErrorCode.REGISTRATION_CANCELLED: "Registration was cancelled.",
    ErrorCode.ELEMENT_NOT_FOUND: "Element not found. Please refresh the library.",
    ErrorCode.INVALID_TRANSITION: "That action is not available for this element right now.",
    ErrorCode.STORAGE_ERROR: "Failed to upload image. Please try again.",
}


class LibraryError(Exception):
    """
    Base exception for element library errors.

    Example:
        >>> raise LibraryError(
        ...     ErrorCode.ELEMENT_NOT_FOUND,
        ...     "No element matches asset a1",
        ...     {"asset_id": "a1"}
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None
    ):
        """
        Initialize library error.

        Args:
            code: Error code from ErrorCode enum
            message: Detailed error message for logging
            details: Additional context (status codes, ids, payloads)
            user_message: Optional override for the user-facing message
        """
        self.code = code
        self.message = message
        self.details = details or {}
        self._user_message = user_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dictionary for logging or API responses."""
        return {
            "error_code": self.code.value,
            "message": self.message,
            "details": self.details,
            "user_message": self.get_user_friendly_message()
        }

    @property
    def user_message(self) -> Optional[str]:
        """Custom user message, if one was given (e.g. the server's own detail)."""
        return self._user_message

    def get_user_friendly_message(self) -> str:
        """
        Returns the short message that may be shown to a user.

        If a custom user message was provided, returns that.
        Otherwise, returns a predefined message based on error code.
        """
        if self._user_message:
            return self._user_message

        return _FRIENDLY_MESSAGES.get(
            self.code,
            "An error occurred. Please try again."
        )

    def log_error(self) -> None:
        """Log error with its code and context."""
        if is_transient(self):
            logger.warning("library_error_transient", **self.to_dict())
        else:
            logger.error("library_error", **self.to_dict())

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class RemoteServiceError(LibraryError):
    """
    Error for production backend failures.

    Carries the HTTP status code and raw body in details; neither is shown
    to the user.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        details: Optional[Dict] = None,
        user_message: Optional[str] = None
    ):
        error_details = details or {}
        if status_code is not None:
            error_details["status_code"] = status_code
        if body:
            error_details["body"] = body[:500]

        if status_code is None:
            code = ErrorCode.REMOTE_UNAVAILABLE
        elif status_code >= 500 or status_code == 429:
            code = ErrorCode.REMOTE_UNAVAILABLE
        else:
            code = ErrorCode.REMOTE_REJECTED

        self.status_code = status_code
        super().__init__(code, message, error_details, user_message)


class RegistrationFailedError(LibraryError):
    """Raised when the provider reports a registration as failed. Not retryable."""

    def __init__(self, reason: str, details: Optional[Dict] = None):
        self.reason = reason
        super().__init__(
            ErrorCode.REGISTRATION_FAILED,
            f"Element registration failed: {reason}",
            details,
            user_message=f"Failed to enable asset: {reason}",
        )


class PollCancelledError(LibraryError):
    """Raised by the poll loop once its cancellation token fires."""

    def __init__(self, details: Optional[Dict] = None):
        super().__init__(
            ErrorCode.REGISTRATION_CANCELLED,
            "Registration polling was cancelled",
            details,
        )


class InvalidTransitionError(LibraryError):
    """Raised when a registration status change is not allowed from the current state."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.INVALID_TRANSITION, message, details)


class ElementNotFoundError(LibraryError):
    """Raised when no element in the store matches a reference."""

    def __init__(self, ref: str):
        super().__init__(
            ErrorCode.ELEMENT_NOT_FOUND,
            f"No element matches {ref!r}",
            {"ref": ref},
        )


class StorageUploadError(LibraryError):
    """Raised when an element image cannot be uploaded to object storage."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(ErrorCode.STORAGE_ERROR, message, details)


def is_transient(error: Exception) -> bool:
    """
    Determines if an error is transient and the remote call may be retried.

    Args:
        error: Exception to check

    Returns:
        True for network-level failures, timeouts and 5xx/429 replies

    Example:
        >>> is_transient(RemoteServiceError("down", status_code=503))
        True
        >>> is_transient(RegistrationFailedError("quota"))
        False
    """
    if isinstance(error, LibraryError):
        return error.code in (ErrorCode.REMOTE_UNAVAILABLE, ErrorCode.REMOTE_TIMEOUT)

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    return False
