"""Application error taxonomy.

Services raise these instead of bare exceptions so that routes and the
error handler middleware can choose the HTTP status and retry policy from
the error type alone.
"""

from typing import Any

from fastapi import status


class APIError(Exception):
    """Base exception for API errors.

    Use this class to raise application-specific errors that should
    be returned to the client with a specific status code and message.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type: str = "api_error",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize API error.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code to return.
            error_type: Error category/type for client handling.
            details: Optional additional error details.
        """
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.details = details
        super().__init__(message)


class ValidationError(APIError):
    """Input that cannot succeed without being changed (empty cart, unpublished product...)."""

    def __init__(self, message: str = "Validation error", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="validation_error",
            details=details,
        )


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, message: str = "Resource not found", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_type="not_found",
            details=details,
        )


class ConflictError(APIError):
    """Uniqueness conflict error."""

    def __init__(self, message: str = "Resource already exists", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_type="conflict",
            details=details,
        )


class StateConflictError(APIError):
    """Operation not allowed in the resource's current state (e.g. refunding a pending order)."""

    def __init__(self, message: str = "Invalid state transition", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_type="state_conflict",
            details=details,
        )


class ForbiddenError(APIError):
    """Request understood but refused, e.g. download limit reached."""

    def __init__(self, message: str = "Forbidden", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_type="forbidden",
            details=details,
        )


class GoneError(APIError):
    """Resource existed but is no longer available, e.g. an expired download token."""

    def __init__(self, message: str = "Resource is no longer available", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_410_GONE,
            error_type="gone",
            details=details,
        )


class AuthenticationError(APIError):
    """Authentication failure error."""

    def __init__(self, message: str = "Authentication required", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_type="authentication_error",
            details=details,
        )


class AuthorizationError(APIError):
    """Authorization failure error."""

    def __init__(self, message: str = "Access denied", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_type="authorization_error",
            details=details,
        )


class ExternalServiceError(APIError):
    """A synchronous call to an external dependency failed. Safe to retry."""

    retryable = True

    def __init__(
        self,
        message: str = "External service unavailable",
        service: str | None = None,
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_type="external_unavailable",
            details=details,
        )
        self.service = service


class WebhookSignatureError(APIError):
    """Webhook payload failed signature verification. Never retried by the sender."""

    def __init__(self, message: str = "Invalid signature", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_type="invalid_signature",
            details=details,
        )


class StorageNotConfiguredError(APIError):
    """No object storage is configured, so no file location can be issued."""

    def __init__(self, message: str = "File storage is not configured") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_type="storage_unavailable",
        )
