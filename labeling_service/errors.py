"""
Service Exceptions
"""

from typing import Optional, Dict, Any

from google.api_core import exceptions as api_exceptions

# Google API failures worth retrying
TRANSIENT_API_ERRORS = (
    api_exceptions.TooManyRequests,
    api_exceptions.ServiceUnavailable,
    api_exceptions.InternalServerError,
    api_exceptions.BadGateway,
    api_exceptions.GatewayTimeout,
    api_exceptions.DeadlineExceeded,
    api_exceptions.Aborted,
)


class ImageServiceError(Exception):
    """Base exception for the image labeling service."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": self.details,
        }


class TransientInfrastructureError(ImageServiceError):
    """Raised for network, storage or throttling failures worth retrying."""

    def __init__(
        self,
        message: str = "Temporary infrastructure failure",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "TRANSIENT_FAILURE", 503, details)


class InvalidInputError(ImageServiceError):
    """Raised when input is malformed or unsupported. Never retried."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "INVALID_INPUT", 400, details)
        self.field = field


class StorageError(ImageServiceError):
    """Raised when a storage backend rejects a call for a non-transient reason."""

    def __init__(
        self,
        message: str = "Storage request failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "STORAGE_ERROR", 500, details)


class Unauthorized(ImageServiceError):
    """Raised when a bearer token is missing or rejected."""

    def __init__(
        self,
        message: str = "Authentication required",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "UNAUTHORIZED", 401, details)


class TokenExpired(Unauthorized):
    """Raised when the identity provider reports an expired token."""

    def __init__(self, message: str = "Token expired"):
        super().__init__(message)
        self.code = "TOKEN_EXPIRED"


class Forbidden(ImageServiceError):
    """Raised when a principal addresses another principal's namespace."""

    def __init__(
        self,
        message: str = "Permission denied",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "FORBIDDEN", 403, details)


class NotFound(ImageServiceError):
    """Raised when a resource is not found."""

    def __init__(
        self,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        msg = message or f"{resource_type or 'Resource'} not found{f': {resource_id}' if resource_id else ''}"
        super().__init__(msg, "NOT_FOUND", 404)
        self.resource_type = resource_type
        self.resource_id = resource_id


class SourceObjectMissing(NotFound):
    """Raised when a blob referenced by a notification or request no longer exists."""

    def __init__(self, bucket: str, key: str):
        super().__init__("Object", f"{bucket}/{key}")
        self.bucket = bucket
        self.key = key


class PartialPipelineFailure(ImageServiceError):
    """One pipeline stage failed permanently while the other succeeded."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, "PARTIAL_PIPELINE_FAILURE", 500, details)
