"""
Shared error handling for the property-management access layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for access layer services."""

    status_code = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ServiceError(AccessLayerException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class OfflineQueueError(AccessLayerException):
    """Durable offline queue could not complete an operation."""

    status_code = 503

    def __init__(self, message: str = "Failed to queue request for sync", details: Optional[Dict[str, Any]] = None):
        super().__init__("OFFLINE_QUEUE_ERROR", message, details)


class UnsupportedPayloadError(AccessLayerException):
    """Request body cannot be stored for later delivery."""

    status_code = 503

    def __init__(self, message: str = "Offline queue supports JSON requests only", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNSUPPORTED_PAYLOAD", message, details)
