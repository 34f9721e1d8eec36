"""
Conversion errors

Every per-job failure carries a human-readable message and a machine-checkable
kind. The kinds double as the ``error.kind`` field stored on failed jobs.
"""

from typing import Optional, Dict, Any

from .models import ErrorKind


class ConversionError(Exception):
    """Base exception for the conversion engine."""

    kind: ErrorKind = ErrorKind.BACKEND_FAILURE

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ConversionError):
    """Raised when a request or its options are malformed."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.field = field


class UnsupportedOperation(ConversionError):
    """Raised when no backend handles a (source, target, operation) triple."""

    kind = ErrorKind.UNSUPPORTED_OPERATION

    def __init__(self, source_format: str, target_format: str, operation: str):
        super().__init__(
            f"Operation '{operation}' from {source_format} to {target_format} is not supported",
            {
                "source_format": source_format,
                "target_format": target_format,
                "operation": operation,
            },
        )


class BackendFailure(ConversionError):
    """Raised when a backend could not complete the transformation."""

    kind = ErrorKind.BACKEND_FAILURE


class ResourceError(ConversionError):
    """Raised when an artifact could not be read or written."""

    kind = ErrorKind.RESOURCE_ERROR


class InvalidStateTransition(RuntimeError):
    """Raised on an illegal job status transition. This is a programming error."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobNotFound(KeyError):
    """Raised when a job id is unknown to the tracker."""

    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"
