"""
Exception hierarchy for the CV pipeline.

HTTP-facing errors derive from CustomHTTPException and are rendered by the
handler in main.py as {"error": <code>, "message": ..., "details": ...}.
Domain errors raised inside services and the worker carry the error phase
that ends up in cv_extractions.error_phase.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException


class CustomHTTPException(HTTPException):
    """HTTP exception with a stable machine-readable error code"""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        detail: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.details = details or {}


class AuthenticationError(CustomHTTPException):
    def __init__(self, detail: str = "Authentication required", details=None):
        super().__init__(
            status_code=401,
            error_code="unauth",
            detail=detail,
            details=details,
            headers={"WWW-Authenticate": "Bearer"},
        )


class TenantError(CustomHTTPException):
    """Caller has no tenant or the resource belongs to another tenant."""

    def __init__(self, detail: str = "Tenant access denied", details=None):
        super().__init__(
            status_code=403, error_code="bad_tenant", detail=detail, details=details
        )


class ValidationError(CustomHTTPException):
    def __init__(self, detail: str, field: Optional[str] = None, details=None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(
            status_code=400, error_code="validation_error", detail=detail, details=details
        )


class MissingFileError(CustomHTTPException):
    def __init__(self, detail: str = "No file uploaded"):
        super().__init__(status_code=400, error_code="missing_file", detail=detail)


class UnsupportedFileTypeError(CustomHTTPException):
    def __init__(self, mime_type: Optional[str]):
        super().__init__(
            status_code=415,
            error_code="unsupported_type",
            detail="Only PDF and DOCX files are accepted",
            details={"mime_type": mime_type},
        )


class FileTooLargeError(CustomHTTPException):
    def __init__(self, size: int, limit: int):
        super().__init__(
            status_code=413,
            error_code="too_large",
            detail=f"File exceeds the {limit // (1024 * 1024)}MB limit",
            details={"size": size, "limit": limit},
        )


class StorageUnavailableError(CustomHTTPException):
    def __init__(self, detail: str = "CV storage is unavailable"):
        super().__init__(
            status_code=503, error_code="storage_unavailable", detail=detail
        )


class NotFoundError(CustomHTTPException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=404, error_code="not_found", detail=detail)


class CVPipelineError(Exception):
    """Base exception for pipeline internals."""

    pass


class StorageError(CVPipelineError):
    """Raised when the blob store cannot read or write a file."""

    pass


class ExtractionServiceError(CVPipelineError):
    """Raised when a call to the extraction service fails."""

    def __init__(self, message: str, phase: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.status_code = status_code


class CVImportError(CVPipelineError):
    """Raised when the importer cannot persist an extraction result."""

    pass


class InvalidTransitionError(CVPipelineError):
    """Raised when a status change is not an edge of the state machine."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Illegal transition {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status
