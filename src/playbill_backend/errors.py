"""
Error taxonomy for the media upload pipeline.

Every failure the pipeline can report is an ``UploadError`` subclass carrying
the HTTP status it maps to and the category string shown to clients. Client
errors (4xx) explain what to correct; server faults (5xx) carry a category
hint plus a short detail message and are logged in full server-side.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class UploadError(Exception):
    """Base class for all pipeline failures."""

    status_code: int = 500
    error: str = "Upload failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.error)
        self.message = message or self.error

    def to_payload(self) -> Dict[str, Any]:
        if self.status_code >= 500:
            return {"error": self.error, "details": self.message}
        return {"error": self.message}


class UnauthenticatedError(UploadError):
    status_code = 401
    error = "Authentication required"


class ForbiddenError(UploadError):
    status_code = 403
    error = "Not authorized to delete this image"


class NoFileError(UploadError):
    status_code = 400
    error = "No file uploaded"


class InvalidTargetError(UploadError):
    """Field-level input errors, reported as ``{"errors": {field: message}}``."""

    status_code = 400
    error = "Invalid request"

    def __init__(self, errors: Dict[str, str]) -> None:
        super().__init__("; ".join(f"{field} {message}" for field, message in errors.items()))
        self.errors = dict(errors)

    def to_payload(self) -> Dict[str, Any]:
        return {"errors": self.errors}


class EntityNotFoundError(UploadError):
    status_code = 404
    error = "Entity not found"


class InvalidFileError(UploadError):
    status_code = 400
    error = "Invalid file"


class TranscodeError(UploadError):
    status_code = 500
    error = "Image processing failed"


class NotFoundError(UploadError):
    status_code = 404
    error = "Image not found"


class ConfigError(UploadError):
    status_code = 500
    error = "Server configuration error"


class StorageFault(UploadError):
    status_code = 500
    error = "AWS S3 configuration error"


class RegistryFault(UploadError):
    status_code = 500
    error = "Database error"
