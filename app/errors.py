"""Exception hierarchy for the document Q&A service.

Callers distinguish three kinds of failure:

- ``ConfigurationError``: a credential or required name is missing
- ``ValidationError``: the caller sent something unusable (empty text,
  unsupported file type, ...)
- ``UpstreamError``: Gemini or the vector index failed; ``stage`` says which
  step of the pipeline was running

The ``Index*Error`` classes are raised by the index service clients and are
translated to ``UpstreamError`` by the gateway, except for
``IndexAlreadyExistsError`` which the gateway treats as success during index
creation.
"""
from typing import Any, Dict, Optional


class RAGError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(RAGError):
    """Raised when a credential or required setting is absent."""


class ValidationError(RAGError, ValueError):
    """Raised when input validation fails."""


class UnsupportedFileTypeError(ValidationError):
    """Raised when a file's MIME type cannot be converted to text."""

    def __init__(self, mime_type: str):
        super().__init__(f"Unsupported file type: {mime_type}", {"mime_type": mime_type})
        self.mime_type = mime_type


class UpstreamError(RAGError):
    """Raised when an external capability (Gemini, vector index) fails.

    Args:
        stage: Pipeline step that failed, e.g. "embedding" or "index query"
        message: Original error message from the upstream failure
        details: Optional extra context
    """

    def __init__(
        self,
        stage: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.stage = stage
        super().__init__(f"{stage} failed: {message}", details)


class IndexServiceError(RAGError):
    """Raised by an index service client when a request fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)


class IndexAlreadyExistsError(IndexServiceError):
    """Raised when creating an index whose name is already taken."""


class IndexNotFoundError(IndexServiceError):
    """Raised when the named index does not exist."""
