"""Error taxonomy shared by every ingestion component.

Only ``kind`` is meant for programmatic matching; ``message`` is human
readable and ``details`` carries optional JSON-safe context.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Optional


class ErrorKind(StrEnum):
    VALIDATION_ERROR = "ValidationError"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    NOT_CONFIGURED = "NotConfigured"
    NOT_SUPPORTED = "NotSupported"
    UNSUPPORTED = "Unsupported"
    OCR_NOT_CONFIGURED = "OcrNotConfigured"
    OCR_FAILED = "OcrFailed"
    LLM_FAILED = "LlmFailed"
    LLM_REQUIRED = "LlmRequired"
    STORAGE_ERROR = "StorageError"


class IngestError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class ValidationFailedError(IngestError):
    kind = ErrorKind.VALIDATION_ERROR


class NotFoundError(IngestError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(IngestError):
    kind = ErrorKind.CONFLICT


class NotConfiguredError(IngestError):
    kind = ErrorKind.NOT_CONFIGURED


class NotSupportedError(IngestError):
    kind = ErrorKind.NOT_SUPPORTED


class UnsupportedFileError(IngestError):
    kind = ErrorKind.UNSUPPORTED


class OcrNotConfiguredError(IngestError):
    kind = ErrorKind.OCR_NOT_CONFIGURED


class OcrFailedError(IngestError):
    kind = ErrorKind.OCR_FAILED


class LlmFailedError(IngestError):
    kind = ErrorKind.LLM_FAILED


class LlmRequiredError(IngestError):
    kind = ErrorKind.LLM_REQUIRED


class StorageError(IngestError):
    kind = ErrorKind.STORAGE_ERROR


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_CONFIGURED: 503,
    ErrorKind.NOT_SUPPORTED: 501,
    ErrorKind.UNSUPPORTED: 415,
    ErrorKind.OCR_NOT_CONFIGURED: 503,
    ErrorKind.OCR_FAILED: 502,
    ErrorKind.LLM_FAILED: 502,
    ErrorKind.LLM_REQUIRED: 503,
    ErrorKind.STORAGE_ERROR: 500,
}
