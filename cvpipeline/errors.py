"""
Typed errors for the CV pipeline.

Every error carries a machine-readable code, a human message and the HTTP
status an outer API layer should map it to.
"""
from typing import Any, Dict, Optional


class ErrorCodes:
    FILE_UPLOAD_FAILED = "FILE_UPLOAD_FAILED"
    TEXT_EXTRACTION_FAILED = "TEXT_EXTRACTION_FAILED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
    EMAIL_EXHAUSTED = "EMAIL_EXHAUSTED"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    INVALID_FILE_PATH = "INVALID_FILE_PATH"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


class CVPipelineError(Exception):
    """Base class for all pipeline errors."""

    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Standard error payload for an API layer."""
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class InvalidFileType(CVPipelineError):
    code = ErrorCodes.INVALID_FILE_TYPE


class FileTooLarge(CVPipelineError):
    code = ErrorCodes.FILE_TOO_LARGE


class NotFound(CVPipelineError):
    code = ErrorCodes.NOT_FOUND
    status_code = 404


class InvalidFilePath(CVPipelineError):
    code = ErrorCodes.INVALID_FILE_PATH


class FileUploadFailed(CVPipelineError):
    code = ErrorCodes.FILE_UPLOAD_FAILED
    status_code = 500


# ---------------------------------------------------------------------------
# Extraction & analysis
# ---------------------------------------------------------------------------

class TextExtractionFailed(CVPipelineError):
    code = ErrorCodes.TEXT_EXTRACTION_FAILED
    status_code = 422


class AnalysisFailed(CVPipelineError):
    code = ErrorCodes.ANALYSIS_FAILED


class SubmissionNotAnalyzed(CVPipelineError):
    """Raised when delivery is requested for a record without an analysis."""

    code = ErrorCodes.VALIDATION_ERROR
    status_code = 409


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class DeliveryFailed(CVPipelineError):
    """Transient send failure, recorded on the row and retried later."""

    code = ErrorCodes.EMAIL_SEND_FAILED
    status_code = 502


class DeliveryExhausted(CVPipelineError):
    """Terminal: every allowed send attempt failed."""

    code = ErrorCodes.EMAIL_EXHAUSTED
    status_code = 502
