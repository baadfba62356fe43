"""Domux error handling.

Custom exceptions and error codes for session handling, estimate
generation and the finalization pipeline.
"""

from typing import Optional, Dict, Any


# Error Codes
class ErrorCode:
    """Error code constants."""

    # Validation Errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FIELD = "INVALID_FIELD"
    UNAUTHORIZED = "UNAUTHORIZED"
    USER_DISABLED = "USER_DISABLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Timeouts
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"

    # Pipeline Errors
    GENERATION_FAILED = "GENERATION_FAILED"
    FINALIZATION_FAILED = "FINALIZATION_FAILED"
    EDIT_FAILED = "EDIT_FAILED"
    ARTIFACT_BUILD_FAILED = "ARTIFACT_BUILD_FAILED"

    # Firestore Errors
    FIRESTORE_ERROR = "FIRESTORE_ERROR"
    FIRESTORE_WRITE_FAILED = "FIRESTORE_WRITE_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"

    # Storage Errors
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"

    # LLM Errors
    LLM_ERROR = "LLM_ERROR"
    LLM_RATE_LIMIT = "LLM_RATE_LIMIT"
    LLM_CONTEXT_TOO_LONG = "LLM_CONTEXT_TOO_LONG"
    IMAGE_GENERATION_FAILED = "IMAGE_GENERATION_FAILED"

    # Image Normalization Errors
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"
    IMAGE_UNREADABLE = "IMAGE_UNREADABLE"
    IMAGE_DECODE_FAILED = "IMAGE_DECODE_FAILED"
    IMAGE_CONTEXT_UNAVAILABLE = "IMAGE_CONTEXT_UNAVAILABLE"
    IMAGE_ENCODE_FAILED = "IMAGE_ENCODE_FAILED"


class DomuxError(Exception):
    """Base exception for Domux errors.

    Provides structured error information for API responses.

    Attributes:
        code: Error code from ErrorCode constants
        message: Human-readable error message
        details: Additional error context
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Initialize DomuxError.

        Args:
            code: Error code from ErrorCode constants
            message: Human-readable error message
            details: Additional error context
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API response.

        Returns:
            Dictionary with code, message, and details.
        """
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(DomuxError):
    """Missing or invalid input, reported before any network call."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details={**(details or {}), "field": field} if field else details
        )
        self.field = field


class OperationTimeoutError(DomuxError):
    """A bounded wait elapsed before the operation completed."""

    DEFAULT_MESSAGE = "The operation took too long."

    def __init__(
        self,
        message: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        operation: Optional[str] = None
    ):
        super().__init__(
            code=ErrorCode.OPERATION_TIMEOUT,
            message=message or self.DEFAULT_MESSAGE,
            details={"timeout_ms": timeout_ms, "operation": operation}
        )
        self.timeout_ms = timeout_ms
        self.operation = operation


class ServiceError(DomuxError):
    """Upstream AI/storage/database failure surfaced with a stage prefix."""

    def __init__(
        self,
        code: str,
        message: str,
        stage: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            details={**(details or {}), "stage": stage} if stage else details
        )
        self.stage = stage


class FinalizationError(DomuxError):
    """Finalization aborted; the session was paused so it can be resumed."""

    def __init__(
        self,
        message: str,
        session_id: str,
        failed_stage: Optional[str] = None,
        cause_code: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        super().__init__(
            code=ErrorCode.FINALIZATION_FAILED,
            message=message,
            details={
                **(details or {}),
                "session_id": session_id,
                "failed_stage": failed_stage,
                "cause_code": cause_code,
                "recoverable": True
            }
        )
        self.session_id = session_id
        self.failed_stage = failed_stage
        self.cause_code = cause_code


class ImageNormalizationError(DomuxError):
    """Image could not be normalized; the caller must re-prompt the user."""

    def __init__(self, code: str, message: str, details: Optional[Dict] = None):
        super().__init__(code=code, message=message, details=details)
