"""
Structured Error Handling for the cited-answer pipeline

Provides a small hierarchy of exceptions, one per failure classification,
each carrying the HTTP status the API boundary reports for it.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class CiteRAGError(Exception):
    """
    Base exception for the pipeline.

    All pipeline-specific errors should inherit from this class.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = "CITERAG_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ):
        """
        Initialize pipeline error.

        Args:
            message: Human-readable error message, returned to the caller
            error_code: Machine-readable error code for logs
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
            status_code: HTTP status override for the API response
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for structured logs"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "status_code": self.status_code,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


# ============================================================================
# Specific Error Types
# ============================================================================


class ValidationError(CiteRAGError):
    """Request rejected before retrieval (bad method, bad JSON, missing query)"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", severity=ErrorSeverity.LOW, **kwargs)
        self.field = field


class ConfigurationError(CiteRAGError):
    """Invalid or missing configuration"""

    status_code = 500

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", severity=ErrorSeverity.CRITICAL, **kwargs)


class UpstreamError(CiteRAGError):
    """An upstream dependency answered with an error or could not be reached"""

    status_code = 502

    def __init__(
        self,
        message: str,
        error_code: str = "UPSTREAM_ERROR",
        upstream_status: Optional[int] = None,
        upstream_body: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, error_code=error_code, severity=ErrorSeverity.HIGH, **kwargs)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class RetrievalFailure(UpstreamError):
    """Retrieval attempt matrix exhausted, or a hard (non auth/shape) failure"""

    def __init__(self, message: str, attempts: int = 0, **kwargs):
        super().__init__(message, error_code="RETRIEVAL_FAILURE", **kwargs)
        self.attempts = attempts


class GenerationFailure(UpstreamError):
    """Generation backend returned a non-success response"""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="GENERATION_FAILURE", **kwargs)
        self.model = model


# ============================================================================
# Error Utilities
# ============================================================================


def get_error_severity(error: Exception) -> ErrorSeverity:
    """Get severity level of error"""
    if isinstance(error, CiteRAGError):
        return error.severity
    return ErrorSeverity.HIGH  # Default for unexpected exceptions


def format_error_for_logging(error: Exception, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, CiteRAGError):
        result.update(error.to_dict())

    if isinstance(error, UpstreamError) and error.upstream_status is not None:
        result["upstream_status"] = error.upstream_status

    if error.__cause__:
        result["caused_by"] = {
            "type": type(error.__cause__).__name__,
            "message": str(error.__cause__),
        }

    return result
