"""Centralized exception hierarchy for the capture analysis pipeline."""

from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime


class ErrorSeverity(str, Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification and handling."""
    VALIDATION = "validation"
    BUSINESS_LOGIC = "business_logic"
    EXTERNAL_SERVICE = "external_service"
    RESOURCE = "resource"
    QUEUE = "queue"
    RATE_LIMIT = "rate_limit"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class PipelineException(Exception):
    """Base exception class for all pipeline errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.error_code = error_code
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.user_message = user_message or message
        self.retry_after = retry_after
        self.timestamp = datetime.utcnow()

        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "retry_after": self.retry_after,
            "timestamp": self.timestamp.isoformat()
        }


# Vision adapter errors
class ResourceUnavailableException(PipelineException):
    """The image behind a resource locator is missing or unreadable."""

    def __init__(self, locator: str, reason: str, **kwargs):
        super().__init__(
            message=f"Resource unavailable: {locator} ({reason})",
            error_code="RESOURCE_UNAVAILABLE",
            category=ErrorCategory.RESOURCE,
            severity=ErrorSeverity.MEDIUM,
            details={"locator": locator, "reason": reason},
            user_message="The captured image could not be read.",
            **kwargs
        )


class TransientCallFailure(PipelineException):
    """Network, timeout or 5xx failure calling the vision service."""

    retryable = True

    def __init__(self, service: str, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", "TRANSIENT_CALL_FAILURE")
        super().__init__(
            message=message,
            category=ErrorCategory.EXTERNAL_SERVICE,
            severity=ErrorSeverity.MEDIUM,
            details={"service": service, "status_code": status_code},
            user_message="A temporary service issue occurred. Please try again later.",
            **kwargs
        )


class RateLimitExceededException(TransientCallFailure):
    """The vision service answered 429 despite local rate limiting."""

    def __init__(self, service: str, message: str, retry_after: Optional[int] = None):
        super().__init__(
            service=service,
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            retry_after=retry_after
        )
        self.category = ErrorCategory.RATE_LIMIT


class VisionRequestRejectedException(PipelineException):
    """The vision service rejected the request itself (4xx other than 408/409/429)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(
            message=message,
            error_code="VISION_REQUEST_REJECTED",
            category=ErrorCategory.EXTERNAL_SERVICE,
            severity=ErrorSeverity.HIGH,
            details={"service": service, "status_code": status_code},
            user_message="The vision service rejected the analysis request.",
            **kwargs
        )


class MalformedResponseException(PipelineException):
    """The vision model reply contains no parseable JSON object."""

    retryable = True

    def __init__(self, message: str, raw_excerpt: str = "", **kwargs):
        super().__init__(
            message=message,
            error_code="MALFORMED_RESPONSE",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details={"raw_excerpt": raw_excerpt[:200]},
            **kwargs
        )


# Queue / state errors
class QueueUnavailableException(PipelineException):
    """The job broker could not be reached."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=f"Job queue unavailable: {message}",
            error_code="QUEUE_UNAVAILABLE",
            category=ErrorCategory.QUEUE,
            severity=ErrorSeverity.CRITICAL,
            user_message="The analysis queue is temporarily unavailable.",
            **kwargs
        )


class ResourceNotFoundException(PipelineException):
    """Raised when a requested record is not found."""

    def __init__(self, resource_type: str, resource_id: Any, **kwargs):
        super().__init__(
            message=f"{resource_type} with id '{resource_id}' not found",
            error_code="RESOURCE_NOT_FOUND",
            category=ErrorCategory.BUSINESS_LOGIC,
            severity=ErrorSeverity.LOW,
            details={
                "resource_type": resource_type,
                "resource_id": str(resource_id)
            },
            user_message=f"The requested {resource_type.lower()} was not found.",
            **kwargs
        )


class ItemNotFoundException(ResourceNotFoundException):
    """The capture referenced by a job no longer exists."""

    def __init__(self, item_id: str):
        super().__init__("Capture", item_id)


class JobNotFoundException(ResourceNotFoundException):
    def __init__(self, job_id: int):
        super().__init__("Job", job_id)


class InvalidStateException(PipelineException):
    """Raised when an operation conflicts with the current processing status."""

    def __init__(self, resource_type: str, current_state: str, operation: str, **kwargs):
        super().__init__(
            message=f"Cannot {operation} {resource_type.lower()} in state '{current_state}'",
            error_code="INVALID_STATE",
            category=ErrorCategory.BUSINESS_LOGIC,
            severity=ErrorSeverity.LOW,
            details={
                "resource_type": resource_type,
                "current_state": current_state,
                "operation": operation
            },
            **kwargs
        )


class ConfigurationException(PipelineException):
    """Raised when configuration is invalid or missing."""

    def __init__(self, config_key: str, message: str, **kwargs):
        super().__init__(
            message=f"Configuration error for '{config_key}': {message}",
            error_code="CONFIGURATION_ERROR",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            details={"config_key": config_key},
            user_message="Service configuration error. Please contact support.",
            **kwargs
        )
