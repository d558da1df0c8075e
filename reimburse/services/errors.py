"""
Reimbursement pipeline error handling

Specific error types with operator-facing messages and debugging context.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes recorded on rows and returned by the API."""
    # Malformed state (never retried)
    INVALID_PATH = "INVALID_PATH"
    INVALID_EVENT = "INVALID_EVENT"

    # I/O errors
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"

    # Audit pipeline
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"

    # External platform / delivery
    PLATFORM_ERROR = "PLATFORM_ERROR"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"

    # Lifecycle
    WORKER_STATE = "WORKER_STATE"
    NOT_FOUND = "NOT_FOUND"


class ReimburseError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class DownloadError(ReimburseError):
    """Fetching an attachment from its source URL failed."""

    def __init__(self, detail: str, status_code: Optional[int] = None, temporary: bool = False):
        self.status_code = status_code
        self.temporary = temporary
        context: Dict[str, Any] = {"temporary": temporary}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(
            code=ErrorCode.DOWNLOAD_FAILED,
            message="download failed",
            detail=detail,
            context=context
        )


class PathValidationError(ReimburseError):
    """A storage path escapes the attachment root or is otherwise unsafe."""

    def __init__(self, path: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_PATH,
            message=f"invalid storage path '{path}'",
            detail=detail,
            context={"path": path}
        )


class StorageError(ReimburseError):
    """Writing bytes to durable storage failed."""

    def __init__(self, path: str, detail: str):
        super().__init__(
            code=ErrorCode.STORAGE_ERROR,
            message=f"could not write '{path}'",
            detail=detail,
            context={"path": path}
        )


class ExtractionError(ReimburseError):
    """Structured invoice data could not be extracted from a stored file."""

    def __init__(self, detail: str, file_path: Optional[str] = None):
        super().__init__(
            code=ErrorCode.EXTRACTION_FAILED,
            message="invoice extraction failed",
            detail=detail,
            context={"file_path": file_path} if file_path else None
        )


class LLMError(ReimburseError):
    """Error calling the LLM service."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.LLM_UNAVAILABLE,
            message="LLM service unavailable",
            detail=detail
        )


class PlatformError(ReimburseError):
    """The approval platform rejected or failed a request."""

    def __init__(self, operation: str, detail: str, platform_code: Optional[int] = None):
        self.platform_code = platform_code
        context: Dict[str, Any] = {"operation": operation}
        if platform_code is not None:
            context["platform_code"] = platform_code
        super().__init__(
            code=ErrorCode.PLATFORM_ERROR,
            message=f"approval platform {operation} failed",
            detail=detail,
            context=context
        )


class NotificationError(ReimburseError):
    """No approver could be notified for an instance."""

    def __init__(self, instance_id: int, detail: str):
        super().__init__(
            code=ErrorCode.NOTIFICATION_FAILED,
            message=f"notification failed for instance {instance_id}",
            detail=detail,
            context={"instance_id": instance_id}
        )


class WorkerStateError(ReimburseError):
    """A worker was started twice or driven in the wrong lifecycle state."""

    def __init__(self, worker: str, detail: str):
        super().__init__(
            code=ErrorCode.WORKER_STATE,
            message=f"worker {worker} lifecycle error",
            detail=detail,
            context={"worker": worker}
        )


class InvalidEventError(ReimburseError):
    """A webhook payload could not be decoded into instance id + event type."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_EVENT,
            message="invalid approval event",
            detail=detail
        )


class NotFoundError(ReimburseError):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} {entity_id} not found",
            context={"entity": entity, "id": entity_id}
        )


def to_http_status(error: ReimburseError) -> int:
    """Map an error code to the HTTP status returned by the API."""
    status_map = {
        ErrorCode.INVALID_PATH: 400,
        ErrorCode.INVALID_EVENT: 400,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.WORKER_STATE: 409,
        ErrorCode.DOWNLOAD_FAILED: 502,
        ErrorCode.PLATFORM_ERROR: 502,
        ErrorCode.NOTIFICATION_FAILED: 502,
        ErrorCode.LLM_UNAVAILABLE: 503,
    }
    return status_map.get(error.code, 500)
