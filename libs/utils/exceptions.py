"""Custom exceptions for the admission router."""

from typing import Optional, Dict, Any
from libs.contracts.error import ErrorCode, ErrorDetail


class AdmissionRouterError(Exception):
    """Base service exception."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            error_code=self.error_code,
            message=self.message or self.error_code.value,
            details=self.details,
            retryable=self.retryable,
        )


class ValidationError(AdmissionRouterError):
    """Structurally invalid input at a boundary."""

    error_code = ErrorCode.VALIDATION_ERROR
    status_code = 422


class EmptyQueueError(AdmissionRouterError):
    """Flush requested with nothing queued."""

    error_code = ErrorCode.EMPTY_QUEUE
    status_code = 409

    def __init__(self, message: str = "Queue is empty, nothing to flush"):
        super().__init__(message)


class SubmissionFailedError(AdmissionRouterError):
    """Downstream rejected a batch; its requests are back in the queue."""

    error_code = ErrorCode.SUBMISSION_FAILED
    status_code = 502
    retryable = True


class BatchNotFoundError(AdmissionRouterError):
    """Unknown batch id."""

    error_code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(self, batch_id: str, message: Optional[str] = None):
        self.batch_id = batch_id
        super().__init__(message or f"Batch {batch_id} not found", {"batch_id": batch_id})


class UpstreamError(AdmissionRouterError):
    """Transport failure or non-2xx response from the downstream batch API."""

    error_code = ErrorCode.UPSTREAM_ERROR
    status_code = 502
    retryable = True

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        details = {"upstream_status": upstream_status} if upstream_status is not None else {}
        super().__init__(message, details)


class BatchProcessingFailedError(AdmissionRouterError):
    """Batch job reached a failed or canceled terminal state."""

    error_code = ErrorCode.BATCH_PROCESSING_FAILED
    status_code = 422

    def __init__(self, batch_id: str, state: str):
        self.batch_id = batch_id
        self.state = state
        super().__init__(
            f"Batch {batch_id} processing {state}", {"batch_id": batch_id, "state": state}
        )


class BatchTimeoutError(AdmissionRouterError):
    """Polling exceeded its bound before a terminal state was reached."""

    error_code = ErrorCode.TIMEOUT
    status_code = 504
    retryable = True

    def __init__(self, batch_id: str, timeout_s: float):
        self.batch_id = batch_id
        self.timeout_s = timeout_s
        super().__init__(
            f"Batch {batch_id} did not finish within {timeout_s:.0f}s",
            {"batch_id": batch_id, "timeout_s": timeout_s},
        )


class PersistenceError(AdmissionRouterError):
    """RL state load/save failure. Recovered locally by the router."""

    error_code = ErrorCode.PERSISTENCE_ERROR
    status_code = 500
