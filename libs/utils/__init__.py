"""Utility modules for the admission router."""

from libs.utils.exceptions import (
    AdmissionRouterError,
    BatchNotFoundError,
    BatchProcessingFailedError,
    BatchTimeoutError,
    EmptyQueueError,
    PersistenceError,
    SubmissionFailedError,
    UpstreamError,
    ValidationError,
)
from libs.utils.logging_config import configure_structured_logging, get_logger

__all__ = [
    "AdmissionRouterError",
    "BatchNotFoundError",
    "BatchProcessingFailedError",
    "BatchTimeoutError",
    "EmptyQueueError",
    "PersistenceError",
    "SubmissionFailedError",
    "UpstreamError",
    "ValidationError",
    "configure_structured_logging",
    "get_logger",
]
