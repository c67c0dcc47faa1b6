"""Error envelope returned by the HTTP surface."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EMPTY_QUEUE = "EMPTY_QUEUE"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    BATCH_PROCESSING_FAILED = "BATCH_PROCESSING_FAILED"
    TIMEOUT = "TIMEOUT"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    """What went wrong and whether the caller may retry."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    error_code: ErrorCode
    message: str = Field(..., min_length=1, max_length=2000)
    details: Dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: ErrorDetail
