"""Batch queue contracts: requests, per-request results and batch job status."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict


class BatchPriority(str, Enum):
    """Request priority."""

    LOW = "low"
    NORMAL = "normal"


class BatchState(str, Enum):
    """Batch job state as seen by this service."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchState.COMPLETED, BatchState.FAILED, BatchState.CANCELED)


class BatchUsage(BaseModel):
    """Token usage for a single batch result."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)


class BatchResult(BaseModel):
    """Result of a single request inside a batch job."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., description="Matches BatchRequest.id (custom_id)")
    success: bool
    content: Optional[str] = None
    usage: Optional[BatchUsage] = None
    error: Optional[str] = None


BatchCallback = Callable[[BatchResult], Union[None, Awaitable[None]]]


@dataclass
class BatchRequest:
    """A completion request waiting to be batched.

    The queue submits a copy carrying a fresh ``id``; the caller's instance is left untouched.
    """
    model: str
    user_message: str
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    priority: BatchPriority = BatchPriority.NORMAL
    metadata: Dict[str, Any] = field(default_factory=dict)
    callback: Optional[BatchCallback] = None
    id: str = ""


class BatchStatus(BaseModel):
    """Mirror of a downstream batch job."""

    batch_id: str
    status: BatchState
    total_requests: int = Field(default=0, ge=0)
    completed_requests: int = Field(default=0, ge=0)
    failed_requests: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
