"""Strict contracts for the admission router boundaries."""

from libs.contracts.router import (
    BUDGET_STATE_WEIGHTS,
    COMPLEXITY_TO_NUMERIC,
    FallbackNotification,
    LearningStatistics,
    ScoreInput,
    ScoreResult,
    TaskComplexity,
    ThrottleLevel,
    WeightSet,
)
from libs.contracts.batch import (
    BatchCallback,
    BatchPriority,
    BatchRequest,
    BatchResult,
    BatchState,
    BatchStatus,
    BatchUsage,
)
from libs.contracts.error import ErrorCode, ErrorDetail, ErrorResponse

__all__ = [
    "BUDGET_STATE_WEIGHTS",
    "COMPLEXITY_TO_NUMERIC",
    "FallbackNotification",
    "LearningStatistics",
    "ScoreInput",
    "ScoreResult",
    "TaskComplexity",
    "ThrottleLevel",
    "WeightSet",
    "BatchCallback",
    "BatchPriority",
    "BatchRequest",
    "BatchResult",
    "BatchState",
    "BatchStatus",
    "BatchUsage",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
]
