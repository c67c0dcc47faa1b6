"""Admission router core: tier selection, outcome learning and batch queueing."""

from apps.admission_router.core.adaptive_router import AdaptiveRouter
from apps.admission_router.core.batch_client import AnthropicBatchClient
from apps.admission_router.core.batch_queue import BatchQueue
from apps.admission_router.core.collaborators import (
    InMemoryPerformanceTracker,
    ModelRegistry,
    PerformanceTracker,
    StaticModelRegistry,
)
from apps.admission_router.core.rl_store import (
    InMemoryRLStore,
    JsonFileRLStore,
    RedisRLStore,
    RLState,
    RLStateStore,
)
from apps.admission_router.core.value_scorer import ValueScorer

__all__ = [
    "AdaptiveRouter",
    "AnthropicBatchClient",
    "BatchQueue",
    "InMemoryPerformanceTracker",
    "ModelRegistry",
    "PerformanceTracker",
    "StaticModelRegistry",
    "InMemoryRLStore",
    "JsonFileRLStore",
    "RedisRLStore",
    "RLState",
    "RLStateStore",
    "ValueScorer",
]
