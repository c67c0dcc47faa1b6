"""Router contracts: task scoring input, scoring result and fallback notifications."""

from datetime import datetime, timezone
from typing import Dict, List
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict


class TaskComplexity(str, Enum):
    """Coarse task complexity, ordered from cheapest to hardest."""

    TRIVIAL = "trivial"
    SIMPLE = "simple"
    STANDARD = "standard"
    COMPLEX = "complex"
    CRITICAL = "critical"


COMPLEXITY_TO_NUMERIC: Dict[TaskComplexity, float] = {
    TaskComplexity.TRIVIAL: 0,
    TaskComplexity.SIMPLE: 2,
    TaskComplexity.STANDARD: 4,
    TaskComplexity.COMPLEX: 6,
    TaskComplexity.CRITICAL: 8,
}


class ThrottleLevel(str, Enum):
    """Budget throttle level supplied by the budget subsystem."""

    NORMAL = "normal"
    WARNING = "warning"
    REDUCE = "reduce"
    PAUSE = "pause"


class WeightSet(BaseModel):
    """Quality/cost/speed weights active for a budget state."""

    model_config = ConfigDict(frozen=True)

    quality: float = Field(..., description="Quality weight")
    cost: float = Field(..., description="Cost weight")
    speed: float = Field(..., description="Speed weight")


BUDGET_STATE_WEIGHTS: Dict[ThrottleLevel, WeightSet] = {
    ThrottleLevel.NORMAL: WeightSet(quality=0.40, cost=0.20, speed=0.15),
    ThrottleLevel.WARNING: WeightSet(quality=0.35, cost=0.30, speed=0.10),
    ThrottleLevel.REDUCE: WeightSet(quality=0.25, cost=0.40, speed=0.10),
    ThrottleLevel.PAUSE: WeightSet(quality=0.15, cost=0.50, speed=0.10),
}


class ScoreInput(BaseModel):
    """Per-task scoring input.

    Numeric dimensions are nominally on a 0-10 scale. Out-of-range values are
    accepted and absorbed by the final clamp of the score rather than rejected.
    """

    model_config = ConfigDict(
        extra="forbid",  # Forbid extra fields
        validate_assignment=True,
        str_strip_whitespace=True
    )

    complexity: TaskComplexity = Field(default=TaskComplexity.STANDARD, description="Task complexity")
    stakes: float = Field(default=5.0, description="Stakes (0-10)")
    quality_priority: float = Field(default=5.0, description="Quality priority (0-10)")
    budget_pressure: float = Field(default=0.0, description="Budget pressure (0-10, inverse-weighted)")
    historical_performance: float = Field(default=5.0, description="Historical performance (0-10)")
    category: str = Field(default="chat", description="Task category, e.g. chat, security, heartbeat")
    security_sensitive: bool = Field(default=False, description="Security-sensitive task")
    agent: str = Field(default="unknown", description="Caller identity")
    content_length: int = Field(default=0, ge=0, description="Content length in characters")


class ScoreResult(BaseModel):
    """Scoring output."""

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=100.0, description="Normalized score")
    recommended_tier: str = Field(..., min_length=1, description="Recommended model tier")
    weights: WeightSet = Field(..., description="Weights for the active budget state")
    reasoning: str = Field(..., description="Trace of the rules that fired")


class FallbackNotification(BaseModel):
    """Emitted when the circuit breaker forces a tier substitution."""

    original_tier: str
    fallback_tier: str
    reason: str
    category: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LearningStatistics(BaseModel):
    """Snapshot of the reinforcement learning table."""

    epsilon: float
    learning_rate: float
    total_updates: int
    categories: Dict[str, Dict[str, Dict[str, float]]] = Field(
        default_factory=dict, description="category -> tier -> {q_value, visits}"
    )
    best_tiers: Dict[str, List[str]] = Field(
        default_factory=dict, description="category -> tiers ordered by Q-value"
    )
