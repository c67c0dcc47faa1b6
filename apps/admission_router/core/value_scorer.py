"""Value/urgency scoring of tasks."""

import re
from typing import List

import structlog

from libs.contracts.router import (
    BUDGET_STATE_WEIGHTS,
    COMPLEXITY_TO_NUMERIC,
    ScoreInput,
    TaskComplexity,
    ThrottleLevel,
    WeightSet,
)

logger = structlog.get_logger(__name__)

SECURITY_PATTERNS = [
    "auth", "credential", "secret", "encryption",
    "vulnerability", "injection", "xss", "csrf",
]
REASONING_PATTERNS = ["why", "explain", "analyze", "compare", "evaluate", "tradeoff"]
CODE_GEN_PATTERNS = ["implement", "refactor", "class", "method", "function"]
CREATIVITY_PATTERNS = ["design", "architect", "brainstorm", "novel", "innovative"]
MULTI_STEP_PATTERNS = ["first", "then", "next", "finally"]
NUMBERED_STEP_RE = re.compile(r"\d+\.\s")

ALWAYS_TRIVIAL_CATEGORIES = frozenset({"heartbeat", "parse_command"})


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ValueScorer:
    """Maps a task description to a 0-100 value score."""

    def compute_score(self, score_input: ScoreInput) -> float:
        complexity_score = COMPLEXITY_TO_NUMERIC[score_input.complexity]
        budget_adjustment = 10 - score_input.budget_pressure

        raw_score = (
            complexity_score * 0.35
            + score_input.stakes * 0.25
            + score_input.quality_priority * 0.20
            + budget_adjustment * 0.10
            + score_input.historical_performance * 0.10
        )

        normalized = raw_score / 10 * 100
        # NaN compares false everywhere; treat it as the lowest score.
        if normalized != normalized:
            return 0.0
        return clamp(normalized, 0.0, 100.0)

    def weights_for(self, budget_level: ThrottleLevel) -> WeightSet:
        return BUDGET_STATE_WEIGHTS[budget_level]

    def classify_complexity(self, content: str, category: str) -> TaskComplexity:
        """Heuristic complexity estimate from task text."""
        if category in ALWAYS_TRIVIAL_CATEGORIES:
            return TaskComplexity.TRIVIAL

        lower = content.lower()
        score = 0.0

        if any(p in lower for p in SECURITY_PATTERNS):
            score += 3
        if any(p in lower for p in REASONING_PATTERNS):
            score += 2
        if any(p in lower for p in CODE_GEN_PATTERNS):
            score += 2
        if any(p in lower for p in CREATIVITY_PATTERNS):
            score += 1.5
        if any(p in lower for p in MULTI_STEP_PATTERNS) or NUMBERED_STEP_RE.search(content):
            score += 1

        estimated_tokens = len(content) / 4
        if estimated_tokens > 2000:
            score += 1
        if estimated_tokens > 5000:
            score += 1

        if category == "security":
            score += 2

        if score < 1:
            return TaskComplexity.TRIVIAL
        if score < 2:
            return TaskComplexity.SIMPLE
        if score < 4:
            return TaskComplexity.STANDARD
        if score < 6:
            return TaskComplexity.COMPLEX
        return TaskComplexity.CRITICAL

    def build_reasoning(
        self,
        score_input: ScoreInput,
        budget_level: ThrottleLevel,
        score: float,
        tier: str,
        fired_rules: List[str],
    ) -> str:
        parts = [
            f"Complexity: {score_input.complexity.value} "
            f"({COMPLEXITY_TO_NUMERIC[score_input.complexity]:g}/10)",
            f"Stakes: {score_input.stakes:g}/10",
            f"Quality priority: {score_input.quality_priority:g}/10",
            f"Budget state: {budget_level.value}",
        ]
        parts.extend(fired_rules)
        parts.append(f"Final score: {score:.1f}/100")
        parts.append(f"Selected: {tier}")
        return ". ".join(parts)
