"""Epsilon-greedy bandit over model tiers, keyed by task category."""

import math
import random
from dataclasses import dataclass
from typing import Dict, List, Any, Optional, Tuple
import structlog

from .collaborators import PerformanceTracker
from .rl_store import RLState
from .tiers import CapabilityClass, TierCatalog

logger = structlog.get_logger(__name__)

# Reference scales for reward shaping.
COST_REFERENCE_USD = 0.05
LATENCY_REFERENCE_MS = 10_000.0
MIN_CALLS_FOR_STATS = 5
HEURISTIC_BONUS = 5.0


@dataclass
class BanditConfig:
    """Bandit policy configuration."""
    exploration_rate: float = 0.10  # Epsilon for epsilon-greedy
    learning_rate: float = 0.1  # Alpha for the single-step update
    q_weight: float = 0.6
    performance_weight: float = 0.2
    heuristic_weight: float = 0.2


def compute_reward(
    success: bool,
    duration_ms: float,
    cost_usd: float,
    quality_score: float = 1.0,
) -> float:
    """Reward for one outcome: quality-scaled on success, flat -10 on failure."""
    if not success:
        return -10.0
    cost_efficiency = max(0.0, 1 - cost_usd / COST_REFERENCE_USD)
    speed_efficiency = max(0.0, 1 - duration_ms / LATENCY_REFERENCE_MS)
    return quality_score * 10 + cost_efficiency * 2 + speed_efficiency * 2


def capability_band(score: float) -> Optional[CapabilityClass]:
    """Capability class a score asks for; None between the bands."""
    if score >= 85:
        return CapabilityClass.PREMIUM
    if score >= 60:
        return CapabilityClass.BALANCED
    if score < 50:
        return CapabilityClass.ECONOMY
    return None


class BanditPolicy:
    """Epsilon-greedy tier selection over a shared RL table.

    The table is mutated only through ``update``; callers serialize updates.
    """

    def __init__(
        self,
        state: RLState,
        config: Optional[BanditConfig] = None,
        catalog: Optional[TierCatalog] = None,
        performance_tracker: Optional[PerformanceTracker] = None,
        rng: Optional[random.Random] = None,
    ):
        self.state = state
        self.config = config or BanditConfig()
        self.catalog = catalog or TierCatalog()
        self.performance_tracker = performance_tracker
        self.rng = rng or random.Random()

    def select_arm(
        self,
        available: List[str],
        category: str,
        score: float,
    ) -> Tuple[str, Dict[str, Any]]:
        """Select a tier among ``available`` (non-empty, registry order)."""
        if self.rng.random() < self.config.exploration_rate:
            tier = self.rng.choice(available)
            return tier, {"strategy": "exploration"}

        arm_values = self.calculate_arm_values(available, category, score)
        best_tier = available[0]
        best_value = arm_values[best_tier]
        for tier in available[1:]:
            if arm_values[tier] > best_value:
                best_tier = tier
                best_value = arm_values[tier]

        return best_tier, {"strategy": "exploitation", "expected_value": best_value}

    def calculate_arm_values(
        self,
        available: List[str],
        category: str,
        score: float,
    ) -> Dict[str, float]:
        band = capability_band(score)
        values = {}
        for tier in available:
            bonus = HEURISTIC_BONUS if band is not None and self.catalog.capability(tier) == band else 0.0
            values[tier] = (
                self.state.q_value(category, tier) * self.config.q_weight
                + self.performance_weight(tier, category) * 5 * self.config.performance_weight
                + bonus * self.config.heuristic_weight
            )
        return values

    def performance_weight(self, tier: str, category: str) -> float:
        """Weight in [0.5, 1.5] from tracked history, 1.0 without enough data."""
        if self.performance_tracker is None:
            return 1.0
        try:
            stats = self.performance_tracker.get_performance_stats(tier).for_category(category)
        except Exception as e:
            logger.warning("Performance stats unavailable", tier=tier, error=str(e))
            return 1.0

        if stats is None or stats.total_calls < MIN_CALLS_FOR_STATS:
            return 1.0

        quality_norm = max(0.0, min(1.0, stats.avg_quality))
        reliability = 1 - max(0.0, min(1.0, stats.error_rate))
        speed = max(0.0, 1 - stats.avg_latency_ms / LATENCY_REFERENCE_MS)
        return 0.5 + (quality_norm * 0.4 + reliability * 0.3 + speed * 0.3)

    def update_arm(self, category: str, tier: str, reward: float) -> float:
        """Apply Q <- Q + alpha * (reward - Q) and count the visit."""
        if not math.isfinite(reward):
            logger.warning("Ignoring non-finite reward", category=category, tier=tier)
            return self.state.q_value(category, tier)

        current = self.state.q_value(category, tier)
        updated = current + self.config.learning_rate * (reward - current)
        visits = self.state.visit_count(category, tier) + 1
        self.state.set(category, tier, updated, visits)
        return updated

    def get_arm_statistics(self) -> Dict[str, Any]:
        categories: Dict[str, Dict[str, Dict[str, float]]] = {}
        best_tiers: Dict[str, List[str]] = {}
        total = 0
        for category, tiers in self.state.q_table.items():
            categories[category] = {}
            for tier, q_value in tiers.items():
                visits = self.state.visit_count(category, tier)
                total += visits
                categories[category][tier] = {"q_value": q_value, "visits": visits}
            best_tiers[category] = sorted(tiers, key=lambda t: tiers[t], reverse=True)
        return {
            "epsilon": self.config.exploration_rate,
            "learning_rate": self.config.learning_rate,
            "total_updates": total,
            "categories": categories,
            "best_tiers": best_tiers,
        }
