"""Adaptive router: value score plus budget pressure to a model tier, learned from outcomes."""

import asyncio
import contextlib
import math
import random
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, Union
import structlog

from libs.adapters.circuit_breaker import CircuitBreakerManager
from libs.contracts.batch import BatchResult
from libs.contracts.router import LearningStatistics, ScoreInput, ScoreResult, ThrottleLevel
from libs.events.event_bus import EventBus
from libs.utils.exceptions import PersistenceError, ValidationError

from .bandit_policy import BanditConfig, BanditPolicy, compute_reward
from .collaborators import ModelRegistry, PerformanceTracker
from .fallback import FallbackFilter
from .rl_store import InMemoryRLStore, RLState, RLStateStore
from .tiers import (
    CHEAPEST_TIER,
    CLAUDE_HAIKU_45,
    FALLBACK_HIERARCHY,
    LARGE_CONTEXT_PREFERENCE,
    MINIMUM_CAPABLE_PREFERENCE,
    CapabilityClass,
    TierCatalog,
)
from .value_scorer import ValueScorer

logger = structlog.get_logger(__name__)

PAUSE_CAPABLE_SCORE = 80.0
DEFAULT_LARGE_CONTEXT_THRESHOLD = 600_000


class AdaptiveRouter:
    """Routes tasks to model tiers and learns from their outcomes.

    Scoring is synchronous and reads the RL table without locking; outcome
    updates serialize their read-modify-write-persist sequence on one lock.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        performance_tracker: Optional[PerformanceTracker] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        store: Optional[RLStateStore] = None,
        event_bus: Optional[EventBus] = None,
        catalog: Optional[TierCatalog] = None,
        epsilon: float = 0.10,
        learning_rate: float = 0.1,
        large_context_threshold_chars: int = DEFAULT_LARGE_CONTEXT_THRESHOLD,
        cheapest_tier_categories: Iterable[str] = ("heartbeat",),
        rng: Optional[random.Random] = None,
        write_behind: bool = False,
        flush_interval_s: float = 5.0,
    ):
        self.registry = registry
        self.performance_tracker = performance_tracker
        self.breakers = breakers
        self.store = store or InMemoryRLStore()
        self.event_bus = event_bus
        self.catalog = catalog or TierCatalog()
        self.large_context_threshold_chars = large_context_threshold_chars
        self.cheapest_tier_categories = frozenset(cheapest_tier_categories)
        self.write_behind = write_behind
        self.flush_interval_s = flush_interval_s

        self.scorer = ValueScorer()
        self.policy = BanditPolicy(
            state=RLState(),
            config=BanditConfig(exploration_rate=epsilon, learning_rate=learning_rate),
            catalog=self.catalog,
            performance_tracker=performance_tracker,
            rng=rng,
        )
        self.fallback = FallbackFilter(
            breakers=breakers,
            catalog=self.catalog,
            event_bus=event_bus,
        )

        self._lock = asyncio.Lock()
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None

    @classmethod
    async def create(cls, *args, **kwargs) -> "AdaptiveRouter":
        """Construct a router and load its persisted RL state."""
        router = cls(*args, **kwargs)
        await router.load_state()
        return router

    @property
    def state(self) -> RLState:
        return self.policy.state

    async def load_state(self) -> None:
        """Load RL state; unreadable state starts an empty table."""
        try:
            state = await self.store.load()
        except PersistenceError as e:
            logger.warning("RL state unreadable, starting empty", error=str(e))
            state = RLState()
        except Exception as e:
            logger.error("RL state load failed, starting empty", error=str(e))
            state = RLState()

        async with self._lock:
            self.policy.state = state
        logger.info(
            "RL state loaded",
            categories=len(state.q_table),
            entries=sum(len(tiers) for tiers in state.q_table.values()),
        )

    # Scoring

    def score(
        self,
        score_input: ScoreInput,
        budget_level: Union[ThrottleLevel, str] = ThrottleLevel.NORMAL,
    ) -> ScoreResult:
        """Score a task and recommend a tier."""
        try:
            budget_level = ThrottleLevel(budget_level)
        except ValueError as e:
            raise ValidationError(f"Unknown budget level: {budget_level}") from e

        score = self.scorer.compute_score(score_input)
        tier, fired_rules = self.select_tier(
            score,
            budget_level,
            score_input.category,
            score_input.security_sensitive,
            score_input.agent,
            score_input.content_length,
        )
        reasoning = self.scorer.build_reasoning(score_input, budget_level, score, tier, fired_rules)

        logger.debug(
            "Task scored",
            agent=score_input.agent,
            category=score_input.category,
            score=round(score, 1),
            tier=tier,
            budget_level=budget_level.value,
        )

        return ScoreResult(
            score=score,
            recommended_tier=tier,
            weights=self.scorer.weights_for(budget_level),
            reasoning=reasoning,
        )

    def select_tier(
        self,
        score: float,
        budget_level: ThrottleLevel,
        category: str,
        security_sensitive: bool,
        agent: str = "unknown",
        content_length: int = 0,
    ) -> Tuple[str, List[str]]:
        """Ordered, first-match-wins tier policy followed by the fallback filter."""
        fired: List[str] = []
        available = self._available_tiers()
        floor = None

        tier = None
        if content_length > self.large_context_threshold_chars:
            tier = self._first_available(LARGE_CONTEXT_PREFERENCE, available)
            if tier is not None:
                fired.append(f"Context-window override: {content_length} chars routed to {tier}")

        if tier is not None:
            pass
        elif category in self.cheapest_tier_categories:
            tier = self._cheapest(available)
            fired.append(f"Category override ({category}): routed to cheapest tier")
        elif security_sensitive:
            # Checked before the pause rule so a paused budget never downgrades security work.
            tier = self._minimum_capable(available)
            floor = CLAUDE_HAIKU_45
            fired.append("Security-sensitive: minimum capable tier required")
        elif budget_level == ThrottleLevel.PAUSE:
            if score >= PAUSE_CAPABLE_SCORE:
                tier = self._minimum_capable(available)
                fired.append("Budget paused: high-value task kept on minimum capable tier")
            else:
                tier = self._cheapest(available)
                fired.append("Budget paused: using minimum cost model")
        elif not available:
            tier = CHEAPEST_TIER
            fired.append(f"No tiers available: using default {tier}")
        else:
            tier, info = self.policy.select_arm(available, category, score)
            fired.append(f"RL selection ({info['strategy']})")

        routed = self.fallback.apply(tier, category, floor=floor)
        if routed != tier:
            fired.append(f"Fallback: {tier} -> {routed} (circuit open)")
        return routed, fired

    def _available_tiers(self) -> List[str]:
        try:
            return list(self.registry.list_models({"available_only": True}))
        except Exception as e:
            logger.error("Model registry unavailable", error=str(e))
            return []

    @staticmethod
    def _first_available(preference: Iterable[str], available: List[str]) -> Optional[str]:
        for tier in preference:
            if tier in available:
                return tier
        return None

    def _cheapest(self, available: List[str]) -> str:
        tier = self._first_available(FALLBACK_HIERARCHY, available)
        if tier is not None:
            return tier
        priced = [t for t in available if self.catalog.get(t) is not None]
        if priced:
            return min(priced, key=lambda t: self.catalog.get(t).input_usd_per_mtok)
        if available:
            return available[0]
        return CHEAPEST_TIER

    def _minimum_capable(self, available: List[str]) -> str:
        tier = self._first_available(MINIMUM_CAPABLE_PREFERENCE, available)
        if tier is not None:
            return tier
        capable = [
            t for t in available
            if self.catalog.capability(t) in (CapabilityClass.BALANCED, CapabilityClass.PREMIUM)
        ]
        if capable:
            return min(capable, key=lambda t: self.catalog.get(t).input_usd_per_mtok)
        # No capable tier registered.
        return MINIMUM_CAPABLE_PREFERENCE[0]

    # Learning

    async def on_outcome(
        self,
        category: str,
        tier: str,
        success: bool,
        duration_ms: float,
        cost_usd: float,
        quality_score: float = 1.0,
    ) -> Optional[float]:
        """Record an outcome and return the updated Q-value. Never raises."""
        try:
            duration_ms = max(0.0, duration_ms)
            cost_usd = max(0.0, cost_usd)
            reward = compute_reward(success, duration_ms, cost_usd, quality_score)

            async with self._lock:
                q_value = self.policy.update_arm(category, tier, reward)
                if self.write_behind:
                    self._dirty = True
                else:
                    await self._persist()

            self._record_health(tier, success)
            if self.performance_tracker is not None:
                self.performance_tracker.record_call(
                    tier, category, success, duration_ms, quality_score
                )

            logger.info(
                "Outcome recorded",
                category=category,
                tier=tier,
                success=success,
                reward=round(reward, 3) if math.isfinite(reward) else None,
                q_value=round(q_value, 3),
            )
            return q_value
        except Exception as e:
            logger.error("Failed to record outcome", category=category, tier=tier, error=str(e))
            return None

    def outcome_callback(
        self,
        category: str,
        tier: str,
        started_at: Optional[float] = None,
    ) -> Callable[[BatchResult], Awaitable[None]]:
        """Batch callback feeding a result back into the learning table."""
        started = started_at if started_at is not None else time.monotonic()

        async def record(result: BatchResult) -> None:
            duration_ms = (time.monotonic() - started) * 1000
            cost = 0.0
            if result.usage is not None:
                cost = self.catalog.estimate_cost(
                    tier, result.usage.input_tokens, result.usage.output_tokens
                )
            await self.on_outcome(category, tier, result.success, duration_ms, cost)

        return record

    def _record_health(self, tier: str, success: bool) -> None:
        if self.breakers is None:
            return
        breaker = self.breakers.get_breaker(tier)
        if success:
            breaker.record_success()
        else:
            breaker.record_failure()

    async def _persist(self) -> bool:
        """Save the table. Caller holds the lock."""
        try:
            await self.store.save(self.policy.state)
            return True
        except PersistenceError as e:
            logger.error("Failed to persist RL state", error=str(e))
        except Exception as e:
            logger.error("Unexpected RL state persistence failure", error=str(e))
        return False

    def get_learning_statistics(self) -> LearningStatistics:
        return LearningStatistics(**self.policy.get_arm_statistics())

    async def reset_learning(self, category: Optional[str] = None) -> None:
        async with self._lock:
            self.policy.state.clear(category)
            if self.write_behind:
                self._dirty = True
            else:
                await self._persist()
        logger.info("Learning reset", category=category or "*")

    # Write-behind persistence

    async def flush_state(self) -> bool:
        """Persist pending updates; True when nothing is left dirty."""
        async with self._lock:
            if not self._dirty:
                return True
            if await self._persist():
                self._dirty = False
                return True
            return False

    async def start(self) -> None:
        if self.write_behind and self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop())
            logger.info("RL write-behind started", interval_s=self.flush_interval_s)

    async def stop(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        await self.flush_state()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            await self.flush_state()
