"""Unit tests for the ordered tier selection policy of the adaptive router."""

import random
from unittest.mock import MagicMock

import pytest

from apps.admission_router.core.adaptive_router import AdaptiveRouter
from apps.admission_router.core.collaborators import StaticModelRegistry
from apps.admission_router.core.tiers import (
    CHEAPEST_TIER,
    CLAUDE_HAIKU_3,
    CLAUDE_HAIKU_45,
    CLAUDE_OPUS_46,
    CLAUDE_SONNET_4,
    CLAUDE_SONNET_45,
    GEMINI_25_PRO,
    GROK_41_FAST,
)
from libs.contracts.router import ScoreInput, TaskComplexity, ThrottleLevel
from libs.events.event_bus import EventType
from libs.utils.exceptions import ValidationError

LARGE_CONTENT = 700_000


def low_value_input(**overrides) -> ScoreInput:
    fields = dict(
        complexity=TaskComplexity.TRIVIAL,
        stakes=0,
        quality_priority=0,
        budget_pressure=10,
        historical_performance=0,
    )
    fields.update(overrides)
    return ScoreInput(**fields)


def high_value_input(**overrides) -> ScoreInput:
    fields = dict(
        complexity=TaskComplexity.CRITICAL,
        stakes=10,
        quality_priority=10,
        budget_pressure=0,
        historical_performance=10,
    )
    fields.update(overrides)
    return ScoreInput(**fields)


class TestContextWindowOverride:
    """Large content goes to the highest-context tier available."""

    def test_large_content_selects_high_context_tier(self, router):
        result = router.score(ScoreInput(content_length=LARGE_CONTENT))
        assert result.recommended_tier == GROK_41_FAST
        assert "Context-window override" in result.reasoning

    def test_overrides_category_security_and_budget(self, router):
        result = router.score(
            low_value_input(category="heartbeat", security_sensitive=True, content_length=LARGE_CONTENT),
            ThrottleLevel.PAUSE,
        )
        assert result.recommended_tier == GROK_41_FAST

    def test_uses_next_preference_when_first_unavailable(self, router, registry):
        registry.mark_unavailable(GROK_41_FAST)
        result = router.score(ScoreInput(content_length=LARGE_CONTENT))
        assert result.recommended_tier == GEMINI_25_PRO

    def test_falls_through_when_no_large_context_tier(self, event_bus):
        router = AdaptiveRouter(
            registry=StaticModelRegistry([CLAUDE_HAIKU_3, CLAUDE_SONNET_4]),
            event_bus=event_bus,
            epsilon=0.0,
        )
        result = router.score(ScoreInput(category="heartbeat", content_length=LARGE_CONTENT))
        assert result.recommended_tier == CLAUDE_HAIKU_3
        assert "Context-window override" not in result.reasoning

    def test_threshold_is_exclusive(self, router):
        result = router.score(ScoreInput(content_length=600_000))
        assert result.recommended_tier != GROK_41_FAST


class TestCategoryOverride:
    """Cheap categories always use the cheapest tier."""

    def test_heartbeat_goes_to_cheapest_tier(self, router):
        result = router.score(high_value_input(category="heartbeat"))
        assert result.recommended_tier == CHEAPEST_TIER
        assert "Category override (heartbeat)" in result.reasoning

    def test_configured_categories(self, registry):
        router = AdaptiveRouter(registry=registry, epsilon=0.0, cheapest_tier_categories=["ping"])
        assert router.score(high_value_input(category="ping")).recommended_tier == CHEAPEST_TIER
        assert router.score(high_value_input(category="heartbeat")).recommended_tier != CHEAPEST_TIER


class TestSecurityOverride:
    """Security-sensitive tasks use the minimum capable tier and skip RL."""

    def test_security_uses_minimum_capable_tier(self, router):
        result = router.score(low_value_input(security_sensitive=True))
        assert result.recommended_tier == CLAUDE_SONNET_4
        assert "Security-sensitive" in result.reasoning
        assert "RL selection" not in result.reasoning

    def test_security_never_cheapest_when_paused_at_zero_score(self, router):
        result = router.score(low_value_input(security_sensitive=True), ThrottleLevel.PAUSE)
        assert result.score == 0.0
        assert result.recommended_tier != CHEAPEST_TIER

    def test_security_ignores_exploration(self, registry):
        router = AdaptiveRouter(registry=registry, epsilon=1.0, rng=random.Random(0))
        for _ in range(20):
            result = router.score(ScoreInput(security_sensitive=True))
            assert result.recommended_tier == CLAUDE_SONNET_4

    def test_security_uses_substitute_when_minimum_unavailable(self, router, registry):
        registry.mark_unavailable(CLAUDE_SONNET_4)
        assert router.score(ScoreInput(security_sensitive=True)).recommended_tier == CLAUDE_SONNET_45

    def test_security_fallback_stops_above_cheapest(self, router, breakers):
        for tier in (CLAUDE_SONNET_4, CLAUDE_HAIKU_45):
            for _ in range(3):
                breakers.get_breaker(tier).record_failure()
        result = router.score(ScoreInput(security_sensitive=True))
        assert result.recommended_tier == CLAUDE_HAIKU_45

    def test_security_picks_available_capable_tier_outside_preference(self):
        registry = StaticModelRegistry([CLAUDE_HAIKU_3, GEMINI_25_PRO])
        router = AdaptiveRouter(registry=registry, epsilon=0.0, rng=random.Random(7))
        result = router.score(ScoreInput(security_sensitive=True))
        assert result.recommended_tier == GEMINI_25_PRO

    def test_paused_high_value_task_stays_on_available_tier(self):
        registry = StaticModelRegistry([CLAUDE_HAIKU_3, GEMINI_25_PRO])
        router = AdaptiveRouter(registry=registry, epsilon=0.0, rng=random.Random(7))
        result = router.score(high_value_input(), ThrottleLevel.PAUSE)
        assert result.recommended_tier == GEMINI_25_PRO


class TestBudgetPause:
    """Paused budget routes to the cheapest tier unless the task is high value."""

    def test_low_score_goes_cheapest(self, router):
        result = router.score(ScoreInput(), ThrottleLevel.PAUSE)
        assert result.recommended_tier == CHEAPEST_TIER
        assert "Budget paused: using minimum cost model" in result.reasoning

    def test_high_score_keeps_capable_tier(self, router):
        result = router.score(high_value_input(), ThrottleLevel.PAUSE)
        assert result.score >= 80
        assert result.recommended_tier == CLAUDE_SONNET_4

    def test_weights_reflect_pause(self, router):
        result = router.score(ScoreInput(), ThrottleLevel.PAUSE)
        assert result.weights.cost == 0.50

    def test_accepts_string_budget_level(self, router):
        assert router.score(ScoreInput(), "pause").recommended_tier == CHEAPEST_TIER

    def test_unknown_budget_level_rejected(self, router):
        with pytest.raises(ValidationError):
            router.score(ScoreInput(), "panic")


class TestRLSelection:
    """Epsilon-greedy selection on the default path."""

    def test_high_value_task_prefers_premium_tier(self, router):
        result = router.score(high_value_input(), ThrottleLevel.NORMAL)
        assert result.score == pytest.approx(93.0)
        assert result.recommended_tier == CLAUDE_OPUS_46
        assert "RL selection (exploitation)" in result.reasoning

    def test_mid_band_score_prefers_balanced_tier(self, router):
        result = router.score(ScoreInput(stakes=8, quality_priority=8))
        assert 60 <= result.score < 85
        assert result.recommended_tier == CLAUDE_SONNET_4

    def test_ties_resolve_to_registry_order(self, router):
        # 51.5 sits between the bands: every tier has the same value.
        result = router.score(ScoreInput())
        assert result.recommended_tier == CLAUDE_HAIKU_3

    def test_learned_q_value_wins(self, router):
        router.state.set("chat", CLAUDE_SONNET_45, 10.0, 5)
        assert router.score(ScoreInput()).recommended_tier == CLAUDE_SONNET_45

    def test_q_values_are_per_category(self, router):
        router.state.set("coding", CLAUDE_SONNET_45, 10.0, 5)
        assert router.score(ScoreInput(category="chat")).recommended_tier == CLAUDE_HAIKU_3

    def test_exploration_picks_available_tiers(self, registry):
        router = AdaptiveRouter(registry=registry, epsilon=1.0, rng=random.Random(3))
        available = set(registry.list_models({"available_only": True}))
        seen = set()
        for _ in range(100):
            result = router.score(ScoreInput())
            assert result.recommended_tier in available
            assert "RL selection (exploration)" in result.reasoning
            seen.add(result.recommended_tier)
        assert len(seen) > 1

    def test_exploration_is_reproducible_with_seed(self, registry):
        picks = []
        for _ in range(2):
            router = AdaptiveRouter(registry=registry, epsilon=0.5, rng=random.Random(11))
            picks.append([router.score(ScoreInput()).recommended_tier for _ in range(20)])
        assert picks[0] == picks[1]

    def test_unavailable_tiers_never_selected(self, router, registry):
        registry.mark_unavailable(CLAUDE_OPUS_46)
        result = router.score(high_value_input())
        assert result.recommended_tier != CLAUDE_OPUS_46


class TestDegradedCollaborators:
    """Scoring degrades instead of raising."""

    def test_no_available_tiers_returns_cheapest_default(self):
        router = AdaptiveRouter(registry=StaticModelRegistry([]), epsilon=0.0)
        result = router.score(high_value_input())
        assert result.recommended_tier == CHEAPEST_TIER
        assert "No tiers available" in result.reasoning

    def test_registry_failure_returns_cheapest_default(self):
        registry = MagicMock()
        registry.list_models.side_effect = RuntimeError("registry down")
        router = AdaptiveRouter(registry=registry, epsilon=0.0)
        assert router.score(ScoreInput()).recommended_tier == CHEAPEST_TIER

    def test_tracker_failure_uses_neutral_weight(self, registry):
        tracker = MagicMock()
        tracker.get_performance_stats.side_effect = RuntimeError("tracker down")
        router = AdaptiveRouter(registry=registry, performance_tracker=tracker, epsilon=0.0)
        assert router.score(high_value_input()).recommended_tier == CLAUDE_OPUS_46


class TestFallbackInScoring:
    """Open breakers push the recommendation down the hierarchy."""

    def test_open_breaker_steps_down_and_notifies(self, router, breakers, event_bus):
        for _ in range(3):
            breakers.get_breaker(CLAUDE_OPUS_46).record_failure()

        result = router.score(high_value_input())

        assert result.recommended_tier != CLAUDE_OPUS_46
        assert f"Fallback: {CLAUDE_OPUS_46} ->" in result.reasoning
        events = event_bus.events_of_type(EventType.MODEL_FALLBACK)
        assert len(events) == 1
        assert events[0].data["original_tier"] == CLAUDE_OPUS_46
        assert events[0].data["reason"] == "circuit_open"
        assert events[0].data["category"] == "chat"
