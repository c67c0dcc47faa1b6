"""Static catalog of known model tiers.

The catalog is the single source for capability classes, context windows,
pricing and the orderings the router relies on. Tier ids are plain strings so
the model registry can expose tiers the catalog does not know about.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple


class CapabilityClass(str, Enum):
    """Intended capability band of a tier."""
    ECONOMY = "economy"
    BALANCED = "balanced"
    PREMIUM = "premium"


@dataclass(frozen=True)
class TierProfile:
    """Cost/quality/context profile of a tier."""
    tier_id: str
    capability: CapabilityClass
    context_window_tokens: int
    input_usd_per_mtok: float
    output_usd_per_mtok: float

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.input_usd_per_mtok
            + output_tokens / 1_000_000 * self.output_usd_per_mtok
        )


CLAUDE_HAIKU_3 = "claude-haiku-3"
CLAUDE_HAIKU_45 = "claude-haiku-4.5"
CLAUDE_SONNET_4 = "claude-sonnet-4"
CLAUDE_SONNET_45 = "claude-sonnet-4.5"
CLAUDE_SONNET_5 = "claude-sonnet-5"
CLAUDE_OPUS_46 = "claude-opus-4.6"
GROK_41_FAST = "grok-4.1-fast"
GEMINI_25_PRO = "gemini-2.5-pro"
GEMINI_25_FLASH = "gemini-2.5-flash"

DEFAULT_CATALOG: Tuple[TierProfile, ...] = (
    TierProfile(CLAUDE_HAIKU_3, CapabilityClass.ECONOMY, 200_000, 0.25, 1.25),
    TierProfile(CLAUDE_HAIKU_45, CapabilityClass.ECONOMY, 200_000, 1.00, 5.00),
    TierProfile(CLAUDE_SONNET_4, CapabilityClass.BALANCED, 200_000, 3.00, 15.00),
    TierProfile(CLAUDE_SONNET_45, CapabilityClass.BALANCED, 200_000, 3.00, 15.00),
    TierProfile(CLAUDE_SONNET_5, CapabilityClass.BALANCED, 200_000, 3.00, 15.00),
    TierProfile(CLAUDE_OPUS_46, CapabilityClass.PREMIUM, 200_000, 5.00, 25.00),
    TierProfile(GROK_41_FAST, CapabilityClass.ECONOMY, 2_000_000, 0.20, 0.50),
    TierProfile(GEMINI_25_PRO, CapabilityClass.BALANCED, 1_000_000, 1.25, 10.00),
    TierProfile(GEMINI_25_FLASH, CapabilityClass.ECONOMY, 1_000_000, 0.30, 2.50),
)

# Cheapest absolute tier, also the last-resort rung of the fallback hierarchy.
CHEAPEST_TIER = CLAUDE_HAIKU_3

# Cheapest tier that still meets the "capable" bar, then its substitutes.
MINIMUM_CAPABLE_PREFERENCE: List[str] = [
    CLAUDE_SONNET_4,
    CLAUDE_SONNET_45,
    CLAUDE_SONNET_5,
    CLAUDE_OPUS_46,
    CLAUDE_HAIKU_45,
]

# Highest context first.
LARGE_CONTEXT_PREFERENCE: List[str] = [
    GROK_41_FAST,
    GEMINI_25_PRO,
    GEMINI_25_FLASH,
]

# Cheapest -> most capable. Fallback steps down one rung at a time.
FALLBACK_HIERARCHY: List[str] = [
    CLAUDE_HAIKU_3,
    CLAUDE_HAIKU_45,
    CLAUDE_SONNET_4,
    CLAUDE_SONNET_45,
    CLAUDE_SONNET_5,
    CLAUDE_OPUS_46,
]


class TierCatalog:
    """Lookup over tier profiles."""

    def __init__(self, profiles: Tuple[TierProfile, ...] = DEFAULT_CATALOG):
        self._profiles: Dict[str, TierProfile] = {p.tier_id: p for p in profiles}

    def get(self, tier_id: str) -> Optional[TierProfile]:
        return self._profiles.get(tier_id)

    def capability(self, tier_id: str) -> Optional[CapabilityClass]:
        profile = self._profiles.get(tier_id)
        return profile.capability if profile else None

    def estimate_cost(self, tier_id: str, input_tokens: int, output_tokens: int) -> float:
        profile = self._profiles.get(tier_id)
        if profile is None:
            return 0.0
        return profile.estimate_cost(input_tokens, output_tokens)

    def tier_ids(self) -> List[str]:
        return list(self._profiles)
