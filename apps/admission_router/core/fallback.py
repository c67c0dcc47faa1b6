"""Circuit-breaker driven tier fallback."""

from typing import List, Optional

import structlog

from libs.adapters.circuit_breaker import CircuitBreakerManager
from libs.contracts.router import FallbackNotification
from libs.events.event_bus import EventBus, EventType

from .tiers import (
    CLAUDE_HAIKU_45,
    CLAUDE_OPUS_46,
    CLAUDE_SONNET_4,
    FALLBACK_HIERARCHY,
    CapabilityClass,
    TierCatalog,
)

logger = structlog.get_logger(__name__)

# Where a tier outside the hierarchy enters it, by capability class.
ENTRY_RUNG = {
    CapabilityClass.ECONOMY: CLAUDE_HAIKU_45,
    CapabilityClass.BALANCED: CLAUDE_SONNET_4,
    CapabilityClass.PREMIUM: CLAUDE_OPUS_46,
}


class FallbackFilter:
    """Steps a tier down the fallback hierarchy while its breaker is open.

    The bottom rung (or ``floor``) is returned as a last resort even when its
    breaker rejects too.
    """

    def __init__(
        self,
        breakers: Optional[CircuitBreakerManager] = None,
        hierarchy: Optional[List[str]] = None,
        catalog: Optional[TierCatalog] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.breakers = breakers
        self.hierarchy = list(hierarchy or FALLBACK_HIERARCHY)
        self.catalog = catalog or TierCatalog()
        self.event_bus = event_bus

    def apply(self, tier: str, category: str, floor: Optional[str] = None) -> str:
        if self.breakers is None:
            return tier

        floor_index = self.hierarchy.index(floor) if floor in self.hierarchy else 0
        current = tier
        # Each step strictly descends, so this terminates within len(hierarchy) + 1 checks.
        while True:
            if self.breakers.get_breaker(current).can_execute():
                return current

            next_tier = self._rung_below(current, floor_index)
            if next_tier is None:
                logger.warning(
                    "All fallback rungs rejected, using last resort",
                    requested_tier=tier,
                    last_resort=current,
                    category=category,
                )
                return current

            self._notify(current, next_tier, category)
            current = next_tier

    def _rung_below(self, tier: str, floor_index: int) -> Optional[str]:
        if tier in self.hierarchy:
            index = self.hierarchy.index(tier)
            if index <= floor_index:
                return None
            return self.hierarchy[index - 1]

        entry = ENTRY_RUNG.get(self.catalog.capability(tier), self.hierarchy[floor_index])
        if self.hierarchy.index(entry) < floor_index:
            entry = self.hierarchy[floor_index]
        return entry

    def _notify(self, original: str, fallback: str, category: str) -> None:
        notification = FallbackNotification(
            original_tier=original,
            fallback_tier=fallback,
            reason="circuit_open",
            category=category,
        )
        logger.warning(
            "Model fallback",
            original_tier=original,
            fallback_tier=fallback,
            category=category,
        )
        if self.event_bus is not None:
            self.event_bus.publish(EventType.MODEL_FALLBACK, notification.model_dump(mode="json"))
