"""Collaborator ports consumed by the router, with in-process implementations."""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CategoryStats:
    """Historical outcome statistics of one tier for one task category."""
    category: str
    avg_quality: float
    error_rate: float
    avg_latency_ms: float
    total_calls: int


@dataclass
class PerformanceStats:
    """Historical outcome statistics of one tier."""
    tier: str
    categories: List[CategoryStats] = field(default_factory=list)

    def for_category(self, category: str) -> Optional[CategoryStats]:
        for stats in self.categories:
            if stats.category == category:
                return stats
        return None


class ModelRegistry(ABC):
    """Source of currently available model tiers."""

    @abstractmethod
    def list_models(self, model_filter: Optional[Dict[str, Any]] = None) -> List[str]:
        """Return tier ids matching the filter, in registry order."""

    def is_available(self, tier: str) -> bool:
        return tier in self.list_models({"available_only": True})


class PerformanceTracker(ABC):
    """Source of historical outcome statistics."""

    @abstractmethod
    def get_performance_stats(self, tier: str) -> PerformanceStats:
        pass

    def record_call(
        self,
        tier: str,
        category: str,
        success: bool,
        latency_ms: float,
        quality: float = 1.0,
    ) -> None:
        """Optional hook for trackers fed by this service."""


class StaticModelRegistry(ModelRegistry):
    """Registry over a fixed list of tiers with toggleable availability."""

    def __init__(self, tiers: Iterable[str], unavailable: Iterable[str] = ()):
        self._tiers: List[str] = list(dict.fromkeys(tiers))
        self._unavailable = set(unavailable)
        self._lock = threading.Lock()

    def list_models(self, model_filter: Optional[Dict[str, Any]] = None) -> List[str]:
        model_filter = model_filter or {}
        with self._lock:
            tiers = list(self._tiers)
            unavailable = set(self._unavailable)
        if model_filter.get("available_only", False):
            tiers = [tier for tier in tiers if tier not in unavailable]
        prefix = model_filter.get("prefix")
        if prefix:
            tiers = [tier for tier in tiers if tier.startswith(prefix)]
        return tiers

    def mark_unavailable(self, tier: str) -> None:
        with self._lock:
            self._unavailable.add(tier)
        logger.info("Tier marked unavailable", tier=tier)

    def mark_available(self, tier: str) -> None:
        with self._lock:
            self._unavailable.discard(tier)
            if tier not in self._tiers:
                self._tiers.append(tier)
        logger.info("Tier marked available", tier=tier)


@dataclass
class _Accumulator:
    calls: int = 0
    errors: int = 0
    quality_sum: float = 0.0
    latency_sum: float = 0.0


class InMemoryPerformanceTracker(PerformanceTracker):
    """Aggregates call outcomes per (tier, category) in memory."""

    def __init__(self):
        self._stats: Dict[Tuple[str, str], _Accumulator] = defaultdict(_Accumulator)
        self._lock = threading.Lock()

    def record_call(
        self,
        tier: str,
        category: str,
        success: bool,
        latency_ms: float,
        quality: float = 1.0,
    ) -> None:
        with self._lock:
            acc = self._stats[(tier, category)]
            acc.calls += 1
            acc.latency_sum += max(0.0, latency_ms)
            if success:
                acc.quality_sum += quality
            else:
                acc.errors += 1

    def get_performance_stats(self, tier: str) -> PerformanceStats:
        with self._lock:
            items = [(key, acc) for key, acc in self._stats.items() if key[0] == tier]

        categories = []
        for (_, category), acc in items:
            successes = acc.calls - acc.errors
            categories.append(CategoryStats(
                category=category,
                avg_quality=acc.quality_sum / successes if successes else 0.0,
                error_rate=acc.errors / acc.calls if acc.calls else 0.0,
                avg_latency_ms=acc.latency_sum / acc.calls if acc.calls else 0.0,
                total_calls=acc.calls,
            ))
        return PerformanceStats(tier=tier, categories=categories)
