"""Per-tier circuit breakers.

A breaker opens after ``failure_threshold`` consecutive failures reported for a
tier and refuses traffic until ``recovery_timeout`` seconds have passed. The next
check then lets one probe through (half-open); a success closes the breaker and
a failure opens it again.
"""

import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerCounters:
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_checks: int = 0
    circuit_opened_count: int = 0

    @property
    def success_rate(self) -> float:
        total = self.successful_calls + self.failed_calls
        return self.successful_calls / total if total else 0.0


class CircuitBreaker:
    """Health gate for a single model tier."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "tier",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.counters = BreakerCounters()

    def can_execute(self) -> bool:
        if self.state is not CircuitState.OPEN:
            return True

        if self._recovery_elapsed():
            self.state = CircuitState.HALF_OPEN
            logger.info("Tier breaker half-open, allowing probe", tier=self.name)
            return True

        self.counters.rejected_checks += 1
        return False

    def record_success(self) -> None:
        self.counters.successful_calls += 1
        self.failure_count = 0
        if self.state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
            self.opened_at = None

    def record_failure(self) -> None:
        self.counters.failed_calls += 1
        self.failure_count += 1

        probe_failed = self.state is CircuitState.HALF_OPEN
        if probe_failed or self.failure_count >= self.failure_threshold:
            # Reopening restarts the recovery window.
            self.opened_at = self._clock()
            if self.state is not CircuitState.OPEN:
                self.counters.circuit_opened_count += 1
                self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self.failure_count = 0
        self.opened_at = None
        self._transition(CircuitState.CLOSED)

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of state and counters for diagnostics."""
        stats: Dict[str, Any] = {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "opened_at": self.opened_at,
            "success_rate": self.counters.success_rate,
        }
        stats.update(asdict(self.counters))
        return stats

    def _recovery_elapsed(self) -> bool:
        if self.opened_at is None:
            return True
        return self._clock() - self.opened_at >= self.recovery_timeout

    def _transition(self, new_state: CircuitState) -> None:
        old_state, self.state = self.state, new_state
        if old_state is new_state:
            return
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "Tier breaker state changed",
            tier=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self.failure_count,
        )


class CircuitBreakerManager:
    """Lazily creates one breaker per tier, all sharing the same thresholds."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, tier: str) -> CircuitBreaker:
        breaker = self.breakers.get(tier)
        if breaker is None:
            breaker = CircuitBreaker(
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                name=tier,
                clock=self._clock,
            )
            self.breakers[tier] = breaker
        return breaker

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {tier: breaker.get_stats() for tier, breaker in self.breakers.items()}

    def reset_all(self) -> None:
        for breaker in self.breakers.values():
            breaker.reset()
