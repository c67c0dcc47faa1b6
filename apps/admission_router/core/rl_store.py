"""Persistence for the reinforcement learning table."""

import asyncio
import json
import math
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import redis.asyncio as redis

from libs.utils.exceptions import PersistenceError

logger = structlog.get_logger(__name__)

STATE_VERSION = 1


@dataclass
class RLState:
    """Q-values and visit counts keyed by category then tier."""
    q_table: Dict[str, Dict[str, float]] = field(default_factory=dict)
    visits: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def q_value(self, category: str, tier: str) -> float:
        return self.q_table.get(category, {}).get(tier, 0.0)

    def visit_count(self, category: str, tier: str) -> int:
        return self.visits.get(category, {}).get(tier, 0)

    def set(self, category: str, tier: str, q_value: float, visits: int) -> None:
        self.q_table.setdefault(category, {})[tier] = q_value
        self.visits.setdefault(category, {})[tier] = visits

    def clear(self, category: Optional[str] = None) -> None:
        if category is None:
            self.q_table.clear()
            self.visits.clear()
        else:
            self.q_table.pop(category, None)
            self.visits.pop(category, None)

    def to_document(self) -> Dict[str, Any]:
        categories: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for category, tiers in self.q_table.items():
            categories[category] = {
                tier: {"q": q, "visits": self.visit_count(category, tier)}
                for tier, q in tiers.items()
            }
        return {
            "version": STATE_VERSION,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "categories": categories,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "RLState":
        """Build state from a stored document, skipping malformed entries."""
        state = cls()
        categories = document.get("categories", {})
        if not isinstance(categories, dict):
            raise ValueError("categories must be an object")

        for category, tiers in categories.items():
            if not isinstance(tiers, dict):
                continue
            for tier, entry in tiers.items():
                try:
                    q_value = float(entry["q"])
                    visits = int(entry.get("visits", 0))
                except (KeyError, TypeError, ValueError, AttributeError):
                    logger.warning("Skipping malformed RL entry", category=category, tier=tier)
                    continue
                if not math.isfinite(q_value):
                    logger.warning("Skipping non-finite Q-value", category=category, tier=tier)
                    continue
                state.set(category, tier, q_value, max(0, visits))
        return state

    def copy(self) -> "RLState":
        return RLState(
            q_table={c: dict(t) for c, t in self.q_table.items()},
            visits={c: dict(t) for c, t in self.visits.items()},
        )


class RLStateStore(ABC):
    """Persistence port for RLState.

    ``load`` must return an empty state for missing data and raise
    PersistenceError for unreadable data; ``save`` raises PersistenceError.
    """

    @abstractmethod
    async def load(self) -> RLState:
        pass

    @abstractmethod
    async def save(self, state: RLState) -> None:
        pass


class InMemoryRLStore(RLStateStore):
    """Keeps the serialized document in memory."""

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self.document = document
        self.save_count = 0

    async def load(self) -> RLState:
        if self.document is None:
            return RLState()
        try:
            return RLState.from_document(self.document)
        except (ValueError, TypeError, AttributeError) as e:
            raise PersistenceError(f"Invalid RL state document: {e}") from e

    async def save(self, state: RLState) -> None:
        self.document = state.to_document()
        self.save_count += 1


class JsonFileRLStore(RLStateStore):
    """JSON document on local disk, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = Path(path)

    async def load(self) -> RLState:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, state: RLState) -> None:
        document = state.to_document()
        await asyncio.to_thread(self._save_sync, document)

    def _load_sync(self) -> RLState:
        if not self.path.exists():
            return RLState()
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(document, dict):
                raise ValueError("RL state document must be an object")
            return RLState.from_document(document)
        except (OSError, ValueError, TypeError) as e:
            raise PersistenceError(f"Failed to read RL state from {self.path}: {e}") from e

    def _save_sync(self, document: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, indent=2, sort_keys=True)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write RL state to {self.path}: {e}") from e


class RedisRLStore(RLStateStore):
    """Single JSON document under one Redis key."""

    def __init__(self, redis_client: redis.Redis, key: str = "admission_router:rl_state"):
        self.redis = redis_client
        self.key = key

    async def load(self) -> RLState:
        try:
            raw = await self.redis.get(self.key)
        except Exception as e:
            raise PersistenceError(f"Failed to read RL state from redis: {e}") from e
        if raw is None:
            return RLState()
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            document = json.loads(raw)
            if not isinstance(document, dict):
                raise ValueError("RL state document must be an object")
            return RLState.from_document(document)
        except (ValueError, TypeError) as e:
            raise PersistenceError(f"Invalid RL state in redis: {e}") from e

    async def save(self, state: RLState) -> None:
        try:
            await self.redis.set(self.key, json.dumps(state.to_document()))
        except Exception as e:
            raise PersistenceError(f"Failed to write RL state to redis: {e}") from e
