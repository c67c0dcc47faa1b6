from pydantic_settings import BaseSettings
from typing import List, Literal, Optional

from apps.admission_router.core.tiers import DEFAULT_CATALOG


class Settings(BaseSettings):
    app_name: str = "admission-router"
    host: str = "0.0.0.0"
    port: int = 8002
    log_level: str = "INFO"

    # Tier selection
    available_tiers: List[str] = [tier.tier_id for tier in DEFAULT_CATALOG]
    epsilon: float = 0.10
    learning_rate: float = 0.1
    large_context_threshold_chars: int = 600_000
    cheapest_tier_categories: List[str] = ["heartbeat"]

    # RL state persistence
    rl_state_backend: Literal["file", "redis", "memory"] = "file"
    rl_state_path: str = "data/rl-state.json"
    redis_url: str = "redis://localhost:6379/0"
    rl_state_redis_key: str = "admission_router:rl_state"
    rl_write_behind: bool = False
    rl_flush_interval_s: float = 5.0

    # Circuit breaker settings
    failure_threshold: int = 5
    recovery_timeout: float = 60.0

    # Downstream batch API
    anthropic_api_key: Optional[str] = None
    batch_api_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    request_timeout: float = 30.0

    # Batch queue
    batch_max_queue_size: int = 10
    batch_flush_interval_s: float = 15 * 60
    batch_auto_flush: bool = False
    batch_poll_interval_s: float = 5.0
    batch_poll_timeout_s: float = 300.0
    batch_default_max_tokens: int = 1024

    class Config:
        env_prefix = "ADMISSION_ROUTER_"


settings = Settings()
