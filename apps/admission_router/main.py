"""Admission router service: tier scoring, outcome learning and batch queueing."""

from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from apps.admission_router.core.adaptive_router import AdaptiveRouter
from apps.admission_router.core.batch_client import AnthropicBatchClient
from apps.admission_router.core.batch_queue import BatchQueue
from apps.admission_router.core.collaborators import InMemoryPerformanceTracker, StaticModelRegistry
from apps.admission_router.core.rl_store import (
    InMemoryRLStore,
    JsonFileRLStore,
    RedisRLStore,
    RLStateStore,
)
from apps.admission_router.core.value_scorer import ValueScorer
from apps.admission_router.settings import Settings, settings
from libs.adapters.circuit_breaker import CircuitBreakerManager
from libs.contracts.batch import BatchPriority, BatchRequest, BatchResult, BatchStatus
from libs.contracts.router import (
    LearningStatistics,
    ScoreInput,
    ScoreResult,
    TaskComplexity,
    ThrottleLevel,
)
from libs.events.event_bus import EventBus
from libs.utils.fastapi_app_factory import create_fastapi_app

logger = structlog.get_logger(__name__)


class ScoreRequest(ScoreInput):
    """Scoring request: task description plus the current budget level."""
    budget_level: ThrottleLevel = Field(default=ThrottleLevel.NORMAL, description="Budget throttle level")


class ComplexityRequest(BaseModel):
    content: str = Field(..., description="Task text")
    category: str = Field(default="chat", description="Task category")


class ComplexityResponse(BaseModel):
    complexity: TaskComplexity


class OutcomeRequest(BaseModel):
    """Request model for recording outcomes."""
    category: str = Field(..., description="Task category")
    tier: str = Field(..., description="Tier that handled the task")
    success: bool = Field(..., description="Whether the task succeeded")
    duration_ms: float = Field(..., ge=0, description="Task duration in milliseconds")
    cost_usd: float = Field(..., ge=0, description="Task cost in USD")
    quality_score: float = Field(default=1.0, ge=0, le=1, description="Quality score (0.0 to 1.0)")


class OutcomeResponse(BaseModel):
    category: str
    tier: str
    recorded: bool
    q_value: Optional[float] = None


class ResetRequest(BaseModel):
    category: Optional[str] = Field(default=None, description="Category to reset; all when omitted")


class QueueRequest(BaseModel):
    """Request model for queueing a batch completion."""
    model: str = Field(..., description="Model tier")
    user_message: str = Field(..., description="User message")
    system_prompt: Optional[str] = Field(default=None, description="System prompt")
    max_tokens: Optional[int] = Field(default=None, gt=0, description="Maximum output tokens")
    priority: BatchPriority = Field(default=BatchPriority.NORMAL)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    learn_category: Optional[str] = Field(
        default=None,
        description="When set, the result is fed back to the router under this category",
    )


class QueueResponse(BaseModel):
    request_id: str
    queue_size: int


class QueueStateResponse(BaseModel):
    queue_size: int
    tracked_batches: List[BatchStatus]


class CancelResponse(BaseModel):
    batch_id: str
    canceled: bool


def build_rl_store(config: Settings, resources: List[Any]) -> RLStateStore:
    if config.rl_state_backend == "redis":
        client = redis.from_url(config.redis_url)
        resources.append(client)
        return RedisRLStore(client, key=config.rl_state_redis_key)
    if config.rl_state_backend == "memory":
        return InMemoryRLStore()
    return JsonFileRLStore(config.rl_state_path)


async def build_router(
    config: Settings,
    event_bus: EventBus,
    resources: List[Any],
) -> AdaptiveRouter:
    return await AdaptiveRouter.create(
        registry=StaticModelRegistry(config.available_tiers),
        performance_tracker=InMemoryPerformanceTracker(),
        breakers=CircuitBreakerManager(
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout,
        ),
        store=build_rl_store(config, resources),
        event_bus=event_bus,
        epsilon=config.epsilon,
        learning_rate=config.learning_rate,
        large_context_threshold_chars=config.large_context_threshold_chars,
        cheapest_tier_categories=config.cheapest_tier_categories,
        write_behind=config.rl_write_behind,
        flush_interval_s=config.rl_flush_interval_s,
    )


def build_batch_queue(config: Settings, event_bus: EventBus, resources: List[Any]) -> BatchQueue:
    client = AnthropicBatchClient(
        api_key=config.anthropic_api_key,
        base_url=config.batch_api_base_url,
        anthropic_version=config.anthropic_version,
        timeout=config.request_timeout,
    )
    resources.append(client)
    return BatchQueue(
        client,
        max_queue_size=config.batch_max_queue_size,
        auto_flush=config.batch_auto_flush,
        flush_interval_s=config.batch_flush_interval_s,
        poll_interval_s=config.batch_poll_interval_s,
        poll_timeout_s=config.batch_poll_timeout_s,
        default_max_tokens=config.batch_default_max_tokens,
        event_bus=event_bus,
    )


def get_router(request: Request) -> AdaptiveRouter:
    """Get router instance."""
    router = getattr(request.app.state, "router", None)
    if router is None:
        raise HTTPException(status_code=503, detail="Router not initialized")
    return router


def get_batch_queue(request: Request) -> BatchQueue:
    batch_queue = getattr(request.app.state, "batch_queue", None)
    if batch_queue is None:
        raise HTTPException(status_code=503, detail="Batch queue not initialized")
    return batch_queue


def create_app(
    router: Optional[AdaptiveRouter] = None,
    batch_queue: Optional[BatchQueue] = None,
    event_bus: Optional[EventBus] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    """Build the service app. Components not injected are built at startup."""
    config = config or settings

    async def startup(app: FastAPI) -> None:
        state = app.state
        if state.router is None:
            state.router = await build_router(config, state.event_bus, state.resources)
        if state.batch_queue is None:
            state.batch_queue = build_batch_queue(config, state.event_bus, state.resources)
        await state.router.start()
        await state.batch_queue.start()
        logger.info(
            "Admission router initialized",
            tiers=len(config.available_tiers),
            rl_backend=config.rl_state_backend,
            auto_flush=config.batch_auto_flush,
        )

    async def shutdown(app: FastAPI) -> None:
        state = app.state
        if state.batch_queue is not None:
            await state.batch_queue.stop()
        if state.router is not None:
            await state.router.stop()
        for resource in state.resources:
            await resource.aclose()
        state.resources.clear()

    app = create_fastapi_app(
        title="Admission Router",
        description="Adaptive model-tier routing with reinforcement learning and batch queueing",
        version="1.0.0",
        service_name=config.app_name,
        log_level=config.log_level,
        startup_hook=startup,
        shutdown_hook=shutdown,
        readiness_check=lambda app: {
            "router": app.state.router is not None,
            "batch_queue": app.state.batch_queue is not None,
        },
    )
    app.state.router = router
    app.state.batch_queue = batch_queue
    app.state.event_bus = event_bus or EventBus()
    app.state.resources = []

    scorer = ValueScorer()

    @app.post("/v1/score", response_model=ScoreResult)
    async def score_task(
        request: ScoreRequest,
        router: AdaptiveRouter = Depends(get_router),
    ) -> ScoreResult:
        """Score a task and recommend a tier."""
        score_input = ScoreInput(**request.model_dump(exclude={"budget_level"}))
        result = router.score(score_input, request.budget_level)
        logger.info(
            "Task routed",
            agent=score_input.agent,
            category=score_input.category,
            tier=result.recommended_tier,
            score=round(result.score, 1),
        )
        return result

    @app.post("/v1/complexity", response_model=ComplexityResponse)
    async def classify_complexity(request: ComplexityRequest) -> ComplexityResponse:
        return ComplexityResponse(complexity=scorer.classify_complexity(request.content, request.category))

    @app.post("/v1/outcome", response_model=OutcomeResponse)
    async def record_outcome(
        request: OutcomeRequest,
        router: AdaptiveRouter = Depends(get_router),
    ) -> OutcomeResponse:
        """Record a task outcome for learning."""
        q_value = await router.on_outcome(
            request.category,
            request.tier,
            request.success,
            request.duration_ms,
            request.cost_usd,
            request.quality_score,
        )
        return OutcomeResponse(
            category=request.category,
            tier=request.tier,
            recorded=q_value is not None,
            q_value=q_value,
        )

    @app.get("/v1/learning/statistics", response_model=LearningStatistics)
    async def learning_statistics(router: AdaptiveRouter = Depends(get_router)) -> LearningStatistics:
        return router.get_learning_statistics()

    @app.post("/v1/learning/reset", response_model=LearningStatistics)
    async def reset_learning(
        request: ResetRequest,
        router: AdaptiveRouter = Depends(get_router),
    ) -> LearningStatistics:
        await router.reset_learning(request.category)
        return router.get_learning_statistics()

    @app.post("/v1/batch/requests", response_model=QueueResponse, status_code=202)
    async def queue_request(
        request: QueueRequest,
        batch_queue: BatchQueue = Depends(get_batch_queue),
        router: AdaptiveRouter = Depends(get_router),
    ) -> QueueResponse:
        """Queue a completion for the next batch."""
        callback = None
        if request.learn_category:
            callback = router.outcome_callback(request.learn_category, request.model)

        request_id = batch_queue.queue(
            BatchRequest(
                model=request.model,
                user_message=request.user_message,
                system_prompt=request.system_prompt,
                max_tokens=request.max_tokens,
                priority=request.priority,
                metadata=request.metadata,
                callback=callback,
            )
        )
        return QueueResponse(request_id=request_id, queue_size=batch_queue.get_queue_size())

    @app.post("/v1/batch/flush", response_model=BatchStatus)
    async def flush_queue(batch_queue: BatchQueue = Depends(get_batch_queue)) -> BatchStatus:
        return await batch_queue.flush()

    @app.get("/v1/batch/queue", response_model=QueueStateResponse)
    async def queue_state(batch_queue: BatchQueue = Depends(get_batch_queue)) -> QueueStateResponse:
        return QueueStateResponse(
            queue_size=batch_queue.get_queue_size(),
            tracked_batches=batch_queue.get_tracked_batches(),
        )

    @app.get("/v1/batch/{batch_id}", response_model=BatchStatus)
    async def batch_status(
        batch_id: str,
        batch_queue: BatchQueue = Depends(get_batch_queue),
    ) -> BatchStatus:
        return await batch_queue.get_status(batch_id)

    @app.get("/v1/batch/{batch_id}/results", response_model=List[BatchResult])
    async def batch_results(
        batch_id: str,
        batch_queue: BatchQueue = Depends(get_batch_queue),
    ) -> List[BatchResult]:
        """Wait for a batch to finish and return its results."""
        return await batch_queue.get_results(batch_id)

    @app.post("/v1/batch/{batch_id}/cancel", response_model=CancelResponse)
    async def cancel_batch(
        batch_id: str,
        batch_queue: BatchQueue = Depends(get_batch_queue),
    ) -> CancelResponse:
        return CancelResponse(batch_id=batch_id, canceled=await batch_queue.cancel_batch(batch_id))

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "apps.admission_router.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
