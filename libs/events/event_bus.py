"""In-process event bus used as a fire-and-forget telemetry sink."""

import asyncio
import inspect
import time
import uuid
from collections import deque
from typing import Dict, Any, Deque, List, Callable, Optional, Set
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class EventType:
    """Event types published by the admission router."""
    MODEL_FALLBACK = "model.fallback"
    BATCH_SUBMITTED = "batch.submitted"
    BATCH_COMPLETED = "batch.completed"
    BATCH_FAILED = "batch.failed"
    BATCH_CANCELED = "batch.canceled"


class Event(BaseModel):
    """Base event model."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: float = Field(default_factory=time.time)
    data: Dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[Event], Any]


class EventBus:
    """Publishes events to registered handlers without blocking the publisher.

    Handler failures are logged and never propagate to the publisher.
    Coroutine handlers are scheduled on the running loop when there is one.
    """

    def __init__(self, history_size: int = 1000):
        self.event_handlers: Dict[str, List[EventHandler]] = {}
        self.history: Deque[Event] = deque(maxlen=history_size)
        self._pending: Set[asyncio.Task] = set()

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register event handler. ``*`` subscribes to every event type."""
        self.event_handlers.setdefault(event_type, []).append(handler)
        logger.info("Event handler registered", event_type=event_type)

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Publish event to every matching handler."""
        event = Event(event_type=event_type, data=data or {})
        self.history.append(event)

        handlers = self.event_handlers.get(event_type, []) + self.event_handlers.get("*", [])
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event_type,
                    error=str(e),
                )

        logger.debug("Event published", event_type=event_type, event_id=event.event_id)
        return event

    def events_of_type(self, event_type: str) -> List[Event]:
        """Recent events of one type, oldest first."""
        return [event for event in self.history if event.event_type == event_type]

    def _schedule(self, awaitable, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Dropping async handler, no running loop",
                event_type=event.event_type,
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def run():
            try:
                await awaitable
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type,
                    error=str(e),
                )

        task = loop.create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
