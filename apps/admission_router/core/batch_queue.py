"""Asynchronous batch queue over the downstream batch API."""

import asyncio
import contextlib
import inspect
import secrets
import string
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

import structlog

from libs.contracts.batch import BatchRequest, BatchResult, BatchState, BatchStatus
from libs.events.event_bus import EventBus, EventType
from libs.utils.exceptions import (
    BatchNotFoundError,
    BatchProcessingFailedError,
    BatchTimeoutError,
    EmptyQueueError,
    SubmissionFailedError,
    UpstreamError,
)

from .batch_client import DEFAULT_MAX_TOKENS, AnthropicBatchClient, parse_batch_status

logger = structlog.get_logger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_request_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


@dataclass
class TrackedBatch:
    """A submitted batch and the local requests it carries."""
    status: BatchStatus
    requests: Dict[str, BatchRequest] = field(default_factory=dict)
    results_url: Optional[str] = None
    resolving: Optional[asyncio.Task] = None


class BatchQueue:
    """Buffers requests and submits them as downstream batch jobs.

    Submission is at-least-once: a failed flush puts its requests back at the
    front of the queue in their original order. Each request callback runs at
    most once, when ``get_results`` resolves its batch.
    """

    def __init__(
        self,
        client: AnthropicBatchClient,
        max_queue_size: int = 10,
        auto_flush: bool = False,
        flush_interval_s: float = 15 * 60,
        poll_interval_s: float = 5.0,
        poll_timeout_s: float = 300.0,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        event_bus: Optional[EventBus] = None,
    ):
        self.client = client
        self.max_queue_size = max(1, max_queue_size)
        self.auto_flush = auto_flush
        self.flush_interval_s = flush_interval_s
        self.poll_interval_s = poll_interval_s
        self.poll_timeout_s = poll_timeout_s
        self.default_max_tokens = default_max_tokens
        self.event_bus = event_bus

        self._queue: List[BatchRequest] = []
        self._lock = asyncio.Lock()
        self._tracked: Dict[str, TrackedBatch] = {}
        self._auto_flush_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # Queueing

    def queue(self, request: BatchRequest) -> str:
        """Enqueue a request and return its id. Never blocks or raises."""
        request = replace(request, id=generate_request_id())
        self._queue.append(request)
        logger.debug("Request queued", request_id=request.id, model=request.model, queue_size=len(self._queue))

        if len(self._queue) >= self.max_queue_size:
            self._schedule_auto_flush()
        return request.id

    def get_queue_size(self) -> int:
        return len(self._queue)

    def _schedule_auto_flush(self) -> None:
        if self._auto_flush_task is not None and not self._auto_flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Queue full but no running loop, flush deferred", queue_size=len(self._queue))
            return
        self._auto_flush_task = loop.create_task(self._auto_flush())

    async def _auto_flush(self) -> None:
        # Requests queued while a submission is in flight get their own batch.
        while len(self._queue) >= self.max_queue_size:
            try:
                await self.flush()
            except EmptyQueueError:
                return
            except Exception as e:
                logger.error("Auto-flush failed", error=str(e), queue_size=len(self._queue))
                return

    async def join(self) -> None:
        """Wait for a pending size-triggered flush to finish."""
        if self._auto_flush_task is not None:
            await asyncio.gather(self._auto_flush_task, return_exceptions=True)

    # Submission

    async def flush(self) -> BatchStatus:
        async with self._lock:
            if not self._queue:
                raise EmptyQueueError()
            requests = list(self._queue)
            self._queue.clear()

        try:
            status = await self.client.create_batch(requests, self.default_max_tokens)
        except asyncio.CancelledError:
            self._queue[:0] = requests
            raise
        except Exception as e:
            async with self._lock:
                self._queue[:0] = requests
            logger.error(
                "Batch submission failed, requests re-queued",
                request_count=len(requests),
                queue_size=len(self._queue),
                error=str(e),
            )
            if isinstance(e, SubmissionFailedError):
                raise
            raise SubmissionFailedError(f"Batch submission failed: {e}") from e

        status = status.model_copy(update={"total_requests": len(requests)})
        self._tracked[status.batch_id] = TrackedBatch(
            status=status,
            requests={request.id: request for request in requests},
        )

        logger.info("Batch submitted", batch_id=status.batch_id, request_count=len(requests))
        self._publish(EventType.BATCH_SUBMITTED, batch_id=status.batch_id, request_count=len(requests))
        return status

    # Status and results

    async def get_status(self, batch_id: str) -> BatchStatus:
        """Read-through status of a downstream batch job."""
        status, _ = await self._read_status(batch_id)
        return status

    async def _read_status(self, batch_id: str) -> Tuple[BatchStatus, Optional[str]]:
        payload = await self.client.retrieve_batch(batch_id)
        try:
            status = parse_batch_status(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed status response for batch {batch_id}: {e}") from e

        results_url = payload.get("results_url")
        tracked = self._tracked.get(batch_id)
        if tracked is not None:
            # Keep the locally submitted count when upstream omits counts.
            if status.total_requests == 0:
                status = status.model_copy(update={"total_requests": tracked.status.total_requests})
            tracked.status = status
            if results_url:
                tracked.results_url = results_url
        return status, results_url

    async def _wait_for_terminal(self, batch_id: str) -> BatchStatus:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout_s
        while True:
            status = await self.get_status(batch_id)
            if status.status.is_terminal:
                return status
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BatchTimeoutError(batch_id, self.poll_timeout_s)
            logger.debug("Batch not finished, polling", batch_id=batch_id, status=status.status.value)
            await asyncio.sleep(min(self.poll_interval_s, remaining))

    async def get_results(self, batch_id: str) -> List[BatchResult]:
        """Wait for a batch to finish, then dispatch callbacks and return its results.

        Concurrent callers for the same batch share one resolution, so callbacks
        run once no matter how many callers are waiting.
        """
        tracked = self._tracked.get(batch_id)
        if tracked is None:
            raise BatchNotFoundError(batch_id)

        if tracked.resolving is None:
            task = asyncio.get_running_loop().create_task(self._resolve(batch_id, tracked))
            task.add_done_callback(lambda t: self._release(tracked, t))
            tracked.resolving = task
        # Cancelling one caller leaves the shared resolution running.
        return await asyncio.shield(tracked.resolving)

    @staticmethod
    def _release(tracked: TrackedBatch, task: asyncio.Task) -> None:
        # Failed or cancelled resolutions are retried by the next caller.
        if task.cancelled() or task.exception() is not None:
            tracked.resolving = None

    async def _resolve(self, batch_id: str, tracked: TrackedBatch) -> List[BatchResult]:
        status = await self._wait_for_terminal(batch_id)
        if status.status == BatchState.FAILED:
            self._publish(EventType.BATCH_FAILED, batch_id=batch_id, state=status.status.value)
            raise BatchProcessingFailedError(batch_id, status.status.value)
        if status.status == BatchState.CANCELED:
            self._publish(EventType.BATCH_CANCELED, batch_id=batch_id)
            raise BatchProcessingFailedError(batch_id, status.status.value)

        results = await self.client.fetch_results(batch_id, tracked.results_url)
        await self._dispatch_callbacks(batch_id, tracked, results)
        self._tracked.pop(batch_id, None)

        succeeded = sum(1 for result in results if result.success)
        logger.info(
            "Batch results retrieved",
            batch_id=batch_id,
            result_count=len(results),
            succeeded=succeeded,
        )
        self._publish(
            EventType.BATCH_COMPLETED,
            batch_id=batch_id,
            result_count=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return results

    async def _dispatch_callbacks(
        self,
        batch_id: str,
        tracked: TrackedBatch,
        results: List[BatchResult],
    ) -> None:
        invoked: Set[str] = set()
        for result in results:
            request = tracked.requests.get(result.request_id)
            if request is None:
                logger.warning("Result for unknown request", batch_id=batch_id, request_id=result.request_id)
                continue
            if request.callback is None or result.request_id in invoked:
                continue
            invoked.add(result.request_id)
            try:
                outcome = request.callback(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    "Result callback failed",
                    batch_id=batch_id,
                    request_id=result.request_id,
                    error=str(e),
                )

    def poll_results_in_background(self, batch_id: str) -> asyncio.Task:
        """Resolve a batch off the caller's path; failures are logged."""

        async def poll() -> Optional[List[BatchResult]]:
            try:
                return await self.get_results(batch_id)
            except Exception as e:
                logger.error("Background result polling failed", batch_id=batch_id, error=str(e))
                return None

        task = asyncio.get_running_loop().create_task(poll())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def cancel_batch(self, batch_id: str) -> bool:
        """Best-effort cancellation; False on any failure."""
        try:
            status = await self.client.cancel_batch(batch_id)
        except Exception as e:
            logger.warning("Batch cancel failed", batch_id=batch_id, error=str(e))
            return False

        tracked = self._tracked.get(batch_id)
        if tracked is not None:
            tracked.status = status
        logger.info("Batch cancel requested", batch_id=batch_id, status=status.status.value)
        self._publish(EventType.BATCH_CANCELED, batch_id=batch_id)
        return True

    def get_tracked_batches(self) -> List[BatchStatus]:
        """Last seen status of every batch still awaiting result retrieval."""
        return [tracked.status for tracked in self._tracked.values()]

    # Lifecycle

    async def start(self) -> None:
        if self.auto_flush and self._timer_task is None:
            self._timer_task = asyncio.create_task(self._flush_timer())
            logger.info("Batch auto-flush timer started", interval_s=self.flush_interval_s)

    async def stop(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        await self.join()

        pending = list(self._background)
        pending.extend(t.resolving for t in self._tracked.values() if t.resolving is not None)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._queue:
            logger.warning("Batch queue stopped with unsubmitted requests", queue_size=len(self._queue))

    async def _flush_timer(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            if not self._queue:
                continue
            try:
                await self.flush()
            except EmptyQueueError:
                continue
            except Exception as e:
                logger.error("Periodic flush failed", error=str(e), queue_size=len(self._queue))

    def _publish(self, event_type: str, **data) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, data)
