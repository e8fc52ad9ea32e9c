"""Outbound request queue for the external invoicing API.

Throttles calls to the invoicing API with a bounded priority queue and a cap
on concurrent in-flight requests. Transient failures are retried with a
lowered priority; the queue never grows past its capacity and rejects new
work immediately when full.

The queue is process-local: total concurrency against the API is
max_concurrent times the number of worker processes. A shared rate limit can
be configured to cap the aggregate request rate across processes.

Usage:
    queue = OutboundRequestQueue(QueueConfig.from_settings(settings.queue))
    queue.start()

    invoice = await queue.enqueue(
        lambda: client.create_invoice(tenant_id, payload),
        OperationType.NORMAL,
        context={"tenant_id": str(tenant_id)},
        priority=1,
    )
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import socket
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from uuid_utils.compat import uuid7

from facturabot.config.settings import OutboundQueueConfig
from facturabot.core.exceptions import (
    ExternalCallFailedError,
    QueueClearedError,
    QueueFullError,
)
from facturabot.core.logging import get_logger
from facturabot.core.redis import RateLimiter
from facturabot.observability.metrics import (
    observe_queue_wait,
    record_queue_request,
    set_queue_state,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Substrings of error messages from network stacks that indicate a retry may help
TRANSIENT_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "enotfound",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "connection reset",
    "connection refused",
)


# =============================================================================
# Queue Types
# =============================================================================


class OperationType(str, Enum):
    """Timeout tier of an outbound request."""

    FAST = "fast"  # lookups
    NORMAL = "normal"  # invoice creation
    SLOW = "slow"  # reports, bulk downloads
    CRITICAL = "critical"  # must not be cut short


class QueueStatus(str, Enum):
    """Health of the queue."""

    HEALTHY = "healthy"
    OVERLOADED = "overloaded"  # At or above the overload threshold
    STOPPED = "stopped"


@dataclass
class QueuedRequest:
    """A request waiting for, or holding, an execution slot."""

    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    operation_type: OperationType = OperationType.NORMAL
    priority: int = 0
    context: dict[str, Any] = field(default_factory=dict)
    request_id: UUID = field(default_factory=uuid7)
    enqueued_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0


@dataclass
class QueueMetrics:
    """Counters for queue monitoring."""

    total_processed: int = 0
    total_failed: int = 0
    total_retried: int = 0
    total_rejected: int = 0
    queue_size: int = 0
    in_flight: int = 0
    peak_queue_size: int = 0
    average_wait_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        """Share of finished requests that succeeded (1.0 when none finished)."""
        finished = self.total_processed + self.total_failed
        if finished == 0:
            return 1.0
        return self.total_processed / finished

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "total_retried": self.total_retried,
            "total_rejected": self.total_rejected,
            "queue_size": self.queue_size,
            "in_flight": self.in_flight,
            "peak_queue_size": self.peak_queue_size,
            "average_wait_seconds": round(self.average_wait_seconds, 4),
            "success_rate": round(self.success_rate, 4),
        }


# =============================================================================
# Configuration
# =============================================================================


class QueueConfig(BaseModel):
    """Configuration for the outbound request queue."""

    max_concurrent: int = Field(default=5, ge=1, description="Max requests in flight")
    max_queue_size: int = Field(default=100, ge=1, description="Max requests waiting")
    processing_interval_seconds: float = Field(
        default=0.2, gt=0, description="Dispatch tick interval"
    )
    retry_delay_seconds: float = Field(
        default=2.0, ge=0, description="Delay before a transient failure is re-queued"
    )
    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    default_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for operation types without a tier"
    )
    timeouts: dict[OperationType, float] = Field(
        default_factory=lambda: {
            OperationType.FAST: 5.0,
            OperationType.NORMAL: 30.0,
            OperationType.SLOW: 60.0,
            OperationType.CRITICAL: 120.0,
        },
        description="Per-request timeout by operation type",
    )
    timeout_backoff: float = Field(
        default=1.5,
        ge=1.0,
        description="Timeout multiplier per retry, capped at the critical timeout",
    )
    wait_time_window: int = Field(
        default=100, ge=1, description="Samples kept for the rolling average wait time"
    )
    overload_threshold: float = Field(
        default=0.8, gt=0, le=1.0, description="Queue fill ratio reported as overloaded"
    )
    global_rate_limit: int | None = Field(
        default=None, ge=1, description="Requests per window across all processes"
    )
    global_rate_window_seconds: int = Field(default=1, ge=1)

    @classmethod
    def from_settings(cls, config: OutboundQueueConfig) -> QueueConfig:
        """Build from the application settings section."""
        return cls(
            max_concurrent=config.max_concurrent,
            max_queue_size=config.max_queue_size,
            processing_interval_seconds=config.processing_interval_seconds,
            retry_delay_seconds=config.retry_delay_seconds,
            max_retries=config.max_retries,
            default_timeout_seconds=config.default_timeout_seconds,
            timeouts={
                OperationType.FAST: config.timeout_fast_seconds,
                OperationType.NORMAL: config.timeout_normal_seconds,
                OperationType.SLOW: config.timeout_slow_seconds,
                OperationType.CRITICAL: config.timeout_critical_seconds,
            },
            timeout_backoff=config.timeout_backoff,
            global_rate_limit=config.global_rate_limit,
            global_rate_window_seconds=config.global_rate_window_seconds,
        )

    def timeout_for(self, operation_type: OperationType, attempt: int = 1) -> float:
        """Timeout of the given attempt (1-based).

        Each retry waits timeout_backoff times longer than the one before,
        up to the critical timeout. A tier already above that cap keeps its
        own timeout.
        """
        base = self.timeouts.get(operation_type, self.default_timeout_seconds)
        if attempt <= 1:
            return base
        cap = max(base, self.timeouts.get(OperationType.CRITICAL, self.default_timeout_seconds))
        return min(base * self.timeout_backoff ** (attempt - 1), cap)


def is_transient_error(error: BaseException) -> bool:
    """Whether retrying the same request may succeed."""
    if isinstance(error, ExternalCallFailedError):
        return error.transient
    if isinstance(error, (TimeoutError, ConnectionError, socket.gaierror, httpx.TransportError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


# =============================================================================
# Queue
# =============================================================================


class OutboundRequestQueue:
    """Bounded priority queue with a concurrency cap and bounded retries.

    Higher priority starts first; equal priorities start in submission order.
    Each attempt runs under the timeout of its operation type, raised by
    timeout_backoff on every retry. A transient failure is re-inserted with
    priority lowered by one (never below zero) after retry_delay_seconds, at
    most max_retries times; any other failure is handed to the caller as-is.

    Args:
        config: Queue configuration
        rate_limiter: Shared limiter used when config.global_rate_limit is set
        auto_start: Start the dispatch loop on the first submission
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        auto_start: bool = True,
    ):
        self.config = config or QueueConfig()
        self.auto_start = auto_start
        self._rate_limiter = rate_limiter
        if self.config.global_rate_limit and self._rate_limiter is None:
            self._rate_limiter = RateLimiter()

        self._heap: list[tuple[int, int, QueuedRequest]] = []
        self._sequence = itertools.count()
        self._in_flight = 0
        self._retry_pending = 0
        self._tasks: set[asyncio.Task] = set()
        self._runner: asyncio.Task | None = None
        self._running = False
        self._wakeup = asyncio.Event()
        self._wait_samples: deque[float] = deque(maxlen=self.config.wait_time_window)
        self._metrics = QueueMetrics()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_type: OperationType = OperationType.NORMAL,
        context: dict[str, Any] | None = None,
        priority: int = 0,
    ) -> asyncio.Future[T]:
        """Queue an operation and return a future for its result.

        Raises:
            QueueFullError: If max_queue_size requests are already waiting
        """
        if len(self._heap) >= self.config.max_queue_size:
            self._metrics.total_rejected += 1
            record_queue_request(operation_type.value, "rejected")
            logger.warning(
                "outbound_queue_full",
                queue_size=len(self._heap),
                max_queue_size=self.config.max_queue_size,
                **(context or {}),
            )
            raise QueueFullError(self.config.max_queue_size)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        item = QueuedRequest(
            operation=operation,
            future=future,
            operation_type=operation_type,
            priority=max(priority, 0),
            context=context or {},
        )
        self._push(item)
        logger.debug(
            "outbound_request_queued",
            request_id=str(item.request_id),
            operation_type=operation_type.value,
            priority=item.priority,
            queue_size=len(self._heap),
        )
        if self.auto_start and not self._running:
            self.start()
        return future

    async def enqueue(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_type: OperationType = OperationType.NORMAL,
        context: dict[str, Any] | None = None,
        priority: int = 0,
    ) -> T:
        """Queue an operation and wait for its outcome.

        Raises:
            QueueFullError: If the queue is at capacity
            Exception: The terminal error of the operation
        """
        return await self.submit(operation, operation_type, context, priority)

    def _push(self, item: QueuedRequest) -> None:
        heapq.heappush(self._heap, (-item.priority, next(self._sequence), item))
        self._metrics.peak_queue_size = max(self._metrics.peak_queue_size, len(self._heap))
        self._publish_state()
        self._wakeup.set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the dispatch loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._runner = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "outbound_queue_started",
            max_concurrent=self.config.max_concurrent,
            max_queue_size=self.config.max_queue_size,
        )

    async def stop(self, drain: bool = False) -> None:
        """Stop dispatching.

        With drain=True, waiting requests (and scheduled retries) are run to
        completion first. Otherwise they are rejected with QueueClearedError.
        In-flight requests always finish.
        """
        if drain:
            while self._heap or self._in_flight or self._retry_pending:
                await asyncio.sleep(self.config.processing_interval_seconds)
        else:
            self.clear()

        self._running = False
        self._wakeup.set()
        if self._runner is not None:
            await self._runner
            self._runner = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("outbound_queue_stopped", drained=drain)

    def clear(self) -> int:
        """Reject every waiting request. Returns how many were dropped."""
        dropped = 0
        while self._heap:
            _, _, item = heapq.heappop(self._heap)
            if not item.future.done():
                item.future.set_exception(QueueClearedError())
            record_queue_request(item.operation_type.value, "cleared")
            dropped += 1
        self._publish_state()
        if dropped:
            logger.warning("outbound_queue_cleared", dropped=dropped)
        return dropped

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        while self._running:
            await self._dispatch()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(), timeout=self.config.processing_interval_seconds
                )
            except TimeoutError:
                pass

    async def _dispatch(self) -> None:
        while self._heap and self._in_flight < self.config.max_concurrent:
            if not await self._rate_gate_open():
                return
            _, _, item = heapq.heappop(self._heap)
            if item.future.done():
                # Caller gave up (cancelled) while waiting
                continue
            self._in_flight += 1
            self._publish_state()
            task = asyncio.get_running_loop().create_task(self._execute(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _rate_gate_open(self) -> bool:
        if not self.config.global_rate_limit or self._rate_limiter is None:
            return True
        try:
            result = await self._rate_limiter.check(
                "global",
                "invoicing_api",
                self.config.global_rate_limit,
                self.config.global_rate_window_seconds,
            )
        except RedisError as e:
            # Throttling only; correctness does not depend on it
            logger.error("outbound_rate_limit_check_failed", error=str(e))
            return True
        if not result.allowed:
            logger.debug("outbound_rate_limited", retry_after=result.retry_after)
        return result.allowed

    async def _execute(self, item: QueuedRequest) -> None:
        operation_type = item.operation_type.value
        wait_seconds = time.monotonic() - item.enqueued_at
        self._wait_samples.append(wait_seconds)
        observe_queue_wait(operation_type, wait_seconds)

        timeout = self.config.timeout_for(item.operation_type, item.retry_count + 1)
        try:
            result = await asyncio.wait_for(item.operation(), timeout=timeout)
        except Exception as e:
            self._handle_failure(item, e)
        else:
            self._metrics.total_processed += 1
            record_queue_request(operation_type, "success")
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._in_flight -= 1
            self._publish_state()
            self._wakeup.set()

    def _handle_failure(self, item: QueuedRequest, error: Exception) -> None:
        operation_type = item.operation_type.value
        if is_transient_error(error) and item.retry_count < self.config.max_retries:
            item.retry_count += 1
            item.priority = max(item.priority - 1, 0)
            self._metrics.total_retried += 1
            record_queue_request(operation_type, "retried")
            logger.warning(
                "outbound_request_retry",
                request_id=str(item.request_id),
                attempt=item.retry_count,
                max_retries=self.config.max_retries,
                next_timeout_seconds=self.config.timeout_for(
                    item.operation_type, item.retry_count + 1
                ),
                priority=item.priority,
                error=str(error) or type(error).__name__,
                **item.context,
            )
            self._retry_pending += 1
            task = asyncio.get_running_loop().create_task(self._requeue_after_delay(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        self._metrics.total_failed += 1
        record_queue_request(operation_type, "failed")
        logger.error(
            "outbound_request_failed",
            request_id=str(item.request_id),
            retries=item.retry_count,
            transient=is_transient_error(error),
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            **item.context,
        )
        if not item.future.done():
            item.future.set_exception(error)

    async def _requeue_after_delay(self, item: QueuedRequest) -> None:
        try:
            await asyncio.sleep(self.config.retry_delay_seconds)
        finally:
            self._retry_pending -= 1
        if not self._running:
            if not item.future.done():
                item.future.set_exception(QueueClearedError())
            return
        # Retries were already admitted; they do not count against capacity
        self._push(item)

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def _publish_state(self) -> None:
        set_queue_state(len(self._heap), self._in_flight)

    def get_metrics(self) -> QueueMetrics:
        """Snapshot of queue counters."""
        self._metrics.queue_size = len(self._heap)
        self._metrics.in_flight = self._in_flight
        if self._wait_samples:
            self._metrics.average_wait_seconds = sum(self._wait_samples) / len(self._wait_samples)
        return replace(self._metrics)

    def get_status(self) -> dict[str, Any]:
        """Health view for operators."""
        metrics = self.get_metrics()
        fill_ratio = metrics.queue_size / self.config.max_queue_size
        if not self._running:
            status = QueueStatus.STOPPED
        elif fill_ratio >= self.config.overload_threshold:
            status = QueueStatus.OVERLOADED
        else:
            status = QueueStatus.HEALTHY
        return {
            "status": status.value,
            "healthy": fill_ratio < self.config.overload_threshold,
            "running": self._running,
            "fill_ratio": round(fill_ratio, 4),
            "metrics": metrics.to_dict(),
            "config": {
                "max_concurrent": self.config.max_concurrent,
                "max_queue_size": self.config.max_queue_size,
                "max_retries": self.config.max_retries,
            },
        }

    def worst_case_seconds(self, operation_type: OperationType = OperationType.NORMAL) -> float:
        """Longest one admitted request can take once it reaches the front.

        Every attempt timing out (each longer than the last), separated by
        retry delays, plus one dispatch tick per attempt. Time spent behind
        other requests is not included; callers holding a lock across the
        request extend it when each attempt starts.
        """
        attempts = self.config.max_retries + 1
        return (
            sum(
                self.config.timeout_for(operation_type, attempt)
                for attempt in range(1, attempts + 1)
            )
            + self.config.max_retries * self.config.retry_delay_seconds
            + attempts * self.config.processing_interval_seconds
        )

    def longest_attempt_seconds(
        self, operation_type: OperationType = OperationType.NORMAL
    ) -> float:
        """Longest single attempt, from dispatch to its timeout."""
        return (
            self.config.timeout_for(operation_type, self.config.max_retries + 1)
            + self.config.processing_interval_seconds
        )
