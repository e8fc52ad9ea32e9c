"""Guarded invoice operations.

Composes the lock service, quota guard, folio allocator, outbound queue and
usage counter into the invoice generation flow that several operators of the
same tenant can run at once without duplicating folios or overrunning quota:

    lock(tenant invoice key)
      -> re-check quota
      -> allocate folio
      -> external call through the outbound queue (lock extended per attempt)
      -> persist invoice + increment usage (one transaction)
    release

The quota check is only authoritative because it runs inside the lock, so
no external attempt starts unless the same lock is still held. The folio
advance commits on its own, so a failed external call leaves a gap that
is recorded rather than reused.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from uuid_utils.compat import uuid7

from facturabot.billing.external import ExternalInvoice, InvoicingClient
from facturabot.billing.folio import FolioAllocator, FolioStrategy
from facturabot.billing.payload import (
    IncomeInvoiceInput,
    PaymentComplementInput,
    parse_invoice_input,
)
from facturabot.billing.queue import (
    OperationType,
    OutboundRequestQueue,
    QueueConfig,
    is_transient_error,
)
from facturabot.billing.quota import QuotaDecision, QuotaGuard
from facturabot.billing.usage import UsageCounter
from facturabot.config.settings import Settings, get_settings
from facturabot.core.exceptions import (
    ExternalCallFailedError,
    FolioAllocationError,
    InvoicePayloadError,
    InvoicingError,
    LockLostError,
    LockNotAcquiredError,
    PermissionDeniedError,
    PersistenceAfterExternalSuccessError,
    QueueClearedError,
    QueueFullError,
    QuotaDeniedError,
    UsageCounterError,
)
from facturabot.core.locks import LockHandle, LockKeys, LockService, create_lock_service
from facturabot.core.logging import LogContext, get_logger
from facturabot.core.redis import RateLimiter
from facturabot.db.config import get_session_factory
from facturabot.db.models import InvoiceStatus, TenantInvoice, TenantSubscription
from facturabot.db.repositories import FolioGapRepository
from facturabot.observability.metrics import (
    record_folio_gap,
    record_invoice_operation,
    record_persistence_inconsistency,
)
from facturabot.utils.exceptions import ConfigurationError

logger = get_logger(__name__)

ItemT = TypeVar("ItemT")

INVOICE_CREATE_ACTION = "invoice:create"


@runtime_checkable
class PermissionChecker(Protocol):
    """Yes/no capability check supplied by the authentication layer."""

    async def has_permission(self, user_id: str, tenant_id: UUID, action: str) -> bool: ...


# =============================================================================
# Operation State
# =============================================================================


class InvoiceOperationState(str, Enum):
    """Progress of one guarded invoice generation."""

    IDLE = "idle"
    LOCK_PENDING = "lock_pending"
    QUOTA_CHECK = "quota_check"
    FOLIO_ALLOCATED = "folio_allocated"
    EXTERNAL_CALL_PENDING = "external_call_pending"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


_NEXT_STATE: dict[InvoiceOperationState, InvoiceOperationState] = {
    InvoiceOperationState.IDLE: InvoiceOperationState.LOCK_PENDING,
    InvoiceOperationState.LOCK_PENDING: InvoiceOperationState.QUOTA_CHECK,
    InvoiceOperationState.QUOTA_CHECK: InvoiceOperationState.FOLIO_ALLOCATED,
    InvoiceOperationState.FOLIO_ALLOCATED: InvoiceOperationState.EXTERNAL_CALL_PENDING,
    InvoiceOperationState.EXTERNAL_CALL_PENDING: InvoiceOperationState.PERSISTING,
    InvoiceOperationState.PERSISTING: InvoiceOperationState.DONE,
}


@dataclass
class InvoiceOperation:
    """Record of one guarded invoice generation and its transitions."""

    tenant_id: UUID
    series: str
    requester_id: str | None = None
    operation_id: UUID = field(default_factory=uuid7)
    state: InvoiceOperationState = InvoiceOperationState.IDLE
    folio_number: int | None = None
    external_invoice_id: str | None = None
    failure_reason: str | None = None
    history: list[tuple[InvoiceOperationState, datetime]] = field(default_factory=list)

    def advance(self, state: InvoiceOperationState) -> None:
        """Move to the next state of the flow.

        Raises:
            ValueError: If state is not the successor of the current state
        """
        expected = _NEXT_STATE.get(self.state)
        if state != expected:
            raise ValueError(f"Invalid invoice operation transition {self.state.value} -> {state.value}")
        self._enter(state)

    def fail(self, reason: str) -> None:
        self.failure_reason = reason
        self._enter(InvoiceOperationState.FAILED)

    def _enter(self, state: InvoiceOperationState) -> None:
        self.state = state
        self.history.append((state, datetime.now(UTC)))

    @property
    def states(self) -> list[InvoiceOperationState]:
        return [state for state, _ in self.history]


@dataclass
class BatchItemResult(Generic[ItemT]):
    """Outcome of one item of a locked batch."""

    item: ItemT
    success: bool
    result: Any = None
    error: str | None = None


_OUTCOMES: tuple[tuple[type[Exception], str], ...] = (
    (InvoicePayloadError, "invalid_payload"),
    (PermissionDeniedError, "permission_denied"),
    (LockNotAcquiredError, "lock_not_acquired"),
    (LockLostError, "lock_lost"),
    (QuotaDeniedError, "quota_denied"),
    (FolioAllocationError, "folio_failed"),
    (QueueFullError, "queue_full"),
    (QueueClearedError, "queue_cleared"),
    (PersistenceAfterExternalSuccessError, "persistence_failed"),
)


def _outcome_for(error: Exception) -> str:
    for error_type, outcome in _OUTCOMES:
        if isinstance(error, error_type):
            return outcome
    return "external_failed"


# =============================================================================
# Service
# =============================================================================


class SafeInvoiceService:
    """Invoice generation and single-step operations under tenant locks.

    Every database step opens its own session from session_factory, which
    must be created with expire_on_commit=False.

    Args:
        session_factory: Session factory for the invoicing database
        lock_service: Shared lock service
        queue: Outbound queue in front of the invoicing API
        client: Invoicing API client
        permission_checker: Optional capability check for requesters
        settings: Application settings (defaults to get_settings())
        folio_strategy: Counter advance strategy
        rate_limiter: Optional shared limiter for per-user rate limits
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_service: LockService,
        queue: OutboundRequestQueue,
        client: InvoicingClient,
        *,
        permission_checker: PermissionChecker | None = None,
        settings: Settings | None = None,
        folio_strategy: FolioStrategy = FolioStrategy.UPSERT,
        rate_limiter: RateLimiter | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.locks = lock_service
        self.queue = queue
        self.client = client
        self.permission_checker = permission_checker
        self.folio_strategy = folio_strategy
        self.rate_limiter = rate_limiter
        self.keys = LockKeys(self.settings.locks.key_prefix)
        self.recent_operations: deque[InvoiceOperation] = deque(maxlen=100)

        lock_config = self.settings.locks
        longest_attempt = queue.longest_attempt_seconds(OperationType.NORMAL)
        if lock_config.invoice_ttl_seconds <= longest_attempt:
            raise ConfigurationError(
                f"Invoice lock TTL ({lock_config.invoice_ttl_seconds}s) must exceed the longest "
                f"invoicing API attempt ({longest_attempt}s)"
            )
        worst_case = queue.worst_case_seconds(OperationType.NORMAL)
        if lock_config.invoice_ttl_seconds <= worst_case:
            logger.warning(
                "invoice_lock_ttl_too_short",
                invoice_ttl_seconds=lock_config.invoice_ttl_seconds,
                queue_worst_case_seconds=worst_case,
                detail="the lock can expire between retries, which fails the request",
            )

    # -------------------------------------------------------------------------
    # Invoice generation
    # -------------------------------------------------------------------------

    async def generate_invoice_safe(
        self,
        tenant_id: UUID,
        invoice_input: IncomeInvoiceInput | PaymentComplementInput | dict[str, Any],
        requester_id: str | None = None,
    ) -> TenantInvoice:
        """Issue an invoice for the tenant, guarded against concurrent operators.

        Raises:
            InvoicePayloadError: If the request is invalid
            PermissionDeniedError: If the requester may not invoice for the tenant
            LockNotAcquiredError: If another operation holds the tenant lock
            LockLostError: If the tenant lock expired before the external call started
            QuotaDeniedError: If the subscription does not allow another invoice
            FolioAllocationError: If the folio counter could not be advanced
            QueueFullError: If the outbound queue is at capacity
            ExternalCallFailedError: If the invoicing API did not issue the invoice
            PersistenceAfterExternalSuccessError: If the issued invoice could not be stored
        """
        operation = InvoiceOperation(
            tenant_id=tenant_id,
            series=self.settings.folio_default_series,
            requester_id=requester_id,
        )
        self.recent_operations.append(operation)

        with LogContext(operation_id=str(operation.operation_id), tenant_id=str(tenant_id)):
            logger.info("invoice_operation_started", requester_id=requester_id)
            try:
                parsed = parse_invoice_input(invoice_input)
                operation.series = parsed.series
                await self._check_permission(requester_id, tenant_id, INVOICE_CREATE_ACTION)

                operation.advance(InvoiceOperationState.LOCK_PENDING)
                async with self.locks.hold(
                    self.keys.invoice(tenant_id),
                    ttl_seconds=self.settings.locks.invoice_ttl_seconds,
                    max_attempts=self.settings.locks.invoice_max_attempts,
                ) as handle:
                    invoice = await self._generate_locked(operation, handle, parsed, requester_id)
            except InvoicingError as e:
                operation.fail(str(e))
                record_invoice_operation(_outcome_for(e))
                logger.info(
                    "invoice_operation_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    retryable=e.retryable,
                    folio=operation.folio_number,
                )
                raise

            record_invoice_operation("success")
            logger.info(
                "invoice_operation_completed",
                folio=operation.folio_number,
                series=operation.series,
                external_invoice_id=operation.external_invoice_id,
            )
            return invoice

    async def _generate_locked(
        self,
        operation: InvoiceOperation,
        handle: LockHandle,
        invoice_input: IncomeInvoiceInput | PaymentComplementInput,
        requester_id: str | None,
    ) -> TenantInvoice:
        tenant_id = operation.tenant_id
        series = invoice_input.series

        operation.advance(InvoiceOperationState.QUOTA_CHECK)
        async with self.session_factory() as session:
            await QuotaGuard(session).ensure_can_generate(tenant_id)

        async with self.session_factory() as session:
            folio = await FolioAllocator(
                session, self.folio_strategy, seed=self.settings.folio_seed
            ).get_next_folio(tenant_id, series)
        operation.folio_number = folio
        operation.advance(InvoiceOperationState.FOLIO_ALLOCATED)

        payload = invoice_input.to_external_payload(folio)
        operation.advance(InvoiceOperationState.EXTERNAL_CALL_PENDING)
        external = await self._call_external(
            operation, handle, folio, payload, invoice_input.priority
        )
        operation.external_invoice_id = external.external_id

        if external.folio_number != folio:
            logger.error(
                "external_folio_mismatch",
                series=series,
                allocated_folio=folio,
                external_folio=external.folio_number,
                external_invoice_id=external.external_id,
            )

        if not await self.locks.extend(handle):
            # The invoice exists externally, so it is stored regardless
            logger.error(
                "invoice_lock_lost_before_persist",
                series=series,
                folio=folio,
                external_invoice_id=external.external_id,
            )

        operation.advance(InvoiceOperationState.PERSISTING)
        invoice = await self._persist(operation, folio, invoice_input, external, requester_id)
        operation.advance(InvoiceOperationState.DONE)
        return invoice

    async def _call_external(
        self,
        operation: InvoiceOperation,
        handle: LockHandle,
        folio: int,
        payload: dict[str, Any],
        priority: int,
    ) -> ExternalInvoice:
        tenant_id = operation.tenant_id

        async def attempt() -> ExternalInvoice:
            # The request may have waited in the queue past the lock TTL
            await self.locks.ensure_held(handle)
            return await self.client.create_invoice(tenant_id, payload)

        try:
            return await self.queue.enqueue(
                attempt,
                OperationType.NORMAL,
                context={
                    "tenant_id": str(tenant_id),
                    "operation_id": str(operation.operation_id),
                    "folio": folio,
                },
                priority=priority,
            )
        except Exception as e:
            await self._record_gap(operation, folio, reason=str(e) or type(e).__name__)
            if isinstance(e, InvoicingError):
                raise
            raise ExternalCallFailedError(
                f"Invoicing API call failed: {e}", transient=is_transient_error(e)
            ) from e

    async def _record_gap(self, operation: InvoiceOperation, folio: int, reason: str) -> None:
        record_folio_gap()
        logger.warning(
            "folio_gap",
            series=operation.series,
            folio=folio,
            reason=reason,
        )
        try:
            async with self.session_factory() as session:
                await FolioGapRepository(session).record(
                    operation.tenant_id, operation.series, folio, reason
                )
        except SQLAlchemyError as e:
            # The gap is still in the log above; the original failure is what the caller needs
            logger.error(
                "folio_gap_record_failed",
                series=operation.series,
                folio=folio,
                error=str(e),
            )

    async def _persist(
        self,
        operation: InvoiceOperation,
        folio: int,
        invoice_input: IncomeInvoiceInput | PaymentComplementInput,
        external: ExternalInvoice,
        requester_id: str | None,
    ) -> TenantInvoice:
        invoice = TenantInvoice(
            tenant_id=operation.tenant_id,
            external_invoice_id=external.external_id,
            series=invoice_input.series,
            folio_number=folio,
            customer_id=invoice_input.customer_id,
            total=external.total if external.total else invoice_input.total,
            status=InvoiceStatus.VALID.value,
            invoice_type=invoice_input.invoice_type,
            created_by=requester_id,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(invoice)
                    await UsageCounter(session).increment_invoice_count(operation.tenant_id)
        except (SQLAlchemyError, UsageCounterError) as e:
            record_persistence_inconsistency()
            logger.critical(
                "invoice_persistence_failed_after_external_success",
                tenant_id=str(operation.tenant_id),
                external_invoice_id=external.external_id,
                series=invoice_input.series,
                folio=folio,
                total=str(external.total),
                error=str(e),
            )
            raise PersistenceAfterExternalSuccessError(
                operation.tenant_id,
                external.external_id,
                invoice_input.series,
                folio,
            ) from e
        return invoice

    async def _check_permission(self, user_id: str | None, tenant_id: UUID, action: str) -> None:
        if self.permission_checker is None or user_id is None:
            return
        if not await self.permission_checker.has_permission(user_id, tenant_id, action):
            logger.warning("permission_denied", user_id=user_id, action=action)
            raise PermissionDeniedError(user_id, tenant_id, action)

    # -------------------------------------------------------------------------
    # Single-step operations
    # -------------------------------------------------------------------------

    async def get_next_folio_safe(self, tenant_id: UUID, series: str = "A") -> int:
        """Allocate a folio under the tenant's folio lock.

        Raises:
            LockNotAcquiredError: If the folio lock is busy
            FolioAllocationError: If the counter could not be advanced
        """

        async def allocate() -> int:
            async with self.session_factory() as session:
                return await FolioAllocator(
                    session, self.folio_strategy, seed=self.settings.folio_seed
                ).get_next_folio(tenant_id, series)

        return await self.locks.with_lock(
            self.keys.folio(tenant_id, series),
            allocate,
            ttl_seconds=self.settings.locks.folio_ttl_seconds,
            max_attempts=self.settings.locks.folio_max_attempts,
        )

    async def can_generate_invoice_safe(self, tenant_id: UUID) -> QuotaDecision:
        """Quota decision read under the tenant's quota lock.

        Raises:
            LockNotAcquiredError: If the quota lock is busy
        """

        async def check() -> QuotaDecision:
            async with self.session_factory() as session:
                return await QuotaGuard(session).can_generate_invoice(tenant_id)

        return await self.locks.with_lock(
            self.keys.quota(tenant_id),
            check,
            ttl_seconds=self.settings.locks.quota_ttl_seconds,
            max_attempts=self.settings.locks.quota_max_attempts,
        )

    async def increment_invoice_count_safe(self, tenant_id: UUID) -> TenantSubscription:
        """Increment usage under the tenant's usage lock and commit.

        Raises:
            LockNotAcquiredError: If the usage lock is busy
            UsageCounterError: If there is no active or trial subscription
        """

        async def increment() -> TenantSubscription:
            async with self.session_factory() as session:
                async with session.begin():
                    return await UsageCounter(session).increment_invoice_count(tenant_id)

        return await self.locks.with_lock(
            self.keys.usage(tenant_id),
            increment,
            ttl_seconds=self.settings.locks.quota_ttl_seconds,
            max_attempts=self.settings.locks.quota_max_attempts,
        )

    async def process_batch_safe(
        self,
        tenant_id: UUID,
        items: Sequence[ItemT],
        processor: Callable[[ItemT], Awaitable[Any]],
    ) -> list[BatchItemResult[ItemT]]:
        """Run processor over items while holding the tenant's batch lock.

        A failing item is recorded in its result and does not stop the batch.

        Raises:
            LockNotAcquiredError: If another batch is running for the tenant
        """

        async def run() -> list[BatchItemResult[ItemT]]:
            logger.info("batch_started", tenant_id=str(tenant_id), item_count=len(items))
            results: list[BatchItemResult[ItemT]] = []
            for index, item in enumerate(items):
                try:
                    result = await processor(item)
                except Exception as e:
                    logger.warning(
                        "batch_item_failed",
                        tenant_id=str(tenant_id),
                        index=index,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    results.append(BatchItemResult(item=item, success=False, error=str(e)))
                else:
                    results.append(BatchItemResult(item=item, success=True, result=result))
            logger.info(
                "batch_completed",
                tenant_id=str(tenant_id),
                succeeded=sum(1 for r in results if r.success),
                failed=sum(1 for r in results if not r.success),
            )
            return results

        return await self.locks.with_lock(
            self.keys.batch(tenant_id),
            run,
            ttl_seconds=self.settings.locks.batch_ttl_seconds,
            max_attempts=1,
        )

    async def check_rate_limit(
        self,
        user_id: str,
        operation: str,
        max_requests: int = 10,
        window_seconds: int = 60,
    ) -> bool:
        """Per-user rate limit on an operation.

        Fails open: without a limiter, or when the shared cache errors, the
        request is allowed.
        """
        if self.rate_limiter is None:
            return True
        try:
            result = await self.rate_limiter.check(user_id, operation, max_requests, window_seconds)
        except RedisError as e:
            logger.warning(
                "rate_limit_check_failed", user_id=user_id, operation=operation, error=str(e)
            )
            return True
        if not result.allowed:
            logger.info(
                "rate_limit_denied",
                user_id=user_id,
                operation=operation,
                retry_after=result.retry_after,
            )
        return result.allowed

    async def get_lock_stats(self) -> dict[str, Any]:
        """Backend type and currently held lock keys."""
        return await self.locks.get_stats()


def create_safe_invoice_service(
    client: InvoicingClient,
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    permission_checker: PermissionChecker | None = None,
) -> SafeInvoiceService:
    """Wire a SafeInvoiceService from application settings.

    Raises:
        UnsafeLockBackendError: In multi-process mode without REDIS_URL
    """
    settings = settings or get_settings()
    lock_service = create_lock_service(settings)
    queue = OutboundRequestQueue(QueueConfig.from_settings(settings.queue))
    return SafeInvoiceService(
        session_factory or get_session_factory(),
        lock_service,
        queue,
        client,
        permission_checker=permission_checker,
        settings=settings,
        rate_limiter=RateLimiter() if settings.REDIS_URL else None,
    )
