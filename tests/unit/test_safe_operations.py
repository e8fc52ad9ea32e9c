"""Unit tests for guarded invoice operations."""
# ruff: noqa: ARG002  # Fixtures used for database setup side effects

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select
from structlog.testing import capture_logs

from facturabot.billing.folio import FolioAllocator
from facturabot.billing.quota import QuotaDenial
from facturabot.billing.queue import OutboundRequestQueue, QueueConfig
from facturabot.billing.safe_operations import (
    InvoiceOperation,
    InvoiceOperationState,
    SafeInvoiceService,
    create_safe_invoice_service,
)
from facturabot.config.settings import LockConfig, Settings
from facturabot.core.exceptions import (
    ExternalCallFailedError,
    InvoicePayloadError,
    LockLostError,
    LockNotAcquiredError,
    PermissionDeniedError,
    PersistenceAfterExternalSuccessError,
    QueueClearedError,
    QueueFullError,
    QuotaDeniedError,
    UsageCounterError,
)
from facturabot.core.locks import InMemoryLockBackend, LockKeys, LockService
from facturabot.core.redis import RateLimitResult
from facturabot.db.models import SubscriptionStatus, TenantInvoice, TenantSubscription
from facturabot.db.repositories import FolioGapRepository
from facturabot.utils.exceptions import ConfigurationError

FULL_FLOW = [
    InvoiceOperationState.LOCK_PENDING,
    InvoiceOperationState.QUOTA_CHECK,
    InvoiceOperationState.FOLIO_ALLOCATED,
    InvoiceOperationState.EXTERNAL_CALL_PENDING,
    InvoiceOperationState.PERSISTING,
    InvoiceOperationState.DONE,
]


async def _invoices_used(session_factory, subscription_id: int) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(TenantSubscription.invoices_used).where(TenantSubscription.id == subscription_id)
        )
        return result.scalar_one()


async def _invoice_count(session_factory, tenant_id) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count(TenantInvoice.id)).where(TenantInvoice.tenant_id == tenant_id)
        )
        return result.scalar_one()


async def _next_folio(session_factory, tenant_id, series: str = "A") -> int:
    async with session_factory() as session:
        return await FolioAllocator(session, seed=800).peek_next_folio(tenant_id, series)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class SteppedClock:
    """Monotonic clock for the lock backend that only moves when told to."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Invoice generation
# =============================================================================


class TestGenerateInvoiceSafe:
    """Tests for the happy path of generate_invoice_safe."""

    @pytest.mark.asyncio
    async def test_issues_and_records_invoice(
        self, invoice_service, session_factory, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant(invoices_used=2)

        invoice = await invoice_service.generate_invoice_safe(
            tenant.tenant_id, income_invoice, requester_id="telegram:5512"
        )

        assert invoice.id is not None
        assert invoice.folio_number == 800
        assert invoice.series == "A"
        assert invoice.external_invoice_id == "inv_0001"
        assert invoice.total == Decimal("116.00")
        assert invoice.created_by == "telegram:5512"
        assert fake_client.calls[0][1]["folio_number"] == 800
        assert await _invoices_used(session_factory, tenant.subscription_id) == 3
        assert await _invoice_count(session_factory, tenant.tenant_id) == 1

    @pytest.mark.asyncio
    async def test_records_every_state(self, invoice_service, make_tenant, income_invoice):
        tenant = await make_tenant()

        await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        operation = invoice_service.recent_operations[-1]
        assert operation.states == FULL_FLOW
        assert operation.folio_number == 800
        assert operation.external_invoice_id == "inv_0001"

    @pytest.mark.asyncio
    async def test_consecutive_invoices_get_consecutive_folios(
        self, invoice_service, make_tenant, income_invoice
    ):
        tenant = await make_tenant()

        first = await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)
        second = await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert (first.folio_number, second.folio_number) == (800, 801)

    @pytest.mark.asyncio
    async def test_releases_invoice_lock(self, invoice_service, make_tenant, income_invoice):
        tenant = await make_tenant()

        await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert (await invoice_service.get_lock_stats())["active_locks"] == 0

    @pytest.mark.asyncio
    async def test_series_from_request(self, invoice_service, make_tenant, income_invoice):
        tenant = await make_tenant()
        income_invoice["series"] = "B"

        invoice = await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert invoice.series == "B"
        assert invoice.folio_number == 800

    @pytest.mark.asyncio
    async def test_folio_mismatch_keeps_allocated_folio(
        self, invoice_service, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant()
        fake_client.folio_override = 999

        with capture_logs() as logs:
            invoice = await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert invoice.folio_number == 800
        mismatch = [log for log in logs if log["event"] == "external_folio_mismatch"]
        assert mismatch and mismatch[0]["external_folio"] == 999


class TestGenerateInvoiceSafeRejections:
    """Tests for failures before the external call."""

    @pytest.mark.asyncio
    async def test_invalid_payload(self, invoice_service, make_tenant, fake_client):
        tenant = await make_tenant()

        with pytest.raises(InvoicePayloadError):
            await invoice_service.generate_invoice_safe(tenant.tenant_id, {"invoice_type": "I"})

        assert fake_client.calls == []
        operation = invoice_service.recent_operations[-1]
        assert operation.state == InvoiceOperationState.FAILED

    @pytest.mark.asyncio
    async def test_permission_denied(
        self,
        session_factory,
        lock_service,
        outbound_queue,
        fake_client,
        test_settings,
        make_tenant,
        income_invoice,
    ):
        checker = MagicMock()
        checker.has_permission = AsyncMock(return_value=False)
        service = SafeInvoiceService(
            session_factory,
            lock_service,
            outbound_queue,
            fake_client,
            permission_checker=checker,
            settings=test_settings,
        )
        tenant = await make_tenant()

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.generate_invoice_safe(tenant.tenant_id, income_invoice, "telegram:1")

        assert exc_info.value.action == "invoice:create"
        checker.has_permission.assert_awaited_once_with(
            "telegram:1", tenant.tenant_id, "invoice:create"
        )
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_permission_granted(
        self,
        session_factory,
        lock_service,
        outbound_queue,
        fake_client,
        test_settings,
        make_tenant,
        income_invoice,
    ):
        checker = MagicMock()
        checker.has_permission = AsyncMock(return_value=True)
        service = SafeInvoiceService(
            session_factory,
            lock_service,
            outbound_queue,
            fake_client,
            permission_checker=checker,
            settings=test_settings,
        )
        tenant = await make_tenant()

        invoice = await service.generate_invoice_safe(tenant.tenant_id, income_invoice, "telegram:1")

        assert invoice.folio_number == 800

    @pytest.mark.asyncio
    async def test_lock_busy(
        self, invoice_service, lock_service, test_settings, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant()
        key = LockKeys(test_settings.locks.key_prefix).invoice(tenant.tenant_id)
        await lock_service.acquire(key, ttl_seconds=60)

        with pytest.raises(LockNotAcquiredError) as exc_info:
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert exc_info.value.attempts == test_settings.locks.invoice_max_attempts
        assert "try again" in exc_info.value.user_message
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_quota_denied_consumes_no_folio(
        self, invoice_service, session_factory, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant(invoice_limit=5, invoices_used=5)

        with pytest.raises(QuotaDeniedError) as exc_info:
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert exc_info.value.decision.denial == QuotaDenial.LIMIT_REACHED
        assert fake_client.calls == []
        assert await _next_folio(session_factory, tenant.tenant_id) == 800
        assert (await invoice_service.get_lock_stats())["active_locks"] == 0

    @pytest.mark.asyncio
    async def test_suspended_subscription(self, invoice_service, make_tenant, income_invoice):
        tenant = await make_tenant(status=SubscriptionStatus.SUSPENDED)

        with pytest.raises(QuotaDeniedError) as exc_info:
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert exc_info.value.decision.denial == QuotaDenial.SUSPENDED


class TestGenerateInvoiceSafeFailures:
    """Tests for failures at or after the external call."""

    @pytest.mark.asyncio
    async def test_external_failure_records_gap(
        self, invoice_service, session_factory, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant(invoices_used=1)
        fake_client.failures.append(
            ExternalCallFailedError("El RFC del receptor no es valido", status_code=400)
        )

        with pytest.raises(ExternalCallFailedError):
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        async with session_factory() as session:
            gaps = await FolioGapRepository(session).list_for_tenant(tenant.tenant_id)
        assert [(gap.series, gap.folio_number) for gap in gaps] == [("A", 800)]
        assert "RFC" in gaps[0].reason
        assert await _invoices_used(session_factory, tenant.subscription_id) == 1
        assert await _invoice_count(session_factory, tenant.tenant_id) == 0

    @pytest.mark.asyncio
    async def test_failed_folio_is_never_reused(
        self, invoice_service, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant()
        fake_client.failures.append(ExternalCallFailedError("rejected", status_code=422))

        with pytest.raises(ExternalCallFailedError):
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)
        invoice = await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert invoice.folio_number == 801

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_by_queue(
        self, invoice_service, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant()
        fake_client.failures.append(ExternalCallFailedError("busy", transient=True, status_code=503))

        invoice = await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert invoice.folio_number == 800
        assert len(fake_client.calls) == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(
        self, invoice_service, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant()
        fake_client.failures.append(KeyError("folio_number"))

        with pytest.raises(ExternalCallFailedError) as exc_info:
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        assert isinstance(exc_info.value.__cause__, KeyError)
        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_queue_full_records_gap(
        self,
        session_factory,
        lock_service,
        fake_client,
        test_settings,
        make_tenant,
        income_invoice,
    ):
        queue = OutboundRequestQueue(QueueConfig(max_queue_size=1), auto_start=False)
        blocker = queue.submit(AsyncMock())
        service = SafeInvoiceService(
            session_factory, lock_service, queue, fake_client, settings=test_settings
        )
        tenant = await make_tenant()

        with pytest.raises(QueueFullError):
            await service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        async with session_factory() as session:
            gaps = await FolioGapRepository(session).list_for_tenant(tenant.tenant_id)
        assert [gap.folio_number for gap in gaps] == [800]

        await queue.stop()
        with pytest.raises(QueueClearedError):
            await blocker

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported_with_context(
        self, invoice_service, session_factory, make_tenant, income_invoice
    ):
        tenant = await make_tenant(invoices_used=4)
        # A row already occupying folio 800 makes the insert fail after the API succeeded
        async with session_factory() as session:
            session.add(
                TenantInvoice(
                    tenant_id=tenant.tenant_id,
                    external_invoice_id="inv_legacy",
                    series="A",
                    folio_number=800,
                    total=Decimal("50.00"),
                )
            )
            await session.commit()

        with capture_logs() as logs:
            with pytest.raises(PersistenceAfterExternalSuccessError) as exc_info:
                await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        error = exc_info.value
        assert error.external_invoice_id == "inv_0001"
        assert error.folio_number == 800
        assert error.series == "A"
        assert "do not issue it again" in error.user_message
        critical = [log for log in logs if log["log_level"] == "critical"]
        assert critical[0]["external_invoice_id"] == "inv_0001"
        assert critical[0]["folio"] == 800
        # Usage and invoice row are written together or not at all
        assert await _invoices_used(session_factory, tenant.subscription_id) == 4
        assert await _invoice_count(session_factory, tenant.tenant_id) == 1

    @pytest.mark.asyncio
    async def test_failure_is_recorded_on_operation(
        self, invoice_service, make_tenant, fake_client, income_invoice
    ):
        tenant = await make_tenant()
        fake_client.failures.append(ExternalCallFailedError("rejected", status_code=400))

        with pytest.raises(ExternalCallFailedError):
            await invoice_service.generate_invoice_safe(tenant.tenant_id, income_invoice)

        operation = invoice_service.recent_operations[-1]
        assert operation.state == InvoiceOperationState.FAILED
        assert operation.folio_number == 800
        assert "rejected" in operation.failure_reason
        assert InvoiceOperationState.EXTERNAL_CALL_PENDING in operation.states


class TestInvoiceLockExpiry:
    """The tenant lock is re-checked before the external call and before storing."""

    @pytest.fixture
    def clock(self) -> SteppedClock:
        return SteppedClock()

    @pytest.fixture
    def clocked_locks(self, clock, test_settings) -> LockService:
        return LockService(InMemoryLockBackend(clock=clock), test_settings.locks)

    @pytest.mark.asyncio
    async def test_lock_expired_while_queued_skips_external_call(
        self,
        session_factory,
        clocked_locks,
        clock,
        fake_client,
        test_settings,
        make_tenant,
        income_invoice,
    ):
        tenant = await make_tenant(invoice_limit=1)
        queue = OutboundRequestQueue(
            QueueConfig.from_settings(test_settings.queue), auto_start=False
        )
        service = SafeInvoiceService(
            session_factory, clocked_locks, queue, fake_client, settings=test_settings
        )
        try:
            task = asyncio.create_task(
                service.generate_invoice_safe(tenant.tenant_id, income_invoice)
            )
            await _wait_for(lambda: queue.get_metrics().queue_size == 1)
            # A second operator takes over once the TTL has run out
            clock.now += test_settings.locks.invoice_ttl_seconds + 1
            other = await clocked_locks.acquire(service.keys.invoice(tenant.tenant_id))

            with capture_logs() as logs:
                queue.start()
                with pytest.raises(LockLostError):
                    await task
        finally:
            await queue.stop()

        assert other is not None
        assert fake_client.calls == []
        assert any(log["event"] == "lock_lost" for log in logs)
        async with session_factory() as session:
            gaps = await FolioGapRepository(session).list_for_tenant(tenant.tenant_id)
        assert [gap.folio_number for gap in gaps] == [800]
        assert await _invoices_used(session_factory, tenant.subscription_id) == 0
        assert await _invoice_count(session_factory, tenant.tenant_id) == 0
        # The new owner still holds the lock
        assert await clocked_locks.release(other) is True

    @pytest.mark.asyncio
    async def test_lock_lost_before_persist_still_stores_invoice(
        self,
        session_factory,
        clocked_locks,
        clock,
        outbound_queue,
        fake_client,
        test_settings,
        make_tenant,
        income_invoice,
    ):
        tenant = await make_tenant()
        fake_client.gate = asyncio.Event()
        service = SafeInvoiceService(
            session_factory, clocked_locks, outbound_queue, fake_client, settings=test_settings
        )

        task = asyncio.create_task(service.generate_invoice_safe(tenant.tenant_id, income_invoice))
        await asyncio.wait_for(fake_client.called.wait(), 2)
        clock.now += test_settings.locks.invoice_ttl_seconds + 1

        with capture_logs() as logs:
            fake_client.gate.set()
            invoice = await task

        assert invoice.folio_number == 800
        assert any(log["event"] == "invoice_lock_lost_before_persist" for log in logs)
        assert await _invoices_used(session_factory, tenant.subscription_id) == 1
        assert await _invoice_count(session_factory, tenant.tenant_id) == 1


class TestLockTtlValidation:
    """Tests for the invoice lock TTL check at construction."""

    def test_ttl_below_retry_budget_warns(self, fake_client):
        settings = Settings(_env_file=None, locks=LockConfig(invoice_ttl_seconds=150))
        queue = OutboundRequestQueue(QueueConfig())

        with capture_logs() as logs:
            SafeInvoiceService(
                MagicMock(),
                MagicMock(),
                queue,
                fake_client,
                settings=settings,
            )

        warning = [log for log in logs if log["event"] == "invoice_lock_ttl_too_short"]
        assert warning
        assert warning[0]["queue_worst_case_seconds"] == pytest.approx(250.55)

    def test_ttl_below_one_attempt_is_refused(self, fake_client):
        settings = Settings(_env_file=None, locks=LockConfig(invoice_ttl_seconds=10))
        queue = OutboundRequestQueue(QueueConfig())

        with pytest.raises(ConfigurationError, match="longest invoicing API attempt"):
            SafeInvoiceService(MagicMock(), MagicMock(), queue, fake_client, settings=settings)

    def test_default_ttl_covers_queue(self, fake_client):
        settings = Settings(_env_file=None)
        queue = OutboundRequestQueue(QueueConfig.from_settings(settings.queue))

        with capture_logs() as logs:
            SafeInvoiceService(MagicMock(), MagicMock(), queue, fake_client, settings=settings)

        assert not [log for log in logs if log["event"] == "invoice_lock_ttl_too_short"]


class TestInvoiceOperation:
    """Tests for InvoiceOperation state transitions."""

    def test_rejects_skipped_state(self):
        operation = InvoiceOperation(tenant_id=MagicMock(), series="A")

        with pytest.raises(ValueError):
            operation.advance(InvoiceOperationState.FOLIO_ALLOCATED)

    def test_fail_from_any_state(self):
        operation = InvoiceOperation(tenant_id=MagicMock(), series="A")
        operation.advance(InvoiceOperationState.LOCK_PENDING)

        operation.fail("boom")

        assert operation.state == InvoiceOperationState.FAILED
        assert operation.states == [InvoiceOperationState.LOCK_PENDING, InvoiceOperationState.FAILED]

    def test_done_is_final(self):
        operation = InvoiceOperation(tenant_id=MagicMock(), series="A")
        for state in FULL_FLOW:
            operation.advance(state)

        with pytest.raises(ValueError):
            operation.advance(InvoiceOperationState.DONE)


# =============================================================================
# Single-step operations
# =============================================================================


class TestSingleStepOperations:
    """Tests for the locked single-step variants."""

    @pytest.mark.asyncio
    async def test_get_next_folio_safe(self, invoice_service, make_tenant):
        tenant = await make_tenant()

        assert await invoice_service.get_next_folio_safe(tenant.tenant_id) == 800
        assert await invoice_service.get_next_folio_safe(tenant.tenant_id) == 801
        assert await invoice_service.get_next_folio_safe(tenant.tenant_id, "B") == 800

    @pytest.mark.asyncio
    async def test_get_next_folio_safe_has_no_unlocked_fallback(
        self, invoice_service, lock_service, test_settings, session_factory, make_tenant
    ):
        tenant = await make_tenant()
        key = LockKeys(test_settings.locks.key_prefix).folio(tenant.tenant_id, "A")
        await lock_service.acquire(key, ttl_seconds=60)

        with pytest.raises(LockNotAcquiredError):
            await invoice_service.get_next_folio_safe(tenant.tenant_id)

        assert await _next_folio(session_factory, tenant.tenant_id) == 800

    @pytest.mark.asyncio
    async def test_can_generate_invoice_safe(self, invoice_service, make_tenant):
        tenant = await make_tenant(invoice_limit=3, invoices_used=1)

        decision = await invoice_service.can_generate_invoice_safe(tenant.tenant_id)

        assert decision.can_generate is True
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_increment_invoice_count_safe_commits(
        self, invoice_service, session_factory, make_tenant
    ):
        tenant = await make_tenant(invoices_used=7)

        subscription = await invoice_service.increment_invoice_count_safe(tenant.tenant_id)

        assert subscription.invoices_used == 8
        assert await _invoices_used(session_factory, tenant.subscription_id) == 8

    @pytest.mark.asyncio
    async def test_increment_invoice_count_safe_without_subscription(
        self, invoice_service, make_tenant
    ):
        tenant = await make_tenant(status=SubscriptionStatus.EXPIRED)

        with pytest.raises(UsageCounterError):
            await invoice_service.increment_invoice_count_safe(tenant.tenant_id)

        assert (await invoice_service.get_lock_stats())["active_locks"] == 0


class TestProcessBatchSafe:
    """Tests for process_batch_safe."""

    @pytest.mark.asyncio
    async def test_collects_per_item_results(self, invoice_service, make_tenant):
        tenant = await make_tenant()

        async def processor(item: int) -> int:
            if item == 2:
                raise ValueError("bad item")
            return item * 10

        results = await invoice_service.process_batch_safe(tenant.tenant_id, [1, 2, 3], processor)

        assert [r.success for r in results] == [True, False, True]
        assert [r.result for r in results] == [10, None, 30]
        assert results[1].error == "bad item"

    @pytest.mark.asyncio
    async def test_second_batch_is_rejected_immediately(
        self, invoice_service, lock_service, test_settings, make_tenant
    ):
        tenant = await make_tenant()
        key = LockKeys(test_settings.locks.key_prefix).batch(tenant.tenant_id)
        await lock_service.acquire(key, ttl_seconds=60)
        processor = AsyncMock()

        with pytest.raises(LockNotAcquiredError) as exc_info:
            await invoice_service.process_batch_safe(tenant.tenant_id, [1], processor)

        assert exc_info.value.attempts == 1
        processor.assert_not_awaited()


class TestRateLimit:
    """Tests for check_rate_limit."""

    @pytest.mark.asyncio
    async def test_allows_without_limiter(self, invoice_service):
        assert await invoice_service.check_rate_limit("telegram:1", "invoice:create") is True

    @pytest.mark.asyncio
    async def test_denied_by_limiter(self, invoice_service):
        limiter = MagicMock()
        limiter.check = AsyncMock(
            return_value=RateLimitResult(allowed=False, remaining=0, reset_at=None, retry_after=30)
        )
        invoice_service.rate_limiter = limiter

        allowed = await invoice_service.check_rate_limit("telegram:1", "invoice:create", 5, 60)

        assert allowed is False
        limiter.check.assert_awaited_once_with("telegram:1", "invoice:create", 5, 60)

    @pytest.mark.asyncio
    async def test_shared_cache_failure_allows(self, invoice_service):
        limiter = MagicMock()
        limiter.check = AsyncMock(side_effect=RedisConnectionError("down"))
        invoice_service.rate_limiter = limiter

        assert await invoice_service.check_rate_limit("telegram:1", "invoice:create") is True


class TestCreateSafeInvoiceService:
    """Tests for create_safe_invoice_service."""

    def test_wires_from_settings(self, session_factory, fake_client, test_settings):
        service = create_safe_invoice_service(
            fake_client, settings=test_settings, session_factory=session_factory
        )

        assert isinstance(service.locks.backend, InMemoryLockBackend)
        assert service.queue.config.max_concurrent == test_settings.queue.max_concurrent
        assert service.rate_limiter is None
        assert service.session_factory is session_factory
