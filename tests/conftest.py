"""Pytest fixtures for facturabot tests."""

import asyncio
import itertools
from collections import deque
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from facturabot.billing.external import ExternalInvoice
from facturabot.billing.queue import OutboundRequestQueue, QueueConfig
from facturabot.billing.safe_operations import SafeInvoiceService
from facturabot.config.settings import LockConfig, OutboundQueueConfig, Settings
from facturabot.core.locks import InMemoryLockBackend, LockService
from facturabot.db.models import (
    Base,
    SubscriptionPlan,
    SubscriptionStatus,
    Tenant,
    TenantSubscription,
)

_rfc_sequence = itertools.count(1)


# =============================================================================
# Structlog Configuration Fixture
# =============================================================================


@pytest.fixture(scope="function", autouse=True)
def reset_structlog_after_test():
    """Reset structlog configuration after each test.

    This ensures tests that modify structlog global state
    don't affect other tests.
    """
    yield
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short lock backoff and a fast queue tick."""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        REDIS_URL=None,
        log_level="DEBUG",
        folio_seed=800,
        locks=LockConfig(
            retry_base_delay_seconds=0.01,
            retry_max_delay_seconds=0.05,
        ),
        queue=OutboundQueueConfig(
            processing_interval_seconds=0.01,
            retry_delay_seconds=0.01,
            timeout_normal_seconds=2.0,
        ),
    )


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'facturabot.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@dataclass
class SeededTenant:
    """Identifiers of a tenant created by make_tenant."""

    tenant_id: UUID
    plan_id: int
    subscription_id: int | None


@pytest.fixture
def make_tenant(session_factory):
    """Factory creating a tenant, a plan and (optionally) a subscription."""

    async def _make(
        *,
        is_active: bool = True,
        invoice_limit: int | None = 10,
        status: SubscriptionStatus | None = SubscriptionStatus.ACTIVE,
        invoices_used: int = 0,
        trial_ends_at: datetime | None = None,
        period_ends_at: datetime | None = None,
    ) -> SeededTenant:
        now = datetime.now(UTC)
        async with session_factory() as session:
            tenant = Tenant(
                business_name="Comercializadora del Norte",
                rfc=f"XAXX{next(_rfc_sequence):09d}",
                is_active=is_active,
            )
            plan = SubscriptionPlan(
                name="Emprendedor", price=Decimal("299.00"), invoice_limit=invoice_limit
            )
            session.add_all([tenant, plan])
            await session.flush()

            subscription_id = None
            if status is not None:
                subscription = TenantSubscription(
                    tenant_id=tenant.tenant_id,
                    plan_id=plan.id,
                    status=status.value,
                    invoices_used=invoices_used,
                    trial_ends_at=trial_ends_at
                    or (now + timedelta(days=14) if status == SubscriptionStatus.TRIAL else None),
                    current_period_starts_at=now - timedelta(days=1),
                    current_period_ends_at=period_ends_at or now + timedelta(days=29),
                )
                session.add(subscription)
                await session.flush()
                subscription_id = subscription.id

            await session.commit()
            return SeededTenant(tenant.tenant_id, plan.id, subscription_id)

    return _make


# =============================================================================
# Invoicing
# =============================================================================


class FakeInvoicingClient:
    """In-memory stand-in for the invoicing API.

    Queued exceptions in ``failures`` are raised one per call before any
    invoice is issued. Setting ``gate`` holds every call until it is set.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[UUID, dict[str, Any]]] = []
        self.failures: deque[Exception] = deque()
        self.gate: asyncio.Event | None = None
        self.called = asyncio.Event()
        self.folio_override: int | None = None
        self.listed: list[ExternalInvoice] = []

    async def create_invoice(self, tenant_id: UUID, payload: dict[str, Any]) -> ExternalInvoice:
        self.calls.append((tenant_id, payload))
        self.called.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.popleft()
        return ExternalInvoice(
            external_id=f"inv_{len(self.calls):04d}",
            series=payload["series"],
            folio_number=self.folio_override or payload["folio_number"],
            total=Decimal("116.00"),
        )

    async def list_invoices(
        self, tenant_id: UUID, since: datetime | None = None
    ) -> list[ExternalInvoice]:
        return list(self.listed)


@pytest.fixture
def fake_client() -> FakeInvoicingClient:
    return FakeInvoicingClient()


@pytest.fixture
def lock_service(test_settings: Settings) -> LockService:
    return LockService(InMemoryLockBackend(), test_settings.locks)


@pytest_asyncio.fixture
async def outbound_queue(test_settings: Settings) -> AsyncGenerator[OutboundRequestQueue, None]:
    queue = OutboundRequestQueue(QueueConfig.from_settings(test_settings.queue))
    yield queue
    await queue.stop()


@pytest.fixture
def invoice_service(
    session_factory, lock_service, outbound_queue, fake_client, test_settings
) -> SafeInvoiceService:
    return SafeInvoiceService(
        session_factory,
        lock_service,
        outbound_queue,
        fake_client,
        settings=test_settings,
    )


@pytest.fixture
def income_invoice() -> dict[str, Any]:
    """A one-item income invoice totalling 116.00 with VAT."""
    return {
        "invoice_type": "I",
        "customer_id": "cus_5f1c2a",
        "items": [
            {
                "product_key": "80101500",
                "description": "Consultoria contable mensual",
                "quantity": "1",
                "price": "100.00",
            }
        ],
    }
