"""Reconciliation between the invoicing API and local records.

Covers the two ways the systems drift apart: an invoice issued externally
whose local row was never written (see PersistenceAfterExternalSuccessError),
and a usage counter that no longer matches the invoices actually stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from facturabot.billing.external import ExternalInvoice, InvoicingClient
from facturabot.billing.quota import latest_subscription
from facturabot.core.exceptions import SubscriptionNotFoundError
from facturabot.core.logging import get_logger
from facturabot.db.models import BILLABLE_STATUSES, InvoiceStatus, TenantFolio, TenantInvoice, as_utc
from facturabot.db.repositories import InvoiceRepository

logger = get_logger(__name__)


@dataclass
class UsageResync:
    """Usage counter before and after a resync."""

    subscription_id: int
    previous: int
    current: int

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class ReconciliationService:
    """Finds and repairs drift between external and local invoice records.

    Args:
        db: Async session; repairs commit
        client: Invoicing API client used to list external invoices
    """

    def __init__(self, db: AsyncSession, client: InvoicingClient):
        self.db = db
        self.client = client
        self.invoices = InvoiceRepository(db)

    async def find_orphan_invoices(
        self, tenant_id: UUID, since: datetime | None = None
    ) -> list[ExternalInvoice]:
        """External invoices with no local row."""
        external = await self.client.list_invoices(tenant_id, since)
        known = await self.invoices.external_ids(tenant_id)
        orphans = [invoice for invoice in external if invoice.external_id not in known]
        if orphans:
            logger.warning(
                "orphan_invoices_found",
                tenant_id=str(tenant_id),
                count=len(orphans),
                external_ids=[invoice.external_id for invoice in orphans],
            )
        return orphans

    async def repair_orphans(
        self, tenant_id: UUID, orphans: list[ExternalInvoice]
    ) -> list[TenantInvoice]:
        """Insert local rows for orphaned external invoices.

        An orphan whose folio is already used by another local invoice is
        skipped and logged. The folio counter is moved past every repaired
        folio so none of them can be handed out again. Usage counters are
        left to resync_usage_counter.
        """
        repaired: list[TenantInvoice] = []
        for orphan in orphans:
            clash = await self.invoices.get_by_folio(tenant_id, orphan.series, orphan.folio_number)
            if clash is not None:
                logger.error(
                    "orphan_folio_conflict",
                    tenant_id=str(tenant_id),
                    series=orphan.series,
                    folio=orphan.folio_number,
                    external_invoice_id=orphan.external_id,
                    local_external_invoice_id=clash.external_invoice_id,
                )
                continue
            repaired.append(
                TenantInvoice(
                    tenant_id=tenant_id,
                    external_invoice_id=orphan.external_id,
                    series=orphan.series,
                    folio_number=orphan.folio_number,
                    customer_id=orphan.customer_id,
                    total=orphan.total,
                    status=orphan.status
                    if orphan.status in {s.value for s in InvoiceStatus}
                    else InvoiceStatus.VALID.value,
                    created_by="reconciliation",
                )
            )

        if not repaired:
            return []

        await self.invoices.create_many(repaired, commit=False)
        highest: dict[str, int] = {}
        for invoice in repaired:
            highest[invoice.series] = max(highest.get(invoice.series, 0), invoice.folio_number)
        for series, folio in highest.items():
            await self.db.execute(
                update(TenantFolio)
                .where(
                    TenantFolio.tenant_id == tenant_id,
                    TenantFolio.series == series,
                    TenantFolio.current_number <= folio,
                )
                .values(current_number=folio + 1)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        logger.info(
            "orphan_invoices_repaired",
            tenant_id=str(tenant_id),
            count=len(repaired),
            folios=[f"{invoice.series}-{invoice.folio_number}" for invoice in repaired],
        )
        return repaired

    async def resync_usage_counter(self, tenant_id: UUID) -> UsageResync:
        """Recompute invoices_used from valid local invoices in the current period.

        Raises:
            SubscriptionNotFoundError: If the tenant has no active or trial subscription
        """
        subscription = await latest_subscription(self.db, tenant_id, BILLABLE_STATUSES)
        if subscription is None:
            raise SubscriptionNotFoundError(tenant_id)

        since = as_utc(subscription.current_period_starts_at)
        actual = await self.invoices.count_valid_since(tenant_id, since)
        resync = UsageResync(
            subscription_id=subscription.id,
            previous=subscription.invoices_used,
            current=actual,
        )
        if resync.changed:
            subscription.invoices_used = actual
            await self.db.commit()
            logger.warning(
                "usage_counter_resynced",
                tenant_id=str(tenant_id),
                subscription_id=subscription.id,
                previous=resync.previous,
                current=resync.current,
            )
        return resync
