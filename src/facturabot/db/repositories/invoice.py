"""Repositories for issued invoices and folio gaps."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from facturabot.db.models.folio import FolioGap
from facturabot.db.models.invoice import InvoiceStatus, TenantInvoice

from .base import BaseRepository


class InvoiceRepository(BaseRepository[TenantInvoice, int]):
    """Queries over a tenant's issued invoices."""

    async def get_by_folio(self, tenant_id: UUID, series: str, folio_number: int) -> TenantInvoice | None:
        stmt = select(TenantInvoice).where(
            TenantInvoice.tenant_id == tenant_id,
            TenantInvoice.series == series,
            TenantInvoice.folio_number == folio_number,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: UUID, *, limit: int = 100) -> list[TenantInvoice]:
        stmt = (
            select(TenantInvoice)
            .where(TenantInvoice.tenant_id == tenant_id)
            .order_by(TenantInvoice.series, TenantInvoice.folio_number)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def external_ids(self, tenant_id: UUID) -> set[str]:
        """Every external invoice id recorded for the tenant."""
        stmt = select(TenantInvoice.external_invoice_id).where(TenantInvoice.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def count_valid_since(self, tenant_id: UUID, since: datetime | None) -> int:
        """Count valid invoices created at or after since (all time when None)."""
        stmt = select(func.count(TenantInvoice.id)).where(
            TenantInvoice.tenant_id == tenant_id,
            TenantInvoice.status == InvoiceStatus.VALID.value,
        )
        if since is not None:
            stmt = stmt.where(TenantInvoice.created_at >= since)
        result = await self.db.execute(stmt)
        return result.scalar() or 0


class FolioGapRepository(BaseRepository[FolioGap, int]):
    """Records folios that were consumed without producing an invoice."""

    async def record(
        self, tenant_id: UUID, series: str, folio_number: int, reason: str, *, commit: bool = True
    ) -> FolioGap:
        gap = FolioGap(
            tenant_id=tenant_id,
            series=series,
            folio_number=folio_number,
            reason=reason[:500],
        )
        return await self.create(gap, commit=commit)

    async def list_for_tenant(self, tenant_id: UUID, series: str | None = None) -> list[FolioGap]:
        stmt = select(FolioGap).where(FolioGap.tenant_id == tenant_id)
        if series is not None:
            stmt = stmt.where(FolioGap.series == series)
        result = await self.db.execute(stmt.order_by(FolioGap.folio_number))
        return list(result.scalars().all())
