"""Issued invoice model."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableUUID


class InvoiceStatus(str, Enum):
    """Status of an invoice as recorded locally."""

    VALID = "valid"
    CANCELLED = "cancelled"
    DRAFT = "draft"


class TenantInvoice(Base):
    """An invoice issued through the external invoicing API.

    Rows are never deleted; cancellation is a status change.
    """

    __tablename__ = "tenant_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[UUID] = mapped_column(
        PortableUUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    external_invoice_id: Mapped[str] = mapped_column(String(100), nullable=False)
    series: Mapped[str] = mapped_column(String(5), nullable=False)
    folio_number: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.VALID.value
    )
    invoice_type: Mapped[str] = mapped_column(String(10), nullable=False, default="I")
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "series", "folio_number", name="uq_tenant_invoice_folio"),
        Index("idx_invoice_tenant_created", "tenant_id", "created_at"),
        Index("idx_invoice_external", "external_invoice_id"),
    )

    def __repr__(self) -> str:
        return f"<TenantInvoice({self.series}-{self.folio_number}, ext={self.external_invoice_id})>"
