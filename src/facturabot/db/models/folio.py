"""Folio counter and folio gap models."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, PortableUUID, TimestampMixin


class TenantFolio(Base, TimestampMixin):
    """Per-tenant, per-series invoice number counter.

    current_number is the next number to hand out. It only ever grows.
    """

    __tablename__ = "tenant_folios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[UUID] = mapped_column(
        PortableUUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    series: Mapped[str] = mapped_column(String(5), nullable=False, default="A")
    current_number: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "series", name="uq_tenant_folio_series"),)

    def __repr__(self) -> str:
        return f"<TenantFolio(tenant={self.tenant_id}, series={self.series}, next={self.current_number})>"


class FolioGap(Base):
    """A folio that was allocated but never became an invoice."""

    __tablename__ = "tenant_folio_gaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[UUID] = mapped_column(
        PortableUUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    series: Mapped[str] = mapped_column(String(5), nullable=False)
    folio_number: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "series", "folio_number", name="uq_folio_gap"),
    )

    def __repr__(self) -> str:
        return f"<FolioGap({self.series}-{self.folio_number}, tenant={self.tenant_id})>"
