"""Tenant model for multi-tenancy support."""

from uuid import UUID

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from uuid_utils.compat import uuid7

from .base import Base, PortableUUID, TimestampMixin


class Tenant(Base, TimestampMixin):
    """A business issuing invoices through the assistant.

    Every folio counter, subscription and invoice is scoped by tenant_id.
    """

    __tablename__ = "tenants"

    tenant_id: Mapped[UUID] = mapped_column(PortableUUID(), primary_key=True, default=uuid7)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    rfc: Mapped[str] = mapped_column(String(13), nullable=False, unique=True)

    # Soft deactivation; inactive tenants cannot invoice
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.tenant_id}, rfc={self.rfc})>"
