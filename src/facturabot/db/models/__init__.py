"""Database models for facturabot."""

from .base import Base, PortableUUID, TimestampMixin, as_utc
from .folio import FolioGap, TenantFolio
from .invoice import InvoiceStatus, TenantInvoice
from .subscription import (
    BILLABLE_STATUSES,
    SubscriptionPlan,
    SubscriptionStatus,
    TenantSubscription,
)
from .tenant import Tenant

__all__ = [
    "Base",
    "PortableUUID",
    "TimestampMixin",
    "as_utc",
    "Tenant",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "TenantSubscription",
    "BILLABLE_STATUSES",
    "TenantFolio",
    "FolioGap",
    "TenantInvoice",
    "InvoiceStatus",
]
