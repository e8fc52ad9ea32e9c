"""Subscription plan and tenant subscription models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, PortableUUID, TimestampMixin


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a tenant subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAYMENT_PENDING = "payment_pending"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Statuses an invoice can be counted against
BILLABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value)


class SubscriptionPlan(Base, TimestampMixin):
    """A purchasable plan with an optional monthly invoice quota."""

    __tablename__ = "subscription_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MXN")
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")

    # NULL or <= 0 means unbounded
    invoice_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    @property
    def is_unlimited(self) -> bool:
        return self.invoice_limit is None or self.invoice_limit <= 0

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name}, limit={self.invoice_limit})>"


class TenantSubscription(Base, TimestampMixin):
    """A tenant's subscription to a plan, with its usage counter."""

    __tablename__ = "tenant_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[UUID] = mapped_column(
        PortableUUID(), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscription_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=SubscriptionStatus.TRIAL.value
    )
    invoices_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_starts_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    plan: Mapped[SubscriptionPlan] = relationship(
        SubscriptionPlan, lazy="joined", innerjoin=True
    )

    __table_args__ = (
        Index("idx_subscription_tenant", "tenant_id"),
        Index("idx_subscription_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantSubscription(id={self.id}, tenant={self.tenant_id}, "
            f"status={self.status}, used={self.invoices_used})>"
        )
