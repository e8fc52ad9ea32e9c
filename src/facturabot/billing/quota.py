"""Subscription quota checks gating invoice creation.

The guard is advisory on its own: a decision can be stale by the time the
caller acts on it. SafeInvoiceService re-evaluates it while holding the
tenant's invoice lock, which is what makes the quota hold under concurrency.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from facturabot.core.exceptions import QuotaDeniedError
from facturabot.core.logging import get_logger
from facturabot.db.models import SubscriptionStatus, Tenant, TenantSubscription, as_utc
from facturabot.observability.metrics import record_quota_denial

logger = get_logger(__name__)


class QuotaDenial(str, Enum):
    """Why an invoice was not allowed."""

    TENANT_NOT_FOUND = "tenant_not_found"
    TENANT_INACTIVE = "tenant_inactive"
    NO_SUBSCRIPTION = "no_subscription"
    TRIAL_EXPIRED = "trial_expired"
    LIMIT_REACHED = "limit_reached"
    SUSPENDED = "suspended"
    PAYMENT_PENDING = "payment_pending"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INTERNAL_ERROR = "internal_error"


_DENIAL_MESSAGES: dict[QuotaDenial, str] = {
    QuotaDenial.TENANT_NOT_FOUND: "The account does not exist.",
    QuotaDenial.TENANT_INACTIVE: "The account is deactivated.",
    QuotaDenial.NO_SUBSCRIPTION: "There is no subscription for this account.",
    QuotaDenial.TRIAL_EXPIRED: "The trial period has ended.",
    QuotaDenial.SUSPENDED: "The subscription is suspended.",
    QuotaDenial.PAYMENT_PENDING: "The subscription has a pending payment.",
    QuotaDenial.CANCELLED: "The subscription was cancelled.",
    QuotaDenial.EXPIRED: "The subscription has expired.",
    QuotaDenial.INTERNAL_ERROR: "The subscription could not be verified. Please try again.",
}

_STATUS_DENIALS: dict[str, QuotaDenial] = {
    SubscriptionStatus.PAYMENT_PENDING.value: QuotaDenial.PAYMENT_PENDING,
    SubscriptionStatus.SUSPENDED.value: QuotaDenial.SUSPENDED,
    SubscriptionStatus.CANCELLED.value: QuotaDenial.CANCELLED,
    SubscriptionStatus.EXPIRED.value: QuotaDenial.EXPIRED,
}


@dataclass
class QuotaDecision:
    """Outcome of a quota check."""

    can_generate: bool
    reason: str | None = None
    denial: QuotaDenial | None = None
    subscription_status: str | None = None
    invoices_used: int | None = None
    invoice_limit: int | None = None

    @classmethod
    def deny(
        cls,
        denial: QuotaDenial,
        subscription: TenantSubscription | None = None,
        reason: str | None = None,
    ) -> QuotaDecision:
        return cls(
            can_generate=False,
            reason=reason or _DENIAL_MESSAGES[denial],
            denial=denial,
            subscription_status=subscription.status if subscription else None,
            invoices_used=subscription.invoices_used if subscription else None,
            invoice_limit=subscription.plan.invoice_limit if subscription else None,
        )

    @property
    def remaining(self) -> int | None:
        """Invoices left in the period, or None when unbounded or unknown."""
        if self.invoice_limit is None or self.invoice_limit <= 0 or self.invoices_used is None:
            return None
        return max(0, self.invoice_limit - self.invoices_used)


async def latest_subscription(
    db: AsyncSession,
    tenant_id: UUID,
    statuses: tuple[str, ...] | None = None,
) -> TenantSubscription | None:
    """Most recently created subscription of the tenant, optionally filtered by status."""
    stmt = select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
    if statuses is not None:
        stmt = stmt.where(TenantSubscription.status.in_(statuses))
    stmt = (
        stmt.order_by(TenantSubscription.created_at.desc(), TenantSubscription.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.unique().scalar_one_or_none()


class QuotaGuard:
    """Decides whether a tenant may issue another invoice.

    Fails closed: anything other than a usable subscription with room left
    is a denial with a specific reason.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def can_generate_invoice(
        self, tenant_id: UUID, now: datetime | None = None
    ) -> QuotaDecision:
        now = now or datetime.now(UTC)
        try:
            decision = await self._evaluate(tenant_id, now)
        except SQLAlchemyError as e:
            logger.error("quota_check_failed", tenant_id=str(tenant_id), error=str(e))
            decision = QuotaDecision.deny(QuotaDenial.INTERNAL_ERROR)

        if not decision.can_generate and decision.denial is not None:
            record_quota_denial(decision.denial.value)
            logger.info(
                "quota_denied",
                tenant_id=str(tenant_id),
                denial=decision.denial.value,
                invoices_used=decision.invoices_used,
                invoice_limit=decision.invoice_limit,
            )
        return decision

    async def ensure_can_generate(self, tenant_id: UUID, now: datetime | None = None) -> QuotaDecision:
        """Like can_generate_invoice but raises on denial.

        Raises:
            QuotaDeniedError: With the denial decision attached
        """
        decision = await self.can_generate_invoice(tenant_id, now)
        if not decision.can_generate:
            raise QuotaDeniedError(tenant_id, decision)
        return decision

    async def _evaluate(self, tenant_id: UUID, now: datetime) -> QuotaDecision:
        tenant = await self.db.get(Tenant, tenant_id, populate_existing=True)
        if tenant is None:
            return QuotaDecision.deny(QuotaDenial.TENANT_NOT_FOUND)
        if not tenant.is_active:
            return QuotaDecision.deny(QuotaDenial.TENANT_INACTIVE)

        subscription = await latest_subscription(self.db, tenant_id)
        if subscription is None:
            return QuotaDecision.deny(QuotaDenial.NO_SUBSCRIPTION)

        status_denial = _STATUS_DENIALS.get(subscription.status)
        if status_denial is not None:
            return QuotaDecision.deny(status_denial, subscription)

        if subscription.status == SubscriptionStatus.TRIAL:
            trial_ends_at = as_utc(subscription.trial_ends_at)
            if trial_ends_at is not None and trial_ends_at < now:
                return QuotaDecision.deny(QuotaDenial.TRIAL_EXPIRED, subscription)
        else:
            period_ends_at = as_utc(subscription.current_period_ends_at)
            if period_ends_at is not None and period_ends_at < now:
                return QuotaDecision.deny(QuotaDenial.EXPIRED, subscription)

        plan = subscription.plan
        if not plan.is_unlimited and subscription.invoices_used >= plan.invoice_limit:
            return QuotaDecision.deny(
                QuotaDenial.LIMIT_REACHED,
                subscription,
                reason=f"The plan limit of {plan.invoice_limit} invoices has been reached.",
            )

        return QuotaDecision(
            can_generate=True,
            subscription_status=subscription.status,
            invoices_used=subscription.invoices_used,
            invoice_limit=plan.invoice_limit,
        )
