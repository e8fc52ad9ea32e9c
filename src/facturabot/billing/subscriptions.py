"""Subscription lifecycle: trials, plan changes, cancellation and expiry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from facturabot.billing.quota import latest_subscription
from facturabot.config.settings import get_settings
from facturabot.core.exceptions import (
    PlanNotFoundError,
    SubscriptionNotFoundError,
    TenantNotFoundError,
)
from facturabot.core.logging import get_logger
from facturabot.db.models import (
    SubscriptionPlan,
    SubscriptionStatus,
    Tenant,
    TenantSubscription,
)

logger = get_logger(__name__)

# Every status except cancelled
_CURRENT_STATUSES = tuple(
    status.value for status in SubscriptionStatus if status != SubscriptionStatus.CANCELLED
)


@dataclass
class ExpirationResult:
    """Counts from one expiry sweep."""

    expired_trials: int = 0
    suspended: int = 0

    @property
    def total(self) -> int:
        return self.expired_trials + self.suspended


class SubscriptionService:
    """Manages tenant subscriptions.

    Args:
        db: Async session; each mutating call commits
        trial_days: Trial length for new subscriptions
    """

    def __init__(self, db: AsyncSession, trial_days: int | None = None):
        self.db = db
        self.trial_days = trial_days if trial_days is not None else get_settings().trial_days

    async def _get_plan(self, plan_id: int) -> SubscriptionPlan:
        plan = await self.db.get(SubscriptionPlan, plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundError(plan_id)
        return plan

    async def create_subscription(
        self, tenant_id: UUID, plan_id: int, now: datetime | None = None
    ) -> TenantSubscription:
        """Start a trial subscription on the plan.

        Raises:
            TenantNotFoundError: If the tenant does not exist
            PlanNotFoundError: If the plan does not exist or is inactive
        """
        now = now or datetime.now(UTC)
        if await self.db.get(Tenant, tenant_id) is None:
            raise TenantNotFoundError(tenant_id)
        plan = await self._get_plan(plan_id)

        trial_ends_at = now + timedelta(days=self.trial_days)
        subscription = TenantSubscription(
            tenant_id=tenant_id,
            plan_id=plan.id,
            status=SubscriptionStatus.TRIAL.value,
            invoices_used=0,
            trial_ends_at=trial_ends_at,
            current_period_starts_at=now,
            current_period_ends_at=trial_ends_at,
        )
        self.db.add(subscription)
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "subscription_created",
            tenant_id=str(tenant_id),
            plan_id=plan.id,
            trial_ends_at=trial_ends_at.isoformat(),
        )
        return subscription

    async def get_current_subscription(self, tenant_id: UUID) -> TenantSubscription | None:
        """Most recently created subscription that is not cancelled."""
        return await latest_subscription(self.db, tenant_id, _CURRENT_STATUSES)

    async def _require_current(self, tenant_id: UUID) -> TenantSubscription:
        subscription = await self.get_current_subscription(tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(tenant_id)
        return subscription

    async def activate_subscription(
        self, tenant_id: UUID, now: datetime | None = None, period_days: int = 30
    ) -> TenantSubscription:
        """Start a paid billing period and reset usage.

        Called once payment for the period has been confirmed.

        Raises:
            SubscriptionNotFoundError: If the tenant has no current subscription
        """
        now = now or datetime.now(UTC)
        subscription = await self._require_current(tenant_id)
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.current_period_starts_at = now
        subscription.current_period_ends_at = now + timedelta(days=period_days)
        subscription.invoices_used = 0
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "subscription_activated",
            tenant_id=str(tenant_id),
            subscription_id=subscription.id,
            period_ends_at=subscription.current_period_ends_at.isoformat(),
        )
        return subscription

    async def change_plan(self, tenant_id: UUID, plan_id: int) -> TenantSubscription:
        """Move the current subscription to another plan. Usage is kept.

        Raises:
            SubscriptionNotFoundError: If the tenant has no current subscription
            PlanNotFoundError: If the plan does not exist or is inactive
        """
        plan = await self._get_plan(plan_id)
        subscription = await self._require_current(tenant_id)
        previous_plan_id = subscription.plan_id

        subscription.plan_id = plan.id
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "subscription_plan_changed",
            tenant_id=str(tenant_id),
            subscription_id=subscription.id,
            from_plan_id=previous_plan_id,
            to_plan_id=plan.id,
        )
        return subscription

    async def cancel_subscription(
        self, tenant_id: UUID, now: datetime | None = None
    ) -> TenantSubscription:
        """Cancel the current subscription.

        Raises:
            SubscriptionNotFoundError: If the tenant has no current subscription
        """
        now = now or datetime.now(UTC)
        subscription = await self._require_current(tenant_id)
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = now
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info("subscription_cancelled", tenant_id=str(tenant_id), subscription_id=subscription.id)
        return subscription

    async def process_expired_subscriptions(self, now: datetime | None = None) -> ExpirationResult:
        """Expire ended trials and suspend active subscriptions past their period."""
        now = now or datetime.now(UTC)

        expired = await self.db.execute(
            update(TenantSubscription)
            .where(
                TenantSubscription.status == SubscriptionStatus.TRIAL.value,
                TenantSubscription.trial_ends_at.is_not(None),
                TenantSubscription.trial_ends_at < now,
            )
            .values(status=SubscriptionStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        suspended = await self.db.execute(
            update(TenantSubscription)
            .where(
                TenantSubscription.status == SubscriptionStatus.ACTIVE.value,
                TenantSubscription.current_period_ends_at.is_not(None),
                TenantSubscription.current_period_ends_at < now,
            )
            .values(status=SubscriptionStatus.SUSPENDED.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = ExpirationResult(expired_trials=expired.rowcount, suspended=suspended.rowcount)
        logger.info(
            "subscriptions_expiry_processed",
            expired_trials=result.expired_trials,
            suspended=result.suspended,
        )
        return result

    async def find_expiring_subscriptions(
        self, within_days: int = 3, now: datetime | None = None
    ) -> list[TenantSubscription]:
        """Trials and active periods ending within the window, soonest first."""
        now = now or datetime.now(UTC)
        horizon = now + timedelta(days=within_days)

        trial_ending = (
            (TenantSubscription.status == SubscriptionStatus.TRIAL.value)
            & (TenantSubscription.trial_ends_at >= now)
            & (TenantSubscription.trial_ends_at <= horizon)
        )
        period_ending = (
            (TenantSubscription.status == SubscriptionStatus.ACTIVE.value)
            & (TenantSubscription.current_period_ends_at >= now)
            & (TenantSubscription.current_period_ends_at <= horizon)
        )
        stmt = (
            select(TenantSubscription)
            .where(or_(trial_ending, period_ending))
            .order_by(TenantSubscription.current_period_ends_at, TenantSubscription.id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.unique().scalars().all())
