"""Invoice usage counting against the tenant's subscription."""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from facturabot.core.exceptions import UsageCounterError
from facturabot.core.logging import get_logger
from facturabot.db.models import BILLABLE_STATUSES, TenantSubscription

logger = get_logger(__name__)


class UsageCounter:
    """Increments invoices_used on the tenant's billable subscription.

    The increment runs inside the caller's transaction and is not committed
    here, so it lands atomically with the invoice row it accounts for.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def increment_invoice_count(self, tenant_id: UUID) -> TenantSubscription:
        """Add one invoice to the most recent active or trial subscription.

        Raises:
            UsageCounterError: If the tenant has no active or trial subscription
        """
        latest_id = (
            select(TenantSubscription.id)
            .where(
                TenantSubscription.tenant_id == tenant_id,
                TenantSubscription.status.in_(BILLABLE_STATUSES),
            )
            .order_by(TenantSubscription.created_at.desc(), TenantSubscription.id.desc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = (
            update(TenantSubscription)
            .where(TenantSubscription.id == latest_id)
            .values(invoices_used=TenantSubscription.invoices_used + 1)
            .returning(TenantSubscription.id, TenantSubscription.invoices_used)
            .execution_options(synchronize_session=False)
        )
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            logger.error("usage_increment_without_subscription", tenant_id=str(tenant_id))
            raise UsageCounterError(tenant_id)

        subscription_id, invoices_used = row
        logger.info(
            "invoice_usage_incremented",
            tenant_id=str(tenant_id),
            subscription_id=subscription_id,
            invoices_used=invoices_used,
        )
        subscription = await self.db.get(TenantSubscription, subscription_id, populate_existing=True)
        return subscription
