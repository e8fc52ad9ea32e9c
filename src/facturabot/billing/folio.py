"""Per-tenant folio (invoice number) allocation.

Folio numbers are handed out from a counter row per (tenant, series). The
database is the only coordination point: the preferred strategy advances the
counter with a single upsert, so concurrent callers in any number of
processes can never observe the same value.

Usage:
    async with session_factory() as session:
        folio = await FolioAllocator(session).get_next_folio(tenant_id, "A")
"""

from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from facturabot.config.settings import get_settings
from facturabot.core.exceptions import FolioAllocationError
from facturabot.core.logging import get_logger
from facturabot.db.models.folio import TenantFolio
from facturabot.observability.metrics import record_folio_allocated

logger = get_logger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class FolioStrategy(str, Enum):
    """How the counter row is advanced."""

    UPSERT = "upsert"  # single INSERT ... ON CONFLICT DO UPDATE ... RETURNING
    TRANSACTIONAL = "transactional"  # SELECT ... FOR UPDATE, then UPDATE


class FolioAllocator:
    """Allocates strictly increasing folio numbers per tenant and series.

    Every allocation commits its own transaction, so an advanced counter is
    durable even if the invoice that needed it is never issued. Give the
    allocator a session that carries no other pending work.

    Args:
        db: Async session used for the counter transaction
        strategy: Counter advance strategy
        seed: First folio handed out for a new series
    """

    def __init__(
        self,
        db: AsyncSession,
        strategy: FolioStrategy = FolioStrategy.UPSERT,
        seed: int | None = None,
    ):
        self.db = db
        self.strategy = strategy
        self.seed = seed if seed is not None else get_settings().folio_seed

    async def get_next_folio(self, tenant_id: UUID, series: str = "A") -> int:
        """Reserve and return the next folio for the series.

        Raises:
            FolioAllocationError: If the counter could not be advanced
        """
        block = await self.reserve_block(tenant_id, series, 1)
        return block.start

    async def reserve_block(self, tenant_id: UUID, series: str, count: int) -> range:
        """Reserve count consecutive folios in one statement.

        Raises:
            FolioAllocationError: If the counter could not be advanced
        """
        if count < 1:
            raise ValueError("count must be at least 1")

        try:
            if self.strategy == FolioStrategy.UPSERT:
                start = await self._advance_upsert(tenant_id, series, count)
            else:
                start = await self._advance_transactional(tenant_id, series, count)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "folio_allocation_failed",
                tenant_id=str(tenant_id),
                series=series,
                strategy=self.strategy.value,
                error=str(e),
            )
            raise FolioAllocationError(
                f"Could not advance folio counter: {e}", tenant_id, series
            ) from e

        record_folio_allocated(self.strategy.value, count)
        logger.info(
            "folio_allocated",
            tenant_id=str(tenant_id),
            series=series,
            folio=start,
            count=count,
        )
        return range(start, start + count)

    async def peek_next_folio(self, tenant_id: UUID, series: str = "A") -> int:
        """The folio the next allocation would return. Reserves nothing."""
        stmt = select(TenantFolio.current_number).where(
            TenantFolio.tenant_id == tenant_id,
            TenantFolio.series == series,
        )
        current = (await self.db.execute(stmt)).scalar_one_or_none()
        return self.seed if current is None else current

    async def _advance_upsert(self, tenant_id: UUID, series: str, count: int) -> int:
        dialect = self.db.get_bind().dialect.name
        insert = _UPSERT_DIALECTS.get(dialect)
        if insert is None:
            raise FolioAllocationError(
                f"Upsert strategy is not supported on {dialect}", tenant_id, series
            )

        stmt = (
            insert(TenantFolio)
            .values(tenant_id=tenant_id, series=series, current_number=self.seed + count)
            .on_conflict_do_update(
                index_elements=[TenantFolio.tenant_id, TenantFolio.series],
                set_={
                    "current_number": TenantFolio.current_number + count,
                    "updated_at": func.now(),
                },
            )
            .returning(TenantFolio.current_number)
        )
        next_number = (await self.db.execute(stmt)).scalar_one()
        await self.db.commit()
        return next_number - count

    async def _advance_transactional(self, tenant_id: UUID, series: str, count: int) -> int:
        # Two passes: a concurrent first insert for the same series loses on
        # the unique constraint and then finds the row on the second pass.
        for attempt in range(2):
            stmt = (
                select(TenantFolio)
                .where(TenantFolio.tenant_id == tenant_id, TenantFolio.series == series)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            folio = (await self.db.execute(stmt)).scalar_one_or_none()

            if folio is not None:
                start = folio.current_number
                folio.current_number = start + count
                await self.db.commit()
                return start

            self.db.add(
                TenantFolio(tenant_id=tenant_id, series=series, current_number=self.seed + count)
            )
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                if attempt == 1:
                    raise
                continue
            return self.seed

        raise AssertionError("unreachable")


class BatchingFolioAllocator:
    """Serves folios from blocks reserved in the database.

    Reduces database round trips by reserving block_size folios at a time.
    Only numbers already reserved in the database are ever served; folios
    left in a block when the process exits become gaps. The per-key asyncio
    lock guards the local cache only. A key's lock and cache are dropped once
    its block is used up and no caller is waiting on it.

    Args:
        session_factory: Opens a fresh session for each block reservation
        block_size: Folios reserved per round trip
        strategy: Counter advance strategy for the underlying allocator
        seed: First folio of a new series (defaults to settings.folio_seed)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        block_size: int | None = None,
        strategy: FolioStrategy = FolioStrategy.UPSERT,
        seed: int | None = None,
    ):
        self.session_factory = session_factory
        self.block_size = block_size or get_settings().folio_batch_size
        self.strategy = strategy
        self.seed = seed
        self._cache: dict[tuple[UUID, str], deque[int]] = {}
        self._locks: dict[tuple[UUID, str], asyncio.Lock] = {}
        self._waiting: dict[tuple[UUID, str], int] = {}

    async def get_next_folio(self, tenant_id: UUID, series: str = "A") -> int:
        key = (tenant_id, series)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                return await self._next_from_block(key)
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key] and not self._cache.get(key):
                del self._waiting[key]
                del self._locks[key]
                self._cache.pop(key, None)

    async def _next_from_block(self, key: tuple[UUID, str]) -> int:
        tenant_id, series = key
        cached = self._cache.get(key)
        if not cached:
            async with self.session_factory() as session:
                block = await FolioAllocator(
                    session, self.strategy, seed=self.seed
                ).reserve_block(tenant_id, series, self.block_size)
            cached = deque(block)
            self._cache[key] = cached
            logger.debug(
                "folio_block_reserved",
                tenant_id=str(tenant_id),
                series=series,
                first=block.start,
                last=block.stop - 1,
            )
        return cached.popleft()

    def cached_count(self, tenant_id: UUID, series: str = "A") -> int:
        """Folios reserved locally but not yet served."""
        return len(self._cache.get((tenant_id, series), ()))
