"""Price history store: persistence of entities and their append-only ledger.

The recorder, calculator and audit engine only depend on the `LedgerStore`
and `LedgerRepository` protocols. `SqlAlchemyLedgerStore` is the production
implementation; each `transaction()` is one atomic unit of work.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, Protocol
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from priceledger.db.models import PriceHistoryModel, ProductModel, VariantModel
from priceledger.errors import ConcurrencyConflict
from priceledger.models import (
    EntityRef,
    EntityType,
    LedgerStats,
    PriceableEntity,
    PriceChangeSource,
    PriceHistoryEntry,
)
from priceledger.utils.clock import ensure_utc

# Postgres SQLSTATEs for serialization failure and deadlock
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

_ENTITY_MODELS = {
    EntityType.PRODUCT: ProductModel,
    EntityType.VARIANT: VariantModel,
}


class LedgerRepository(Protocol):
    """Operations available inside one ledger transaction."""

    async def get_entity(self, ref: EntityRef, *, lock: bool = False) -> PriceableEntity | None: ...

    async def add_entity(self, entity: PriceableEntity) -> None: ...

    async def load_history(self, ref: EntityRef) -> list[PriceHistoryEntry]: ...

    async def append_entry(self, entry: PriceHistoryEntry) -> None: ...

    async def save_price(
        self,
        ref: EntityRef,
        *,
        expected_version: int,
        price: Decimal,
        lowest_price: Decimal,
        lowest_price_at: datetime,
        updated_at: datetime,
    ) -> None: ...

    async def save_lowest_price(
        self,
        ref: EntityRef,
        *,
        expected_version: int,
        lowest_price: Decimal,
        lowest_price_at: datetime,
        updated_at: datetime,
    ) -> None: ...

    async def page_history(
        self, ref: EntityRef, *, limit: int, offset: int
    ) -> list[PriceHistoryEntry]: ...

    async def count_history(self, ref: EntityRef) -> int: ...

    async def list_entities(
        self, entity_type: EntityType, *, after: UUID | None, limit: int
    ) -> list[PriceableEntity]: ...

    async def ledger_stats(self, since: datetime) -> LedgerStats: ...


class LedgerStore(Protocol):
    """Factory for atomic ledger transactions."""

    def transaction(self) -> AsyncContextManager[LedgerRepository]: ...


class SqlAlchemyLedgerRepository:
    """LedgerRepository backed by an AsyncSession."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session (transaction owned by the caller)
        """
        self.session = session

    async def get_entity(self, ref: EntityRef, *, lock: bool = False) -> PriceableEntity | None:
        """Load one entity, optionally taking a row lock (ignored by SQLite)."""
        model = _ENTITY_MODELS[ref.entity_type]
        stmt = select(model).where(model.id == ref.entity_id)
        if lock:
            stmt = stmt.with_for_update()

        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _row_to_entity(ref.entity_type, row) if row else None

    async def add_entity(self, entity: PriceableEntity) -> None:
        """Insert a new product or variant row (version 0, no ledger yet)."""
        if entity.entity_type is EntityType.PRODUCT:
            row = ProductModel(id=entity.id)
        else:
            row = VariantModel(id=entity.id, product_id=entity.product_id, sku=entity.sku)

        row.name = entity.name
        row.price = entity.price
        row.lowest_price_30_days = entity.lowest_price_30_days
        row.lowest_price_30_days_at = entity.lowest_price_30_days_at
        row.version = entity.version
        row.is_active = entity.is_active
        row.created_at = entity.created_at
        row.updated_at = entity.updated_at or entity.created_at

        self.session.add(row)
        await self.session.flush()

    async def load_history(self, ref: EntityRef) -> list[PriceHistoryEntry]:
        """Full ledger for one entity, oldest first (ties by sequence)."""
        stmt = (
            select(PriceHistoryModel)
            .where(
                and_(
                    PriceHistoryModel.entity_type == ref.entity_type.value,
                    PriceHistoryModel.entity_id == ref.entity_id,
                )
            )
            .order_by(PriceHistoryModel.effective_at.asc(), PriceHistoryModel.sequence.asc())
        )
        result = await self.session.execute(stmt)
        return [_row_to_entry(row) for row in result.scalars()]

    async def append_entry(self, entry: PriceHistoryEntry) -> None:
        """Insert a ledger entry.

        Raises:
            ConcurrencyConflict: If another writer already took this sequence
        """
        self.session.add(
            PriceHistoryModel(
                id=entry.id,
                entity_type=entry.entity_type.value,
                entity_id=entry.entity_id,
                sequence=entry.sequence,
                price=entry.price,
                previous_price=entry.previous_price,
                source=entry.source.value,
                changed_by=entry.changed_by,
                reason=entry.reason,
                effective_at=entry.effective_at,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConcurrencyConflict(
                f"Ledger slot {entry.sequence} for {entry.ref} already taken"
            ) from e

    async def save_price(
        self,
        ref: EntityRef,
        *,
        expected_version: int,
        price: Decimal,
        lowest_price: Decimal,
        lowest_price_at: datetime,
        updated_at: datetime,
    ) -> None:
        """Compare-and-swap the live price and cached aggregate, bumping version.

        Raises:
            ConcurrencyConflict: If the entity version moved since it was read
        """
        await self._compare_and_swap(
            ref,
            expected_version,
            price=price,
            lowest_price_30_days=lowest_price,
            lowest_price_30_days_at=lowest_price_at,
            version=expected_version + 1,
            updated_at=updated_at,
        )

    async def save_lowest_price(
        self,
        ref: EntityRef,
        *,
        expected_version: int,
        lowest_price: Decimal,
        lowest_price_at: datetime,
        updated_at: datetime,
    ) -> None:
        """Compare-and-swap only the cached aggregate (version unchanged).

        Raises:
            ConcurrencyConflict: If the entity version moved since it was read
        """
        await self._compare_and_swap(
            ref,
            expected_version,
            lowest_price_30_days=lowest_price,
            lowest_price_30_days_at=lowest_price_at,
            updated_at=updated_at,
        )

    async def page_history(
        self, ref: EntityRef, *, limit: int, offset: int
    ) -> list[PriceHistoryEntry]:
        """One page of the ledger, newest first."""
        stmt = (
            select(PriceHistoryModel)
            .where(
                and_(
                    PriceHistoryModel.entity_type == ref.entity_type.value,
                    PriceHistoryModel.entity_id == ref.entity_id,
                )
            )
            .order_by(PriceHistoryModel.effective_at.desc(), PriceHistoryModel.sequence.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [_row_to_entry(row) for row in result.scalars()]

    async def count_history(self, ref: EntityRef) -> int:
        stmt = select(func.count()).select_from(PriceHistoryModel).where(
            PriceHistoryModel.entity_type == ref.entity_type.value,
            PriceHistoryModel.entity_id == ref.entity_id,
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def list_entities(
        self, entity_type: EntityType, *, after: UUID | None, limit: int
    ) -> list[PriceableEntity]:
        """Keyset-paginated scan of all entities of one kind, ordered by id."""
        model = _ENTITY_MODELS[entity_type]
        stmt = select(model).order_by(model.id.asc()).limit(limit)
        if after is not None:
            stmt = stmt.where(model.id > after)

        result = await self.session.execute(stmt)
        return [_row_to_entity(entity_type, row) for row in result.scalars()]

    async def ledger_stats(self, since: datetime) -> LedgerStats:
        """Ledger-wide counters; `since` bounds the window-scoped ones."""
        products = (
            await self.session.execute(select(func.count()).select_from(ProductModel))
        ).scalar_one()
        variants = (
            await self.session.execute(select(func.count()).select_from(VariantModel))
        ).scalar_one()
        entries = (
            await self.session.execute(select(func.count()).select_from(PriceHistoryModel))
        ).scalar_one()
        changes_in_window = (
            await self.session.execute(
                select(func.count())
                .select_from(PriceHistoryModel)
                .where(PriceHistoryModel.effective_at > since)
            )
        ).scalar_one()

        changed_entities = (
            select(PriceHistoryModel.entity_type, PriceHistoryModel.entity_id)
            .where(PriceHistoryModel.effective_at > since)
            .distinct()
            .subquery()
        )
        entities_changed = (
            await self.session.execute(select(func.count()).select_from(changed_entities))
        ).scalar_one()

        return LedgerStats(
            products=products,
            variants=variants,
            history_entries=entries,
            price_changes_in_window=changes_in_window,
            entities_changed_in_window=entities_changed,
        )

    async def _compare_and_swap(self, ref: EntityRef, expected_version: int, **values) -> None:
        model = _ENTITY_MODELS[ref.entity_type]
        stmt = (
            update(model)
            .where(and_(model.id == ref.entity_id, model.version == expected_version))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"{ref} changed concurrently (expected version {expected_version})"
            )


class SqlAlchemyLedgerStore:
    """LedgerStore that opens one session/transaction per unit of work."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlAlchemyLedgerRepository]:
        """Yield a repository bound to a fresh transaction.

        Commits on clean exit and rolls back on error. Database-level write
        conflicts surface as ConcurrencyConflict so callers can retry.
        """
        session = self.session_factory()
        try:
            yield SqlAlchemyLedgerRepository(session)
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if _is_write_conflict(exc):
                raise ConcurrencyConflict(str(exc.orig)) from exc
            raise
        finally:
            await session.close()


def _is_write_conflict(exc: Exception) -> bool:
    if isinstance(exc, IntegrityError):
        # Two writers raced for the same ledger slot at commit time
        return "uq_price_history_sequence" in str(exc.orig) or "price_history.entity_type" in str(
            exc.orig
        )
    if isinstance(exc, OperationalError) and "database is locked" in str(exc.orig):
        return True
    if isinstance(exc, DBAPIError):
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        return sqlstate in _RETRYABLE_SQLSTATES
    return False


def _row_to_entity(entity_type: EntityType, row: ProductModel | VariantModel) -> PriceableEntity:
    return PriceableEntity(
        entity_type=entity_type,
        id=row.id,
        name=row.name,
        product_id=getattr(row, "product_id", None),
        sku=getattr(row, "sku", None),
        price=row.price,
        lowest_price_30_days=row.lowest_price_30_days,
        lowest_price_30_days_at=(
            ensure_utc(row.lowest_price_30_days_at) if row.lowest_price_30_days_at else None
        ),
        version=row.version,
        is_active=row.is_active,
        created_at=ensure_utc(row.created_at) if row.created_at else None,
        updated_at=ensure_utc(row.updated_at) if row.updated_at else None,
    )


def _row_to_entry(row: PriceHistoryModel) -> PriceHistoryEntry:
    return PriceHistoryEntry(
        id=row.id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        sequence=row.sequence,
        price=row.price,
        previous_price=row.previous_price,
        source=PriceChangeSource(row.source),
        changed_by=row.changed_by,
        reason=row.reason,
        effective_at=ensure_utc(row.effective_at),
    )
