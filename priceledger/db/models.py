"""SQLAlchemy async database models for priceledger.

Products and variants carry the live price plus the cached rolling lowest
price. `price_history` is the append-only ledger both are derived from.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from priceledger.errors import LedgerError


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PriceableMixin:
    """Columns shared by every priceable entity (products and variants)."""

    name: Mapped[str] = mapped_column(Text, nullable=False)

    # Live price always equals the price of the newest ledger entry
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Cached rolling-window aggregate, reproducible from price_history
    lowest_price_30_days: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    lowest_price_30_days_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Number of ledger entries written; compare-and-swap token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ProductModel(PriceableMixin, Base):
    """Standalone product with its own price ledger."""

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_product_price_non_negative"),
        CheckConstraint("version >= 0", name="check_product_version"),
    )


class VariantModel(PriceableMixin, Base):
    """Product variant; owned by its product but priced independently."""

    __tablename__ = "product_variants"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    product_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sku: Mapped[str | None] = mapped_column(Text, index=True)

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_variant_price_non_negative"),
        CheckConstraint("version >= 0", name="check_variant_version"),
    )


class PriceHistoryModel(Base):
    """Append-only price ledger.

    Entries are ordered per entity by (effective_at, sequence); `sequence` is
    unique per entity so two writers can never commit the same ledger slot.
    """

    __tablename__ = "price_history"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Polymorphic entity reference (no FK: history outlives the entity row)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    previous_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    # Provenance
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(Text)

    effective_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_price_history_sequence"),
        CheckConstraint("price >= 0", name="check_history_price_non_negative"),
        CheckConstraint("sequence >= 1", name="check_history_sequence"),
        CheckConstraint(
            "entity_type IN ('PRODUCT', 'VARIANT')", name="check_history_entity_type"
        ),
        CheckConstraint(
            "source IN ('SYSTEM_SYNC', 'ADMIN', 'PROMOTION', 'IMPORT')",
            name="check_history_source",
        ),
        # Per-entity ledger scans (calculator input, paginated history)
        Index("idx_price_history_entity", "entity_type", "entity_id", "effective_at", "sequence"),
        # Window statistics
        Index("idx_price_history_effective", "effective_at"),
    )


@event.listens_for(PriceHistoryModel, "before_update")
def _reject_history_update(mapper, connection, target) -> None:
    raise LedgerError(f"price_history entry {target.id} is immutable")


@event.listens_for(PriceHistoryModel, "before_delete")
def _reject_history_delete(mapper, connection, target) -> None:
    raise LedgerError(f"price_history entry {target.id} cannot be deleted")
