"""priceledger Pydantic models for type-safe data validation.

Prices are always Decimal (never float) so comparisons and minimums are exact.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from priceledger.errors import ValidationError

# Scale and precision of the stored price columns (Numeric(12, 2))
PRICE_QUANTUM = Decimal("0.01")
MAX_PRICE = Decimal("9999999999.99")


class EntityType(str, Enum):
    """Kind of priceable entity."""

    PRODUCT = "PRODUCT"
    VARIANT = "VARIANT"


class PriceChangeSource(str, Enum):
    """Origin of a price change."""

    SYSTEM_SYNC = "SYSTEM_SYNC"  # External catalog ingestion
    ADMIN = "ADMIN"  # Manual operator edit
    PROMOTION = "PROMOTION"  # Automated campaign
    IMPORT = "IMPORT"  # Bulk load


class EntityRef(BaseModel):
    """Reference to one priceable entity (product or variant)."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: UUID

    @classmethod
    def product(cls, product_id: UUID | str) -> EntityRef:
        return cls(entity_type=EntityType.PRODUCT, entity_id=product_id)

    @classmethod
    def variant(cls, variant_id: UUID | str) -> EntityRef:
        return cls(entity_type=EntityType.VARIANT, entity_id=variant_id)

    def __str__(self) -> str:
        return f"{self.entity_type.value.lower()}:{self.entity_id}"


class PriceableEntity(BaseModel):
    """Live state of a product or variant as seen by the ledger.

    `version` counts the ledger entries written for the entity and doubles as
    the compare-and-swap token for serialized writes.
    """

    entity_type: EntityType
    id: UUID
    name: str
    product_id: UUID | None = None  # Owning product (variants only)
    sku: str | None = None
    price: Decimal
    lowest_price_30_days: Decimal | None = None
    lowest_price_30_days_at: datetime | None = None
    version: int = 0
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, entity_id=self.id)

    @property
    def is_initialized(self) -> bool:
        """True once the creation entry has been written to the ledger."""
        return self.version > 0


class PriceHistoryEntry(BaseModel):
    """Immutable ledger record of one price confirmation/change."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    entity_type: EntityType
    entity_id: UUID
    sequence: int
    price: Decimal
    previous_price: Decimal | None = None
    source: PriceChangeSource
    changed_by: str | None = None
    reason: str | None = None
    effective_at: datetime

    @property
    def ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, entity_id=self.entity_id)


class PriceUpdateResult(BaseModel):
    """Outcome of a committed price update."""

    entity: PriceableEntity
    history_entry: PriceHistoryEntry
    previous_price: Decimal | None = None
    price_changed: bool
    lowest_price_30_days: Decimal


class LowestPriceRefresh(BaseModel):
    """Outcome of recomputing one entity's cached lowest price."""

    ref: EntityRef
    stored: Decimal | None
    computed: Decimal
    updated: bool


class HistoryPage(BaseModel):
    """One page of an entity's ledger, newest first."""

    ref: EntityRef
    entries: list[PriceHistoryEntry]
    limit: int
    offset: int
    total: int


class RecalcSummary(BaseModel):
    """Counts reported by a full recalculation pass."""

    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class BackfillSummary(BaseModel):
    """Counts reported by the legacy-entity backfill."""

    checked: int = 0
    initialized: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class PriceMismatch(BaseModel):
    """Drift between the cached lowest price and the ledger-derived value."""

    entity_type: EntityType
    entity_id: UUID
    name: str
    stored: Decimal | None
    computed: Decimal
    delta: Decimal


class LedgerStats(BaseModel):
    """Ledger-wide counters for the compliance overview."""

    products: int
    variants: int
    history_entries: int
    price_changes_in_window: int
    entities_changed_in_window: int


def parse_price(value: Any) -> Decimal:
    """Validate and convert an incoming price to an exact Decimal.

    Accepts Decimal, int, numeric strings and (for JSON payloads) floats,
    which are converted through their shortest repr rather than their binary value.

    Raises:
        ValidationError: If the value is missing, non-numeric, non-finite,
            negative, finer than one cent, or too large to store.
    """
    if value is None:
        raise ValidationError("Price is required")
    if isinstance(value, bool):
        raise ValidationError(f"Price must be numeric, got {value!r}")

    if isinstance(value, Decimal):
        price = value
    elif isinstance(value, (int, float, str)):
        try:
            price = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValidationError(f"Price must be numeric, got {value!r}") from e
    else:
        raise ValidationError(f"Price must be numeric, got {type(value).__name__}")

    if not price.is_finite():
        raise ValidationError(f"Price must be finite, got {value!r}")
    if price < 0:
        raise ValidationError(f"Price must be non-negative, got {price}")
    if price > MAX_PRICE:
        raise ValidationError(f"Price exceeds maximum of {MAX_PRICE}")
    if price != price.quantize(PRICE_QUANTUM):
        raise ValidationError(f"Price must have at most two decimal places, got {price}")

    # abs() folds a signed zero ("-0") into 0.00
    return abs(price.quantize(PRICE_QUANTUM))
