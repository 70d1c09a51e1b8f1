"""Request/response models for the priceledger web API.

JSON bodies use camelCase field names; prices are serialized as decimal
strings so no precision is lost on the wire.

Usage:
    from priceledger.web.models import PriceUpdateRequest

    @router.post("/price-history/product/{product_id}/update")
    async def update(product_id: UUID, body: PriceUpdateRequest):
        ...
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from priceledger.models import (
    EntityType,
    HistoryPage,
    PriceableEntity,
    PriceChangeSource,
    PriceHistoryEntry,
    PriceMismatch,
    PriceUpdateResult,
)

DEFAULT_UPDATE_REASON = "Manual price update via admin API"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Requests
# ============================================================================


class PriceUpdateRequest(CamelModel):
    """Body of POST /price-history/{product|variant}/{id}/update.

    `newPrice` stays loosely typed here; the recorder validates it so bad
    input maps to ValidationError (400) rather than a schema error.
    """

    new_price: Any = None
    reason: str | None = None


class LoginRequest(BaseModel):
    username: str
    password: str


# ============================================================================
# Responses
# ============================================================================


class EntityOut(CamelModel):
    id: UUID
    entity_type: EntityType
    name: str
    product_id: UUID | None = None
    sku: str | None = None
    price: Decimal
    lowest_price_30_days: Decimal | None = None
    lowest_price_30_days_at: datetime | None = None
    version: int
    is_active: bool
    updated_at: datetime | None = None

    @classmethod
    def from_entity(cls, entity: PriceableEntity) -> EntityOut:
        return cls(**entity.model_dump(exclude={"created_at"}))


class HistoryEntryOut(CamelModel):
    id: UUID
    entity_type: EntityType
    entity_id: UUID
    sequence: int
    price: Decimal
    previous_price: Decimal | None = None
    source: PriceChangeSource
    changed_by: str | None = None
    reason: str | None = None
    effective_at: datetime

    @classmethod
    def from_entry(cls, entry: PriceHistoryEntry) -> HistoryEntryOut:
        return cls(**entry.model_dump())


class PaginationOut(CamelModel):
    limit: int
    offset: int
    total: int


class HistoryResponse(CamelModel):
    entity_type: EntityType
    entity_id: UUID
    history: list[HistoryEntryOut]
    pagination: PaginationOut

    @classmethod
    def from_page(cls, page: HistoryPage) -> HistoryResponse:
        return cls(
            entity_type=page.ref.entity_type,
            entity_id=page.ref.entity_id,
            history=[HistoryEntryOut.from_entry(e) for e in page.entries],
            pagination=PaginationOut(limit=page.limit, offset=page.offset, total=page.total),
        )


class PriceUpdateResponse(CamelModel):
    message: str
    entity: EntityOut
    history_entry: HistoryEntryOut
    previous_price: Decimal | None = None
    price_changed: bool
    lowest_price_30_days: Decimal

    @classmethod
    def from_result(cls, result: PriceUpdateResult) -> PriceUpdateResponse:
        kind = result.entity.entity_type.value.lower()
        return cls(
            message=f"{kind.title()} price updated successfully",
            entity=EntityOut.from_entity(result.entity),
            history_entry=HistoryEntryOut.from_entry(result.history_entry),
            previous_price=result.previous_price,
            price_changed=result.price_changed,
            lowest_price_30_days=result.lowest_price_30_days,
        )


class RecalcResponse(CamelModel):
    message: str
    checked: int
    updated: int
    unchanged: int
    failed: int
    errors: list[str] = Field(default_factory=list)


class MismatchOut(CamelModel):
    entity_type: EntityType
    entity_id: UUID
    name: str
    stored: Decimal | None
    computed: Decimal
    delta: Decimal

    @classmethod
    def from_mismatch(cls, mismatch: PriceMismatch) -> MismatchOut:
        return cls(**mismatch.model_dump())


class MismatchResponse(CamelModel):
    count: int
    mismatches: list[MismatchOut]


class LedgerStatsOut(CamelModel):
    products: int
    variants: int
    history_entries: int
    price_changes_in_window: int
    entities_changed_in_window: int
    window_days: int
