"""Integration tests for the price change recorder against SQLite."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from priceledger.errors import NotFoundError, ValidationError
from priceledger.ledger.queries import get_history
from priceledger.models import EntityRef, EntityType, PriceChangeSource


async def load(store, ref):
    async with store.transaction() as repo:
        return await repo.get_entity(ref), await repo.load_history(ref)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_product_writes_creation_entry(self, recorder, store, t0):
        result = await recorder.register_product("Desk", "100.00", changed_by="importer")

        entity, history = await load(store, result.entity.ref)
        assert entity.price == Decimal("100.00")
        assert entity.lowest_price_30_days == Decimal("100.00")
        assert entity.lowest_price_30_days_at == t0
        assert entity.version == 1
        assert len(history) == 1

        first = history[0]
        assert first.sequence == 1
        assert first.previous_price is None
        assert first.source is PriceChangeSource.IMPORT
        assert first.changed_by == "importer"
        assert first.effective_at == t0
        assert result.price_changed is True

    @pytest.mark.asyncio
    async def test_register_variant_of_existing_product(self, recorder, store):
        product = await recorder.register_product("Shirt", "30")

        result = await recorder.register_variant(
            product.entity.id, "Shirt / XL", "32.50", sku="SH-XL"
        )

        entity, history = await load(store, EntityRef.variant(result.entity.id))
        assert entity.entity_type is EntityType.VARIANT
        assert entity.product_id == product.entity.id
        assert entity.sku == "SH-XL"
        assert entity.price == Decimal("32.50")
        assert [e.price for e in history] == [Decimal("32.50")]

    @pytest.mark.asyncio
    async def test_register_variant_for_unknown_product(self, recorder, store):
        with pytest.raises(NotFoundError):
            await recorder.register_variant(uuid4(), "Orphan", "10")

        async with store.transaction() as repo:
            assert await repo.list_entities(EntityType.VARIANT, after=None, limit=10) == []

    @pytest.mark.asyncio
    async def test_register_rejects_bad_price_and_blank_name(self, recorder):
        with pytest.raises(ValidationError):
            await recorder.register_product("Desk", "-3")
        with pytest.raises(ValidationError):
            await recorder.register_product("   ", "3")

    @pytest.mark.asyncio
    async def test_register_with_existing_id_is_rejected(self, recorder, store):
        product = await recorder.register_product("Desk", "100")
        variant = await recorder.register_variant(product.entity.id, "Desk / oak", "120")

        with pytest.raises(ValidationError, match="already exists"):
            await recorder.register_product("Other desk", "1", product_id=product.entity.id)
        with pytest.raises(ValidationError, match="already exists"):
            await recorder.register_variant(
                product.entity.id, "Desk / pine", "1", variant_id=variant.entity.id
            )

        entity, history = await load(store, product.entity.ref)
        assert entity.name == "Desk"
        assert len(history) == 1


class TestUpdatePrice:
    @pytest.mark.asyncio
    async def test_round_trip(self, recorder, store, clock, t0):
        created = await recorder.register_product("Lamp", "100")
        ref = created.entity.ref

        clock.advance(days=10)
        result = await recorder.update_price(
            ref, "80", PriceChangeSource.ADMIN, changed_by="alice", reason="Spring sale"
        )

        page = await get_history(store, ref)
        newest = page.entries[0]
        assert newest.price == Decimal("80.00")
        assert newest.previous_price == Decimal("100.00")
        assert newest.sequence == 2
        assert newest.changed_by == "alice"
        assert newest.reason == "Spring sale"
        assert newest.effective_at == t0 + timedelta(days=10)

        entity, _ = await load(store, ref)
        assert entity.price == Decimal("80.00")
        assert entity.lowest_price_30_days == Decimal("80.00")
        assert entity.version == 2

        assert result.previous_price == Decimal("100.00")
        assert result.price_changed is True
        assert result.lowest_price_30_days == Decimal("80.00")
        assert result.history_entry.id == newest.id

    @pytest.mark.asyncio
    async def test_price_increase_keeps_recent_lower_price(self, recorder, store, clock, t0):
        created = await recorder.register_product("Lamp", "100")
        ref = created.entity.ref

        clock.advance(days=5)
        await recorder.update_price(ref, "70", PriceChangeSource.PROMOTION)
        clock.advance(days=5)
        result = await recorder.update_price(ref, "120", PriceChangeSource.SYSTEM_SYNC)

        entity, _ = await load(store, ref)
        assert entity.price == Decimal("120.00")
        assert result.lowest_price_30_days == Decimal("70.00")
        assert entity.lowest_price_30_days == Decimal("70.00")
        assert entity.lowest_price_30_days_at == t0 + timedelta(days=5)

    @pytest.mark.asyncio
    async def test_old_low_price_drops_out_after_window(self, recorder, store, clock):
        created = await recorder.register_product("Lamp", "50")
        ref = created.entity.ref

        clock.advance(days=1)
        await recorder.update_price(ref, "100", PriceChangeSource.ADMIN)
        clock.advance(days=40)
        result = await recorder.update_price(ref, "110", PriceChangeSource.ADMIN)

        # Window (t0+11d, t0+41d]: carry-in 100, in-window 110
        assert result.lowest_price_30_days == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_reconfirming_same_price_still_writes_entry(self, recorder, store, clock, t0):
        created = await recorder.register_product("Lamp", "100")
        ref = created.entity.ref

        clock.advance(hours=1)
        result = await recorder.update_price(ref, "100.00", PriceChangeSource.SYSTEM_SYNC)

        _, history = await load(store, ref)
        assert len(history) == 2
        assert history[-1].effective_at == t0 + timedelta(hours=1)
        assert result.price_changed is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_price", [-1, "-0.01", "abc", None, float("nan"), "1.001"])
    async def test_invalid_price_is_a_no_op(self, recorder, store, bad_price):
        created = await recorder.register_product("Lamp", "100")
        ref = created.entity.ref

        with pytest.raises(ValidationError):
            await recorder.update_price(ref, bad_price, PriceChangeSource.ADMIN)

        entity, history = await load(store, ref)
        assert entity.price == Decimal("100.00")
        assert entity.version == 1
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_unknown_entity(self, recorder):
        with pytest.raises(NotFoundError):
            await recorder.update_price(
                EntityRef.variant(uuid4()), "10", PriceChangeSource.ADMIN
            )

    @pytest.mark.asyncio
    async def test_clock_stepping_back_never_reorders_ledger(self, recorder, store, clock, t0):
        created = await recorder.register_product("Lamp", "100")
        ref = created.entity.ref

        clock.advance(days=2)
        await recorder.update_price(ref, "90", PriceChangeSource.ADMIN)
        clock.set(t0 + timedelta(days=1))
        await recorder.update_price(ref, "95", PriceChangeSource.ADMIN)

        entity, history = await load(store, ref)
        assert [e.price for e in history] == [Decimal("100"), Decimal("90"), Decimal("95")]
        assert history[-1].effective_at == t0 + timedelta(days=2)
        # Live price equals the ledger head
        assert entity.price == history[-1].price

    @pytest.mark.asyncio
    async def test_variant_ledger_is_independent_of_product(self, recorder, store, clock):
        product = await recorder.register_product("Shirt", "30")
        variant = await recorder.register_variant(product.entity.id, "Shirt / S", "28")

        clock.advance(days=1)
        await recorder.update_price(variant.entity.ref, "20", PriceChangeSource.PROMOTION)

        product_entity, product_history = await load(store, product.entity.ref)
        assert product_entity.price == Decimal("30.00")
        assert len(product_history) == 1


class TestRefreshLowestPrice:
    @pytest.mark.asyncio
    async def test_refresh_corrects_stale_aggregate(self, recorder, store, clock):
        created = await recorder.register_product("Lamp", "50")
        ref = created.entity.ref
        clock.advance(days=1)
        await recorder.update_price(ref, "100", PriceChangeSource.ADMIN)

        clock.advance(days=35)
        refresh = await recorder.refresh_lowest_price(ref)

        assert refresh.updated is True
        assert refresh.stored == Decimal("50.00")
        assert refresh.computed == Decimal("100.00")

        entity, history = await load(store, ref)
        assert entity.lowest_price_30_days == Decimal("100.00")
        # Corrections never touch the ledger or the version
        assert entity.version == 2
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_refresh_without_drift_is_a_no_op(self, recorder):
        created = await recorder.register_product("Lamp", "50")

        refresh = await recorder.refresh_lowest_price(created.entity.ref)

        assert refresh.updated is False
