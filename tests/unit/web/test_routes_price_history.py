"""Tests for priceledger.web.routes.price_history.

Route handlers are exercised against mocked ledger services.
"""

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from priceledger.config import LedgerConfig
from priceledger.errors import ConcurrencyConflict, NotFoundError, ValidationError
from priceledger.models import (
    EntityRef,
    EntityType,
    HistoryPage,
    LedgerStats,
    PriceableEntity,
    PriceChangeSource,
    PriceHistoryEntry,
    PriceMismatch,
    PriceUpdateResult,
    RecalcSummary,
)
from priceledger.web.auth import require_admin
from priceledger.web.dependencies import get_ledger
from priceledger.web.models import DEFAULT_UPDATE_REASON
from priceledger.web.routes import price_history

NOW = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger():
    """Ledger double with async recorder/audit methods."""
    return SimpleNamespace(
        store=MagicMock(),
        recorder=SimpleNamespace(update_price=AsyncMock()),
        audit=SimpleNamespace(recalc_all=AsyncMock(), find_mismatches=AsyncMock()),
        config=LedgerConfig(),
    )


@pytest.fixture
def app(ledger):
    """Create test FastAPI app with the price history router."""
    test_app = FastAPI()
    test_app.include_router(price_history.router)
    test_app.dependency_overrides[get_ledger] = lambda: ledger
    test_app.dependency_overrides[require_admin] = lambda: "alice"
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def make_entry(ref: EntityRef, price: str, sequence: int = 2) -> PriceHistoryEntry:
    return PriceHistoryEntry(
        entity_type=ref.entity_type,
        entity_id=ref.entity_id,
        sequence=sequence,
        price=Decimal(price),
        previous_price=Decimal("100.00"),
        source=PriceChangeSource.ADMIN,
        changed_by="alice",
        reason="Spring sale",
        effective_at=NOW,
    )


def make_result(ref: EntityRef, price: str) -> PriceUpdateResult:
    entity = PriceableEntity(
        entity_type=ref.entity_type,
        id=ref.entity_id,
        name="Lamp",
        price=Decimal(price),
        lowest_price_30_days=Decimal(price),
        lowest_price_30_days_at=NOW,
        version=2,
        updated_at=NOW,
    )
    return PriceUpdateResult(
        entity=entity,
        history_entry=make_entry(ref, price),
        previous_price=Decimal("100.00"),
        price_changed=True,
        lowest_price_30_days=Decimal(price),
    )


class TestHistory:
    """Tests for GET /price-history/{product|variant}/{id}."""

    @patch("priceledger.web.routes.price_history.get_history", new_callable=AsyncMock)
    def test_product_history(self, mock_get_history, client, ledger):
        ref = EntityRef.product(uuid4())
        mock_get_history.return_value = HistoryPage(
            ref=ref, entries=[make_entry(ref, "80.00")], limit=50, offset=0, total=1
        )

        response = client.get(f"/price-history/product/{ref.entity_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["entityType"] == "PRODUCT"
        assert body["entityId"] == str(ref.entity_id)
        assert body["pagination"] == {"limit": 50, "offset": 0, "total": 1}
        entry = body["history"][0]
        assert entry["price"] == "80.00"
        assert entry["previousPrice"] == "100.00"
        assert entry["changedBy"] == "alice"
        mock_get_history.assert_awaited_once_with(
            ledger.store, ref, limit=50, offset=0, max_limit=500
        )

    @patch("priceledger.web.routes.price_history.get_history", new_callable=AsyncMock)
    def test_variant_history_paging(self, mock_get_history, client, ledger):
        ref = EntityRef.variant(uuid4())
        mock_get_history.return_value = HistoryPage(
            ref=ref, entries=[], limit=10, offset=20, total=3
        )

        response = client.get(f"/price-history/variant/{ref.entity_id}?limit=10&offset=20")

        assert response.status_code == 200
        assert response.json()["entityType"] == "VARIANT"
        mock_get_history.assert_awaited_once_with(
            ledger.store, ref, limit=10, offset=20, max_limit=500
        )

    @patch("priceledger.web.routes.price_history.get_history", new_callable=AsyncMock)
    def test_bad_paging_is_400(self, mock_get_history, client):
        mock_get_history.side_effect = ValidationError("limit must be between 1 and 500")

        response = client.get(f"/price-history/product/{uuid4()}?limit=0")

        assert response.status_code == 400
        assert "limit" in response.json()["detail"]

    @patch("priceledger.web.routes.price_history.get_history", new_callable=AsyncMock)
    def test_unknown_entity_is_404(self, mock_get_history, client):
        mock_get_history.side_effect = NotFoundError("Product not found")

        response = client.get(f"/price-history/product/{uuid4()}")

        assert response.status_code == 404

    def test_history_is_readable_without_admin(self, app, ledger):
        app.dependency_overrides.pop(require_admin)
        ref = EntityRef.product(uuid4())

        with patch(
            "priceledger.web.routes.price_history.get_history", new_callable=AsyncMock
        ) as mock_get_history:
            mock_get_history.return_value = HistoryPage(
                ref=ref, entries=[], limit=50, offset=0, total=0
            )
            response = TestClient(app).get(f"/price-history/product/{ref.entity_id}")

        assert response.status_code == 200


class TestUpdate:
    """Tests for POST /price-history/{product|variant}/{id}/update."""

    def test_update_product_price(self, client, ledger):
        ref = EntityRef.product(uuid4())
        ledger.recorder.update_price.return_value = make_result(ref, "79.99")

        response = client.post(
            f"/price-history/product/{ref.entity_id}/update", json={"newPrice": "79.99"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Product price updated successfully"
        assert body["entity"]["price"] == "79.99"
        assert body["entity"]["lowestPrice30Days"] == "79.99"
        assert body["historyEntry"]["source"] == "ADMIN"
        assert body["previousPrice"] == "100.00"
        assert body["priceChanged"] is True
        ledger.recorder.update_price.assert_awaited_once_with(
            ref,
            "79.99",
            PriceChangeSource.ADMIN,
            changed_by="alice",
            reason=DEFAULT_UPDATE_REASON,
        )

    def test_update_variant_price_with_reason(self, client, ledger):
        ref = EntityRef.variant(uuid4())
        ledger.recorder.update_price.return_value = make_result(ref, "12.00")

        response = client.post(
            f"/price-history/variant/{ref.entity_id}/update",
            json={"newPrice": 12, "reason": "Competitor match"},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Variant price updated successfully"
        args = ledger.recorder.update_price.await_args
        assert args.args[0] == ref
        assert args.args[1] == 12
        assert args.kwargs["reason"] == "Competitor match"

    def test_negative_price_is_400(self, client, ledger):
        ledger.recorder.update_price.side_effect = ValidationError(
            "Price must be non-negative, got -1"
        )

        response = client.post(
            f"/price-history/product/{uuid4()}/update", json={"newPrice": -1}
        )

        assert response.status_code == 400
        assert "non-negative" in response.json()["detail"]

    def test_unknown_entity_is_404(self, client, ledger):
        ledger.recorder.update_price.side_effect = NotFoundError("Variant not found")

        response = client.post(f"/price-history/variant/{uuid4()}/update", json={"newPrice": 1})

        assert response.status_code == 404

    def test_exhausted_conflict_is_409(self, client, ledger):
        ledger.recorder.update_price.side_effect = ConcurrencyConflict("version moved")

        response = client.post(f"/price-history/product/{uuid4()}/update", json={"newPrice": 1})

        assert response.status_code == 409

    def test_unexpected_failure_hides_details(self, client, ledger):
        ledger.recorder.update_price.side_effect = RuntimeError(
            "connection to postgresql://ledger:hunter2@db failed"
        )

        response = client.post(f"/price-history/product/{uuid4()}/update", json={"newPrice": 1})

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to update price"
        assert "hunter2" not in response.text

    def test_requires_admin(self, app):
        app.dependency_overrides.pop(require_admin)

        response = TestClient(app).post(
            f"/price-history/product/{uuid4()}/update", json={"newPrice": 1}
        )

        assert response.status_code == 401


class TestAudit:
    """Tests for recalculation and audit endpoints."""

    def test_recalculate(self, client, ledger):
        ledger.audit.recalc_all.return_value = RecalcSummary(
            checked=10, updated=2, unchanged=7, failed=1, errors=["product:x: no price history"]
        )

        response = client.post("/price-history/recalculate")

        assert response.status_code == 200
        body = response.json()
        assert (body["checked"], body["updated"], body["unchanged"], body["failed"]) == (
            10,
            2,
            7,
            1,
        )
        assert body["errors"] == ["product:x: no price history"]

    def test_mismatches_default_limit(self, client, ledger):
        entity_id = uuid4()
        ledger.audit.find_mismatches.return_value = [
            PriceMismatch(
                entity_type=EntityType.PRODUCT,
                entity_id=entity_id,
                name="Lamp",
                stored=Decimal("95.00"),
                computed=Decimal("80.00"),
                delta=Decimal("15.00"),
            )
        ]

        response = client.get("/price-history/audit/mismatches")

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["mismatches"][0]["entityId"] == str(entity_id)
        assert body["mismatches"][0]["delta"] == "15.00"
        ledger.audit.find_mismatches.assert_awaited_once_with(limit=100)

    def test_mismatches_rejects_bad_limit(self, client, ledger):
        response = client.get("/price-history/audit/mismatches?limit=0")

        assert response.status_code == 400
        ledger.audit.find_mismatches.assert_not_awaited()

    @patch("priceledger.web.routes.price_history.get_ledger_stats", new_callable=AsyncMock)
    def test_stats(self, mock_stats, client):
        mock_stats.return_value = LedgerStats(
            products=3,
            variants=4,
            history_entries=20,
            price_changes_in_window=5,
            entities_changed_in_window=2,
        )

        response = client.get("/price-history/audit/stats")

        assert response.status_code == 200
        assert response.json() == {
            "products": 3,
            "variants": 4,
            "historyEntries": 20,
            "priceChangesInWindow": 5,
            "entitiesChangedInWindow": 2,
            "windowDays": 30,
        }
