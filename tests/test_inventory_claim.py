"""
Inventory Claim Tests
Each unsold unit is handed out at most once, including under concurrent claimers
"""

import threading

import pytest

from database import SessionLocal
from models import FulfillmentKind, InventoryItem
from services.inventory_claim_service import InventoryClaimService
from utils.exception_handler import InventoryItemSoldError, ProductNotFoundError, ValidationError


class TestClaim:
    """Single-claimer behaviour"""

    def test_claims_oldest_unit_and_marks_it_sold(self, make_user, make_product):
        user_id = make_user()
        product_id = make_product(stock=["key-1", "key-2"])

        item = InventoryClaimService.claim(product_id, user_id)

        assert item is not None
        assert item.content == "key-1"
        session = SessionLocal()
        try:
            row = session.get(InventoryItem, item.id)
            assert row.is_sold is True
            assert row.sold_to == user_id
            assert row.sold_at is not None
        finally:
            session.close()
        assert InventoryClaimService.available_stock(product_id) == 1

    def test_empty_stock_returns_none(self, make_user, make_product):
        user_id = make_user()
        product_id = make_product(stock=[])

        assert InventoryClaimService.claim(product_id, user_id) is None

    def test_claim_many_stops_at_exhaustion(self, make_user, make_product):
        user_id = make_user()
        product_id = make_product(stock=["a", "b"])

        claimed = InventoryClaimService.claim_many(product_id, user_id, None, 5)

        assert [item.content for item in claimed] == ["a", "b"]
        assert InventoryClaimService.available_stock(product_id) == 0


class TestConcurrentClaims:
    """N claimers racing for K units"""

    @pytest.mark.parametrize("units,claimers", [(5, 10), (10, 10), (3, 8)])
    def test_exactly_min_units_claimers_succeed_with_distinct_items(self, make_user, make_product, units, claimers):
        user_ids = [make_user() for _ in range(claimers)]
        product_id = make_product(stock=[f"code-{i}" for i in range(units)])

        results = []
        errors = []
        lock = threading.Lock()
        start = threading.Barrier(claimers)

        def worker(user_id):
            try:
                start.wait()
                item = InventoryClaimService.claim(product_id, user_id)
                with lock:
                    results.append(item)
            except Exception as e:  # surfaced through the errors list
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in user_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        won = [item for item in results if item is not None]
        assert len(won) == min(units, claimers)
        assert len({item.id for item in won}) == len(won)
        assert InventoryClaimService.available_stock(product_id) == max(0, units - claimers)


class TestStockManagement:
    """Stock upload and deletion"""

    def test_add_stock_skips_blank_lines(self, make_product):
        product_id = make_product(stock=[])

        added = InventoryClaimService.add_stock(product_id, ["one", "  ", "", "two"])

        assert added == 2
        assert InventoryClaimService.available_stock(product_id) == 2

    def test_add_stock_rejects_provider_products(self, make_product):
        product_id = make_product(kind=FulfillmentKind.PROXY, provider_options={"country": "ru"})

        with pytest.raises(ValidationError):
            InventoryClaimService.add_stock(product_id, ["x"])

    def test_add_stock_unknown_product(self):
        with pytest.raises(ProductNotFoundError):
            InventoryClaimService.add_stock(9999, ["x"])

    def test_delete_unsold_item(self, make_product):
        product_id = make_product(stock=["only"])
        session = SessionLocal()
        try:
            item_id = session.query(InventoryItem.id).filter(InventoryItem.product_id == product_id).scalar()
        finally:
            session.close()

        assert InventoryClaimService.delete_unsold_item(item_id) is True
        assert InventoryClaimService.delete_unsold_item(item_id) is False

    def test_sold_item_cannot_be_deleted(self, make_user, make_product):
        user_id = make_user()
        product_id = make_product(stock=["sold"])
        item = InventoryClaimService.claim(product_id, user_id)

        with pytest.raises(InventoryItemSoldError):
            InventoryClaimService.delete_unsold_item(item.id)
