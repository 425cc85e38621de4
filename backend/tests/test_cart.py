"""
Cart engine tests.

Verifies:
- add_or_update creates one row per product and increments it afterwards
- set_quantity is a compare-and-swap on the row version
- quantity bounds, stock checks and cart-wide limits
- remove is idempotent and owner scoped
- summary flags unavailable items and groups by seller
"""

import pytest

from marketplace.errors import (
    CartLimitExceeded,
    ConcurrencyConflict,
    InsufficientStock,
    NotFoundError,
    ValidationError,
)
from marketplace.models import CartItem
from marketplace.services import cart_service


class TestAddOrUpdate:

    def test_first_add_creates_row_with_version_one(self, buyer, seller, make_product):
        product = make_product(seller, stock=5)

        item = cart_service.add_or_update(buyer.id, product.id, 2)

        assert item.quantity == 2
        assert item.version == 1

    def test_second_add_increments_existing_row(self, db_session, buyer, seller, make_product):
        product = make_product(seller, stock=5)
        cart_service.add_or_update(buyer.id, product.id, 1)

        item = cart_service.add_or_update(buyer.id, product.id, 2)

        assert item.quantity == 3
        assert item.version == 2
        assert db_session.query(CartItem).filter_by(user_id=buyer.id).count() == 1

    def test_first_add_with_non_positive_delta_stores_one(self, buyer, seller, make_product):
        product = make_product(seller, stock=5)

        item = cart_service.add_or_update(buyer.id, product.id, 0)

        assert item.quantity == 1

    def test_decrement_below_one_is_rejected(self, buyer, seller, make_product):
        product = make_product(seller, stock=5)
        cart_service.add_or_update(buyer.id, product.id, 1)

        with pytest.raises(ValidationError):
            cart_service.add_or_update(buyer.id, product.id, -1)

    def test_quantity_above_stock_is_rejected(self, buyer, seller, make_product):
        product = make_product(seller, stock=2)

        with pytest.raises(InsufficientStock) as exc:
            cart_service.add_or_update(buyer.id, product.id, 3)

        assert exc.value.available_stock == 2
        assert exc.value.requested == 3

    def test_inactive_product_cannot_be_added(self, buyer, seller, make_product):
        product = make_product(seller, is_active=False)

        with pytest.raises(ValidationError):
            cart_service.add_or_update(buyer.id, product.id, 1)

    def test_unknown_product(self, buyer):
        with pytest.raises(NotFoundError):
            cart_service.add_or_update(buyer.id, 99999, 1)

    @pytest.mark.parametrize("product_id", [None, "abc", 1.5])
    def test_missing_or_malformed_product_id(self, buyer, product_id):
        with pytest.raises(ValidationError) as exc:
            cart_service.add_or_update(buyer.id, product_id, 1)

        assert exc.value.details["field"] == "product_id"


class TestSetQuantity:

    def test_matching_version_updates_and_bumps_version(self, buyer, seller, make_product):
        product = make_product(seller, stock=10)
        item = cart_service.add_or_update(buyer.id, product.id, 1)

        updated = cart_service.set_quantity(buyer.id, item.id, 4, expected_version=1)

        assert updated.quantity == 4
        assert updated.version == 2

    def test_stale_version_is_a_conflict_and_writes_nothing(self, db_session, buyer, seller, make_product):
        product = make_product(seller, stock=10)
        item = cart_service.add_or_update(buyer.id, product.id, 1)
        cart_service.set_quantity(buyer.id, item.id, 2, expected_version=1)

        with pytest.raises(ConcurrencyConflict) as exc:
            cart_service.set_quantity(buyer.id, item.id, 7, expected_version=1)

        assert exc.value.details["current_version"] == 2
        row = db_session.get(CartItem, item.id)
        db_session.refresh(row)
        assert row.quantity == 2

    def test_other_users_row_is_not_found(self, make_user, buyer, seller, make_product):
        product = make_product(seller, stock=10)
        item = cart_service.add_or_update(buyer.id, product.id, 1)
        intruder = make_user()

        with pytest.raises(NotFoundError):
            cart_service.set_quantity(intruder.id, item.id, 2, expected_version=1)

    def test_zero_quantity_is_rejected(self, buyer, seller, make_product):
        product = make_product(seller, stock=10)
        item = cart_service.add_or_update(buyer.id, product.id, 1)

        with pytest.raises(ValidationError):
            cart_service.set_quantity(buyer.id, item.id, 0, expected_version=1)


class TestLimits:

    def test_max_quantity_per_item(self, app, buyer, seller, make_product, monkeypatch):
        monkeypatch.setitem(app.config, "CART_MAX_QUANTITY_PER_ITEM", 3)
        product = make_product(seller, stock=10)

        with pytest.raises(CartLimitExceeded) as exc:
            cart_service.add_or_update(buyer.id, product.id, 4)

        assert exc.value.details["limit"] == "max_quantity_per_item"

    def test_max_unique_products(self, app, buyer, seller, make_product, monkeypatch):
        monkeypatch.setitem(app.config, "CART_MAX_UNIQUE_PRODUCTS", 2)
        products = [make_product(seller, price="1.00") for _ in range(3)]
        cart_service.add_or_update(buyer.id, products[0].id, 1)
        cart_service.add_or_update(buyer.id, products[1].id, 1)

        with pytest.raises(CartLimitExceeded) as exc:
            cart_service.add_or_update(buyer.id, products[2].id, 1)

        assert exc.value.details["limit"] == "max_unique_products"

    def test_max_cart_value(self, buyer, seller, make_product):
        product = make_product(seller, price="6000.00", stock=5)

        with pytest.raises(CartLimitExceeded) as exc:
            cart_service.add_or_update(buyer.id, product.id, 2)

        assert exc.value.details["limit"] == "max_value"


class TestRemove:

    def test_remove_twice_does_not_error(self, buyer, seller, make_product):
        product = make_product(seller)
        item_id = cart_service.add_or_update(buyer.id, product.id, 1).id

        assert cart_service.remove(buyer.id, item_id) is True
        assert cart_service.remove(buyer.id, item_id) is False

    def test_remove_is_scoped_to_owner(self, db_session, make_user, buyer, seller, make_product):
        product = make_product(seller)
        item = cart_service.add_or_update(buyer.id, product.id, 1)
        intruder = make_user()

        assert cart_service.remove(intruder.id, item.id) is False
        assert db_session.query(CartItem).count() == 1

    def test_clear_cart(self, buyer, seller, make_product, fill_cart):
        fill_cart(buyer, [(make_product(seller), 1), (make_product(seller), 2)])

        assert cart_service.clear_cart(buyer.id) == 2
        assert cart_service.get_cart_items(buyer.id) == []


class TestSummary:

    def test_unavailable_items_are_flagged_and_excluded_from_total(self, db_session, buyer, seller, make_product, fill_cart):
        in_stock = make_product(seller, price="100.00", stock=5, name="Lamp")
        short = make_product(seller, price="50.00", stock=5, name="Chair")
        fill_cart(buyer, [(in_stock, 2), (short, 3)])
        short.stock = 1
        db_session.commit()

        summary = cart_service.get_cart_summary(buyer.id)

        assert summary["total_amount"] == "200.00"
        assert summary["total_items"] == 5
        assert summary["has_invalid_items"] is True
        assert summary["invalid_item_count"] == 1
        assert any("Chair" in warning for warning in summary["validation_warnings"])

    def test_groups_by_seller(self, buyer, seller, other_seller, make_product, fill_cart):
        fill_cart(buyer, [(make_product(seller), 1), (make_product(other_seller), 1)])

        summary = cart_service.get_cart_summary(buyer.id)

        assert {g["seller_id"] for g in summary["items_by_seller"]} == {seller.id, other_seller.id}

    def test_display_currency_conversion(self, buyer, seller, make_product, fill_cart):
        fill_cart(buyer, [(make_product(seller, price="73.00"), 1)])

        summary = cart_service.get_cart_summary(buyer.id, currency="USD")

        # 73 THB at 36.50 THB per USD
        assert summary["display_currency"] == "USD"
        assert summary["display_total_amount"] == "2.00"


class TestMergeGuestCart:

    def test_valid_entries_merge_and_invalid_ones_are_skipped(self, buyer, seller, make_product):
        product = make_product(seller, stock=3)

        result = cart_service.merge_guest_cart(buyer.id, [
            {"product_id": product.id, "quantity": 2},
            {"product_id": 424242, "quantity": 1},
        ])

        assert len(result["merged"]) == 1
        assert result["skipped"][0]["product_id"] == 424242
        assert result["skipped"][0]["code"] == "NOT_FOUND"
