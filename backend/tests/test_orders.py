"""
Order read model tests.

Verifies:
- buyers see whole orders, sellers only their own lines, strangers nothing
- pagination, status and search filters
- buyer and seller statistics
- the seller dashboard counts
"""

import pytest

from marketplace.errors import NotFoundError, ValidationError
from marketplace.models.orders import STATUS_DELIVERED, STATUS_PENDING, STATUS_PROCESSING, STATUS_SHIPPED
from marketplace.services import checkout_service, fulfillment_service, order_service

ADDRESS = "5 Market St"


@pytest.fixture
def mixed_order(buyer, seller, other_seller, make_product, fill_cart):
    """One order with a line from each seller: 2 x 100.00 and 1 x 40.00."""
    mine = make_product(seller, price="100.00", name="Teapot")
    theirs = make_product(other_seller, price="40.00", name="Mug")
    fill_cart(buyer, [(mine, 2), (theirs, 1)])
    return checkout_service.create_order_from_cart(buyer.id, ADDRESS)


def _item_of(order, seller):
    return next(item for item in order.items if item.seller_id == seller.id)


class TestVisibility:

    def test_buyer_sees_every_line(self, buyer, mixed_order):
        data = order_service.get_order(mixed_order.id, buyer)

        assert len(data["items"]) == 2
        assert data["total"] == "240.00"

    def test_seller_sees_only_own_lines(self, seller, mixed_order):
        data = order_service.get_order(mixed_order.id, seller)

        assert [item["product_name"] for item in data["items"]] == ["Teapot"]

    def test_visible_status_follows_own_lines(self, seller, other_seller, mixed_order):
        fulfillment_service.update_status(_item_of(mixed_order, seller).id, STATUS_PROCESSING, seller.id)

        mine = order_service.get_order(mixed_order.id, seller)
        theirs = order_service.get_order(mixed_order.id, other_seller)

        assert mine["visible_status"] == STATUS_PROCESSING
        assert theirs["visible_status"] == STATUS_PENDING
        assert mine["status"] == STATUS_PENDING

    def test_stranger_gets_not_found(self, make_user, mixed_order):
        with pytest.raises(NotFoundError):
            order_service.get_order(mixed_order.id, make_user())


class TestListOrders:

    def test_buyer_history_is_paginated(self, buyer, seller, make_product, fill_cart):
        product = make_product(seller, stock=10)
        for _ in range(3):
            fill_cart(buyer, [(product, 1)])
            checkout_service.create_order_from_cart(buyer.id, ADDRESS)

        page = order_service.list_orders(buyer, page=1, page_size=2)

        assert page["total_count"] == 3
        assert page["total_pages"] == 2
        assert len(page["items"]) == 2

    def test_seller_scope_filters_by_status(self, seller, other_seller, mixed_order):
        fulfillment_service.update_status(_item_of(mixed_order, seller).id, STATUS_PROCESSING, seller.id)

        processing = order_service.list_orders(seller, scope=order_service.SCOPE_SELLER, status=STATUS_PROCESSING)
        theirs = order_service.list_orders(other_seller, scope=order_service.SCOPE_SELLER, status=STATUS_PROCESSING)

        assert processing["total_count"] == 1
        assert theirs["total_count"] == 0

    def test_seller_scope_search_matches_only_own_lines(self, seller, mixed_order):
        def search(term):
            return order_service.list_orders(seller, scope=order_service.SCOPE_SELLER, search=term)["total_count"]

        assert search("teapot") == 1
        assert search("mug") == 0
        assert search(mixed_order.order_number) == 1

    def test_search_by_product_name(self, buyer, mixed_order):
        assert order_service.list_orders(buyer, search="teapot")["total_count"] == 1
        assert order_service.list_orders(buyer, search="kettle")["total_count"] == 0

    @pytest.mark.parametrize("kwargs", [{"page": 0}, {"page_size": 500}, {"status": "Lost"}, {"scope": "admin"}])
    def test_bad_arguments(self, buyer, kwargs):
        with pytest.raises(ValidationError):
            order_service.list_orders(buyer, **kwargs)


class TestSearchAndStats:

    def test_search_by_order_number(self, buyer, make_user, mixed_order):
        assert len(order_service.search_by_order_number(buyer, mixed_order.order_number)) == 1
        assert order_service.search_by_order_number(make_user(), mixed_order.order_number) == []

    def test_empty_search_term(self, buyer):
        with pytest.raises(ValidationError):
            order_service.search_by_order_number(buyer, "  ")

    def test_buyer_stats(self, buyer, mixed_order):
        stats = order_service.get_order_stats(buyer)

        assert stats == {"total_orders": 1, "total_spent": "240.00", "currency": "THB"}

    def test_seller_stats(self, seller, mixed_order):
        stats = order_service.get_order_stats(seller, scope=order_service.SCOPE_SELLER)

        assert stats["total_order_items"] == 1
        assert stats["total_earnings"] == "200.00"


class TestSellerDashboard:

    def test_counts_and_delivered_revenue(self, seller, mixed_order):
        item_id = _item_of(mixed_order, seller).id
        for status in (STATUS_PROCESSING, STATUS_SHIPPED, STATUS_DELIVERED):
            fulfillment_service.update_status(item_id, status, seller.id)

        dashboard = order_service.get_seller_dashboard(seller.id)

        assert dashboard["item_status_counts"][STATUS_DELIVERED] == 1
        assert dashboard["order_status_counts"] == {STATUS_DELIVERED: 1}
        assert dashboard["delivered_revenue"] == "200.00"
        assert dashboard["has_new_orders"] is True
        assert dashboard["total_products"] == 1
