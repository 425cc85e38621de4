# Overview: Read models over orders for buyers, sellers and admins.

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, or_

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, Product, User
from ..models.identity import ROLE_ADMIN
from ..models.orders import ITEM_STATUSES, STATUS_DELIVERED, STATUS_PENDING
from ..money import money_str
from ..time_utils import as_naive_utc, utcnow
from . import exchange_rate_service
from .fulfillment_service import derive_order_status

SCOPE_BUYER = "buyer"
SCOPE_SELLER = "seller"
MAX_PAGE_SIZE = 100
LOW_STOCK_THRESHOLD = 10


def _visible_items(order: Order, user: User, scope: str | None = None) -> list[OrderItem] | None:
    """
    Items of `order` this user may see, or None when the order is not visible.

    Buyers and admins see the whole order; a seller sees only their own lines.
    """
    if user.role == ROLE_ADMIN and scope is None:
        return list(order.items)
    if scope in (None, SCOPE_BUYER) and order.buyer_id == user.id:
        return list(order.items)
    if scope in (None, SCOPE_SELLER):
        own = [item for item in order.items if item.seller_id == user.id]
        if own:
            return own
    return None


def serialize_order(order: Order, items: list[OrderItem]) -> dict:
    data = order.to_dict(items=items)
    # Seller view: status of the lines the seller is responsible for
    data["visible_status"] = derive_order_status([item.status for item in items])
    return data


def get_order(order_id: int, user: User) -> dict:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    items = _visible_items(order, user)
    if items is None:
        # Do not reveal that someone else's order exists
        raise NotFoundError("Order", order_id)
    return serialize_order(order, items)


def _scoped_query(user: User, scope: str):
    query = db.session.query(Order)
    if scope == SCOPE_BUYER:
        return query.filter(Order.buyer_id == user.id)
    if scope == SCOPE_SELLER:
        return query.filter(Order.items.any(OrderItem.seller_id == user.id))
    raise ValidationError("scope must be buyer or seller", details={"field": "scope"})


def _item_filter(user: User, scope: str, *criteria):
    if scope == SCOPE_SELLER:
        criteria = (OrderItem.seller_id == user.id,) + criteria
    return Order.items.any(and_(*criteria))


def list_orders(
    user: User,
    scope: str = SCOPE_BUYER,
    page: int = 1,
    page_size: int = 10,
    status: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    search: str | None = None,
) -> dict:
    """
    Paginated order history, newest first.

    status keeps orders having at least one visible item in that status;
    search matches the order number or a visible item's product name.
    """
    if page < 1 or not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(
            f"page must be >= 1 and page_size between 1 and {MAX_PAGE_SIZE}",
            details={"page": page, "page_size": page_size},
        )

    query = _scoped_query(user, scope)

    if status:
        if status not in ITEM_STATUSES:
            raise ValidationError(f"Unknown status: {status}", details={"field": "status"})
        query = query.filter(_item_filter(user, scope, OrderItem.status == status))
    if from_date:
        query = query.filter(Order.created_at >= from_date)
    if to_date:
        query = query.filter(Order.created_at <= to_date)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Order.order_number.ilike(pattern),
            _item_filter(user, scope, OrderItem.product_name.ilike(pattern)),
        ))

    total_count = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )

    return {
        "items": [serialize_order(order, _visible_items(order, user, scope) or []) for order in orders],
        "total_count": total_count,
        "page": page,
        "page_size": page_size,
        "total_pages": (total_count + page_size - 1) // page_size,
    }


def search_by_order_number(user: User, term: str) -> list[dict]:
    if not term or not term.strip():
        raise ValidationError("Search term is required", details={"field": "order_number"})

    orders = (
        db.session.query(Order)
        .filter(Order.order_number.ilike(f"%{term.strip()}%"))
        .order_by(Order.created_at.desc())
        .all()
    )
    results = []
    for order in orders:
        items = _visible_items(order, user)
        if items is not None:
            results.append(serialize_order(order, items))
    return results


def get_order_stats(user: User, scope: str = SCOPE_BUYER) -> dict:
    """Buyer: order count and total spent. Seller: item count and earnings."""
    if scope == SCOPE_BUYER:
        orders = db.session.query(Order).filter(Order.buyer_id == user.id).all()
        return {
            "total_orders": len(orders),
            "total_spent": money_str(sum((order.total for order in orders), Decimal("0"))),
            "currency": orders[0].currency if orders else exchange_rate_service.get_rate_provider().base_currency,
        }
    if scope == SCOPE_SELLER:
        provider = exchange_rate_service.get_rate_provider()
        rates = provider.get_rates()
        items = db.session.query(OrderItem).filter(OrderItem.seller_id == user.id).all()
        earnings = sum(
            (exchange_rate_service.convert(item.line_total, item.currency, provider.base_currency, rates)
             for item in items),
            Decimal("0"),
        )
        return {
            "total_order_items": len(items),
            "total_earnings": money_str(earnings),
            "currency": provider.base_currency,
        }
    raise ValidationError("scope must be buyer or seller", details={"field": "scope"})


def get_seller_dashboard(seller_id: int) -> dict:
    """
    Seller overview: item counts per status, derived status of each order
    containing the seller's items, and revenue of delivered items.
    """
    provider = exchange_rate_service.get_rate_provider()
    rates = provider.get_rates()
    now = utcnow()

    items = (
        db.session.query(OrderItem)
        .filter(OrderItem.seller_id == seller_id)
        .order_by(OrderItem.created_at.desc())
        .all()
    )

    status_counts = {status: 0 for status in ITEM_STATUSES}
    per_order: dict[int, list[str]] = {}
    revenue = Decimal("0")
    revenue_30d = Decimal("0")
    has_new_orders = False

    for item in items:
        status_counts[item.status] = status_counts.get(item.status, 0) + 1
        per_order.setdefault(item.order_id, []).append(item.status)
        created = as_naive_utc(item.created_at)
        if created >= now - timedelta(hours=24):
            has_new_orders = True
        if item.status == STATUS_DELIVERED:
            amount = exchange_rate_service.convert(item.line_total, item.currency, provider.base_currency, rates)
            revenue += amount
            if created >= now - timedelta(days=30):
                revenue_30d += amount

    order_statuses: dict[str, int] = {}
    for statuses in per_order.values():
        derived = derive_order_status(statuses)
        order_statuses[derived] = order_statuses.get(derived, 0) + 1

    products = db.session.query(Product).filter(Product.seller_id == seller_id).all()

    return {
        "item_status_counts": status_counts,
        "order_status_counts": order_statuses,
        "total_orders": len(per_order),
        "pending_order_count": order_statuses.get(STATUS_PENDING, 0),
        "has_new_orders": has_new_orders,
        "delivered_revenue": money_str(revenue),
        "delivered_revenue_30d": money_str(revenue_30d),
        "revenue_currency": provider.base_currency,
        "total_products": len(products),
        "active_products": sum(1 for p in products if p.is_active),
        "low_stock_count": sum(1 for p in products if p.is_active and p.stock <= LOW_STOCK_THRESHOLD),
    }
