# Overview: Buyer carts; optimistic concurrency through an explicit per-row version.

"""
Cart Engine

A cart is the set of cart_items rows of one user, at most one row per
product. Client-driven edits (set_quantity) carry the version the client
last saw and are applied with a conditional UPDATE; a stale version is a
ConcurrencyConflict and nothing is written. Server-driven increments
(add_or_update) re-read and retry on their own, since an increment is
still correct against the fresher row.

Stock is only checked here, never reserved. Checkout re-verifies it.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CartLimitExceeded,
    ConcurrencyConflict,
    InsufficientStock,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import CartItem, Product
from ..money import money_str, to_money
from ..time_utils import to_utc_z, utcnow
from ..validation import require_int
from . import exchange_rate_service

MAX_INCREMENT_ATTEMPTS = 3


def _limits() -> dict:
    config = current_app.config
    return {
        "max_quantity_per_item": config["CART_MAX_QUANTITY_PER_ITEM"],
        "max_unique_products": config["CART_MAX_UNIQUE_PRODUCTS"],
        "max_total_items": config["CART_MAX_TOTAL_ITEMS"],
        "max_value": to_money(config["CART_MAX_VALUE"]),
    }


def _get_purchasable_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    if not product.is_active:
        raise ValidationError("Product is not available", details={"product_id": product_id})
    return product


def _check_quantity_bounds(product: Product, quantity: int) -> None:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", details={"field": "quantity"})
    if quantity > product.stock:
        raise InsufficientStock(product.id, quantity, product.stock, product_name=product.name)


def _check_limits(user_id: int, product: Product, new_quantity: int, existing_id: int | None) -> None:
    """Validate the cart as it would look after this row holds new_quantity."""
    limits = _limits()

    if new_quantity > limits["max_quantity_per_item"]:
        raise CartLimitExceeded(
            f"Maximum quantity per item is {limits['max_quantity_per_item']}",
            details={"limit": "max_quantity_per_item", "value": limits["max_quantity_per_item"]},
        )

    others = (
        db.session.query(CartItem)
        .filter(CartItem.user_id == user_id, CartItem.product_id != product.id)
        .all()
    )

    if existing_id is None and len(others) >= limits["max_unique_products"]:
        raise CartLimitExceeded(
            f"Maximum {limits['max_unique_products']} different products allowed in cart",
            details={"limit": "max_unique_products", "value": limits["max_unique_products"]},
        )

    total_items = sum(item.quantity for item in others) + new_quantity
    if total_items > limits["max_total_items"]:
        raise CartLimitExceeded(
            f"Maximum {limits['max_total_items']} total items allowed in cart",
            details={"limit": "max_total_items", "value": limits["max_total_items"]},
        )

    rates = exchange_rate_service.get_rate_provider().get_rates()
    total_value = exchange_rate_service.to_base(product.price * new_quantity, product.base_currency, rates)
    for item in others:
        total_value += exchange_rate_service.to_base(
            item.product.price * item.quantity, item.product.base_currency, rates,
        )
    if total_value > limits["max_value"]:
        raise CartLimitExceeded(
            f"Maximum cart value is {limits['max_value']}",
            details={"limit": "max_value", "value": money_str(limits["max_value"])},
        )


def get_item(user_id: int, cart_item_id: int) -> CartItem:
    item = db.session.query(CartItem).filter_by(id=cart_item_id, user_id=user_id).first()
    if item is None:
        raise NotFoundError("CartItem", cart_item_id)
    return item


def add_or_update(user_id: int, product_id: int, quantity_delta) -> CartItem:
    """
    Add a product to the cart, or change the quantity of its existing row.

    A first add stores max(1, delta). Two concurrent first adds collide on
    the (user, product) unique constraint; the loser rolls back and applies
    its delta as an increment on the winner's row.
    """
    product_id = require_int(product_id, "product_id")
    quantity_delta = require_int(quantity_delta, "quantity")

    for _ in range(MAX_INCREMENT_ATTEMPTS):
        product = _get_purchasable_product(product_id)
        existing = db.session.query(CartItem).filter_by(user_id=user_id, product_id=product_id).first()

        if existing is None:
            new_quantity = max(1, quantity_delta)
            _check_quantity_bounds(product, new_quantity)
            _check_limits(user_id, product, new_quantity, existing_id=None)

            now = utcnow()
            item = CartItem(
                user_id=user_id,
                product_id=product_id,
                quantity=new_quantity,
                version=1,
                created_at=now,
                updated_at=now,
            )
            db.session.add(item)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                continue
            return item

        new_quantity = existing.quantity + quantity_delta
        _check_quantity_bounds(product, new_quantity)
        _check_limits(user_id, product, new_quantity, existing_id=existing.id)

        updated = db.session.execute(
            update(CartItem)
            .where(CartItem.id == existing.id, CartItem.version == existing.version)
            .values(quantity=new_quantity, version=CartItem.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if updated:
            db.session.commit()
            db.session.refresh(existing)
            return existing
        db.session.rollback()

    raise ConcurrencyConflict(
        "Cart item is being modified concurrently; please retry",
        details={"product_id": product_id},
    )


def set_quantity(user_id: int, cart_item_id: int, new_quantity, expected_version) -> CartItem:
    """
    Replace the quantity of a cart row if it still has expected_version.

    Raises:
        NotFoundError: the row does not exist or belongs to another user
        ValidationError / InsufficientStock / CartLimitExceeded: bounds
        ConcurrencyConflict: the row changed since the caller read it
    """
    new_quantity = require_int(new_quantity, "quantity")
    expected_version = require_int(expected_version, "version")

    item = get_item(user_id, cart_item_id)
    product = item.product
    if not product.is_active:
        raise ValidationError("Product is not available", details={"product_id": product.id})
    _check_quantity_bounds(product, new_quantity)
    _check_limits(user_id, product, new_quantity, existing_id=item.id)

    updated = db.session.execute(
        update(CartItem)
        .where(
            CartItem.id == cart_item_id,
            CartItem.user_id == user_id,
            CartItem.version == expected_version,
        )
        .values(quantity=new_quantity, version=CartItem.version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount

    if not updated:
        db.session.rollback()
        current = db.session.query(CartItem.version).filter_by(id=cart_item_id, user_id=user_id).scalar()
        if current is None:
            raise NotFoundError("CartItem", cart_item_id)
        raise ConcurrencyConflict(
            "Cart item was modified by another request",
            details={"cart_item_id": cart_item_id, "expected_version": expected_version, "current_version": current},
        )

    db.session.commit()
    db.session.refresh(item)
    return item


def remove(user_id: int, cart_item_id: int) -> bool:
    """
    Delete one cart row of this user.

    Unconditional and idempotent: returns False when there was nothing to
    delete, which is not an error.
    """
    deleted = db.session.execute(
        delete(CartItem)
        .where(CartItem.id == cart_item_id, CartItem.user_id == user_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.commit()
    return bool(deleted)


def remove_by_product(user_id: int, product_id: int) -> bool:
    deleted = db.session.execute(
        delete(CartItem)
        .where(CartItem.product_id == product_id, CartItem.user_id == user_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.commit()
    return bool(deleted)


def clear_cart(user_id: int, commit: bool = True) -> int:
    deleted = db.session.execute(
        delete(CartItem)
        .where(CartItem.user_id == user_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    if commit:
        db.session.commit()
    return deleted


def get_cart_items(user_id: int) -> list[CartItem]:
    return (
        db.session.query(CartItem)
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.created_at.asc(), CartItem.id.asc())
        .all()
    )


def count_items(user_id: int) -> int:
    return db.session.query(func.coalesce(func.sum(CartItem.quantity), 0)).filter(
        CartItem.user_id == user_id
    ).scalar()


def _item_view(item: CartItem) -> dict:
    product = item.product
    available = bool(product.is_active) and product.stock >= item.quantity
    line_total = to_money(product.price * item.quantity)
    return {
        "id": item.id,
        "product_id": product.id,
        "seller_id": product.seller_id,
        "product_name": product.name,
        "product_image_url": product.image_url,
        "product_price": money_str(product.price),
        "currency": product.base_currency,
        "quantity": item.quantity,
        "version": item.version,
        "available_stock": product.stock,
        "is_available": available,
        "line_total": money_str(line_total),
    }


def get_cart_summary(user_id: int, currency: str | None = None) -> dict:
    """
    Cart view with availability flags, per-seller groups and totals.

    Totals only count items that could be bought right now; the others are
    listed with a warning. Totals are in the base currency, plus the display
    currency when one is requested.
    """
    provider = exchange_rate_service.get_rate_provider()
    rates = provider.get_rates()
    display_currency = exchange_rate_service.validate_currency(currency) if currency else None

    items = get_cart_items(user_id)
    views = []
    warnings = []
    groups: dict[int, dict] = {}
    total = Decimal("0.00")
    valid_count = 0

    for item in items:
        view = _item_view(item)
        views.append(view)

        group = groups.setdefault(view["seller_id"], {
            "seller_id": view["seller_id"],
            "seller_name": item.product.seller.display_name if item.product.seller else None,
            "items": [],
            "seller_total": Decimal("0.00"),
        })
        group["items"].append(view)

        if view["is_available"]:
            valid_count += 1
            base_amount = exchange_rate_service.convert(
                item.product.price * item.quantity, item.product.base_currency, provider.base_currency, rates,
            )
            total += base_amount
            group["seller_total"] += base_amount
        elif not item.product.is_active:
            warnings.append(f"{view['product_name']} is no longer available")
        elif item.product.stock == 0:
            warnings.append(f"{view['product_name']} is out of stock")
        else:
            warnings.append(
                f"{view['product_name']}: only {item.product.stock} available (you have {item.quantity})"
            )

    summary = {
        "items": views,
        "items_by_seller": [
            {**group, "seller_total": money_str(group["seller_total"])}
            for group in groups.values()
        ],
        "total_items": sum(item.quantity for item in items),
        "total_amount": money_str(total),
        "currency": provider.base_currency,
        "has_invalid_items": valid_count != len(items),
        "valid_item_count": valid_count,
        "invalid_item_count": len(items) - valid_count,
        "validation_warnings": warnings,
        "last_updated": to_utc_z(utcnow()),
    }
    if display_currency:
        summary["display_currency"] = display_currency
        summary["display_total_amount"] = money_str(
            exchange_rate_service.convert(total, provider.base_currency, display_currency, rates)
        )
    return summary


def merge_guest_cart(user_id: int, items) -> dict:
    """
    Fold an anonymous cart into the user's cart after sign-in.

    Every entry goes through add_or_update; entries that fail validation are
    skipped and reported rather than failing the whole merge.
    """
    if not isinstance(items, list):
        raise ValidationError("items must be a list", details={"field": "items"})

    merged = []
    skipped = []
    for entry in items:
        product_id = entry.get("product_id") if isinstance(entry, dict) else None
        try:
            item = add_or_update(
                user_id,
                require_int(product_id, "product_id"),
                entry.get("quantity", 1),
            )
            merged.append(item.to_dict())
        except MarketplaceError as exc:
            db.session.rollback()
            skipped.append({"product_id": product_id, "reason": exc.message, "code": exc.code})

    return {"merged": merged, "skipped": skipped}
