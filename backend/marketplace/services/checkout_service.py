# Overview: Cart-to-order conversion in one atomic transaction.

"""
Checkout Engine

create_order_from_cart turns the buyer's cart into an order, or changes
nothing at all:

1. take the write lock (SQLite BEGIN IMMEDIATE, row locks elsewhere)
2. re-read every product and verify it is active with enough stock
3. decrement stock with `UPDATE ... WHERE stock >= quantity`; a zero-row
   update means a concurrent checkout won the race, so the whole
   transaction is rolled back and retried from step 1
4. snapshot name, image, price and currency into Pending order items
5. allocate the order number
6. empty the cart, then commit

A buyer-supplied idempotency key makes a repeated submission return the
order the first submission created.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, EmptyCart, InsufficientStock, ValidationError
from ..extensions import db
from ..models import CartItem, Order, OrderItem, Product
from ..models.orders import STATUS_PENDING
from ..money import money_str, to_money
from ..time_utils import utcnow
from . import cart_service, exchange_rate_service, order_number_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry

MAX_IDEMPOTENCY_KEY_LENGTH = 128


class TaxCalculator(Protocol):
    def __call__(self, subtotal: Decimal, shipping_address: str) -> Decimal:
        ...


class FlatRateTaxCalculator:
    """Tax as a fixed share of the subtotal, in basis points (1000 = 10%)."""

    def __init__(self, rate_bps: int):
        if rate_bps < 0:
            raise ValueError("rate_bps must be >= 0")
        self.rate_bps = rate_bps

    def __call__(self, subtotal: Decimal, shipping_address: str) -> Decimal:
        return to_money(Decimal(subtotal) * self.rate_bps / Decimal(10000))


def default_tax_calculator() -> TaxCalculator:
    return FlatRateTaxCalculator(current_app.config["TAX_RATE_BPS"])


class _StockRace(Exception):
    """The conditional decrement touched no row: someone else took the stock first."""

    def __init__(self, product_id: int, requested: int):
        super().__init__(f"stock race on product {product_id}")
        self.product_id = product_id
        self.requested = requested


@dataclass
class _Line:
    product: Product
    quantity: int


def _decrement_stock(product_id: int, quantity: int) -> bool:
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity, sales_count=Product.sales_count + quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def normalize_idempotency_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    key = str(idempotency_key).strip()
    if not key:
        return None
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency key exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
            details={"field": "idempotency_key"},
        )
    return key


def find_order_by_idempotency_key(buyer_id: int, idempotency_key: str) -> Order | None:
    return db.session.query(Order).filter_by(buyer_id=buyer_id, idempotency_key=idempotency_key).first()


def _load_lines(user_id: int) -> list[_Line]:
    cart_items = lock_for_update(
        db.session.query(CartItem).filter(CartItem.user_id == user_id).order_by(CartItem.id.asc())
    ).all()
    if not cart_items:
        raise EmptyCart()

    product_ids = sorted({item.product_id for item in cart_items})
    products = {
        product.id: product
        for product in lock_for_update(
            db.session.query(Product).filter(Product.id.in_(product_ids)).order_by(Product.id.asc())
        ).populate_existing().all()
    }

    lines = []
    for item in cart_items:
        product = products.get(item.product_id)
        if product is None or not product.is_active:
            raise InsufficientStock(
                item.product_id, item.quantity, 0,
                product_name=product.name if product else None,
            )
        if product.stock < item.quantity:
            raise InsufficientStock(product.id, item.quantity, product.stock, product_name=product.name)
        lines.append(_Line(product=product, quantity=item.quantity))

    # Decrement in a fixed order so concurrent checkouts lock rows alike
    lines.sort(key=lambda line: line.product.id)
    return lines


def _checkout_attempt(
    user_id: int,
    shipping_address: str,
    tax_calculator: TaxCalculator,
    idempotency_key: str | None,
) -> Order:
    begin_write_transaction()
    if idempotency_key:
        # A duplicate submission may have committed while we waited for the lock
        existing = find_order_by_idempotency_key(user_id, idempotency_key)
        if existing is not None:
            db.session.commit()
            return existing
    lines = _load_lines(user_id)

    for line in lines:
        if not _decrement_stock(line.product.id, line.quantity):
            raise _StockRace(line.product.id, line.quantity)

    provider = exchange_rate_service.get_rate_provider()
    rates = provider.get_rates()
    now = utcnow()

    order_items = []
    subtotal = Decimal("0.00")
    for line in lines:
        product = line.product
        price = to_money(product.price)
        line_total = to_money(price * line.quantity)
        subtotal += exchange_rate_service.convert(line_total, product.base_currency, provider.base_currency, rates)
        order_items.append(OrderItem(
            product_id=product.id,
            seller_id=product.seller_id,
            product_name=product.name,
            product_image_url=product.image_url,
            price_at_order_time=price,
            currency=product.base_currency,
            quantity=line.quantity,
            line_total=line_total,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        ))

    subtotal = to_money(subtotal)
    tax = to_money(tax_calculator(subtotal, shipping_address))
    if tax < 0:
        raise ValidationError("Tax cannot be negative", details={"tax": money_str(tax)})

    order = Order(
        order_number=order_number_service.next_order_number(now.date()),
        buyer_id=user_id,
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
        currency=provider.base_currency,
        shipping_address_snapshot=shipping_address,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.session.add(order)
    db.session.flush()

    for item in order_items:
        item.order_id = order.id
    db.session.add_all(order_items)

    cart_service.clear_cart(user_id, commit=False)
    db.session.commit()
    return order


def create_order_from_cart(
    user_id: int,
    shipping_address: str,
    *,
    tax_calculator: TaxCalculator | None = None,
    idempotency_key: str | None = None,
) -> Order:
    """
    Convert the user's cart into an order atomically.

    Raises:
        EmptyCart: the cart has no rows
        InsufficientStock: a product is inactive or short, or stayed contended
            for CHECKOUT_MAX_ATTEMPTS attempts
        ValidationError: missing shipping address or bad idempotency key
    """
    if not isinstance(shipping_address, str) or not shipping_address.strip():
        raise ValidationError("Shipping address is required", details={"field": "shipping_address"})
    shipping_address = shipping_address.strip()
    key = normalize_idempotency_key(idempotency_key)
    tax_calculator = tax_calculator or default_tax_calculator()

    if key:
        existing = find_order_by_idempotency_key(user_id, key)
        if existing is not None:
            return existing

    attempts = current_app.config["CHECKOUT_MAX_ATTEMPTS"]
    last_race: _StockRace | None = None

    for attempt in range(1, attempts + 1):
        try:
            order = run_with_retry(
                lambda: _checkout_attempt(user_id, shipping_address, tax_calculator, key)
            )
        except _StockRace as race:
            db.session.rollback()
            last_race = race
            current_app.logger.info(
                "Checkout for user %s lost stock race on product %s (attempt %s/%s)",
                user_id, race.product_id, attempt, attempts,
            )
            continue
        except IntegrityError:
            db.session.rollback()
            # A duplicate submission with the same key committed first
            if key:
                existing = find_order_by_idempotency_key(user_id, key)
                if existing is not None:
                    return existing
            current_app.logger.info(
                "Checkout for user %s hit a uniqueness conflict (attempt %s/%s)",
                user_id, attempt, attempts,
            )
            continue
        except Exception:
            db.session.rollback()
            raise

        current_app.logger.info(
            "Created order %s for user %s: %s item(s), total %s %s",
            order.order_number, user_id, len(order.items), money_str(order.total), order.currency,
        )
        return order

    current_app.logger.warning("Checkout for user %s gave up after %s attempts", user_id, attempts)
    if last_race is not None:
        product = db.session.get(Product, last_race.product_id)
        raise InsufficientStock(
            last_race.product_id,
            last_race.requested,
            product.stock if product else 0,
            product_name=product.name if product else None,
        )
    raise ConflictError("Could not place the order; please retry")


def get_checkout_summary(user_id: int, tax_calculator: TaxCalculator | None = None) -> dict:
    """Preview of what create_order_from_cart would charge right now, without side effects."""
    tax_calculator = tax_calculator or default_tax_calculator()
    summary = cart_service.get_cart_summary(user_id)

    issues = list(summary["validation_warnings"])
    if not summary["items"]:
        issues.append("Cart is empty")

    subtotal = to_money(summary["total_amount"])
    tax = to_money(tax_calculator(subtotal, ""))
    return {
        "can_checkout": not issues,
        "issues": issues,
        "item_count": summary["total_items"],
        "subtotal": money_str(subtotal),
        "tax": money_str(tax),
        "total": money_str(subtotal + tax),
        "currency": summary["currency"],
    }
