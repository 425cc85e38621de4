# Overview: Product listings owned by sellers; the stock that checkout decrements.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update

from ..errors import Forbidden, NotFoundError, ValidationError
from ..extensions import db
from ..models import Product, User
from ..models.identity import is_active_seller
from ..validation import PRODUCT_POLICY, enforce_rules_product, require_positive_int, validate_payload


def _require_seller(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None or not is_active_seller(user):
        raise Forbidden("Only approved sellers can manage products")
    return user


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def get_owned_product(product_id: int, seller_id: int) -> Product:
    product = get_product(product_id)
    if product.seller_id != seller_id:
        raise Forbidden("You can only manage your own products", details={"product_id": product_id})
    return product


def create_product(seller_id: int, payload: dict) -> Product:
    _require_seller(seller_id)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch, current_app.config["SUPPORTED_CURRENCIES"])

    patch.setdefault("base_currency", current_app.config["BASE_CURRENCY"])
    patch.setdefault("stock", 0)
    patch.setdefault("is_active", True)

    product = Product(seller_id=seller_id, **patch)
    db.session.add(product)
    db.session.commit()
    return product


def update_product(product_id: int, seller_id: int, payload: dict) -> Product:
    """
    Partial update by the owning seller.

    Order items keep their own snapshot, so price or name changes here never
    reach orders that were already placed.
    """
    product = get_owned_product(product_id, seller_id)
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch, current_app.config["SUPPORTED_CURRENCIES"])

    for key, value in patch.items():
        setattr(product, key, value)
    db.session.commit()
    return product


def restock(product_id: int, seller_id: int, quantity) -> Product:
    """Add stock with an atomic increment; never a read-modify-write."""
    quantity = require_positive_int(quantity, "quantity")
    product = get_owned_product(product_id, seller_id)

    db.session.execute(
        update(Product)
        .where(Product.id == product.id)
        .values(stock=Product.stock + quantity)
    )
    db.session.commit()
    db.session.refresh(product)
    return product


def set_active(product_id: int, seller_id: int, is_active: bool) -> Product:
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be true or false", details={"field": "is_active"})
    product = get_owned_product(product_id, seller_id)
    product.is_active = is_active
    db.session.commit()
    return product


def list_seller_products(seller_id: int, include_inactive: bool = True) -> list[Product]:
    query = db.session.query(Product).filter(Product.seller_id == seller_id)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    return query.order_by(Product.id.asc()).all()
