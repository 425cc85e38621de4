from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z

# Fulfillment statuses of a single order item
STATUS_PENDING = "Pending"
STATUS_PROCESSING = "Processing"
STATUS_SHIPPED = "Shipped"
STATUS_DELIVERED = "Delivered"
STATUS_CANCELLED = "Cancelled"

ITEM_STATUSES = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)

# Only ever produced by derive_order_status, never stored on an item
ORDER_STATUS_CLOSED = "Closed"


class Order(db.Model):
    """
    Immutable purchase record created by checkout.

    Money columns are written once (total = subtotal + tax) and never
    recomputed. The order-level status is not stored; it is derived from the
    item statuses on every read.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.UniqueConstraint("buyer_id", "idempotency_key", name="uq_orders_buyer_idempotency_key"),
        db.Index("ix_orders_buyer_created", "buyer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable order number (e.g., "O-20250101-001")
    order_number = db.Column(db.String(32), nullable=False)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    subtotal = db.Column(db.Numeric(18, 2), nullable=False)
    tax = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="THB")

    shipping_address_snapshot = db.Column(db.Text, nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    buyer = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")

    def to_dict(self, items: list | None = None) -> dict:
        from ..services.fulfillment_service import derive_order_status

        visible = self.items if items is None else items
        return {
            "id": self.id,
            "order_number": self.order_number,
            "buyer_id": self.buyer_id,
            "subtotal": money_str(self.subtotal),
            "tax": money_str(self.tax),
            "total": money_str(self.total),
            "currency": self.currency,
            "shipping_address": self.shipping_address_snapshot,
            "status": derive_order_status([item.status for item in self.items]),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in visible],
        }


class OrderItem(db.Model):
    """
    One purchased product line with its price/name/image snapshot.

    Snapshot columns are copied from the product at checkout and never
    rewritten; only status and updated_at change afterwards.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.Index("ix_order_items_seller_created_status", "seller_id", "created_at", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    product_name = db.Column(db.String(255), nullable=False)
    product_image_url = db.Column(db.String(500), nullable=True)
    price_at_order_time = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    line_total = db.Column(db.Numeric(18, 2), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    seller = db.relationship("User", foreign_keys=[seller_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "seller_id": self.seller_id,
            "product_name": self.product_name,
            "product_image_url": self.product_image_url,
            "price_at_order_time": money_str(self.price_at_order_time),
            "currency": self.currency,
            "quantity": self.quantity,
            "line_total": money_str(self.line_total),
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderSequence(db.Model):
    """Per-UTC-day counter behind the NNN part of order numbers."""
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("sequence_date", name="uq_order_sequences_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sequence_date = db.Column(db.String(8), nullable=False)  # YYYYMMDD
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sequence_date": self.sequence_date,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
