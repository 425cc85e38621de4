# Overview: Per-item fulfillment state machine, seller batch transitions and derived order status.

"""
Fulfillment State Machine

    Pending -> Processing -> Shipped -> Delivered
       |           |
       +-----------+-------> Cancelled

Delivered and Cancelled are terminal. A seller moves an item only to its
single successor, or cancels it while it is still Pending/Processing.
Cancelling gives the quantity back to the product's stock.

Every status write is a compare-and-swap on the status the decision was
made against, so two sellers' tabs cannot both move the same item.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update

from ..errors import Forbidden, InvalidTransition, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, Product
from ..models.orders import (
    ITEM_STATUSES,
    ORDER_STATUS_CLOSED,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SHIPPED,
)
from ..time_utils import utcnow
from .security_service import log_security_event

_NEXT_STATUSES: dict[str, tuple[str, ...]] = {
    STATUS_PENDING: (STATUS_PROCESSING, STATUS_CANCELLED),
    STATUS_PROCESSING: (STATUS_SHIPPED, STATUS_CANCELLED),
    STATUS_SHIPPED: (STATUS_DELIVERED,),
    STATUS_DELIVERED: (),
    STATUS_CANCELLED: (),
}

CANCELLABLE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)

# Most urgent outstanding seller action first
_DERIVED_PRIORITY = (STATUS_PENDING, STATUS_PROCESSING, STATUS_SHIPPED)


@dataclass
class BulkTransitionResult:
    updated: list[int] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "updated": self.updated,
            "skipped": self.skipped,
            "updated_count": len(self.updated),
            "skipped_count": len(self.skipped),
        }


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

def valid_next_statuses(current: str) -> list[str]:
    return list(_NEXT_STATUSES.get(current, ()))


def can_transition(current: str, target: str) -> bool:
    return target in _NEXT_STATUSES.get(current, ())


def is_terminal(status: str) -> bool:
    return not _NEXT_STATUSES.get(status, ())


def transition_error_message(current: str, target: str) -> str:
    if current == target:
        return f"Order item is already in {current} status"
    valid_next = valid_next_statuses(current)
    if not valid_next:
        return f"Order item in {current} status cannot be changed (terminal state)"
    return f"Cannot transition from {current} to {target}. Valid transitions: {', '.join(valid_next)}"


def derive_order_status(statuses) -> str:
    """
    Order-level status as a function of its item statuses.

    One distinct status is the order status. Otherwise the most urgent
    outstanding step wins (Pending, then Processing, then Shipped); a mix of
    only Delivered and Cancelled is Closed. An order without items reads as
    Pending.
    """
    distinct = set(statuses)
    if not distinct:
        return STATUS_PENDING
    if len(distinct) == 1:
        return next(iter(distinct))
    for status in _DERIVED_PRIORITY:
        if status in distinct:
            return status
    return ORDER_STATUS_CLOSED


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validate_status(status) -> str:
    if status not in ITEM_STATUSES:
        raise ValidationError(
            f"Unknown status: {status}",
            details={"field": "status", "allowed": list(ITEM_STATUSES)},
        )
    return status


def _validate_ids(order_item_ids) -> list[int]:
    if not isinstance(order_item_ids, list) or not order_item_ids:
        raise ValidationError("order_item_ids must be a non-empty list", details={"field": "order_item_ids"})
    ids = []
    for raw in order_item_ids:
        if not isinstance(raw, int) or isinstance(raw, bool):
            raise ValidationError("order_item_ids must contain integers", details={"field": "order_item_ids"})
        if raw not in ids:
            ids.append(raw)
    return ids


def _forbidden(acting_seller_id: int, item_ids: list[int]) -> Forbidden:
    log_security_event(
        user_id=acting_seller_id,
        event_type="FULFILLMENT_FORBIDDEN",
        success=False,
        resource="order_items",
        action=",".join(str(i) for i in item_ids)[:255],
        reason="Seller does not own the order item(s)",
    )
    return Forbidden(
        "You don't have access to this order item",
        details={"order_item_ids": item_ids},
    )


def _get_item(order_item_id: int) -> OrderItem:
    item = db.session.get(OrderItem, order_item_id)
    if item is None:
        raise NotFoundError("OrderItem", order_item_id)
    return item


def _swap_status(item: OrderItem, target: str) -> bool:
    """Write target only if the row still holds the status we validated against."""
    expected = item.status
    changed = db.session.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id, OrderItem.status == expected)
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    if not changed:
        return False

    if target == STATUS_CANCELLED:
        db.session.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(
                stock=Product.stock + item.quantity,
                sales_count=Product.sales_count - item.quantity,
            )
            .execution_options(synchronize_session=False)
        )
    return True


def _raise_transition(item: OrderItem, target: str) -> None:
    raise InvalidTransition(
        transition_error_message(item.status, target),
        details={
            "order_item_id": item.id,
            "current_status": item.status,
            "target_status": target,
            "valid_next_statuses": valid_next_statuses(item.status),
        },
    )


def _concurrent_change(item: OrderItem, target: str) -> None:
    db.session.rollback()
    db.session.refresh(item)
    _raise_transition(item, target)


# ---------------------------------------------------------------------------
# Single item
# ---------------------------------------------------------------------------

def update_status(order_item_id: int, new_status: str, acting_seller_id: int) -> OrderItem:
    """
    Move one item to new_status on behalf of its seller.

    Raises:
        NotFoundError: unknown item
        Forbidden: the acting seller does not own the item
        InvalidTransition: new_status is not the item's next step
    """
    new_status = _validate_status(new_status)
    if new_status == STATUS_CANCELLED:
        return cancel_item(order_item_id, acting_seller_id)

    item = _get_item(order_item_id)
    if item.seller_id != acting_seller_id:
        raise _forbidden(acting_seller_id, [order_item_id])
    if not can_transition(item.status, new_status):
        _raise_transition(item, new_status)

    if not _swap_status(item, new_status):
        _concurrent_change(item, new_status)

    db.session.commit()
    db.session.refresh(item)
    return item


def cancel_item(order_item_id: int, acting_seller_id: int) -> OrderItem:
    """Cancel a Pending/Processing item and return its quantity to stock."""
    item = _get_item(order_item_id)
    if item.seller_id != acting_seller_id:
        raise _forbidden(acting_seller_id, [order_item_id])
    if not can_transition(item.status, STATUS_CANCELLED):
        _raise_transition(item, STATUS_CANCELLED)

    if not _swap_status(item, STATUS_CANCELLED):
        _concurrent_change(item, STATUS_CANCELLED)

    db.session.commit()
    db.session.refresh(item)
    return item


def get_valid_next_statuses(order_item_id: int, acting_seller_id: int) -> dict:
    item = _get_item(order_item_id)
    if item.seller_id != acting_seller_id:
        raise Forbidden("You don't have access to this order item", details={"order_item_ids": [order_item_id]})
    return {
        "order_item_id": item.id,
        "current_status": item.status,
        "valid_next_statuses": valid_next_statuses(item.status),
        "is_terminal": is_terminal(item.status),
    }


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

def _load_owned_batch(order_item_ids, acting_seller_id: int) -> list[OrderItem]:
    ids = _validate_ids(order_item_ids)
    items = db.session.query(OrderItem).filter(OrderItem.id.in_(ids)).all()
    by_id = {item.id: item for item in items}

    missing = [i for i in ids if i not in by_id]
    if missing:
        raise NotFoundError("OrderItem", missing)

    not_owned = [i for i in ids if by_id[i].seller_id != acting_seller_id]
    if not_owned:
        raise _forbidden(acting_seller_id, not_owned)

    return [by_id[i] for i in ids]


def _apply_batch(items: list[OrderItem], target: str) -> BulkTransitionResult:
    result = BulkTransitionResult()
    for item in items:
        if not can_transition(item.status, target):
            result.skipped.append({
                "order_item_id": item.id,
                "current_status": item.status,
                "reason": transition_error_message(item.status, target),
            })
            continue
        if _swap_status(item, target):
            result.updated.append(item.id)
        else:
            result.skipped.append({
                "order_item_id": item.id,
                "current_status": item.status,
                "reason": "Order item was changed by another request",
            })

    db.session.commit()
    if result.skipped:
        current_app.logger.info(
            "Bulk transition to %s: %s updated, %s skipped",
            target, len(result.updated), len(result.skipped),
        )
    return result


def bulk_update_status(order_item_ids, new_status: str, acting_seller_id: int) -> BulkTransitionResult:
    """
    Apply the single-item rule to each id independently.

    Authorization is all-or-nothing: one foreign item aborts the batch with
    Forbidden before anything changes. Items whose transition is not allowed
    are skipped and reported in the result.
    """
    new_status = _validate_status(new_status)
    if new_status == STATUS_CANCELLED:
        return bulk_cancel(order_item_ids, acting_seller_id)

    items = _load_owned_batch(order_item_ids, acting_seller_id)
    return _apply_batch(items, new_status)


def bulk_cancel(order_item_ids, acting_seller_id: int) -> BulkTransitionResult:
    items = _load_owned_batch(order_item_ids, acting_seller_id)
    return _apply_batch(items, STATUS_CANCELLED)


# ---------------------------------------------------------------------------
# Whole order (buyer side)
# ---------------------------------------------------------------------------

def can_cancel_order(order_id: int) -> bool:
    items = db.session.query(OrderItem.status).filter(OrderItem.order_id == order_id).all()
    return bool(items) and all(status in CANCELLABLE_STATUSES for (status,) in items)


def cancel_order(order_id: int, buyer_id: int) -> Order:
    """
    Buyer cancels every item of an order.

    Only allowed while every item is still Pending or Processing; restores
    stock for all of them in one transaction.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    if order.buyer_id != buyer_id:
        raise Forbidden("You can only cancel your own orders", details={"order_id": order_id})
    if not can_cancel_order(order_id):
        raise InvalidTransition(
            "Order cannot be cancelled at this stage",
            details={"order_id": order_id, "status": derive_order_status([i.status for i in order.items])},
        )

    for item in order.items:
        if not _swap_status(item, STATUS_CANCELLED):
            db.session.rollback()
            raise InvalidTransition(
                "Order was changed by another request; it can no longer be cancelled",
                details={"order_id": order_id, "order_item_id": item.id},
            )

    db.session.commit()
    db.session.refresh(order)
    return order
