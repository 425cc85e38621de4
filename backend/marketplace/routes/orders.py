# Overview: Flask API routes for checkout and order history; parses input and returns JSON responses.

# backend/marketplace/routes/orders.py
"""
Order routes.

POST /from-cart honours an Idempotency-Key header: a retried submission with
the same key returns the order the first one created (200) instead of
placing a second order (201).
"""
from flask import Blueprint, request, jsonify, current_app, g

from ..errors import MarketplaceError, ValidationError
from ..services import checkout_service, fulfillment_service, order_service
from ..decorators import require_auth
from ..time_utils import parse_iso_datetime

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _date_arg(name: str):
    try:
        return parse_iso_datetime(request.args.get(name))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date", details={"field": name})


@orders_bp.post("/from-cart")
@require_auth
def create_from_cart_route():
    """Body: {"shipping_address": str}; header Idempotency-Key optional."""
    data = request.get_json(silent=True) or {}
    try:
        key = request.headers.get("Idempotency-Key")
        if key is None:
            key = data.get("idempotency_key")
            if key is not None and not isinstance(key, str):
                raise ValidationError("idempotency_key must be a string", details={"field": "idempotency_key"})
        key = checkout_service.normalize_idempotency_key(key)
        if key:
            existing = checkout_service.find_order_by_idempotency_key(g.current_user.id, key)
            if existing is not None:
                return jsonify({**order_service.serialize_order(existing, list(existing.items)), "replayed": True}), 200

        order = checkout_service.create_order_from_cart(
            g.current_user.id,
            data.get("shipping_address"),
            idempotency_key=key,
        )
        return jsonify(order_service.serialize_order(order, list(order.items))), 201
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order from cart")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/checkout-summary")
@require_auth
def checkout_summary_route():
    try:
        return jsonify(checkout_service.get_checkout_summary(g.current_user.id)), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build checkout summary")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
def list_orders_route():
    """
    Query params:
    - scope: buyer (default) or seller
    - page, page_size
    - status, from_date, to_date, search
    """
    try:
        result = order_service.list_orders(
            g.current_user,
            scope=request.args.get("scope", order_service.SCOPE_BUYER),
            page=request.args.get("page", 1, type=int),
            page_size=request.args.get("page_size", 10, type=int),
            status=request.args.get("status"),
            from_date=_date_arg("from_date"),
            to_date=_date_arg("to_date"),
            search=request.args.get("search"),
        )
        return jsonify(result), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/search")
@require_auth
def search_orders_route():
    try:
        results = order_service.search_by_order_number(g.current_user, request.args.get("order_number", ""))
        return jsonify({"items": results, "count": len(results)}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to search orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/stats")
@require_auth
def order_stats_route():
    try:
        scope = request.args.get("scope", order_service.SCOPE_BUYER)
        return jsonify(order_service.get_order_stats(g.current_user, scope)), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute order stats")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        return jsonify(order_service.get_order(order_id, g.current_user)), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/can-cancel")
@require_auth
def can_cancel_route(order_id: int):
    try:
        # Visibility check first so foreign orders stay 404
        order_service.get_order(order_id, g.current_user)
        return jsonify({"order_id": order_id, "can_cancel": fulfillment_service.can_cancel_order(order_id)}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check order cancellation")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    try:
        order = fulfillment_service.cancel_order(order_id, g.current_user.id)
        return jsonify(order_service.serialize_order(order, list(order.items))), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
