# Overview: Flask API routes for seller fulfillment; parses input and returns JSON responses.

# backend/marketplace/routes/seller.py
"""
Seller routes: order items the seller is responsible for and their
fulfillment state.

Bulk endpoints answer 200 with {"updated", "skipped"} even when some items
could not move; a single foreign item rejects the whole batch with 403.
"""
from flask import Blueprint, request, jsonify, current_app, g

from ..errors import MarketplaceError
from ..services import fulfillment_service, order_service
from ..decorators import require_auth, require_seller

seller_bp = Blueprint("seller", __name__, url_prefix="/api/seller")


@seller_bp.get("/orders")
@require_auth
@require_seller
def seller_orders_route():
    try:
        result = order_service.list_orders(
            g.current_user,
            scope=order_service.SCOPE_SELLER,
            page=request.args.get("page", 1, type=int),
            page_size=request.args.get("page_size", 10, type=int),
            status=request.args.get("status"),
            search=request.args.get("search"),
        )
        return jsonify(result), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list seller orders")
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.get("/dashboard")
@require_auth
@require_seller
def dashboard_route():
    try:
        return jsonify(order_service.get_seller_dashboard(g.current_user.id)), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to build seller dashboard")
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.put("/order-items/<int:order_item_id>/status")
@require_auth
@require_seller
def update_item_status_route(order_item_id: int):
    """Body: {"status": "Processing" | "Shipped" | "Delivered" | "Cancelled"}"""
    data = request.get_json(silent=True) or {}
    try:
        item = fulfillment_service.update_status(order_item_id, data.get("status"), g.current_user.id)
        return jsonify(item.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order item status")
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.post("/order-items/<int:order_item_id>/cancel")
@require_auth
@require_seller
def cancel_item_route(order_item_id: int):
    try:
        item = fulfillment_service.cancel_item(order_item_id, g.current_user.id)
        return jsonify(item.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order item")
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.put("/order-items/bulk-status")
@require_auth
@require_seller
def bulk_status_route():
    """Body: {"order_item_ids": [int, ...], "status": str}"""
    data = request.get_json(silent=True) or {}
    try:
        result = fulfillment_service.bulk_update_status(
            data.get("order_item_ids"), data.get("status"), g.current_user.id,
        )
        return jsonify(result.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to bulk update order items")
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.post("/order-items/bulk-cancel")
@require_auth
@require_seller
def bulk_cancel_route():
    data = request.get_json(silent=True) or {}
    try:
        result = fulfillment_service.bulk_cancel(data.get("order_item_ids"), g.current_user.id)
        return jsonify(result.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to bulk cancel order items")
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.get("/order-items/<int:order_item_id>/next-statuses")
@require_auth
@require_seller
def next_statuses_route(order_item_id: int):
    try:
        return jsonify(fulfillment_service.get_valid_next_statuses(order_item_id, g.current_user.id)), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load next statuses")
        return jsonify({"error": "Internal server error"}), 500
