# Overview: Flask API routes for the buyer cart; parses input and returns JSON responses.

# backend/marketplace/routes/cart.py
"""
Cart routes.

PUT /items/<id> is a compare-and-swap: the body carries the version the
client last saw, and a stale version answers 409 with the current version
so the client can refresh and retry.
"""
from flask import Blueprint, request, jsonify, current_app, g

from ..errors import MarketplaceError
from ..services import cart_service
from ..decorators import require_auth

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
def get_cart_route():
    try:
        summary = cart_service.get_cart_summary(g.current_user.id, currency=request.args.get("currency"))
        return jsonify(summary), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.get("/count")
@require_auth
def cart_count_route():
    try:
        return jsonify({"count": cart_service.count_items(g.current_user.id)}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to count cart items")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("/items")
@require_auth
def add_item_route():
    """Body: {"product_id": int, "quantity": int (default 1)}"""
    data = request.get_json(silent=True) or {}
    try:
        item = cart_service.add_or_update(g.current_user.id, data.get("product_id"), data.get("quantity", 1))
        return jsonify(item.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add item to cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/items/<int:cart_item_id>")
@require_auth
def set_quantity_route(cart_item_id: int):
    """Body: {"quantity": int, "version": int}"""
    data = request.get_json(silent=True) or {}
    try:
        item = cart_service.set_quantity(
            g.current_user.id, cart_item_id, data.get("quantity"), data.get("version"),
        )
        return jsonify(item.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/items/<int:cart_item_id>")
@require_auth
def remove_item_route(cart_item_id: int):
    try:
        removed = cart_service.remove(g.current_user.id, cart_item_id)
        return jsonify({"removed": removed}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/products/<int:product_id>")
@require_auth
def remove_product_route(product_id: int):
    try:
        removed = cart_service.remove_by_product(g.current_user.id, product_id)
        return jsonify({"removed": removed}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove product from cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("")
@require_auth
def clear_cart_route():
    try:
        removed = cart_service.clear_cart(g.current_user.id)
        return jsonify({"removed_count": removed}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("/merge")
@require_auth
def merge_cart_route():
    """Body: {"items": [{"product_id": int, "quantity": int}, ...]}"""
    data = request.get_json(silent=True) or {}
    try:
        result = cart_service.merge_guest_cart(g.current_user.id, data.get("items"))
        return jsonify(result), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to merge cart")
        return jsonify({"error": "Internal server error"}), 500
