# Overview: Flask API routes for product listings; parses input and returns JSON responses.

# backend/marketplace/routes/products.py
"""
Product management routes.

Reads are public. Writes require an approved seller and are limited to the
seller's own products.
"""
from flask import Blueprint, request, jsonify, current_app, g

from ..errors import MarketplaceError
from ..services import catalog_service
from ..decorators import require_auth, require_seller

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.post("")
@require_auth
@require_seller
def create_product_route():
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.create_product(g.current_user.id, payload)
        return jsonify(product.to_dict()), 201
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/mine")
@require_auth
@require_seller
def list_my_products_route():
    include_inactive = request.args.get("include_inactive", "true").lower() != "false"
    try:
        products = catalog_service.list_seller_products(g.current_user.id, include_inactive=include_inactive)
        return jsonify({"items": [p.to_dict() for p in products], "count": len(products)}), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list seller products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        return jsonify(catalog_service.get_product(product_id).to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/<int:product_id>")
@require_auth
@require_seller
def update_product_route(product_id: int):
    """
    Partial update of name, description, image_url, price, base_currency,
    stock or is_active. Orders already placed keep their snapshot.
    """
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.update_product(product_id, g.current_user.id, payload)
        return jsonify(product.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.post("/<int:product_id>/stock")
@require_auth
@require_seller
def restock_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.restock(product_id, g.current_user.id, payload.get("quantity"))
        return jsonify(product.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to restock product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.patch("/<int:product_id>/active")
@require_auth
@require_seller
def set_active_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.set_active(product_id, g.current_user.id, payload.get("is_active"))
        return jsonify(product.to_dict()), 200
    except MarketplaceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to change product availability")
        return jsonify({"error": "Internal server error"}), 500
