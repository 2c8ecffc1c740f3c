# Overview: Flask API routes for stock lookups from POS terminals.

from flask import Blueprint, request, jsonify, current_app

from ..services import stock_service
from ..services.stock_service import StockError


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("/stock")
def query_stock_route():
    """
    Current stock and price for one sku.

    Query: ?sku=...&pharmacy_id=...
    """
    sku = (request.args.get("sku") or "").strip()
    pharmacy_id = request.args.get("pharmacy_id", type=int)
    if not sku or not pharmacy_id:
        return jsonify({"error": "sku and pharmacy_id required", "code": "validation_error"}), 400

    try:
        product = stock_service.query_stock(sku, pharmacy_id)
        return jsonify({"product": product.to_dict()}), 200
    except StockError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
    except Exception:
        current_app.logger.exception("Failed to query stock")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500


@products_bp.get("/by-name")
def find_by_name_route():
    name = (request.args.get("name") or "").strip()
    pharmacy_id = request.args.get("pharmacy_id", type=int)
    if not name or not pharmacy_id:
        return jsonify({"error": "name and pharmacy_id required", "code": "validation_error"}), 400

    product = stock_service.find_by_name(name, pharmacy_id)
    if not product:
        return jsonify({"error": "Product not found", "code": "not_found", "details": {"name": name}}), 404
    return jsonify({"product": product.to_dict()}), 200


@products_bp.get("/search")
def search_products_route():
    """
    Till product search.

    Query: ?q=...&pharmacy_id=...
    Scanner codes match the sku exactly, anything else searches names.
    """
    pharmacy_id = request.args.get("pharmacy_id", type=int)
    if not pharmacy_id:
        return jsonify({"error": "pharmacy_id required", "code": "validation_error"}), 400

    products = stock_service.search_products(pharmacy_id, request.args.get("q", ""))
    return jsonify({"products": [p.to_dict() for p in products]}), 200
