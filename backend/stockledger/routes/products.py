# Overview: Flask API routes for the product catalog; new products may open with stock per size.

# backend/stockledger/routes/products.py
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_json, with_actor
from ..validation import coerce_int, optional_text
from stockledger.services import catalog_service
from stockledger.services.errors import LedgerError, LedgerValidationError
from stockledger.services.stock_ledger import StockLedger


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    """
    List products. Inactive products are included with ?include_inactive=1.
    """
    include_inactive = request.args.get("include_inactive") in {"1", "true", "yes"}
    products = catalog_service.list_products(active_only=not include_inactive)
    return jsonify({"items": [product.to_dict() for product in products]}), 200


@products_bp.post("")
@require_json
@with_actor
def create_product_route():
    """
    Create a product, optionally with opening stock.

    Body: {"sku", "name", "price_cents"?, "description"?,
           "sizes"?: [{"size_id" | "size", "stock"}]}
    A size given by name is created when missing. Opening stock is booked as
    an adjustment referencing the product; sizes opening below the low-stock
    threshold raise a notification.
    """
    payload = request.get_json(silent=True)
    try:
        sku = payload.get("sku")
        name = payload.get("name")
        if sku is not None and not isinstance(sku, str):
            raise LedgerValidationError("sku must be a string")
        if name is not None and not isinstance(name, str):
            raise LedgerValidationError("name must be a string")

        product, result, intents = catalog_service.create_product_with_stock(
            sku=sku,
            name=name,
            price_cents=coerce_int(payload.get("price_cents"), "price_cents", required=False),
            description=optional_text(payload, "description", max_length=2000),
            sizes=payload.get("sizes"),
            actor=g.actor,
        )
        return jsonify({
            "product": product.to_dict(),
            "stock": [record.to_dict() for record in StockLedger().snapshot(product_id=product.id)],
            "batch": result.to_dict() if result else None,
            "notifications": [intent.to_dict() for intent in intents],
        }), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/sizes")
def list_sizes_route():
    return jsonify({"items": [size.to_dict() for size in catalog_service.list_sizes()]}), 200


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = catalog_service.get_product(product_id)
        return jsonify({
            "product": product.to_dict(),
            "stock": [record.to_dict() for record in StockLedger().snapshot(product_id=product.id)],
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
