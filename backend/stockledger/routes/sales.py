# backend/stockledger/routes/sales.py
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_json, with_actor
from ..validation import coerce_datetime, optional_text, pagination
from stockledger.services import history_service, sales_service
from stockledger.services.errors import LedgerError


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
@require_json
@with_actor
def create_sale_route():
    """
    Record a sale and decrement stock for each item, all or nothing.

    Body: {"items": [{"product_id", "size_id", "quantity", "unit_price_cents"?}],
           "customer_ref"?}
    Returns 409 with the failing row when stock is insufficient.
    """
    payload = request.get_json(silent=True)
    try:
        sale, result = sales_service.submit_sale(
            payload.get("items"),
            customer_ref=optional_text(payload, "customer_ref", max_length=64),
            actor=g.actor,
        )
        return jsonify({"sale": sale.to_dict(include_items=True), "batch": result.to_dict()}), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
def list_sales_route():
    try:
        limit, offset = pagination(request.args)
        sales, total = sales_service.list_sales(
            customer_ref=request.args.get("customer_ref"),
            from_date=coerce_datetime(request.args.get("from"), "from"),
            to_date=coerce_datetime(request.args.get("to"), "to"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [sale.to_dict() for sale in sales],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
        entries = history_service.entries_for_reference("sale", sale.id)
        return jsonify({
            "sale": sale.to_dict(include_items=True),
            "history": [entry.to_dict() for entry in entries],
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
