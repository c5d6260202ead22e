# backend/stockledger/routes/orders.py
"""
Supplier order routes.

LIFECYCLE: pending -> completed | cancelled. Completion credits stock once;
a repeated completion returns 409 and changes nothing.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_json, with_actor
from ..validation import optional_text, pagination
from stockledger.services import history_service, order_service
from stockledger.services.errors import LedgerError


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _order_payload(order, include_history: bool = False) -> dict:
    data = {"order": order.to_dict(include_items=True)}
    if include_history:
        entries = history_service.entries_for_reference("order", order.id)
        data["history"] = [entry.to_dict() for entry in entries]
    return data


@orders_bp.post("")
@require_json
@with_actor
def create_order_route():
    """
    Create a pending order.

    Body: {"items": [{"product_id", "size_id", "quantity", "unit_cost_cents"}],
           "reference"?, "expected_arrival_date"? (YYYY-MM-DD), "notes"?}
    """
    payload = request.get_json(silent=True)
    try:
        order = order_service.create_order(
            items=payload.get("items"),
            reference=optional_text(payload, "reference", max_length=128),
            expected_arrival_date=payload.get("expected_arrival_date"),
            notes=optional_text(payload, "notes", max_length=2000),
            actor=g.actor,
        )
        return jsonify(_order_payload(order)), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
def list_orders_route():
    try:
        limit, offset = pagination(request.args)
        orders, total = order_service.list_orders(
            status=request.args.get("status"), limit=limit, offset=offset,
        )
        return jsonify({
            "items": [order.to_dict() for order in orders],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.get("/delayed")
def delayed_orders_route():
    delayed = order_service.find_delayed_orders()
    return jsonify({
        "delay_days": current_app.config["ORDER_DELAY_DAYS"],
        "items": [{**order.to_dict(), "days_late": days_late} for order, days_late in delayed],
    }), 200


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify(_order_payload(order, include_history=True)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.put("/<int:order_id>")
@require_json
def update_order_route(order_id: int):
    """Edit a pending order. Only the fields present in the body change."""
    payload = request.get_json(silent=True)
    try:
        changes = {}
        if "items" in payload:
            changes["items"] = payload["items"]
        if "reference" in payload:
            changes["reference"] = optional_text(payload, "reference", max_length=128)
        if "expected_arrival_date" in payload:
            changes["expected_arrival_date"] = payload["expected_arrival_date"]
        if "notes" in payload:
            changes["notes"] = optional_text(payload, "notes", max_length=2000)

        order = order_service.update_order(order_id, **changes)
        return jsonify(_order_payload(order)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(order_id)
        return jsonify({"deleted": True, "order_id": order_id}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.post("/<int:order_id>/complete")
@with_actor
def complete_order_route(order_id: int):
    """Mark the order as arrived and credit its items to stock."""
    try:
        order, result = order_service.complete_order(order_id, actor=g.actor)
        return jsonify({**_order_payload(order), "batch": result.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@with_actor
def cancel_order_route(order_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        order = order_service.cancel_order(
            order_id,
            actor=g.actor,
            reason=optional_text(payload, "reason", max_length=2000),
        )
        return jsonify(_order_payload(order)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
