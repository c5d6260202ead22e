# backend/stockledger/routes/inventory.py
"""
Stock and history routes.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- History filters are inclusive on both ends.

Every write goes through the transaction coordinator; these routes never
touch stock rows directly.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_json, with_actor
from ..validation import coerce_datetime, coerce_int, optional_text, pagination
from stockledger.services import adjustment_service, history_service
from stockledger.services.errors import LedgerError
from stockledger.services.stock_ledger import StockLedger


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/stock")
def list_stock_route():
    try:
        product_id = coerce_int(request.args.get("product_id"), "product_id", required=False)
        size_id = coerce_int(request.args.get("size_id"), "size_id", required=False)

        ledger = StockLedger()
        if product_id is not None and size_id is not None:
            return jsonify({
                "product_id": product_id,
                "size_id": size_id,
                "stock": ledger.get(product_id, size_id),
            }), 200

        records = ledger.snapshot(product_id=product_id)
        return jsonify({"items": [record.to_dict() for record in records], "count": len(records)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.get("/low-stock")
def low_stock_route():
    try:
        threshold = coerce_int(request.args.get("threshold"), "threshold", required=False)
        if threshold is None:
            threshold = current_app.config["LOW_STOCK_THRESHOLD"]
        if threshold < 0:
            return jsonify({"error": "threshold cannot be negative"}), 400

        records = StockLedger().low_stock(threshold)
        return jsonify({
            "threshold": threshold,
            "items": [record.to_dict() for record in records],
            "count": len(records),
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.get("/history")
def list_history_route():
    """
    Query the stock movement trail, newest first.

    Filters: product_id, size_id, reason, reference_type, reference_id,
    from, to, limit, offset.
    """
    try:
        limit, offset = pagination(request.args)
        entries, total = history_service.list_history(
            product_id=coerce_int(request.args.get("product_id"), "product_id", required=False),
            size_id=coerce_int(request.args.get("size_id"), "size_id", required=False),
            reason=request.args.get("reason"),
            reference_type=request.args.get("reference_type"),
            reference_id=coerce_int(request.args.get("reference_id"), "reference_id", required=False),
            from_date=coerce_datetime(request.args.get("from"), "from"),
            to_date=coerce_datetime(request.args.get("to"), "to"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [entry.to_dict() for entry in entries],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


def _submit(kind: str):
    payload = request.get_json(silent=True)
    try:
        note = optional_text(payload, "note")
        if kind == "return":
            adjustment, result = adjustment_service.submit_return(
                payload.get("entries"), actor=g.actor, note=note,
            )
        else:
            adjustment, result = adjustment_service.submit_adjustment(
                payload.get("entries"), actor=g.actor, note=note,
            )
        return jsonify({"adjustment": adjustment.to_dict(), "batch": result.to_dict()}), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to submit %s", kind)
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjustments")
@require_json
@with_actor
def create_adjustment_route():
    """
    Manual stock correction.

    Body: {"entries": [{"product_id", "size_id", "delta", "reason"}], "note"}
    Every entry needs a non-zero delta and a reason.
    """
    return _submit("adjustment")


@inventory_bp.post("/returns")
@require_json
@with_actor
def create_return_route():
    """Customer return: positive deltas only."""
    return _submit("return")


@inventory_bp.get("/adjustments")
def list_adjustments_route():
    try:
        limit, offset = pagination(request.args)
        adjustments, total = adjustment_service.list_adjustments(
            kind=request.args.get("kind"), limit=limit, offset=offset,
        )
        return jsonify({
            "items": [adjustment.to_dict() for adjustment in adjustments],
            "total": total,
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@inventory_bp.get("/adjustments/<int:adjustment_id>")
def get_adjustment_route(adjustment_id: int):
    try:
        adjustment = adjustment_service.get_adjustment(adjustment_id)
        entries = history_service.entries_for_reference(adjustment.kind, adjustment.id)
        return jsonify({
            "adjustment": adjustment.to_dict(),
            "history": [entry.to_dict() for entry in entries],
        }), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
