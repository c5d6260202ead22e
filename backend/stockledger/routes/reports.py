from flask import Blueprint, jsonify, request

from stockledger.services import reporting_service
from stockledger.services.errors import LedgerError
from stockledger.validation import coerce_int


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/stock-as-of")
def stock_as_of_report():
    try:
        report = reporting_service.stock_as_of(
            as_of=request.args.get("as_of"),
            product_id=coerce_int(request.args.get("product_id"), "product_id", required=False),
        )
        return jsonify(report), 200
    except reporting_service.ReportError as exc:
        return jsonify({"error": str(exc)}), 400
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@reports_bp.get("/movements")
def movement_report():
    try:
        report = reporting_service.movement_report(
            start=request.args.get("start"),
            end=request.args.get("end"),
            group_by=request.args.get("group_by", "day"),
            product_id=coerce_int(request.args.get("product_id"), "product_id", required=False),
        )
        return jsonify(report), 200
    except reporting_service.ReportError as exc:
        return jsonify({"error": str(exc)}), 400
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@reports_bp.get("/sales")
def sales_report():
    try:
        report = reporting_service.sales_report(
            start=request.args.get("start"),
            end=request.args.get("end"),
            group_by=request.args.get("group_by", "day"),
        )
        return jsonify(report), 200
    except reporting_service.ReportError as exc:
        return jsonify({"error": str(exc)}), 400


@reports_bp.get("/top-products")
def top_products_report():
    try:
        limit = coerce_int(request.args.get("limit"), "limit", required=False) or 10
        report = reporting_service.top_products(
            start=request.args.get("start"),
            end=request.args.get("end"),
            limit=limit,
        )
        return jsonify(report), 200
    except reporting_service.ReportError as exc:
        return jsonify({"error": str(exc)}), 400
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@reports_bp.get("/low-stock")
def low_stock_report():
    try:
        threshold = coerce_int(request.args.get("threshold"), "threshold", required=False)
        return jsonify(reporting_service.low_stock_report(threshold=threshold)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code


@reports_bp.get("/replay-check")
def replay_check_report():
    report = reporting_service.replay_check()
    return jsonify(report), 200 if report["ok"] else 409
