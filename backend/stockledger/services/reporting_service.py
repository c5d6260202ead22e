# Overview: Read-only reports over stock, history and sales; never writes.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import HistoryEntry, Product, Sale, SaleItem, Size, StockRecord
from ..models.stock import HISTORY_REASONS
from stockledger.time_utils import PERIODS, parse_iso_datetime, period_label, to_utc_z, utcnow
from .history_service import verify_replay
from .stock_ledger import StockLedger


class ReportError(Exception):
    """Raised when report parameters are invalid."""
    pass


def _parse_dt(value: str | None, name: str) -> datetime | None:
    if not value:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ReportError(f"{name} must be an ISO-8601 datetime")


def _parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    start_dt = _parse_dt(start, "start")
    end_dt = _parse_dt(end, "end")
    if start_dt and end_dt and start_dt > end_dt:
        raise ReportError("start must not be after end")
    return start_dt, end_dt


def _check_group_by(group_by: str) -> None:
    if group_by not in PERIODS:
        raise ReportError(f"group_by must be one of: {', '.join(PERIODS)}")


def _names() -> tuple[dict[int, str], dict[int, str]]:
    products = {pid: name for pid, name in db.session.query(Product.id, Product.name)}
    sizes = {sid: name for sid, name in db.session.query(Size.id, Size.name)}
    return products, sizes


def stock_as_of(*, as_of: str | None = None, product_id: int | None = None) -> dict:
    """
    Stock per (product, size) reconstructed from history at as_of (inclusive).

    Without as_of this is "now" and must agree with the live stock rows.
    """
    as_of_dt = _parse_dt(as_of, "as_of") or utcnow()

    query = db.session.query(
        HistoryEntry.product_id,
        HistoryEntry.size_id,
        func.coalesce(func.sum(HistoryEntry.delta), 0).label("stock"),
    ).filter(HistoryEntry.occurred_at <= as_of_dt)
    if product_id is not None:
        query = query.filter(HistoryEntry.product_id == product_id)

    rows = (
        query.group_by(HistoryEntry.product_id, HistoryEntry.size_id)
        .order_by(HistoryEntry.product_id.asc(), HistoryEntry.size_id.asc())
        .all()
    )
    products, sizes = _names()
    return {
        "as_of": to_utc_z(as_of_dt),
        "rows": [
            {
                "product_id": row.product_id,
                "size_id": row.size_id,
                "product_name": products.get(row.product_id),
                "size_name": sizes.get(row.size_id),
                "stock": int(row.stock or 0),
            }
            for row in rows
        ],
    }


def movement_report(
    *,
    start: str | None = None,
    end: str | None = None,
    group_by: str = "day",
    product_id: int | None = None,
) -> dict:
    """Units in and out per period and reason, from the history trail."""
    _check_group_by(group_by)
    start_dt, end_dt = _parse_range(start, end)

    query = db.session.query(HistoryEntry.occurred_at, HistoryEntry.reason, HistoryEntry.delta)
    if product_id is not None:
        query = query.filter(HistoryEntry.product_id == product_id)
    if start_dt:
        query = query.filter(HistoryEntry.occurred_at >= start_dt)
    if end_dt:
        query = query.filter(HistoryEntry.occurred_at <= end_dt)

    periods: dict[str, dict] = {}
    for occurred_at, reason, delta in query.order_by(HistoryEntry.occurred_at.asc(), HistoryEntry.id.asc()):
        label = period_label(occurred_at, group_by)
        bucket = periods.setdefault(label, {
            "period": label,
            "units_in": 0,
            "units_out": 0,
            "net": 0,
            "by_reason": {reason_name: 0 for reason_name in HISTORY_REASONS},
        })
        if delta > 0:
            bucket["units_in"] += delta
        else:
            bucket["units_out"] += -delta
        bucket["net"] += delta
        bucket["by_reason"][reason] += delta

    return {
        "group_by": group_by,
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "product_id": product_id,
        "rows": [periods[label] for label in sorted(periods)],
    }


def sales_report(
    *,
    start: str | None = None,
    end: str | None = None,
    group_by: str = "day",
) -> dict:
    _check_group_by(group_by)
    start_dt, end_dt = _parse_range(start, end)

    query = db.session.query(Sale)
    if start_dt:
        query = query.filter(Sale.created_at >= start_dt)
    if end_dt:
        query = query.filter(Sale.created_at <= end_dt)

    periods: dict[str, dict] = {}
    for sale in query.order_by(Sale.created_at.asc(), Sale.id.asc()):
        label = period_label(sale.created_at, group_by)
        bucket = periods.setdefault(label, {
            "period": label,
            "sales_count": 0,
            "items_sold": 0,
            "gross_sales_cents": 0,
        })
        bucket["sales_count"] += 1
        bucket["items_sold"] += sum(item.quantity for item in sale.items)
        bucket["gross_sales_cents"] += sale.total_cents

    rows = [periods[label] for label in sorted(periods)]
    return {
        "group_by": group_by,
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "total_sales_cents": sum(row["gross_sales_cents"] for row in rows),
        "rows": rows,
    }


def top_products(
    *,
    start: str | None = None,
    end: str | None = None,
    limit: int = 10,
) -> dict:
    """Best sellers by units sold in the range."""
    if limit <= 0:
        raise ReportError("limit must be positive")
    start_dt, end_dt = _parse_range(start, end)

    units = func.sum(SaleItem.quantity).label("units_sold")
    revenue = func.sum(SaleItem.subtotal_cents).label("revenue_cents")
    query = (
        db.session.query(SaleItem.product_id, Product.sku, Product.name, units, revenue)
        .join(Sale, Sale.id == SaleItem.sale_id)
        .join(Product, Product.id == SaleItem.product_id)
    )
    if start_dt:
        query = query.filter(Sale.created_at >= start_dt)
    if end_dt:
        query = query.filter(Sale.created_at <= end_dt)

    rows = (
        query.group_by(SaleItem.product_id, Product.sku, Product.name)
        .order_by(units.desc(), SaleItem.product_id.asc())
        .limit(limit)
        .all()
    )
    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "rows": [
            {
                "product_id": row.product_id,
                "sku": row.sku,
                "name": row.name,
                "units_sold": int(row.units_sold or 0),
                "revenue_cents": int(row.revenue_cents or 0),
            }
            for row in rows
        ],
    }


def low_stock_report(*, threshold: int | None = None) -> dict:
    if threshold is None:
        threshold = current_app.config["LOW_STOCK_THRESHOLD"]
    high_at = current_app.config["LOW_STOCK_HIGH_PRIORITY_AT"]
    records: list[StockRecord] = StockLedger().low_stock(threshold)
    return {
        "threshold": threshold,
        "rows": [
            {**record.to_dict(), "priority": "high" if record.stock <= high_at else "medium"}
            for record in records
        ],
    }


def replay_check() -> dict:
    problems = verify_replay()
    return {
        "ok": not problems,
        "checked_at": to_utc_z(utcnow()),
        "mismatches": problems,
    }
