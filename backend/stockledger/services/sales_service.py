"""
Sales Service - checkout as one ledger batch

WHY: A sale and its stock decrement must be indivisible. The sale header and
items are written by the coordinator's prepare() hook, after the row locks
are held, so an oversell attempt rolls back the sale together with the
stock check and no partial sale is ever visible.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Product, Sale, SaleItem
from ..models.stock import REASON_SALE
from stockledger.time_utils import utcnow
from .errors import LedgerValidationError, NotFound
from .notification_service import get_dispatcher, important_sale_intent
from .transaction_coordinator import BatchResult, Reference, get_coordinator


_invoice_lock = threading.Lock()
_last_invoice_millis = 0


def next_invoice_number() -> str:
    """
    "INV-<epoch millis>", strictly increasing within the process.

    Two checkouts in the same millisecond get consecutive numbers instead of
    colliding on the unique constraint.
    """
    global _last_invoice_millis
    with _invoice_lock:
        millis = max(int(time.time() * 1000), _last_invoice_millis + 1)
        _last_invoice_millis = millis
    return f"INV-{millis}"


def _parse_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise LedgerValidationError("items must be a non-empty list")

    parsed = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise LedgerValidationError(f"item {index} must be an object")
        product_id = item.get("product_id")
        size_id = item.get("size_id")
        quantity = item.get("quantity")
        unit_price = item.get("unit_price_cents")

        for name, value in (("product_id", product_id), ("size_id", size_id), ("quantity", quantity)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise LedgerValidationError(f"item {index}: {name} must be an integer")
        if quantity <= 0:
            raise LedgerValidationError(f"item {index}: quantity must be positive")

        if unit_price is None:
            product = db.session.get(Product, product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})
            if product.price_cents is None:
                raise LedgerValidationError(f"item {index}: product {product_id} has no price")
            unit_price = product.price_cents
        elif isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0:
            raise LedgerValidationError(f"item {index}: unit_price_cents must be a non-negative integer")

        parsed.append({
            "product_id": product_id,
            "size_id": size_id,
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "subtotal_cents": quantity * unit_price,
        })
    return parsed


def submit_sale(
    items,
    *,
    customer_ref: str | None = None,
    actor: str | None = None,
) -> tuple[Sale, BatchResult]:
    """
    Record a sale and decrement stock for every item.

    Raises:
        LedgerValidationError: malformed items
        NotFound: unknown product or size
        InsufficientStock: any (product, size) would go negative; nothing saved
        LockTimeout / PersistenceFailure: see TransactionCoordinator.submit
    """
    lines = _parse_items(items)
    total = sum(line["subtotal_cents"] for line in lines)

    def _create_sale() -> Reference:
        sale = Sale(
            invoice_number=next_invoice_number(),
            customer_ref=customer_ref,
            total_cents=total,
            actor=actor,
            created_at=utcnow(),
        )
        db.session.add(sale)
        for position, line in enumerate(lines):
            sale.items.append(SaleItem(position=position, **line))
        db.session.flush()
        return Reference("sale", sale.id)

    result = get_coordinator().submit(
        REASON_SALE,
        [(line["product_id"], line["size_id"], -line["quantity"]) for line in lines],
        actor=actor,
        prepare=_create_sale,
    )

    sale = get_sale(result.reference.id)
    intent = important_sale_intent(sale, current_app.config["IMPORTANT_SALE_THRESHOLD_CENTS"])
    if intent is not None:
        get_dispatcher().dispatch([intent])
        result.intents.append(intent)
    return sale, result


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def list_sales(
    *,
    customer_ref: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    query = db.session.query(Sale)
    if customer_ref:
        query = query.filter(Sale.customer_ref == customer_ref)
    if from_date:
        query = query.filter(Sale.created_at >= from_date)
    if to_date:
        query = query.filter(Sale.created_at <= to_date)

    total = query.count()
    query = query.order_by(Sale.created_at.desc(), Sale.id.desc())
    return query.offset(offset).limit(limit).all(), total
