# Overview: Product/size catalog used by the ledger for validation and display names.

"""
Catalog Service

A new product may come with opening stock per size. Opening stock is an
ordinary adjustment batch referencing the product, so it has history like any
other movement. Sizes that open below the low-stock threshold (zero included)
raise a stock_low notice right away; a zero opening creates no stock row.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product, Size
from ..models.stock import REASON_ADJUSTMENT
from .errors import LedgerValidationError, NotFound
from .notification_service import NotificationIntent, NotificationTrigger, StockTransition, get_dispatcher
from .transaction_coordinator import BatchResult, Reference, catalog_names, get_coordinator


def _check_product_fields(sku, name, price_cents) -> tuple[str, str]:
    sku = (sku or "").strip()
    name = (name or "").strip()
    if not sku:
        raise LedgerValidationError("sku is required")
    if not name:
        raise LedgerValidationError("name is required")
    if len(sku) > 64:
        raise LedgerValidationError("sku must be at most 64 characters")
    if len(name) > 255:
        raise LedgerValidationError("name must be at most 255 characters")
    if price_cents is not None and price_cents < 0:
        raise LedgerValidationError("price_cents cannot be negative")
    if db.session.query(Product).filter_by(sku=sku).first():
        raise LedgerValidationError(f"SKU {sku} already exists")
    return sku, name


def create_product(*, sku: str, name: str, price_cents: int | None = None, description: str | None = None) -> Product:
    sku, name = _check_product_fields(sku, name, price_cents)
    product = Product(sku=sku, name=name, price_cents=price_cents, description=description)
    db.session.add(product)
    db.session.commit()
    return product


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def get_or_create_size(name: str, sort_order: int = 0) -> Size:
    name = (name or "").strip()
    if not name:
        raise LedgerValidationError("size name is required")
    if len(name) > 32:
        raise LedgerValidationError("size name must be at most 32 characters")
    size = db.session.query(Size).filter_by(name=name).first()
    if size:
        return size
    size = Size(name=name, sort_order=sort_order)
    db.session.add(size)
    db.session.commit()
    return size


def list_sizes() -> list[Size]:
    return db.session.query(Size).order_by(Size.sort_order.asc(), Size.name.asc()).all()


def list_products(*, active_only: bool = True) -> list[Product]:
    query = db.session.query(Product)
    if active_only:
        query = query.filter(Product.is_active.is_(True))
    return query.order_by(Product.name.asc()).all()


def _parse_opening_stock(entries) -> list[tuple[int | None, str | None, int]]:
    """(size_id, size_name, stock) per entry; exactly one of size_id / size per entry."""
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise LedgerValidationError("sizes must be a list")

    parsed = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise LedgerValidationError(f"size {index} must be an object")
        size_id = entry.get("size_id")
        size_name = entry.get("size")
        stock = entry.get("stock", 0)

        if (size_id is None) == (size_name is None):
            raise LedgerValidationError(f"size {index}: give either size_id or size")
        if size_id is not None and (isinstance(size_id, bool) or not isinstance(size_id, int)):
            raise LedgerValidationError(f"size {index}: size_id must be an integer")
        if size_name is not None and (not isinstance(size_name, str) or not size_name.strip()):
            raise LedgerValidationError(f"size {index}: size must be a non-empty string")
        if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
            raise LedgerValidationError(f"size {index}: stock must be a non-negative integer")

        parsed.append((size_id, size_name.strip() if size_name else None, stock))
    return parsed


def _resolve_sizes(opening: list[tuple[int | None, str | None, int]]) -> list[tuple[Size, int]]:
    resolved = []
    seen: set[int] = set()
    for size_id, size_name, stock in opening:
        if size_id is not None:
            size = db.session.get(Size, size_id)
            if size is None:
                raise NotFound(f"Size {size_id} not found", details={"size_id": size_id})
        else:
            size = get_or_create_size(size_name)
        if size.id in seen:
            raise LedgerValidationError(f"size {size.name} listed more than once")
        seen.add(size.id)
        resolved.append((size, stock))
    return resolved


def create_product_with_stock(
    *,
    sku: str,
    name: str,
    price_cents: int | None = None,
    description: str | None = None,
    sizes=None,
    actor: str | None = None,
) -> tuple[Product, BatchResult | None, list[NotificationIntent]]:
    """
    Create a product and book its opening stock per size.

    Returns the product, the opening batch (None when no size opens above
    zero) and the opening low-stock intents, which have been dispatched.

    Raises:
        LedgerValidationError: bad fields, duplicate SKU or malformed sizes
        NotFound: unknown size_id
        LockTimeout / PersistenceFailure: see TransactionCoordinator.submit
    """
    _check_product_fields(sku, name, price_cents)
    opening = _resolve_sizes(_parse_opening_stock(sizes))

    product = create_product(sku=sku, name=name, price_cents=price_cents, description=description)

    rows = [(product.id, size.id, stock) for size, stock in opening if stock > 0]
    result = None
    if rows:
        result = get_coordinator().submit(
            REASON_ADJUSTMENT,
            rows,
            Reference("product", product.id),
            actor=actor,
            note="Opening stock",
        )

    trigger = NotificationTrigger.from_config(current_app.config, names=catalog_names)
    intents = trigger.evaluate_opening(
        StockTransition(product.id, size.id, 0, stock) for size, stock in opening
    )
    if intents:
        get_dispatcher().dispatch(intents)
    return product, result, intents
