# Overview: Supplier order lifecycle; completion is the only path that credits received stock.

"""
Order Lifecycle

STATES:
    pending --complete--> completed   (terminal, stock credited once)
    pending --cancel----> cancelled   (terminal, no stock effect)

RULES:
- No transition leaves a terminal state (InvalidTransition).
- Completing a completed order raises AlreadyCompleted and credits nothing.
- Items, header fields and deletion are only allowed while pending.
- Every mutation holds the order's key lock. Completion passes the order
  key to the coordinator as a guard key, so it is taken in the same sorted
  pass as the stock row locks.
- Inside the batch the status is re-read and the pending -> completed flip
  is a conditional UPDATE on status and version, so a racing completion
  finds no pending row and an edit made after the items were read forces a
  fresh attempt with the new items.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Order, OrderItem, Product, Size
from ..models.stock import REASON_PURCHASE_RECEIPT
from stockledger.time_utils import utcnow
from .concurrency import get_lock_registry, order_key
from .errors import AlreadyCompleted, InvalidTransition, LedgerValidationError, NotFound, PersistenceFailure
from .notification_service import NotificationIntent, delayed_order_intent, get_dispatcher
from .transaction_coordinator import BatchResult, Reference, get_coordinator


STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = (STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED)


def _parse_expected_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise LedgerValidationError("expected_arrival_date must be an ISO date (YYYY-MM-DD)")
    raise LedgerValidationError("expected_arrival_date must be an ISO date (YYYY-MM-DD)")


def _parse_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise LedgerValidationError("items must be a non-empty list")

    parsed = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise LedgerValidationError(f"item {index} must be an object")
        values = {}
        for name in ("product_id", "size_id", "quantity", "unit_cost_cents"):
            value = item.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise LedgerValidationError(f"item {index}: {name} must be an integer")
            values[name] = value
        if values["quantity"] <= 0:
            raise LedgerValidationError(f"item {index}: quantity must be positive")
        if values["unit_cost_cents"] < 0:
            raise LedgerValidationError(f"item {index}: unit_cost_cents cannot be negative")

        if db.session.get(Product, values["product_id"]) is None:
            raise NotFound(f"Product {values['product_id']} not found", details={"product_id": values["product_id"]})
        if db.session.get(Size, values["size_id"]) is None:
            raise NotFound(f"Size {values['size_id']} not found", details={"size_id": values["size_id"]})

        values["subtotal_cents"] = values["quantity"] * values["unit_cost_cents"]
        parsed.append(values)
    return parsed


def _replace_items(order: Order, lines: list[dict]) -> None:
    order.items.clear()
    db.session.flush()
    for position, line in enumerate(lines):
        order.items.append(OrderItem(position=position, **line))
    order.total_cost_cents = sum(line["subtotal_cents"] for line in lines)


def _lock_timeout() -> float:
    return current_app.config["LEDGER_LOCK_TIMEOUT_SECONDS"]


def _reload(order_id: int) -> Order:
    order = (
        db.session.query(Order)
        .filter_by(id=order_id)
        .populate_existing()
        .first()
    )
    if order is None:
        raise NotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _require_pending(order: Order, action: str, to_status: str | None = None) -> None:
    if order.status == STATUS_PENDING:
        return
    raise InvalidTransition(
        order.id,
        order.status,
        to_status or order.status,
        message=f"Cannot {action} a {order.status} order. Only pending orders can be changed.",
    )


def create_order(
    *,
    items,
    reference: str | None = None,
    expected_arrival_date=None,
    notes: str | None = None,
    actor: str | None = None,
) -> Order:
    lines = _parse_items(items)
    order = Order(
        reference=(reference or "").strip() or None,
        status=STATUS_PENDING,
        expected_arrival_date=_parse_expected_date(expected_arrival_date),
        notes=notes,
        created_by=actor,
        created_at=utcnow(),
    )
    db.session.add(order)
    _replace_items(order, lines)
    db.session.commit()
    return order


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def list_orders(
    *,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Order], int]:
    query = db.session.query(Order)
    if status:
        if status not in ORDER_STATUSES:
            raise LedgerValidationError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
        query = query.filter(Order.status == status)

    total = query.count()
    query = query.order_by(Order.created_at.desc(), Order.id.desc())
    return query.offset(offset).limit(limit).all(), total


_UNSET = object()


def update_order(
    order_id: int,
    *,
    items=None,
    reference=_UNSET,
    expected_arrival_date=_UNSET,
    notes=_UNSET,
) -> Order:
    """Edit a pending order's header and/or replace its items."""
    get_order(order_id)
    with get_lock_registry().hold([order_key(order_id)], _lock_timeout()):
        order = _reload(order_id)
        _require_pending(order, "edit")

        if items is not None:
            _replace_items(order, _parse_items(items))
        if reference is not _UNSET:
            order.reference = (reference or "").strip() or None
        if expected_arrival_date is not _UNSET:
            order.expected_arrival_date = _parse_expected_date(expected_arrival_date)
        if notes is not _UNSET:
            order.notes = notes

        # Bumps version_id even when only items changed
        order.updated_at = utcnow()
        db.session.commit()
        return order


def delete_order(order_id: int) -> None:
    """Delete a pending order and its items. Completed orders are part of the audit trail."""
    get_order(order_id)
    with get_lock_registry().hold([order_key(order_id)], _lock_timeout()):
        order = _reload(order_id)
        _require_pending(order, "delete")
        db.session.delete(order)
        db.session.commit()


class _ItemsChanged(Exception):
    """The order was edited between reading its items and locking it."""


def _check_completable(order: Order) -> None:
    if order.status == STATUS_COMPLETED:
        raise AlreadyCompleted(order.id)
    if order.status != STATUS_PENDING:
        raise InvalidTransition(order.id, order.status, STATUS_COMPLETED)
    if not order.items:
        raise LedgerValidationError(f"Order {order.id} has no items to receive")


def complete_order(order_id: int, *, actor: str | None = None) -> tuple[Order, BatchResult]:
    """
    Mark a pending order as arrived and credit its items to stock, exactly once.

    Raises:
        NotFound: unknown order
        AlreadyCompleted: the order was completed before (nothing credited)
        InvalidTransition: the order was cancelled
        LedgerValidationError: the order has no items
    """
    attempts = current_app.config["LEDGER_COMMIT_ATTEMPTS"]
    for _ in range(attempts):
        order = _reload(order_id)
        _check_completable(order)
        rows = [(item.product_id, item.size_id, item.quantity) for item in order.items]
        version = order.version_id
        label = order.reference or order_id

        def _mark_completed() -> Reference:
            current = _reload(order_id)
            _check_completable(current)
            if current.version_id != version:
                raise _ItemsChanged()

            now = utcnow()
            result = db.session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == STATUS_PENDING,
                    Order.version_id == version,
                )
                .values(
                    status=STATUS_COMPLETED,
                    arrival_date=now,
                    completed_by=actor,
                    updated_at=now,
                    version_id=version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyCompleted(order_id)
            return Reference("order", order_id)

        try:
            result = get_coordinator().submit(
                REASON_PURCHASE_RECEIPT,
                rows,
                actor=actor,
                note=f"Order {label} received",
                guard_keys=[order_key(order_id)],
                prepare=_mark_completed,
            )
        except _ItemsChanged:
            current_app.logger.info("Order %s changed while completing; re-reading items", order_id)
            continue
        return _reload(order_id), result

    raise PersistenceFailure(
        f"Order {order_id} kept changing while being completed; try again",
        details={"order_id": order_id},
    )


def cancel_order(order_id: int, *, actor: str | None = None, reason: str | None = None) -> Order:
    get_order(order_id)
    with get_lock_registry().hold([order_key(order_id)], _lock_timeout()):
        order = _reload(order_id)
        _require_pending(order, "cancel", STATUS_CANCELLED)

        order.status = STATUS_CANCELLED
        order.cancelled_by = actor
        order.cancelled_at = utcnow()
        order.cancellation_reason = reason
        db.session.commit()
        return order


def find_delayed_orders(
    *,
    today: date | None = None,
    delay_days: int | None = None,
) -> list[tuple[Order, int]]:
    """Pending orders more than delay_days past their expected arrival, with days late."""
    today = today or utcnow().date()
    if delay_days is None:
        delay_days = current_app.config["ORDER_DELAY_DAYS"]
    cutoff = today - timedelta(days=delay_days)

    orders = (
        db.session.query(Order)
        .filter(
            Order.status == STATUS_PENDING,
            Order.expected_arrival_date.isnot(None),
            Order.expected_arrival_date < cutoff,
        )
        .order_by(Order.expected_arrival_date.asc(), Order.id.asc())
        .all()
    )
    return [(order, (today - order.expected_arrival_date).days) for order in orders]


def notify_delayed_orders(*, today: date | None = None) -> list[NotificationIntent]:
    intents = [delayed_order_intent(order, days_late) for order, days_late in find_delayed_orders(today=today)]
    if intents:
        get_dispatcher().dispatch(intents)
    return intents
