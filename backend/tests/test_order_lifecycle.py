"""
Order lifecycle tests.

pending -> completed credits stock exactly once; pending -> cancelled has no
stock effect; terminal states never change.
"""

from datetime import date, timedelta

import pytest

from stockledger.models import HistoryEntry, Order
from stockledger.services import order_service
from stockledger.services.errors import (
    AlreadyCompleted,
    InvalidTransition,
    LedgerValidationError,
    NotFound,
)
from stockledger.services.history_service import verify_replay
from stockledger.services.notification_service import TYPE_ORDER_DELAYED
from stockledger.services.stock_ledger import StockLedger


@pytest.fixture
def pending_order(db_session, product, size_m, size_l):
    return order_service.create_order(
        items=[
            {"product_id": product.id, "size_id": size_m.id, "quantity": 5, "unit_cost_cents": 700},
            {"product_id": product.id, "size_id": size_l.id, "quantity": 2, "unit_cost_cents": 800},
        ],
        reference="PO-100",
        expected_arrival_date="2024-05-01",
        actor="buyer",
    )


def test_create_order_totals_items(pending_order):
    assert pending_order.status == order_service.STATUS_PENDING
    assert pending_order.total_cost_cents == 5 * 700 + 2 * 800
    assert pending_order.expected_arrival_date == date(2024, 5, 1)
    assert [item.position for item in pending_order.items] == [0, 1]


def test_create_order_validates_items(db_session, product, size_m):
    with pytest.raises(LedgerValidationError):
        order_service.create_order(items=[])
    with pytest.raises(LedgerValidationError):
        order_service.create_order(items=[
            {"product_id": product.id, "size_id": size_m.id, "quantity": 0, "unit_cost_cents": 1},
        ])
    with pytest.raises(NotFound):
        order_service.create_order(items=[
            {"product_id": 999, "size_id": size_m.id, "quantity": 1, "unit_cost_cents": 1},
        ])


def test_complete_credits_stock_once(db_session, pending_order, product, size_m, size_l, sink):
    order, result = order_service.complete_order(pending_order.id, actor="receiver")

    ledger = StockLedger()
    assert order.status == order_service.STATUS_COMPLETED
    assert order.arrival_date is not None
    assert order.completed_by == "receiver"
    assert ledger.get(product.id, size_m.id) == 5
    assert ledger.get(product.id, size_l.id) == 2
    assert result.reference.type == "order"
    assert {e.reason for e in result.entries} == {"purchase_receipt"}

    with pytest.raises(AlreadyCompleted):
        order_service.complete_order(pending_order.id)

    assert ledger.get(product.id, size_m.id) == 5
    assert db_session.query(HistoryEntry).filter_by(reference_type="order").count() == 2
    assert verify_replay() == []


def test_cancelled_order_cannot_complete(db_session, pending_order, product, size_m, sink):
    order_service.cancel_order(pending_order.id, actor="buyer", reason="supplier out of stock")

    with pytest.raises(InvalidTransition) as exc_info:
        order_service.complete_order(pending_order.id)

    assert not isinstance(exc_info.value, AlreadyCompleted)
    assert exc_info.value.from_status == "cancelled"
    assert StockLedger().get(product.id, size_m.id) == 0


def test_terminal_states_are_final(db_session, pending_order, sink):
    order_service.complete_order(pending_order.id)

    with pytest.raises(InvalidTransition):
        order_service.cancel_order(pending_order.id)
    with pytest.raises(InvalidTransition):
        order_service.update_order(pending_order.id, notes="late edit")
    with pytest.raises(InvalidTransition):
        order_service.delete_order(pending_order.id)


def test_update_pending_order_replaces_items(db_session, pending_order, product, size_m):
    order = order_service.update_order(
        pending_order.id,
        items=[{"product_id": product.id, "size_id": size_m.id, "quantity": 12, "unit_cost_cents": 650}],
        notes="revised quantities",
    )

    assert [(item.quantity, item.unit_cost_cents) for item in order.items] == [(12, 650)]
    assert order.total_cost_cents == 12 * 650
    assert order.notes == "revised quantities"
    assert order.reference == "PO-100"


def test_delete_pending_order(db_session, pending_order):
    order_id = pending_order.id
    order_service.delete_order(order_id)

    assert db_session.get(Order, order_id) is None
    with pytest.raises(NotFound):
        order_service.get_order(order_id)


def test_complete_order_without_items_is_rejected(db_session, pending_order, sink):
    order = db_session.get(Order, pending_order.id)
    order.items.clear()
    db_session.commit()

    with pytest.raises(LedgerValidationError):
        order_service.complete_order(pending_order.id)
    assert db_session.get(Order, pending_order.id).status == order_service.STATUS_PENDING


def test_find_delayed_orders(db_session, pending_order, product, size_m, sink):
    on_time = order_service.create_order(
        items=[{"product_id": product.id, "size_id": size_m.id, "quantity": 1, "unit_cost_cents": 1}],
        expected_arrival_date="2024-05-08",
    )

    delayed = order_service.find_delayed_orders(today=date(2024, 5, 10), delay_days=3)
    assert [(order.id, days_late) for order, days_late in delayed] == [(pending_order.id, 9)]

    intents = order_service.notify_delayed_orders(today=date(2024, 5, 10))
    assert [intent.entity_id for intent in intents] == [pending_order.id]
    assert [i.type for i in sink if i.type == TYPE_ORDER_DELAYED] == [TYPE_ORDER_DELAYED]

    order_service.complete_order(pending_order.id)
    assert order_service.find_delayed_orders(today=date(2024, 5, 10) + timedelta(days=30)) != []
    assert pending_order.id not in [
        order.id for order, _ in order_service.find_delayed_orders(today=date(2024, 6, 30))
    ]
    assert on_time.id in [order.id for order, _ in order_service.find_delayed_orders(today=date(2024, 6, 30))]


def test_list_orders_filters_by_status(db_session, pending_order, sink):
    order_service.complete_order(pending_order.id)

    orders, total = order_service.list_orders(status="completed")
    assert total == 1 and orders[0].id == pending_order.id

    with pytest.raises(LedgerValidationError):
        order_service.list_orders(status="shipped")


def test_completion_uses_items_edited_before_the_lock(db_session, pending_order, product, size_m, size_l, monkeypatch, sink):
    real_get_coordinator = order_service.get_coordinator
    edits = []

    def edit_then_submit():
        if not edits:
            edits.append(1)
            order_service.update_order(
                pending_order.id,
                items=[{"product_id": product.id, "size_id": size_m.id, "quantity": 9, "unit_cost_cents": 700}],
            )
        return real_get_coordinator()

    monkeypatch.setattr(order_service, "get_coordinator", edit_then_submit)
    order, result = order_service.complete_order(pending_order.id)

    assert order.status == order_service.STATUS_COMPLETED
    assert StockLedger().get(product.id, size_m.id) == 9
    assert StockLedger().get(product.id, size_l.id) == 0
    assert [entry.delta for entry in result.entries] == [9]


def test_completion_times_out_while_order_is_locked(app, db_session, pending_order, monkeypatch, sink):
    from stockledger.services.concurrency import get_lock_registry, order_key
    from stockledger.services.errors import LockTimeout

    monkeypatch.setitem(app.config, "LEDGER_LOCK_TIMEOUT_SECONDS", 0.05)
    with get_lock_registry().hold([order_key(pending_order.id)], timeout=1):
        with pytest.raises(LockTimeout):
            order_service.complete_order(pending_order.id)

    assert db_session.get(Order, pending_order.id).status == order_service.STATUS_PENDING
