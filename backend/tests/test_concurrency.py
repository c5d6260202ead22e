"""
Concurrency tests against a file-backed SQLite database.

Each worker thread runs in its own app context (own session/connection).
Batches that touch the same rows are serialized by the ledger locks, so the
final stock must equal the serial result and no oversell may slip through.
"""

import threading

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import HistoryEntry, Product, Size
from stockledger.models.stock import REASON_ADJUSTMENT, REASON_SALE
from stockledger.services import order_service
from stockledger.services.errors import AlreadyCompleted, InsufficientStock
from stockledger.services.history_service import verify_replay
from stockledger.services.stock_ledger import StockLedger
from stockledger.services.transaction_coordinator import get_coordinator

from conftest import TEST_CONFIG


@pytest.fixture
def file_app(tmp_path):
    config = dict(TEST_CONFIG)
    config.update({
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        "LEDGER_LOCK_TIMEOUT_SECONDS": 10.0,
        "LEDGER_COMMIT_ATTEMPTS": 5,
    })
    app = create_app(config)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def catalog(file_app):
    with file_app.app_context():
        product = Product(sku="CONC-1", name="Concurrency Tee", price_cents=1000)
        size_a = Size(name="A", sort_order=1)
        size_b = Size(name="B", sort_order=2)
        db.session.add_all([product, size_a, size_b])
        db.session.commit()
        return product.id, size_a.id, size_b.id


def run_threads(app, worker, count):
    errors = []
    results = []
    barrier = threading.Barrier(count)

    def target(index):
        with app.app_context():
            try:
                barrier.wait()
                results.append(worker(index))
            except Exception as exc:
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=target, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors


def test_concurrent_sales_never_oversell(file_app, catalog):
    product_id, size_a, _ = catalog
    with file_app.app_context():
        get_coordinator().submit(REASON_ADJUSTMENT, [(product_id, size_a, 10)])

    def sell(_):
        return get_coordinator().submit(REASON_SALE, [(product_id, size_a, -3)])

    results, errors = run_threads(file_app, sell, 6)

    assert len(results) == 3
    assert len(errors) == 3
    assert all(isinstance(error, InsufficientStock) for error in errors)
    with file_app.app_context():
        assert StockLedger().get(product_id, size_a) == 1
        assert verify_replay() == []


def test_opposite_order_batches_do_not_deadlock(file_app, catalog):
    product_id, size_a, size_b = catalog
    with file_app.app_context():
        get_coordinator().submit(REASON_ADJUSTMENT, [(product_id, size_a, 50), (product_id, size_b, 50)])

    def shuffle(index):
        if index % 2:
            rows = [(product_id, size_a, -1), (product_id, size_b, 1)]
        else:
            rows = [(product_id, size_b, -1), (product_id, size_a, 1)]
        return get_coordinator().submit(REASON_ADJUSTMENT, rows)

    results, errors = run_threads(file_app, shuffle, 8)

    assert errors == []
    assert len(results) == 8
    with file_app.app_context():
        assert StockLedger().get(product_id, size_a) == 50
        assert StockLedger().get(product_id, size_b) == 50
        assert db.session.query(HistoryEntry).count() == 2 + 8 * 2
        assert verify_replay() == []


def test_concurrent_completion_credits_once(file_app, catalog):
    product_id, size_a, _ = catalog
    with file_app.app_context():
        order = order_service.create_order(
            items=[{"product_id": product_id, "size_id": size_a, "quantity": 4, "unit_cost_cents": 500}],
        )
        order_id = order.id

    def complete(_):
        order, _ = order_service.complete_order(order_id)
        return order.status

    results, errors = run_threads(file_app, complete, 5)

    assert results == ["completed"]
    assert len(errors) == 4
    assert all(isinstance(error, AlreadyCompleted) for error in errors)
    with file_app.app_context():
        assert StockLedger().get(product_id, size_a) == 4
        assert verify_replay() == []
