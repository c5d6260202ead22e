"""
CLI command tests via Flask's CLI runner.
"""

from sqlalchemy import text

from stockledger.models import HistoryEntry, Product, StockRecord
from stockledger.services import order_service

from conftest import stock_up


def test_seed_demo_records_opening_stock(app, db_session, sink):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "seed-demo", "--quantity", "4"])
    assert result.exit_code == 0, result.output
    assert "Opening stock recorded" in result.output

    assert db_session.query(Product).count() == 3
    assert db_session.query(StockRecord).count() == 9
    assert db_session.query(HistoryEntry).count() == 9

    # Catalog is reused on a second run
    result = runner.invoke(args=["ledger", "seed-demo", "--quantity", "0"])
    assert result.exit_code == 0, result.output
    assert db_session.query(Product).count() == 3


def test_verify_replay_exit_codes(app, db_session, product, size_m, sink):
    runner = app.test_cli_runner()
    stock_up(product.id, size_m.id, 5)

    result = runner.invoke(args=["ledger", "verify-replay"])
    assert result.exit_code == 0
    assert "PASS" in result.output

    db_session.execute(text("UPDATE stock_records SET stock = 2"))
    db_session.commit()

    result = runner.invoke(args=["ledger", "verify-replay"])
    assert result.exit_code == 1
    assert "replayed=5" in result.output


def test_low_stock_command(app, db_session, product, size_m, sink):
    stock_up(product.id, size_m.id, 1)

    result = app.test_cli_runner().invoke(args=["ledger", "low-stock"])
    assert result.exit_code == 0
    assert "Basic Tee" in result.output


def test_check_delayed_dispatches(app, db_session, product, size_m, sink):
    order_service.create_order(
        items=[{"product_id": product.id, "size_id": size_m.id, "quantity": 1, "unit_cost_cents": 100}],
        reference="PO-OLD",
        expected_arrival_date="2000-01-01",
    )

    result = app.test_cli_runner().invoke(args=["orders", "check-delayed"])
    assert result.exit_code == 0
    assert "PO-OLD" in result.output
    assert [intent.type for intent in sink] == ["order_delayed"]
