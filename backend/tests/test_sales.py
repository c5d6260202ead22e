"""
Sales service tests: checkout is one atomic ledger batch.
"""

import pytest

from stockledger.models import HistoryEntry, Sale, SaleItem
from stockledger.services import sales_service
from stockledger.services.errors import InsufficientStock, LedgerValidationError, NotFound
from stockledger.services.notification_service import TYPE_IMPORTANT_SALE
from stockledger.services.stock_ledger import StockLedger

from conftest import stock_up


def test_invoice_numbers_are_unique_and_increasing():
    numbers = [sales_service.next_invoice_number() for _ in range(50)]
    assert len(set(numbers)) == 50
    values = [int(number.split("-", 1)[1]) for number in numbers]
    assert values == sorted(values)
    assert all(number.startswith("INV-") for number in numbers)


def test_sale_decrements_stock_and_links_history(db_session, product, size_m, size_l, sink):
    stock_up(product.id, size_m.id, 10)
    stock_up(product.id, size_l.id, 3)

    sale, result = sales_service.submit_sale(
        [
            {"product_id": product.id, "size_id": size_m.id, "quantity": 2},
            {"product_id": product.id, "size_id": size_l.id, "quantity": 1, "unit_price_cents": 1200},
        ],
        customer_ref="cust-9",
        actor="cashier",
    )

    assert sale.total_cents == 2 * 1500 + 1200
    assert sale.invoice_number.startswith("INV-")
    assert [item.subtotal_cents for item in sale.items] == [3000, 1200]
    assert StockLedger().get(product.id, size_m.id) == 8
    assert StockLedger().get(product.id, size_l.id) == 2

    entries = db_session.query(HistoryEntry).filter_by(reference_type="sale", reference_id=sale.id).all()
    assert sorted(entry.delta for entry in entries) == [-2, -1]
    assert all(entry.reason == "sale" and entry.actor == "cashier" for entry in entries)
    assert result.reference.id == sale.id


def test_oversell_saves_nothing(db_session, product, size_m, size_l, sink):
    stock_up(product.id, size_m.id, 10)
    stock_up(product.id, size_l.id, 1)

    with pytest.raises(InsufficientStock) as exc_info:
        sales_service.submit_sale([
            {"product_id": product.id, "size_id": size_m.id, "quantity": 2},
            {"product_id": product.id, "size_id": size_l.id, "quantity": 2},
        ])

    assert exc_info.value.size_id == size_l.id
    assert db_session.query(Sale).count() == 0
    assert db_session.query(SaleItem).count() == 0
    assert StockLedger().get(product.id, size_m.id) == 10


def test_sale_validates_items(db_session, product, size_m):
    with pytest.raises(LedgerValidationError):
        sales_service.submit_sale([])
    with pytest.raises(LedgerValidationError):
        sales_service.submit_sale([{"product_id": product.id, "size_id": size_m.id, "quantity": -1}])
    with pytest.raises(LedgerValidationError):
        sales_service.submit_sale([{"product_id": product.id, "size_id": size_m.id, "quantity": "2"}])
    with pytest.raises(NotFound):
        sales_service.submit_sale([{"product_id": 31337, "size_id": size_m.id, "quantity": 1}])


def test_important_sale_is_notified(db_session, product, size_m, sink):
    stock_up(product.id, size_m.id, 10)

    sale, result = sales_service.submit_sale([
        {"product_id": product.id, "size_id": size_m.id, "quantity": 1, "unit_price_cents": 50_000_000},
    ])

    important = [intent for intent in sink if intent.type == TYPE_IMPORTANT_SALE]
    assert len(important) == 1
    assert important[0].entity_id == sale.id
    assert important[0] in result.intents


def test_list_sales_filters_by_customer(db_session, product, size_m, sink):
    stock_up(product.id, size_m.id, 10)
    sales_service.submit_sale([{"product_id": product.id, "size_id": size_m.id, "quantity": 1}], customer_ref="a")
    sales_service.submit_sale([{"product_id": product.id, "size_id": size_m.id, "quantity": 1}], customer_ref="b")

    sales, total = sales_service.list_sales(customer_ref="b")
    assert total == 1
    assert sales[0].customer_ref == "b"
