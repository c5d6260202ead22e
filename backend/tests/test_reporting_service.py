import unittest
from datetime import datetime

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import HistoryEntry, Product, Sale, SaleItem, Size
from stockledger.services import reporting_service
from stockledger.services.reporting_service import ReportError
from stockledger.services.stock_ledger import StockLedger


class ReportingServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "SECRET_KEY": "test",
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "TESTING": True,
            "LOW_STOCK_THRESHOLD": 5,
            "LOW_STOCK_HIGH_PRIORITY_AT": 2,
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        self.product = Product(sku="RPT-1", name="Report Tee", price_cents=1000)
        self.other = Product(sku="RPT-2", name="Report Cap", price_cents=500)
        self.size = Size(name="One", sort_order=0)
        db.session.add_all([self.product, self.other, self.size])
        db.session.commit()

        # 2024-03-04 is a Monday
        self._history(self.product, 10, 0, "adjustment", datetime(2024, 3, 4, 9, 0))
        self._history(self.product, -4, 10, "sale", datetime(2024, 3, 5, 12, 0))
        self._history(self.product, 6, 6, "purchase_receipt", datetime(2024, 3, 12, 8, 0))
        self._history(self.other, 3, 0, "adjustment", datetime(2024, 4, 1, 8, 0))
        StockLedger().apply([(self.product.id, self.size.id, 12), (self.other.id, self.size.id, 3)])

        self._sale("INV-1", datetime(2024, 3, 5, 12, 0), [(self.product, 4, 1000)])
        self._sale("INV-2", datetime(2024, 3, 20, 12, 0), [(self.other, 2, 500), (self.product, 1, 1000)])
        db.session.commit()

    def _history(self, product, delta, previous, reason, occurred_at):
        db.session.add(HistoryEntry(
            batch_id=f"seed-{product.id}-{occurred_at:%Y%m%d%H}",
            product_id=product.id,
            size_id=self.size.id,
            previous_stock=previous,
            new_stock=previous + delta,
            delta=delta,
            reason=reason,
            occurred_at=occurred_at,
        ))

    def _sale(self, invoice_number, created_at, lines):
        sale = Sale(invoice_number=invoice_number, created_at=created_at, total_cents=0)
        for position, (product, quantity, price) in enumerate(lines):
            sale.items.append(SaleItem(
                position=position,
                product_id=product.id,
                size_id=self.size.id,
                quantity=quantity,
                unit_price_cents=price,
                subtotal_cents=quantity * price,
            ))
            sale.total_cents += quantity * price
        db.session.add(sale)

    def test_stock_as_of_replays_history(self):
        report = reporting_service.stock_as_of(as_of="2024-03-06T00:00:00Z")
        self.assertEqual(
            [(row["product_id"], row["stock"]) for row in report["rows"]],
            [(self.product.id, 6)],
        )
        self.assertEqual(report["as_of"], "2024-03-06T00:00:00Z")

        report = reporting_service.stock_as_of(as_of="2024-03-12T08:00:00Z", product_id=self.product.id)
        self.assertEqual(report["rows"][0]["stock"], 12)

    def test_movement_report_groups_by_week(self):
        report = reporting_service.movement_report(group_by="week", product_id=self.product.id)
        self.assertEqual([row["period"] for row in report["rows"]], ["2024-W10", "2024-W11"])
        first = report["rows"][0]
        self.assertEqual((first["units_in"], first["units_out"], first["net"]), (10, 4, 6))
        self.assertEqual(first["by_reason"]["sale"], -4)

    def test_movement_report_respects_range(self):
        report = reporting_service.movement_report(
            start="2024-03-05T00:00:00Z", end="2024-03-31T23:59:59Z", group_by="month",
        )
        self.assertEqual(len(report["rows"]), 1)
        self.assertEqual(report["rows"][0]["period"], "2024-03")
        self.assertEqual(report["rows"][0]["net"], 2)

    def test_sales_report_by_month(self):
        report = reporting_service.sales_report(group_by="month")
        self.assertEqual(report["rows"], [{
            "period": "2024-03",
            "sales_count": 2,
            "items_sold": 7,
            "gross_sales_cents": 6000,
        }])
        self.assertEqual(report["total_sales_cents"], 6000)

    def test_top_products_orders_by_units(self):
        report = reporting_service.top_products(limit=1)
        self.assertEqual(len(report["rows"]), 1)
        self.assertEqual(report["rows"][0]["sku"], "RPT-1")
        self.assertEqual(report["rows"][0]["units_sold"], 5)
        self.assertEqual(report["rows"][0]["revenue_cents"], 5000)

    def test_low_stock_report_marks_priority(self):
        report = reporting_service.low_stock_report()
        self.assertEqual(report["threshold"], 5)
        self.assertEqual([(row["product_id"], row["priority"]) for row in report["rows"]], [
            (self.other.id, "medium"),
        ])

    def test_replay_check_passes_for_consistent_data(self):
        self.assertTrue(reporting_service.replay_check()["ok"])

    def test_invalid_parameters(self):
        with self.assertRaises(ReportError):
            reporting_service.movement_report(group_by="quarter")
        with self.assertRaises(ReportError):
            reporting_service.sales_report(start="2024-04-01", end="2024-03-01")
        with self.assertRaises(ReportError):
            reporting_service.stock_as_of(as_of="not-a-date")
        with self.assertRaises(ReportError):
            reporting_service.top_products(limit=0)


if __name__ == "__main__":
    unittest.main()
