# Overview: Authoritative per-(product, size) stock with the never-negative invariant.

from __future__ import annotations

from typing import Iterable

from ..extensions import db
from ..models import Product, Size, StockRecord
from .concurrency import lock_for_update
from .errors import InsufficientStock, NotFound

"""
Stock ledger invariants (authoritative)

- StockRecord.stock is the single source of truth for current stock; it is
  never recomputed from history on the write path.
- stock >= 0 for every row at every commit.
- apply() is all-or-nothing: every projected value is checked before the
  first row is mutated.
- Rows are loaded (and locked where the DB supports it) in ascending
  (product_id, size_id) order.
- Writes only happen inside a coordinated batch; reads outside a batch are
  snapshot reads and may trail an in-flight batch.
"""

RowKey = tuple[int, int]


def coalesce(rows: Iterable[tuple[int, int, int]]) -> dict[RowKey, int]:
    """Net delta per (product_id, size_id), keys in ascending order."""
    net: dict[RowKey, int] = {}
    for product_id, size_id, delta in rows:
        key = (product_id, size_id)
        net[key] = net.get(key, 0) + delta
    return {key: net[key] for key in sorted(net)}


class StockLedger:
    def get(self, product_id: int, size_id: int) -> int:
        """Current stock, 0 for a pair that has never been stocked."""
        stock = (
            db.session.query(StockRecord.stock)
            .filter_by(product_id=product_id, size_id=size_id)
            .scalar()
        )
        return int(stock or 0)

    def snapshot(self, *, product_id: int | None = None) -> list[StockRecord]:
        query = db.session.query(StockRecord)
        if product_id is not None:
            query = query.filter(StockRecord.product_id == product_id)
        return query.order_by(StockRecord.product_id.asc(), StockRecord.size_id.asc()).all()

    def low_stock(self, threshold: int) -> list[StockRecord]:
        return (
            db.session.query(StockRecord)
            .filter(StockRecord.stock < threshold)
            .order_by(StockRecord.stock.asc(), StockRecord.product_id.asc(), StockRecord.size_id.asc())
            .all()
        )

    def _require_catalog(self, keys: list[RowKey]) -> None:
        product_ids = {product_id for product_id, _ in keys}
        size_ids = {size_id for _, size_id in keys}

        found_products = {
            pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(product_ids))
        }
        missing = sorted(product_ids - found_products)
        if missing:
            raise NotFound(f"Product {missing[0]} not found", details={"product_id": missing[0]})

        found_sizes = {sid for (sid,) in db.session.query(Size.id).filter(Size.id.in_(size_ids))}
        missing = sorted(size_ids - found_sizes)
        if missing:
            raise NotFound(f"Size {missing[0]} not found", details={"size_id": missing[0]})

    def _create_row(self, product_id: int, size_id: int) -> StockRecord:
        """
        Lazily create a zero-stock row.

        A concurrent insert of the same pair from another process surfaces as an
        IntegrityError at flush; the coordinator retries the whole batch, which
        then finds the existing row.
        """
        record = StockRecord(product_id=product_id, size_id=size_id, stock=0)
        db.session.add(record)
        db.session.flush()
        return record

    def lock_rows(self, keys: Iterable[RowKey]) -> dict[RowKey, StockRecord]:
        """Load, lock and lazily create the rows for keys, in ascending key order."""
        ordered = sorted(set(keys))
        if not ordered:
            return {}
        self._require_catalog(ordered)

        records: dict[RowKey, StockRecord] = {}
        for product_id, size_id in ordered:
            record = (
                lock_for_update(
                    db.session.query(StockRecord).filter_by(product_id=product_id, size_id=size_id)
                )
                .populate_existing()
                .first()
            )
            if record is None:
                record = self._create_row(product_id, size_id)
            records[(product_id, size_id)] = record
        return records

    def project(self, rows: Iterable[tuple[int, int, int]]) -> dict[RowKey, tuple[int, int]]:
        """
        (previous, projected) stock per row without mutating anything.

        Raises InsufficientStock for the first row, in key order, whose
        projected value would be negative.
        """
        net = coalesce(rows)
        records = self.lock_rows(net.keys())

        projected: dict[RowKey, tuple[int, int]] = {}
        for key, delta in net.items():
            previous = records[key].stock
            new = previous + delta
            if new < 0:
                raise InsufficientStock(key[0], key[1], delta, previous)
            projected[key] = (previous, new)
        return projected

    def apply(self, rows: Iterable[tuple[int, int, int]]) -> dict[RowKey, int]:
        """
        Apply deltas to stock, all or nothing.

        Returns the new stock per row. Nothing is committed here; the caller's
        transaction decides durability together with the history entries.
        """
        rows = list(rows)
        projected = self.project(rows)
        records = self.lock_rows(projected.keys())

        for key, (_, new) in projected.items():
            records[key].stock = new
        db.session.flush()
        return {key: new for key, (_, new) in projected.items()}
