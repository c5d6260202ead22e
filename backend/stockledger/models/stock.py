from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from stockledger.time_utils import to_utc_z


REASON_SALE = "sale"
REASON_PURCHASE_RECEIPT = "purchase_receipt"
REASON_ADJUSTMENT = "adjustment"
REASON_RETURN = "return"

HISTORY_REASONS = (REASON_SALE, REASON_PURCHASE_RECEIPT, REASON_ADJUSTMENT, REASON_RETURN)


class StockRecord(db.Model):
    """
    Current stock for one (product, size) pair.

    OWNERSHIP: Only the stock ledger writes this table, and only inside a
    coordinated batch that also writes the matching HistoryEntry rows.
    Rows are created lazily on first reference and never deleted while
    history points at them.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "size_id", name="uq_stock_records_product_size"),
        db.CheckConstraint("stock >= 0", name="ck_stock_records_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    size_id = db.Column(db.Integer, db.ForeignKey("sizes.id"), nullable=False, index=True)

    stock = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_records", lazy=True))
    size = db.relationship("Size")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def key(self) -> tuple[int, int]:
        return (self.product_id, self.size_id)

    def __repr__(self) -> str:
        return f"<StockRecord product_id={self.product_id} size_id={self.size_id} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "size_id": self.size_id,
            "product_name": self.product.name if self.product else None,
            "size_name": self.size.name if self.size else None,
            "stock": self.stock,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class HistoryEntry(db.Model):
    """
    Append-only audit entry for one stock movement.

    INVARIANTS:
    - new_stock = previous_stock + delta (also a DB check constraint)
    - For one (product, size), entries ordered by (occurred_at, id) are a
      prefix-sum sequence ending at StockRecord.stock.
    - Never updated or deleted; corrections are new adjustment entries.

    batch_id groups the entries written by one coordinated submit; sequence
    is the slot within that batch in submission order. Normally a slot holds
    the row submitted there. When a (product, size) would dip below zero
    mid-batch, that pair's rows are replayed increases first across the slots
    it occupies, so a slot can hold a different row of the same pair than the
    one submitted at that position.
    """
    __tablename__ = "inventory_history"
    __table_args__ = (
        db.CheckConstraint("new_stock = previous_stock + delta", name="ck_history_prefix_sum"),
        db.CheckConstraint("new_stock >= 0", name="ck_history_non_negative"),
        db.Index("ix_history_product_size_occurred", "product_id", "size_id", "occurred_at"),
        db.Index("ix_history_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.String(36), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    size_id = db.Column(db.Integer, db.ForeignKey("sizes.id"), nullable=False)

    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)
    delta = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(32), nullable=False, index=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    actor = db.Column(db.String(120), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    # Business time, set by the coordinator; created_at is system time.
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    size = db.relationship("Size")

    def __repr__(self) -> str:
        return (
            f"<HistoryEntry id={self.id} product_id={self.product_id} size_id={self.size_id} "
            f"{self.previous_stock}->{self.new_stock} reason={self.reason}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "sequence": self.sequence,
            "product_id": self.product_id,
            "size_id": self.size_id,
            "product_name": self.product.name if self.product else None,
            "size_name": self.size.name if self.size else None,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "delta": self.delta,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "actor": self.actor,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at, precise=True),
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(HistoryEntry, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("inventory history entries are immutable")


@event.listens_for(HistoryEntry, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ValueError("inventory history entries cannot be deleted")
